"""
Celery tasks for charge scheduling and charge monitoring.

Each task runs its async body with ``asyncio.run`` and a MobilePay client of
its own, since an httpx client cannot outlive the event loop it was used on.
The access token cache is shared across tasks in the worker process.
"""

import asyncio
from datetime import date, datetime, time, timezone

import structlog
from celery.signals import worker_init
from sqlalchemy.orm import Session

from mobilepay_bridge.clients.mobilepay_client import MobilePayClient, get_token_cache
from mobilepay_bridge.core.celery_app import app
from mobilepay_bridge.database.database import SessionLocal
from mobilepay_bridge.database.models import Charge
from mobilepay_bridge.exceptions import BridgeError
from mobilepay_bridge.monitoring.logging_config import configure_logging
from mobilepay_bridge.monitoring.sentry_config import init_sentry
from mobilepay_bridge.services.charge_scheduler import ChargeScheduler
from mobilepay_bridge.services.charge_service import ChargeService, local_charge_status

logger = structlog.get_logger(__name__)


@worker_init.connect
def init_worker(**kwargs):
    """Configure logging and error tracking when the worker starts."""
    configure_logging()
    init_sentry()
    logger.info("mobilepay_worker_initialized")


def get_db_session() -> Session:
    """Get a database session for task execution."""
    return SessionLocal()


def enqueue_charge_monitor(charge_id: str, due_date: date) -> None:
    """Schedule ``monitor_charge`` to run at the start of the due date (UTC)."""
    eta = datetime.combine(due_date, time.min, tzinfo=timezone.utc)
    monitor_charge.apply_async(args=[charge_id], eta=eta)
    logger.info("charge_monitor_enqueued", charge_id=charge_id, eta=eta.isoformat())


@app.task(name='mobilepay_bridge.core.tasks.schedule_upcoming_charges')
def schedule_upcoming_charges():
    """Daily sweep creating charges for subscriptions due in CHARGE_ADVANCE_DAYS."""
    async def _execute():
        db = get_db_session()
        client = MobilePayClient(token_cache=get_token_cache())
        try:
            scheduler = ChargeScheduler(
                db,
                charge_service=ChargeService(db, client),
                enqueue_monitor=enqueue_charge_monitor,
            )
            result = await scheduler.schedule_upcoming_charges()
            return result.to_dict()
        finally:
            await client.close()
            db.close()

    return asyncio.run(_execute())


@app.task(name='mobilepay_bridge.core.tasks.monitor_charge')
def monitor_charge(charge_id: str):
    """Fetch the charge status from MobilePay and store it if it changed.

    Best-effort: webhooks remain the primary status source, so failures are
    logged and not retried.
    """
    async def _execute():
        db = get_db_session()
        client = MobilePayClient(token_cache=get_token_cache())
        try:
            charge = db.query(Charge).filter(Charge.id == charge_id).first()
            if not charge:
                logger.warning("monitored_charge_not_found", charge_id=charge_id)
                return {"charge_id": charge_id, "status": None, "updated": False}

            service = ChargeService(db, client)
            remote = await service.get_charge_status(
                charge.agreement.mobilepay_agreement_id, charge.mobilepay_charge_id
            )
            status = local_charge_status(remote.status)
            if status is None or status == charge.status:
                return {"charge_id": charge_id, "status": charge.status, "updated": False}

            service.update_charge_status(charge.id, status)
            return {"charge_id": charge_id, "status": status, "updated": True}
        finally:
            await client.close()
            db.close()

    try:
        return asyncio.run(_execute())
    except BridgeError as e:
        logger.warning("charge_monitoring_failed", charge_id=charge_id, error=e.message)
        return {"charge_id": charge_id, "error": e.message}
