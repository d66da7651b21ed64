"""Admin API: upcoming charges, manual retries, scheduler trigger and stats"""

from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from mobilepay_bridge.api.auth import require_admin_key
from mobilepay_bridge.api.dependencies import get_client
from mobilepay_bridge.clients.mobilepay_client import MobilePayClient
from mobilepay_bridge.config import settings
from mobilepay_bridge.core.cron_utils import calculate_next_run
from mobilepay_bridge.core.tasks import enqueue_charge_monitor
from mobilepay_bridge.database.database import get_db
from mobilepay_bridge.database.models import (
    Agreement,
    AgreementStatus,
    Charge,
    ChargeStatus,
    Customer,
    SubscriptionLink,
    SubscriptionLinkStatus,
)
from mobilepay_bridge.services.charge_scheduler import ChargeScheduler
from mobilepay_bridge.services.charge_service import ChargeService

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin_key)])


@router.get("/charges/upcoming")
async def upcoming_charges(
    days: int = Query(7, ge=1, le=90),
    db: Session = Depends(get_db),
    client: MobilePayClient = Depends(get_client),
):
    """Charges the scheduler will create for due dates in the next ``days`` days."""
    charges = ChargeService(db, client=client).list_upcoming_charges(days=days)
    return {"success": True, "charges": charges}


@router.post("/charges/{charge_id}/retry")
async def retry_charge(
    charge_id: UUID,
    db: Session = Depends(get_db),
    client: MobilePayClient = Depends(get_client),
):
    """Replace a failed charge with a new one for the same due date."""
    charge = await ChargeService(db, client=client).retry_charge(str(charge_id))
    logger.info("charge_retried", charge_id=charge.id, retry_of=str(charge_id))
    return {
        "success": True,
        "charge": {
            "id": charge.id,
            "mobilepayChargeId": charge.mobilepay_charge_id,
            "status": charge.status,
            "amount": charge.amount / 100,
            "dueDate": charge.due_date.isoformat(),
        },
        "message": "Charge retry created successfully",
    }


@router.post("/scheduler/trigger")
async def trigger_scheduler(
    db: Session = Depends(get_db),
    client: MobilePayClient = Depends(get_client),
):
    """Run the charge sweep now, in-process."""
    logger.info("charge_scheduler_triggered_manually")
    scheduler = ChargeScheduler(
        db,
        charge_service=ChargeService(db, client=client),
        enqueue_monitor=enqueue_charge_monitor,
    )
    result = await scheduler.schedule_upcoming_charges()
    return {"success": True, "message": "Charge scheduler completed", "result": result.to_dict()}


@router.get("/scheduler")
async def scheduler_info():
    return {
        "success": True,
        "cron": settings.CHARGE_SCHEDULER_CRON,
        "advanceDays": settings.CHARGE_ADVANCE_DAYS,
        "nextRun": calculate_next_run(settings.CHARGE_SCHEDULER_CRON).isoformat(),
    }


@router.get("/stats")
async def stats(db: Session = Depends(get_db)):
    total_charges = db.query(Charge).count()
    charged = db.query(Charge).filter(Charge.status == ChargeStatus.charged.value).count()
    failed = db.query(Charge).filter(Charge.status == ChargeStatus.failed.value).count()
    success_rate = (charged / total_charges * 100) if total_charges else 0

    return {
        "success": True,
        "stats": {
            "customers": db.query(Customer).count(),
            "agreements": {
                "total": db.query(Agreement).count(),
                "active": db.query(Agreement).filter(Agreement.status == AgreementStatus.active.value).count(),
            },
            "charges": {
                "total": total_charges,
                "charged": charged,
                "failed": failed,
                "successRate": f"{success_rate:.2f}%",
            },
            "subscriptions": {
                "active": db.query(SubscriptionLink)
                .filter(SubscriptionLink.status == SubscriptionLinkStatus.active.value)
                .count(),
            },
        },
    }
