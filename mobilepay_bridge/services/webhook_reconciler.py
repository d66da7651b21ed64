"""
Webhook reconciliation.

Maps each MobilePay webhook event to a local state change and, for terminal
transitions, a downstream notification. Handlers are safe to re-run: webhooks
are delivered at least once and possibly out of order.
"""

from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from sqlalchemy.orm import Session

from mobilepay_bridge.database.database import SessionLocal
from mobilepay_bridge.database.models import Charge, ChargeStatus
from mobilepay_bridge.exceptions import MissingEventField
from mobilepay_bridge.monitoring.metrics import webhook_reconciliation_errors
from mobilepay_bridge.schemas.mobilepay import WebhookEvent, WebhookEventType
from mobilepay_bridge.services.agreement_service import AgreementService
from mobilepay_bridge.services.charge_service import ChargeService
from mobilepay_bridge.services.notification_service import NotificationService

logger = structlog.get_logger(__name__)

CHARGE_EVENT_STATUSES = {
    WebhookEventType.charge_created: ChargeStatus.pending,
    WebhookEventType.charge_due: ChargeStatus.due,
    WebhookEventType.charge_reserved: ChargeStatus.reserved,
    WebhookEventType.charge_charged: ChargeStatus.charged,
    WebhookEventType.charge_failed: ChargeStatus.failed,
    WebhookEventType.charge_cancelled: ChargeStatus.cancelled,
}


class WebhookReconciler:
    """Applies webhook events to local state"""

    def __init__(
        self,
        db: Session,
        notifier: Optional[NotificationService] = None,
        agreement_service: Optional[AgreementService] = None,
        charge_service: Optional[ChargeService] = None,
    ):
        self.db = db
        self.notifier = notifier or NotificationService()
        self.agreement_service = agreement_service or AgreementService(db, notifier=self.notifier)
        self.charge_service = charge_service or ChargeService(db)

        self._handlers: Dict[WebhookEventType, Callable[[WebhookEvent], Awaitable[None]]] = {
            WebhookEventType.agreement_stopped: self._handle_agreement_stopped,
            **{event_type: self._handle_charge_event for event_type in CHARGE_EVENT_STATUSES},
        }

    async def handle(self, event: WebhookEvent) -> None:
        """Dispatch one event.

        Raises:
            MissingEventField: The event lacks the id its handler needs
        """
        event_type = event.event_type
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.warning("unhandled_webhook_event", event_type=event.event)
            return

        logger.info(
            "processing_webhook_event",
            event_type=event_type.value,
            agreement_id=event.data.agreement_id,
            charge_id=event.data.charge_id,
        )
        await handler(event)

    async def _handle_agreement_stopped(self, event: WebhookEvent) -> None:
        provider_agreement_id = event.data.agreement_id
        if not provider_agreement_id:
            raise MissingEventField(
                "agreementId is required for agreement events",
                details={"event_type": event.event, "field": "agreementId"},
            )

        agreement = self.agreement_service.handle_agreement_stopped(
            provider_agreement_id, actor=event.data.actor
        )
        if agreement is not None:
            await self.notifier.notify_agreement_cancelled(agreement)

    async def _handle_charge_event(self, event: WebhookEvent) -> None:
        provider_charge_id = event.data.charge_id
        if not provider_charge_id:
            raise MissingEventField(
                "chargeId is required for charge events",
                details={"event_type": event.event, "field": "chargeId"},
            )

        status = CHARGE_EVENT_STATUSES[event.event_type]
        rows = self.charge_service.update_status_by_provider_id(provider_charge_id, status.value)
        charge = self.db.query(Charge).filter(Charge.mobilepay_charge_id == provider_charge_id).first()
        if charge is None:
            logger.info(
                "charge_event_for_unknown_charge",
                event_type=event.event,
                mobilepay_charge_id=provider_charge_id,
            )
            return
        if rows == 0:
            # redelivery; the transition was already applied and notified
            logger.info("charge_status_unchanged", mobilepay_charge_id=provider_charge_id, status=status.value)
            return

        logger.info("charge_status_reconciled", mobilepay_charge_id=provider_charge_id, status=status.value)

        if status not in (ChargeStatus.charged, ChargeStatus.failed):
            return
        if status == ChargeStatus.charged:
            await self.notifier.notify_charge_success(charge)
        else:
            await self.notifier.notify_charge_failed(charge)


async def reconcile_webhook_event(payload: Dict[str, Any]) -> None:
    """Background entry point: reconcile one event with its own session.

    Runs after the webhook response has been sent, so failures are logged and
    left to MobilePay's redelivery.
    """
    db = SessionLocal()
    event_type = payload.get("event")
    data = payload.get("data")
    if not isinstance(data, dict):
        data = {}
    try:
        event = WebhookEvent.model_validate(payload)
        await WebhookReconciler(db).handle(event)
    except Exception as e:
        db.rollback()
        webhook_reconciliation_errors.labels(event_type=str(event_type)).inc()
        logger.error(
            "webhook_reconciliation_failed",
            event_type=event_type,
            agreement_id=data.get("agreementId"),
            charge_id=data.get("chargeId"),
            error=str(e),
        )
    finally:
        db.close()
