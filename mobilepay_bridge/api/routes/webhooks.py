"""Inbound MobilePay webhooks"""

import hashlib
import hmac
import json
from typing import Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Header, Request
from pydantic import ValidationError

from mobilepay_bridge.config import settings
from mobilepay_bridge.exceptions import InvalidSignature, ValidationFailed
from mobilepay_bridge.monitoring.metrics import webhooks_received
from mobilepay_bridge.schemas.mobilepay import WebhookEvent
from mobilepay_bridge.services.webhook_reconciler import reconcile_webhook_event

logger = structlog.get_logger(__name__)
router = APIRouter()

SIGNATURE_PREFIX = "sha256="


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """
    Check ``X-Webhook-Signature`` (HMAC-SHA256 hex of the raw body).

    With a secret configured the header is mandatory. Without one, unsigned
    deliveries are accepted and a signed one is rejected since it cannot be
    checked.

    Raises:
        InvalidSignature: Header missing, unverifiable or wrong
    """
    if not secret:
        if signature:
            raise InvalidSignature("Webhook signature present but no secret is configured")
        logger.warning("webhook_signature_not_verified")
        return

    if not signature:
        raise InvalidSignature("Missing webhook signature")

    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]

    computed = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(computed.lower(), signature.lower()):
        raise InvalidSignature("Invalid webhook signature")


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_webhook_signature: Optional[str] = Header(None, alias="X-Webhook-Signature"),
):
    """Acknowledge a MobilePay webhook and reconcile it after responding."""
    body = await request.body()
    try:
        verify_webhook_signature(body, x_webhook_signature, settings.MOBILEPAY_WEBHOOK_SECRET)
    except InvalidSignature as e:
        logger.warning("webhook_signature_rejected", reason=e.message)
        raise

    try:
        payload = json.loads(body)
        event = WebhookEvent.model_validate(payload)
    except ValueError as e:
        # pydantic's ValidationError is a ValueError too
        details = (
            [{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in e.errors()]
            if isinstance(e, ValidationError)
            else [{"field": "body", "message": "Body is not valid JSON"}]
        )
        raise ValidationFailed("Invalid webhook payload", details=details)

    logger.info(
        "webhook_received",
        event_type=event.event,
        agreement_id=event.data.agreement_id,
        charge_id=event.data.charge_id,
    )
    webhooks_received.labels(event_type=event.event_type.value).inc()
    background_tasks.add_task(reconcile_webhook_event, payload)

    return {"success": True, "message": "Webhook received"}
