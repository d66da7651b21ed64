"""
Downstream notifications for agreement and charge state changes.

Delivers events to the billing platform and grants or revokes course access.
Delivery is best-effort: failures are retried a bounded number of times and
then logged. Nothing here raises back into the webhook or scheduler path.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mobilepay_bridge.clients.course_platform_client import CoursePlatformClient
from mobilepay_bridge.config import settings
from mobilepay_bridge.database.models import Agreement, Charge, IntervalUnit, PlanType
from mobilepay_bridge.monitoring.metrics import notifications_sent

logger = structlog.get_logger(__name__)

MAX_ATTEMPTS = 3

EVENT_AGREEMENT_ACTIVATED = "mobilepay.agreement.activated"
EVENT_AGREEMENT_CANCELLED = "mobilepay.agreement.cancelled"
EVENT_CHARGE_SUCCESS = "mobilepay.charge.success"
EVENT_CHARGE_FAILED = "mobilepay.charge.failed"

EVENT_PATHS = {
    EVENT_AGREEMENT_ACTIVATED: "/webhooks/mobilepay/agreement-activated",
    EVENT_AGREEMENT_CANCELLED: "/webhooks/mobilepay/agreement-cancelled",
    EVENT_CHARGE_SUCCESS: "/webhooks/mobilepay/charge-success",
    EVENT_CHARGE_FAILED: "/webhooks/mobilepay/charge-failed",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def plan_type_for_interval(unit: str, count: int) -> str:
    if unit == IntervalUnit.month.value and count == 1:
        return PlanType.monthly.value
    if unit == IntervalUnit.month.value and count == 6:
        return PlanType.semi_annual.value
    return PlanType.annual.value


def _customer_fields(agreement: Agreement) -> Dict[str, Any]:
    customer = agreement.customer
    return {
        "customerId": customer.id if customer else None,
        "customerEmail": customer.email if customer else None,
        "stripeCustomerId": customer.billing_customer_id if customer else None,
    }


class NotificationService:
    """Best-effort notifier for the billing platform and course platform"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        course_platform: Optional[CoursePlatformClient] = None,
        retry_wait=None,
    ):
        self.base_url = (base_url if base_url is not None else settings.BILLING_PLATFORM_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.BILLING_PLATFORM_API_KEY
        self.timeout = settings.NOTIFICATION_TIMEOUT_SECONDS
        self.course_platform = course_platform or CoursePlatformClient()
        # 2s then 4s between the three attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=2, min=2, max=8)

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def notify_agreement_activated(self, agreement: Agreement) -> None:
        data = {
            "agreementId": agreement.id,
            "mobilepayAgreementId": agreement.mobilepay_agreement_id,
            **_customer_fields(agreement),
            "amount": agreement.amount / 100,
            "currency": agreement.currency,
            "planType": plan_type_for_interval(agreement.interval_unit, agreement.interval_count),
            "timestamp": _now_iso(),
        }
        customer = agreement.customer
        await self._send(EVENT_AGREEMENT_ACTIVATED, data)
        if customer is not None:
            await self.course_platform.enroll_customer(
                customer.email, customer.name or "", data["planType"], phone=customer.phone
            )

    async def notify_agreement_cancelled(self, agreement: Agreement) -> None:
        data = {
            "agreementId": agreement.id,
            "mobilepayAgreementId": agreement.mobilepay_agreement_id,
            **_customer_fields(agreement),
            "timestamp": _now_iso(),
        }
        customer = agreement.customer
        await self._send(EVENT_AGREEMENT_CANCELLED, data)
        if customer is not None:
            await self.course_platform.remove_customer_access(customer.email)

    async def notify_charge_success(self, charge: Charge) -> None:
        await self._send(EVENT_CHARGE_SUCCESS, self._charge_data(charge))

    async def notify_charge_failed(self, charge: Charge) -> None:
        await self._send(EVENT_CHARGE_FAILED, self._charge_data(charge))

    def _charge_data(self, charge: Charge) -> Dict[str, Any]:
        return {
            "chargeId": charge.id,
            "mobilepayChargeId": charge.mobilepay_charge_id,
            "agreementId": charge.agreement_id,
            **_customer_fields(charge.agreement),
            "amount": charge.amount / 100,
            "currency": charge.currency,
            "dueDate": charge.due_date.isoformat() if charge.due_date else None,
            "timestamp": _now_iso(),
        }

    async def _send(self, event: str, data: Dict[str, Any]) -> bool:
        """POST an event envelope, retrying on any HTTP failure.

        Returns:
            True if delivered, False if skipped or all attempts failed
        """
        if not self.is_configured:
            logger.warning("notification_skipped_not_configured", event=event)
            notifications_sent.labels(event=event, status="skipped").inc()
            return False

        path = EVENT_PATHS[event]
        payload = {"event": event, "data": data, "timestamp": _now_iso()}
        headers = {"Content-Type": "application/json", "X-API-Key": self.api_key}

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(MAX_ATTEMPTS),
                wait=self.retry_wait,
                retry=retry_if_exception_type(httpx.HTTPError),
            ):
                with attempt:
                    logger.info(
                        "sending_notification",
                        event=event,
                        path=path,
                        attempt=attempt.retry_state.attempt_number,
                    )
                    async with httpx.AsyncClient(timeout=self.timeout) as client:
                        response = await client.post(
                            f"{self.base_url}{path}", json=payload, headers=headers
                        )
                        response.raise_for_status()
        except RetryError as e:
            logger.error(
                "notification_failed_after_retries",
                event=event,
                path=path,
                attempts=MAX_ATTEMPTS,
                error=str(e.last_attempt.exception()),
            )
            notifications_sent.labels(event=event, status="failed").inc()
            return False

        logger.info("notification_sent", event=event, path=path)
        notifications_sent.labels(event=event, status="delivered").inc()
        return True
