"""
Charge management against MobilePay agreements.

A charge is created once per (agreement, due date). Failed charges are never
mutated back into play; a manual retry creates a fresh charge with the next
attempt number for the same due date.
"""

from datetime import date, timedelta
from typing import Any, Dict, List, Optional

import structlog
from dateutil.relativedelta import relativedelta
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from mobilepay_bridge.clients.mobilepay_client import MobilePayClient, get_mobilepay_client
from mobilepay_bridge.config import settings
from mobilepay_bridge.database.models import (
    PAYMENT_METHOD_MOBILEPAY,
    Agreement,
    AgreementStatus,
    Charge,
    ChargeStatus,
    IntervalUnit,
    SubscriptionLink,
    SubscriptionLinkStatus,
)
from mobilepay_bridge.exceptions import (
    AgreementNotChargeable,
    ChargeCancellationFailed,
    ChargeCreationFailed,
    ChargeLookupFailed,
    InvalidChargeStatus,
    InvalidIntervalUnit,
    NotFound,
    ProviderAPIError,
    ProviderConfigError,
    TokenFetchFailed,
    ValidationFailed,
)
from mobilepay_bridge.schemas.mobilepay import GetChargeResponse

logger = structlog.get_logger(__name__)

MAX_RETRY_DAYS = 14
CHARGEABLE_AGREEMENT_STATUSES = (AgreementStatus.pending.value, AgreementStatus.active.value)
_CHARGE_STATUSES = {s.value for s in ChargeStatus}


def calculate_next_billing_date(current: date, interval_unit: str, interval_count: int) -> date:
    """Add ``interval_count`` units to ``current`` using calendar arithmetic.

    Month and year steps clamp to the last valid day, so 2026-01-31 plus one
    month is 2026-02-28.

    Raises:
        InvalidIntervalUnit: If the unit is not DAY, WEEK, MONTH or YEAR
    """
    try:
        unit = IntervalUnit(str(interval_unit).upper())
    except ValueError:
        raise InvalidIntervalUnit(
            f"Invalid interval unit: {interval_unit}",
            details={"interval_unit": interval_unit},
        )

    if unit == IntervalUnit.day:
        return current + timedelta(days=interval_count)
    if unit == IntervalUnit.week:
        return current + timedelta(weeks=interval_count)
    if unit == IntervalUnit.month:
        return current + relativedelta(months=interval_count)
    return current + relativedelta(years=interval_count)


def local_charge_status(remote_status: Optional[str]) -> Optional[str]:
    """Map a MobilePay charge status (upper case) to the local value."""
    if not remote_status:
        return None
    status = remote_status.lower()
    return status if status in _CHARGE_STATUSES else None


def idempotency_key_for(provider_agreement_id: str, due_date: date, attempt: int = 0) -> str:
    key = f"{provider_agreement_id}-{due_date.isoformat()}"
    if attempt:
        key = f"{key}-retry{attempt}"
    return key


class ChargeService:
    """Creates, cancels and tracks charges for one database session"""

    calculate_next_billing_date = staticmethod(calculate_next_billing_date)

    def __init__(self, db: Session, client: Optional[MobilePayClient] = None):
        self.db = db
        self.client = client or get_mobilepay_client()

    async def create_charge(
        self,
        agreement: Agreement,
        amount: int,
        due_date: date,
        description: str,
        retry_days: int = 5,
        attempt: int = 0,
        retry_of: Optional[Charge] = None,
        commit: bool = True,
    ) -> Charge:
        """
        Create a charge with MobilePay and persist it.

        Args:
            agreement: Agreement to charge (must be pending or active)
            amount: Amount in minor units
            due_date: Date the payer is charged
            description: Text shown to the payer
            retry_days: Days MobilePay keeps retrying a failed debit (0-14)
            attempt: 0 for the scheduled charge, 1.. for manual retries
            retry_of: The failed charge a manual retry replaces
            commit: False to only flush, leaving the commit to the caller

        Raises:
            AgreementNotChargeable: Agreement is stopped or expired
            ChargeCreationFailed: MobilePay rejected the charge
            IntegrityError: A charge for (agreement, due date, attempt) already exists
        """
        if agreement.status not in CHARGEABLE_AGREEMENT_STATUSES:
            raise AgreementNotChargeable(
                f"Agreement {agreement.id} is {agreement.status}",
                details={"agreement_id": agreement.id, "status": agreement.status},
            )
        if not 0 <= retry_days <= MAX_RETRY_DAYS:
            raise ValidationFailed(
                "retry_days must be between 0 and 14",
                details=[{"field": "retry_days", "message": "must be between 0 and 14"}],
            )

        payload = {
            "amount": amount,
            "currency": agreement.currency,
            "description": description,
            "due": due_date.isoformat(),
            "retryDays": retry_days,
            "transactionType": "DIRECT_CAPTURE",
        }
        key = idempotency_key_for(agreement.mobilepay_agreement_id, due_date, attempt)

        try:
            created = await self.client.create_charge(agreement.mobilepay_agreement_id, payload, key)
        except (ProviderAPIError, ProviderConfigError, TokenFetchFailed) as e:
            logger.error(
                "charge_creation_failed",
                agreement_id=agreement.id,
                due_date=due_date.isoformat(),
                error=e.message,
            )
            raise ChargeCreationFailed(
                "Failed to create MobilePay charge",
                details={"agreement_id": agreement.id, "due_date": due_date.isoformat()},
                original_error=e,
            ) from e

        charge = Charge(
            agreement_id=agreement.id,
            mobilepay_charge_id=created.charge_id,
            amount=amount,
            currency=agreement.currency,
            description=description,
            due_date=due_date,
            status=local_charge_status(created.status) or ChargeStatus.pending.value,
            retry_days=retry_days,
            attempt=attempt,
            retry_of_id=retry_of.id if retry_of else None,
        )
        self.db.add(charge)
        try:
            if commit:
                self.db.commit()
            else:
                self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.warning(
                "charge_already_exists",
                agreement_id=agreement.id,
                due_date=due_date.isoformat(),
                attempt=attempt,
            )
            raise
        self.db.refresh(charge)

        logger.info(
            "charge_created",
            charge_id=charge.id,
            mobilepay_charge_id=charge.mobilepay_charge_id,
            agreement_id=agreement.id,
            due_date=due_date.isoformat(),
            status=charge.status,
        )
        return charge

    async def get_charge_status(
        self, provider_agreement_id: str, provider_charge_id: str
    ) -> GetChargeResponse:
        """Read-through status lookup; does not touch local state."""
        try:
            return await self.client.get_charge(provider_agreement_id, provider_charge_id)
        except (ProviderAPIError, ProviderConfigError, TokenFetchFailed) as e:
            logger.error(
                "charge_lookup_failed",
                mobilepay_agreement_id=provider_agreement_id,
                mobilepay_charge_id=provider_charge_id,
                error=e.message,
            )
            raise ChargeLookupFailed("Failed to fetch MobilePay charge", original_error=e) from e

    def update_charge_status(self, charge_id: str, status: str) -> None:
        """Unconditional local status write by local id."""
        self.db.query(Charge).filter(Charge.id == charge_id).update(
            {Charge.status: status}, synchronize_session="fetch"
        )
        self.db.commit()
        logger.info("charge_status_updated", charge_id=charge_id, status=status)

    def update_status_by_provider_id(self, provider_charge_id: str, status: str) -> int:
        """Set the status of the charge MobilePay knows as ``provider_charge_id``.

        Returns:
            Number of rows changed; 0 when the charge is unknown locally or
            already has ``status``
        """
        rows = self.db.query(Charge).filter(
            Charge.mobilepay_charge_id == provider_charge_id,
            Charge.status != status,
        ).update({Charge.status: status}, synchronize_session="fetch")
        self.db.commit()
        return rows

    async def cancel_charge(self, provider_agreement_id: str, provider_charge_id: str) -> None:
        """Cancel with MobilePay, then mark the local charge cancelled."""
        try:
            await self.client.cancel_charge(provider_agreement_id, provider_charge_id)
        except (ProviderAPIError, ProviderConfigError, TokenFetchFailed) as e:
            logger.error(
                "charge_cancellation_failed",
                mobilepay_agreement_id=provider_agreement_id,
                mobilepay_charge_id=provider_charge_id,
                error=e.message,
            )
            raise ChargeCancellationFailed("Failed to cancel MobilePay charge", original_error=e) from e

        self.update_status_by_provider_id(provider_charge_id, ChargeStatus.cancelled.value)
        logger.info("charge_cancelled", mobilepay_charge_id=provider_charge_id)

    def get_subscriptions_due(self, target_date: date) -> List[SubscriptionLink]:
        """Active MobilePay subscription links billing on ``target_date`` for active agreements."""
        return (
            self.db.query(SubscriptionLink)
            .join(Agreement, SubscriptionLink.agreement_id == Agreement.id)
            .options(joinedload(SubscriptionLink.agreement).joinedload(Agreement.customer))
            .filter(
                SubscriptionLink.status == SubscriptionLinkStatus.active.value,
                SubscriptionLink.payment_method == PAYMENT_METHOD_MOBILEPAY,
                SubscriptionLink.next_billing_date == target_date,
                Agreement.status == AgreementStatus.active.value,
            )
            .all()
        )

    def get_charges_due_for_creation(
        self, advance_days: Optional[int] = None, today: Optional[date] = None
    ) -> List[Agreement]:
        """Agreements whose next charge should be created today."""
        advance = settings.CHARGE_ADVANCE_DAYS if advance_days is None else advance_days
        target = (today or date.today()) + timedelta(days=advance)
        return [link.agreement for link in self.get_subscriptions_due(target)]

    def charge_exists(self, agreement_id: str, due_date: date) -> bool:
        return (
            self.db.query(Charge.id)
            .filter(Charge.agreement_id == agreement_id, Charge.due_date == due_date)
            .first()
            is not None
        )

    def list_upcoming_charges(self, days: int = 7, today: Optional[date] = None) -> List[Dict[str, Any]]:
        """Charges the scheduler will create for due dates in the next ``days`` days."""
        today = today or date.today()
        advance = settings.CHARGE_ADVANCE_DAYS
        upcoming = []
        for offset in range(1, days + 1):
            due = today + timedelta(days=offset)
            for link in self.get_subscriptions_due(due):
                agreement = link.agreement
                upcoming.append(
                    {
                        "agreementId": agreement.id,
                        "customerEmail": agreement.customer.email if agreement.customer else None,
                        "amount": agreement.amount / 100,
                        "currency": agreement.currency,
                        "dueDate": due.isoformat(),
                        "scheduledCreationDate": (due - timedelta(days=advance)).isoformat(),
                    }
                )
        return upcoming

    async def retry_charge(self, charge_id: str) -> Charge:
        """
        Create a fresh charge replacing a failed one.

        Raises:
            NotFound: No charge with this id
            InvalidChargeStatus: Charge is not in the failed state
        """
        charge = self.db.query(Charge).filter(Charge.id == charge_id).first()
        if not charge:
            raise NotFound("Charge not found", details={"charge_id": charge_id})
        if charge.status != ChargeStatus.failed.value:
            raise InvalidChargeStatus(
                "Only failed charges can be retried",
                details={"charge_id": charge_id, "status": charge.status},
            )

        last_attempt = (
            self.db.query(func.max(Charge.attempt))
            .filter(Charge.agreement_id == charge.agreement_id, Charge.due_date == charge.due_date)
            .scalar()
        ) or 0

        logger.info("retrying_charge", charge_id=charge.id, attempt=last_attempt + 1)
        return await self.create_charge(
            charge.agreement,
            charge.amount,
            charge.due_date,
            charge.description,
            retry_days=charge.retry_days,
            attempt=last_attempt + 1,
            retry_of=charge,
        )
