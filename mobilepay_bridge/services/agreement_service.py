"""
Recurring agreement management.

Creates and stops MobilePay agreements and keeps the local mirror of their
status in step with MobilePay, either by polling or from webhook pushes.
"""

from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from mobilepay_bridge.clients.mobilepay_client import MobilePayClient, get_mobilepay_client
from mobilepay_bridge.config import settings
from mobilepay_bridge.database.models import (
    PAYMENT_METHOD_MOBILEPAY,
    Agreement,
    AgreementStatus,
    Customer,
    IntervalUnit,
    PlanType,
    SubscriptionLink,
    SubscriptionLinkStatus,
)
from mobilepay_bridge.exceptions import (
    AgreementCancellationFailed,
    AgreementCreationFailed,
    AgreementLookupFailed,
    InvalidPlanType,
    ProviderAPIError,
    ProviderConfigError,
    TokenFetchFailed,
)
from mobilepay_bridge.schemas.mobilepay import GetAgreementResponse
from mobilepay_bridge.services.charge_service import calculate_next_billing_date

logger = structlog.get_logger(__name__)

PLAN_INTERVALS = {
    PlanType.monthly: (IntervalUnit.month, 1),
    PlanType.semi_annual: (IntervalUnit.month, 6),
    PlanType.annual: (IntervalUnit.year, 1),
}

PRODUCT_NAMES = {
    PlanType.monthly: "FamilyMind Månedligt Abonnement",
    PlanType.semi_annual: "FamilyMind Halvårligt Abonnement",
    PlanType.annual: "FamilyMind Årligt Abonnement",
}

PRODUCT_DESCRIPTION = "Adgang til FamilyMind Academy med alle kurser og materialer"

_AGREEMENT_STATUSES = {s.value for s in AgreementStatus}


def plan_interval(plan_type) -> Tuple[IntervalUnit, int]:
    """Billing interval for a plan type.

    Raises:
        InvalidPlanType: If the plan type is not recognised
    """
    try:
        return PLAN_INTERVALS[PlanType(plan_type)]
    except ValueError:
        raise InvalidPlanType(f"Invalid plan type: {plan_type}", details={"plan_type": str(plan_type)})


def to_minor_units(amount) -> int:
    """Convert a major-unit amount (e.g. 299.00 DKK) to integer øre, rounding half up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class AgreementService:
    """Agreement operations bound to one database session"""

    def __init__(self, db: Session, client: Optional[MobilePayClient] = None, notifier=None):
        self.db = db
        self.client = client or get_mobilepay_client()
        self.notifier = notifier

    def get_or_create_customer(
        self,
        email: str,
        phone: Optional[str] = None,
        name: Optional[str] = None,
        billing_customer_id: Optional[str] = None,
    ) -> Customer:
        customer = self.db.query(Customer).filter(Customer.email == email).first()
        if customer:
            return customer

        customer = Customer(
            email=email,
            phone=phone,
            name=name,
            billing_customer_id=billing_customer_id,
        )
        self.db.add(customer)
        self.db.commit()
        self.db.refresh(customer)
        logger.info("customer_created", customer_id=customer.id)
        return customer

    async def create_agreement(
        self,
        customer: Customer,
        plan_type,
        amount,
        product_name: str,
        product_description: str,
    ) -> Agreement:
        """
        Create a MobilePay agreement and persist it as pending.

        Args:
            customer: Payer
            plan_type: monthly, semi_annual or annual
            amount: Price per interval in major units (Decimal or str)
            product_name: Name shown in the MobilePay app
            product_description: Description shown in the MobilePay app

        Raises:
            InvalidPlanType: Unknown plan type
            AgreementCreationFailed: MobilePay rejected the agreement; nothing is stored
        """
        unit, count = plan_interval(plan_type)
        amount_minor = to_minor_units(amount)
        currency = settings.DEFAULT_CURRENCY

        payload = {
            "pricing": {"type": "LEGACY", "amount": amount_minor, "currency": currency},
            "interval": {"unit": unit.value, "count": count},
            "merchantAgreementUrl": settings.MERCHANT_AGREEMENT_URL,
            "merchantRedirectUrl": settings.MERCHANT_REDIRECT_URL,
            "productName": product_name,
            "productDescription": product_description,
        }

        try:
            created = await self.client.create_agreement(payload)
        except (ProviderAPIError, ProviderConfigError, TokenFetchFailed) as e:
            logger.error("agreement_creation_failed", customer_id=customer.id, error=e.message)
            raise AgreementCreationFailed(
                "Failed to create MobilePay agreement",
                details={"customer_id": customer.id},
                original_error=e,
            ) from e

        agreement = Agreement(
            customer_id=customer.id,
            mobilepay_agreement_id=created.agreement_id,
            status=AgreementStatus.pending.value,
            interval_unit=unit.value,
            interval_count=count,
            amount=amount_minor,
            currency=currency,
            product_name=product_name,
            product_description=product_description,
            merchant_agreement_url=settings.MERCHANT_AGREEMENT_URL,
            confirmation_url=created.confirmation_url,
        )
        self.db.add(agreement)
        self.db.commit()
        self.db.refresh(agreement)

        logger.info(
            "agreement_created",
            agreement_id=agreement.id,
            mobilepay_agreement_id=agreement.mobilepay_agreement_id,
            customer_id=customer.id,
            plan_type=PlanType(plan_type).value,
        )
        return agreement

    def create_subscription_link(
        self,
        customer: Customer,
        agreement: Agreement,
        plan_type,
        start: Optional[date] = None,
    ) -> SubscriptionLink:
        """Link the agreement to its plan; first billing is one interval after ``start``."""
        next_billing_date = calculate_next_billing_date(
            start or date.today(), agreement.interval_unit, agreement.interval_count
        )
        link = SubscriptionLink(
            customer_id=customer.id,
            agreement_id=agreement.id,
            payment_method=PAYMENT_METHOD_MOBILEPAY,
            plan_type=PlanType(plan_type).value,
            status=SubscriptionLinkStatus.active.value,
            next_billing_date=next_billing_date,
        )
        self.db.add(link)
        self.db.commit()
        self.db.refresh(link)
        logger.info(
            "subscription_link_created",
            subscription_id=link.id,
            agreement_id=agreement.id,
            next_billing_date=next_billing_date.isoformat(),
        )
        return link

    async def get_agreement_status(self, provider_agreement_id: str) -> GetAgreementResponse:
        """Read-through status lookup; does not touch local state."""
        try:
            remote = await self.client.get_agreement(provider_agreement_id)
        except (ProviderAPIError, ProviderConfigError, TokenFetchFailed) as e:
            logger.error(
                "agreement_lookup_failed",
                mobilepay_agreement_id=provider_agreement_id,
                error=e.message,
            )
            raise AgreementLookupFailed("Failed to fetch MobilePay agreement", original_error=e) from e
        logger.debug("agreement_status_fetched", mobilepay_agreement_id=provider_agreement_id, status=remote.status)
        return remote

    def update_agreement_status(self, agreement_id: str, status: str) -> None:
        """Unconditional local status write."""
        self.db.query(Agreement).filter(Agreement.id == agreement_id).update(
            {Agreement.status: status}, synchronize_session="fetch"
        )
        self.db.commit()
        logger.info("agreement_status_updated", agreement_id=agreement_id, status=status)

    async def cancel_agreement(self, provider_agreement_id: str) -> None:
        """Stop the agreement with MobilePay, then locally.

        Raises:
            AgreementCancellationFailed: MobilePay refused; local state untouched
        """
        try:
            await self.client.stop_agreement(provider_agreement_id)
        except (ProviderAPIError, ProviderConfigError, TokenFetchFailed) as e:
            logger.error(
                "agreement_cancellation_failed",
                mobilepay_agreement_id=provider_agreement_id,
                error=e.message,
            )
            raise AgreementCancellationFailed(
                "Failed to cancel MobilePay agreement",
                details={"mobilepay_agreement_id": provider_agreement_id},
                original_error=e,
            ) from e

        self.db.query(Agreement).filter(
            Agreement.mobilepay_agreement_id == provider_agreement_id
        ).update({Agreement.status: AgreementStatus.stopped.value}, synchronize_session="fetch")
        self.db.commit()
        logger.info("agreement_cancelled", mobilepay_agreement_id=provider_agreement_id)

    def handle_agreement_stopped(
        self, provider_agreement_id: str, actor: Optional[str] = None
    ) -> Optional[Agreement]:
        """Mark the agreement stopped and cancel its subscription links.

        Returns:
            The agreement, or None when it is unknown locally
        """
        agreement = (
            self.db.query(Agreement)
            .filter(Agreement.mobilepay_agreement_id == provider_agreement_id)
            .first()
        )
        if not agreement:
            logger.warning("agreement_stopped_for_unknown_agreement", mobilepay_agreement_id=provider_agreement_id)
            return None

        agreement.status = AgreementStatus.stopped.value
        cancelled = self.db.query(SubscriptionLink).filter(
            SubscriptionLink.agreement_id == agreement.id
        ).update({SubscriptionLink.status: SubscriptionLinkStatus.cancelled.value}, synchronize_session="fetch")
        self.db.commit()
        self.db.refresh(agreement)

        logger.info(
            "agreement_stopped",
            agreement_id=agreement.id,
            mobilepay_agreement_id=provider_agreement_id,
            actor=actor,
            subscriptions_cancelled=cancelled,
        )
        return agreement

    async def sync_agreement_status(
        self, agreement: Agreement, defer: Optional[Callable[..., None]] = None
    ) -> Agreement:
        """
        Poll MobilePay and persist a changed status.

        The write is conditional on the status read before the poll, so of two
        concurrent pollers only one performs the pending to active transition
        and sends the activation notification.

        Args:
            agreement: Local agreement to refresh
            defer: Schedules the activation notification instead of awaiting
                it, e.g. ``BackgroundTasks.add_task``

        Raises:
            AgreementLookupFailed: MobilePay could not be asked
        """
        old_status = agreement.status
        remote = await self.get_agreement_status(agreement.mobilepay_agreement_id)
        new_status = remote.status.lower()

        if new_status == old_status:
            return agreement
        if new_status not in _AGREEMENT_STATUSES:
            logger.warning("unknown_remote_agreement_status", agreement_id=agreement.id, status=remote.status)
            return agreement

        rows = self.db.query(Agreement).filter(
            Agreement.id == agreement.id,
            Agreement.status == old_status,
        ).update({Agreement.status: new_status}, synchronize_session=False)
        self.db.commit()
        self.db.refresh(agreement)

        if rows != 1:
            logger.info("agreement_status_changed_concurrently", agreement_id=agreement.id)
            return agreement

        logger.info(
            "agreement_status_synced",
            agreement_id=agreement.id,
            old_status=old_status,
            new_status=new_status,
        )
        if (
            old_status == AgreementStatus.pending.value
            and new_status == AgreementStatus.active.value
            and self.notifier is not None
        ):
            if defer is None:
                await self.notifier.notify_agreement_activated(agreement)
            else:
                # load the customer while the request session is still open
                agreement.customer
                defer(self.notifier.notify_agreement_activated, agreement)
        return agreement
