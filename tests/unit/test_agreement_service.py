"""Unit tests for AgreementService"""

from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from mobilepay_bridge.database.models import Agreement, AgreementStatus, SubscriptionLink
from mobilepay_bridge.exceptions import (
    AgreementCancellationFailed,
    AgreementCreationFailed,
    AgreementLookupFailed,
    InvalidPlanType,
    ProviderAPIError,
    ProviderConfigError,
)
from mobilepay_bridge.schemas.mobilepay import CreateAgreementResponse, GetAgreementResponse
from mobilepay_bridge.services.agreement_service import (
    AgreementService,
    plan_interval,
    to_minor_units,
)


@pytest.fixture
def service(db_session, mobilepay, notifier):
    return AgreementService(db_session, client=mobilepay, notifier=notifier)


@pytest.mark.unit
@pytest.mark.parametrize(
    "amount, expected",
    [
        (Decimal("299.00"), 29900),
        ("299.00", 29900),
        (Decimal("0.10"), 10),
        (Decimal("19.995"), 2000),
        (149.95, 14995),
    ],
)
def test_to_minor_units(amount, expected):
    assert to_minor_units(amount) == expected


@pytest.mark.unit
def test_plan_intervals():
    assert plan_interval("monthly") == ("MONTH", 1)
    assert plan_interval("semi_annual") == ("MONTH", 6)
    assert plan_interval("annual") == ("YEAR", 1)


@pytest.mark.unit
def test_unknown_plan_type():
    with pytest.raises(InvalidPlanType):
        plan_interval("weekly")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_agreement_persists_pending(service, mobilepay, customer, db_session):
    mobilepay.create_agreement.return_value = CreateAgreementResponse(
        agreementId="agr_new", vippsConfirmationUrl="https://confirm/agr_new"
    )

    agreement = await service.create_agreement(
        customer, "monthly", Decimal("299.00"), "FamilyMind Månedligt Abonnement", "desc"
    )

    assert agreement.status == AgreementStatus.pending.value
    assert agreement.amount == 29900
    assert agreement.interval_unit == "MONTH"
    assert agreement.interval_count == 1
    assert agreement.mobilepay_agreement_id == "agr_new"
    assert agreement.confirmation_url == "https://confirm/agr_new"

    payload = mobilepay.create_agreement.call_args.args[0]
    assert payload["pricing"] == {"type": "LEGACY", "amount": 29900, "currency": "DKK"}
    assert payload["interval"] == {"unit": "MONTH", "count": 1}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_agreement_failure_stores_nothing(service, mobilepay, customer, db_session):
    mobilepay.create_agreement.side_effect = ProviderAPIError("rejected", status_code=400)

    with pytest.raises(AgreementCreationFailed):
        await service.create_agreement(customer, "annual", Decimal("2990.00"), "Plan", "desc")

    assert db_session.query(Agreement).count() == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_agreement_without_credentials_fails_cleanly(service, mobilepay, customer, db_session):
    mobilepay.create_agreement.side_effect = ProviderConfigError(
        "MobilePay credentials are not configured", details={"missing": ["client_id"]}
    )

    with pytest.raises(AgreementCreationFailed):
        await service.create_agreement(customer, "monthly", Decimal("299.00"), "Plan", "desc")

    assert db_session.query(Agreement).count() == 0


@pytest.mark.unit
def test_get_or_create_customer_reuses_email(service, customer):
    again = service.get_or_create_customer("anna@example.dk", name="Other Name")
    assert again.id == customer.id


@pytest.mark.unit
def test_subscription_link_starts_one_interval_out(service, customer, make_agreement):
    agreement = make_agreement(status="pending", interval_unit="MONTH", interval_count=6)

    link = service.create_subscription_link(customer, agreement, "semi_annual", start=date(2026, 1, 31))

    assert link.next_billing_date == date(2026, 7, 31)
    assert link.status == "active"
    assert link.payment_method == "mobilepay"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cancel_agreement_stops_locally_after_provider(service, mobilepay, agreement, db_session):
    await service.cancel_agreement(agreement.mobilepay_agreement_id)

    mobilepay.stop_agreement.assert_awaited_once_with(agreement.mobilepay_agreement_id)
    db_session.refresh(agreement)
    assert agreement.status == AgreementStatus.stopped.value


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cancel_agreement_provider_failure_leaves_state(service, mobilepay, agreement, db_session):
    mobilepay.stop_agreement.side_effect = ProviderAPIError("nope", status_code=409)

    with pytest.raises(AgreementCancellationFailed):
        await service.cancel_agreement(agreement.mobilepay_agreement_id)

    db_session.refresh(agreement)
    assert agreement.status == AgreementStatus.active.value


@pytest.mark.unit
def test_handle_agreement_stopped_cascades(service, agreement, make_subscription, db_session):
    link = make_subscription(agreement, date(2026, 3, 1))

    result = service.handle_agreement_stopped(agreement.mobilepay_agreement_id, actor="USER")

    assert result.status == AgreementStatus.stopped.value
    db_session.refresh(link)
    assert link.status == "cancelled"

    # re-delivery is a no-op
    again = service.handle_agreement_stopped(agreement.mobilepay_agreement_id)
    assert again.status == AgreementStatus.stopped.value
    assert db_session.query(SubscriptionLink).filter_by(status="active").count() == 0


@pytest.mark.unit
def test_handle_agreement_stopped_unknown_agreement(service):
    assert service.handle_agreement_stopped("agr_unknown") is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_sync_pending_to_active_notifies_once(service, mobilepay, notifier, make_agreement):
    agreement = make_agreement(status="pending")
    mobilepay.get_agreement.return_value = GetAgreementResponse(id=agreement.mobilepay_agreement_id, status="ACTIVE")

    synced = await service.sync_agreement_status(agreement)
    assert synced.status == "active"
    notifier.notify_agreement_activated.assert_awaited_once()

    # a second poll sees no change
    await service.sync_agreement_status(synced)
    notifier.notify_agreement_activated.assert_awaited_once()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_sync_defers_activation_notification(service, mobilepay, notifier, make_agreement):
    agreement = make_agreement(status="pending")
    mobilepay.get_agreement.return_value = GetAgreementResponse(id=agreement.mobilepay_agreement_id, status="ACTIVE")
    defer = MagicMock()

    synced = await service.sync_agreement_status(agreement, defer=defer)

    assert synced.status == "active"
    defer.assert_called_once_with(notifier.notify_agreement_activated, synced)
    notifier.notify_agreement_activated.assert_not_awaited()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_sync_loses_race_without_notifying(service, mobilepay, notifier, make_agreement, db_session):
    agreement = make_agreement(status="pending")

    async def concurrent_poll(_agreement_id):
        # another poller moves it to active while this one waits on MobilePay
        db_session.query(Agreement).filter(Agreement.id == agreement.id).update(
            {Agreement.status: "active"}, synchronize_session=False
        )
        db_session.commit()
        return GetAgreementResponse(id=agreement.mobilepay_agreement_id, status="ACTIVE")

    mobilepay.get_agreement.side_effect = concurrent_poll

    await service.sync_agreement_status(agreement)

    notifier.notify_agreement_activated.assert_not_awaited()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_sync_active_to_stopped_does_not_notify_activation(service, mobilepay, notifier, agreement):
    mobilepay.get_agreement.return_value = GetAgreementResponse(id=agreement.mobilepay_agreement_id, status="STOPPED")

    synced = await service.sync_agreement_status(agreement)

    assert synced.status == "stopped"
    notifier.notify_agreement_activated.assert_not_awaited()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_get_agreement_status_wraps_provider_error(service, mobilepay):
    mobilepay.get_agreement.side_effect = ProviderAPIError("down", status_code=503)

    with pytest.raises(AgreementLookupFailed):
        await service.get_agreement_status("agr_1")
