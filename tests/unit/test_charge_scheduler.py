"""Unit tests for the charge scheduler sweep"""

from datetime import date
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from mobilepay_bridge.config import settings
from mobilepay_bridge.database.models import Charge
from mobilepay_bridge.exceptions import ProviderAPIError
from mobilepay_bridge.schemas.mobilepay import CreateChargeResponse
from mobilepay_bridge.services.charge_scheduler import (
    ChargeScheduler,
    SchedulerRunResult,
    charge_description,
)
from mobilepay_bridge.services.charge_service import ChargeService, calculate_next_billing_date

TODAY = date(2026, 3, 12)
DUE = date(2026, 3, 15)


def charge_ids():
    n = 0

    async def _create(provider_agreement_id, payload, idempotency_key):
        nonlocal n
        n += 1
        return CreateChargeResponse(chargeId=f"chr_sched_{n}", status="PENDING")

    return _create


@pytest.fixture
def scheduler(db_session, mobilepay):
    mobilepay.create_charge.side_effect = charge_ids()
    return ChargeScheduler(db_session, ChargeService(db_session, client=mobilepay), advance_days=3)


@pytest.mark.unit
@pytest.mark.parametrize(
    "due, expected",
    [
        (date(2026, 3, 15), "Plan - Marts 2026"),
        (date(2026, 5, 1), "Plan - Maj 2026"),
        (date(2026, 10, 31), "Plan - Oktober 2026"),
    ],
)
def test_charge_description_uses_danish_month(due, expected):
    assert charge_description("Plan", due) == expected


@pytest.mark.unit
@pytest.mark.asyncio
async def test_sweep_creates_charge_and_advances_billing_date(scheduler, mobilepay, agreement, make_subscription, db_session):
    link = make_subscription(agreement, DUE)

    result = await scheduler.schedule_upcoming_charges(today=TODAY)

    assert result.target_date == DUE
    assert (result.processed, result.succeeded, result.skipped, result.failed) == (1, 1, 0, 0)

    charge = db_session.query(Charge).one()
    assert charge.due_date == DUE
    assert charge.amount == 29900
    assert charge.retry_days == 5
    assert charge.description == "FamilyMind Månedligt Abonnement - Marts 2026"

    db_session.refresh(link)
    assert link.next_billing_date == date(2026, 4, 15)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_second_sweep_same_day_creates_nothing(scheduler, mobilepay, agreement, make_subscription, db_session):
    make_subscription(agreement, DUE)

    await scheduler.schedule_upcoming_charges(today=TODAY)
    second = await scheduler.schedule_upcoming_charges(today=TODAY)

    assert second.succeeded == 0
    assert db_session.query(Charge).count() == 1
    assert mobilepay.create_charge.await_count == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_existing_charge_for_due_date_is_skipped(scheduler, mobilepay, agreement, make_subscription, make_charge, db_session):
    link = make_subscription(agreement, DUE)
    make_charge(agreement, DUE)

    result = await scheduler.schedule_upcoming_charges(today=TODAY)

    assert result.skipped == 1
    assert result.succeeded == 0
    mobilepay.create_charge.assert_not_awaited()
    # the link no longer waits on a due date that is already charged
    db_session.refresh(link)
    assert link.next_billing_date == date(2026, 4, 15)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrent_insert_counts_as_skipped(scheduler, mobilepay, agreement, make_subscription, make_charge):
    make_subscription(agreement, DUE)
    make_charge(agreement, DUE)

    # the other sweep inserted between our existence check and our insert
    with patch.object(ChargeService, "charge_exists", return_value=False):
        result = await scheduler.schedule_upcoming_charges(today=TODAY)

    assert result.skipped == 1
    assert result.failed == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_sweep(scheduler, mobilepay, make_agreement, make_subscription, db_session):
    broken = make_agreement()
    healthy = make_agreement()
    broken_link = make_subscription(broken, DUE)
    make_subscription(healthy, DUE)

    create = charge_ids()

    async def flaky(provider_agreement_id, payload, idempotency_key):
        if provider_agreement_id == broken.mobilepay_agreement_id:
            raise ProviderAPIError("agreement not active at MobilePay", status_code=400)
        return await create(provider_agreement_id, payload, idempotency_key)

    mobilepay.create_charge.side_effect = flaky

    result = await scheduler.schedule_upcoming_charges(today=TODAY)

    assert (result.processed, result.succeeded, result.failed) == (2, 1, 1)
    assert db_session.query(Charge).filter(Charge.agreement_id == healthy.id).count() == 1
    db_session.refresh(broken_link)
    assert broken_link.next_billing_date == DUE


@pytest.mark.unit
@pytest.mark.asyncio
async def test_next_date_failure_leaves_subscription_chargeable(scheduler, mobilepay, agreement, make_subscription, db_session):
    link = make_subscription(agreement, DUE)
    calls = {"n": 0}

    def fail_once(current, unit, count):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("interval lookup failed")
        return calculate_next_billing_date(current, unit, count)

    with patch("mobilepay_bridge.services.charge_scheduler.calculate_next_billing_date", side_effect=fail_once):
        first = await scheduler.schedule_upcoming_charges(today=TODAY)
        second = await scheduler.schedule_upcoming_charges(today=TODAY)

    assert first.failed == 1
    assert second.succeeded == 1
    assert db_session.query(Charge).count() == 1
    db_session.refresh(link)
    assert link.next_billing_date == date(2026, 4, 15)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_charge_and_billing_date_commit_together(scheduler, mobilepay, agreement, make_subscription, db_session):
    link = make_subscription(agreement, DUE)
    real_commit = db_session.commit
    calls = {"n": 0}

    def commit_fails_once():
        calls["n"] += 1
        if calls["n"] == 1:
            raise OperationalError("COMMIT", {}, Exception("connection lost"))
        real_commit()

    with patch.object(db_session, "commit", side_effect=commit_fails_once):
        first = await scheduler.schedule_upcoming_charges(today=TODAY)

        assert first.failed == 1
        assert db_session.query(Charge).count() == 0
        db_session.refresh(link)
        assert link.next_billing_date == DUE

        second = await scheduler.schedule_upcoming_charges(today=TODAY)

    assert second.succeeded == 1
    assert db_session.query(Charge).count() == 1
    db_session.refresh(link)
    assert link.next_billing_date == date(2026, 4, 15)
    # both attempts reuse the idempotency key so MobilePay dedupes the first call
    keys = [c.args[2] for c in mobilepay.create_charge.call_args_list]
    assert keys == ["agr_001-2026-03-15", "agr_001-2026-03-15"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_retry_window_comes_from_settings(scheduler, mobilepay, agreement, make_subscription, db_session):
    make_subscription(agreement, DUE)

    with patch.object(settings, "CHARGE_RETRY_DAYS", 3):
        await scheduler.schedule_upcoming_charges(today=TODAY)

    assert db_session.query(Charge).one().retry_days == 3
    payload = mobilepay.create_charge.call_args.args[1]
    assert payload["retryDays"] == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_inactive_agreements_are_not_charged(scheduler, mobilepay, make_agreement, make_subscription):
    make_subscription(make_agreement(status="pending"), DUE)
    make_subscription(make_agreement(status="stopped"), DUE)

    result = await scheduler.schedule_upcoming_charges(today=TODAY)

    assert result.processed == 0
    mobilepay.create_charge.assert_not_awaited()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_monitor_enqueued_when_enabled(db_session, mobilepay, agreement, make_subscription):
    mobilepay.create_charge.side_effect = charge_ids()
    enqueue = MagicMock()
    scheduler = ChargeScheduler(
        db_session, ChargeService(db_session, client=mobilepay), advance_days=3, enqueue_monitor=enqueue
    )
    make_subscription(agreement, DUE)

    with patch.object(settings, "CHARGE_MONITORING_ENABLED", True):
        await scheduler.schedule_upcoming_charges(today=TODAY)

    charge = db_session.query(Charge).one()
    enqueue.assert_called_once_with(charge.id, DUE)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_monitor_enqueue_failure_is_tolerated(db_session, mobilepay, agreement, make_subscription):
    mobilepay.create_charge.side_effect = charge_ids()
    enqueue = MagicMock(side_effect=ConnectionError("broker down"))
    scheduler = ChargeScheduler(
        db_session, ChargeService(db_session, client=mobilepay), advance_days=3, enqueue_monitor=enqueue
    )
    make_subscription(agreement, DUE)

    with patch.object(settings, "CHARGE_MONITORING_ENABLED", True):
        result = await scheduler.schedule_upcoming_charges(today=TODAY)

    assert result.succeeded == 1
    assert result.failed == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_monitor_not_enqueued_when_disabled(scheduler, agreement, make_subscription):
    enqueue = MagicMock()
    scheduler.enqueue_monitor = enqueue
    make_subscription(agreement, DUE)

    await scheduler.schedule_upcoming_charges(today=TODAY)

    enqueue.assert_not_called()


@pytest.mark.unit
def test_result_to_dict():
    result = SchedulerRunResult(target_date=DUE, processed=2, succeeded=1, failed=1)

    assert result.to_dict() == {
        "target_date": "2026-03-15",
        "processed": 2,
        "succeeded": 1,
        "skipped": 0,
        "failed": 1,
        "duration_ms": 0,
    }
