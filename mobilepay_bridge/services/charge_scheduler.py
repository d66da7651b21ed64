"""
Daily charge sweep.

Finds subscriptions billing ``CHARGE_ADVANCE_DAYS`` from today, creates their
charges and moves each subscription to its next billing date. Beat and the
admin trigger may overlap; the existing-charge check and the unique
constraint on charges keep each (agreement, due date) to a single charge.
"""

import time
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mobilepay_bridge.config import settings
from mobilepay_bridge.database.models import SubscriptionLink
from mobilepay_bridge.monitoring.metrics import scheduler_charges, scheduler_run_duration
from mobilepay_bridge.services.charge_service import ChargeService, calculate_next_billing_date

logger = structlog.get_logger(__name__)

DANISH_MONTHS = [
    "Januar",
    "Februar",
    "Marts",
    "April",
    "Maj",
    "Juni",
    "Juli",
    "August",
    "September",
    "Oktober",
    "November",
    "December",
]


@dataclass
class SchedulerRunResult:
    target_date: date
    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["target_date"] = self.target_date.isoformat()
        return data


def charge_description(product_name: str, due_date: date) -> str:
    return f"{product_name} - {DANISH_MONTHS[due_date.month - 1]} {due_date.year}"


class ChargeScheduler:
    """Turns due subscriptions into charges"""

    def __init__(
        self,
        db: Session,
        charge_service: Optional[ChargeService] = None,
        advance_days: Optional[int] = None,
        enqueue_monitor: Optional[Callable[[str, date], None]] = None,
    ):
        self.db = db
        self.charge_service = charge_service or ChargeService(db)
        self.advance_days = settings.CHARGE_ADVANCE_DAYS if advance_days is None else advance_days
        self.enqueue_monitor = enqueue_monitor

    async def schedule_upcoming_charges(self, today: Optional[date] = None) -> SchedulerRunResult:
        """Run one sweep. Per-subscription failures are counted, not raised."""
        started = time.monotonic()
        target_date = (today or date.today()) + timedelta(days=self.advance_days)
        result = SchedulerRunResult(target_date=target_date)

        logger.info("charge_scheduler_started", target_date=target_date.isoformat(), advance_days=self.advance_days)
        subscriptions = self.charge_service.get_subscriptions_due(target_date)
        logger.info("charge_scheduler_candidates", count=len(subscriptions))

        for subscription in subscriptions:
            result.processed += 1
            subscription_id, agreement_id = subscription.id, subscription.agreement_id
            try:
                created = await self.create_charge_for_subscription(subscription, target_date)
            except IntegrityError:
                # lost the race to a concurrent sweep
                self.db.rollback()
                result.skipped += 1
                scheduler_charges.labels(outcome="skipped").inc()
                logger.info("charge_created_concurrently", subscription_id=subscription_id)
                continue
            except Exception as e:
                self.db.rollback()
                result.failed += 1
                scheduler_charges.labels(outcome="failed").inc()
                logger.error(
                    "charge_scheduling_failed",
                    subscription_id=subscription_id,
                    agreement_id=agreement_id,
                    error=str(e),
                )
                continue

            outcome = "succeeded" if created else "skipped"
            if created:
                result.succeeded += 1
            else:
                result.skipped += 1
            scheduler_charges.labels(outcome=outcome).inc()

        elapsed = time.monotonic() - started
        result.duration_ms = int(elapsed * 1000)
        scheduler_run_duration.observe(elapsed)
        logger.info("charge_scheduler_completed", **result.to_dict())
        return result

    async def create_charge_for_subscription(self, subscription: SubscriptionLink, due_date: date) -> bool:
        """Create the charge for one subscription and advance its billing date.

        The charge row and the new billing date are committed together. A link
        still sitting on a due date that already has a charge is advanced
        without charging again.

        Returns:
            False when a charge for this due date already exists
        """
        agreement = subscription.agreement
        next_billing_date = calculate_next_billing_date(
            due_date, agreement.interval_unit, agreement.interval_count
        )

        if self.charge_service.charge_exists(agreement.id, due_date):
            logger.warning(
                "charge_already_exists_for_due_date",
                subscription_id=subscription.id,
                agreement_id=agreement.id,
                due_date=due_date.isoformat(),
            )
            if subscription.next_billing_date == due_date:
                self._advance(subscription, due_date, next_billing_date)
            return False

        charge = await self.charge_service.create_charge(
            agreement,
            agreement.amount,
            due_date,
            charge_description(agreement.product_name, due_date),
            retry_days=settings.CHARGE_RETRY_DAYS,
            commit=False,
        )
        self._advance(subscription, due_date, next_billing_date)

        if settings.CHARGE_MONITORING_ENABLED and self.enqueue_monitor is not None:
            try:
                self.enqueue_monitor(charge.id, due_date)
            except Exception as e:
                logger.warning("charge_monitor_enqueue_failed", charge_id=charge.id, error=str(e))
        return True

    def _advance(self, subscription: SubscriptionLink, due_date: date, next_billing_date: date) -> None:
        subscription.next_billing_date = next_billing_date
        self.db.commit()
        logger.info(
            "next_billing_date_advanced",
            subscription_id=subscription.id,
            old_date=due_date.isoformat(),
            new_date=next_billing_date.isoformat(),
        )
