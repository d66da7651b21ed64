"""Prometheus metrics for the MobilePay bridge."""

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

router = APIRouter(tags=["monitoring"])

webhooks_received = Counter(
    "mobilepay_webhooks_received_total",
    "Total number of MobilePay webhooks accepted",
    ["event_type"],
)

webhook_reconciliation_errors = Counter(
    "mobilepay_webhook_reconciliation_errors_total",
    "Webhooks whose reconciliation raised",
    ["event_type"],
)

scheduler_charges = Counter(
    "mobilepay_scheduler_charges_total",
    "Charge scheduler outcomes per candidate subscription",
    ["outcome"],  # succeeded, skipped, failed
)

scheduler_run_duration = Histogram(
    "mobilepay_scheduler_run_seconds",
    "Charge scheduler sweep duration in seconds",
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0),
)

notifications_sent = Counter(
    "mobilepay_notifications_total",
    "Downstream notification outcomes",
    ["event", "status"],  # status: delivered, failed, skipped
)


@router.get("/metrics", response_class=Response)
async def get_metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
