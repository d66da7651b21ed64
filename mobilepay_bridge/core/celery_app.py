"""Celery application for the charge sweep and charge monitoring."""

from celery import Celery

from mobilepay_bridge.config import settings
from mobilepay_bridge.core.cron_utils import parse_cron_string

app = Celery(
    'mobilepay_bridge',
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=['mobilepay_bridge.core.tasks']
)

# Dedicated queue so other services sharing the Redis broker don't steal tasks
app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    task_time_limit=600,
    task_soft_time_limit=590,
    task_default_queue='mobilepay',
)

app.conf.beat_schedule = {
    'schedule-upcoming-charges': {
        'task': 'mobilepay_bridge.core.tasks.schedule_upcoming_charges',
        'schedule': parse_cron_string(settings.CHARGE_SCHEDULER_CRON),
    },
}
