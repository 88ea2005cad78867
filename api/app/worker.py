from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "ledgersync",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    # A run never outlives its admission slot
    task_time_limit=settings.sync_slot_ttl_seconds,
)

# ─── Scheduled tasks ──────────────────────────
celery_app.conf.beat_schedule = {
    "sync-due-accounts": {
        "task": "app.services.sync.sync_due_accounts",
        "schedule": crontab(minute="*/5"),  # every 5 min; the planner decides which accounts are due
    },
}

# Explicitly include task modules so the worker registers them on startup.
# autodiscover_tasks() only looks for a "tasks.py" file, which we don't use.
celery_app.conf.include = [
    "app.services.sync",
]
