from datetime import timedelta

from celery import Celery

from ledgersync.core.config import settings

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
    task_routes={"ledgersync.services.accounting.tasks.*": {"queue": settings.accounting_queue}},
)

# ─── Scheduled tasks ──────────────────────────
celery_app.conf.beat_schedule = {
    "accounting-sync-all-teams": {
        "task": "ledgersync.services.accounting.tasks.sync_all_teams",
        "schedule": timedelta(minutes=settings.accounting_sync_interval_minutes),
    },
}

# Task modules are listed explicitly; autodiscover_tasks() only finds packages
celery_app.conf.include = [
    "ledgersync.services.accounting.tasks",
]
