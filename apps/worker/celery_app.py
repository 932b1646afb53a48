"""Celery application for background tasks."""

from celery import Celery
from celery.schedules import crontab

from apps.api.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "backbone_integrations",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
)

# Configure beat schedule
celery_app.conf.beat_schedule = {
    "refresh-connections-hourly": {
        "task": "refresh_expiring_connections",
        "schedule": crontab(minute=0),
        "options": {
            "expires": 3300,  # Skip a run still queued when the next one is due
        },
    },
}

# Auto-discover tasks
celery_app.autodiscover_tasks(["apps.worker.tasks"])
