"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "bottleops",
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
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.variance.*": {"queue": "variance"},
        "workers.scheduler.*": {"queue": "scheduler"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Organization-scoped jobs fan out via workers.scheduler.dispatch_active_tenants.
    beat_schedule={
        "variance-scan-hourly": {
            "task": "workers.scheduler.dispatch_active_tenants",
            "schedule": crontab(minute=15),
            "kwargs": {"task_name": "workers.variance.run_variance_scan"},
            "options": {"queue": "scheduler"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
