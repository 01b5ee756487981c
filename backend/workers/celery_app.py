"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "restockops",
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
        "workers.restock.*": {"queue": "restock"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        # Analyses stuck in pending/processing past the grace period → failed
        "recover-abandoned-analyses-15m": {
            "task": "workers.restock.recover_abandoned_analyses",
            "schedule": crontab(minute="*/15"),
            "options": {"queue": "restock"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
