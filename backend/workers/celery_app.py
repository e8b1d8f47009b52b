"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "modelswap",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.rotation"],
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
        "workers.rotation.*": {"queue": "rotation"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # The sweep is safe to overlap with the HTTP cron ingress: each due test
    # is claimed with a compare-and-swap lease before it is rotated.
    beat_schedule={
        "rotate-due-tests": {
            "task": "workers.rotation.rotate_due_tests",
            "schedule": crontab(minute=f"*/{settings.rotation_sweep_minutes}"),
            "options": {"queue": "rotation"},
        },
    },
)
