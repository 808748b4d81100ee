"""
Celery Application Configuration
"""
from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "seology_webhooks",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# ניקוי ה-event ledger — ברירת מחדל כל שעה
celery_app.conf.beat_schedule = {
    "cleanup-expired-webhook-events-hourly": {
        "task": "app.workers.tasks.cleanup_expired_webhook_events",
        "schedule": float(settings.WEBHOOK_CLEANUP_INTERVAL_SECONDS),
    },
}
