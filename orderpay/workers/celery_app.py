"""
Celery Application Configuration
"""
from celery import Celery

from orderpay.core.config import settings

celery_app = Celery(
    "orderpay",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["orderpay.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=120,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "cancel-expired-payments": {
        "task": "orderpay.workers.tasks.cancel_expired_payments",
        "schedule": float(settings.PAYMENT_SWEEP_INTERVAL_SECONDS),
    },
}
