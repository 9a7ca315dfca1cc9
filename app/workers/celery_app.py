"""
Celery application for the dispatcher, the expiry sweep and queue cleanup

Workers log through the same JSON setup as the API; Celery is told to leave
the root logger alone.
"""
from celery import Celery

from app.core.config import settings
from app.core.logging import setup_logging

setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=f"{settings.APP_NAME}-worker",
)

celery_app = Celery(
    "reward_ledger",
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
    worker_hijack_root_logger=False,
    # A batch that outlives its claim lease would see its items reclaimed
    task_time_limit=settings.DISPATCHER_LEASE_SECONDS,
    task_soft_time_limit=int(settings.DISPATCHER_LEASE_SECONDS * 0.8),
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery_app.conf.beat_schedule = {
    # The poll interval is also the retry backoff for failed due items
    "process-due-items": {
        "task": "app.workers.tasks.process_due_items",
        "schedule": settings.DISPATCHER_POLL_SECONDS,
    },
    "schedule-expiry-sweep": {
        "task": "app.workers.tasks.schedule_expiry_sweep",
        "schedule": float(settings.EXPIRY_SWEEP_SECONDS),
    },
    "cleanup-sent-due-items": {
        "task": "app.workers.tasks.cleanup_sent_due_items",
        "schedule": 86400.0,
    },
}
