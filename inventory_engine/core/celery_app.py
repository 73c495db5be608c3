"""
Inventory Engine — Celery application and beat schedule

Redis is both broker and result backend. Tasks are acked late, so every task
body must be idempotent (fulfillment and history rollover are).
"""
import logging

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from inventory_engine.core.config import get_settings
from inventory_engine.engine.broadcast import configure_broadcasting

settings = get_settings()

celery_app = Celery(
    "inventory_engine",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["inventory_engine.tasks.inventory_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
)

celery_app.conf.beat_schedule = {
    "generate-stock-history": {
        "task": "inventory.generate_stock_history",
        "schedule": crontab(minute=0, hour=0, day_of_month=1),
    },
    "check-expiring-batches": {
        "task": "inventory.check_expiring_batches",
        "schedule": crontab(minute=0, hour=settings.EXPIRY_CHECK_HOUR),
    },
    "broadcast-dashboard": {
        "task": "inventory.broadcast_dashboard",
        "schedule": crontab(
            minute="*/5",
            hour=f"{settings.DASHBOARD_START_HOUR}-{settings.DASHBOARD_END_HOUR - 1}",
        ),
    },
}


@worker_process_init.connect
def _configure_worker(**kwargs):
    logging.basicConfig(level=settings.LOG_LEVEL)
    configure_broadcasting()
