"""Celery application with Redis broker and the beat schedule for the finance sweeps.

Scheduled tasks:
- Reminder sweep, daily at 09:00 UTC
- Email queue batch, every 30 seconds
- Monthly budget generation, 00:05 UTC on the first day of the month
"""

from celery import Celery
from celery.schedules import crontab
from kombu import Exchange, Queue

from family_finance.config import settings
from family_finance.managers.logging_manager import get_logger

logger = get_logger(prefix="[CeleryApp]")

celery_app = Celery(
    "family_finance",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["family_finance.tasks.finance_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=300,
    task_soft_time_limit=240,
    result_expires=3600,
    worker_prefetch_multiplier=1,
    task_routes={
        "family_finance.process_email_queue": {"queue": "email"},
        "family_finance.*": {"queue": "finance"},
    },
    task_queues=(
        Queue("default", Exchange("default"), routing_key="default"),
        Queue("finance", Exchange("finance"), routing_key="finance"),
        Queue("email", Exchange("finance"), routing_key="finance.email"),
    ),
    beat_schedule={
        "check-reminders-daily": {
            "task": "family_finance.check_reminders",
            "schedule": crontab(hour=9, minute=0),
        },
        "process-email-queue": {
            "task": "family_finance.process_email_queue",
            "schedule": 30.0,
        },
        "generate-monthly-budgets": {
            "task": "family_finance.generate_monthly_budgets",
            "schedule": crontab(day_of_month=1, hour=0, minute=5),
        },
    },
)

logger.info("Celery application initialized with Redis broker")
