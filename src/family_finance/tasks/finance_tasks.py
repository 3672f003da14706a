"""
Celery tasks wrapping the scheduled sweeps.

Each task opens its own MongoDB connection inside ``asyncio.run`` and closes it afterwards, so
the Motor client never outlives the event loop it was created on.
"""

import asyncio
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Dict

from family_finance.database import db_manager
from family_finance.managers.budget_manager import budget_manager
from family_finance.managers.email_job_manager import email_job_manager
from family_finance.managers.logging_manager import get_logger
from family_finance.managers.reminder_manager import reminder_manager
from family_finance.tasks.celery_app import celery_app

logger = get_logger(prefix="[FinanceTasks]")


async def _with_database(operation: Callable[[], Awaitable[Any]]) -> Any:
    await db_manager.connect()
    try:
        return await operation()
    finally:
        await db_manager.disconnect()


async def _async_check_reminders() -> Dict[str, Any]:
    summary = await reminder_manager.check_reminders()
    result = asdict(summary)
    result["timestamp"] = summary.timestamp.isoformat()
    return result


async def _async_process_email_queue() -> Dict[str, Any]:
    return asdict(await email_job_manager.process_pending())


async def _async_generate_monthly_budgets() -> Dict[str, Any]:
    summary = await budget_manager.generate_all_families()
    summary["timestamp"] = summary["timestamp"].isoformat()
    summary["results"] = [
        {"family_id": r["family_id"], "generated": r["generated"], "skipped": len(r["skipped"])}
        for r in summary["results"]
    ]
    return summary


@celery_app.task(name="family_finance.check_reminders", bind=True, max_retries=3, default_retry_delay=60)
def check_reminders(self) -> Dict[str, Any]:
    try:
        result = asyncio.run(_with_database(_async_check_reminders))
        logger.info("Reminder sweep task finished: %s", result)
        return result
    except Exception as e:
        logger.error("Reminder sweep task failed: %s", e, exc_info=True)
        if self.request.retries < self.max_retries:
            raise self.retry(countdown=self.default_retry_delay * (2**self.request.retries))
        raise


@celery_app.task(name="family_finance.process_email_queue", bind=True)
def process_email_queue(self) -> Dict[str, Any]:
    """No retry: the next beat tick picks up whatever is still pending."""
    try:
        result = asyncio.run(_with_database(_async_process_email_queue))
        if result["processed"]:
            logger.info("Email queue task processed %d jobs (%d failed)", result["processed"], result["failed"])
        return result
    except Exception as e:
        logger.error("Email queue task failed: %s", e, exc_info=True)
        raise


@celery_app.task(name="family_finance.generate_monthly_budgets", bind=True, max_retries=3, default_retry_delay=300)
def generate_monthly_budgets(self) -> Dict[str, Any]:
    try:
        result = asyncio.run(_with_database(_async_generate_monthly_budgets))
        logger.info(
            "Monthly budget task %s: %d generated, %d skipped",
            result["period"],
            result["generated_count"],
            result["skipped_count"],
        )
        return result
    except Exception as e:
        logger.error("Monthly budget task failed: %s", e, exc_info=True)
        if self.request.retries < self.max_retries:
            raise self.retry(countdown=self.default_retry_delay * (2**self.request.retries))
        raise
