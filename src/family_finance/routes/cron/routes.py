"""
Scheduled sweep endpoints.

Each route requires the shared cron secret, sent as ``x-cron-secret: <secret>`` or
``Authorization: Bearer <secret>``.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header

from family_finance.managers.budget_manager import budget_manager
from family_finance.managers.email_job_manager import email_job_manager
from family_finance.managers.logging_manager import get_logger
from family_finance.managers.reminder_manager import reminder_manager
from family_finance.managers.security_manager import security_manager
from family_finance.utils.serialization import to_public

logger = get_logger(prefix="[Cron Routes]")


async def verify_cron_secret(
    x_cron_secret: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
) -> None:
    security_manager.verify_cron_secret(x_cron_secret, authorization)


router = APIRouter(prefix="/cron", tags=["Cron"], dependencies=[Depends(verify_cron_secret)])


@router.post("/check-reminders")
async def check_reminders():
    summary = await reminder_manager.check_reminders()
    logger.info("Cron reminder sweep: %s", summary)
    return {"success": True, **to_public(summary)}


@router.post("/process-emails")
async def process_emails():
    result = await email_job_manager.process_pending()
    logger.info("Cron email batch: processed=%d failed=%d", result.processed, result.failed)
    return {"success": True, **to_public(result)}


@router.post("/generate-monthly-budgets")
async def generate_monthly_budgets():
    summary = await budget_manager.generate_all_families()
    return {"success": True, **to_public(summary)}


@router.get("/email-queue-stats")
async def email_queue_stats():
    return {"success": True, "stats": await email_job_manager.get_queue_stats()}
