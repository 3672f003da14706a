"""
ReminderManager: payment reminders and the notification sweep.

``check_reminders`` is safe to run on any cadence. A reminder stamped with ``last_notified``
is excluded for ``REMINDER_NOTIFY_COOLDOWN_HOURS``, one-shot reminders complete on their first
notification, and every queued email carries a per-member, per-day ``dedupe_key``.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING

from family_finance.config import settings
from family_finance.database import db_manager
from family_finance.managers.email_job_manager import JOB_REMINDER_EMAIL, email_job_manager
from family_finance.managers.family_context import new_id
from family_finance.managers.logging_manager import get_logger
from family_finance.utils.datetime_utils import add_months, days_until, ensure_timezone_aware, start_of_day, utc_now
from family_finance.utils.error_handling import Conflict, NotFound, ValidationError

logger = get_logger(prefix="[ReminderManager]")

PRIORITIES = ("LOW", "MEDIUM", "HIGH", "URGENT")
RECURRENCE_TYPES = ("DAILY", "WEEKLY", "MONTHLY", "QUARTERLY", "YEARLY", "CUSTOM")
STATUS_FILTERS = ("upcoming", "overdue", "completed", "all")
MAX_PAGE_SIZE = 100


@dataclass
class SweepSummary:
    timestamp: datetime
    reminders_processed: int = 0
    email_jobs_created: int = 0
    errors: int = 0


def is_eligible(reminder: Dict[str, Any], now: datetime) -> bool:
    """
    Whether a reminder should be notified at ``now``.

    Due within ``notify_days_before`` days (or overdue), active, not completed, and not
    notified within the cool-down.
    """
    if not reminder.get("is_active", True) or reminder.get("is_completed"):
        return False

    now = ensure_timezone_aware(now)
    days = days_until(reminder["due_date"], now)
    should_notify = days <= reminder.get("notify_days_before", 1) or days < 0

    last_notified = reminder.get("last_notified")
    notified_recently = last_notified is not None and (
        now - ensure_timezone_aware(last_notified) < timedelta(hours=settings.REMINDER_NOTIFY_COOLDOWN_HOURS)
    )
    return should_notify and not notified_recently


def calculate_next_due_date(date: datetime, recurrence_type: str, interval: int = 1) -> datetime:
    interval = max(1, interval or 1)
    if recurrence_type == "DAILY":
        return date + timedelta(days=interval)
    if recurrence_type == "WEEKLY":
        return date + timedelta(weeks=interval)
    if recurrence_type == "MONTHLY":
        return add_months(date, interval)
    if recurrence_type == "QUARTERLY":
        return add_months(date, 3 * interval)
    if recurrence_type == "YEARLY":
        return add_months(date, 12 * interval)
    return date


def reminder_dedupe_key(reminder_id: str, user_id: str, now: datetime) -> str:
    return f"reminder:{reminder_id}:{user_id}:{now.strftime('%Y-%m-%d')}"


class ReminderManager:
    """Reminder CRUD, calendar view and the notification sweep."""

    def __init__(self, db_manager=None, email_job_manager=None):
        self.db_manager = db_manager or globals()["db_manager"]
        self.email_job_manager = email_job_manager or globals()["email_job_manager"]
        self.logger = logger

    @property
    def reminders(self):
        return self.db_manager.get_collection("reminders")

    # --- Sweep ---

    async def _load_candidates(self, now: datetime) -> List[Dict[str, Any]]:
        cooldown_cutoff = now - timedelta(hours=settings.REMINDER_NOTIFY_COOLDOWN_HOURS)
        query = {
            "is_active": True,
            "is_completed": False,
            "due_date": {"$lte": now + timedelta(days=settings.REMINDER_MAX_NOTIFY_DAYS)},
            "$or": [{"last_notified": None}, {"last_notified": {"$lt": cooldown_cutoff}}],
        }
        return await self.reminders.find(query).sort("due_date", ASCENDING).to_list(length=None)

    async def _family_recipients(self, family_id: str) -> List[Dict[str, Any]]:
        members = await self.db_manager.get_collection("family_members").find(
            {"family_id": family_id, "is_active": True}
        ).to_list(length=None)
        user_ids = [m["user_id"] for m in members]
        if not user_ids:
            return []
        users = await self.db_manager.get_collection("users").find(
            {"user_id": {"$in": user_ids}}
        ).to_list(length=None)
        return [u for u in users if u.get("email")]

    async def check_reminders(self, now: Optional[datetime] = None) -> SweepSummary:
        """
        Queue reminder emails for every eligible reminder.

        Each member's job and each reminder are isolated: a failure increments ``errors`` and
        the sweep moves on.
        """
        now = ensure_timezone_aware(now or utc_now())
        summary = SweepSummary(timestamp=now)
        candidates = [r for r in await self._load_candidates(now) if is_eligible(r, now)]
        self.logger.info("Reminder sweep found %d eligible reminders", len(candidates))

        for reminder in candidates:
            try:
                family = await self.db_manager.get_collection("families").find_one(
                    {"family_id": reminder["family_id"]}
                )
                family_name = (family or {}).get("name", "")
                payload = {
                    "title": reminder["title"],
                    "amount": reminder.get("amount"),
                    "due_date": ensure_timezone_aware(reminder["due_date"]).strftime("%Y-%m-%d"),
                    "priority": reminder.get("priority", "MEDIUM"),
                    "days_until_due": days_until(reminder["due_date"], now),
                }

                for user in await self._family_recipients(reminder["family_id"]):
                    try:
                        await self.email_job_manager.enqueue(
                            JOB_REMINDER_EMAIL,
                            {
                                "to": user["email"],
                                "name": user.get("name"),
                                "reminder": payload,
                                "family_name": family_name,
                            },
                            dedupe_key=reminder_dedupe_key(reminder["reminder_id"], user["user_id"], now),
                        )
                        summary.email_jobs_created += 1
                    except Conflict:
                        self.logger.debug(
                            "Reminder %s already queued today for %s", reminder["reminder_id"], user["user_id"]
                        )
                    except Exception as e:
                        summary.errors += 1
                        self.logger.error(
                            "Failed to queue reminder %s for %s: %s", reminder["reminder_id"], user["user_id"], e
                        )

                updates: Dict[str, Any] = {"last_notified": now}
                if not reminder.get("is_recurring"):
                    updates.update({"is_completed": True, "completed_at": now})
                await self.reminders.update_one({"reminder_id": reminder["reminder_id"]}, {"$set": updates})
                summary.reminders_processed += 1
            except Exception as e:
                summary.errors += 1
                self.logger.error("Failed to process reminder %s: %s", reminder.get("reminder_id"), e, exc_info=True)

        self.logger.info(
            "Reminder sweep done: %d processed, %d jobs, %d errors",
            summary.reminders_processed,
            summary.email_jobs_created,
            summary.errors,
        )
        return summary

    # --- CRUD ---

    def _validate_fields(self, data: Dict[str, Any], due_date: Optional[datetime]) -> Dict[str, Any]:
        clean: Dict[str, Any] = {}
        if "title" in data:
            title = (data.get("title") or "").strip()
            if not title:
                raise ValidationError("Title is required", field="title")
            clean["title"] = title
        if "description" in data:
            clean["description"] = data.get("description")
        if data.get("amount") is not None:
            if float(data["amount"]) <= 0:
                raise ValidationError("Amount must be greater than zero", field="amount", value=data["amount"])
            clean["amount"] = float(data["amount"])
        if "notify_days_before" in data and data["notify_days_before"] is not None:
            days = int(data["notify_days_before"])
            if not 0 <= days <= settings.REMINDER_MAX_NOTIFY_DAYS:
                raise ValidationError(
                    f"notify_days_before must be between 0 and {settings.REMINDER_MAX_NOTIFY_DAYS}",
                    field="notify_days_before",
                    value=days,
                )
            clean["notify_days_before"] = days
        if data.get("priority") is not None:
            priority = data["priority"].upper()
            if priority not in PRIORITIES:
                raise ValidationError("Invalid priority", field="priority", value=priority, constraint=", ".join(PRIORITIES))
            clean["priority"] = priority
        if data.get("recurrence_type") is not None:
            recurrence_type = data["recurrence_type"].upper()
            if recurrence_type not in RECURRENCE_TYPES:
                raise ValidationError("Invalid recurrence type", field="recurrence_type", value=recurrence_type)
            clean["recurrence_type"] = recurrence_type
        if data.get("recurrence_interval") is not None:
            if int(data["recurrence_interval"]) < 1:
                raise ValidationError("recurrence_interval must be at least 1", field="recurrence_interval")
            clean["recurrence_interval"] = int(data["recurrence_interval"])
        if data.get("recurrence_end_date") is not None:
            end_date = ensure_timezone_aware(data["recurrence_end_date"])
            if due_date is not None and end_date <= due_date:
                raise ValidationError("Recurrence end date must be after the due date", field="recurrence_end_date")
            clean["recurrence_end_date"] = end_date
        if "category_id" in data:
            clean["category_id"] = data.get("category_id")
        return clean

    async def create_reminder(self, family_id: str, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        if data.get("due_date") is None:
            raise ValidationError("Due date is required", field="due_date")
        due_date = ensure_timezone_aware(data["due_date"])
        if start_of_day(due_date) < start_of_day(utc_now()):
            raise ValidationError("Due date cannot be in the past", field="due_date", value=due_date.isoformat())

        clean = self._validate_fields({"title": data.get("title"), **data}, due_date)
        is_recurring = bool(data.get("is_recurring"))
        if is_recurring and not clean.get("recurrence_type"):
            raise ValidationError("Recurring reminders need a recurrence type", field="recurrence_type")

        now = utc_now()
        reminder = {
            "reminder_id": new_id("rem"),
            "family_id": family_id,
            "title": clean["title"],
            "description": clean.get("description"),
            "amount": clean.get("amount"),
            "due_date": due_date,
            "is_recurring": is_recurring,
            "recurrence_type": clean.get("recurrence_type") if is_recurring else None,
            "recurrence_interval": clean.get("recurrence_interval", 1) if is_recurring else None,
            "recurrence_end_date": clean.get("recurrence_end_date") if is_recurring else None,
            "next_due_date": None,
            "category_id": clean.get("category_id"),
            "priority": clean.get("priority", "MEDIUM"),
            "notify_days_before": clean.get("notify_days_before", 1),
            "last_notified": None,
            "is_completed": False,
            "completed_at": None,
            "is_active": True,
            "created_by": user_id,
            "created_at": now,
            "updated_at": now,
        }
        if is_recurring:
            reminder["next_due_date"] = calculate_next_due_date(
                due_date, reminder["recurrence_type"], reminder["recurrence_interval"]
            )

        await self.reminders.insert_one(reminder)
        self.logger.info("Created reminder %s in family %s", reminder["reminder_id"], family_id)
        return reminder

    def _with_view_fields(self, reminder: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        return {
            **reminder,
            "days_until_due": days_until(reminder["due_date"], now),
            "is_notified": reminder.get("last_notified") is not None,
        }

    async def list_reminders(
        self,
        family_id: str,
        status: str = "all",
        priority: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        if status not in STATUS_FILTERS:
            raise ValidationError("Invalid status filter", field="status", value=status)
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        now = utc_now()

        query: Dict[str, Any] = {"family_id": family_id, "is_active": True}
        if status == "upcoming":
            query.update({"is_completed": False, "due_date": {"$gte": now}})
        elif status == "overdue":
            query.update({"is_completed": False, "due_date": {"$lt": now}})
        elif status == "completed":
            query["is_completed"] = True
        if priority:
            query["priority"] = priority.upper()

        total = await self.reminders.count_documents(query)
        cursor = self.reminders.find(query).sort("due_date", ASCENDING).skip((page - 1) * limit).limit(limit)
        items = await cursor.to_list(length=limit)
        return {
            "reminders": [self._with_view_fields(r, now) for r in items],
            "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
        }

    async def get_reminder(self, family_id: str, reminder_id: str) -> Dict[str, Any]:
        reminder = await self.reminders.find_one({"reminder_id": reminder_id, "family_id": family_id, "is_active": True})
        if not reminder:
            raise NotFound("Reminder not found", "REMINDER_NOT_FOUND", {"reminder_id": reminder_id})
        return self._with_view_fields(reminder, utc_now())

    async def update_reminder(self, family_id: str, reminder_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Partial update. Completing a recurring reminder also creates its next occurrence,
        unless that would fall after ``recurrence_end_date``.
        """
        current = await self.get_reminder(family_id, reminder_id)
        due_date = ensure_timezone_aware(data["due_date"]) if data.get("due_date") else current["due_date"]
        updates = self._validate_fields(data, due_date)
        if data.get("due_date"):
            updates["due_date"] = due_date
            updates["last_notified"] = None
        now = utc_now()

        completing = data.get("is_completed") is True and not current.get("is_completed")
        if data.get("is_completed") is not None:
            updates["is_completed"] = bool(data["is_completed"])
            updates["completed_at"] = now if data["is_completed"] else None
        updates["updated_at"] = now

        await self.reminders.update_one({"reminder_id": reminder_id, "family_id": family_id}, {"$set": updates})
        updated = {**current, **updates}

        if completing and current.get("is_recurring"):
            await self._create_next_occurrence(updated)
        return self._with_view_fields(updated, now)

    async def _create_next_occurrence(self, reminder: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        next_due = reminder.get("next_due_date")
        if next_due is None:
            return None
        next_due = ensure_timezone_aware(next_due)
        end_date = reminder.get("recurrence_end_date")
        if end_date is not None and next_due > ensure_timezone_aware(end_date):
            self.logger.info("Reminder %s reached its recurrence end date", reminder["reminder_id"])
            return None

        now = utc_now()
        occurrence = {
            key: value
            for key, value in reminder.items()
            if key not in ("_id", "days_until_due", "is_notified")
        }
        occurrence.update(
            {
                "reminder_id": new_id("rem"),
                "due_date": next_due,
                "next_due_date": calculate_next_due_date(
                    next_due, reminder["recurrence_type"], reminder.get("recurrence_interval") or 1
                ),
                "last_notified": None,
                "is_completed": False,
                "completed_at": None,
                "created_at": now,
                "updated_at": now,
            }
        )
        await self.reminders.insert_one(occurrence)
        self.logger.info("Created next occurrence %s of reminder %s", occurrence["reminder_id"], reminder["reminder_id"])
        return occurrence

    async def delete_reminder(self, family_id: str, reminder_id: str) -> None:
        result = await self.reminders.update_one(
            {"reminder_id": reminder_id, "family_id": family_id, "is_active": True},
            {"$set": {"is_active": False, "updated_at": utc_now()}},
        )
        if result.matched_count == 0:
            raise NotFound("Reminder not found", "REMINDER_NOT_FOUND", {"reminder_id": reminder_id})

    async def calendar(self, family_id: str, start: datetime, end: datetime) -> Dict[str, Any]:
        start, end = ensure_timezone_aware(start), ensure_timezone_aware(end)
        if end < start:
            raise ValidationError("End date must not be before start date", field="end")
        reminders = await self.reminders.find(
            {"family_id": family_id, "is_active": True, "due_date": {"$gte": start, "$lte": end}}
        ).sort("due_date", ASCENDING).to_list(length=None)

        events = [
            {
                "id": r["reminder_id"],
                "title": r["title"],
                "date": r["due_date"],
                "amount": r.get("amount"),
                "priority": r.get("priority"),
                "is_completed": r.get("is_completed", False),
                "is_recurring": r.get("is_recurring", False),
                "is_notified": r.get("last_notified") is not None,
            }
            for r in reminders
        ]
        completed = sum(1 for e in events if e["is_completed"])
        return {
            "events": events,
            "summary": {
                "total": len(events),
                "completed": completed,
                "pending": len(events) - completed,
                "notified": sum(1 for e in events if e["is_notified"]),
                "recurring": sum(1 for e in events if e["is_recurring"]),
            },
        }


reminder_manager = ReminderManager()
