"""
Tests for reminder eligibility and the notification sweep.
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_cursor
from family_finance.managers.email_job_manager import JOB_REMINDER_EMAIL
from family_finance.managers.reminder_manager import (
    ReminderManager,
    calculate_next_due_date,
    is_eligible,
    reminder_dedupe_key,
)
from family_finance.utils.error_handling import Conflict, ValidationError

NOW = datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc)


def _reminder(**overrides):
    reminder = {
        "reminder_id": "rem_rent",
        "family_id": "fam_home",
        "title": "Rent",
        "amount": 1200.0,
        "due_date": NOW + timedelta(days=2),
        "notify_days_before": 3,
        "priority": "HIGH",
        "is_recurring": False,
        "is_active": True,
        "is_completed": False,
        "last_notified": None,
    }
    reminder.update(overrides)
    return reminder


class TestIsEligible:
    def test_due_within_window(self):
        assert is_eligible(_reminder(due_date=NOW + timedelta(days=2)), NOW) is True

    def test_due_outside_window(self):
        assert is_eligible(_reminder(due_date=NOW + timedelta(days=5)), NOW) is False

    def test_overdue_is_eligible(self):
        assert is_eligible(_reminder(due_date=NOW - timedelta(days=4), notify_days_before=0), NOW) is True

    def test_notified_within_cooldown(self):
        assert is_eligible(_reminder(last_notified=NOW - timedelta(hours=23)), NOW) is False

    def test_notified_after_cooldown(self):
        assert is_eligible(_reminder(last_notified=NOW - timedelta(hours=25)), NOW) is True

    def test_completed_or_inactive(self):
        assert is_eligible(_reminder(is_completed=True), NOW) is False
        assert is_eligible(_reminder(is_active=False), NOW) is False

    def test_naive_dates_are_treated_as_utc(self):
        naive_due = (NOW + timedelta(days=1)).replace(tzinfo=None)
        assert is_eligible(_reminder(due_date=naive_due), NOW) is True


class TestNextDueDate:
    @pytest.mark.parametrize(
        "recurrence,interval,expected",
        [
            ("DAILY", 1, datetime(2024, 1, 31, tzinfo=timezone.utc) + timedelta(days=1)),
            ("WEEKLY", 2, datetime(2024, 2, 14, tzinfo=timezone.utc)),
            ("MONTHLY", 1, datetime(2024, 2, 29, tzinfo=timezone.utc)),
            ("QUARTERLY", 1, datetime(2024, 4, 30, tzinfo=timezone.utc)),
            ("YEARLY", 1, datetime(2025, 1, 31, tzinfo=timezone.utc)),
        ],
    )
    def test_steps(self, recurrence, interval, expected):
        assert calculate_next_due_date(datetime(2024, 1, 31, tzinfo=timezone.utc), recurrence, interval) == expected


class FakeReminderStore:
    """Holds reminders and applies ``$set`` updates so a second sweep sees the first one's writes."""

    def __init__(self, collections, reminders):
        self.docs = {r["reminder_id"]: dict(r) for r in reminders}
        collection = collections["reminders"]
        collection.find.side_effect = self._find
        collection.update_one.side_effect = self._update_one

    def _find(self, query, *args, **kwargs):
        cutoff = query["$or"][1]["last_notified"]["$lt"]
        matches = [
            d
            for d in self.docs.values()
            if d["is_active"] and not d["is_completed"]
            and (d["last_notified"] is None or d["last_notified"] < cutoff)
        ]
        return make_cursor([dict(d) for d in matches])

    async def _update_one(self, query, update, **kwargs):
        self.docs[query["reminder_id"]].update(update["$set"])


@pytest.fixture
def household(collections):
    collections["families"].find_one.return_value = {"family_id": "fam_home", "name": "Home"}
    collections["family_members"].find.return_value = make_cursor(
        [{"user_id": "user_alice"}, {"user_id": "user_bob"}]
    )
    collections["users"].find.return_value = make_cursor(
        [
            {"user_id": "user_alice", "email": "alice@example.com", "name": "Alice"},
            {"user_id": "user_bob", "email": "bob@example.com", "name": "Bob"},
        ]
    )


@pytest.fixture
def manager(mock_db, mock_email_jobs):
    return ReminderManager(db_manager=mock_db, email_job_manager=mock_email_jobs)


class TestCheckReminders:
    @pytest.mark.asyncio
    async def test_one_job_per_member(self, manager, collections, household, mock_email_jobs):
        FakeReminderStore(collections, [_reminder()])

        summary = await manager.check_reminders(NOW)

        assert summary.reminders_processed == 1
        assert summary.email_jobs_created == 2
        assert summary.errors == 0
        job_type, data = mock_email_jobs.enqueue.await_args_list[0].args
        assert job_type == JOB_REMINDER_EMAIL
        assert data["to"] == "alice@example.com"
        assert data["reminder"]["days_until_due"] == 2
        assert data["family_name"] == "Home"
        assert mock_email_jobs.enqueue.await_args_list[0].kwargs["dedupe_key"] == reminder_dedupe_key(
            "rem_rent", "user_alice", NOW
        )

    @pytest.mark.asyncio
    async def test_non_recurring_completes_and_is_not_selected_again(self, manager, collections, household):
        store = FakeReminderStore(collections, [_reminder()])

        await manager.check_reminders(NOW)
        second = await manager.check_reminders(NOW + timedelta(hours=1))

        assert store.docs["rem_rent"]["is_completed"] is True
        assert store.docs["rem_rent"]["last_notified"] == NOW
        assert second.reminders_processed == 0

    @pytest.mark.asyncio
    async def test_recurring_renotifies_after_cooldown(self, manager, collections, household):
        store = FakeReminderStore(collections, [_reminder(is_recurring=True, recurrence_type="MONTHLY")])

        await manager.check_reminders(NOW)
        within_cooldown = await manager.check_reminders(NOW + timedelta(hours=1))
        after_cooldown = await manager.check_reminders(NOW + timedelta(hours=25))

        assert within_cooldown.reminders_processed == 0
        assert after_cooldown.reminders_processed == 1
        assert store.docs["rem_rent"]["is_completed"] is False
        assert store.docs["rem_rent"]["last_notified"] == NOW + timedelta(hours=25)

    @pytest.mark.asyncio
    async def test_far_future_reminder_is_skipped(self, manager, collections, household, mock_email_jobs):
        FakeReminderStore(collections, [_reminder(due_date=NOW + timedelta(days=5))])

        summary = await manager.check_reminders(NOW)

        assert summary.reminders_processed == 0
        mock_email_jobs.enqueue.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_duplicate_job_is_not_an_error(self, manager, collections, household, mock_email_jobs):
        FakeReminderStore(collections, [_reminder()])
        mock_email_jobs.enqueue.side_effect = [Conflict("Email job already queued"), "job_2"]

        summary = await manager.check_reminders(NOW)

        assert summary.email_jobs_created == 1
        assert summary.errors == 0
        assert summary.reminders_processed == 1

    @pytest.mark.asyncio
    async def test_enqueue_failure_counts_error(self, manager, collections, household, mock_email_jobs):
        FakeReminderStore(collections, [_reminder()])
        mock_email_jobs.enqueue.side_effect = [RuntimeError("boom"), "job_2"]

        summary = await manager.check_reminders(NOW)

        assert summary.errors == 1
        assert summary.email_jobs_created == 1
        assert summary.reminders_processed == 1


class TestReminderCrud:
    @pytest.mark.asyncio
    async def test_past_due_date_rejected(self, manager):
        with pytest.raises(ValidationError):
            await manager.create_reminder(
                "fam_home", "user_alice", {"title": "Old", "due_date": datetime(2000, 1, 1, tzinfo=timezone.utc)}
            )

    @pytest.mark.asyncio
    async def test_recurring_needs_type(self, manager):
        due = datetime.now(timezone.utc) + timedelta(days=3)
        with pytest.raises(ValidationError):
            await manager.create_reminder(
                "fam_home", "user_alice", {"title": "Gym", "due_date": due, "is_recurring": True}
            )

    @pytest.mark.asyncio
    async def test_create_recurring_sets_next_due(self, manager, collections):
        due = datetime.now(timezone.utc) + timedelta(days=3)
        reminder = await manager.create_reminder(
            "fam_home",
            "user_alice",
            {"title": "Gym", "due_date": due, "is_recurring": True, "recurrence_type": "weekly"},
        )

        assert reminder["recurrence_type"] == "WEEKLY"
        assert reminder["next_due_date"] == due + timedelta(weeks=1)
        assert reminder["notify_days_before"] == 1
        collections["reminders"].insert_one.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_notify_days_bounds(self, manager):
        due = datetime.now(timezone.utc) + timedelta(days=3)
        with pytest.raises(ValidationError):
            await manager.create_reminder(
                "fam_home", "user_alice", {"title": "Tax", "due_date": due, "notify_days_before": 31}
            )

    @pytest.mark.asyncio
    async def test_completing_recurring_creates_next_occurrence(self, manager, collections):
        due = datetime.now(timezone.utc) + timedelta(days=1)
        collections["reminders"].find_one.return_value = _reminder(
            due_date=due,
            is_recurring=True,
            recurrence_type="MONTHLY",
            recurrence_interval=1,
            next_due_date=due + timedelta(days=30),
            recurrence_end_date=None,
        )

        updated = await manager.update_reminder("fam_home", "rem_rent", {"is_completed": True})

        assert updated["is_completed"] is True
        occurrence = collections["reminders"].insert_one.await_args.args[0]
        assert occurrence["reminder_id"] != "rem_rent"
        assert occurrence["due_date"] == due + timedelta(days=30)
        assert occurrence["is_completed"] is False

    @pytest.mark.asyncio
    async def test_recurrence_end_date_stops_series(self, manager, collections):
        due = datetime.now(timezone.utc) + timedelta(days=1)
        collections["reminders"].find_one.return_value = _reminder(
            due_date=due,
            is_recurring=True,
            recurrence_type="MONTHLY",
            next_due_date=due + timedelta(days=30),
            recurrence_end_date=due + timedelta(days=10),
        )

        await manager.update_reminder("fam_home", "rem_rent", {"is_completed": True})

        collections["reminders"].insert_one.assert_not_awaited()
