"""Reminder routes."""

from family_finance.routes.reminders.routes import router

__all__ = ["router"]
