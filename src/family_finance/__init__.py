"""Family Finance API: family-scoped budgets, reminders and transactions."""

__version__ = "1.0.0"
