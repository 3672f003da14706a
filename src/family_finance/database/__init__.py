"""Database package for the Family Finance API."""

from family_finance.database.manager import DatabaseManager, db_manager

__all__ = ["DatabaseManager", "db_manager"]
