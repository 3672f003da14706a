"""Cron routes."""

from family_finance.routes.cron.routes import router

__all__ = ["router"]
