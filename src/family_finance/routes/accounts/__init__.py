"""Bank account routes."""

from family_finance.routes.accounts.routes import router

__all__ = ["router"]
