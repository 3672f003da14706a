"""Transaction routes."""

from family_finance.routes.transactions.routes import router

__all__ = ["router"]
