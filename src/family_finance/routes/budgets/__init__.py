"""Budget routes."""

from family_finance.routes.budgets.routes import router

__all__ = ["router"]
