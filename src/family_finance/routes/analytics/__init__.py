"""Analytics routes."""

from family_finance.routes.analytics.routes import router

__all__ = ["router"]
