"""Family management routes."""

from family_finance.routes.family.routes import router

__all__ = ["router"]
