"""Category routes."""

from family_finance.routes.categories.routes import router

__all__ = ["router"]
