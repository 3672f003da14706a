"""Authentication package initialization."""

from family_finance.routes.auth.dependencies import get_current_identity
from family_finance.routes.auth.routes import router

__all__ = ["get_current_identity", "router"]
