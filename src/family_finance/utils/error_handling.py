"""
Error taxonomy and HTTP translation for the Family Finance API.

Managers raise ``FinanceError`` subclasses; routes let them propagate and the handlers
registered by ``register_exception_handlers`` render them as JSON with the class's status.
Each error carries a stable ``error_code`` and a ``context`` dict for the response details.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from family_finance.managers.logging_manager import get_logger

logger = get_logger(prefix="[Error Handling]")

GENERIC_DENIAL_MESSAGE = "Insufficient permissions"


class FinanceError(Exception):
    """Base application exception with error code and context."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code: str = "FINANCE_ERROR"

    def __init__(self, message: str, error_code: str = None, context: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error_code, "message": self.message, "details": self.context}


class Unauthenticated(FinanceError):
    """No session, invalid token or unknown user."""

    status_code = status.HTTP_401_UNAUTHORIZED
    default_code = "UNAUTHENTICATED"


class Forbidden(FinanceError):
    """Authenticated but not allowed."""

    status_code = status.HTTP_403_FORBIDDEN
    default_code = "FORBIDDEN"


class NotFound(FinanceError):
    """Entity absent or outside the caller's family scope."""

    status_code = status.HTTP_404_NOT_FOUND
    default_code = "NOT_FOUND"


class Conflict(FinanceError):
    """Duplicate or state conflict."""

    status_code = status.HTTP_409_CONFLICT
    default_code = "CONFLICT"


class ValidationError(FinanceError):
    """Input validation failed with field-specific details."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str = None, value: Any = None, constraint: str = None):
        super().__init__(
            message,
            "VALIDATION_ERROR",
            {"field": field, "value": str(value) if value is not None else None, "constraint": constraint},
        )


class UpstreamFailure(FinanceError):
    """Email provider or banking aggregator failed."""

    status_code = status.HTTP_502_BAD_GATEWAY
    default_code = "UPSTREAM_FAILURE"


class InternalError(FinanceError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = "INTERNAL_ERROR"


class RateLimitExceeded(FinanceError):
    """Rate limit exceeded for an action."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str, action: str = None, limit: int = None, window: int = None):
        super().__init__(message, self.default_code, {"action": action, "limit": limit, "window_seconds": window})


# --- Domain errors ---


class InsufficientPermissions(Forbidden):
    """Uniform denial: never says which of identity, membership or role failed."""

    def __init__(self, message: str = GENERIC_DENIAL_MESSAGE):
        super().__init__(message, "INSUFFICIENT_PERMISSIONS")


class FamilyNotFound(NotFound):
    def __init__(self, message: str, family_id: str = None):
        super().__init__(message, "FAMILY_NOT_FOUND", {"family_id": family_id})


class InvitationNotFound(NotFound):
    def __init__(self, message: str = "Invalid invitation token", invitation_id: str = None):
        super().__init__(message, "INVITATION_NOT_FOUND", {"invitation_id": invitation_id})


class InvitationExpired(Conflict):
    status_code = status.HTTP_410_GONE

    def __init__(self, message: str = "Invitation has expired", expires_at: Optional[datetime] = None):
        super().__init__(
            message, "INVITATION_EXPIRED", {"expires_at": expires_at.isoformat() if expires_at else None}
        )


class InvitationAlreadyAccepted(Conflict):
    def __init__(self, message: str = "Invitation has already been accepted"):
        super().__init__(message, "INVITATION_ALREADY_ACCEPTED")


class LastAdminRemoval(Conflict):
    """The family would be left without an active ADMIN."""

    def __init__(self, message: str, family_id: str = None, member_id: str = None):
        super().__init__(message, "LAST_ADMIN_REQUIRED", {"family_id": family_id, "member_id": member_id})


class BudgetAlreadyExists(Conflict):
    def __init__(self, message: str, category_id: str = None, start_date: Optional[datetime] = None):
        super().__init__(
            message,
            "BUDGET_ALREADY_EXISTS",
            {"category_id": category_id, "start_date": start_date.isoformat() if start_date else None},
        )


class TransactionError(InternalError):
    """Database transaction failed with rollback information."""

    def __init__(self, message: str, operation: str = None, rollback_successful: bool = None):
        super().__init__(
            message, "TRANSACTION_ERROR", {"operation": operation, "rollback_successful": rollback_successful}
        )


async def finance_error_handler(request: Request, exc: FinanceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.error_code)
    else:
        logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.message, exc.error_code)
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthenticated) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "INTERNAL_ERROR", "message": "An unexpected error occurred", "details": {}},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FinanceError, finance_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
