"""Authentication routes: register, login, current user and password reset."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from family_finance.managers.logging_manager import get_logger
from family_finance.managers.security_manager import rate_limit
from family_finance.routes.auth.dependencies import get_current_identity
from family_finance.routes.auth.models import (
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserOut,
)
from family_finance.routes.auth.services import login as login_service
from family_finance.routes.auth.services import password as password_service
from family_finance.routes.auth.services import registration as registration_service

logger = get_logger(prefix="[Auth Routes]")

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post(
    "/register",
    response_model=UserOut,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("auth"))],
)
async def register(payload: RegisterRequest):
    """
    Register a new user.

    **Rate Limiting:** 5 requests per 15 minutes per IP.
    """
    return await registration_service.register_user(payload.name, payload.email, payload.password)


@router.post("/login", response_model=TokenResponse, dependencies=[Depends(rate_limit("auth"))])
async def login(payload: LoginRequest):
    """Exchange email and password for a bearer token."""
    return await login_service.login_user(payload.email, payload.password)


@router.get("/me")
async def me(identity: Dict[str, Any] = Depends(get_current_identity)):
    return {"user_id": identity["sub"], "email": identity.get("email")}


@router.post("/forgot-password", response_model=MessageResponse, dependencies=[Depends(rate_limit("auth"))])
async def forgot_password(payload: ForgotPasswordRequest):
    """Always answers with the same message, whether or not the email is registered."""
    return {"message": await password_service.forgot_password(payload.email)}


@router.post("/reset-password", response_model=MessageResponse, dependencies=[Depends(rate_limit("auth"))])
async def reset_password(payload: ResetPasswordRequest):
    await password_service.reset_password(payload.token, payload.password)
    return {"message": "Password has been reset successfully."}
