"""Request and response models for the authentication routes."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

NAME_MIN_LENGTH: int = 2
PASSWORD_MIN_LENGTH: int = 8
RESET_PASSWORD_MIN_LENGTH: int = 6


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=NAME_MIN_LENGTH, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=PASSWORD_MIN_LENGTH, max_length=128)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class UserOut(BaseModel):
    user_id: str
    name: Optional[str] = None
    email: EmailStr
    created_at: Optional[datetime] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserOut


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=RESET_PASSWORD_MIN_LENGTH, max_length=128)


class MessageResponse(BaseModel):
    message: str
