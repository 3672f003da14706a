"""Family management request models."""

from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

FAMILY_NAME_MIN_LENGTH: int = 1
FAMILY_NAME_MAX_LENGTH: int = 100


class CreateFamilyRequest(BaseModel):
    name: str = Field(..., min_length=FAMILY_NAME_MIN_LENGTH, max_length=FAMILY_NAME_MAX_LENGTH)
    description: Optional[str] = Field(None, max_length=500)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v


class InviteMemberRequest(BaseModel):
    email: EmailStr
    role: str = Field("MEMBER", pattern="^(ADMIN|MEMBER|VIEWER)$")


class UpdateMemberRoleRequest(BaseModel):
    role: str = Field(..., pattern="^(ADMIN|MEMBER|VIEWER)$")
