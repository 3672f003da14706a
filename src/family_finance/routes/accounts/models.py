"""Bank account request models."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class LinkInstitutionRequest(BaseModel):
    institution: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class WebhookPayload(BaseModel):
    webhook_type: Optional[str] = None
    webhook_code: Optional[str] = None
    link_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
