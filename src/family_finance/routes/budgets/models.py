"""Budget and budget template request models."""

from typing import Optional

from pydantic import BaseModel, Field

PERIOD_PATTERN = "^(WEEKLY|MONTHLY|QUARTERLY|YEARLY)$"


class TemplateCreateRequest(BaseModel):
    category_id: str
    name: str = Field(..., min_length=1, max_length=100)
    monthly_limit: float = Field(..., gt=0)
    period: str = Field("MONTHLY", pattern=PERIOD_PATTERN)
    alert_threshold: int = Field(80, ge=0, le=100)
    auto_generate: bool = True


class TemplateUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    monthly_limit: Optional[float] = Field(None, gt=0)
    period: Optional[str] = Field(None, pattern=PERIOD_PATTERN)
    alert_threshold: Optional[int] = Field(None, ge=0, le=100)
    auto_generate: Optional[bool] = None


class BudgetCreateRequest(BaseModel):
    category_id: str
    name: str = Field(..., min_length=1, max_length=100)
    monthly_limit: float = Field(..., gt=0)
    alert_threshold: int = Field(80, ge=0, le=100)


class BudgetUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    monthly_limit: Optional[float] = Field(None, gt=0)
    alert_threshold: Optional[int] = Field(None, ge=0, le=100)


class PeriodRequest(BaseModel):
    year: Optional[int] = Field(None, ge=2000, le=2100)
    month: Optional[int] = Field(None, ge=1, le=12)


class RolloverRequest(BaseModel):
    year: int = Field(..., ge=2000, le=2100)
    month: int = Field(..., ge=1, le=12)
    apply: bool = False


class RolloverTransferRequest(BaseModel):
    from_category_id: str
    to_category_id: str
    amount: float = Field(..., gt=0)
    year: int = Field(..., ge=2000, le=2100)
    month: int = Field(..., ge=1, le=12)
