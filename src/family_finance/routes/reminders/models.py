"""Reminder request models."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

PRIORITY_PATTERN = "^(LOW|MEDIUM|HIGH|URGENT)$"
RECURRENCE_PATTERN = "^(DAILY|WEEKLY|MONTHLY|QUARTERLY|YEARLY|CUSTOM)$"


class ReminderCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    amount: Optional[float] = Field(None, gt=0)
    due_date: datetime
    is_recurring: bool = False
    recurrence_type: Optional[str] = Field(None, pattern=RECURRENCE_PATTERN)
    recurrence_interval: int = Field(1, ge=1)
    recurrence_end_date: Optional[datetime] = None
    category_id: Optional[str] = None
    priority: str = Field("MEDIUM", pattern=PRIORITY_PATTERN)
    notify_days_before: int = Field(1, ge=0, le=30)


class ReminderUpdateRequest(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    amount: Optional[float] = Field(None, gt=0)
    due_date: Optional[datetime] = None
    recurrence_type: Optional[str] = Field(None, pattern=RECURRENCE_PATTERN)
    recurrence_interval: Optional[int] = Field(None, ge=1)
    recurrence_end_date: Optional[datetime] = None
    category_id: Optional[str] = None
    priority: Optional[str] = Field(None, pattern=PRIORITY_PATTERN)
    notify_days_before: Optional[int] = Field(None, ge=0, le=30)
    is_completed: Optional[bool] = None
