"""Transaction request models."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class ManualTransactionRequest(BaseModel):
    amount: float = Field(..., ge=0.01)
    type: str = Field(..., pattern="^(INCOME|EXPENSE)$")
    description: str = Field(..., min_length=1, max_length=500)
    date: Optional[datetime] = None
    category_id: Optional[str] = None
    custom_category: Optional[str] = Field(None, max_length=100)

    @model_validator(mode="after")
    def require_category(self):
        if not self.category_id and not (self.custom_category and self.custom_category.strip()):
            raise ValueError("Either category_id or custom_category is required")
        return self
