"""Quote schemas - Pydantic models for validation"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class QuoteSubmit(BaseModel):
    order_id: int
    measured_quantity: Decimal = Field(..., gt=0)
    addons: Optional[list[str]] = None  # None keeps the addons chosen at booking


class QuoteReject(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class QuoteResponse(BaseModel):
    id: int
    order_id: int
    measured_quantity: Optional[str] = None
    addons: list[str] = []
    computed_subtotal: int
    computed_tax: int
    computed_total: int
    breakdown: Optional[dict] = None
    approval_status: str
    approved_at: Optional[datetime] = None

    class Config:
        from_attributes = True
