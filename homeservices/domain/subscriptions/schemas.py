"""Subscription schemas - recurring plans"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, field_validator

from ...shared.validators import validate_service_type, validate_us_phone

Frequency = Literal["WEEKLY", "BIWEEKLY", "MONTHLY"]


class SubscriptionCreate(BaseModel):
    customer_phone: str
    service_type: str
    frequency: Frequency
    first_visit_deep: bool = False

    @field_validator("customer_phone")
    @classmethod
    def validate_phone(cls, v):
        return validate_us_phone(v)

    @field_validator("service_type")
    @classmethod
    def validate_service(cls, v):
        return validate_service_type(v)

    @field_validator("frequency", mode="before")
    @classmethod
    def upper_frequency(cls, v):
        return v.upper() if isinstance(v, str) else v


class SubscriptionUpdate(BaseModel):
    frequency: Optional[Frequency] = None
    active: Optional[bool] = None

    @field_validator("frequency", mode="before")
    @classmethod
    def upper_frequency(cls, v):
        return v.upper() if isinstance(v, str) else v


class SubscriptionResponse(BaseModel):
    id: int
    customer_phone: str
    service_type: str
    frequency: str
    discount_pct: float
    visits_completed: int
    first_visit_deep: bool
    active: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
