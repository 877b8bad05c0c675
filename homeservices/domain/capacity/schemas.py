"""Capacity domain schemas - Pydantic models for validation"""

from datetime import date, datetime, time
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ...config import MAX_BULK_RANGE_DAYS


class SlotResponse(BaseModel):
    id: int
    partner_id: int
    service_type: str
    slot_start: datetime
    slot_end: datetime
    max_units: int
    reserved_units: int
    available_units: int

    @classmethod
    def from_slot(cls, slot) -> "SlotResponse":
        return cls(
            id=slot.id,
            partner_id=slot.partner_id,
            service_type=slot.service_type,
            slot_start=slot.slot_start,
            slot_end=slot.slot_end,
            max_units=slot.max_units,
            reserved_units=slot.reserved_units,
            available_units=slot.max_units - slot.reserved_units,
        )


class SlotWindowIn(BaseModel):
    """A recurring window; omit day_of_week to apply it every day"""

    day_of_week: Optional[int] = Field(None, ge=0, le=6)
    start_time: time
    end_time: time
    max_units: int = Field(..., gt=0)


class BulkCreateRequest(BaseModel):
    partner_ids: list[int] = Field(..., min_length=1)
    start_date: date
    end_date: date
    windows: Optional[list[SlotWindowIn]] = None
    use_templates: bool = False
    days_of_week: Optional[list[int]] = None

    @field_validator("days_of_week")
    @classmethod
    def validate_days(cls, v):
        if v is not None and any(d < 0 or d > 6 for d in v):
            raise ValueError("days_of_week values must be 0 (Monday) to 6 (Sunday)")
        return v

    @model_validator(mode="after")
    def validate_range(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        if (self.end_date - self.start_date).days > MAX_BULK_RANGE_DAYS:
            raise ValueError(f"Date range cannot exceed {MAX_BULK_RANGE_DAYS} days")
        if self.windows is not None and self.use_templates:
            raise ValueError("Provide either windows or use_templates, not both")
        return self


class BulkCreateResponse(BaseModel):
    created: int
    slots: list[SlotResponse]


class BulkDeleteRequest(BaseModel):
    slot_ids: list[int] = Field(..., min_length=1)


class BulkDeleteResponse(BaseModel):
    deleted: int
