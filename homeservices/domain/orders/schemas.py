"""Order domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ...shared.validators import validate_service_type, validate_us_phone, validate_zip


class AddressIn(BaseModel):
    line1: str = Field(..., min_length=1, max_length=255)
    line2: Optional[str] = None
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field("NY", min_length=2, max_length=2)
    zip: str

    @field_validator("zip")
    @classmethod
    def validate_zip_code(cls, v):
        return validate_zip(v)


class OrderDetails(BaseModel):
    """Service-specific booking details"""

    bedrooms: Optional[int] = Field(None, ge=0, le=4)  # cleaning tier (0 = studio)
    deep: bool = False
    move_out: bool = False
    addons: list[str] = Field(default_factory=list)
    estimated_weight: Optional[float] = Field(None, gt=0)  # laundry, customer estimate
    notes: Optional[str] = Field(None, max_length=1000)


class OrderCreate(BaseModel):
    idempotency_key: str = Field(..., min_length=8, max_length=255)
    service_type: str
    slot_id: int
    address: AddressIn
    details: OrderDetails = Field(default_factory=OrderDetails)
    customer_phone: str
    payment_flow: Literal["legacy", "authorize_now"] = "legacy"
    subscription_id: Optional[int] = None

    @field_validator("service_type")
    @classmethod
    def validate_service(cls, v):
        return validate_service_type(v)

    @field_validator("customer_phone")
    @classmethod
    def validate_phone(cls, v):
        return validate_us_phone(v)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class RescheduleRequest(BaseModel):
    new_slot_id: int


class DisputeRequest(BaseModel):
    reason: str = Field(..., min_length=10, max_length=1000)


class PolicyPreview(BaseModel):
    service_type: str
    allowed: bool
    notice_hours: int
    fee_percent: float
    fee_cents: int
    free_until: Optional[datetime] = None


class CancellationPolicyResponse(BaseModel):
    cancellation: PolicyPreview
    reschedule: PolicyPreview


class OrderResponse(BaseModel):
    id: int
    public_id: str
    status: str
    service_type: str
    slot_id: Optional[int]
    partner_id: Optional[int]
    payment_flow: str
    subtotal_cents: Optional[int] = None
    tax_cents: Optional[int] = None
    total_cents: Optional[int] = None
    cancellation_fee_cents: Optional[int] = None
    reschedule_fee_cents: int = 0
    needs_follow_up: bool = False
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OrderCreateResponse(BaseModel):
    order_id: int
    public_id: str
    status: str
    created: bool
    total_cents: Optional[int] = None
    client_secret: Optional[str] = None  # authorize-now: completes the card setup
