"""Payment schemas"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class PaymentResponse(BaseModel):
    order_id: int
    flow: str
    status: str
    amount_cents: Optional[int] = None
    refunded_cents: int = 0
    attempts: int = 0
    client_secret: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    captured_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WebhookResult(BaseModel):
    status: str  # processed, duplicate, ignored, unmatched
