"""
Conversation states and their per-state context

The stored context is a tagged union discriminated on `state`, so each state
carries exactly the fields it needs (the weight quote only exists while
awaiting approval, the delivery window only in delivery states).
"""

import logging
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from ...errors import ConversationParseFailure

logger = logging.getLogger(__name__)

IDLE = "idle"
AWAITING_PICKUP_CONFIRM = "awaiting_pickup_confirm"
AWAITING_PICKUP_NOTIFICATION = "awaiting_pickup_notification"
AWAITING_WEIGHT = "awaiting_weight"
AWAITING_QUOTE_APPROVAL = "awaiting_quote_approval"
AWAITING_DELIVERY_CONFIRM = "awaiting_delivery_confirm"
AWAITING_DELIVERY_SUGGESTION = "awaiting_delivery_suggestion"

PICKUP_STATES = {AWAITING_PICKUP_CONFIRM, AWAITING_PICKUP_NOTIFICATION}
DELIVERY_STATES = {AWAITING_DELIVERY_CONFIRM, AWAITING_DELIVERY_SUGGESTION}


class IdleContext(BaseModel):
    state: Literal["idle"] = IDLE
    order_id: Optional[int] = None


class AwaitingPickupConfirm(BaseModel):
    state: Literal["awaiting_pickup_confirm"] = AWAITING_PICKUP_CONFIRM
    order_id: int
    pickup_window: Optional[str] = None


class AwaitingPickupNotification(BaseModel):
    """Partner confirmed the pickup; waiting to hear it was collected"""

    state: Literal["awaiting_pickup_notification"] = AWAITING_PICKUP_NOTIFICATION
    order_id: int
    pickup_window: Optional[str] = None


class AwaitingWeight(BaseModel):
    state: Literal["awaiting_weight"] = AWAITING_WEIGHT
    order_id: int


class AwaitingQuoteApproval(BaseModel):
    """Partner reported a weight; the computed quote waits for their OK"""

    state: Literal["awaiting_quote_approval"] = AWAITING_QUOTE_APPROVAL
    order_id: int
    measured_quantity: str
    subtotal_cents: int
    tax_cents: int
    total_cents: int


class AwaitingDeliveryConfirm(BaseModel):
    state: Literal["awaiting_delivery_confirm"] = AWAITING_DELIVERY_CONFIRM
    order_id: int
    delivery_window: Optional[str] = None
    confirmed: bool = False
    suggested_time: Optional[str] = None


class AwaitingDeliverySuggestion(BaseModel):
    state: Literal["awaiting_delivery_suggestion"] = AWAITING_DELIVERY_SUGGESTION
    order_id: int
    delivery_window: Optional[str] = None


ConversationContext = Annotated[
    Union[
        IdleContext,
        AwaitingPickupConfirm,
        AwaitingPickupNotification,
        AwaitingWeight,
        AwaitingQuoteApproval,
        AwaitingDeliveryConfirm,
        AwaitingDeliverySuggestion,
    ],
    Field(discriminator="state"),
]

_context_adapter = TypeAdapter(ConversationContext)


def load_context(data: Optional[dict], state: Optional[str] = None) -> ConversationContext:
    """
    Parse a stored context.

    Raises:
        ConversationParseFailure: the stored JSON does not match any state
    """
    data = dict(data or {})
    if state and "state" not in data:
        data["state"] = state
    data.setdefault("state", IDLE)
    try:
        return _context_adapter.validate_python(data)
    except ValidationError as e:
        logger.error(f"❌ Unreadable conversation context for state {data.get('state')}: {e}")
        raise ConversationParseFailure(f"Invalid context for state {data.get('state')}") from e


def dump_context(context: ConversationContext) -> dict:
    return context.model_dump(mode="json")
