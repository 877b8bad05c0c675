"""
Conversation action executor

`decide` is pure: given the parsed intent and the current context it returns
the next context, the side effect to run against the order (if any) and the
reply template. The conversation service runs the effect and persists the
result.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .intents import Intent, ParsedIntent
from .states import (
    AwaitingDeliveryConfirm,
    AwaitingDeliverySuggestion,
    AwaitingPickupConfirm,
    AwaitingPickupNotification,
    AwaitingQuoteApproval,
    AwaitingWeight,
    ConversationContext,
    IdleContext,
)


class Effect(str, Enum):
    CONFIRM_PICKUP = "confirm_pickup"
    MARK_PICKED_UP = "mark_picked_up"
    COMPUTE_QUOTE = "compute_quote"
    SUBMIT_QUOTE = "submit_quote"
    START_DELIVERY = "start_delivery"
    COMPLETE_ORDER = "complete_order"
    RECORD_DELIVERY_SUGGESTION = "record_delivery_suggestion"
    REQUEST_RESCHEDULE = "request_reschedule"
    FLAG_FOLLOW_UP = "flag_follow_up"


@dataclass
class Decision:
    next_context: ConversationContext
    effect: Optional[Effect] = None
    template: str = "unknown"
    template_args: dict = field(default_factory=dict)
    value: Optional[str] = None


def _stay(context: ConversationContext, template: str, **args) -> Decision:
    return Decision(next_context=context, template=template, template_args=args)


def decide(parsed: ParsedIntent, context: ConversationContext) -> Decision:
    intent = parsed.intent

    if isinstance(context, IdleContext):
        if intent == Intent.HELP:
            return _stay(context, "help")
        return _stay(context, "not_found")

    if intent == Intent.HELP:
        return _stay(context, "help")

    if intent == Intent.CANCEL:
        return Decision(
            next_context=context,
            effect=Effect.FLAG_FOLLOW_UP,
            template="cancel_received",
            template_args={"order_id": context.order_id},
            value="partner requested cancellation by SMS",
        )

    # Pickup
    if isinstance(context, AwaitingPickupConfirm):
        if intent == Intent.CONFIRM:
            return Decision(
                next_context=AwaitingPickupNotification(
                    order_id=context.order_id, pickup_window=context.pickup_window
                ),
                effect=Effect.CONFIRM_PICKUP,
                template="pickup_confirmed",
                template_args={"pickup_time": context.pickup_window},
            )
    if isinstance(context, (AwaitingPickupConfirm, AwaitingPickupNotification)):
        if intent == Intent.PICKED_UP:
            return Decision(
                next_context=AwaitingWeight(order_id=context.order_id),
                effect=Effect.MARK_PICKED_UP,
                template="request_weight",
                template_args={"order_id": context.order_id},
            )
        if intent == Intent.RESCHEDULE:
            return Decision(
                next_context=IdleContext(order_id=context.order_id),
                effect=Effect.REQUEST_RESCHEDULE,
                template="pickup_rescheduled",
                value="partner asked to reschedule pickup",
            )

    # Measurement and quote
    if isinstance(context, (AwaitingWeight, AwaitingQuoteApproval)) and intent == Intent.WEIGHT:
        if not parsed.value:
            return _stay(context, "unknown")
        # Totals are filled in by the quote preview before the context is stored
        return Decision(
            next_context=AwaitingQuoteApproval(
                order_id=context.order_id,
                measured_quantity=parsed.value,
                subtotal_cents=0,
                tax_cents=0,
                total_cents=0,
            ),
            effect=Effect.COMPUTE_QUOTE,
            template="quote_ready",
            value=parsed.value,
        )
    if isinstance(context, AwaitingQuoteApproval) and intent == Intent.CONFIRM:
        return Decision(
            next_context=IdleContext(order_id=context.order_id),
            effect=Effect.SUBMIT_QUOTE,
            template="quote_submitted",
            value=context.measured_quantity,
        )

    # Delivery
    if isinstance(context, AwaitingDeliveryConfirm):
        if intent == Intent.CONFIRM:
            if context.confirmed:
                return _stay(context, "delivery_confirmed", delivery_time=context.delivery_window)
            return Decision(
                next_context=context.model_copy(update={"confirmed": True}),
                effect=Effect.START_DELIVERY,
                template="delivery_confirmed",
                template_args={"delivery_time": context.delivery_window},
            )
        if intent == Intent.DELIVERED:
            return Decision(
                next_context=IdleContext(order_id=context.order_id),
                effect=Effect.COMPLETE_ORDER,
                template="order_complete",
                template_args={"order_id": context.order_id},
            )
        if intent in (Intent.RESCHEDULE, Intent.SUGGEST_TIME):
            return Decision(
                next_context=AwaitingDeliverySuggestion(
                    order_id=context.order_id, delivery_window=context.delivery_window
                ),
                template="delivery_rescheduled",
            )
    if isinstance(context, AwaitingDeliverySuggestion) and intent == Intent.SUGGEST_TIME:
        return Decision(
            next_context=AwaitingDeliveryConfirm(
                order_id=context.order_id,
                delivery_window=context.delivery_window,
                suggested_time=parsed.value,
            ),
            effect=Effect.RECORD_DELIVERY_SUGGESTION,
            template="delivery_time_received",
            template_args={"suggested_time": parsed.value},
            value=parsed.value,
        )

    return _stay(context, "unknown")
