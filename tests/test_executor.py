import pytest

from homeservices.domain.conversations.executor import Effect, decide
from homeservices.domain.conversations.intents import Confidence, Intent, ParsedIntent
from homeservices.domain.conversations.states import (
    AwaitingDeliveryConfirm,
    AwaitingDeliverySuggestion,
    AwaitingPickupConfirm,
    AwaitingPickupNotification,
    AwaitingQuoteApproval,
    AwaitingWeight,
    IdleContext,
    dump_context,
    load_context,
)
from homeservices.errors import ConversationParseFailure


def said(intent, value=None):
    return ParsedIntent(intent, Confidence.HIGH, value=value)


def test_confirm_pickup():
    decision = decide(said(Intent.CONFIRM), AwaitingPickupConfirm(order_id=4, pickup_window="Tue Mar 4, 2:00 PM"))
    assert isinstance(decision.next_context, AwaitingPickupNotification)
    assert decision.next_context.pickup_window == "Tue Mar 4, 2:00 PM"
    assert decision.effect == Effect.CONFIRM_PICKUP
    assert decision.template == "pickup_confirmed"


@pytest.mark.parametrize(
    "context", [AwaitingPickupConfirm(order_id=4), AwaitingPickupNotification(order_id=4)]
)
def test_picked_up_from_either_pickup_state(context):
    decision = decide(said(Intent.PICKED_UP), context)
    assert decision.next_context == AwaitingWeight(order_id=4)
    assert decision.effect == Effect.MARK_PICKED_UP
    assert decision.template == "request_weight"


def test_reschedule_pickup_goes_idle():
    decision = decide(said(Intent.RESCHEDULE), AwaitingPickupNotification(order_id=4))
    assert decision.next_context == IdleContext(order_id=4)
    assert decision.effect == Effect.REQUEST_RESCHEDULE


def test_weight_computes_quote():
    decision = decide(said(Intent.WEIGHT, "18"), AwaitingWeight(order_id=4))
    assert isinstance(decision.next_context, AwaitingQuoteApproval)
    assert decision.next_context.measured_quantity == "18"
    assert decision.effect == Effect.COMPUTE_QUOTE
    assert decision.value == "18"


def test_weight_without_value_is_unknown():
    context = AwaitingWeight(order_id=4)
    decision = decide(said(Intent.WEIGHT), context)
    assert decision.next_context is context
    assert decision.effect is None
    assert decision.template == "unknown"


def test_confirm_quote_submits_measured_quantity():
    context = AwaitingQuoteApproval(
        order_id=4, measured_quantity="18", subtotal_cents=3150, tax_cents=0, total_cents=3150
    )
    decision = decide(said(Intent.CONFIRM), context)
    assert decision.next_context == IdleContext(order_id=4)
    assert decision.effect == Effect.SUBMIT_QUOTE
    assert decision.value == "18"


def test_delivery_confirm_then_repeat():
    context = AwaitingDeliveryConfirm(order_id=4, delivery_window="Wed Mar 5, 6:00 PM")
    first = decide(said(Intent.CONFIRM), context)
    assert first.effect == Effect.START_DELIVERY
    assert first.next_context.confirmed

    again = decide(said(Intent.CONFIRM), first.next_context)
    assert again.effect is None
    assert again.template == "delivery_confirmed"


def test_delivered_completes():
    decision = decide(said(Intent.DELIVERED), AwaitingDeliveryConfirm(order_id=4, confirmed=True))
    assert decision.next_context == IdleContext(order_id=4)
    assert decision.effect == Effect.COMPLETE_ORDER


def test_delivery_suggestion_round_trip():
    asked = decide(said(Intent.RESCHEDULE), AwaitingDeliveryConfirm(order_id=4, delivery_window="6 PM"))
    assert isinstance(asked.next_context, AwaitingDeliverySuggestion)
    assert asked.effect is None

    answered = decide(said(Intent.SUGGEST_TIME, "tomorrow 2pm"), asked.next_context)
    assert answered.next_context == AwaitingDeliveryConfirm(
        order_id=4, delivery_window="6 PM", suggested_time="tomorrow 2pm"
    )
    assert answered.effect == Effect.RECORD_DELIVERY_SUGGESTION
    assert answered.template_args == {"suggested_time": "tomorrow 2pm"}


def test_cancel_flags_follow_up_without_moving():
    context = AwaitingWeight(order_id=4)
    decision = decide(said(Intent.CANCEL), context)
    assert decision.next_context is context
    assert decision.effect == Effect.FLAG_FOLLOW_UP
    assert decision.template == "cancel_received"


def test_help_and_unknown():
    context = AwaitingWeight(order_id=4)
    assert decide(said(Intent.HELP), context).template == "help"
    assert decide(said(Intent.UNKNOWN), context).template == "unknown"
    assert decide(said(Intent.DELIVERED), context).template == "unknown"


def test_idle_replies_not_found():
    assert decide(said(Intent.CONFIRM), IdleContext()).template == "not_found"
    assert decide(said(Intent.HELP), IdleContext()).template == "help"


class TestContextStorage:
    def test_round_trip(self):
        context = AwaitingQuoteApproval(
            order_id=9, measured_quantity="12.5", subtotal_cents=2625, tax_cents=0, total_cents=2625
        )
        assert load_context(dump_context(context)) == context

    def test_state_column_fills_missing_tag(self):
        assert load_context({"order_id": 3}, "awaiting_weight") == AwaitingWeight(order_id=3)

    def test_empty_is_idle(self):
        assert load_context(None) == IdleContext()

    def test_wrong_shape_raises_parse_failure(self):
        with pytest.raises(ConversationParseFailure):
            load_context({"state": "awaiting_quote_approval", "order_id": 3})
        with pytest.raises(ConversationParseFailure):
            load_context({"state": "dancing"})
