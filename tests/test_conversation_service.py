from datetime import timedelta

from homeservices.domain.conversations.service import ConversationService
from homeservices.domain.orders.repository import OrderRepository
from homeservices.domain.orders.service import OrderService
from homeservices.domain.payments.service import PaymentCoordinator
from homeservices.domain.quotes.service import QuoteService
from homeservices.models import Conversation, InboundMessage, Order, Quote
from homeservices.services import manual_review
from homeservices.services.notification_service import NotificationDispatcher
from homeservices.shared.clock import utcnow

from conftest import LAUNDRY_PARTNER_PHONE, FakeClassifier, order_request

PARTNER = LAUNDRY_PARTNER_PHONE


async def book_laundry(db, world, sender):
    order, _ = OrderService(db).create_order(order_request(world["laundry_slot"]))
    await NotificationDispatcher(db, sender).flush()
    return order.id


def order_of(db, order_id) -> Order:
    db.expire_all()
    return db.query(Order).filter(Order.id == order_id).one()


def active_conversation(db, order_id):
    db.expire_all()
    return (
        db.query(Conversation)
        .filter(Conversation.order_id == order_id, Conversation.state != "idle")
        .one_or_none()
    )


def event_types(db, order_id):
    return [e.event_type for e in OrderRepository.list_events(db, order_id)]


async def test_full_laundry_flow(db, world, sender, gateway):
    order_id = await book_laundry(db, world, sender)
    assert len(sender.to(PARTNER)) == 1
    assert "Reply CONFIRM" in sender.to(PARTNER)[0]
    assert active_conversation(db, order_id).state == "awaiting_pickup_confirm"

    service = ConversationService(db)
    assert (await service.handle_inbound(PARTNER, "confirm", "SM1")).startswith("✅ Pickup confirmed")
    assert order_of(db, order_id).pickup_confirmed_at is not None

    reply = await service.handle_inbound(PARTNER, "picked up", "SM2")
    assert "What's the actual weight?" in reply
    assert order_of(db, order_id).picked_up_at is not None
    assert order_of(db, order_id).status == "pending_quote"

    reply = await service.handle_inbound(PARTNER, "25", "SM3")
    assert "$43.75 for 25 lbs" in reply
    context = active_conversation(db, order_id).context
    assert context["total_cents"] == 4375
    assert db.query(Quote).filter(Quote.order_id == order_id).count() == 0

    reply = await service.handle_inbound(PARTNER, "ok", "SM4")
    assert reply.startswith("✅ Quote submitted")
    assert order_of(db, order_id).status == "quote_submitted"
    assert active_conversation(db, order_id) is None

    QuoteService(db).approve_quote(order_id)
    record = await PaymentCoordinator(db, gateway).capture(order_id)
    assert record.status == "succeeded"
    assert gateway.calls_of("capture")[0][2] == 4375
    assert order_of(db, order_id).status == "scheduled"

    stats = await NotificationDispatcher(db, sender).flush()
    assert stats["escalated"] == 0
    assert "ready for delivery" in sender.to(PARTNER)[-1]
    assert active_conversation(db, order_id).state == "awaiting_delivery_confirm"

    assert (await service.handle_inbound(PARTNER, "confirm", "SM5")).startswith("✅ Delivery confirmed")
    assert order_of(db, order_id).status == "in_progress"

    reply = await service.handle_inbound(PARTNER, "Delivered!", "SM6")
    assert "marked complete" in reply
    assert order_of(db, order_id).status == "completed"
    assert active_conversation(db, order_id) is None

    assert event_types(db, order_id) == [
        "order_created",
        "pickup_confirmed",
        "picked_up",
        "quote_submitted",
        "quote_approved",
        "payment_captured",
        "order_scheduled",
        "order_in_progress",
        "order_completed",
    ]


async def test_messages_are_processed_in_arrival_order(db, world, sender):
    order_id = await book_laundry(db, world, sender)
    service = ConversationService(db)

    first = service.ingest(PARTNER, "confirm", "SMa")
    second = service.ingest(PARTNER, "picked up", "SMb")
    assert second.sequence == first.sequence + 1

    assert await service.drain(PARTNER) == 2
    assert active_conversation(db, order_id).state == "awaiting_weight"
    db.expire_all()
    replies = [
        m.reply
        for m in db.query(InboundMessage).filter(InboundMessage.phone == PARTNER).order_by(InboundMessage.sequence)
    ]
    assert replies[0].startswith("✅ Pickup confirmed")
    assert "weight" in replies[1]


async def test_duplicate_message_id_is_processed_once(db, world, sender):
    order_id = await book_laundry(db, world, sender)
    service = ConversationService(db)

    first = await service.handle_inbound(PARTNER, "confirm", "SM-dup")
    again = await service.handle_inbound(PARTNER, "confirm", "SM-dup")

    assert again == first
    assert db.query(InboundMessage).count() == 1
    assert event_types(db, order_id).count("pickup_confirmed") == 1


async def test_reweigh_replaces_the_pending_preview(db, world, sender):
    order_id = await book_laundry(db, world, sender)
    service = ConversationService(db)
    for body in ("confirm", "picked up", "25"):
        await service.handle_inbound(PARTNER, body)

    reply = await service.handle_inbound(PARTNER, "30")
    assert "$52.50 for 30 lbs" in reply
    assert active_conversation(db, order_id).context["measured_quantity"] == "30"


async def test_invalid_weight_keeps_state(db, world, sender):
    order_id = await book_laundry(db, world, sender)
    service = ConversationService(db)
    await service.handle_inbound(PARTNER, "confirm")
    await service.handle_inbound(PARTNER, "picked up")

    for body in ("0", "500"):
        reply = await service.handle_inbound(PARTNER, body)
        assert reply.startswith("⚠️ Couldn't price that")
        assert active_conversation(db, order_id).state == "awaiting_weight"

    assert order_of(db, order_id).status == "pending_quote"


async def test_unrecognised_message_without_classifier(db, world, sender):
    order_id = await book_laundry(db, world, sender)
    reply = await ConversationService(db).handle_inbound(PARTNER, "banana bread")
    assert reply.startswith("🤔 I didn't quite get that")
    assert active_conversation(db, order_id).state == "awaiting_pickup_confirm"


async def test_classifier_handles_free_text(db, world, sender):
    from homeservices.domain.conversations.intents import Confidence, Intent, ParsedIntent

    order_id = await book_laundry(db, world, sender)
    classifier = FakeClassifier(ParsedIntent(Intent.CONFIRM, Confidence.HIGH, source="classifier"))
    reply = await ConversationService(db, classifier=classifier).handle_inbound(PARTNER, "sounds good, see you then")

    assert reply.startswith("✅ Pickup confirmed")
    assert classifier.calls == [("sounds good, see you then", "awaiting_pickup_confirm")]
    assert active_conversation(db, order_id).state == "awaiting_pickup_notification"


async def test_unknown_phone_gets_not_found(db, world):
    reply = await ConversationService(db).handle_inbound("+19995550000", "confirm", "SMx")
    assert reply.startswith("❓")


async def test_pickup_reschedule_flags_follow_up(db, world, sender):
    order_id = await book_laundry(db, world, sender)
    reply = await ConversationService(db).handle_inbound(PARTNER, "reschedule")

    assert "new pickup time" in reply
    assert active_conversation(db, order_id) is None
    assert order_of(db, order_id).needs_follow_up
    assert "follow_up_requested" in event_types(db, order_id)


async def test_unreadable_context_resets_and_escalates(db, world, sender):
    order_id = await book_laundry(db, world, sender)
    conversation = active_conversation(db, order_id)
    conversation.state = "awaiting_quote_approval"
    conversation.context = {"state": "awaiting_quote_approval", "order_id": order_id}
    db.commit()

    reply = await ConversationService(db).handle_inbound(PARTNER, "ok", "SMbad")

    assert reply.startswith("⚠️ Something went wrong")
    assert active_conversation(db, order_id) is None
    message = db.query(InboundMessage).filter(InboundMessage.external_id == "SMbad").one()
    assert message.status == "failed"
    items = manual_review.list_open(db, "conversation")
    assert [item.order_id for item in items] == [order_id]


async def test_delivery_time_suggestion(db, world, sender, gateway):
    order_id = await book_laundry(db, world, sender)
    service = ConversationService(db)
    for body in ("confirm", "picked up", "25", "ok"):
        await service.handle_inbound(PARTNER, body)
    QuoteService(db).approve_quote(order_id)
    await PaymentCoordinator(db, gateway).capture(order_id)
    await NotificationDispatcher(db, sender).flush()

    reply = await service.handle_inbound(PARTNER, "can we do tomorrow instead")
    assert reply.startswith("👍 What time works better?")
    assert active_conversation(db, order_id).state == "awaiting_delivery_suggestion"

    reply = await service.handle_inbound(PARTNER, "after 5")
    assert "after 5" in reply
    order = order_of(db, order_id)
    assert order.delivery_requested_time == "after 5"
    assert order.needs_follow_up
    assert order.status == "scheduled"
    conversation = active_conversation(db, order_id)
    assert conversation.state == "awaiting_delivery_confirm"
    assert conversation.context["suggested_time"] == "after 5"


class TestInactivitySweep:
    async def test_reminds_once_then_resets(self, db, world, sender):
        order_id = await book_laundry(db, world, sender)
        service = ConversationService(db)
        start = utcnow()

        stats = await service.sweep_inactive(sender, now=start + timedelta(minutes=90))
        assert stats == {"reminded": 1, "reset": 0}
        assert sender.to(PARTNER)[-1].startswith("⏰ Still waiting")

        stats = await service.sweep_inactive(sender, now=start + timedelta(minutes=120))
        assert stats == {"reminded": 0, "reset": 0}

        stats = await service.sweep_inactive(sender, now=start + timedelta(minutes=300))
        assert stats == {"reminded": 0, "reset": 1}
        assert active_conversation(db, order_id) is None
        assert order_of(db, order_id).needs_follow_up
        assert "conversation_timed_out" in event_types(db, order_id)
        assert len(manual_review.list_open(db, "conversation")) == 1

    async def test_recent_conversations_are_left_alone(self, db, world, sender):
        await book_laundry(db, world, sender)
        stats = await ConversationService(db).sweep_inactive(sender, now=utcnow() + timedelta(minutes=10))
        assert stats == {"reminded": 0, "reset": 0}

    async def test_reply_clears_the_reminder(self, db, world, sender):
        order_id = await book_laundry(db, world, sender)
        service = ConversationService(db)
        await service.sweep_inactive(sender, now=utcnow() + timedelta(minutes=90))
        await service.handle_inbound(PARTNER, "confirm")
        assert active_conversation(db, order_id).reminder_sent_at is None
