from datetime import timedelta

import pytest

from homeservices.domain.conversations.repository import ConversationRepository
from homeservices.domain.orders.repository import OrderRepository
from homeservices.domain.orders.service import OrderService
from homeservices.domain.quotes.service import QuoteService
from homeservices.errors import (
    IdempotencyConflict,
    InsufficientCapacity,
    InvalidTransition,
    OrderNotFound,
    SlotNotFound,
)
from homeservices.models import CancellationPolicy, CapacitySlot, Conversation, Order, Quote, Subscription
from homeservices.shared.clock import utcnow

from conftest import make_slot, order_request, tomorrow_at


def reserved(db, slot_id):
    db.expire_all()
    return db.query(CapacitySlot).filter(CapacitySlot.id == slot_id).one().reserved_units


def event_types(db, order_id):
    return [e.event_type for e in OrderRepository.list_events(db, order_id)]


class TestCreate:
    def test_laundry_starts_pending_quote(self, db, world):
        order, created = OrderService(db).create_order(order_request(world["laundry_slot"]))

        assert created
        assert order.status == "pending_quote"
        assert order.total_cents is None
        assert order.partner_id == world["laundry_partner"].id
        assert reserved(db, world["laundry_slot"].id) == 1
        assert event_types(db, order.id) == ["order_created"]

    def test_cleaning_is_priced_at_booking(self, db, world):
        request = order_request(
            world["cleaning_slot"], service_type="CLEANING", details={"bedrooms": 1, "addons": ["CLN_FRIDGE"]}
        )
        order, _ = OrderService(db).create_order(request)

        assert order.status == "quote_approved"
        assert order.subtotal_cents == 11900 + 3500
        assert order.total_cents == order.subtotal_cents + order.tax_cents
        quote = db.query(Quote).filter(Quote.order_id == order.id).one()
        assert quote.approval_status == "approved"
        assert quote.computed_total == order.total_cents
        assert order.pricing_snapshot["unit_key"] == "CLN_STD_1BR"

    def test_same_key_same_payload_returns_original(self, db, world):
        service = OrderService(db)
        first, created = service.create_order(order_request(world["laundry_slot"]))
        again, created_again = service.create_order(order_request(world["laundry_slot"]))

        assert created and not created_again
        assert again.id == first.id
        assert db.query(Order).count() == 1
        assert reserved(db, world["laundry_slot"].id) == 1

    def test_same_key_different_payload_conflicts(self, db, world):
        service = OrderService(db)
        service.create_order(order_request(world["laundry_slot"]))
        with pytest.raises(IdempotencyConflict):
            service.create_order(order_request(world["laundry_slot_2"]))
        assert reserved(db, world["laundry_slot_2"].id) == 0

    def test_full_slot_creates_nothing(self, db, world):
        slot = make_slot(db, world["laundry_partner"], tomorrow_at(18), max_units=1, reserved=1)
        with pytest.raises(InsufficientCapacity):
            OrderService(db).create_order(order_request(slot))
        assert db.query(Order).count() == 0

    def test_slot_for_another_service(self, db, world):
        with pytest.raises(SlotNotFound):
            OrderService(db).create_order(order_request(world["cleaning_slot"], service_type="LAUNDRY"))

    def test_started_slot(self, db, world):
        slot = make_slot(db, world["laundry_partner"], utcnow() - timedelta(hours=1))
        with pytest.raises(SlotNotFound):
            OrderService(db).create_order(order_request(slot))

    def test_inactive_subscription(self, db, world):
        subscription = Subscription(
            customer_phone="+12125550100", service_type="CLEANING", frequency="WEEKLY", active=False
        )
        db.add(subscription)
        db.commit()
        request = order_request(
            world["cleaning_slot"], service_type="CLEANING", details={"bedrooms": 0},
            subscription_id=subscription.id,
        )
        with pytest.raises(InvalidTransition):
            OrderService(db).create_order(request)


class TestCancel:
    def cleaning_order(self, db, world):
        request = order_request(world["cleaning_slot"], service_type="CLEANING", details={"bedrooms": 1})
        order, _ = OrderService(db).create_order(request)
        return order

    def test_outside_notice_window_is_free(self, db, world):
        order = self.cleaning_order(db, world)
        slot_start = world["cleaning_slot"].slot_start
        now = slot_start - timedelta(hours=24 + 1)

        cancelled = OrderService(db).cancel_order(order.id, now=now)

        assert cancelled.status == "cancelled"
        assert cancelled.cancellation_fee_cents == 0
        assert reserved(db, world["cleaning_slot"].id) == 0

    def test_inside_notice_window_charges_percent(self, db, world):
        order = self.cleaning_order(db, world)
        slot_start = world["cleaning_slot"].slot_start
        now = slot_start - timedelta(hours=24 - 1)

        cancelled = OrderService(db).cancel_order(order.id, now=now)

        # 15% of $129.56
        assert cancelled.cancellation_fee_cents == 1943
        payload = OrderRepository.list_events(db, order.id)[-1].payload
        assert payload["fee_cents"] == 1943
        assert payload["previous_status"] == "quote_approved"

    def test_policy_row_overrides_defaults(self, db, world):
        db.add(
            CancellationPolicy(
                service_type="CLEANING", notice_hours=48, cancellation_fee_percent=0.5,
                reschedule_notice_hours=0, reschedule_fee_percent=0,
            )
        )
        db.commit()
        order = self.cleaning_order(db, world)
        now = world["cleaning_slot"].slot_start - timedelta(hours=30)
        cancelled = OrderService(db).cancel_order(order.id, now=now)
        assert cancelled.cancellation_fee_cents == 6478

    def test_disallowed_by_policy(self, db, world):
        db.add(
            CancellationPolicy(
                service_type="CLEANING", notice_hours=24, cancellation_fee_percent=0.15,
                reschedule_notice_hours=24, reschedule_fee_percent=0, allow_cancellation=False,
            )
        )
        db.commit()
        order = self.cleaning_order(db, world)
        with pytest.raises(InvalidTransition):
            OrderService(db).cancel_order(order.id)
        db.expire_all()
        assert db.query(Order).filter(Order.id == order.id).one().status == "quote_approved"

    def test_cancel_twice_is_rejected(self, db, world):
        order = self.cleaning_order(db, world)
        service = OrderService(db)
        service.cancel_order(order.id)
        with pytest.raises(InvalidTransition):
            service.cancel_order(order.id)
        assert reserved(db, world["cleaning_slot"].id) == 0

    def test_resets_active_conversation(self, db, world):
        order, _ = OrderService(db).create_order(order_request(world["laundry_slot"]))
        ConversationRepository.start(
            db, "+15550001111", order.partner_id, order.id, "awaiting_weight",
            {"state": "awaiting_weight", "order_id": order.id},
        )
        db.commit()

        OrderService(db).cancel_order(order.id)

        conversation = db.query(Conversation).filter(Conversation.order_id == order.id).one()
        assert conversation.state == "idle"

    def test_preview_does_not_mutate(self, db, world):
        order = self.cleaning_order(db, world)
        now = world["cleaning_slot"].slot_start - timedelta(hours=2)
        preview = OrderService(db).policy_preview(order.id, now=now)

        assert preview["cancellation"]["fee_cents"] == 1943
        assert preview["cancellation"]["allowed"]
        assert preview["reschedule"]["fee_cents"] == 0
        assert preview["cancellation"]["free_until"] == world["cleaning_slot"].slot_start - timedelta(hours=24)
        db.expire_all()
        assert db.query(Order).filter(Order.id == order.id).one().status == "quote_approved"

    def test_unknown_order(self, db, world):
        with pytest.raises(OrderNotFound):
            OrderService(db).cancel_order(12345)


class TestReschedule:
    def test_moves_reservation(self, db, world):
        order, _ = OrderService(db).create_order(order_request(world["laundry_slot"]))
        moved = OrderService(db).reschedule_order(order.id, world["laundry_slot_2"].id)

        assert moved.slot_id == world["laundry_slot_2"].id
        assert reserved(db, world["laundry_slot"].id) == 0
        assert reserved(db, world["laundry_slot_2"].id) == 1
        assert event_types(db, order.id)[-1] == "order_rescheduled"

    def test_failed_reschedule_keeps_original_binding(self, db, world):
        order, _ = OrderService(db).create_order(order_request(world["laundry_slot"]))
        full = make_slot(db, world["laundry_partner"], tomorrow_at(18), max_units=1, reserved=1)

        with pytest.raises(InsufficientCapacity):
            OrderService(db).reschedule_order(order.id, full.id)

        db.expire_all()
        order = db.query(Order).filter(Order.id == order.id).one()
        assert order.slot_id == world["laundry_slot"].id
        assert reserved(db, world["laundry_slot"].id) == 1
        assert reserved(db, full.id) == 1
        assert event_types(db, order.id) == ["order_created"]

    def test_same_slot_is_rejected(self, db, world):
        order, _ = OrderService(db).create_order(order_request(world["laundry_slot"]))
        with pytest.raises(InvalidTransition):
            OrderService(db).reschedule_order(order.id, world["laundry_slot"].id)

    def test_not_after_service_started(self, db, world):
        order, _ = OrderService(db).create_order(order_request(world["laundry_slot"]))
        order.status = "in_progress"
        db.commit()
        with pytest.raises(InvalidTransition):
            OrderService(db).reschedule_order(order.id, world["laundry_slot_2"].id)

    def test_reschedule_fee_inside_window(self, db, world):
        db.add(
            CancellationPolicy(
                service_type="CLEANING", notice_hours=24, cancellation_fee_percent=0.15,
                reschedule_notice_hours=24, reschedule_fee_percent=0.10,
            )
        )
        db.commit()
        request = order_request(world["cleaning_slot"], service_type="CLEANING", details={"bedrooms": 1})
        order, _ = OrderService(db).create_order(request)
        now = world["cleaning_slot"].slot_start - timedelta(hours=3)

        moved = OrderService(db).reschedule_order(order.id, world["cleaning_slot_2"].id, now=now)
        assert moved.reschedule_fee_cents == 1296


class TestFulfillment:
    def test_complete_and_dispute(self, db, world):
        service = OrderService(db)
        request = order_request(world["cleaning_slot"], service_type="CLEANING", details={"bedrooms": 1})
        order, _ = service.create_order(request)
        order.status = "scheduled"
        db.commit()

        service.start_service(order.id)
        completed = service.complete_order(order.id)
        assert completed.status == "completed"
        assert completed.completed_at is not None

        disputed = service.dispute_order(order.id, "Kitchen was not cleaned")
        assert disputed.status == "disputed"
        assert disputed.needs_follow_up

    def test_illegal_transition_leaves_status(self, db, world):
        service = OrderService(db)
        order, _ = service.create_order(order_request(world["laundry_slot"]))
        with pytest.raises(InvalidTransition):
            service.complete_order(order.id)
        db.expire_all()
        assert db.query(Order).filter(Order.id == order.id).one().status == "pending_quote"

    def test_completion_counts_subscription_visit(self, db, world):
        subscription = Subscription(
            customer_phone="+12125550100", service_type="CLEANING", frequency="WEEKLY",
            discount_pct=0.2, visits_completed=0, active=True,
        )
        db.add(subscription)
        db.commit()
        service = OrderService(db)
        request = order_request(
            world["cleaning_slot"], service_type="CLEANING", details={"bedrooms": 1},
            subscription_id=subscription.id,
        )
        first, _ = service.create_order(request)
        assert first.pricing_snapshot["discount_cents"] == 0

        first.status = "in_progress"
        db.commit()
        service.complete_order(first.id)
        db.refresh(subscription)
        assert subscription.visits_completed == 1

        second, _ = service.create_order(
            order_request(
                world["cleaning_slot_2"], service_type="CLEANING", key="order-key-0002",
                details={"bedrooms": 1}, subscription_id=subscription.id,
            )
        )
        assert second.pricing_snapshot["discount_cents"] == 2380


class TestQuoteLoop:
    def test_submit_resubmit_approve(self, db, world):
        order, _ = OrderService(db).create_order(order_request(world["laundry_slot"]))
        quotes = QuoteService(db)

        first = quotes.submit_quote(order.id, "10")
        assert first.computed_total == 2625
        second = quotes.submit_quote(order.id, "25")
        db.refresh(first)
        assert first.approval_status == "superseded"

        approved = quotes.approve_quote(order.id)
        assert approved.id == second.id
        db.refresh(order)
        assert order.status == "quote_approved"
        assert order.total_cents == 4375
        assert event_types(db, order.id) == [
            "order_created", "quote_submitted", "quote_resubmitted", "quote_approved",
        ]

    def test_reject_returns_to_pending_quote(self, db, world):
        order, _ = OrderService(db).create_order(order_request(world["laundry_slot"]))
        quotes = QuoteService(db)
        quotes.submit_quote(order.id, "12")
        rejected = quotes.reject_quote(order.id, "scale was off")
        assert rejected.approval_status == "rejected"
        db.refresh(order)
        assert order.status == "pending_quote"

    def test_cannot_quote_after_approval(self, db, world):
        request = order_request(world["cleaning_slot"], service_type="CLEANING", details={"bedrooms": 1})
        order, _ = OrderService(db).create_order(request)
        with pytest.raises(InvalidTransition):
            QuoteService(db).submit_quote(order.id, "1")

    def test_approve_without_submission(self, db, world):
        order, _ = OrderService(db).create_order(order_request(world["laundry_slot"]))
        with pytest.raises(InvalidTransition):
            QuoteService(db).approve_quote(order.id)
