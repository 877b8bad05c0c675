"""Order service - lifecycle operations with capacity, fees and the event outbox"""

import hashlib
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...errors import (
    IdempotencyConflict,
    InvalidTransition,
    OrderNotFound,
    SlotNotFound,
)
from ...models import Order, Quote, Subscription
from ...shared.clock import utcnow
from ..capacity.ledger import CapacityLedger
from ..conversations.repository import ConversationRepository
from ..quotes.service import QuoteService, is_quote_based
from .policy import compute_fee, get_policy
from .repository import OrderRepository
from .schemas import OrderCreate
from .state_machine import OrderStatus, can_reschedule, validate_transition

logger = logging.getLogger(__name__)


def request_hash(data: OrderCreate) -> str:
    """Fingerprint of a create request, excluding the idempotency key itself"""
    payload = data.model_dump(mode="json", exclude={"idempotency_key"})
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class OrderService:
    """Service layer for the order lifecycle"""

    def __init__(self, db: Session, quotes: Optional[QuoteService] = None):
        self.db = db
        self.repo = OrderRepository()
        self.ledger = CapacityLedger()
        self.conversations = ConversationRepository()
        self.quotes = quotes or QuoteService(db)

    @contextmanager
    def _transaction(self, commit: bool):
        """Commit (or just flush when the caller owns the transaction)"""
        try:
            yield
            if commit:
                self.db.commit()
            else:
                self.db.flush()
        except Exception:
            if commit:
                self.db.rollback()
            raise

    def get_order(self, order_id: int) -> Order:
        order = self.repo.get_by_id(self.db, order_id)
        if not order:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    def _lock(self, order_id: int) -> Order:
        order = self.repo.lock(self.db, order_id)
        if not order:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    # ========================================================================
    # CREATE
    # ========================================================================

    def create_order(self, data: OrderCreate, now: Optional[datetime] = None) -> tuple[Order, bool]:
        """
        Book a slot and create the order, idempotently.

        Returns:
            (order, created) - created is False when the key was seen before

        Raises:
            IdempotencyConflict: key reused with a different payload
            InsufficientCapacity / SlotNotFound: the slot cannot be booked
        """
        now = now or utcnow()
        fingerprint = request_hash(data)

        existing = self.repo.get_by_idempotency_key(self.db, data.idempotency_key)
        if existing:
            return self._replay(existing, fingerprint), False

        try:
            order = self._create(data, fingerprint, now)
            self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent request carrying the same key
            self.db.rollback()
            existing = self.repo.get_by_idempotency_key(self.db, data.idempotency_key)
            if not existing:
                raise
            return self._replay(existing, fingerprint), False
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(order)
        logger.info(f"✅ Order {order.id} created ({order.service_type}, status={order.status})")
        return order, True

    def _replay(self, existing: Order, fingerprint: str) -> Order:
        if existing.request_hash != fingerprint:
            logger.warning(
                f"⚠️ Idempotency key reused with a different payload (order {existing.id})"
            )
            raise IdempotencyConflict(
                "Idempotency key already used for a different request",
                details={"order_id": existing.id},
            )
        logger.info(f"🔁 Duplicate create for order {existing.id} - returning original")
        return existing

    def _create(self, data: OrderCreate, fingerprint: str, now: datetime) -> Order:
        slot = self.ledger.get_slot(self.db, data.slot_id)
        if slot.service_type != data.service_type:
            raise SlotNotFound(f"Slot {slot.id} does not offer {data.service_type}")
        if slot.slot_start <= now:
            raise SlotNotFound(f"Slot {slot.id} has already started")

        subscription = None
        if data.subscription_id is not None:
            subscription = (
                self.db.query(Subscription).filter(Subscription.id == data.subscription_id).first()
            )
            if not subscription or not subscription.active:
                raise InvalidTransition(f"Subscription {data.subscription_id} is not active")
            if subscription.service_type != data.service_type:
                raise InvalidTransition("Subscription is for a different service")

        details = data.details.model_dump()
        quote_based = is_quote_based(data.service_type)
        pricing = None
        if not quote_based:
            pricing = self.quotes.price_booking(data.service_type, details, subscription)

        order = Order(
            idempotency_key=data.idempotency_key,
            request_hash=fingerprint,
            service_type=data.service_type,
            status=(
                OrderStatus.PENDING_QUOTE.value if quote_based else OrderStatus.QUOTE_APPROVED.value
            ),
            slot_id=slot.id,
            partner_id=slot.partner_id,
            units=1,
            customer_phone=data.customer_phone,
            address_snapshot=data.address.model_dump(),
            details=details,
            pricing_snapshot=pricing.to_dict() if pricing else None,
            subtotal_cents=pricing.subtotal_cents if pricing else None,
            tax_cents=pricing.tax_cents if pricing else None,
            total_cents=pricing.total_cents if pricing else None,
            payment_flow=data.payment_flow,
            subscription_id=subscription.id if subscription else None,
        )
        self.db.add(order)
        self.db.flush()

        self.ledger.reserve(self.db, slot.id, order.units, order_id=order.id)

        if pricing:
            # Fixed-price services start with an approved quote from the booking snapshot
            self.db.add(
                Quote(
                    order_id=order.id,
                    measured_quantity=pricing.quantity,
                    addons=[line["unit_key"] for line in pricing.addon_lines],
                    computed_subtotal=pricing.subtotal_cents,
                    computed_tax=pricing.tax_cents,
                    computed_total=pricing.total_cents,
                    breakdown=pricing.to_dict(),
                    approval_status="approved",
                    approved_at=now,
                )
            )

        self.repo.record_event(
            self.db,
            order,
            "order_created",
            to_status=order.status,
            payload={"slot_id": slot.id, "partner_id": slot.partner_id},
        )
        self.db.flush()
        return order

    # ========================================================================
    # CANCEL / RESCHEDULE
    # ========================================================================

    def policy_preview(self, order_id: int, now: Optional[datetime] = None) -> dict:
        """Fees the customer would pay right now, without changing anything"""
        now = now or utcnow()
        order = self.get_order(order_id)
        policy = get_policy(self.db, order.service_type)
        slot_start = order.slot.slot_start if order.slot else None

        def preview(allowed, notice_hours, fee_percent):
            return {
                "service_type": order.service_type,
                "allowed": allowed,
                "notice_hours": notice_hours,
                "fee_percent": fee_percent,
                "fee_cents": compute_fee(order.total_cents, slot_start, now, notice_hours, fee_percent),
                "free_until": slot_start - timedelta(hours=notice_hours) if slot_start else None,
            }

        return {
            "cancellation": preview(
                policy.allow_cancellation, policy.notice_hours, policy.cancellation_fee_percent
            ),
            "reschedule": preview(
                policy.allow_rescheduling and can_reschedule(order.status),
                policy.reschedule_notice_hours,
                policy.reschedule_fee_percent,
            ),
        }

    def cancel_order(
        self,
        order_id: int,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> Order:
        """
        Cancel an order: charge the policy fee, release capacity and reset
        the partner conversation. Payment settlement (void or refund) runs
        afterwards through the payment coordinator.
        """
        now = now or utcnow()
        with self._transaction(commit):
            order = self._lock(order_id)
            validate_transition(order.status, OrderStatus.CANCELLED.value)

            policy = get_policy(self.db, order.service_type)
            if not policy.allow_cancellation:
                raise InvalidTransition(f"{order.service_type} orders cannot be cancelled")

            previous_status = order.status
            if previous_status == OrderStatus.DISPUTED.value:
                fee = 0
            else:
                slot_start = order.slot.slot_start if order.slot else None
                fee = compute_fee(
                    order.total_cents,
                    slot_start,
                    now,
                    policy.notice_hours,
                    policy.cancellation_fee_percent,
                )

            self.ledger.release_for_order(self.db, order.id)
            self.conversations.reset_for_order(self.db, order.id)

            order.cancellation_fee_cents = fee
            order.cancelled_at = now
            self.repo.transition(
                self.db,
                order,
                OrderStatus.CANCELLED,
                "order_cancelled",
                {"fee_cents": fee, "reason": reason, "previous_status": previous_status},
            )

        logger.info(f"❌ Order {order_id} cancelled (fee {fee}¢)")
        return order

    def reschedule_order(
        self,
        order_id: int,
        new_slot_id: int,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> Order:
        """
        Move an order to another slot in one transaction.

        If the new slot cannot be reserved the whole transaction rolls back,
        so the original reservation and slot binding stay as they were.
        """
        now = now or utcnow()
        with self._transaction(commit):
            order = self._lock(order_id)
            if not can_reschedule(order.status):
                raise InvalidTransition(f"Order {order_id} cannot be rescheduled while {order.status}")

            policy = get_policy(self.db, order.service_type)
            if not policy.allow_rescheduling:
                raise InvalidTransition(f"{order.service_type} orders cannot be rescheduled")
            if new_slot_id == order.slot_id:
                raise InvalidTransition(f"Order {order_id} is already booked in slot {new_slot_id}")

            new_slot = self.ledger.get_slot(self.db, new_slot_id)
            if new_slot.service_type != order.service_type:
                raise SlotNotFound(f"Slot {new_slot_id} does not offer {order.service_type}")
            if new_slot.slot_start <= now:
                raise SlotNotFound(f"Slot {new_slot_id} has already started")

            old_slot_id = order.slot_id
            old_start = order.slot.slot_start if order.slot else None
            fee = compute_fee(
                order.total_cents,
                old_start,
                now,
                policy.reschedule_notice_hours,
                policy.reschedule_fee_percent,
            )

            self.ledger.release_for_order(self.db, order.id)
            self.ledger.reserve(self.db, new_slot.id, order.units, order_id=order.id)

            order.slot_id = new_slot.id
            order.partner_id = new_slot.partner_id
            order.reschedule_fee_cents = (order.reschedule_fee_cents or 0) + fee
            self.repo.record_event(
                self.db,
                order,
                "order_rescheduled",
                from_status=order.status,
                to_status=order.status,
                payload={"old_slot_id": old_slot_id, "new_slot_id": new_slot.id, "fee_cents": fee},
            )

        logger.info(f"📅 Order {order_id} moved from slot {old_slot_id} to {new_slot_id}")
        return order

    # ========================================================================
    # FULFILLMENT
    # ========================================================================

    def start_service(self, order_id: int, commit: bool = True) -> Order:
        with self._transaction(commit):
            order = self._lock(order_id)
            self.repo.transition(self.db, order, OrderStatus.IN_PROGRESS, "order_in_progress")
        return order

    def complete_order(
        self, order_id: int, now: Optional[datetime] = None, commit: bool = True
    ) -> Order:
        now = now or utcnow()
        with self._transaction(commit):
            order = self._lock(order_id)
            from_status = order.status
            self.repo.transition(self.db, order, OrderStatus.COMPLETED, "order_completed")
            order.completed_at = now

            if from_status == OrderStatus.IN_PROGRESS.value and order.subscription_id:
                subscription = (
                    self.db.query(Subscription)
                    .filter(Subscription.id == order.subscription_id)
                    .with_for_update()
                    .first()
                )
                if subscription:
                    subscription.visits_completed = (subscription.visits_completed or 0) + 1

            self.conversations.reset_for_order(self.db, order.id)

        logger.info(f"🏁 Order {order_id} completed")
        return order

    def dispute_order(self, order_id: int, reason: str, commit: bool = True) -> Order:
        with self._transaction(commit):
            order = self._lock(order_id)
            self.repo.transition(
                self.db, order, OrderStatus.DISPUTED, "order_disputed", {"reason": reason}
            )
            order.needs_follow_up = True
        logger.warning(f"⚠️ Order {order_id} disputed: {reason}")
        return order

    def flag_follow_up(self, order_id: int, reason: str, commit: bool = True) -> Order:
        with self._transaction(commit):
            order = self._lock(order_id)
            order.needs_follow_up = True
            self.repo.record_event(self.db, order, "follow_up_requested", payload={"reason": reason})
        return order
