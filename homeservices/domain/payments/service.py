"""
Payment coordinator - the payment saga for an order

Two flows:
- legacy: after quote approval a PaymentIntent is created for the approved
  total; the customer completes it and the result arrives by webhook.
- authorize_now: a SetupIntent saves the card at booking; after approval the
  exact approved total is charged off-session.

Every processor call carries an idempotency key derived from the order id, so
retries and concurrent captures can never double-charge.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import CAPTURE_LEAD_HOURS, PAYMENT_MAX_ATTEMPTS, PAYMENT_RETRY_BASE_SECONDS
from ...errors import InvalidTransition, OrderNotFound, PaymentFailure
from ...models import CapacitySlot, Order, PaymentRecord, WebhookEvent
from ...services.manual_review import escalate
from ...shared.clock import utcnow
from ..orders.repository import OrderRepository
from ..orders.state_machine import OrderStatus
from ..quotes.repository import QuoteRepository
from .gateway import IntentResult, PaymentGateway

logger = logging.getLogger(__name__)

CAPTURABLE_STATUSES = {
    OrderStatus.QUOTE_APPROVED.value,
    OrderStatus.PAYMENT_PENDING.value,
    OrderStatus.PAYMENT_FAILED.value,
}


def capture_key(order_id: int) -> str:
    return f"order-{order_id}-capture"


def setup_key(order_id: int) -> str:
    return f"order-{order_id}-setup"


def retry_delay(attempts: int) -> timedelta:
    """Exponential backoff: base, 2×base, 4×base..."""
    return timedelta(seconds=PAYMENT_RETRY_BASE_SECONDS * (2 ** max(attempts - 1, 0)))


class PaymentCoordinator:
    """Drives orders through payment_pending / payment_failed / payment_captured"""

    def __init__(self, db: Session, gateway: PaymentGateway):
        self.db = db
        self.gateway = gateway
        self.orders = OrderRepository()
        self.quotes = QuoteRepository()

    def _lock_order(self, order_id: int) -> Order:
        order = self.orders.lock(self.db, order_id)
        if not order:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    def _lock_record(self, order_id: int) -> Optional[PaymentRecord]:
        return (
            self.db.query(PaymentRecord)
            .filter(PaymentRecord.order_id == order_id)
            .populate_existing()
            .with_for_update()
            .first()
        )

    def _get_or_create_record(self, order: Order) -> PaymentRecord:
        record = self._lock_record(order.id)
        if record:
            return record
        try:
            with self.db.begin_nested():
                record = PaymentRecord(
                    order_id=order.id,
                    flow=order.payment_flow,
                    idempotency_key=capture_key(order.id),
                    status="created",
                )
                self.db.add(record)
        except IntegrityError:
            logger.debug(f"Payment record for order {order.id} created concurrently")
        return self._lock_record(order.id)

    # ========================================================================
    # AUTHORIZE NOW (booking time)
    # ========================================================================

    async def start_authorization(self, order_id: int) -> Optional[str]:
        """
        Create the SetupIntent for an authorize-now order.

        Returns the client secret the booking page uses to collect the card,
        or None when the processor could not be reached (the customer can retry).
        """
        order = self._lock_order(order_id)
        record = self._get_or_create_record(order)
        if record.setup_intent_id and record.status != "created":
            self.db.commit()
            return None
        record.status = "setup_pending"
        self.db.commit()

        try:
            intent = await self.gateway.create_setup_intent(
                setup_key(order_id), {"order_id": order_id, "flow": "authorize_now"}
            )
        except PaymentFailure as e:
            record = self._lock_record(order_id)
            record.last_error = e.message
            self.db.commit()
            logger.error(f"❌ SetupIntent failed for order {order_id}: {e.message}")
            return None

        record = self._lock_record(order_id)
        record.setup_intent_id = intent.id
        if intent.status == "succeeded" and intent.payment_method:
            record.payment_method_id = intent.payment_method
            record.status = "authorized"
        self.db.commit()
        logger.info(f"🔐 SetupIntent {intent.id} created for order {order_id}")
        return intent.client_secret

    # ========================================================================
    # CAPTURE
    # ========================================================================

    async def capture(self, order_id: int, now: Optional[datetime] = None) -> PaymentRecord:
        """
        Charge the approved total for an order.

        Safe to call repeatedly: a succeeded record is returned as-is and the
        processor deduplicates on the order's idempotency key.

        Raises:
            InvalidTransition: no approved quote, or the order is past payment
        """
        now = now or utcnow()
        order = self._lock_order(order_id)
        record = self._lock_record(order_id)

        if record and record.status == "succeeded":
            self.db.commit()
            logger.info(f"🔁 Order {order_id} already captured - skipping")
            return record

        quote = self.quotes.get_approved(self.db, order_id)
        if not quote:
            self.db.rollback()
            raise InvalidTransition(f"Order {order_id} has no approved quote to capture")
        if order.status not in CAPTURABLE_STATUSES:
            self.db.rollback()
            raise InvalidTransition(f"Order {order_id} cannot be captured while {order.status}")

        record = record or self._get_or_create_record(order)
        if order.payment_flow == "authorize_now" and not record.payment_method_id:
            self.db.rollback()
            raise InvalidTransition(f"Order {order_id} has no saved payment method yet")

        if record.status == "requires_action":
            # Waiting on the customer; a new intent would not help
            self.db.commit()
            return record
        if record.status == "failed":
            # Deliberate new attempt after a terminal failure needs a fresh key
            record.idempotency_key = f"{capture_key(order_id)}-{(record.attempts or 0) + 1}"

        record.attempts = (record.attempts or 0) + 1
        record.amount_cents = quote.computed_total
        record.status = "pending"
        record.next_retry_at = None
        amount = quote.computed_total
        idempotency_key = record.idempotency_key
        payment_method = record.payment_method_id
        off_session = order.payment_flow == "authorize_now"
        self.db.commit()

        try:
            intent = await self.gateway.create_payment_intent(
                amount,
                idempotency_key,
                {"order_id": order_id, "quote_id": quote.id},
                payment_method=payment_method,
                off_session=off_session,
            )
        except PaymentFailure as e:
            return self._record_failure(order_id, e, now)

        return self._apply_intent(order_id, intent)

    def _apply_intent(self, order_id: int, intent: IntentResult) -> PaymentRecord:
        order = self._lock_order(order_id)
        record = self._lock_record(order_id)
        record.processor_intent_id = intent.id
        record.client_secret = intent.client_secret or record.client_secret

        if record.status == "succeeded":
            logger.info(f"🔁 Order {order_id} captured concurrently - nothing to apply")
        elif intent.status == "succeeded":
            self._mark_captured(order, record)
        elif intent.status in ("requires_action", "requires_payment_method", "processing", "requires_confirmation"):
            # Customer step-up or asynchronous confirmation; the webhook finishes it
            record.status = "requires_action" if intent.status == "requires_action" else "pending"
            if order.status != OrderStatus.PAYMENT_PENDING.value:
                self.orders.transition(
                    self.db,
                    order,
                    OrderStatus.PAYMENT_PENDING,
                    "payment_pending",
                    {"intent_id": intent.id, "intent_status": intent.status},
                )
        else:
            record.status = "failed"
            record.last_error = f"Unexpected intent status {intent.status}"
            if order.status != OrderStatus.PAYMENT_FAILED.value:
                self.orders.transition(self.db, order, OrderStatus.PAYMENT_FAILED, "payment_failed")

        self.db.commit()
        return record

    def _mark_captured(self, order: Order, record: PaymentRecord) -> None:
        record.status = "succeeded"
        record.captured_at = utcnow()
        record.last_error = None
        record.next_retry_at = None

        if order.status in CAPTURABLE_STATUSES:
            self.orders.transition(
                self.db,
                order,
                OrderStatus.PAYMENT_CAPTURED,
                "payment_captured",
                {"amount_cents": record.amount_cents, "intent_id": record.processor_intent_id},
            )
            self.orders.transition(self.db, order, OrderStatus.SCHEDULED, "order_scheduled")
            logger.info(f"✅ Payment captured for order {order.id}: {record.amount_cents}¢")
        else:
            escalate(
                self.db,
                "payment",
                f"Payment captured while order was {order.status}",
                order_id=order.id,
                details={"intent_id": record.processor_intent_id},
            )

    def _record_failure(self, order_id: int, error: PaymentFailure, now: datetime) -> PaymentRecord:
        order = self._lock_order(order_id)
        record = self._lock_record(order_id)
        self._apply_failure(order, record, error, now)
        self.db.commit()
        return record

    def _apply_failure(
        self, order: Order, record: PaymentRecord, error: PaymentFailure, now: datetime
    ) -> None:
        """Schedule a retry or escalate; the caller holds the order and record locks"""
        order_id = order.id
        record.last_error = error.message
        if error.details.get("payment_intent"):
            record.processor_intent_id = error.details["payment_intent"]

        exhausted = record.attempts >= PAYMENT_MAX_ATTEMPTS
        if error.retryable and not exhausted:
            record.status = "pending_retry"
            record.next_retry_at = now + retry_delay(record.attempts)
            logger.warning(
                f"⚠️ Capture attempt {record.attempts} failed for order {order_id}, "
                f"retrying at {record.next_retry_at}: {error.message}"
            )
        else:
            record.status = "failed"
            record.next_retry_at = None
            escalate(
                self.db,
                "payment",
                f"Capture failed after {record.attempts} attempt(s): {error.message}",
                order_id=order_id,
                details={"retryable": error.retryable, **error.details},
            )

        if order.status != OrderStatus.PAYMENT_FAILED.value and order.status in CAPTURABLE_STATUSES:
            self.orders.transition(
                self.db,
                order,
                OrderStatus.PAYMENT_FAILED,
                "payment_failed",
                {"error": error.message, "attempt": record.attempts},
            )

    # ========================================================================
    # WEBHOOKS
    # ========================================================================

    def _find_record(self, intent: dict) -> Optional[PaymentRecord]:
        intent_id = intent.get("id")
        record = None
        if intent_id:
            record = (
                self.db.query(PaymentRecord)
                .filter(
                    (PaymentRecord.processor_intent_id == intent_id)
                    | (PaymentRecord.setup_intent_id == intent_id)
                )
                .first()
            )
        if not record:
            order_id = (intent.get("metadata") or {}).get("order_id")
            if order_id and str(order_id).isdigit():
                record = (
                    self.db.query(PaymentRecord)
                    .filter(PaymentRecord.order_id == int(order_id))
                    .first()
                )
        return record

    def handle_webhook(self, event: dict) -> str:
        """
        Apply a processor event. Redeliveries of the same event id are dropped.

        Returns one of: processed, duplicate, ignored, unmatched
        """
        event_id = event.get("id")
        event_type = event.get("type", "")
        if not event_id:
            return "ignored"

        try:
            with self.db.begin_nested():
                self.db.add(WebhookEvent(source="stripe", event_id=event_id, event_type=event_type))
        except IntegrityError:
            self.db.rollback()
            logger.info(f"🔁 Duplicate webhook {event_id} ({event_type}) - skipping")
            return "duplicate"

        intent = (event.get("data") or {}).get("object") or {}
        record = self._find_record(intent)
        if not record:
            self.db.commit()
            logger.warning(f"⚠️ Webhook {event_id} ({event_type}) matched no payment record")
            return "unmatched"

        order = self._lock_order(record.order_id)
        record = self._lock_record(record.order_id)

        if event_type == "payment_intent.succeeded":
            record.processor_intent_id = intent.get("id") or record.processor_intent_id
            if intent.get("amount") is not None:
                record.amount_cents = intent["amount"]
            if record.status != "succeeded":
                self._mark_captured(order, record)
        elif event_type == "payment_intent.requires_action":
            record.status = "requires_action"
            if order.status in CAPTURABLE_STATUSES and order.status != OrderStatus.PAYMENT_PENDING.value:
                self.orders.transition(self.db, order, OrderStatus.PAYMENT_PENDING, "payment_pending")
        elif event_type == "payment_intent.payment_failed":
            if record.status == "succeeded":
                logger.warning(f"⚠️ Ignoring failure event {event_id}: order {order.id} already captured")
            else:
                last_error = intent.get("last_payment_error") or {}
                # Declines reported asynchronously need the customer, not another attempt
                self._apply_failure(
                    order,
                    record,
                    PaymentFailure(
                        last_error.get("message", "Payment failed"),
                        retryable=False,
                        details={"payment_intent": intent.get("id"), "code": last_error.get("code")},
                    ),
                    utcnow(),
                )
        elif event_type == "setup_intent.succeeded":
            record.setup_intent_id = intent.get("id") or record.setup_intent_id
            payment_method = intent.get("payment_method")
            if isinstance(payment_method, dict):
                payment_method = payment_method.get("id")
            record.payment_method_id = payment_method
            record.status = "authorized"
            logger.info(f"🔐 Card saved for order {order.id}")
        else:
            self.db.commit()
            return "ignored"

        self.db.commit()
        logger.info(f"✅ Webhook {event_id} ({event_type}) applied to order {order.id}")
        return "processed"

    # ========================================================================
    # CANCELLATION SETTLEMENT
    # ========================================================================

    async def settle_cancellation(self, order_id: int) -> Optional[PaymentRecord]:
        """Void an uncaptured intent or refund total minus the cancellation fee"""
        order = self._lock_order(order_id)
        record = self._lock_record(order_id)
        if order.status != OrderStatus.CANCELLED.value or not record:
            self.db.commit()
            return record
        if record.status in ("voided", "refunded"):
            self.db.commit()
            return record

        intent_id = record.processor_intent_id
        captured = record.status == "succeeded"
        refund_amount = max((record.amount_cents or 0) - (order.cancellation_fee_cents or 0), 0)
        self.db.commit()

        try:
            if captured and refund_amount > 0:
                await self.gateway.refund(intent_id, refund_amount, f"order-{order_id}-refund")
            elif not captured and intent_id:
                await self.gateway.cancel_payment_intent(intent_id, f"order-{order_id}-void")
        except PaymentFailure as e:
            record = self._lock_record(order_id)
            record.last_error = e.message
            escalate(
                self.db,
                "payment",
                f"Cancellation settlement failed: {e.message}",
                order_id=order_id,
                details={"refund_cents": refund_amount if captured else 0},
            )
            self.db.commit()
            return record

        order = self._lock_order(order_id)
        record = self._lock_record(order_id)
        if captured:
            record.status = "refunded"
            record.refunded_cents = refund_amount
            order.refund_cents = refund_amount
        else:
            record.status = "voided"
            order.refund_cents = 0
        self.db.commit()
        logger.info(f"💸 Settled cancelled order {order_id}: {record.status}")
        return record

    # ========================================================================
    # BACKGROUND
    # ========================================================================

    async def retry_due(self, now: Optional[datetime] = None) -> int:
        """Retry captures whose backoff has elapsed"""
        now = now or utcnow()
        due = (
            self.db.query(PaymentRecord.order_id)
            .filter(PaymentRecord.status == "pending_retry", PaymentRecord.next_retry_at <= now)
            .all()
        )
        retried = 0
        for (order_id,) in due:
            try:
                await self.capture(order_id, now=now)
                retried += 1
            except InvalidTransition as e:
                logger.warning(f"⚠️ Skipping payment retry for order {order_id}: {e.message}")
        return retried

    async def capture_due(self, now: Optional[datetime] = None) -> int:
        """Charge authorize-now orders whose visit starts within the capture lead time"""
        now = now or utcnow()
        horizon = now + timedelta(hours=CAPTURE_LEAD_HOURS)
        due = (
            self.db.query(Order.id)
            .join(PaymentRecord, PaymentRecord.order_id == Order.id)
            .join(CapacitySlot, CapacitySlot.id == Order.slot_id)
            .filter(
                Order.status == OrderStatus.QUOTE_APPROVED.value,
                Order.payment_flow == "authorize_now",
                PaymentRecord.status == "authorized",
                CapacitySlot.slot_start <= horizon,
            )
            .all()
        )
        captured = 0
        for (order_id,) in due:
            try:
                record = await self.capture(order_id, now=now)
                if record.status == "succeeded":
                    captured += 1
            except InvalidTransition as e:
                logger.warning(f"⚠️ Skipping scheduled capture for order {order_id}: {e.message}")
        return captured


