import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_public_id():
    """Generate a unique public ID for secure public access"""
    return str(uuid.uuid4())


# ============================================================================
# PARTNERS & CAPACITY
# ============================================================================


class Partner(Base):
    __tablename__ = "partners"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(20), nullable=False, index=True)  # E.164
    service_type = Column(String(20), nullable=False)  # LAUNDRY, CLEANING
    service_zips = Column(JSON, default=list)  # e.g. ["10001", "10002"]
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    slots = relationship("CapacitySlot", back_populates="partner")


class CapacitySlot(Base):
    """A bookable window; reserved_units only moves through the ledger"""

    __tablename__ = "capacity_slots"
    __table_args__ = (
        CheckConstraint("reserved_units >= 0", name="ck_slot_reserved_nonnegative"),
        CheckConstraint("reserved_units <= max_units", name="ck_slot_reserved_le_max"),
        CheckConstraint("slot_end > slot_start", name="ck_slot_window"),
    )

    id = Column(Integer, primary_key=True, index=True)
    partner_id = Column(Integer, ForeignKey("partners.id"), nullable=False, index=True)
    service_type = Column(String(20), nullable=False, index=True)
    slot_start = Column(DateTime, nullable=False, index=True)
    slot_end = Column(DateTime, nullable=False)
    max_units = Column(Integer, nullable=False)
    reserved_units = Column(Integer, default=0, nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    partner = relationship("Partner", back_populates="slots")


class CapacityReservation(Base):
    """Units held on a slot for one order; released_at makes release idempotent"""

    __tablename__ = "capacity_reservations"

    id = Column(Integer, primary_key=True, index=True)
    slot_id = Column(Integer, ForeignKey("capacity_slots.id", ondelete="CASCADE"), nullable=False)
    order_id = Column(Integer, nullable=False, index=True)
    units = Column(Integer, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    released_at = Column(DateTime, nullable=True)


class CapacityTemplate(Base):
    """Weekly availability pattern used by bulk slot creation"""

    __tablename__ = "capacity_templates"

    id = Column(Integer, primary_key=True, index=True)
    partner_id = Column(Integer, ForeignKey("partners.id"), nullable=True)
    service_type = Column(String(20), nullable=False)
    day_of_week = Column(Integer, nullable=False)  # 0 = Monday
    start_time = Column(String(5), nullable=False)  # "HH:MM"
    end_time = Column(String(5), nullable=False)
    max_units = Column(Integer, nullable=False)
    active = Column(Boolean, default=True, nullable=False)


# ============================================================================
# PRICING
# ============================================================================


class PricingRule(Base):
    """Read-only price table, looked up by unit_key"""

    __tablename__ = "pricing_rules"

    id = Column(Integer, primary_key=True, index=True)
    unit_key = Column(String(64), unique=True, nullable=False, index=True)
    service_type = Column(String(20), nullable=False)
    unit_type = Column(String(20), nullable=False)  # PER_UNIT, FLAT, MULTIPLIER, ADDON, MINIMUM
    unit_price_cents = Column(Integer, nullable=True)
    multiplier = Column(String(16), nullable=True)  # decimal as text, e.g. "1.5"
    label = Column(String(255), nullable=True)
    active = Column(Boolean, default=True, nullable=False)


class CancellationPolicy(Base):
    __tablename__ = "cancellation_policies"

    id = Column(Integer, primary_key=True, index=True)
    service_type = Column(String(20), nullable=False, index=True)
    notice_hours = Column(Integer, nullable=False, default=0)
    cancellation_fee_percent = Column(Float, nullable=False, default=0)  # 0.15 = 15%
    reschedule_notice_hours = Column(Integer, nullable=False, default=0)
    reschedule_fee_percent = Column(Float, nullable=False, default=0)
    allow_cancellation = Column(Boolean, default=True, nullable=False)
    allow_rescheduling = Column(Boolean, default=True, nullable=False)
    active = Column(Boolean, default=True, nullable=False)


class Subscription(Base):
    """Recurring service plan; the discount starts after the first visit"""

    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    customer_phone = Column(String(20), nullable=False, index=True)
    service_type = Column(String(20), nullable=False)
    frequency = Column(String(20), nullable=False)  # WEEKLY, BIWEEKLY, MONTHLY
    discount_pct = Column(Float, nullable=False, default=0)
    visits_completed = Column(Integer, nullable=False, default=0)
    first_visit_deep = Column(Boolean, default=False, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


# ============================================================================
# ORDERS
# ============================================================================


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    public_id = Column(String(36), unique=True, index=True, default=generate_public_id)
    idempotency_key = Column(String(255), unique=True, nullable=False, index=True)
    request_hash = Column(String(64), nullable=False)
    service_type = Column(String(20), nullable=False)
    status = Column(String(30), nullable=False, index=True)

    slot_id = Column(Integer, ForeignKey("capacity_slots.id", ondelete="SET NULL"), nullable=True)
    partner_id = Column(Integer, ForeignKey("partners.id"), nullable=True)
    units = Column(Integer, nullable=False, default=1)

    customer_phone = Column(String(20), nullable=True)
    address_snapshot = Column(JSON, nullable=False)
    details = Column(JSON, nullable=True)  # bedrooms, deep/move_out flags, addons
    pricing_snapshot = Column(JSON, nullable=True)  # booking-time price, fixed-price services

    subtotal_cents = Column(Integer, nullable=True)
    tax_cents = Column(Integer, nullable=True)
    total_cents = Column(Integer, nullable=True)

    payment_flow = Column(String(20), nullable=False, default="legacy")  # legacy, authorize_now
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True)

    pickup_confirmed_at = Column(DateTime, nullable=True)
    picked_up_at = Column(DateTime, nullable=True)
    delivery_requested_time = Column(String(255), nullable=True)
    needs_follow_up = Column(Boolean, default=False, nullable=False)

    cancellation_fee_cents = Column(Integer, nullable=True)
    reschedule_fee_cents = Column(Integer, nullable=False, default=0)
    refund_cents = Column(Integer, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    slot = relationship("CapacitySlot")
    partner = relationship("Partner")
    subscription = relationship("Subscription")
    quotes = relationship("Quote", back_populates="order", order_by="Quote.id")
    payment = relationship("PaymentRecord", back_populates="order", uselist=False)


class OrderEvent(Base):
    """Lifecycle event log; undispatched rows form the notification outbox"""

    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    from_status = Column(String(30), nullable=True)
    to_status = Column(String(30), nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    dispatched_at = Column(DateTime, nullable=True, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    escalated = Column(Boolean, default=False, nullable=False)


class Quote(Base):
    __tablename__ = "quotes"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    measured_quantity = Column(String(16), nullable=True)  # decimal as text, e.g. "12.5"
    addons = Column(JSON, default=list)
    computed_subtotal = Column(Integer, nullable=False)
    computed_tax = Column(Integer, nullable=False)
    computed_total = Column(Integer, nullable=False)
    breakdown = Column(JSON, nullable=True)
    approval_status = Column(String(20), nullable=False, default="pending")
    created_at = Column(DateTime, server_default=func.now())
    approved_at = Column(DateTime, nullable=True)

    order = relationship("Order", back_populates="quotes")


# ============================================================================
# PAYMENTS
# ============================================================================


class PaymentRecord(Base):
    __tablename__ = "payment_records"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True, nullable=False)
    flow = Column(String(20), nullable=False)  # legacy, authorize_now
    idempotency_key = Column(String(255), unique=True, nullable=False)
    setup_intent_id = Column(String(255), nullable=True)
    payment_method_id = Column(String(255), nullable=True)
    processor_intent_id = Column(String(255), unique=True, nullable=True, index=True)
    client_secret = Column(String(255), nullable=True)  # legacy flow: customer completes payment
    amount_cents = Column(Integer, nullable=True)
    refunded_cents = Column(Integer, nullable=False, default=0)
    # setup_pending, authorized, pending, requires_action, pending_retry, succeeded,
    # failed, voided, refunded
    status = Column(String(30), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    captured_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    order = relationship("Order", back_populates="payment")


class WebhookEvent(Base):
    """Processed webhook ids, used to drop redeliveries"""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    source = Column(String(50), nullable=False)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=True)
    received_at = Column(DateTime, server_default=func.now())

    __table_args__ = (UniqueConstraint("source", "event_id", name="uq_webhook_source_event"),)


# ============================================================================
# PARTNER CONVERSATIONS
# ============================================================================


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    phone = Column(String(20), nullable=False, index=True)
    partner_id = Column(Integer, ForeignKey("partners.id"), nullable=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    state = Column(String(40), nullable=False, default="idle")
    context = Column(JSON, nullable=False, default=dict)
    last_message_at = Column(DateTime, nullable=True)
    reminder_sent_at = Column(DateTime, nullable=True)
    last_sequence = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class MessageSequence(Base):
    """Per-phone monotonic counter; its row lock serialises one phone's messages"""

    __tablename__ = "message_sequences"

    phone = Column(String(20), primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)


class InboundMessage(Base):
    __tablename__ = "inbound_messages"
    __table_args__ = (UniqueConstraint("phone", "sequence", name="uq_inbound_phone_sequence"),)

    id = Column(Integer, primary_key=True, index=True)
    phone = Column(String(20), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    external_id = Column(String(64), unique=True, nullable=True)  # relay message id
    body = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="received")  # received, processed, failed
    intent = Column(String(40), nullable=True)
    confidence = Column(String(10), nullable=True)
    reply = Column(Text, nullable=True)
    received_at = Column(DateTime, server_default=func.now())
    processed_at = Column(DateTime, nullable=True)


# ============================================================================
# NOTIFICATIONS & ESCALATION
# ============================================================================


class SmsLog(Base):
    """Track SMS messages sent via the relay"""

    __tablename__ = "sms_logs"

    id = Column(Integer, primary_key=True, index=True)
    to_phone = Column(String(20), nullable=False)
    message_body = Column(Text, nullable=False)
    message_type = Column(String(50), nullable=False)
    order_id = Column(Integer, nullable=True, index=True)
    provider_message_sid = Column(String(255), nullable=True)
    status = Column(String(50), nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class ManualReviewItem(Base):
    """Work queue for operators: exhausted retries, stalled conversations"""

    __tablename__ = "manual_review_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    kind = Column(String(50), nullable=False)  # payment, notification, conversation
    reason = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    resolved_at = Column(DateTime, nullable=True)
