"""
Notification Dispatcher
Turns undispatched order events (the outbox) into partner and customer SMS.

Delivery is at-least-once: an event is marked dispatched only after every
message for it went out. Failed events back off exponentially and are
escalated to manual review after NOTIFICATION_MAX_ATTEMPTS.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .. import sms_templates
from ..config import (
    NOTIFICATION_BATCH_SIZE,
    NOTIFICATION_MAX_ATTEMPTS,
    NOTIFICATION_RETRY_BASE_SECONDS,
)
from ..domain.conversations.service import ConversationService
from ..domain.orders.repository import OrderRepository
from ..domain.orders.state_machine import is_terminal
from ..domain.quotes.service import is_quote_based
from ..models import Order, OrderEvent
from ..shared.clock import utcnow
from .manual_review import escalate
from .sms_service import SmsSender, send_sms

logger = logging.getLogger(__name__)


@dataclass
class OutboundSms:
    to_phone: Optional[str]
    body: str
    message_type: str


def retry_delay(attempts: int) -> timedelta:
    return timedelta(seconds=NOTIFICATION_RETRY_BASE_SECONDS * (2 ** max(attempts - 1, 0)))


class NotificationDispatcher:
    """Drains the order event outbox"""

    def __init__(self, db: Session, sender: SmsSender, conversations: Optional[ConversationService] = None):
        self.db = db
        self.sender = sender
        self.conversations = conversations or ConversationService(db)

    def pending_events(self, now: datetime, limit: int = NOTIFICATION_BATCH_SIZE) -> list[OrderEvent]:
        return (
            self.db.query(OrderEvent)
            .filter(
                OrderEvent.dispatched_at.is_(None),
                OrderEvent.escalated.is_(False),
                or_(OrderEvent.next_attempt_at.is_(None), OrderEvent.next_attempt_at <= now),
            )
            .order_by(OrderEvent.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .all()
        )

    async def flush(self, now: Optional[datetime] = None, limit: int = NOTIFICATION_BATCH_SIZE) -> dict:
        """
        Dispatch due events, one transaction per event

        Returns:
            Counts of sent, retrying and escalated events
        """
        now = now or utcnow()
        stats = {"sent": 0, "retrying": 0, "escalated": 0}
        event_ids = [event.id for event in self.pending_events(now, limit)]
        self.db.commit()

        for event_id in event_ids:
            try:
                outcome = await self._dispatch(event_id, now)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            if outcome:
                stats[outcome] += 1

        if event_ids:
            logger.info(
                f"📬 Outbox flush: {stats['sent']} sent, {stats['retrying']} retrying, "
                f"{stats['escalated']} escalated"
            )
        return stats

    async def _dispatch(self, event_id: int, now: datetime) -> Optional[str]:
        order_id = self.db.query(OrderEvent.order_id).filter(OrderEvent.id == event_id).scalar()
        if order_id is None:
            return None
        # Order row first, then event and conversation rows; a concurrent cancel
        # either finishes before this read or waits for the dispatch
        order = OrderRepository.lock(self.db, order_id)
        event = (
            self.db.query(OrderEvent)
            .filter(OrderEvent.id == event_id, OrderEvent.dispatched_at.is_(None))
            .populate_existing()
            .with_for_update()
            .first()
        )
        if not event or not order:
            return None

        messages = self.messages_for(event, order, first_attempt=(event.attempts or 0) == 0)
        errors = []
        for message in messages:
            success, error = await send_sms(
                self.db, self.sender, message.to_phone, message.body, message.message_type, order_id=order.id
            )
            if not success:
                errors.append(f"{message.message_type}: {error}")

        if not errors:
            event.dispatched_at = now
            event.last_error = None
            return "sent"

        event.attempts = (event.attempts or 0) + 1
        event.last_error = "; ".join(errors)
        if event.attempts >= NOTIFICATION_MAX_ATTEMPTS:
            event.escalated = True
            event.next_attempt_at = None
            escalate(
                self.db,
                "notification",
                f"{event.event_type} notification failed {event.attempts} times: {event.last_error}",
                order_id=order.id,
                details={"event_id": event.id},
            )
            return "escalated"

        event.next_attempt_at = now + retry_delay(event.attempts)
        logger.warning(
            f"⚠️ Notification for event {event.id} ({event.event_type}) failed, "
            f"retry {event.attempts} at {event.next_attempt_at}"
        )
        return "retrying"

    # ========================================================================
    # TEMPLATES PER EVENT
    # ========================================================================

    def messages_for(self, event: OrderEvent, order: Order, first_attempt: bool = True) -> list[OutboundSms]:
        """
        Messages for one event. On the first attempt this also opens the
        partner conversation for quote-based orders.
        """
        payload = event.payload or {}
        slot_time = sms_templates.format_time_for_sms(order.slot.slot_start if order.slot else None)
        partner_phone = order.partner.phone if order.partner else None
        customer = order.customer_phone
        messages = []

        if event.event_type == "order_created":
            messages.append(
                OutboundSms(
                    customer,
                    sms_templates.customer_order_received(order.id, order.service_type, slot_time),
                    "order_received",
                )
            )
            if is_quote_based(order.service_type) and not is_terminal(order.status):
                if first_attempt:
                    self.conversations.start_for_order(order)
                messages.append(
                    OutboundSms(
                        partner_phone,
                        sms_templates.pickup_notification(
                            order.id,
                            order.service_type,
                            slot_time,
                            sms_templates.format_address_for_sms(order.address_snapshot),
                        ),
                        "pickup_notification",
                    )
                )

        elif event.event_type in ("quote_submitted", "quote_resubmitted"):
            messages.append(
                OutboundSms(
                    customer,
                    sms_templates.customer_quote_submitted(order.id, payload.get("total_cents") or 0),
                    "quote_submitted",
                )
            )

        elif event.event_type == "payment_captured":
            messages.append(
                OutboundSms(
                    customer,
                    sms_templates.customer_payment_captured(
                        order.id, payload.get("amount_cents") or order.total_cents or 0
                    ),
                    "payment_captured",
                )
            )

        elif event.event_type == "payment_failed":
            messages.append(
                OutboundSms(customer, sms_templates.customer_payment_failed(order.id), "payment_failed")
            )

        elif event.event_type == "order_scheduled":
            if is_quote_based(order.service_type) and not is_terminal(order.status):
                if first_attempt:
                    self.conversations.start_for_order(order, delivery=True)
                messages.append(
                    OutboundSms(
                        partner_phone,
                        sms_templates.delivery_ready(
                            order.id, slot_time, sms_templates.format_address_for_sms(order.address_snapshot)
                        ),
                        "delivery_ready",
                    )
                )

        elif event.event_type == "order_rescheduled":
            messages.append(
                OutboundSms(
                    customer, sms_templates.customer_order_rescheduled(order.id, slot_time), "order_rescheduled"
                )
            )

        elif event.event_type == "order_cancelled":
            messages.append(
                OutboundSms(
                    customer,
                    sms_templates.customer_order_cancelled(order.id, payload.get("fee_cents") or 0),
                    "order_cancelled",
                )
            )

        elif event.event_type == "order_completed":
            messages.append(
                OutboundSms(customer, sms_templates.customer_order_completed(order.id), "order_completed")
            )

        # Customers without a phone simply get no SMS
        return [m for m in messages if m.to_phone]
