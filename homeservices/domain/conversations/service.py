"""
Partner conversation service

Inbound SMS handling in two short transactions:
1. ingest: assign the next per-phone sequence number and store the message
   (relay retries carrying the same message id are dropped here).
2. drain: under the phone's counter-row lock, process that phone's pending
   messages strictly in sequence order.

Lock order everywhere: phone counter -> order row -> conversation row.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ... import sms_templates
from ...config import (
    CONVERSATION_RESET_MINUTES,
    CONVERSATION_REMINDER_MINUTES,
    LLM_TIMEOUT_SECONDS,
)
from ...errors import (
    ConversationParseFailure,
    DomainError,
    InvalidQuantity,
    InvalidTransition,
    UnknownPricingRule,
)
from ...models import Conversation, InboundMessage, Order
from ...services.manual_review import escalate
from ...services.sms_service import SmsSender, send_sms
from ...shared.clock import utcnow
from ..orders.repository import OrderRepository
from ..orders.service import OrderService
from ..orders.state_machine import OrderStatus
from ..quotes.service import QuoteService
from .classifier import IntentClassifier, NullClassifier
from .executor import Decision, Effect, decide
from .intents import ParsedIntent, parse_intent
from .repository import IDLE, ConversationRepository
from .states import (
    AwaitingDeliveryConfirm,
    AwaitingPickupConfirm,
    dump_context,
    load_context,
)

logger = logging.getLogger(__name__)


class ConversationService:
    """Drives the partner SMS workflow for quote-based orders"""

    def __init__(
        self,
        db: Session,
        classifier: Optional[IntentClassifier] = None,
        orders: Optional[OrderService] = None,
        quotes: Optional[QuoteService] = None,
        classifier_timeout: float = LLM_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.classifier = classifier or NullClassifier()
        self.quotes = quotes or QuoteService(db)
        self.orders = orders or OrderService(db, quotes=self.quotes)
        self.order_repo = OrderRepository()
        self.repo = ConversationRepository()
        self.classifier_timeout = classifier_timeout

    # ========================================================================
    # INBOUND
    # ========================================================================

    def ingest(self, phone: str, body: str, external_id: Optional[str] = None) -> InboundMessage:
        """Store an inbound message with the next sequence number for its phone"""
        try:
            counter = self.repo.lock_sequence(self.db, phone)
            if external_id:
                existing = self.repo.get_by_external_id(self.db, external_id)
                if existing:
                    self.db.commit()
                    logger.info(f"🔁 Duplicate inbound message {external_id} from {phone} - skipping")
                    return existing

            counter.last_value += 1
            message = InboundMessage(
                phone=phone,
                sequence=counter.last_value,
                external_id=external_id,
                body=body or "",
                status="received",
            )
            self.db.add(message)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"📱 Inbound #{message.sequence} from {phone}")
        return message

    async def handle_inbound(
        self, phone: str, body: str, external_id: Optional[str] = None
    ) -> str:
        """Ingest, drain the phone's queue and return the reply for this message"""
        message = self.ingest(phone, body, external_id)
        message_id = message.id
        if message.status == "received":
            await self.drain(phone)
        message = self.db.query(InboundMessage).filter(InboundMessage.id == message_id).one()
        return message.reply or ""

    async def drain(self, phone: str, now: Optional[datetime] = None) -> int:
        """Process the phone's pending messages in sequence order"""
        processed = 0
        try:
            self.repo.lock_sequence(self.db, phone)
            for message in self.repo.pending_messages(self.db, phone):
                await self._process(message, now or utcnow())
                # Row locks below refresh from the database; keep it current
                self.db.flush()
                processed += 1
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return processed

    async def _process(self, message: InboundMessage, now: datetime) -> None:
        active = self.repo.get_active_for_phone(self.db, message.phone)
        if not active:
            self._finish_message(message, None, sms_templates.not_found(), now)
            return

        order = self.order_repo.lock(self.db, active.order_id) if active.order_id else None
        conversation = self.repo.lock(self.db, active.id)
        if conversation is None or conversation.state == IDLE or order is None:
            self._finish_message(message, None, sms_templates.not_found(), now)
            return

        try:
            context = load_context(conversation.context, conversation.state)
        except ConversationParseFailure as e:
            self.repo.reset(self.db, conversation)
            escalate(
                self.db,
                "conversation",
                f"Conversation {conversation.id} had an unreadable context: {e.message}",
                order_id=order.id,
            )
            self._finish_message(message, None, sms_templates.error(), now, status="failed")
            return

        # Classified under the phone lock: the intent depends on the state the
        # previous message left. The classifier wait is bounded by its timeout.
        parsed = await parse_intent(
            message.body, context.state, self.classifier, timeout=self.classifier_timeout
        )
        decision = decide(parsed, context)
        logger.info(
            f"💬 Conversation {conversation.id} ({context.state}): "
            f"{parsed.intent.value}/{parsed.confidence.value} via {parsed.source}"
            f" -> {decision.next_context.state}"
            + (f" [{decision.effect.value}]" if decision.effect else "")
        )

        if decision.effect:
            try:
                with self.db.begin_nested():
                    self._run_effect(decision, order, now)
            except (InvalidQuantity, UnknownPricingRule) as e:
                logger.warning(f"⚠️ Could not price {decision.value!r} for order {order.id}: {e.message}")
                self._touch(conversation, message, now)
                self._finish_message(message, parsed, sms_templates.quote_invalid(e.message), now)
                return
            except DomainError as e:
                logger.error(
                    f"❌ {decision.effect.value} failed for order {order.id}: [{e.kind.value}] {e.message}"
                )
                self._touch(conversation, message, now)
                self._finish_message(message, parsed, sms_templates.error(), now, status="failed")
                return

        conversation.state = decision.next_context.state
        conversation.context = dump_context(decision.next_context)
        self._touch(conversation, message, now)
        reply = sms_templates.render(decision.template, **decision.template_args)
        self._finish_message(message, parsed, reply, now)

    def _touch(self, conversation: Conversation, message: InboundMessage, now: datetime) -> None:
        conversation.last_message_at = now
        conversation.reminder_sent_at = None
        conversation.last_sequence = message.sequence

    def _finish_message(
        self,
        message: InboundMessage,
        parsed: Optional[ParsedIntent],
        reply: str,
        now: datetime,
        status: str = "processed",
    ) -> None:
        message.status = status
        message.intent = parsed.intent.value if parsed else None
        message.confidence = parsed.confidence.value if parsed else None
        message.reply = reply
        message.processed_at = now

    # ========================================================================
    # EFFECTS
    # ========================================================================

    def _run_effect(self, decision: Decision, order: Order, now: datetime) -> None:
        """Apply the decision's side effect; raises DomainError on failure"""
        effect = decision.effect

        if effect == Effect.CONFIRM_PICKUP:
            order.pickup_confirmed_at = now
            self.order_repo.record_event(self.db, order, "pickup_confirmed")

        elif effect == Effect.MARK_PICKED_UP:
            order.picked_up_at = now
            if not order.pickup_confirmed_at:
                order.pickup_confirmed_at = now
            self.order_repo.record_event(self.db, order, "picked_up")

        elif effect == Effect.COMPUTE_QUOTE:
            if order.status not in (OrderStatus.PENDING_QUOTE.value, OrderStatus.QUOTE_SUBMITTED.value):
                raise InvalidTransition(f"Order {order.id} is {order.status}; it can no longer be re-weighed")
            breakdown = self.quotes.preview(order, decision.value)
            decision.next_context = decision.next_context.model_copy(
                update={
                    "measured_quantity": breakdown.quantity,
                    "subtotal_cents": breakdown.subtotal_cents,
                    "tax_cents": breakdown.tax_cents,
                    "total_cents": breakdown.total_cents,
                }
            )
            decision.template_args = {
                "total_cents": breakdown.total_cents,
                "measured_quantity": breakdown.quantity,
            }

        elif effect == Effect.SUBMIT_QUOTE:
            self.quotes.submit_quote(order.id, decision.value, commit=False)

        elif effect == Effect.START_DELIVERY:
            if order.status == OrderStatus.SCHEDULED.value:
                self.orders.start_service(order.id, commit=False)
            elif order.status != OrderStatus.IN_PROGRESS.value:
                raise InvalidTransition(f"Order {order.id} is {order.status}; delivery cannot start yet")

        elif effect == Effect.COMPLETE_ORDER:
            if order.status == OrderStatus.SCHEDULED.value:
                self.orders.start_service(order.id, commit=False)
            self.orders.complete_order(order.id, now=now, commit=False)

        elif effect == Effect.RECORD_DELIVERY_SUGGESTION:
            self.orders.flag_follow_up(
                order.id, f"partner suggested delivery time: {decision.value}", commit=False
            )
            order.delivery_requested_time = decision.value

        elif effect in (Effect.REQUEST_RESCHEDULE, Effect.FLAG_FOLLOW_UP):
            self.orders.flag_follow_up(order.id, decision.value or effect.value, commit=False)

    # ========================================================================
    # OUTBOUND STARTS
    # ========================================================================

    def start_for_order(self, order: Order, delivery: bool = False) -> Optional[Conversation]:
        """
        Open the order's conversation at its pickup (or delivery) step.

        Runs in the caller's transaction; the caller sends the matching notice.
        """
        partner = order.partner
        if not partner or not partner.phone:
            logger.warning(f"⚠️ Order {order.id} has no partner phone - no conversation started")
            return None

        window = sms_templates.format_time_for_sms(order.slot.slot_start if order.slot else None)
        if delivery:
            context = AwaitingDeliveryConfirm(order_id=order.id, delivery_window=window)
        else:
            context = AwaitingPickupConfirm(order_id=order.id, pickup_window=window)

        conversation = self.repo.start(
            self.db, partner.phone, partner.id, order.id, context.state, dump_context(context)
        )
        logger.info(f"💬 Conversation {conversation.id} started for order {order.id} ({context.state})")
        return conversation

    # ========================================================================
    # INACTIVITY
    # ========================================================================

    async def sweep_inactive(self, sender: SmsSender, now: Optional[datetime] = None) -> dict:
        """
        Remind partners once after the reminder window; reset conversations
        that stay silent past the reset window and flag the order for follow-up.
        """
        now = now or utcnow()
        remind_before = now - timedelta(minutes=CONVERSATION_REMINDER_MINUTES)
        reset_before = now - timedelta(minutes=CONVERSATION_RESET_MINUTES)
        stats = {"reminded": 0, "reset": 0}

        for stale in self.repo.list_stale(self.db, remind_before):
            try:
                order = self.order_repo.lock(self.db, stale.order_id) if stale.order_id else None
                conversation = self.repo.lock(self.db, stale.id)
                if not conversation or conversation.state == IDLE:
                    self.db.commit()
                    continue
                if conversation.last_message_at and conversation.last_message_at >= remind_before:
                    # Partner replied while we were sweeping
                    self.db.commit()
                    continue

                if conversation.last_message_at is None or conversation.last_message_at < reset_before:
                    self._time_out(conversation, order, now)
                    stats["reset"] += 1
                elif conversation.reminder_sent_at is None:
                    await send_sms(
                        self.db,
                        sender,
                        conversation.phone,
                        sms_templates.reminder(conversation.order_id),
                        "reminder",
                        order_id=conversation.order_id,
                    )
                    conversation.reminder_sent_at = now
                    stats["reminded"] += 1
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.error(f"❌ Sweep failed for conversation {stale.id}: {e}")
                raise

        if stats["reminded"] or stats["reset"]:
            logger.info(f"⏰ Conversation sweep: {stats['reminded']} reminded, {stats['reset']} reset")
        return stats

    def _time_out(self, conversation: Conversation, order: Optional[Order], now: datetime) -> None:
        previous_state = conversation.state
        self.repo.reset(self.db, conversation)
        if order:
            order.needs_follow_up = True
            self.order_repo.record_event(
                self.db, order, "conversation_timed_out", payload={"state": previous_state}
            )
        escalate(
            self.db,
            "conversation",
            f"Partner silent in {previous_state} for over {CONVERSATION_RESET_MINUTES} minutes",
            order_id=conversation.order_id,
            details={"conversation_id": conversation.id, "phone": conversation.phone},
        )
        logger.warning(f"⚠️ Conversation {conversation.id} timed out in {previous_state}")
