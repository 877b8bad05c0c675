"""Conversation repository - conversation rows, per-phone sequencing and inbound messages"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models import Conversation, InboundMessage, MessageSequence
from ...shared.clock import utcnow

logger = logging.getLogger(__name__)

IDLE = "idle"


class ConversationRepository:
    """Repository for partner conversations"""

    # ========================================================================
    # CONVERSATIONS
    # ========================================================================

    @staticmethod
    def lock(db: Session, conversation_id: int) -> Optional[Conversation]:
        return (
            db.query(Conversation)
            .filter(Conversation.id == conversation_id)
            .populate_existing()
            .with_for_update()
            .first()
        )

    @staticmethod
    def get_active_for_order(db: Session, order_id: int) -> Optional[Conversation]:
        return (
            db.query(Conversation)
            .filter(Conversation.order_id == order_id, Conversation.state != IDLE)
            .order_by(Conversation.id.desc())
            .first()
        )

    @staticmethod
    def get_active_for_phone(db: Session, phone: str) -> Optional[Conversation]:
        """Most recently touched active conversation for a partner phone"""
        return (
            db.query(Conversation)
            .filter(Conversation.phone == phone, Conversation.state != IDLE)
            .order_by(Conversation.last_message_at.desc(), Conversation.id.desc())
            .first()
        )

    @staticmethod
    def list_stale(db: Session, older_than) -> list[Conversation]:
        return (
            db.query(Conversation)
            .filter(Conversation.state != IDLE, Conversation.last_message_at < older_than)
            .order_by(Conversation.id)
            .all()
        )

    @staticmethod
    def start(
        db: Session,
        phone: str,
        partner_id: Optional[int],
        order_id: int,
        state: str,
        context: dict,
    ) -> Conversation:
        """Open (or move) the single active conversation for an order"""
        conversation = ConversationRepository.get_active_for_order(db, order_id)
        if conversation:
            conversation = ConversationRepository.lock(db, conversation.id)
        else:
            conversation = Conversation(phone=phone, partner_id=partner_id, order_id=order_id)
            db.add(conversation)

        conversation.state = state
        conversation.context = context
        conversation.last_message_at = utcnow()
        conversation.reminder_sent_at = None
        db.flush()
        return conversation

    @staticmethod
    def reset(db: Session, conversation: Conversation) -> None:
        conversation.state = IDLE
        conversation.context = {"state": IDLE, "order_id": conversation.order_id}
        conversation.reminder_sent_at = None

    @staticmethod
    def reset_for_order(db: Session, order_id: int) -> int:
        """Reset every active conversation of an order; caller holds the order lock"""
        rows = (
            db.query(Conversation)
            .filter(Conversation.order_id == order_id, Conversation.state != IDLE)
            .populate_existing()
            .with_for_update()
            .all()
        )
        for conversation in rows:
            ConversationRepository.reset(db, conversation)
        if rows:
            logger.info(f"💬 Reset {len(rows)} conversation(s) for order {order_id}")
        return len(rows)

    # ========================================================================
    # SEQUENCING
    # ========================================================================

    @staticmethod
    def lock_sequence(db: Session, phone: str) -> MessageSequence:
        """
        Lock the phone's counter row, creating it on first contact.

        Holding this lock serialises all message handling for one phone;
        other phones are unaffected.
        """
        counter = (
            db.query(MessageSequence)
            .filter(MessageSequence.phone == phone)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if counter:
            return counter

        try:
            with db.begin_nested():
                db.add(MessageSequence(phone=phone, last_value=0))
        except IntegrityError:
            logger.debug(f"Sequence row for {phone} created concurrently")

        return (
            db.query(MessageSequence)
            .filter(MessageSequence.phone == phone)
            .populate_existing()
            .with_for_update()
            .one()
        )

    @staticmethod
    def get_by_external_id(db: Session, external_id: str) -> Optional[InboundMessage]:
        return db.query(InboundMessage).filter(InboundMessage.external_id == external_id).first()

    @staticmethod
    def pending_messages(db: Session, phone: str) -> list[InboundMessage]:
        return (
            db.query(InboundMessage)
            .filter(InboundMessage.phone == phone, InboundMessage.status == "received")
            .order_by(InboundMessage.sequence)
            .all()
        )
