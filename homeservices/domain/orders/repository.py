"""Order repository - Database operations for orders and their event log"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ...models import Order, OrderEvent
from .state_machine import OrderStatus, validate_transition

logger = logging.getLogger(__name__)


class OrderRepository:
    """Repository for order database operations"""

    @staticmethod
    def get_by_id(db: Session, order_id: int) -> Optional[Order]:
        return db.query(Order).filter(Order.id == order_id).first()

    @staticmethod
    def get_by_idempotency_key(db: Session, key: str) -> Optional[Order]:
        return db.query(Order).filter(Order.idempotency_key == key).first()

    @staticmethod
    def lock(db: Session, order_id: int) -> Optional[Order]:
        """SELECT ... FOR UPDATE on the order row (single writer per order)"""
        return (
            db.query(Order)
            .filter(Order.id == order_id)
            .populate_existing()
            .with_for_update()
            .first()
        )

    @staticmethod
    def transition(
        db: Session,
        order: Order,
        to_status: str,
        event_type: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> OrderEvent:
        """
        Move an order to a new status and log it, in the caller's transaction.

        Raises:
            InvalidTransition: the status is left unchanged
        """
        from_status = OrderStatus(order.status).value
        to_status = OrderStatus(to_status).value
        validate_transition(from_status, to_status)
        order.status = to_status
        logger.info(f"🔁 Order {order.id}: {from_status} -> {to_status}")
        return OrderRepository.record_event(
            db,
            order,
            event_type or f"order_{to_status}",
            from_status=from_status,
            to_status=to_status,
            payload=payload,
        )

    @staticmethod
    def record_event(
        db: Session,
        order: Order,
        event_type: str,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> OrderEvent:
        """Append to the event log; dispatched later by the notification outbox"""
        event = OrderEvent(
            order_id=order.id,
            event_type=event_type,
            from_status=from_status,
            to_status=to_status,
            payload=payload or {},
        )
        db.add(event)
        return event

    @staticmethod
    def list_events(db: Session, order_id: int) -> list[OrderEvent]:
        return (
            db.query(OrderEvent)
            .filter(OrderEvent.order_id == order_id)
            .order_by(OrderEvent.id)
            .all()
        )
