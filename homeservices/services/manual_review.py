"""
Manual review queue
Where retries give up: exhausted payments, undeliverable notifications,
stalled partner conversations
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..models import ManualReviewItem

logger = logging.getLogger(__name__)


def escalate(
    db: Session,
    kind: str,
    reason: str,
    order_id: Optional[int] = None,
    details: Optional[dict] = None,
) -> ManualReviewItem:
    """Queue an item for an operator; added to the caller's transaction"""
    item = ManualReviewItem(order_id=order_id, kind=kind, reason=reason, details=details or {})
    db.add(item)
    logger.warning(f"🚨 Escalated {kind} for order {order_id}: {reason}")
    return item


def list_open(db: Session, kind: Optional[str] = None) -> list[ManualReviewItem]:
    query = db.query(ManualReviewItem).filter(ManualReviewItem.resolved_at.is_(None))
    if kind:
        query = query.filter(ManualReviewItem.kind == kind)
    return query.order_by(ManualReviewItem.created_at).all()
