"""Subscription service - recurring plans whose discount starts after the first visit"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ...models import Subscription
from ..quotes.engine import RECURRING_DISCOUNTS
from .schemas import SubscriptionCreate, SubscriptionUpdate

logger = logging.getLogger(__name__)


def discount_for(frequency: str) -> float:
    return float(RECURRING_DISCOUNTS.get(frequency.upper(), 0))


class SubscriptionService:
    """Service layer for recurring plans"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, subscription_id: int) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(Subscription.id == subscription_id).first()

    def create(self, data: SubscriptionCreate) -> Subscription:
        subscription = Subscription(
            customer_phone=data.customer_phone,
            service_type=data.service_type,
            frequency=data.frequency,
            discount_pct=discount_for(data.frequency),
            first_visit_deep=data.first_visit_deep,
            visits_completed=0,
            active=True,
        )
        self.db.add(subscription)
        self.db.commit()
        self.db.refresh(subscription)
        logger.info(
            f"✅ Subscription {subscription.id} created: {subscription.service_type} "
            f"{subscription.frequency} ({subscription.discount_pct:.0%} off after first visit)"
        )
        return subscription

    def update(self, subscription_id: int, data: SubscriptionUpdate) -> Optional[Subscription]:
        """Pause/resume or change frequency; the discount follows the frequency"""
        subscription = (
            self.db.query(Subscription)
            .filter(Subscription.id == subscription_id)
            .with_for_update()
            .first()
        )
        if not subscription:
            return None

        if data.frequency is not None:
            subscription.frequency = data.frequency
            subscription.discount_pct = discount_for(data.frequency)
        if data.active is not None:
            subscription.active = data.active
        self.db.commit()
        self.db.refresh(subscription)
        logger.info(f"🔁 Subscription {subscription.id} updated")
        return subscription
