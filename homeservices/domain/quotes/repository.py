"""Quote repository - pricing rule lookups and quote rows"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ...cache import Cache, pricing_rules_key
from ...config import PRICING_CACHE_TTL
from ...models import PricingRule, Quote
from .engine import PriceRule, build_rule_table

logger = logging.getLogger(__name__)


class PricingRepository:
    """Read-only access to the pricing rule table"""

    @staticmethod
    def get_rules(db: Session, service_type: str) -> list[PricingRule]:
        return (
            db.query(PricingRule)
            .filter(PricingRule.service_type == service_type, PricingRule.active.is_(True))
            .order_by(PricingRule.id)
            .all()
        )

    @staticmethod
    def get_rule_table(
        db: Session, service_type: str, cache: Optional[Cache] = None
    ) -> dict[str, PriceRule]:
        """unit_key -> PriceRule for one service, served from Redis when possible"""
        key = pricing_rules_key(service_type)
        if cache is not None:
            cached = cache.get(key)
            if cached:
                return build_rule_table(PriceRule(**row) for row in cached)

        rules = [PriceRule.from_model(r) for r in PricingRepository.get_rules(db, service_type)]
        if cache is not None and rules:
            cache.set(key, [r.__dict__ for r in rules], ttl=PRICING_CACHE_TTL)
        return build_rule_table(rules)


class QuoteRepository:
    """Repository for quote rows"""

    @staticmethod
    def get_pending(db: Session, order_id: int) -> Optional[Quote]:
        return (
            db.query(Quote)
            .filter(Quote.order_id == order_id, Quote.approval_status == "pending")
            .order_by(Quote.id.desc())
            .first()
        )

    @staticmethod
    def get_approved(db: Session, order_id: int) -> Optional[Quote]:
        return (
            db.query(Quote)
            .filter(Quote.order_id == order_id, Quote.approval_status == "approved")
            .order_by(Quote.id.desc())
            .first()
        )

    @staticmethod
    def supersede_pending(db: Session, order_id: int) -> int:
        """Mark every pending quote of the order as superseded"""
        pending = (
            db.query(Quote)
            .filter(Quote.order_id == order_id, Quote.approval_status == "pending")
            .all()
        )
        for quote in pending:
            quote.approval_status = "superseded"
        return len(pending)

    @staticmethod
    def add(db: Session, quote: Quote) -> Quote:
        db.add(quote)
        db.flush()
        return quote
