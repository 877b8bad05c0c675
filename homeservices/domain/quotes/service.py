"""Quote service - pricing at booking time and the measured-quote approval loop"""

import logging
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from ...cache import Cache
from ...config import MAX_QUOTE_QUANTITY, TAX_RATE
from ...errors import InvalidTransition, OrderNotFound, UnknownPricingRule
from ...models import Order, Quote, Subscription
from ...shared.clock import utcnow
from ..orders.repository import OrderRepository
from ..orders.state_machine import OrderStatus
from .engine import QuoteBreakdown, QuoteFlags, compute_quote
from .repository import PricingRepository, QuoteRepository

logger = logging.getLogger(__name__)

# Services priced from a post-pickup measurement
QUOTE_BASED_SERVICES = {"LAUNDRY"}

BASE_UNIT_KEYS = {"LAUNDRY": "LND_WF_PERLB"}

CLEANING_TIER_KEYS = {
    0: "CLN_STD_STUDIO",
    1: "CLN_STD_1BR",
    2: "CLN_STD_2BR",
    3: "CLN_STD_3BR",
    4: "CLN_STD_4BR",
}


def is_quote_based(service_type: str) -> bool:
    return service_type in QUOTE_BASED_SERVICES


def flags_for(details: Optional[dict], subscription: Optional[Subscription]) -> QuoteFlags:
    details = details or {}
    return QuoteFlags(
        deep=bool(details.get("deep")),
        move_out=bool(details.get("move_out")),
        frequency=subscription.frequency if subscription else None,
        first_visit=subscription is None or subscription.visits_completed == 0,
    )


class QuoteService:
    """Service layer for quotes"""

    def __init__(self, db: Session, cache: Optional[Cache] = None):
        self.db = db
        self.cache = cache
        self.pricing = PricingRepository()
        self.repo = QuoteRepository()
        self.orders = OrderRepository()

    def rule_table(self, service_type: str):
        return self.pricing.get_rule_table(self.db, service_type, cache=self.cache)

    def base_unit_key(self, service_type: str, details: Optional[dict]) -> str:
        if service_type == "CLEANING":
            bedrooms = (details or {}).get("bedrooms", 0)
            key = CLEANING_TIER_KEYS.get(bedrooms)
            if key is None:
                raise UnknownPricingRule(f"No cleaning tier for {bedrooms} bedroom(s)")
            return key
        key = BASE_UNIT_KEYS.get(service_type)
        if key is None:
            raise UnknownPricingRule(f"No base pricing rule for {service_type}")
        return key

    def price_booking(
        self,
        service_type: str,
        details: Optional[dict],
        subscription: Optional[Subscription] = None,
    ) -> QuoteBreakdown:
        """Fixed price for services that are quoted at booking (cleaning tiers)"""
        details = details or {}
        return compute_quote(
            self.rule_table(service_type),
            self.base_unit_key(service_type, details),
            1,
            addon_keys=details.get("addons") or [],
            flags=flags_for(details, subscription),
            tax_rate=TAX_RATE,
        )

    def preview(
        self, order: Order, measured_quantity, addons: Optional[Iterable[str]] = None
    ) -> QuoteBreakdown:
        """Price a measurement for an order without persisting anything"""
        details = order.details or {}
        if addons is None:
            addons = details.get("addons") or []
        return compute_quote(
            self.rule_table(order.service_type),
            self.base_unit_key(order.service_type, details),
            measured_quantity,
            addon_keys=addons,
            flags=flags_for(details, order.subscription),
            tax_rate=TAX_RATE,
            max_quantity=MAX_QUOTE_QUANTITY,
        )

    def _lock(self, order_id: int) -> Order:
        order = self.orders.lock(self.db, order_id)
        if not order:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    def _finish(self, commit: bool) -> None:
        if commit:
            self.db.commit()
        else:
            self.db.flush()

    def submit_quote(
        self,
        order_id: int,
        measured_quantity,
        addons: Optional[Iterable[str]] = None,
        commit: bool = True,
    ) -> Quote:
        """
        Record a measurement-based quote and move the order to quote_submitted.

        Resubmitting while a quote is pending supersedes the earlier one.
        """
        try:
            order = self._lock(order_id)
            if order.status not in (OrderStatus.PENDING_QUOTE.value, OrderStatus.QUOTE_SUBMITTED.value):
                raise InvalidTransition(
                    f"Order {order_id} is {order.status}; quotes can only be submitted before approval"
                )

            breakdown = self.preview(order, measured_quantity, addons)
            self.repo.supersede_pending(self.db, order.id)
            quote = self.repo.add(
                self.db,
                Quote(
                    order_id=order.id,
                    measured_quantity=breakdown.quantity,
                    addons=[line["unit_key"] for line in breakdown.addon_lines],
                    computed_subtotal=breakdown.subtotal_cents,
                    computed_tax=breakdown.tax_cents,
                    computed_total=breakdown.total_cents,
                    breakdown=breakdown.to_dict(),
                    approval_status="pending",
                ),
            )

            payload = {"quote_id": quote.id, "total_cents": quote.computed_total}
            if order.status == OrderStatus.PENDING_QUOTE.value:
                self.orders.transition(
                    self.db, order, OrderStatus.QUOTE_SUBMITTED, "quote_submitted", payload
                )
            else:
                self.orders.record_event(self.db, order, "quote_resubmitted", payload=payload)
            self._finish(commit)
        except Exception:
            if commit:
                self.db.rollback()
            raise

        logger.info(
            f"💰 Quote {quote.id} submitted for order {order_id}: "
            f"{breakdown.quantity} units, total {quote.computed_total}¢"
        )
        return quote

    def approve_quote(self, order_id: int, commit: bool = True) -> Quote:
        try:
            order = self._lock(order_id)
            quote = self.repo.get_pending(self.db, order.id)
            if order.status != OrderStatus.QUOTE_SUBMITTED.value or not quote:
                raise InvalidTransition(f"Order {order_id} has no submitted quote to approve")

            quote.approval_status = "approved"
            quote.approved_at = utcnow()
            order.subtotal_cents = quote.computed_subtotal
            order.tax_cents = quote.computed_tax
            order.total_cents = quote.computed_total
            self.orders.transition(
                self.db,
                order,
                OrderStatus.QUOTE_APPROVED,
                "quote_approved",
                {"quote_id": quote.id, "total_cents": quote.computed_total},
            )
            self._finish(commit)
        except Exception:
            if commit:
                self.db.rollback()
            raise

        logger.info(f"✅ Quote {quote.id} approved for order {order_id}")
        return quote

    def reject_quote(self, order_id: int, reason: Optional[str] = None, commit: bool = True) -> Quote:
        """Send the order back to pending_quote for a new measurement"""
        try:
            order = self._lock(order_id)
            quote = self.repo.get_pending(self.db, order.id)
            if order.status != OrderStatus.QUOTE_SUBMITTED.value or not quote:
                raise InvalidTransition(f"Order {order_id} has no submitted quote to reject")

            quote.approval_status = "rejected"
            self.orders.transition(
                self.db,
                order,
                OrderStatus.PENDING_QUOTE,
                "quote_rejected",
                {"quote_id": quote.id, "reason": reason},
            )
            self._finish(commit)
        except Exception:
            if commit:
                self.db.rollback()
            raise

        logger.info(f"↩️ Quote {quote.id} rejected for order {order_id}")
        return quote
