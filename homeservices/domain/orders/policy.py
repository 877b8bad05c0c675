"""Cancellation and reschedule fee policy"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...models import CancellationPolicy
from ..quotes.engine import percent_of


@dataclass(frozen=True)
class PolicyTerms:
    service_type: str
    notice_hours: int
    cancellation_fee_percent: float
    reschedule_notice_hours: int
    reschedule_fee_percent: float
    allow_cancellation: bool = True
    allow_rescheduling: bool = True


# Used when no active policy row exists for the service
DEFAULT_POLICIES = {
    "LAUNDRY": PolicyTerms("LAUNDRY", 0, 0.0, 0, 0.0),
    "CLEANING": PolicyTerms("CLEANING", 24, 0.15, 24, 0.0),
}


def get_policy(db: Session, service_type: str) -> PolicyTerms:
    row = (
        db.query(CancellationPolicy)
        .filter(
            CancellationPolicy.service_type == service_type,
            CancellationPolicy.active.is_(True),
        )
        .order_by(CancellationPolicy.id.desc())
        .first()
    )
    if not row:
        return DEFAULT_POLICIES.get(service_type, PolicyTerms(service_type, 0, 0.0, 0, 0.0))
    return PolicyTerms(
        service_type=row.service_type,
        notice_hours=row.notice_hours,
        cancellation_fee_percent=row.cancellation_fee_percent,
        reschedule_notice_hours=row.reschedule_notice_hours,
        reschedule_fee_percent=row.reschedule_fee_percent,
        allow_cancellation=row.allow_cancellation,
        allow_rescheduling=row.allow_rescheduling,
    )


def compute_fee(
    total_cents: Optional[int],
    slot_start: Optional[datetime],
    now: datetime,
    notice_hours: int,
    fee_percent: float,
) -> int:
    """
    Free when now < slot_start - notice_hours, else round_cents(total × fee_percent).

    Orders without a price yet (laundry awaiting weigh-in) or without a slot
    carry no fee.
    """
    if not total_cents or slot_start is None:
        return 0
    if now < slot_start - timedelta(hours=notice_hours):
        return 0
    return percent_of(total_cents, fee_percent)
