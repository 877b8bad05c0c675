"""
Capacity ledger - atomic reserve/release and bulk slot lifecycle

reserved_units is only ever changed by a single conditional UPDATE, so two
processes racing for the last unit cannot both succeed. Methods flush but
never commit; the calling service owns the transaction.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional

from sqlalchemy import case, delete, update
from sqlalchemy.orm import Session

from ...errors import (
    InsufficientCapacity,
    InvalidQuantity,
    OverlapConflict,
    PartnerNotFound,
    SlotHasReservations,
    SlotNotFound,
)
from ...models import CapacityReservation, CapacitySlot, CapacityTemplate, Partner
from ...shared.clock import utcnow

logger = logging.getLogger(__name__)

# Default weekly pattern: Monday-Saturday, two-hour windows from 10:00 to 22:00
DEFAULT_WINDOW_STARTS = (10, 12, 14, 16, 18, 20)
DEFAULT_WINDOW_HOURS = 2
DEFAULT_MAX_UNITS = 10
DEFAULT_DAYS = (0, 1, 2, 3, 4, 5)


@dataclass(frozen=True)
class SlotWindow:
    """One recurring window; day_of_week None means every day in the range"""

    start_time: time
    end_time: time
    max_units: int
    day_of_week: Optional[int] = None


def default_windows() -> list[SlotWindow]:
    return [
        SlotWindow(
            start_time=time(hour),
            end_time=time(hour + DEFAULT_WINDOW_HOURS),
            max_units=DEFAULT_MAX_UNITS,
            day_of_week=day,
        )
        for day in DEFAULT_DAYS
        for hour in DEFAULT_WINDOW_STARTS
    ]


def _overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and b_start < a_end


class CapacityLedger:
    """Slot capacity operations; every method takes the caller's session"""

    # ========================================================================
    # RESERVE / RELEASE
    # ========================================================================

    @staticmethod
    def reserve(db: Session, slot_id: int, units: int = 1, order_id: Optional[int] = None) -> None:
        """
        Reserve units on a slot.

        Raises:
            InsufficientCapacity: the slot cannot take `units` more
            SlotNotFound: no such slot
        """
        if units <= 0:
            raise InvalidQuantity(f"Units to reserve must be positive, got {units}")

        result = db.execute(
            update(CapacitySlot)
            .where(
                CapacitySlot.id == slot_id,
                CapacitySlot.reserved_units + units <= CapacitySlot.max_units,
            )
            .values(reserved_units=CapacitySlot.reserved_units + units)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            exists = db.query(CapacitySlot.id).filter(CapacitySlot.id == slot_id).first()
            if not exists:
                raise SlotNotFound(f"Slot {slot_id} not found")
            logger.info(f"⚠️ Slot {slot_id} cannot take {units} more unit(s)")
            raise InsufficientCapacity(f"Slot {slot_id} is full")

        if order_id is not None:
            db.add(CapacityReservation(slot_id=slot_id, order_id=order_id, units=units))
        db.flush()
        logger.info(f"✅ Reserved {units} unit(s) on slot {slot_id} (order={order_id})")

    @staticmethod
    def release(db: Session, slot_id: int, units: int = 1) -> None:
        """Give units back, never taking reserved_units below zero"""
        remaining = CapacitySlot.reserved_units - units
        db.execute(
            update(CapacitySlot)
            .where(CapacitySlot.id == slot_id)
            .values(reserved_units=case((remaining < 0, 0), else_=remaining))
            .execution_options(synchronize_session=False)
        )
        db.flush()

    @staticmethod
    def release_for_order(db: Session, order_id: int, slot_id: Optional[int] = None) -> int:
        """
        Release an order's active reservations.

        Each reservation row is claimed with a conditional update on
        released_at, so a duplicate release (retry, concurrent cancel) is a
        no-op. Returns the number of units released.
        """
        query = db.query(CapacityReservation).filter(
            CapacityReservation.order_id == order_id,
            CapacityReservation.released_at.is_(None),
        )
        if slot_id is not None:
            query = query.filter(CapacityReservation.slot_id == slot_id)

        released = 0
        for reservation in query.all():
            claimed = db.execute(
                update(CapacityReservation)
                .where(
                    CapacityReservation.id == reservation.id,
                    CapacityReservation.released_at.is_(None),
                )
                .values(released_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                continue
            CapacityLedger.release(db, reservation.slot_id, reservation.units)
            released += reservation.units

        if released:
            logger.info(f"🔓 Released {released} unit(s) for order {order_id}")
        return released

    # ========================================================================
    # BULK SLOT LIFECYCLE
    # ========================================================================

    @staticmethod
    def windows_from_templates(
        db: Session, partner_id: int, service_type: str
    ) -> list[SlotWindow]:
        """Partner-specific templates win over service-wide ones"""
        templates = (
            db.query(CapacityTemplate)
            .filter(
                CapacityTemplate.service_type == service_type,
                CapacityTemplate.active.is_(True),
                CapacityTemplate.partner_id == partner_id,
            )
            .all()
        )
        if not templates:
            templates = (
                db.query(CapacityTemplate)
                .filter(
                    CapacityTemplate.service_type == service_type,
                    CapacityTemplate.active.is_(True),
                    CapacityTemplate.partner_id.is_(None),
                )
                .all()
            )
        return [
            SlotWindow(
                start_time=time.fromisoformat(t.start_time),
                end_time=time.fromisoformat(t.end_time),
                max_units=t.max_units,
                day_of_week=t.day_of_week,
            )
            for t in templates
        ]

    @staticmethod
    def lock_partners(db: Session, partner_ids: Iterable[int]) -> list[Partner]:
        """
        Lock each distinct partner row, in id order.

        Concurrent bulk creates for the same partner serialize on this lock, so
        the overlap check against existing slots sees the other batch's rows.
        """
        partners = []
        for partner_id in sorted(set(partner_ids)):
            partner = (
                db.query(Partner)
                .filter(Partner.id == partner_id)
                .populate_existing()
                .with_for_update()
                .first()
            )
            if not partner:
                raise PartnerNotFound(f"Partner {partner_id} not found")
            partners.append(partner)
        return partners

    @staticmethod
    def bulk_create(
        db: Session,
        partner_ids: Iterable[int],
        start_date: date,
        end_date: date,
        windows: Optional[list[SlotWindow]] = None,
        use_templates: bool = False,
        days_of_week: Optional[Iterable[int]] = None,
        now: Optional[datetime] = None,
    ) -> list[CapacitySlot]:
        """
        Generate slots for each partner over [start_date, end_date].

        Windows come from `windows`, the partner's capacity templates, or the
        default weekly pattern. Slots already in the past are skipped. If any
        generated slot overlaps an existing slot of the same partner, or
        another generated slot, nothing is created.

        Raises:
            PartnerNotFound: unknown partner id
            OverlapConflict: overlapping slots (details list every conflict)
        """
        now = now or utcnow()
        allowed_days = set(days_of_week) if days_of_week is not None else None
        range_start = datetime.combine(start_date, time.min)
        range_end = datetime.combine(end_date + timedelta(days=1), time.min)

        generated: list[CapacitySlot] = []
        conflicts: list[dict] = []

        for partner in CapacityLedger.lock_partners(db, partner_ids):

            if windows is not None:
                partner_windows = windows
            elif use_templates:
                partner_windows = CapacityLedger.windows_from_templates(
                    db, partner.id, partner.service_type
                )
            else:
                partner_windows = default_windows()

            candidates = []
            day = start_date
            while day <= end_date:
                if allowed_days is None or day.weekday() in allowed_days:
                    for window in partner_windows:
                        if window.day_of_week is not None and window.day_of_week != day.weekday():
                            continue
                        slot_start = datetime.combine(day, window.start_time)
                        slot_end = datetime.combine(day, window.end_time)
                        if slot_end <= slot_start:
                            slot_end += timedelta(days=1)
                        if slot_start <= now:
                            continue
                        candidates.append((slot_start, slot_end, window.max_units))
                day += timedelta(days=1)

            candidates.sort()
            for i in range(1, len(candidates)):
                prev, cur = candidates[i - 1], candidates[i]
                if _overlaps(prev[0], prev[1], cur[0], cur[1]):
                    conflicts.append(
                        {
                            "partner_id": partner.id,
                            "slot_start": cur[0].isoformat(),
                            "conflicts_with": prev[0].isoformat(),
                            "source": "batch",
                        }
                    )

            existing = (
                db.query(CapacitySlot)
                .filter(
                    CapacitySlot.partner_id == partner.id,
                    CapacitySlot.slot_start < range_end + timedelta(days=1),
                    CapacitySlot.slot_end > range_start,
                )
                .all()
            )
            for slot_start, slot_end, _ in candidates:
                for slot in existing:
                    if _overlaps(slot_start, slot_end, slot.slot_start, slot.slot_end):
                        conflicts.append(
                            {
                                "partner_id": partner.id,
                                "slot_start": slot_start.isoformat(),
                                "conflicts_with": slot.slot_start.isoformat(),
                                "existing_slot_id": slot.id,
                                "source": "existing",
                            }
                        )

            generated.extend(
                CapacitySlot(
                    partner_id=partner.id,
                    service_type=partner.service_type,
                    slot_start=slot_start,
                    slot_end=slot_end,
                    max_units=max_units,
                    reserved_units=0,
                )
                for slot_start, slot_end, max_units in candidates
            )

        if conflicts:
            logger.warning(f"⚠️ Bulk create rejected: {len(conflicts)} overlapping slot(s)")
            raise OverlapConflict(
                f"{len(conflicts)} generated slot(s) overlap", details={"conflicts": conflicts}
            )

        db.add_all(generated)
        db.flush()
        logger.info(f"✅ Generated {len(generated)} capacity slot(s)")
        return generated

    @staticmethod
    def bulk_delete(db: Session, slot_ids: Iterable[int]) -> int:
        """
        Delete slots that hold no reservations, all or nothing.

        Raises:
            SlotNotFound: some id does not exist
            SlotHasReservations: some slot still has reserved units
        The caller must roll back when either is raised.
        """
        ids = set(slot_ids)
        if not ids:
            return 0

        found = {
            row.id for row in db.query(CapacitySlot.id).filter(CapacitySlot.id.in_(ids)).all()
        }
        missing = ids - found
        if missing:
            raise SlotNotFound(
                f"{len(missing)} slot(s) not found", details={"missing": sorted(missing)}
            )

        db.execute(
            delete(CapacityReservation).where(
                CapacityReservation.slot_id.in_(ids),
                CapacityReservation.released_at.isnot(None),
            )
        )
        result = db.execute(
            delete(CapacitySlot)
            .where(CapacitySlot.id.in_(ids), CapacitySlot.reserved_units == 0)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(ids):
            logger.warning(
                f"⚠️ Bulk delete aborted: {len(ids) - result.rowcount} slot(s) have reservations"
            )
            raise SlotHasReservations(
                f"{len(ids) - result.rowcount} slot(s) have active reservations",
                details={"requested": len(ids), "deletable": result.rowcount},
            )
        db.flush()
        logger.info(f"🗑️ Deleted {result.rowcount} capacity slot(s)")
        return result.rowcount

    # ========================================================================
    # AVAILABILITY
    # ========================================================================

    @staticmethod
    def get_slot(db: Session, slot_id: int) -> CapacitySlot:
        slot = db.query(CapacitySlot).filter(CapacitySlot.id == slot_id).first()
        if not slot:
            raise SlotNotFound(f"Slot {slot_id} not found")
        return slot

    @staticmethod
    def list_available(
        db: Session,
        service_type: str,
        zip_code: Optional[str],
        on_date: date,
        now: Optional[datetime] = None,
        min_lead_hours: int = 0,
    ) -> list[CapacitySlot]:
        """Slots with free units on `on_date` from active partners serving the zip"""
        now = now or utcnow()
        day_start = datetime.combine(on_date, time.min)
        earliest = max(day_start, now + timedelta(hours=min_lead_hours))

        slots = (
            db.query(CapacitySlot)
            .join(Partner, Partner.id == CapacitySlot.partner_id)
            .filter(
                Partner.active.is_(True),
                CapacitySlot.service_type == service_type,
                CapacitySlot.slot_start >= earliest,
                CapacitySlot.slot_start < day_start + timedelta(days=1),
                CapacitySlot.reserved_units < CapacitySlot.max_units,
            )
            .order_by(CapacitySlot.slot_start, CapacitySlot.id)
            .all()
        )
        if zip_code:
            slots = [s for s in slots if zip_code in (s.partner.service_zips or [])]
        return slots
