import threading
from datetime import date, datetime, time, timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from homeservices.database import Base, build_engine
from homeservices.domain.capacity.ledger import CapacityLedger, SlotWindow, default_windows
from homeservices.errors import (
    InsufficientCapacity,
    InvalidQuantity,
    OverlapConflict,
    PartnerNotFound,
    SlotHasReservations,
    SlotNotFound,
)
from homeservices.models import CapacityReservation, CapacitySlot, CapacityTemplate
from homeservices.shared.clock import utcnow

from conftest import make_partner, make_slot, tomorrow_at


def reload(db, slot_id):
    db.expire_all()
    return db.query(CapacitySlot).filter(CapacitySlot.id == slot_id).one()


class TestReserveRelease:
    def test_reserve_until_full(self, db):
        partner = make_partner(db)
        slot = make_slot(db, partner, tomorrow_at(10), max_units=2)

        CapacityLedger.reserve(db, slot.id, 1, order_id=1)
        CapacityLedger.reserve(db, slot.id, 1, order_id=2)
        db.commit()

        with pytest.raises(InsufficientCapacity):
            CapacityLedger.reserve(db, slot.id, 1, order_id=3)
        db.rollback()
        assert reload(db, slot.id).reserved_units == 2

    def test_reserve_more_than_available(self, db):
        partner = make_partner(db)
        slot = make_slot(db, partner, tomorrow_at(10), max_units=3, reserved=2)
        with pytest.raises(InsufficientCapacity):
            CapacityLedger.reserve(db, slot.id, 2)
        db.rollback()
        assert reload(db, slot.id).reserved_units == 2

    def test_unknown_slot(self, db):
        with pytest.raises(SlotNotFound):
            CapacityLedger.reserve(db, 999, 1)

    def test_units_must_be_positive(self, db):
        with pytest.raises(InvalidQuantity):
            CapacityLedger.reserve(db, 1, 0)

    def test_release_floors_at_zero(self, db):
        partner = make_partner(db)
        slot = make_slot(db, partner, tomorrow_at(10), max_units=3, reserved=1)
        CapacityLedger.release(db, slot.id, 5)
        db.commit()
        assert reload(db, slot.id).reserved_units == 0

    def test_release_for_order_is_idempotent(self, db):
        partner = make_partner(db)
        slot = make_slot(db, partner, tomorrow_at(10), max_units=3)
        CapacityLedger.reserve(db, slot.id, 1, order_id=7)
        CapacityLedger.reserve(db, slot.id, 1, order_id=8)
        db.commit()

        assert CapacityLedger.release_for_order(db, 7) == 1
        assert CapacityLedger.release_for_order(db, 7) == 0
        db.commit()

        assert reload(db, slot.id).reserved_units == 1
        released = db.query(CapacityReservation).filter(CapacityReservation.order_id == 7).one()
        assert released.released_at is not None


def test_concurrent_reserves_never_oversell(tmp_path):
    # BEGIN IMMEDIATE takes the write lock up front, like row locks on Postgres
    engine = build_engine(f"sqlite:///{tmp_path / 'race.db'}", sqlite_begin="BEGIN IMMEDIATE")
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(autoflush=False, bind=engine)

    setup = Session()
    partner = make_partner(setup)
    slot_id = make_slot(setup, partner, tomorrow_at(10), max_units=3).id
    setup.close()

    successes, failures = [], []
    barrier = threading.Barrier(10)

    def book(order_id):
        session = Session()
        try:
            barrier.wait()
            CapacityLedger.reserve(session, slot_id, 1, order_id=order_id)
            session.commit()
            successes.append(order_id)
        except InsufficientCapacity:
            session.rollback()
            failures.append(order_id)
        finally:
            session.close()

    threads = [threading.Thread(target=book, args=(i,)) for i in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    check = Session()
    slot = check.query(CapacitySlot).filter(CapacitySlot.id == slot_id).one()
    reservations = check.query(CapacityReservation).count()
    check.close()
    engine.dispose()

    assert len(successes) == 3
    assert len(failures) == 7
    assert slot.reserved_units == 3
    assert reservations == 3


class TestBulkCreate:
    def test_explicit_windows(self, db):
        partner = make_partner(db)
        start = date.today() + timedelta(days=2)
        windows = [SlotWindow(time(9), time(11), 4), SlotWindow(time(13), time(15), 2)]

        slots = CapacityLedger.bulk_create(db, [partner.id], start, start + timedelta(days=2), windows=windows)
        db.commit()

        assert len(slots) == 6
        assert {s.max_units for s in slots} == {2, 4}
        assert all(s.reserved_units == 0 for s in slots)
        assert all(s.service_type == "LAUNDRY" for s in slots)

    def test_default_pattern_skips_sunday(self, db):
        partner = make_partner(db)
        start = date.today() + timedelta(days=7)
        slots = CapacityLedger.bulk_create(db, [partner.id], start, start + timedelta(days=6))
        assert len(slots) == 6 * 6
        assert all(s.slot_start.weekday() != 6 for s in slots)
        assert len(default_windows()) == 36

    def test_days_of_week_filter(self, db):
        partner = make_partner(db)
        start = date.today() + timedelta(days=7)
        windows = [SlotWindow(time(9), time(10), 1)]
        slots = CapacityLedger.bulk_create(
            db, [partner.id], start, start + timedelta(days=13), windows=windows, days_of_week=[0]
        )
        assert len(slots) == 2
        assert all(s.slot_start.weekday() == 0 for s in slots)

    def test_past_slots_are_skipped(self, db):
        partner = make_partner(db)
        today = date.today()
        now = datetime.combine(today, time(12))
        windows = [SlotWindow(time(9), time(10), 1), SlotWindow(time(15), time(16), 1)]
        slots = CapacityLedger.bulk_create(db, [partner.id], today, today, windows=windows, now=now)
        assert [s.slot_start.hour for s in slots] == [15]

    def test_overlap_with_existing_slot_creates_nothing(self, db):
        partner = make_partner(db)
        day = date.today() + timedelta(days=3)
        make_slot(db, partner, datetime.combine(day, time(10)), hours=2)

        with pytest.raises(OverlapConflict) as exc:
            CapacityLedger.bulk_create(
                db,
                [partner.id],
                day,
                day + timedelta(days=1),
                windows=[SlotWindow(time(11), time(12), 1)],
            )
        db.rollback()

        conflicts = exc.value.details["conflicts"]
        assert conflicts[0]["source"] == "existing"
        assert db.query(CapacitySlot).count() == 1

    def test_overlap_within_batch(self, db):
        partner = make_partner(db)
        day = date.today() + timedelta(days=3)
        with pytest.raises(OverlapConflict) as exc:
            CapacityLedger.bulk_create(
                db,
                [partner.id],
                day,
                day,
                windows=[SlotWindow(time(9), time(11), 1), SlotWindow(time(10), time(12), 1)],
            )
        assert exc.value.details["conflicts"][0]["source"] == "batch"

    def test_repeated_partner_id_generates_one_set(self, db):
        partner = make_partner(db)
        day = date.today() + timedelta(days=3)

        slots = CapacityLedger.bulk_create(
            db, [partner.id, partner.id], day, day, windows=[SlotWindow(time(9), time(11), 1)]
        )
        db.commit()

        assert len(slots) == 1
        assert db.query(CapacitySlot).filter(CapacitySlot.partner_id == partner.id).count() == 1

    def test_partners_are_locked_once_in_id_order(self, db):
        first = make_partner(db)
        second = make_partner(db, phone="+15550003333")

        locked = CapacityLedger.lock_partners(db, [second.id, first.id, second.id])

        assert [p.id for p in locked] == sorted([first.id, second.id])
        with pytest.raises(PartnerNotFound):
            CapacityLedger.lock_partners(db, [first.id, 404])

    def test_other_partner_slots_do_not_conflict(self, db):
        first = make_partner(db)
        second = make_partner(db, phone="+15550003333")
        day = date.today() + timedelta(days=3)
        make_slot(db, first, datetime.combine(day, time(10)), hours=2)
        slots = CapacityLedger.bulk_create(
            db, [second.id], day, day, windows=[SlotWindow(time(10), time(12), 1)]
        )
        assert len(slots) == 1

    def test_unknown_partner(self, db):
        with pytest.raises(PartnerNotFound):
            CapacityLedger.bulk_create(db, [404], date.today(), date.today())

    def test_partner_templates_win_over_service_templates(self, db):
        partner = make_partner(db)
        db.add_all(
            [
                CapacityTemplate(
                    partner_id=None, service_type="LAUNDRY", day_of_week=0,
                    start_time="08:00", end_time="09:00", max_units=1,
                ),
                CapacityTemplate(
                    partner_id=partner.id, service_type="LAUNDRY", day_of_week=0,
                    start_time="18:00", end_time="20:00", max_units=6,
                ),
            ]
        )
        db.commit()
        windows = CapacityLedger.windows_from_templates(db, partner.id, "LAUNDRY")
        assert windows == [SlotWindow(time(18), time(20), 6, 0)]


class TestBulkDelete:
    def test_deletes_unreserved_slots(self, db):
        partner = make_partner(db)
        a = make_slot(db, partner, tomorrow_at(10))
        b = make_slot(db, partner, tomorrow_at(14))
        assert CapacityLedger.bulk_delete(db, [a.id, b.id]) == 2
        db.commit()
        assert db.query(CapacitySlot).count() == 0

    def test_all_or_nothing_when_one_is_reserved(self, db):
        partner = make_partner(db)
        free = make_slot(db, partner, tomorrow_at(10))
        booked = make_slot(db, partner, tomorrow_at(14), reserved=1)
        free_id, booked_id = free.id, booked.id

        with pytest.raises(SlotHasReservations):
            CapacityLedger.bulk_delete(db, [free_id, booked_id])
        db.rollback()
        assert db.query(CapacitySlot).count() == 2

    def test_unknown_ids(self, db):
        partner = make_partner(db)
        slot = make_slot(db, partner, tomorrow_at(10))
        with pytest.raises(SlotNotFound) as exc:
            CapacityLedger.bulk_delete(db, [slot.id, 999])
        assert exc.value.details["missing"] == [999]


class TestAvailability:
    def test_filters_full_inactive_zip_and_lead_time(self, db):
        partner = make_partner(db, zips=("10001",))
        idle = make_partner(db, phone="+15550004444", zips=("10001",), active=False)
        day = (utcnow() + timedelta(days=2)).date()
        at = lambda h: datetime.combine(day, time(h))  # noqa: E731

        open_slot = make_slot(db, partner, at(10), max_units=2, reserved=1)
        make_slot(db, partner, at(12), max_units=2, reserved=2)
        make_slot(db, idle, at(14))

        found = CapacityLedger.list_available(db, "LAUNDRY", "10001", day)
        assert [s.id for s in found] == [open_slot.id]
        assert CapacityLedger.list_available(db, "LAUNDRY", "11211", day) == []
        assert CapacityLedger.list_available(db, "CLEANING", "10001", day) == []

    def test_minimum_lead_time(self, db):
        partner = make_partner(db)
        now = datetime.combine(date.today() + timedelta(days=1), time(8))
        make_slot(db, partner, now.replace(hour=10))
        late = make_slot(db, partner, now.replace(hour=16))
        found = CapacityLedger.list_available(db, "LAUNDRY", None, now.date(), now=now, min_lead_hours=6)
        assert [s.id for s in found] == [late.id]
