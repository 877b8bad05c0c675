"""Capacity service - transaction boundaries around the ledger"""

import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...config import SLOT_MIN_LEAD_HOURS
from ...errors import DomainError
from ...models import CapacitySlot
from .ledger import CapacityLedger, SlotWindow
from .schemas import BulkCreateRequest

logger = logging.getLogger(__name__)


class CapacityService:
    """Service layer for slot availability and admin slot management"""

    def __init__(self, db: Session):
        self.db = db
        self.ledger = CapacityLedger()

    def list_available(
        self,
        service_type: str,
        zip_code: Optional[str],
        on_date: date,
        now: Optional[datetime] = None,
    ) -> list[CapacitySlot]:
        return self.ledger.list_available(
            self.db,
            service_type.upper(),
            zip_code,
            on_date,
            now=now,
            min_lead_hours=SLOT_MIN_LEAD_HOURS,
        )

    def bulk_create(self, data: BulkCreateRequest) -> list[CapacitySlot]:
        windows = None
        if data.windows is not None:
            windows = [
                SlotWindow(
                    start_time=w.start_time,
                    end_time=w.end_time,
                    max_units=w.max_units,
                    day_of_week=w.day_of_week,
                )
                for w in data.windows
            ]

        logger.info(
            f"📅 Bulk creating slots for partners {data.partner_ids} "
            f"from {data.start_date} to {data.end_date}"
        )
        try:
            slots = self.ledger.bulk_create(
                self.db,
                data.partner_ids,
                data.start_date,
                data.end_date,
                windows=windows,
                use_templates=data.use_templates,
                days_of_week=data.days_of_week,
            )
            self.db.commit()
        except DomainError:
            self.db.rollback()
            raise

        for slot in slots:
            self.db.refresh(slot)
        return slots

    def bulk_delete(self, slot_ids: list[int]) -> int:
        try:
            deleted = self.ledger.bulk_delete(self.db, slot_ids)
            self.db.commit()
        except DomainError:
            self.db.rollback()
            raise
        return deleted
