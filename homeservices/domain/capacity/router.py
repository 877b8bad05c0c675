"""Capacity router - public availability and admin bulk slot management"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...database import get_db
from ...webhook_security import require_admin_key
from .schemas import (
    BulkCreateRequest,
    BulkCreateResponse,
    BulkDeleteRequest,
    BulkDeleteResponse,
    SlotResponse,
)
from .service import CapacityService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Capacity"])


def get_capacity_service(db: Session = Depends(get_db)) -> CapacityService:
    """Dependency injection for CapacityService"""
    return CapacityService(db)


# ============================================================================
# PUBLIC AVAILABILITY
# ============================================================================


@router.get("/slots", response_model=list[SlotResponse])
async def list_slots(
    service_type: str = Query(..., pattern="^(LAUNDRY|CLEANING)$"),
    on_date: date = Query(..., alias="date"),
    zip_code: Optional[str] = Query(None, alias="zip", pattern=r"^\d{5}$"),
    service: CapacityService = Depends(get_capacity_service),
):
    """Bookable slots for a service, zip and day (full slots excluded)"""
    slots = service.list_available(service_type, zip_code, on_date)
    return [SlotResponse.from_slot(s) for s in slots]


# ============================================================================
# ADMIN
# ============================================================================


@router.post(
    "/admin/capacity/bulk",
    response_model=BulkCreateResponse,
    status_code=201,
    dependencies=[Depends(require_admin_key)],
)
async def bulk_create_slots(
    data: BulkCreateRequest,
    service: CapacityService = Depends(get_capacity_service),
):
    """Generate slots for partners over a date range, all or nothing"""
    slots = service.bulk_create(data)
    return BulkCreateResponse(created=len(slots), slots=[SlotResponse.from_slot(s) for s in slots])


@router.post(
    "/admin/capacity/bulk-delete",
    response_model=BulkDeleteResponse,
    dependencies=[Depends(require_admin_key)],
)
async def bulk_delete_slots(
    data: BulkDeleteRequest,
    service: CapacityService = Depends(get_capacity_service),
):
    """Delete unreserved slots, all or nothing"""
    deleted = service.bulk_delete(data.slot_ids)
    return BulkDeleteResponse(deleted=deleted)
