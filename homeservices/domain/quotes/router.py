"""Quote router - partner measurements and admin approval"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...cache import cache
from ...database import get_db
from ...webhook_security import require_admin_key
from .schemas import QuoteReject, QuoteResponse, QuoteSubmit
from .service import QuoteService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/quotes", tags=["Quotes"])


def get_quote_service(db: Session = Depends(get_db)) -> QuoteService:
    """Dependency injection for QuoteService"""
    return QuoteService(db, cache=cache)


@router.post("", response_model=QuoteResponse, status_code=201)
async def submit_quote(data: QuoteSubmit, service: QuoteService = Depends(get_quote_service)):
    """Submit a measured quote; replaces any quote still awaiting approval"""
    return service.submit_quote(data.order_id, data.measured_quantity, data.addons)


@router.post(
    "/{order_id}/approve",
    response_model=QuoteResponse,
    dependencies=[Depends(require_admin_key)],
)
async def approve_quote(order_id: int, service: QuoteService = Depends(get_quote_service)):
    return service.approve_quote(order_id)


@router.post(
    "/{order_id}/reject",
    response_model=QuoteResponse,
    dependencies=[Depends(require_admin_key)],
)
async def reject_quote(
    order_id: int,
    data: Optional[QuoteReject] = None,
    service: QuoteService = Depends(get_quote_service),
):
    """Send the order back for a new measurement"""
    return service.reject_quote(order_id, data.reason if data else None)
