"""Order router - booking and lifecycle endpoints"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from ...cache import cache
from ...database import get_db
from ...rate_limiter import create_rate_limiter
from ..payments.router import get_payment_coordinator
from ..payments.schemas import PaymentResponse
from ..payments.service import PaymentCoordinator
from ..quotes.service import QuoteService
from .schemas import (
    CancellationPolicyResponse,
    CancelRequest,
    DisputeRequest,
    OrderCreate,
    OrderCreateResponse,
    OrderResponse,
    RescheduleRequest,
)
from .service import OrderService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["Orders"])

booking_rate_limit = create_rate_limiter(limit=20, window_seconds=60, key_prefix="orders")


def get_order_service(db: Session = Depends(get_db)) -> OrderService:
    """Dependency injection for OrderService"""
    return OrderService(db, quotes=QuoteService(db, cache=cache))


# ============================================================================
# BOOKING
# ============================================================================


@router.post("", response_model=OrderCreateResponse, status_code=201)
async def create_order(
    data: OrderCreate,
    response: Response,
    service: OrderService = Depends(get_order_service),
    payments: PaymentCoordinator = Depends(get_payment_coordinator),
    _: None = Depends(booking_rate_limit),
):
    """
    Book a slot. Retrying with the same idempotency key and payload returns
    the original order (200); a different payload under the same key is a 409.
    """
    order, created = service.create_order(data)
    if not created:
        response.status_code = 200

    client_secret = None
    if created and order.payment_flow == "authorize_now":
        client_secret = await payments.start_authorization(order.id)

    return OrderCreateResponse(
        order_id=order.id,
        public_id=order.public_id,
        status=order.status,
        created=created,
        total_cents=order.total_cents,
        client_secret=client_secret,
    )


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: int, service: OrderService = Depends(get_order_service)):
    return service.get_order(order_id)


@router.get("/{order_id}/cancellation-policy", response_model=CancellationPolicyResponse)
async def get_cancellation_policy(order_id: int, service: OrderService = Depends(get_order_service)):
    """Fees that would apply if the order were cancelled or rescheduled now"""
    return service.policy_preview(order_id)


# ============================================================================
# CHANGES
# ============================================================================


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: int,
    data: Optional[CancelRequest] = None,
    service: OrderService = Depends(get_order_service),
    payments: PaymentCoordinator = Depends(get_payment_coordinator),
):
    """Cancel, then void or refund (total minus the cancellation fee)"""
    order = service.cancel_order(order_id, reason=data.reason if data else None)
    await payments.settle_cancellation(order_id)
    return service.get_order(order.id)


@router.post("/{order_id}/reschedule", response_model=OrderResponse)
async def reschedule_order(
    order_id: int,
    data: RescheduleRequest,
    service: OrderService = Depends(get_order_service),
):
    return service.reschedule_order(order_id, data.new_slot_id)


@router.post("/{order_id}/capture", response_model=PaymentResponse)
async def capture_payment(
    order_id: int,
    payments: PaymentCoordinator = Depends(get_payment_coordinator),
):
    """Charge the approved total; safe to retry"""
    return await payments.capture(order_id)


@router.post("/{order_id}/complete", response_model=OrderResponse)
async def complete_order(order_id: int, service: OrderService = Depends(get_order_service)):
    return service.complete_order(order_id)


@router.post("/{order_id}/dispute", response_model=OrderResponse)
async def dispute_order(
    order_id: int,
    data: DisputeRequest,
    service: OrderService = Depends(get_order_service),
):
    return service.dispute_order(order_id, data.reason)
