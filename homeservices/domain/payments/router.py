"""Payment processor webhook"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ... import config
from ...database import get_db
from ...webhook_security import verify_stripe_webhook
from .gateway import PaymentGateway, StripeGateway
from .schemas import WebhookResult
from .service import PaymentCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Payments"])

_gateway = None


def get_payment_gateway() -> PaymentGateway:
    """Shared Stripe client, built on first use"""
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway()
    return _gateway


def get_payment_coordinator(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentCoordinator:
    """Dependency injection for PaymentCoordinator"""
    return PaymentCoordinator(db, gateway)


@router.post("/payments", response_model=WebhookResult)
async def payment_webhook(
    request: Request,
    coordinator: PaymentCoordinator = Depends(get_payment_coordinator),
):
    """
    Handle Stripe events

    Events handled:
    - payment_intent.succeeded -> payment_captured, then scheduled
    - payment_intent.requires_action -> payment_pending (customer step-up)
    - payment_intent.payment_failed -> payment_failed
    - setup_intent.succeeded -> card saved for an authorize-now order

    Redelivered event ids are acknowledged without being applied again.
    """
    if config.STRIPE_WEBHOOK_SECRET:
        _, raw_body = await verify_stripe_webhook(request, config.STRIPE_WEBHOOK_SECRET)
    else:
        logger.warning("⚠️ STRIPE_WEBHOOK_SECRET not configured, skipping verification")
        raw_body = await request.body()

    try:
        event = json.loads(raw_body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid event payload")

    logger.info(f"📨 Payment webhook {event.get('id')} ({event.get('type')})")
    return WebhookResult(status=coordinator.handle_webhook(event))
