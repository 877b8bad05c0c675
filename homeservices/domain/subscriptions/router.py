"""Subscription router - recurring plan endpoints"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ...database import get_db
from .schemas import SubscriptionCreate, SubscriptionResponse, SubscriptionUpdate
from .service import SubscriptionService

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


def get_subscription_service(db: Session = Depends(get_db)) -> SubscriptionService:
    """Dependency injection for SubscriptionService"""
    return SubscriptionService(db)


@router.post("", response_model=SubscriptionResponse, status_code=201)
async def create_subscription(
    data: SubscriptionCreate,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Create a recurring plan (WEEKLY 20%, BIWEEKLY 15%, MONTHLY 10% off after the first visit)"""
    return service.create(data)


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: int,
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = service.get(subscription_id)
    if not subscription:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return subscription


@router.patch("/{subscription_id}", response_model=SubscriptionResponse)
async def update_subscription(
    subscription_id: int,
    data: SubscriptionUpdate,
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Pause/resume a plan or change its frequency"""
    subscription = service.update(subscription_id, data)
    if not subscription:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return subscription
