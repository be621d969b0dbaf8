"""Data-access subscription routes."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..admission.repository import Subscription
from ..deps import get_subscription_service
from .service import SubscriptionService

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


class SubscribeRequest(BaseModel):
    email: str
    reference: str = Field(min_length=1)
    payment_network: str = "solana"
    promo_code: Optional[str] = None


class SubscriptionResponse(BaseModel):
    id: str
    email: str
    reference: str
    payment_network: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def from_subscription(cls, s: Subscription) -> "SubscriptionResponse":
        return cls(
            id=s.id,
            email=s.email,
            reference=s.reference,
            payment_network=s.payment_network,
            created_at=s.created_at,
            expires_at=s.expires_at,
        )


@router.post("", response_model=SubscriptionResponse)
async def subscribe(request: SubscribeRequest, service: SubscriptionService = Depends(get_subscription_service)):
    result = await service.subscribe(request.email, request.reference, request.payment_network, request.promo_code)
    if not result.admitted:
        return JSONResponse(status_code=400, content={"error": result.error_message})
    return SubscriptionResponse.from_subscription(result.entity)


class SubscriptionStatusResponse(BaseModel):
    email: str
    active: bool
    subscriptions: List[SubscriptionResponse]


@router.get("/{email}", response_model=SubscriptionStatusResponse)
async def subscription_status(email: str, service: SubscriptionService = Depends(get_subscription_service)):
    """Unexpired subscriptions for ``email``."""
    active = await service.active_for(email)
    return SubscriptionStatusResponse(
        email=email.strip().lower(),
        active=bool(active),
        subscriptions=[SubscriptionResponse.from_subscription(s) for s in active],
    )
