"""Listing API Routes."""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..admission.repository import Listing
from ..auth import require_admin
from ..deps import disconnect_event, get_listing_service
from .service import ListingDraft, ListingService

router = APIRouter(prefix="/api/listings", tags=["listings"])


class CreateListingRequest(BaseModel):
    building_name: str = Field(min_length=1)
    coordinates: str
    floor: str
    sqm: int
    cost: int
    description: str
    youtube_link: str = ""
    reference: str = Field(min_length=1)
    payment_network: str = "solana"
    promo_code: Optional[str] = None
    thai_only: bool = False
    has_pool: bool = False
    has_parking: bool = False
    is_top_floor: bool = False
    six_months: bool = False
    # Poll the chain until the payment confirms instead of checking once
    await_confirmation: bool = False


class ListingResponse(BaseModel):
    id: str
    building_name: str
    latitude: float
    longitude: float
    floor: str
    sqm: int
    cost: int
    description: str
    youtube_link: str
    reference: str
    payment_network: str
    thai_only: bool
    has_pool: bool
    has_parking: bool
    is_top_floor: bool
    six_months: bool
    created_at: datetime
    expires_at: datetime

    @classmethod
    def from_listing(cls, listing: Listing) -> "ListingResponse":
        return cls(
            id=listing.id,
            building_name=listing.building_name,
            latitude=listing.latitude,
            longitude=listing.longitude,
            floor=listing.floor,
            sqm=listing.sqm,
            cost=listing.cost,
            description=listing.description,
            youtube_link=listing.youtube_link,
            reference=listing.reference,
            payment_network=listing.payment_network,
            thai_only=listing.thai_only,
            has_pool=listing.has_pool,
            has_parking=listing.has_parking,
            is_top_floor=listing.is_top_floor,
            six_months=listing.six_months,
            created_at=listing.created_at,
            expires_at=listing.expires_at,
        )


class DashboardListing(BaseModel):
    id: str
    building_name: str
    floor: str
    sqm: int
    cost: int
    payment_network: str
    created_at: datetime
    expires_at: datetime
    is_expired: bool


class DashboardResponse(BaseModel):
    total: int
    active: int
    expired: int
    listings: List[DashboardListing]


@router.post("", response_model=ListingResponse)
async def create_listing(
    request: CreateListingRequest,
    service: ListingService = Depends(get_listing_service),
    cancel_event: asyncio.Event = Depends(disconnect_event),
):
    """Publish a listing once its payment (or promo code) is admitted."""
    draft = ListingDraft(
        building_name=request.building_name,
        coordinates=request.coordinates,
        floor=request.floor,
        sqm=request.sqm,
        cost=request.cost,
        description=request.description,
        youtube_link=request.youtube_link,
        thai_only=request.thai_only,
        has_pool=request.has_pool,
        has_parking=request.has_parking,
        is_top_floor=request.is_top_floor,
        six_months=request.six_months,
    )
    result = await service.publish(
        draft,
        request.reference,
        request.payment_network,
        request.promo_code,
        wait=request.await_confirmation,
        cancel_event=cancel_event,
    )
    if not result.admitted:
        return JSONResponse(status_code=400, content={"error": result.error_message})
    return ListingResponse.from_listing(result.entity)


@router.get("", response_model=Dict[str, List[ListingResponse]])
async def list_listings(service: ListingService = Depends(get_listing_service)):
    """All listings grouped by building name."""
    grouped = await service.grouped_by_building()
    return {name: [ListingResponse.from_listing(l) for l in listings] for name, listings in grouped.items()}


@router.get("/dashboard", response_model=DashboardResponse, dependencies=[Depends(require_admin)])
async def dashboard(service: ListingService = Depends(get_listing_service)):
    summary = await service.dashboard()
    return DashboardResponse(
        total=summary["total"],
        active=summary["active"],
        expired=summary["expired"],
        listings=[
            DashboardListing(
                id=l.id,
                building_name=l.building_name,
                floor=l.floor,
                sqm=l.sqm,
                cost=l.cost,
                payment_network=l.payment_network,
                created_at=l.created_at,
                expires_at=l.expires_at,
                is_expired=l.is_expired(),
            )
            for l in summary["listings"]
        ],
    )


@router.post("/expired/purge", dependencies=[Depends(require_admin)])
async def purge_expired(service: ListingService = Depends(get_listing_service)):
    return {"deleted": await service.purge_expired()}


@router.get("/{name}", response_model=List[ListingResponse])
async def listings_for_building(name: str, service: ListingService = Depends(get_listing_service)):
    return [ListingResponse.from_listing(l) for l in await service.for_building(name)]


@router.delete("/{listing_id}", dependencies=[Depends(require_admin)])
async def delete_listing(listing_id: str, service: ListingService = Depends(get_listing_service)):
    await service.delete(listing_id)
    return {"success": True}
