"""Listing publication, lookup and expiry."""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from ..admission.gate import AdmissionGate, AdmissionResult
from ..admission.repository import Listing, ListingRepository, utcnow
from ..payment.config import PaymentConfig
from ..payment.errors import MalformedInputError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ListingDraft:
    """Listing fields as submitted, before payment admission."""

    building_name: str
    coordinates: str  # "lat, lng"
    floor: str
    sqm: int
    cost: int
    description: str
    youtube_link: str = ""
    thai_only: bool = False
    has_pool: bool = False
    has_parking: bool = False
    is_top_floor: bool = False
    six_months: bool = False


def parse_coordinates(text: str) -> Tuple[float, float]:
    parts = [p.strip() for p in (text or "").split(",")]
    if len(parts) != 2:
        raise MalformedInputError("Coordinates must be 'latitude, longitude'")
    try:
        lat, lng = float(parts[0]), float(parts[1])
    except ValueError:
        raise MalformedInputError(f"Invalid coordinates: {text!r}")
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        raise MalformedInputError(f"Coordinates out of range: {text!r}")
    return lat, lng


class ListingService:
    def __init__(self, repository: ListingRepository, gate: AdmissionGate, config: PaymentConfig):
        self.repository = repository
        self.gate = gate
        self.config = config

    def lifetime(self, six_months: bool) -> timedelta:
        months = 6 if six_months else 1
        return timedelta(days=months * self.config.listing_days_per_month)

    async def publish(
        self,
        draft: ListingDraft,
        reference: str,
        payment_network: str,
        promo_code: Optional[str] = None,
        wait: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AdmissionResult:
        """Admit and create one listing per reference.

        A promo code, when given, replaces the payment check entirely. With
        ``wait`` the payment is polled until it confirms, times out or
        ``cancel_event`` is set, instead of being checked once.
        """
        lat, lng = parse_coordinates(draft.coordinates)
        if draft.sqm <= 0 or draft.cost < 0:
            raise MalformedInputError("sqm must be positive and cost must not be negative")

        async def create(admitted_reference: str) -> Listing:
            listing = Listing(
                building_name=draft.building_name.strip(),
                latitude=lat,
                longitude=lng,
                floor=draft.floor,
                sqm=draft.sqm,
                cost=draft.cost,
                description=draft.description,
                youtube_link=draft.youtube_link,
                reference=admitted_reference,
                payment_network=payment_network,
                expires_at=utcnow() + self.lifetime(draft.six_months),
                thai_only=draft.thai_only,
                has_pool=draft.has_pool,
                has_parking=draft.has_parking,
                is_top_floor=draft.is_top_floor,
                six_months=draft.six_months,
                promo_code=promo_code.strip().lower() if promo_code else None,
            )
            return await self.repository.insert(listing)

        if promo_code and promo_code.strip():
            result = await self.gate.admit_promo(promo_code, reference, create, purpose="listing")
        elif wait:
            result = await self.gate.admit_when_confirmed(
                payment_network,
                reference,
                self.config.listing_price_usdc,
                create,
                purpose="listing",
                cancel_event=cancel_event,
            )
        else:
            result = await self.gate.admit_payment(
                payment_network, reference, self.config.listing_price_usdc, create, purpose="listing"
            )
        if result.replayed and result.entity is None:
            result.entity = await self.repository.get(result.entity_id)
            if result.entity is None:
                # Admitted earlier, then deleted or purged
                raise NotFoundError("Listing no longer exists")
        return result

    async def grouped_by_building(self) -> Dict[str, List[Listing]]:
        grouped: Dict[str, List[Listing]] = OrderedDict()
        for listing in await self.repository.list_all():
            grouped.setdefault(listing.building_name, []).append(listing)
        return grouped

    async def for_building(self, building_name: str) -> List[Listing]:
        return await self.repository.find_by_building(building_name)

    async def dashboard(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        listings = await self.repository.list_all()
        expired = [l for l in listings if l.is_expired(now)]
        return {
            "total": len(listings),
            "active": len(listings) - len(expired),
            "expired": len(expired),
            "listings": listings,
        }

    async def delete(self, listing_id: str) -> None:
        if not await self.repository.delete(listing_id):
            raise NotFoundError("Listing not found")
        logger.info(f"Listing {listing_id} deleted")

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        deleted = await self.repository.delete_expired(now or utcnow())
        logger.info(f"Expired listings deleted: {deleted}")
        return deleted
