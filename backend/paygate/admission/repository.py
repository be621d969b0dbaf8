"""
Repository interfaces and in-process implementations.

Repositories are created once by the application factory and passed to the
services that need them. The in-process versions guard every mutation with
one lock, so the conditional promo decrement and the reference claim are each
a single critical section.
"""

import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# --- Records --------------------------------------------------------------------------

@dataclass
class PromoRecord:
    code: str  # canonical lowercase
    max_uses: int
    remaining_uses: int
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "max_uses": self.max_uses,
            "remaining_uses": self.remaining_uses,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class ClaimState(str, Enum):
    PENDING = "pending"  # admission in flight
    ADMITTED = "admitted"  # entity created, entity_id set
    BURNED = "burned"  # mismatched payment, never admissible


@dataclass
class AdmissionRecord:
    reference: str
    purpose: str
    state: ClaimState = ClaimState.PENDING
    network: Optional[str] = None
    entity_id: Optional[str] = None
    claimed_at: datetime = field(default_factory=utcnow)  # start of the PENDING lease
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_stale(self, stale_before: Optional[datetime]) -> bool:
        """A PENDING claim whose lease ran out (its holder crashed or lost track)."""
        return (
            stale_before is not None
            and self.state is ClaimState.PENDING
            and self.claimed_at <= stale_before
        )


@dataclass
class Listing:
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
    expires_at: datetime
    thai_only: bool = False
    has_pool: bool = False
    has_parking: bool = False
    is_top_floor: bool = False
    six_months: bool = False
    promo_code: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class Subscription:
    email: str
    reference: str
    payment_network: str
    expires_at: datetime
    promo_code: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


# --- Interfaces -----------------------------------------------------------------------

class PromoRepository(ABC):
    @abstractmethod
    async def get(self, code: str) -> Optional[PromoRecord]:
        ...

    @abstractmethod
    async def insert(self, record: PromoRecord) -> bool:
        """Insert a new code; False if the code already exists."""

    @abstractmethod
    async def try_consume(self, code: str) -> Optional[PromoRecord]:
        """Atomically decrement ``remaining_uses`` if it is above zero.

        Returns the updated record, or None when the code is unknown or
        exhausted. Never a read-then-write pair.
        """

    @abstractmethod
    async def list_active(self) -> List[PromoRecord]:
        ...

    @abstractmethod
    async def delete(self, promo_id: str) -> bool:
        ...

    @abstractmethod
    async def reset(self, promo_id: str, remaining_uses: int) -> Optional[PromoRecord]:
        ...

    @abstractmethod
    async def reset_code(self, code: str, max_uses: int) -> Optional[PromoRecord]:
        ...


class AdmissionRepository(ABC):
    @abstractmethod
    async def claim(
        self, record: AdmissionRecord, stale_before: Optional[datetime] = None
    ) -> Optional[AdmissionRecord]:
        """Claim a reference. None on success, else the existing record.

        A PENDING claim taken at or before ``stale_before`` is replaced by
        ``record`` in the same atomic step.
        """

    @abstractmethod
    async def get(self, reference: str) -> Optional[AdmissionRecord]:
        ...

    @abstractmethod
    async def mark_admitted(self, reference: str, entity_id: str) -> None:
        ...

    @abstractmethod
    async def mark_burned(self, reference: str) -> None:
        ...

    @abstractmethod
    async def release(self, reference: str) -> None:
        """Drop a PENDING claim so the reference can be retried."""


class ListingRepository(ABC):
    @abstractmethod
    async def insert(self, listing: Listing) -> Listing:
        ...

    @abstractmethod
    async def get(self, listing_id: str) -> Optional[Listing]:
        ...

    @abstractmethod
    async def list_all(self) -> List[Listing]:
        ...

    @abstractmethod
    async def find_by_building(self, building_name: str) -> List[Listing]:
        ...

    @abstractmethod
    async def delete(self, listing_id: str) -> bool:
        ...

    @abstractmethod
    async def delete_expired(self, now: datetime) -> int:
        ...


class SubscriptionRepository(ABC):
    @abstractmethod
    async def insert(self, subscription: Subscription) -> Subscription:
        ...

    @abstractmethod
    async def get(self, subscription_id: str) -> Optional[Subscription]:
        ...

    @abstractmethod
    async def find_by_email(self, email: str) -> List[Subscription]:
        ...


@dataclass
class Repositories:
    promos: PromoRepository
    admissions: AdmissionRepository
    listings: ListingRepository
    subscriptions: SubscriptionRepository

    async def ensure_indexes(self) -> None:
        for repo in (self.promos, self.admissions, self.listings, self.subscriptions):
            ensure = getattr(repo, "ensure_indexes", None)
            if ensure is not None:
                await ensure()


# --- In-process -----------------------------------------------------------------------

class InMemoryPromoRepository(PromoRepository):
    def __init__(self):
        self._lock = threading.Lock()
        self._by_code: Dict[str, PromoRecord] = {}

    async def get(self, code: str) -> Optional[PromoRecord]:
        with self._lock:
            record = self._by_code.get(code)
            return copy.copy(record) if record else None

    async def insert(self, record: PromoRecord) -> bool:
        with self._lock:
            if record.code in self._by_code:
                return False
            self._by_code[record.code] = copy.copy(record)
            return True

    async def try_consume(self, code: str) -> Optional[PromoRecord]:
        with self._lock:
            record = self._by_code.get(code)
            if record is None or record.remaining_uses <= 0:
                return None
            record.remaining_uses -= 1
            record.updated_at = utcnow()
            return copy.copy(record)

    async def list_active(self) -> List[PromoRecord]:
        with self._lock:
            active = [copy.copy(r) for r in self._by_code.values() if r.remaining_uses > 0]
        return sorted(active, key=lambda r: r.created_at, reverse=True)

    async def delete(self, promo_id: str) -> bool:
        with self._lock:
            for code, record in self._by_code.items():
                if record.id == promo_id:
                    del self._by_code[code]
                    return True
            return False

    async def reset(self, promo_id: str, remaining_uses: int) -> Optional[PromoRecord]:
        with self._lock:
            for record in self._by_code.values():
                if record.id == promo_id:
                    record.remaining_uses = remaining_uses
                    record.max_uses = max(record.max_uses, remaining_uses)
                    record.updated_at = utcnow()
                    return copy.copy(record)
            return None

    async def reset_code(self, code: str, max_uses: int) -> Optional[PromoRecord]:
        with self._lock:
            record = self._by_code.get(code)
            if record is None:
                return None
            record.max_uses = max_uses
            record.remaining_uses = max_uses
            record.updated_at = utcnow()
            return copy.copy(record)


class InMemoryAdmissionRepository(AdmissionRepository):
    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, AdmissionRecord] = {}

    async def claim(
        self, record: AdmissionRecord, stale_before: Optional[datetime] = None
    ) -> Optional[AdmissionRecord]:
        with self._lock:
            existing = self._records.get(record.reference)
            if existing is not None and not existing.is_stale(stale_before):
                return copy.copy(existing)
            if existing is not None:
                logger.warning(f"Taking over stale claim on {record.reference} from {existing.claimed_at}")
            self._records[record.reference] = copy.copy(record)
            return None

    async def get(self, reference: str) -> Optional[AdmissionRecord]:
        with self._lock:
            record = self._records.get(reference)
            return copy.copy(record) if record else None

    async def mark_admitted(self, reference: str, entity_id: str) -> None:
        with self._lock:
            record = self._records[reference]
            record.state = ClaimState.ADMITTED
            record.entity_id = entity_id
            record.updated_at = utcnow()

    async def mark_burned(self, reference: str) -> None:
        with self._lock:
            record = self._records[reference]
            record.state = ClaimState.BURNED
            record.updated_at = utcnow()

    async def release(self, reference: str) -> None:
        with self._lock:
            record = self._records.get(reference)
            if record is not None and record.state is ClaimState.PENDING:
                del self._records[reference]


class InMemoryListingRepository(ListingRepository):
    def __init__(self):
        self._lock = threading.Lock()
        self._listings: Dict[str, Listing] = {}

    async def insert(self, listing: Listing) -> Listing:
        with self._lock:
            self._listings[listing.id] = listing
        return listing

    async def get(self, listing_id: str) -> Optional[Listing]:
        with self._lock:
            return self._listings.get(listing_id)

    async def list_all(self) -> List[Listing]:
        with self._lock:
            listings = list(self._listings.values())
        return sorted(listings, key=lambda l: l.created_at, reverse=True)

    async def find_by_building(self, building_name: str) -> List[Listing]:
        return [l for l in await self.list_all() if l.building_name == building_name]

    async def delete(self, listing_id: str) -> bool:
        with self._lock:
            return self._listings.pop(listing_id, None) is not None

    async def delete_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [lid for lid, l in self._listings.items() if l.is_expired(now)]
            for lid in expired:
                del self._listings[lid]
        return len(expired)


class InMemorySubscriptionRepository(SubscriptionRepository):
    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: List[Subscription] = []

    async def insert(self, subscription: Subscription) -> Subscription:
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    async def get(self, subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            return next((s for s in self._subscriptions if s.id == subscription_id), None)

    async def find_by_email(self, email: str) -> List[Subscription]:
        with self._lock:
            return [s for s in self._subscriptions if s.email == email]


def in_memory_repositories() -> Repositories:
    return Repositories(
        promos=InMemoryPromoRepository(),
        admissions=InMemoryAdmissionRepository(),
        listings=InMemoryListingRepository(),
        subscriptions=InMemorySubscriptionRepository(),
    )
