"""MongoDB repositories (motor)."""

import dataclasses
import logging
from datetime import datetime
from typing import List, Optional

import certifi
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .repository import (
    AdmissionRecord,
    AdmissionRepository,
    ClaimState,
    Listing,
    ListingRepository,
    PromoRecord,
    PromoRepository,
    Repositories,
    Subscription,
    SubscriptionRepository,
    utcnow,
)

logger = logging.getLogger(__name__)


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true)."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def connect(uri: str, db_name: str) -> AsyncIOMotorDatabase:
    kwargs = {"tz_aware": True}
    if _use_tls(uri):
        # Atlas: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    client = AsyncIOMotorClient(uri, **kwargs)
    return client[db_name]


def _to_doc(record) -> dict:
    doc = dataclasses.asdict(record)
    if "id" in doc:
        doc["_id"] = doc.pop("id")
    for key, value in doc.items():
        if isinstance(value, ClaimState):
            doc[key] = value.value
    return doc


def _from_doc(cls, doc: Optional[dict]):
    if doc is None:
        return None
    doc = dict(doc)
    if "_id" in doc:
        if any(f.name == "id" for f in dataclasses.fields(cls)):
            doc["id"] = doc.pop("_id")
        else:
            doc.pop("_id")
    names = {f.name for f in dataclasses.fields(cls)}
    return cls(**{k: v for k, v in doc.items() if k in names})


class MongoPromoRepository(PromoRepository):
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db["promos"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("code", ASCENDING)], unique=True)

    async def get(self, code: str) -> Optional[PromoRecord]:
        return _from_doc(PromoRecord, await self.collection.find_one({"code": code}))

    async def insert(self, record: PromoRecord) -> bool:
        try:
            await self.collection.insert_one(_to_doc(record))
        except DuplicateKeyError:
            return False
        return True

    async def try_consume(self, code: str) -> Optional[PromoRecord]:
        doc = await self.collection.find_one_and_update(
            {"code": code, "remaining_uses": {"$gt": 0}},
            {"$inc": {"remaining_uses": -1}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return _from_doc(PromoRecord, doc)

    async def list_active(self) -> List[PromoRecord]:
        cursor = self.collection.find({"remaining_uses": {"$gt": 0}}).sort("created_at", DESCENDING)
        return [_from_doc(PromoRecord, doc) async for doc in cursor]

    async def delete(self, promo_id: str) -> bool:
        result = await self.collection.delete_one({"_id": promo_id})
        return result.deleted_count == 1

    async def reset(self, promo_id: str, remaining_uses: int) -> Optional[PromoRecord]:
        doc = await self.collection.find_one_and_update(
            {"_id": promo_id},
            {
                "$set": {"remaining_uses": remaining_uses, "updated_at": utcnow()},
                "$max": {"max_uses": remaining_uses},
            },
            return_document=ReturnDocument.AFTER,
        )
        return _from_doc(PromoRecord, doc)

    async def reset_code(self, code: str, max_uses: int) -> Optional[PromoRecord]:
        doc = await self.collection.find_one_and_update(
            {"code": code},
            {"$set": {"max_uses": max_uses, "remaining_uses": max_uses, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return _from_doc(PromoRecord, doc)


class MongoAdmissionRepository(AdmissionRepository):
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db["admissions"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("reference", ASCENDING)], unique=True)

    async def claim(
        self, record: AdmissionRecord, stale_before: Optional[datetime] = None
    ) -> Optional[AdmissionRecord]:
        try:
            await self.collection.insert_one(_to_doc(record))
        except DuplicateKeyError:
            if stale_before is not None:
                stale = await self.collection.find_one_and_replace(
                    {
                        "reference": record.reference,
                        "state": ClaimState.PENDING.value,
                        "claimed_at": {"$lte": stale_before},
                    },
                    _to_doc(record),
                )
                if stale is not None:
                    logger.warning(f"Taking over stale claim on {record.reference} from {stale['claimed_at']}")
                    return None
            return await self.get(record.reference)
        return None

    async def get(self, reference: str) -> Optional[AdmissionRecord]:
        record = _from_doc(AdmissionRecord, await self.collection.find_one({"reference": reference}))
        if record is not None:
            record.state = ClaimState(record.state)
        return record

    async def mark_admitted(self, reference: str, entity_id: str) -> None:
        await self.collection.update_one(
            {"reference": reference},
            {"$set": {"state": ClaimState.ADMITTED.value, "entity_id": entity_id, "updated_at": utcnow()}},
        )

    async def mark_burned(self, reference: str) -> None:
        await self.collection.update_one(
            {"reference": reference},
            {"$set": {"state": ClaimState.BURNED.value, "updated_at": utcnow()}},
        )

    async def release(self, reference: str) -> None:
        await self.collection.delete_one({"reference": reference, "state": ClaimState.PENDING.value})


class MongoListingRepository(ListingRepository):
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db["listings"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("reference", ASCENDING)], unique=True)
        await self.collection.create_index([("building_name", ASCENDING)])
        await self.collection.create_index([("expires_at", ASCENDING)])

    async def insert(self, listing: Listing) -> Listing:
        await self.collection.insert_one(_to_doc(listing))
        return listing

    async def get(self, listing_id: str) -> Optional[Listing]:
        return _from_doc(Listing, await self.collection.find_one({"_id": listing_id}))

    async def list_all(self) -> List[Listing]:
        cursor = self.collection.find({}).sort("created_at", DESCENDING)
        return [_from_doc(Listing, doc) async for doc in cursor]

    async def find_by_building(self, building_name: str) -> List[Listing]:
        cursor = self.collection.find({"building_name": building_name}).sort("created_at", DESCENDING)
        return [_from_doc(Listing, doc) async for doc in cursor]

    async def delete(self, listing_id: str) -> bool:
        result = await self.collection.delete_one({"_id": listing_id})
        return result.deleted_count == 1

    async def delete_expired(self, now: datetime) -> int:
        result = await self.collection.delete_many({"expires_at": {"$lte": now}})
        return result.deleted_count


class MongoSubscriptionRepository(SubscriptionRepository):
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db["subscriptions"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("reference", ASCENDING)], unique=True)
        await self.collection.create_index([("email", ASCENDING)])

    async def insert(self, subscription: Subscription) -> Subscription:
        await self.collection.insert_one(_to_doc(subscription))
        return subscription

    async def get(self, subscription_id: str) -> Optional[Subscription]:
        return _from_doc(Subscription, await self.collection.find_one({"_id": subscription_id}))

    async def find_by_email(self, email: str) -> List[Subscription]:
        cursor = self.collection.find({"email": email}).sort("created_at", DESCENDING)
        return [_from_doc(Subscription, doc) async for doc in cursor]


def mongo_repositories(uri: str, db_name: str) -> Repositories:
    db = connect(uri, db_name)
    logger.info(f"Using MongoDB database {db_name}")
    return Repositories(
        promos=MongoPromoRepository(db),
        admissions=MongoAdmissionRepository(db),
        listings=MongoListingRepository(db),
        subscriptions=MongoSubscriptionRepository(db),
    )
