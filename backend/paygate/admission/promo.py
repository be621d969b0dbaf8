"""
Promo allowance store: counted-use codes that stand in for a payment.

Codes are case-insensitive and stored lowercase. ``remaining_uses`` only goes
down through ``consume`` (one atomic conditional decrement in the repository)
and only goes up through the explicit administrative resets.
"""

import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from ..payment.errors import DuplicateEntityError, EntropyUnavailableError, MalformedInputError, NotFoundError
from .repository import PromoRecord, PromoRepository

logger = logging.getLogger(__name__)

FREE_PROMO_CODE = "free"
FREE_PROMO_USES = 1000
GENERATED_CODE_BYTES = 4  # 8 hex chars
MAX_GENERATE_ATTEMPTS = 10


class PromoCheck(str, Enum):
    VALID = "valid"
    INVALID = "invalid"  # unknown code, or none configured
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class PromoConsumption:
    status: PromoCheck
    code: Optional[str] = None
    remaining_uses: Optional[int] = None


def canonicalize(code: Optional[str]) -> str:
    return (code or "").strip().lower()


class PromoAllowanceStore:
    def __init__(self, repository: PromoRepository):
        self.repository = repository

    async def consume(self, code: Optional[str]) -> PromoConsumption:
        """Use one allowance of ``code``.

        EXHAUSTED leaves the counter untouched; remaining_uses never goes
        below zero even under concurrent calls.
        """
        canonical = canonicalize(code)
        if not canonical:
            return PromoConsumption(PromoCheck.INVALID)

        updated = await self.repository.try_consume(canonical)
        if updated is not None:
            logger.info(f"Promo {canonical} consumed, {updated.remaining_uses} uses left")
            return PromoConsumption(PromoCheck.VALID, canonical, updated.remaining_uses)

        # Decrement refused: tell unknown from used-up
        existing = await self.repository.get(canonical)
        if existing is None:
            logger.info(f"Promo {canonical!r} rejected: unknown code")
            return PromoConsumption(PromoCheck.INVALID, canonical)
        logger.info(f"Promo {canonical} rejected: exhausted")
        return PromoConsumption(PromoCheck.EXHAUSTED, canonical, 0)

    async def create(self, code: str, max_uses: int) -> PromoRecord:
        canonical = canonicalize(code)
        if not canonical:
            raise MalformedInputError("Promo code is required")
        if max_uses < 1:
            raise MalformedInputError("max_uses must be at least 1")
        record = PromoRecord(code=canonical, max_uses=max_uses, remaining_uses=max_uses)
        if not await self.repository.insert(record):
            raise DuplicateEntityError(f"Promo code already exists: {canonical}")
        logger.info(f"Promo {canonical} created with {max_uses} uses")
        return record

    async def generate(self, max_uses: int) -> PromoRecord:
        """Create a random 8-character lowercase hex code."""
        for _ in range(MAX_GENERATE_ATTEMPTS):
            try:
                code = secrets.token_hex(GENERATED_CODE_BYTES)
            except NotImplementedError as e:
                raise EntropyUnavailableError("Secure randomness is unavailable") from e
            try:
                return await self.create(code, max_uses)
            except DuplicateEntityError:
                continue
        raise DuplicateEntityError("Could not generate a unique promo code")

    async def create_free(self) -> PromoRecord:
        """The fixed ``free`` code with 1000 uses; refills it if it exists."""
        record = await self.repository.reset_code(FREE_PROMO_CODE, FREE_PROMO_USES)
        if record is not None:
            logger.info(f"Promo {FREE_PROMO_CODE} reset to {FREE_PROMO_USES} uses")
            return record
        return await self.create(FREE_PROMO_CODE, FREE_PROMO_USES)

    async def seed(self, code: str, max_uses: int) -> Optional[PromoRecord]:
        """Create the configured bootstrap code once; an existing code is left alone."""
        canonical = canonicalize(code)
        if not canonical or max_uses < 1:
            return None
        existing = await self.repository.get(canonical)
        if existing is not None:
            return existing
        try:
            return await self.create(canonical, max_uses)
        except DuplicateEntityError:
            return await self.repository.get(canonical)

    async def list_active(self) -> List[PromoRecord]:
        return await self.repository.list_active()

    async def delete(self, promo_id: str) -> None:
        if not await self.repository.delete(promo_id):
            raise NotFoundError("Promo code not found")
        logger.info(f"Promo {promo_id} deleted")

    async def reset(self, promo_id: str, remaining_uses: int) -> PromoRecord:
        if remaining_uses < 0:
            raise MalformedInputError("remaining_uses must not be negative")
        record = await self.repository.reset(promo_id, remaining_uses)
        if record is None:
            raise NotFoundError("Promo code not found")
        logger.info(f"Promo {record.code} reset to {remaining_uses} uses")
        return record
