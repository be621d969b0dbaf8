"""
Admission Gate - turns payment or promo results into exactly one domain action.

Every path claims the reference in the admission repository before anything
else happens. The claim is a unique insert, so two concurrent requests for the
same reference cannot both reach ``create``:

- finished admission  -> the stored entity id is returned, ``create`` is not called
- admission in flight -> ``AdmissionConflictError``
- mismatched payment  -> the reference is burned and never admissible again
- rejected / failed   -> the claim is released and the reference may be retried
- holder crashed     -> the PENDING claim lapses after ``claim_lease`` and is taken over
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from ..payment.amounts import Amount
from ..payment.errors import AdmissionConflictError, MalformedInputError
from ..payment.facilitator import FacilitatorService
from ..payment.networks import parse_network
from ..payment.verifier import VerificationOutcome, VerificationStatus
from .polling import PaymentPoller, PollStatus
from .promo import PromoAllowanceStore, PromoCheck
from .repository import AdmissionRecord, AdmissionRepository, ClaimState, utcnow

logger = logging.getLogger(__name__)

CreateEntity = Callable[[str], Awaitable[Any]]  # receives the canonical reference

DEFAULT_CLAIM_LEASE = timedelta(minutes=15)
MARK_ADMITTED_ATTEMPTS = 3


class AdmissionState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    TIMEOUT = "timeout"
    PROMO_SUBMITTED = "promo_submitted"
    VALID = "valid"
    INVALID = "invalid"
    EXHAUSTED = "exhausted"
    ADMITTED = "admitted"
    REJECTED = "rejected"


class RejectReason(str, Enum):
    INVALID_PAYMENT = "invalid_payment"
    UNVERIFIED_NETWORK = "unverified_network"
    INVALID_PROMO = "invalid_promo"
    PROMO_EXHAUSTED = "promo_exhausted"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


REJECT_MESSAGES = {
    RejectReason.INVALID_PAYMENT: "Invalid payment",
    RejectReason.UNVERIFIED_NETWORK: "Invalid payment",
    RejectReason.INVALID_PROMO: "Invalid promo",
    RejectReason.PROMO_EXHAUSTED: "Promo exhausted",
    RejectReason.TIMEOUT: "Invalid payment",
    RejectReason.CANCELLED: "Payment check cancelled",
}


@dataclass
class AdmissionResult:
    admitted: bool
    reference: str
    entity: Any = None
    entity_id: Optional[str] = None
    replayed: bool = False
    reason: Optional[RejectReason] = None
    outcome: Optional[VerificationOutcome] = None
    trail: List[AdmissionState] = field(default_factory=list)

    @property
    def state(self) -> AdmissionState:
        return AdmissionState.ADMITTED if self.admitted else AdmissionState.REJECTED

    @property
    def error_message(self) -> Optional[str]:
        return REJECT_MESSAGES[self.reason] if self.reason else None


class AdmissionGate:
    def __init__(
        self,
        facilitator: FacilitatorService,
        admissions: AdmissionRepository,
        promos: PromoAllowanceStore,
        poller: Optional[PaymentPoller] = None,
        claim_lease: timedelta = DEFAULT_CLAIM_LEASE,
        mark_retry_delay: float = 0.2,
    ):
        """
        Args:
            claim_lease: How long a PENDING claim holds its reference. Must
                outlast the longest confirmation wait.
            mark_retry_delay: Base delay between attempts to record an admission
        """
        self.facilitator = facilitator
        self.admissions = admissions
        self.promos = promos
        self.poller = poller or PaymentPoller()
        self.claim_lease = claim_lease
        self.mark_retry_delay = mark_retry_delay

    # --- claim bookkeeping ------------------------------------------------------------

    async def _claim(self, reference: str, purpose: str, network: Optional[str]) -> Optional[AdmissionResult]:
        """Claim ``reference``; a non-None return is the answer for a repeat."""
        existing = await self.admissions.claim(
            AdmissionRecord(reference=reference, purpose=purpose, network=network),
            stale_before=utcnow() - self.claim_lease,
        )
        if existing is None:
            return None

        if existing.state is ClaimState.PENDING:
            raise AdmissionConflictError("Payment for this reference is already being processed")
        if existing.state is ClaimState.ADMITTED and existing.purpose == purpose:
            logger.info(f"Reference {reference} already admitted as {purpose} {existing.entity_id}")
            return AdmissionResult(
                admitted=True,
                reference=reference,
                entity_id=existing.entity_id,
                replayed=True,
                trail=[AdmissionState.ADMITTED],
            )
        # Burned, or spent on a different purpose
        logger.info(f"Reference {reference} rejected: already {existing.state.value} for {existing.purpose}")
        return self._reject(reference, RejectReason.INVALID_PAYMENT, [AdmissionState.REJECTED])

    async def _admit(self, reference: str, create: CreateEntity, trail: List[AdmissionState], **extra) -> AdmissionResult:
        try:
            entity = await create(reference)
        except BaseException:
            await self.admissions.release(reference)
            raise
        await self._record_admission(reference, entity.id)
        trail.append(AdmissionState.ADMITTED)
        logger.info(f"Admitted reference {reference} as {entity.id}")
        return AdmissionResult(True, reference, entity=entity, entity_id=entity.id, trail=trail, **extra)

    async def _record_admission(self, reference: str, entity_id: str) -> None:
        """Mark the claim ADMITTED, retrying store faults.

        The entity already exists, so a final failure is logged rather than
        raised; the claim then stays PENDING until its lease runs out.
        """
        for attempt in range(1, MARK_ADMITTED_ATTEMPTS + 1):
            try:
                await self.admissions.mark_admitted(reference, entity_id)
                return
            except Exception as e:
                if attempt == MARK_ADMITTED_ATTEMPTS:
                    logger.exception(f"Could not record admission of {reference} as {entity_id}: {e}")
                    return
                logger.warning(f"Recording admission of {reference} failed (attempt {attempt}): {e}")
                await asyncio.sleep(self.mark_retry_delay * attempt)

    def _reject(self, reference: str, reason: RejectReason, trail: List[AdmissionState], **extra) -> AdmissionResult:
        if not trail or trail[-1] is not AdmissionState.REJECTED:
            trail.append(AdmissionState.REJECTED)
        return AdmissionResult(False, reference, reason=reason, trail=trail, **extra)

    async def _settle(
        self,
        reference: str,
        outcome: VerificationOutcome,
        create: CreateEntity,
        trail: List[AdmissionState],
    ) -> AdmissionResult:
        if outcome.status is VerificationStatus.CONFIRMED:
            trail.append(AdmissionState.CONFIRMED)
            return await self._admit(reference, create, trail, outcome=outcome)
        if outcome.status is VerificationStatus.MISMATCH:
            await self.admissions.mark_burned(reference)
            logger.warning(f"Reference {reference} burned: {outcome.detail}")
            return self._reject(reference, RejectReason.INVALID_PAYMENT, trail, outcome=outcome)

        await self.admissions.release(reference)
        if outcome.status is VerificationStatus.UNVERIFIED:
            return self._reject(reference, RejectReason.UNVERIFIED_NETWORK, trail, outcome=outcome)
        return self._reject(reference, RejectReason.INVALID_PAYMENT, trail, outcome=outcome)

    # --- entry points -----------------------------------------------------------------

    async def admit_payment(
        self,
        network: str,
        reference: str,
        amount: Amount,
        create: CreateEntity,
        purpose: str = "listing",
    ) -> AdmissionResult:
        """Verify once and admit on an exact-match confirmation."""
        network_type = parse_network(network)
        reference = self.facilitator.normalize_reference(network_type, reference)
        replay = await self._claim(reference, purpose, network_type.value)
        if replay is not None:
            return replay

        trail = [AdmissionState.PENDING]
        try:
            outcome = await asyncio.to_thread(self.facilitator.verify_payment, network_type, reference, amount)
        except BaseException:
            await self.admissions.release(reference)
            raise
        return await self._settle(reference, outcome, create, trail)

    async def admit_when_confirmed(
        self,
        network: str,
        reference: str,
        amount: Amount,
        create: CreateEntity,
        purpose: str = "listing",
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AdmissionResult:
        """Poll until confirmed, then admit. A cancelled wait never admits."""
        network_type = parse_network(network)
        reference = self.facilitator.normalize_reference(network_type, reference)
        replay = await self._claim(reference, purpose, network_type.value)
        if replay is not None:
            return replay

        cancel_event = cancel_event or asyncio.Event()
        trail = [AdmissionState.PENDING]
        try:
            result = await self.poller.wait_for_confirmation(
                lambda: self.facilitator.verify_payment(network_type, reference, amount),
                cancel_event,
            )
        except BaseException:
            await self.admissions.release(reference)
            raise

        if result.status is PollStatus.CANCELLED or (result.confirmed and cancel_event.is_set()):
            # A confirmation that lands after cancellation is stale
            await self.admissions.release(reference)
            logger.info(f"Admission for {reference} cancelled after {result.attempts} attempts")
            return self._reject(reference, RejectReason.CANCELLED, trail, outcome=result.outcome)
        if result.status is PollStatus.TIMEOUT:
            await self.admissions.release(reference)
            trail.append(AdmissionState.TIMEOUT)
            return self._reject(reference, RejectReason.TIMEOUT, trail, outcome=result.outcome)
        return await self._settle(reference, result.outcome, create, trail)

    async def admit_promo(
        self,
        code: str,
        reference: str,
        create: CreateEntity,
        purpose: str = "listing",
    ) -> AdmissionResult:
        """Admit by consuming one promo use instead of verifying a payment."""
        reference = (reference or "").strip()
        if not reference:
            raise MalformedInputError("Reference is required")
        replay = await self._claim(reference, purpose, None)
        if replay is not None:
            return replay

        trail = [AdmissionState.PROMO_SUBMITTED]
        try:
            consumption = await self.promos.consume(code)
        except BaseException:
            await self.admissions.release(reference)
            raise

        if consumption.status is PromoCheck.INVALID:
            await self.admissions.release(reference)
            trail.append(AdmissionState.INVALID)
            return self._reject(reference, RejectReason.INVALID_PROMO, trail)
        if consumption.status is PromoCheck.EXHAUSTED:
            await self.admissions.release(reference)
            trail.append(AdmissionState.EXHAUSTED)
            return self._reject(reference, RejectReason.PROMO_EXHAUSTED, trail)

        trail.append(AdmissionState.VALID)
        try:
            return await self._admit(reference, create, trail)
        except Exception:
            logger.warning(f"Promo {consumption.code} was consumed but {purpose} creation failed for {reference}")
            raise
