"""
Server-side confirmation polling.

A bounded, cancellable retry: one verification per attempt, a fixed delay
between attempts and a hard attempt ceiling. Verification is blocking network
I/O, so each attempt runs in a worker thread.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ..payment.errors import ChainUnavailableError
from ..payment.verifier import VerificationOutcome, VerificationStatus

logger = logging.getLogger(__name__)


class PollStatus(str, Enum):
    CONFIRMED = "confirmed"
    MISMATCH = "mismatch"
    UNVERIFIED = "unverified"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PollResult:
    status: PollStatus
    attempts: int
    outcome: Optional[VerificationOutcome] = None

    @property
    def confirmed(self) -> bool:
        return self.status is PollStatus.CONFIRMED


_TERMINAL = {
    VerificationStatus.CONFIRMED: PollStatus.CONFIRMED,
    VerificationStatus.MISMATCH: PollStatus.MISMATCH,
    VerificationStatus.UNVERIFIED: PollStatus.UNVERIFIED,
}


class PaymentPoller:
    def __init__(self, interval_seconds: float = 2.0, max_attempts: int = 150):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts

    async def wait_for_confirmation(
        self,
        check: Callable[[], VerificationOutcome],
        cancel_event: Optional[asyncio.Event] = None,
        max_attempts: Optional[int] = None,
    ) -> PollResult:
        """Poll ``check`` until a terminal outcome, the ceiling, or cancellation.

        NOT_FOUND and transient chain faults keep polling. Setting
        ``cancel_event`` ends the wait with CANCELLED; cancelling the task
        raises ``asyncio.CancelledError`` to the caller as usual.
        """
        ceiling = min(max_attempts or self.max_attempts, self.max_attempts)
        cancel_event = cancel_event or asyncio.Event()
        last: Optional[VerificationOutcome] = None

        for attempt in range(1, ceiling + 1):
            if cancel_event.is_set():
                return PollResult(PollStatus.CANCELLED, attempt - 1, last)

            try:
                last = await asyncio.to_thread(check)
            except ChainUnavailableError as e:
                logger.warning(f"Poll attempt {attempt}/{ceiling} hit a chain fault: {e.message}")
            else:
                status = _TERMINAL.get(last.status)
                if status is not None:
                    return PollResult(status, attempt, last)

            if attempt == ceiling:
                break
            try:
                await asyncio.wait_for(cancel_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
            return PollResult(PollStatus.CANCELLED, attempt, last)

        logger.info(f"Payment not confirmed after {ceiling} attempts")
        return PollResult(PollStatus.TIMEOUT, ceiling, last)
