"""
PaymentVerifier - decides from public ledger state whether a reference paid.

Read-only and idempotent: safe to call repeatedly and concurrently for the
same reference. Only malformed input and chain faults raise; everything else
is a ``VerificationOutcome``.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .chains.base import ChainClient, DecodedTransaction

logger = logging.getLogger(__name__)


class VerificationStatus(str, Enum):
    CONFIRMED = "confirmed"
    NOT_FOUND = "not_found"  # nothing on-chain yet: keep polling
    MISMATCH = "mismatch"  # wrong amount/destination: reference is spent
    UNVERIFIED = "unverified"  # network has no verifying client


@dataclass(frozen=True)
class VerificationOutcome:
    status: VerificationStatus
    transaction_id: Optional[str] = None
    detail: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.status is VerificationStatus.CONFIRMED

    def to_dict(self) -> dict:
        return {
            "confirmed": self.confirmed,
            "status": self.status.value,
            "transaction_id": self.transaction_id,
        }


class PaymentVerifier:
    """Exact-match verification of a reference-tagged transfer."""

    def verify(
        self,
        client: ChainClient,
        reference: str,
        expected_destination: str,
        expected_base_amount: int,
    ) -> VerificationOutcome:
        """Check the latest activity tagged with ``reference``.

        Confirmed only if one instruction moves exactly
        ``expected_base_amount`` of the network's token into
        ``expected_destination``. Overpayment and underpayment both mismatch.
        """
        if not client.verifiable:
            return VerificationOutcome(
                VerificationStatus.UNVERIFIED,
                detail=f"{client.network.value} payments cannot be verified",
            )

        reference = client.validate_reference(reference)
        transaction_id = client.fetch_latest_activity(reference)
        if transaction_id is None:
            return VerificationOutcome(VerificationStatus.NOT_FOUND)

        decoded = client.fetch_and_decode(transaction_id)
        if decoded is None:
            # Indexed but not retrievable yet
            return VerificationOutcome(VerificationStatus.NOT_FOUND, transaction_id=transaction_id)

        outcome = self._match(client, decoded, expected_destination, expected_base_amount)
        logger.info(
            f"Verification {client.network.value} reference={reference} "
            f"tx={transaction_id}: {outcome.status.value}"
            + (f" ({outcome.detail})" if outcome.detail else "")
        )
        return outcome

    def _match(
        self,
        client: ChainClient,
        decoded: DecodedTransaction,
        expected_destination: str,
        expected_base_amount: int,
    ) -> VerificationOutcome:
        txid = decoded.transaction_id
        if not decoded.succeeded:
            return VerificationOutcome(VerificationStatus.MISMATCH, txid, "transaction failed on-chain")

        seen_amounts = []
        for ix in decoded.instructions:
            if not ix.is_transfer or ix.destination != expected_destination:
                continue
            if ix.token is not None and ix.token != client.token.address:
                continue
            if ix.amount == expected_base_amount:
                return VerificationOutcome(VerificationStatus.CONFIRMED, txid)
            seen_amounts.append(ix.amount)

        if seen_amounts:
            return VerificationOutcome(
                VerificationStatus.MISMATCH,
                txid,
                f"amount {seen_amounts} != expected {expected_base_amount}",
            )
        if not decoded.fully_resolved:
            # The transfer may sit behind accounts we could not resolve
            return VerificationOutcome(VerificationStatus.NOT_FOUND, txid, "transaction could not be fully decoded")
        return VerificationOutcome(VerificationStatus.MISMATCH, txid, "no transfer to the expected destination")
