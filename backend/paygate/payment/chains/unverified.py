"""
Placeholder client for networks without on-chain verification (Aptos, Sui).

Payments on these networks are reported as UNVERIFIED and never admitted.
Accepting any non-empty reference as proof of payment is exactly what this
client exists to prevent.
"""

from typing import Optional, Sequence

from ..errors import MalformedInputError
from ..networks import ChainKind
from ..references import normalize_reference
from .base import ChainClient, Checkpoint, DecodedTransaction


class UnverifiedChainClient(ChainClient):
    kind = ChainKind.UNVERIFIED
    verifiable = False
    max_base_units = 2**64 - 1

    def _unsupported(self, operation: str):
        return MalformedInputError(
            f"{operation} is not supported on {self.network.value}: payments cannot be verified"
        )

    def validate_address(self, address: str) -> str:
        text = (address or "").strip()
        if not text:
            raise MalformedInputError("Address is required")
        return text

    def validate_reference(self, reference: str) -> str:
        return normalize_reference(self.kind, reference)

    def derive_holding_account(self, owner: str, token: str) -> str:
        return self.validate_address(owner)

    def latest_checkpoint(self, payer: str) -> Checkpoint:
        raise self._unsupported("Transaction building")

    def create_holding_account_instruction(self, funder: str, owner: str, holding: str) -> None:
        raise self._unsupported("Transaction building")

    def transfer_instruction(self, source_holding, destination_holding, owner, base_units, reference):
        raise self._unsupported("Transaction building")

    def serialize_unsigned(self, payer: str, instructions: Sequence, checkpoint: Checkpoint) -> bytes:
        raise self._unsupported("Transaction building")

    def fetch_latest_activity(self, reference: str) -> Optional[str]:
        return None

    def fetch_and_decode(self, transaction_id: str) -> Optional[DecodedTransaction]:
        return None
