"""
ChainClient: the capability set the builder and verifier need from a ledger.

One implementation per chain kind. Implementations raise
``MalformedInputError`` for bad input and ``ChainUnavailableError`` for RPC
faults; "nothing found yet" is returned as ``None``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..networks import ChainKind, NetworkConfig, NetworkType, TokenConfig


@dataclass(frozen=True)
class Checkpoint:
    """Latest chain state a transaction must commit to (blockhash, nonce, fees)."""

    value: str
    height: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DecodedInstruction:
    """One instruction (or contract call) of a fetched transaction."""

    program: str
    kind: str  # "transfer", "transfer_checked", "create_idempotent", "unresolved", "unknown"
    source: Optional[str] = None
    destination: Optional[str] = None
    amount: Optional[int] = None
    token: Optional[str] = None
    observers: Tuple[str, ...] = ()

    @property
    def is_transfer(self) -> bool:
        return self.kind in ("transfer", "transfer_checked") and self.amount is not None


@dataclass(frozen=True)
class DecodedTransaction:
    transaction_id: str
    succeeded: bool
    instructions: List[DecodedInstruction] = field(default_factory=list)

    @property
    def fully_resolved(self) -> bool:
        """False if some instruction references accounts that could not be loaded."""
        return all(ix.kind != "unresolved" for ix in self.instructions)


class ChainClient(ABC):
    """Capability abstraction over one ledger."""

    kind: ChainKind
    verifiable: bool = True
    max_base_units: int

    def __init__(self, config: NetworkConfig):
        self.config = config

    @property
    def network(self) -> NetworkType:
        return self.config.network

    @property
    def token(self) -> TokenConfig:
        return self.config.token

    def endpoint_status(self) -> Dict[str, Dict[str, Any]]:
        """Health of the RPC endpoints behind this client, keyed by URL."""
        return {}

    @abstractmethod
    def validate_address(self, address: str) -> str:
        """Return the canonical form of an address or raise MalformedInputError."""

    @abstractmethod
    def validate_reference(self, reference: str) -> str:
        """Return the canonical form of a reference or raise MalformedInputError."""

    @abstractmethod
    def derive_holding_account(self, owner: str, token: str) -> str:
        """Deterministic account that holds ``token`` for ``owner``."""

    @abstractmethod
    def latest_checkpoint(self, payer: str) -> Checkpoint:
        ...

    @abstractmethod
    def create_holding_account_instruction(self, funder: str, owner: str, holding: str) -> Optional[Any]:
        """Idempotent create-if-absent instruction, or None if the chain needs none."""

    @abstractmethod
    def transfer_instruction(
        self,
        source_holding: str,
        destination_holding: str,
        owner: str,
        base_units: int,
        reference: str,
    ) -> Any:
        """Exact-amount transfer carrying the reference as a read-only observer."""

    @abstractmethod
    def serialize_unsigned(self, payer: str, instructions: Sequence[Any], checkpoint: Checkpoint) -> bytes:
        ...

    @abstractmethod
    def fetch_latest_activity(self, reference: str) -> Optional[str]:
        """Most recent transaction id tagged with ``reference``, or None."""

    @abstractmethod
    def fetch_and_decode(self, transaction_id: str) -> Optional[DecodedTransaction]:
        """Decoded transaction, or None if the node cannot return it yet."""
