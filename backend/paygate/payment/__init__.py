"""
Payment Module - multi-chain USDC payment engine.

Builds unsigned transfers, verifies reference-tagged payments from public
ledger state, and describes the supported networks.
"""

from .builder import TransactionBuilder, TransferDescriptor, UnsignedTransfer
from .config import PaymentConfig, get_payment_config
from .errors import (
    AdmissionConflictError,
    ChainUnavailableError,
    MalformedInputError,
    PaymentError,
)
from .facilitator import FacilitatorService
from .networks import ChainKind, NetworkType
from .verifier import PaymentVerifier, VerificationOutcome, VerificationStatus

__all__ = [
    "AdmissionConflictError",
    "ChainKind",
    "ChainUnavailableError",
    "FacilitatorService",
    "MalformedInputError",
    "NetworkType",
    "PaymentConfig",
    "PaymentError",
    "PaymentVerifier",
    "TransactionBuilder",
    "TransferDescriptor",
    "UnsignedTransfer",
    "VerificationOutcome",
    "VerificationStatus",
    "get_payment_config",
]
