"""
Payment reference generation.

A reference is a fresh, unguessable tag for one payment attempt. It is never
used to sign anything; it only lets the verifier pick the matching transfer
out of unrelated ledger activity.
"""

import logging
import re
import secrets

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from web3 import Web3

from .errors import EntropyUnavailableError, MalformedInputError
from .networks import ChainKind

logger = logging.getLogger(__name__)

REFERENCE_BYTES = 32

_HEX_REFERENCE = re.compile(r"^0x[0-9a-f]{64}$")


def _entropy(size: int) -> bytes:
    try:
        return secrets.token_bytes(size)
    except NotImplementedError as e:
        # os.urandom has no source on this platform; never fall back to a weaker RNG
        raise EntropyUnavailableError("Secure randomness is unavailable") from e


def new_reference(kind: ChainKind) -> str:
    """Generate a reference in the addressing format of the chain kind.

    Account chains get a base58 public key of a throwaway keypair (the Solana
    Pay convention). EVM and other hex-addressed chains get 32 random bytes,
    0x-prefixed.
    """
    seed = _entropy(REFERENCE_BYTES)
    if kind is ChainKind.ACCOUNT:
        return str(Keypair.from_seed(seed).pubkey())
    return Web3.to_hex(seed)


def normalize_reference(kind: ChainKind, reference: str) -> str:
    """Validate a caller-supplied reference and return its canonical text."""
    text = (reference or "").strip()
    if not text:
        raise MalformedInputError("Reference is required")
    if kind is ChainKind.ACCOUNT:
        try:
            return str(Pubkey.from_string(text))
        except ValueError:
            raise MalformedInputError(f"Invalid reference: {reference!r}")
    text = text.lower()
    if not _HEX_REFERENCE.match(text):
        raise MalformedInputError(f"Invalid reference: {reference!r}")
    return text
