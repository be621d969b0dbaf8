"""
Static network metadata: the closed set of supported payment networks.

Every network maps to exactly one chain kind, and every kind has exactly one
``ChainClient`` implementation. Adding a chain means adding a member here and
an implementation under ``paygate.payment.chains``.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .errors import MalformedInputError


class NetworkType(str, Enum):
    """Supported payment networks."""
    SOLANA = "solana"
    ETHEREUM = "ethereum"
    ARBITRUM = "arbitrum"
    BASE = "base"
    APTOS = "aptos"
    SUI = "sui"


class ChainKind(str, Enum):
    """Ledger families. Determines reference format and client implementation."""
    ACCOUNT = "account"
    EVM = "evm"
    UNVERIFIED = "unverified"


NETWORK_KINDS: Dict[NetworkType, ChainKind] = {
    NetworkType.SOLANA: ChainKind.ACCOUNT,
    NetworkType.ETHEREUM: ChainKind.EVM,
    NetworkType.ARBITRUM: ChainKind.EVM,
    NetworkType.BASE: ChainKind.EVM,
    NetworkType.APTOS: ChainKind.UNVERIFIED,
    NetworkType.SUI: ChainKind.UNVERIFIED,
}


@dataclass(frozen=True)
class TokenConfig:
    """The single stablecoin accepted on a network."""

    symbol: str
    address: str  # SPL mint, ERC-20 contract or coin type
    decimals: int


@dataclass(frozen=True)
class NetworkConfig:
    network: NetworkType
    kind: ChainKind
    merchant: str
    token: TokenConfig
    rpc_urls: List[str] = field(default_factory=list)
    chain_id: Optional[int] = None
    lookback_blocks: Optional[int] = None  # EVM only: blocks scanned for reference-tagged transfers


# Mainnet USDC deployments
SOLANA_USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

EVM_USDC_CONTRACTS: Dict[NetworkType, str] = {
    NetworkType.ETHEREUM: "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
    NetworkType.ARBITRUM: "0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
    NetworkType.BASE: "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
}

EVM_CHAIN_IDS: Dict[NetworkType, int] = {
    NetworkType.ETHEREUM: 1,
    NetworkType.ARBITRUM: 42161,
    NetworkType.BASE: 8453,
}

# Average block times in seconds, used to turn a lookback duration into blocks
EVM_BLOCK_TIMES: Dict[NetworkType, float] = {
    NetworkType.ETHEREUM: 12.0,
    NetworkType.ARBITRUM: 0.25,
    NetworkType.BASE: 2.0,
}


def lookback_blocks(network: NetworkType, seconds: int) -> int:
    """Number of blocks produced on ``network`` in ``seconds`` (at least one)."""
    return max(1, math.ceil(seconds / EVM_BLOCK_TIMES[network]))


APTOS_USDC_COIN_TYPE = "0x1::coin::USDC"
SUI_USDC_COIN_TYPE = "0xdba34672e30cb065b1f93e3ab55318768fd6fef66c15942c9f7cb846e2f900e7::usdc::USDC"

USDC_DECIMALS = 6


def parse_network(value: str) -> NetworkType:
    """Parse a network tag, rejecting anything outside the closed set."""
    try:
        return NetworkType((value or "").strip().lower())
    except ValueError:
        raise MalformedInputError(f"Unsupported payment network: {value!r}")


def chain_kind(network: NetworkType) -> ChainKind:
    return NETWORK_KINDS[network]
