"""
Chain clients, one per chain kind.

- SolanaChainClient: SPL token transfers on Solana
- EvmChainClient: ERC-20 transfers on Ethereum, Arbitrum and Base
- UnverifiedChainClient: networks whose payments cannot be verified
"""

from typing import Dict, Optional

from ..config import PaymentConfig
from ..networks import ChainKind, NetworkConfig, NetworkType
from .base import ChainClient, Checkpoint, DecodedInstruction, DecodedTransaction
from .evm import EvmChainClient
from .solana import SolanaChainClient
from .unverified import UnverifiedChainClient


def create_chain_client(config: NetworkConfig, payment_config: Optional[PaymentConfig] = None) -> ChainClient:
    """Factory: the client implementation is fixed by the network's chain kind."""
    payment_config = payment_config or PaymentConfig()
    if config.kind is ChainKind.ACCOUNT:
        return SolanaChainClient(config, timeout=payment_config.rpc_timeout_seconds)
    if config.kind is ChainKind.EVM:
        return EvmChainClient(config, timeout=payment_config.rpc_timeout_seconds)
    return UnverifiedChainClient(config)


def create_chain_clients(payment_config: PaymentConfig) -> Dict[NetworkType, ChainClient]:
    return {
        network: create_chain_client(cfg, payment_config)
        for network, cfg in payment_config.network_configs().items()
    }


__all__ = [
    "ChainClient",
    "Checkpoint",
    "DecodedInstruction",
    "DecodedTransaction",
    "EvmChainClient",
    "SolanaChainClient",
    "UnverifiedChainClient",
    "create_chain_client",
    "create_chain_clients",
]
