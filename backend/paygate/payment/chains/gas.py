"""
EIP-1559 fee parameters for unsigned ERC-20 transfers.

maxFeePerGas = baseFee * multiplier + priorityFee, with the tip clamped to
a sane range and a fixed gas limit for a plain token transfer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from web3 import Web3
from web3.exceptions import Web3Exception

logger = logging.getLogger(__name__)

# ERC-20 transfer plus trailing reference calldata
ERC20_TRANSFER_GAS_LIMIT = 65000

# Safety multiplier for base fee (tx stays valid if the base fee rises)
BASE_FEE_MULTIPLIER = 2

DEFAULT_PRIORITY_FEE_GWEI = Decimal("0.1")
MIN_PRIORITY_FEE_GWEI = Decimal("0.001")
MAX_PRIORITY_FEE_GWEI = Decimal("10")


@dataclass
class GasParams:
    """Gas parameters for EIP-1559 transactions."""

    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    gas_limit: int


class GasStrategy:
    """EIP-1559 fee estimation from the latest block."""

    def __init__(
        self,
        web3: Web3,
        base_fee_multiplier: int = BASE_FEE_MULTIPLIER,
        default_priority_fee_gwei: Decimal = DEFAULT_PRIORITY_FEE_GWEI,
    ) -> None:
        self.web3 = web3
        self.base_fee_multiplier = base_fee_multiplier
        self.default_priority_fee_gwei = default_priority_fee_gwei

    def get_base_fee(self, block) -> int:
        base_fee = block.get("baseFeePerGas")
        if base_fee is not None:
            return int(base_fee)
        # Pre-London chains: estimate from gas price
        gas_price = self.web3.eth.gas_price
        logger.warning(f"Block has no baseFeePerGas, estimating from gas_price={gas_price}")
        return int(gas_price) // 2

    def get_priority_fee(self) -> int:
        default_wei = int(self.web3.to_wei(self.default_priority_fee_gwei, "gwei"))
        try:
            max_priority_fee = self.web3.eth.max_priority_fee
        except (Web3Exception, ValueError) as e:
            logger.debug(f"Could not get maxPriorityFeePerGas, using default: {e}")
            return default_wei
        if max_priority_fee:
            gwei = Decimal(self.web3.from_wei(max_priority_fee, "gwei"))
            if MIN_PRIORITY_FEE_GWEI <= gwei <= MAX_PRIORITY_FEE_GWEI:
                return int(max_priority_fee)
        return default_wei

    def calculate_gas_params(self, block, gas_limit: int = ERC20_TRANSFER_GAS_LIMIT) -> GasParams:
        base_fee = self.get_base_fee(block)
        priority_fee = self.get_priority_fee()
        max_fee_per_gas = base_fee * self.base_fee_multiplier + priority_fee
        logger.debug(
            f"Gas params: baseFee={base_fee} wei, priorityFee={priority_fee} wei, "
            f"maxFeePerGas={max_fee_per_gas} wei, gasLimit={gas_limit}"
        )
        return GasParams(
            max_fee_per_gas=max_fee_per_gas,
            max_priority_fee_per_gas=priority_fee,
            gas_limit=gas_limit,
        )
