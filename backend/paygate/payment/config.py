"""
Configuration for the payment engine.

Loads and validates environment variables for every supported network, the
prices of the paid actions, polling limits, admin credentials and storage.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .networks import (
    APTOS_USDC_COIN_TYPE,
    EVM_CHAIN_IDS,
    EVM_USDC_CONTRACTS,
    SOLANA_USDC_MINT,
    SUI_USDC_COIN_TYPE,
    USDC_DECIMALS,
    ChainKind,
    NetworkConfig,
    NetworkType,
    TokenConfig,
    lookback_blocks,
)


class PaymentConfig(BaseSettings):
    """Payment engine configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Solana
    solana_rpc_url: str = "https://api.mainnet-beta.solana.com"
    solana_merchant_address: str = ""
    solana_usdc_mint: str = SOLANA_USDC_MINT

    # EVM chains share one merchant address
    ethereum_rpc_url: str = "https://eth.llamarpc.com"
    arbitrum_rpc_url: str = "https://arb1.arbitrum.io/rpc"
    base_rpc_url: str = "https://mainnet.base.org"
    evm_merchant_address: str = Field(
        default="",
        validation_alias=AliasChoices("evm_merchant_address", "base_merchant_address"),
    )
    # Transfer log scan window, converted to blocks with each chain's block time.
    # A per-chain block count overrides the duration.
    evm_log_lookback_seconds: int = 1800
    ethereum_log_lookback_blocks: Optional[int] = None
    arbitrum_log_lookback_blocks: Optional[int] = None
    base_log_lookback_blocks: Optional[int] = None

    # Networks without on-chain verification
    aptos_merchant_address: str = ""
    sui_merchant_address: str = ""

    usdc_decimals: int = USDC_DECIMALS
    rpc_timeout_seconds: int = 10

    # Prices (human USDC units) and lifetimes
    listing_price_usdc: Decimal = Decimal("1")
    subscription_price_usdc: Decimal = Decimal("1")
    listing_days_per_month: int = 30
    subscription_days: int = 365

    # Server-side confirmation polling: 150 x 2s = 5 minutes
    payment_poll_interval_seconds: float = 2.0
    payment_poll_max_attempts: int = 150

    # A PENDING admission claim lapses after this long; keep it above the poll window
    admission_lease_seconds: int = 900

    # Promo bootstrap, seeded once at startup
    promo_code: str = ""
    promo_max_uses: int = 0

    # Admin
    admin_username: str = "admin"
    admin_password: str = ""
    admin_token: str = ""

    # Storage: empty URI keeps everything in process
    mongodb_uri: str = ""
    mongodb_db_name: str = "paygate"

    log_level: str = "INFO"

    def _merchant_for(self, network: NetworkType) -> str:
        if network is NetworkType.SOLANA:
            return self.solana_merchant_address
        if network is NetworkType.APTOS:
            return self.aptos_merchant_address
        if network is NetworkType.SUI:
            return self.sui_merchant_address
        return self.evm_merchant_address

    def lookback_blocks_for(self, network: NetworkType) -> int:
        override = getattr(self, f"{network.value}_log_lookback_blocks", None)
        if override:
            return override
        return lookback_blocks(network, self.evm_log_lookback_seconds)

    def network_config(self, network: NetworkType) -> NetworkConfig:
        """Assemble the static description of one network."""
        merchant = self._merchant_for(network).strip()
        if network is NetworkType.SOLANA:
            return NetworkConfig(
                network=network,
                kind=ChainKind.ACCOUNT,
                merchant=merchant,
                token=TokenConfig("USDC", self.solana_usdc_mint, self.usdc_decimals),
                rpc_urls=[self.solana_rpc_url],
            )
        if network in EVM_CHAIN_IDS:
            rpc_url = getattr(self, f"{network.value}_rpc_url")
            return NetworkConfig(
                network=network,
                kind=ChainKind.EVM,
                merchant=merchant,
                token=TokenConfig("USDC", EVM_USDC_CONTRACTS[network], self.usdc_decimals),
                rpc_urls=[rpc_url],
                chain_id=EVM_CHAIN_IDS[network],
                lookback_blocks=self.lookback_blocks_for(network),
            )
        coin_type = APTOS_USDC_COIN_TYPE if network is NetworkType.APTOS else SUI_USDC_COIN_TYPE
        return NetworkConfig(
            network=network,
            kind=ChainKind.UNVERIFIED,
            merchant=merchant,
            token=TokenConfig("USDC", coin_type, self.usdc_decimals),
        )

    def network_configs(self) -> Dict[NetworkType, NetworkConfig]:
        """Configs for every network that has a merchant address."""
        configs = {}
        for network in NetworkType:
            cfg = self.network_config(network)
            if cfg.merchant:
                configs[network] = cfg
        return configs

    def validate_networks(self) -> List[str]:
        """Return human-readable problems with the network configuration.

        An empty list means every network is usable. Networks listed here are
        refused at request time rather than failing the whole service.
        """
        problems = []
        for network in NetworkType:
            cfg = self.network_config(network)
            if not cfg.merchant:
                problems.append(f"{network.value}: merchant address is not configured")
                continue
            if cfg.kind is ChainKind.EVM and (
                not cfg.merchant.startswith("0x") or len(cfg.merchant) != 42
            ):
                problems.append(
                    f"{network.value}: merchant must be a valid EVM address, got {cfg.merchant}"
                )
            if cfg.kind is not ChainKind.UNVERIFIED and not cfg.rpc_urls[0]:
                problems.append(f"{network.value}: RPC URL is required")
        return problems


@lru_cache
def get_payment_config() -> PaymentConfig:
    return PaymentConfig()
