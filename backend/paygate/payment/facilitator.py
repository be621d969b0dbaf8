"""
Facilitator Service for multi-chain USDC payments.

Owns one chain client per configured network and routes build / verify
requests to the right one. The network tag is parsed into the closed
``NetworkType`` set before any client is touched.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .amounts import Amount, from_base_units, to_base_units
from .builder import TransactionBuilder, TransferDescriptor, UnsignedTransfer
from .chains import ChainClient, create_chain_client
from .chains.providers import RPCProviderError
from .chains.solana import payment_request_url
from .config import PaymentConfig
from .errors import MalformedInputError
from .networks import ChainKind, NetworkType, parse_network
from .references import new_reference
from .verifier import PaymentVerifier, VerificationOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentReference:
    network: NetworkType
    reference: str
    payment_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body = {"network": self.network.value, "reference": self.reference}
        if self.payment_url:
            body["payment_url"] = self.payment_url
        return body


class FacilitatorService:
    """Main payment facilitator service supporting multiple networks."""

    def __init__(
        self,
        clients: Dict[NetworkType, ChainClient],
        builder: Optional[TransactionBuilder] = None,
        verifier: Optional[PaymentVerifier] = None,
    ):
        """
        Args:
            clients: One chain client per configured network
            builder: Transaction builder (defaults to a fresh one)
            verifier: Payment verifier (defaults to a fresh one)
        """
        self.clients = dict(clients)
        self.builder = builder or TransactionBuilder()
        self.verifier = verifier or PaymentVerifier()

    @classmethod
    def from_config(cls, config: PaymentConfig) -> "FacilitatorService":
        """Build clients for every network whose configuration is complete."""
        problems = config.validate_networks()
        for problem in problems:
            logger.warning(f"Payment network disabled: {problem}")
        broken = {problem.split(":", 1)[0] for problem in problems}

        clients = {}
        for network, cfg in config.network_configs().items():
            if network.value in broken:
                continue
            try:
                clients[network] = create_chain_client(cfg, config)
            except RPCProviderError as e:
                logger.warning(f"Payment network disabled: {network.value}: {e}")
        logger.info(f"Payment networks enabled: {', '.join(n.value for n in clients) or 'none'}")
        return cls(clients)

    def client_for(self, network) -> ChainClient:
        """Resolve a network tag (string or ``NetworkType``) to its client.

        Raises:
            MalformedInputError: unknown or unconfigured network
        """
        if not isinstance(network, NetworkType):
            network = parse_network(network)
        client = self.clients.get(network)
        if client is None:
            raise MalformedInputError(f"Payment network not configured: {network.value}")
        return client

    def new_reference(self, network, amount: Optional[Amount] = None, label: Optional[str] = None) -> PaymentReference:
        """Fresh reference for one payment attempt.

        On account chains, passing ``amount`` also yields a Solana Pay URL the
        payer's wallet can open directly.
        """
        client = self.client_for(network)
        reference = new_reference(client.kind)
        payment_url = None
        if client.kind is ChainKind.ACCOUNT and amount is not None:
            base_units = self.expected_base_amount(client, amount)
            payment_url = payment_request_url(
                client.config.merchant,
                amount=format(from_base_units(base_units, client.token.decimals).normalize(), "f"),
                mint=client.token.address,
                reference=reference,
                label=label,
            )
        logger.debug(f"New {client.network.value} reference {reference}")
        return PaymentReference(client.network, reference, payment_url)

    def build_transfer(
        self,
        network,
        payer: str,
        amount: Amount,
        reference: str,
        recipient: Optional[str] = None,
    ) -> UnsignedTransfer:
        """Build an unsigned USDC transfer; recipient defaults to the merchant."""
        client = self.client_for(network)
        descriptor = TransferDescriptor(
            payer=payer,
            recipient=recipient or client.config.merchant,
            amount=amount,
            reference=reference,
        )
        return self.builder.build_transfer(client, descriptor)

    def expected_destination(self, client: ChainClient) -> str:
        """The merchant's holding account for the network's token."""
        return client.derive_holding_account(client.config.merchant, client.token.address)

    def expected_base_amount(self, client: ChainClient, amount: Amount) -> int:
        return to_base_units(amount, client.token.decimals, client.max_base_units)

    def verify_payment(self, network, reference: str, amount: Amount) -> VerificationOutcome:
        """Check whether ``reference`` paid exactly ``amount`` USDC to the merchant.

        Raises:
            MalformedInputError: bad network, reference or amount
            ChainUnavailableError: RPC fault (retryable)
        """
        client = self.client_for(network)
        expected_amount = self.expected_base_amount(client, amount)
        destination = self.expected_destination(client) if client.verifiable else client.config.merchant
        return self.verifier.verify(client, reference, destination, expected_amount)

    def normalize_reference(self, network, reference: str) -> str:
        return self.client_for(network).validate_reference(reference)

    def endpoint_status(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """RPC endpoint health per network, for networks that keep a pool."""
        statuses = {}
        for network, client in self.clients.items():
            status = client.endpoint_status()
            if status:
                statuses[network.value] = status
        return statuses

    def merchant_addresses(self) -> Dict[str, str]:
        return {network.value: client.config.merchant for network, client in self.clients.items()}

    def get_supported_networks(self) -> Dict[str, List[Dict[str, Any]]]:
        """Get information about supported networks and assets."""
        networks = []
        for network, client in self.clients.items():
            networks.append(
                {
                    "network": network.value,
                    "kind": client.kind.value,
                    "verifiable": client.verifiable,
                    "chain_id": client.config.chain_id,
                    "asset": client.token.symbol,
                    "token": client.token.address,
                    "decimals": client.token.decimals,
                    "pay_to": client.config.merchant,
                }
            )
        return {"supported_networks": networks}

