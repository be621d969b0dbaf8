"""
TransactionBuilder - composes unsigned token-transfer transactions.

Steps, for any chain client:
1. Validate payer, recipient, reference and amount (before any chain call)
2. Resolve the latest checkpoint (blockhash / nonce + fees)
3. Derive payer and recipient holding accounts
4. Emit the idempotent create-if-absent instruction for the recipient account
5. Emit the exact-amount transfer tagged with the reference
6. Serialize without signatures and base64-encode
"""

import base64
import logging
from dataclasses import dataclass
from decimal import Decimal

from .amounts import Amount, to_base_units
from .chains.base import ChainClient
from .errors import MalformedInputError
from .networks import NetworkType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferDescriptor:
    """What the payer wants to send, in human units."""

    payer: str
    recipient: str
    amount: Amount
    reference: str


@dataclass(frozen=True)
class UnsignedTransfer:
    network: NetworkType
    transaction: str  # base64 of the unsigned wire bytes
    base_units: int
    amount: Decimal
    reference: str
    checkpoint: str


class TransactionBuilder:
    """Builds unsigned transfers; the wallet signs and submits them."""

    def build_transfer(self, client: ChainClient, descriptor: TransferDescriptor) -> UnsignedTransfer:
        """
        Raises:
            MalformedInputError: bad address/amount/reference or unbuildable network
            ChainUnavailableError: checkpoint fetch failed (retryable)
        """
        if not client.verifiable:
            raise MalformedInputError(
                f"Transaction building is not supported on {client.network.value}"
            )

        payer = client.validate_address(descriptor.payer)
        recipient = client.validate_address(descriptor.recipient)
        reference = client.validate_reference(descriptor.reference)
        token = client.token
        base_units = to_base_units(descriptor.amount, token.decimals, client.max_base_units)

        checkpoint = client.latest_checkpoint(payer)

        recipient_holding = client.derive_holding_account(recipient, token.address)
        payer_holding = client.derive_holding_account(payer, token.address)

        instructions = []
        create_ix = client.create_holding_account_instruction(payer, recipient, recipient_holding)
        if create_ix is not None:
            instructions.append(create_ix)
        instructions.append(
            client.transfer_instruction(payer_holding, recipient_holding, payer, base_units, reference)
        )

        raw = client.serialize_unsigned(payer, instructions, checkpoint)
        logger.info(
            f"Built unsigned {client.network.value} transfer: {base_units} base units "
            f"{payer} -> {recipient} (reference {reference})"
        )
        return UnsignedTransfer(
            network=client.network,
            transaction=base64.b64encode(raw).decode("ascii"),
            base_units=base_units,
            amount=Decimal(base_units).scaleb(-token.decimals),
            reference=reference,
            checkpoint=checkpoint.value,
        )
