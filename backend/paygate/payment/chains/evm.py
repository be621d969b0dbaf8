"""
EVM chain client for ERC-20 USDC payments (Ethereum, Arbitrum, Base).

The payment is a plain ``transfer(address,uint256)`` call with the 32-byte
reference appended after the ABI arguments. ERC-20 contracts ignore trailing
calldata, so the reference rides along without affecting the transfer and the
verifier can match it from the transaction input.

The unsigned transaction is the EIP-1559 signing payload
``0x02 || rlp([chainId, nonce, maxPriorityFeePerGas, maxFeePerGas, gas, to,
value, data, accessList])``.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

import requests
import rlp
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception

from ..amounts import UINT256_MAX
from ..errors import ChainUnavailableError, MalformedInputError
from ..networks import ChainKind, NetworkConfig
from ..references import normalize_reference
from .base import ChainClient, Checkpoint, DecodedInstruction, DecodedTransaction
from .gas import GasStrategy
from .providers import ProviderManager, RPCProviderError

logger = logging.getLogger(__name__)

# transfer(address,uint256)
TRANSFER_SELECTOR = bytes.fromhex("a9059cbb")
# Transfer(address indexed from, address indexed to, uint256 value)
TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
EIP1559_TX_TYPE = 0x02
DEFAULT_LOOKBACK_BLOCKS = 500


@dataclass(frozen=True)
class EvmCall:
    """A single contract call; an EVM transaction carries exactly one."""

    to: str
    data: bytes
    value: int = 0


# --- Pure encode / decode ------------------------------------------------------------

def _address_bytes(address: str) -> bytes:
    if not Web3.is_address(address):
        raise MalformedInputError(f"Invalid EVM address: {address!r}")
    return bytes.fromhex(Web3.to_checksum_address(address)[2:])


def address_topic(address: str) -> str:
    """Left-pad an address to a 32-byte log topic."""
    return "0x" + _address_bytes(address).rjust(32, b"\x00").hex()


def encode_transfer_calldata(recipient: str, amount: int, reference: Optional[bytes] = None) -> bytes:
    if not 0 <= amount <= UINT256_MAX:
        raise MalformedInputError(f"Amount {amount} does not fit in uint256")
    if reference is not None and len(reference) != 32:
        raise MalformedInputError("Reference must be 32 bytes")
    return (
        TRANSFER_SELECTOR
        + _address_bytes(recipient).rjust(32, b"\x00")
        + amount.to_bytes(32, "big")
        + (reference or b"")
    )


def decode_transfer_calldata(data: bytes) -> Tuple[str, int, Optional[bytes]]:
    """Return (recipient, amount, reference or None) from transfer calldata."""
    if len(data) < 68 or data[:4] != TRANSFER_SELECTOR:
        raise ValueError("Not an ERC20 transfer (invalid function selector)")
    if any(data[4:16]):
        raise ValueError("Malformed address argument")
    recipient = Web3.to_checksum_address("0x" + data[16:36].hex())
    amount = int.from_bytes(data[36:68], "big")
    reference = data[68:100] if len(data) >= 100 else None
    return recipient, amount, reference


def encode_unsigned_eip1559(
    chain_id: int,
    nonce: int,
    max_priority_fee_per_gas: int,
    max_fee_per_gas: int,
    gas_limit: int,
    to: str,
    value: int,
    data: bytes,
) -> bytes:
    fields = [
        chain_id,
        nonce,
        max_priority_fee_per_gas,
        max_fee_per_gas,
        gas_limit,
        _address_bytes(to),
        value,
        data,
        [],
    ]
    return bytes([EIP1559_TX_TYPE]) + rlp.encode(fields)


def decode_unsigned_eip1559(raw: bytes) -> Dict[str, Any]:
    if not raw or raw[0] != EIP1559_TX_TYPE:
        raise ValueError("Not an EIP-1559 transaction payload")
    fields = rlp.decode(raw[1:])
    if len(fields) != 9:
        raise ValueError(f"Expected 9 fields, got {len(fields)}")

    def as_int(item: bytes) -> int:
        return int.from_bytes(item, "big") if item else 0

    return {
        "chainId": as_int(fields[0]),
        "nonce": as_int(fields[1]),
        "maxPriorityFeePerGas": as_int(fields[2]),
        "maxFeePerGas": as_int(fields[3]),
        "gas": as_int(fields[4]),
        "to": Web3.to_checksum_address("0x" + fields[5].hex()),
        "value": as_int(fields[6]),
        "data": bytes(fields[7]),
        "accessList": list(fields[8]),
    }


def decode_call(tx: Dict[str, Any]) -> DecodedInstruction:
    """Decode a fetched transaction's single contract call."""
    to = tx.get("to")
    if not to:
        return DecodedInstruction(program="", kind="unknown")
    program = Web3.to_checksum_address(to)
    try:
        recipient, amount, reference = decode_transfer_calldata(bytes(tx.get("input") or b""))
    except ValueError:
        return DecodedInstruction(program=program, kind="unknown")
    return DecodedInstruction(
        program=program,
        kind="transfer",
        source=Web3.to_checksum_address(tx["from"]),
        destination=recipient,
        amount=amount,
        token=program,
        observers=(Web3.to_hex(reference),) if reference else (),
    )


# --- Client ---------------------------------------------------------------------------

_TRANSPORT_ERRORS = (requests.exceptions.RequestException, ConnectionError, TimeoutError)


class EvmChainClient(ChainClient):
    """ERC-20 client for one EVM network."""

    kind = ChainKind.EVM
    max_base_units = UINT256_MAX

    def __init__(
        self,
        config: NetworkConfig,
        providers: Optional[ProviderManager] = None,
        lookback_blocks: Optional[int] = None,
        timeout: int = 10,
    ):
        """
        Args:
            config: Network description (merchant, USDC contract, chain id, RPC URL)
            providers: Optional provider pool (tests inject a fake)
            lookback_blocks: Blocks to scan for reference-tagged transfers
                (defaults to the network config, then DEFAULT_LOOKBACK_BLOCKS)
            timeout: RPC timeout in seconds
        """
        # Decoded calls report checksummed addresses
        config = replace(config, token=replace(config.token, address=Web3.to_checksum_address(config.token.address)))
        super().__init__(config)
        self.providers = providers or ProviderManager(config.rpc_urls, config.chain_id, timeout=timeout)
        self.lookback_blocks = lookback_blocks or config.lookback_blocks or DEFAULT_LOOKBACK_BLOCKS
        self.token_address = config.token.address

    def endpoint_status(self) -> Dict[str, Dict[str, Any]]:
        return self.providers.get_status()

    def _rpc(self, description: str, fn: Callable[[Web3], Any]) -> Any:
        try:
            w3 = self.providers.get_web3()
        except RPCProviderError as e:
            raise ChainUnavailableError(f"{self.network.value} RPC unavailable: {e}") from e
        logger.debug(f"{self.network.value} RPC {description}")
        try:
            return fn(w3)
        except TransactionNotFound:
            return None
        except _TRANSPORT_ERRORS as e:
            self.providers.mark_endpoint_unhealthy(error=str(e))
            logger.warning(f"{self.network.value} RPC {description} failed: {e}")
            raise ChainUnavailableError(f"{self.network.value} RPC unavailable: {e}") from e
        except Web3Exception as e:
            logger.warning(f"{self.network.value} RPC {description} failed: {e}")
            raise ChainUnavailableError(f"{self.network.value} RPC error: {e}") from e

    def validate_address(self, address: str) -> str:
        text = (address or "").strip()
        if not Web3.is_address(text):
            raise MalformedInputError(f"Invalid EVM address: {address!r}")
        return Web3.to_checksum_address(text)

    def validate_reference(self, reference: str) -> str:
        return normalize_reference(self.kind, reference)

    def derive_holding_account(self, owner: str, token: str) -> str:
        # ERC-20 balances live in the token contract, keyed by the owner itself
        return self.validate_address(owner)

    def latest_checkpoint(self, payer: str) -> Checkpoint:
        def load(w3: Web3) -> Checkpoint:
            block = w3.eth.get_block("latest")
            nonce = w3.eth.get_transaction_count(payer, "pending")
            gas = GasStrategy(w3).calculate_gas_params(block)
            return Checkpoint(
                value=Web3.to_hex(block["hash"]),
                height=block["number"],
                extra={
                    "nonce": nonce,
                    "max_fee_per_gas": gas.max_fee_per_gas,
                    "max_priority_fee_per_gas": gas.max_priority_fee_per_gas,
                    "gas_limit": gas.gas_limit,
                },
            )

        checkpoint = self._rpc("latest_checkpoint", load)
        if checkpoint is None:
            raise ChainUnavailableError(f"{self.network.value} RPC returned no latest block")
        return checkpoint

    def create_holding_account_instruction(self, funder: str, owner: str, holding: str) -> None:
        return None

    def transfer_instruction(
        self,
        source_holding: str,
        destination_holding: str,
        owner: str,
        base_units: int,
        reference: str,
    ) -> EvmCall:
        reference_bytes = bytes.fromhex(self.validate_reference(reference)[2:])
        data = encode_transfer_calldata(destination_holding, base_units, reference_bytes)
        return EvmCall(to=self.token_address, data=data)

    def serialize_unsigned(self, payer: str, instructions: Sequence[EvmCall], checkpoint: Checkpoint) -> bytes:
        if len(instructions) != 1:
            raise ValueError(f"EVM transactions carry exactly one call, got {len(instructions)}")
        call = instructions[0]
        return encode_unsigned_eip1559(
            chain_id=self.config.chain_id,
            nonce=checkpoint.extra["nonce"],
            max_priority_fee_per_gas=checkpoint.extra["max_priority_fee_per_gas"],
            max_fee_per_gas=checkpoint.extra["max_fee_per_gas"],
            gas_limit=checkpoint.extra["gas_limit"],
            to=call.to,
            value=call.value,
            data=call.data,
        )

    def fetch_latest_activity(self, reference: str) -> Optional[str]:
        """Scan recent USDC transfers into the merchant for one tagged with ``reference``."""
        reference_bytes = bytes.fromhex(self.validate_reference(reference)[2:])
        merchant_topic = address_topic(self.config.merchant)

        def scan(w3: Web3) -> Optional[str]:
            latest = w3.eth.block_number
            logs = w3.eth.get_logs(
                {
                    "address": self.token_address,
                    "fromBlock": max(0, latest - self.lookback_blocks),
                    "toBlock": latest,
                    "topics": [TRANSFER_EVENT_TOPIC, None, merchant_topic],
                }
            )
            for log in reversed(logs):
                tx = w3.eth.get_transaction(log["transactionHash"])
                try:
                    _, _, tail = decode_transfer_calldata(bytes(tx.get("input") or b""))
                except ValueError:
                    continue
                if tail == reference_bytes:
                    return Web3.to_hex(log["transactionHash"])
            return None

        return self._rpc("fetch_latest_activity", scan)

    def fetch_and_decode(self, transaction_id: str) -> Optional[DecodedTransaction]:
        def load(w3: Web3):
            return w3.eth.get_transaction(transaction_id), w3.eth.get_transaction_receipt(transaction_id)

        loaded = self._rpc("fetch_and_decode", load)
        if loaded is None:
            return None
        tx, receipt = loaded
        return DecodedTransaction(
            transaction_id=transaction_id,
            succeeded=receipt.get("status") == 1,
            instructions=[decode_call(tx)],
        )
