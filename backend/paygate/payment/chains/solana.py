"""
Solana (account-based) chain client for SPL USDC payments.

Instruction layouts are encoded and decoded by the pure functions at the top
of this module; the client class only adds RPC access through solana-py.

- Associated token account: PDA of [owner, token program, mint] under the
  associated-token-account program.
- CreateIdempotent (ATA program, data = [1]): creates the recipient's token
  account only if absent, so reissued builds stay valid.
- TransferChecked (token program, data = [12, amount u64 LE, decimals]):
  accounts [source, mint, destination, owner, reference (read-only)].
"""

import logging
from typing import List, Optional, Sequence, Tuple
from urllib.parse import urlencode

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from ..amounts import U64_MAX
from ..errors import ChainUnavailableError, MalformedInputError
from ..networks import ChainKind, NetworkConfig
from ..references import normalize_reference
from .base import ChainClient, Checkpoint, DecodedInstruction, DecodedTransaction

logger = logging.getLogger(__name__)

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

TRANSFER_TAG = 3
TRANSFER_CHECKED_TAG = 12
CREATE_IDEMPOTENT_TAG = 1


# --- Pure encode / decode ------------------------------------------------------------

def encode_u64_le(value: int) -> bytes:
    if not 0 <= value <= U64_MAX:
        raise MalformedInputError(f"Value {value} does not fit in u64")
    return value.to_bytes(8, "little")


def encode_transfer_checked_data(amount: int, decimals: int) -> bytes:
    if not 0 <= decimals <= 255:
        raise MalformedInputError(f"Invalid token decimals: {decimals}")
    return bytes([TRANSFER_CHECKED_TAG]) + encode_u64_le(amount) + bytes([decimals])


def decode_transfer_checked_data(data: bytes) -> Tuple[int, int]:
    """Return (amount, decimals) from TransferChecked instruction data."""
    if len(data) != 10 or data[0] != TRANSFER_CHECKED_TAG:
        raise ValueError("Not a TransferChecked instruction")
    return int.from_bytes(data[1:9], "little"), data[9]


def decode_transfer_data(data: bytes) -> int:
    if len(data) != 9 or data[0] != TRANSFER_TAG:
        raise ValueError("Not a Transfer instruction")
    return int.from_bytes(data[1:9], "little")


def find_associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    address, _bump = Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


def create_idempotent_ata_instruction(
    funder: Pubkey, holding: Pubkey, owner: Pubkey, mint: Pubkey
) -> Instruction:
    accounts = [
        AccountMeta(funder, True, True),
        AccountMeta(holding, False, True),
        AccountMeta(owner, False, False),
        AccountMeta(mint, False, False),
        AccountMeta(SYSTEM_PROGRAM_ID, False, False),
        AccountMeta(TOKEN_PROGRAM_ID, False, False),
    ]
    return Instruction(ASSOCIATED_TOKEN_PROGRAM_ID, bytes([CREATE_IDEMPOTENT_TAG]), accounts)


def transfer_checked_instruction(
    source: Pubkey,
    mint: Pubkey,
    destination: Pubkey,
    owner: Pubkey,
    amount: int,
    decimals: int,
    reference: Optional[Pubkey] = None,
) -> Instruction:
    accounts = [
        AccountMeta(source, False, True),
        AccountMeta(mint, False, False),
        AccountMeta(destination, False, True),
        AccountMeta(owner, True, False),
    ]
    if reference is not None:
        # Observer only: neither signer nor writable
        accounts.append(AccountMeta(reference, False, False))
    return Instruction(TOKEN_PROGRAM_ID, encode_transfer_checked_data(amount, decimals), accounts)


def decode_instruction(program: Pubkey, accounts: Sequence[Pubkey], data: bytes) -> DecodedInstruction:
    """Decode one instruction given its resolved program id and account list."""
    program_text = str(program)
    if program == TOKEN_PROGRAM_ID and data:
        if data[0] == TRANSFER_CHECKED_TAG and len(accounts) >= 4:
            try:
                amount, _decimals = decode_transfer_checked_data(data)
            except ValueError:
                return DecodedInstruction(program=program_text, kind="unknown")
            return DecodedInstruction(
                program=program_text,
                kind="transfer_checked",
                source=str(accounts[0]),
                destination=str(accounts[2]),
                amount=amount,
                token=str(accounts[1]),
                observers=tuple(str(a) for a in accounts[4:]),
            )
        if data[0] == TRANSFER_TAG and len(accounts) >= 3:
            try:
                amount = decode_transfer_data(data)
            except ValueError:
                return DecodedInstruction(program=program_text, kind="unknown")
            return DecodedInstruction(
                program=program_text,
                kind="transfer",
                source=str(accounts[0]),
                destination=str(accounts[1]),
                amount=amount,
                observers=tuple(str(a) for a in accounts[3:]),
            )
    if program == ASSOCIATED_TOKEN_PROGRAM_ID and data == bytes([CREATE_IDEMPOTENT_TAG]) and len(accounts) >= 4:
        return DecodedInstruction(
            program=program_text,
            kind="create_idempotent",
            destination=str(accounts[1]),
            token=str(accounts[3]),
        )
    return DecodedInstruction(program=program_text, kind="unknown")


def decode_message_instructions(message, loaded_addresses=None) -> List[DecodedInstruction]:
    """Decode every compiled instruction of a legacy or v0 message.

    For v0 messages ``loaded_addresses`` (from the transaction meta) supplies
    the accounts pulled in through address lookup tables, which follow the
    static keys as writable then read-only.
    """
    keys = list(message.account_keys)
    if loaded_addresses is not None:
        keys += list(loaded_addresses.writable) + list(loaded_addresses.readonly)
    decoded = []
    for ix in message.instructions:
        try:
            program = keys[ix.program_id_index]
            accounts = [keys[i] for i in bytes(ix.accounts)]
        except IndexError:
            # Lookup table accounts the node did not report
            decoded.append(DecodedInstruction(program="", kind="unresolved"))
            continue
        decoded.append(decode_instruction(program, accounts, bytes(ix.data)))
    return decoded


def payment_request_url(
    recipient: str,
    amount: str,
    mint: str,
    reference: str,
    label: Optional[str] = None,
    message: Optional[str] = None,
) -> str:
    """Solana Pay transfer request URL for wallets that scan a QR code."""
    params = {"amount": amount, "spl-token": mint, "reference": reference}
    if label:
        params["label"] = label
    if message:
        params["message"] = message
    return f"solana:{recipient}?{urlencode(params)}"


def _pubkey(value: str, what: str) -> Pubkey:
    try:
        return Pubkey.from_string((value or "").strip())
    except ValueError:
        raise MalformedInputError(f"Invalid {what}: {value!r}")


# --- Client ---------------------------------------------------------------------------

class SolanaChainClient(ChainClient):
    """Solana SPL-token client backed by a JSON-RPC node."""

    kind = ChainKind.ACCOUNT
    max_base_units = U64_MAX

    def __init__(self, config: NetworkConfig, rpc: Optional[Client] = None, timeout: int = 10):
        """
        Args:
            config: Network description (merchant, USDC mint, RPC URL)
            rpc: Optional pre-built solana-py client (tests inject a fake)
            timeout: RPC timeout in seconds
        """
        super().__init__(config)
        self.rpc = rpc or Client(config.rpc_urls[0], commitment=Confirmed, timeout=timeout)
        self.mint = _pubkey(config.token.address, "token mint")

    def _call(self, method: str, *args, **kwargs):
        logger.debug(f"Solana RPC {method} {args}")
        try:
            resp = getattr(self.rpc, method)(*args, **kwargs)
        except (SolanaRpcException, RPCException, httpx.HTTPError) as e:
            logger.warning(f"Solana RPC {method} failed: {e}")
            raise ChainUnavailableError(f"Solana RPC unavailable: {e}") from e
        if not hasattr(resp, "value"):
            raise ChainUnavailableError(f"Solana RPC {method} returned an error: {resp}")
        return resp.value

    def validate_address(self, address: str) -> str:
        return str(_pubkey(address, "address"))

    def validate_reference(self, reference: str) -> str:
        return normalize_reference(self.kind, reference)

    def derive_holding_account(self, owner: str, token: str) -> str:
        return str(find_associated_token_address(_pubkey(owner, "owner"), _pubkey(token, "token mint")))

    def latest_checkpoint(self, payer: str) -> Checkpoint:
        value = self._call("get_latest_blockhash")
        return Checkpoint(value=str(value.blockhash), height=value.last_valid_block_height)

    def create_holding_account_instruction(self, funder: str, owner: str, holding: str) -> Instruction:
        return create_idempotent_ata_instruction(
            _pubkey(funder, "payer"), _pubkey(holding, "token account"), _pubkey(owner, "owner"), self.mint
        )

    def transfer_instruction(
        self,
        source_holding: str,
        destination_holding: str,
        owner: str,
        base_units: int,
        reference: str,
    ) -> Instruction:
        return transfer_checked_instruction(
            source=_pubkey(source_holding, "source token account"),
            mint=self.mint,
            destination=_pubkey(destination_holding, "destination token account"),
            owner=_pubkey(owner, "owner"),
            amount=base_units,
            decimals=self.token.decimals,
            reference=_pubkey(reference, "reference"),
        )

    def serialize_unsigned(self, payer: str, instructions: Sequence[Instruction], checkpoint: Checkpoint) -> bytes:
        message = Message.new_with_blockhash(
            list(instructions), _pubkey(payer, "payer"), Hash.from_string(checkpoint.value)
        )
        # Signature slots are zero-filled; the wallet signs client-side
        return bytes(Transaction.new_unsigned(message))

    def fetch_latest_activity(self, reference: str) -> Optional[str]:
        signatures = self._call("get_signatures_for_address", _pubkey(reference, "reference"), limit=1)
        if not signatures:
            return None
        return str(signatures[0].signature)

    def fetch_and_decode(self, transaction_id: str) -> Optional[DecodedTransaction]:
        try:
            signature = Signature.from_string(transaction_id)
        except ValueError:
            raise MalformedInputError(f"Invalid transaction signature: {transaction_id!r}")
        value = self._call(
            "get_transaction", signature, encoding="base64", max_supported_transaction_version=0
        )
        if value is None:
            return None
        meta = value.transaction.meta
        succeeded = meta is not None and meta.err is None
        message = value.transaction.transaction.message
        return DecodedTransaction(
            transaction_id=transaction_id,
            succeeded=succeeded,
            instructions=decode_message_instructions(message, getattr(meta, "loaded_addresses", None)),
        )
