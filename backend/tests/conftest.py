import asyncio
from types import SimpleNamespace
from typing import Dict, Optional

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from web3 import Web3

from paygate.admission.gate import AdmissionGate
from paygate.admission.polling import PaymentPoller
from paygate.admission.promo import PromoAllowanceStore
from paygate.admission.repository import in_memory_repositories
from paygate.payment.amounts import UINT256_MAX
from paygate.payment.chains.base import ChainClient, Checkpoint, DecodedInstruction, DecodedTransaction
from paygate.payment.chains.solana import SolanaChainClient, find_associated_token_address, transfer_checked_instruction
from paygate.payment.chains.unverified import UnverifiedChainClient
from paygate.payment.config import PaymentConfig
from paygate.payment.errors import ChainUnavailableError, MalformedInputError
from paygate.payment.facilitator import FacilitatorService
from paygate.payment.networks import (
    SOLANA_USDC_MINT,
    ChainKind,
    NetworkConfig,
    NetworkType,
    TokenConfig,
)
from paygate.payment.references import normalize_reference

MERCHANT = "0x1111111111111111111111111111111111111111"
EVM_TOKEN = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"

SOLANA_MERCHANT = Keypair.from_seed(bytes([1] * 32)).pubkey()
PAYER_KEYPAIR = Keypair.from_seed(bytes([2] * 32))
SOLANA_PAYER = PAYER_KEYPAIR.pubkey()


def run(coro):
    return asyncio.run(coro)


def hex_reference(n: int) -> str:
    return "0x" + f"{n:064x}"


# --- Generic fake chain -----------------------------------------------------------------

class FakeChainClient(ChainClient):
    """In-memory ledger: references map to transaction ids, ids to decoded transactions."""

    kind = ChainKind.EVM
    max_base_units = UINT256_MAX

    def __init__(self, network: NetworkType = NetworkType.BASE, merchant: str = MERCHANT):
        super().__init__(
            NetworkConfig(
                network=network,
                kind=ChainKind.EVM,
                merchant=merchant,
                token=TokenConfig("USDC", EVM_TOKEN, 6),
                rpc_urls=["http://fake"],
                chain_id=8453,
            )
        )
        self.activity: Dict[str, str] = {}
        self.transactions: Dict[str, DecodedTransaction] = {}
        self.failures = 0
        self.fetch_calls = 0

    def pay(self, reference: str, amount: int, destination: str = MERCHANT, succeeded: bool = True,
            token: Optional[str] = EVM_TOKEN) -> str:
        txid = f"0x{len(self.transactions) + 1:064x}"
        self.activity[reference] = txid
        self.transactions[txid] = DecodedTransaction(
            transaction_id=txid,
            succeeded=succeeded,
            instructions=[
                DecodedInstruction(
                    program=EVM_TOKEN,
                    kind="transfer",
                    source="0x2222222222222222222222222222222222222222",
                    destination=destination,
                    amount=amount,
                    token=token,
                )
            ],
        )
        return txid

    def validate_address(self, address: str) -> str:
        if not Web3.is_address(address or ""):
            raise MalformedInputError(f"Invalid EVM address: {address!r}")
        return Web3.to_checksum_address(address)

    def validate_reference(self, reference: str) -> str:
        return normalize_reference(self.kind, reference)

    def derive_holding_account(self, owner: str, token: str) -> str:
        return self.validate_address(owner)

    def latest_checkpoint(self, payer: str) -> Checkpoint:
        return Checkpoint(value="0xcheckpoint", height=1)

    def create_holding_account_instruction(self, funder, owner, holding):
        return None

    def transfer_instruction(self, source_holding, destination_holding, owner, base_units, reference):
        return (destination_holding, base_units, reference)

    def serialize_unsigned(self, payer, instructions, checkpoint) -> bytes:
        return repr(instructions).encode()

    def fetch_latest_activity(self, reference: str) -> Optional[str]:
        self.fetch_calls += 1
        if self.failures:
            self.failures -= 1
            raise ChainUnavailableError("node unavailable")
        return self.activity.get(reference)

    def fetch_and_decode(self, transaction_id: str) -> Optional[DecodedTransaction]:
        return self.transactions.get(transaction_id)


# --- Fake Solana RPC --------------------------------------------------------------------

class FakeSolanaRpc:
    """Stands in for solana.rpc.api.Client; responses expose ``.value`` like solders responses."""

    def __init__(self):
        self.blockhash = Hash.default()
        self.signatures: Dict[str, str] = {}
        self.transactions: Dict[str, SimpleNamespace] = {}
        self.calls = []

    def get_latest_blockhash(self, *args, **kwargs):
        self.calls.append("get_latest_blockhash")
        return SimpleNamespace(value=SimpleNamespace(blockhash=self.blockhash, last_valid_block_height=1000))

    def get_signatures_for_address(self, address, limit=None, **kwargs):
        self.calls.append("get_signatures_for_address")
        signature = self.signatures.get(str(address))
        value = [SimpleNamespace(signature=Signature.from_string(signature))] if signature else []
        return SimpleNamespace(value=value)

    def get_transaction(self, signature, **kwargs):
        self.calls.append("get_transaction")
        return SimpleNamespace(value=self.transactions.get(str(signature)))

    def add_transfer(self, reference: str, amount: int, recipient: Pubkey = SOLANA_MERCHANT, err=None) -> str:
        """Record a confirmed TransferChecked of ``amount`` tagged with ``reference``."""
        mint = Pubkey.from_string(SOLANA_USDC_MINT)
        ix = transfer_checked_instruction(
            source=find_associated_token_address(SOLANA_PAYER, mint),
            mint=mint,
            destination=find_associated_token_address(recipient, mint),
            owner=SOLANA_PAYER,
            amount=amount,
            decimals=6,
            reference=Pubkey.from_string(reference),
        )
        message = Message.new_with_blockhash([ix], SOLANA_PAYER, self.blockhash)
        signature = str(PAYER_KEYPAIR.sign_message(reference.encode()))
        self.signatures[reference] = signature
        self.transactions[signature] = SimpleNamespace(
            transaction=SimpleNamespace(
                meta=SimpleNamespace(err=err),
                transaction=SimpleNamespace(message=message),
            )
        )
        return signature


def solana_config(merchant=SOLANA_MERCHANT) -> NetworkConfig:
    return NetworkConfig(
        network=NetworkType.SOLANA,
        kind=ChainKind.ACCOUNT,
        merchant=str(merchant),
        token=TokenConfig("USDC", SOLANA_USDC_MINT, 6),
        rpc_urls=["http://fake-solana"],
    )


def unverified_config(network=NetworkType.APTOS) -> NetworkConfig:
    return NetworkConfig(
        network=network,
        kind=ChainKind.UNVERIFIED,
        merchant="0xaptosmerchant",
        token=TokenConfig("USDC", "0x1::coin::USDC", 6),
    )


# --- Fixtures ---------------------------------------------------------------------------

@pytest.fixture
def fake_chain():
    return FakeChainClient()


@pytest.fixture
def solana_rpc():
    return FakeSolanaRpc()


@pytest.fixture
def solana_client(solana_rpc):
    return SolanaChainClient(solana_config(), rpc=solana_rpc)


@pytest.fixture
def facilitator(fake_chain):
    return FacilitatorService(
        {
            NetworkType.BASE: fake_chain,
            NetworkType.APTOS: UnverifiedChainClient(unverified_config()),
        }
    )


@pytest.fixture
def repositories():
    return in_memory_repositories()


@pytest.fixture
def promo_store(repositories):
    return PromoAllowanceStore(repositories.promos)


@pytest.fixture
def fast_poller():
    return PaymentPoller(interval_seconds=0.01, max_attempts=5)


@pytest.fixture
def gate(facilitator, repositories, promo_store, fast_poller):
    return AdmissionGate(facilitator, repositories.admissions, promo_store, fast_poller)


@pytest.fixture
def test_config():
    return PaymentConfig(
        _env_file=None,
        evm_merchant_address=MERCHANT,
        admin_username="admin",
        admin_password="secret",
        admin_token="admintoken",
        listing_price_usdc="1",
        subscription_price_usdc="1",
        payment_poll_interval_seconds=0.01,
        payment_poll_max_attempts=3,
    )
