"""
Payment API Routes.

Endpoints for reference generation, unsigned transaction building, payment
verification and network support information.
"""

import asyncio
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..admission.gate import AdmissionGate
from ..deps import disconnect_event, get_config, get_facilitator, get_gate
from .config import PaymentConfig
from .errors import MalformedInputError
from .facilitator import FacilitatorService
from .networks import NetworkType

router = APIRouter(prefix="/api/payment", tags=["payment"])
tx_router = APIRouter(prefix="/api/tx", tags=["payment"])
config_router = APIRouter(prefix="/api/config", tags=["config"])

PURPOSES = ("listing", "subscription")


class ReferenceRequest(BaseModel):
    """Request body for reference generation."""
    network: str
    amount: Optional[Decimal] = None
    label: Optional[str] = None


class BuildTransactionRequest(BaseModel):
    """Request body for building an unsigned transfer."""
    payer: str
    recipient: Optional[str] = None
    amount: Decimal
    reference: str


class BuildTransactionResponse(BaseModel):
    transaction: str
    network: str
    reference: str
    base_units: str
    amount: str


class VerifyRequest(BaseModel):
    """Request body for payment verification."""
    network: str
    reference: str
    amount: Optional[Decimal] = None
    purpose: str = "listing"


class VerifyResponse(BaseModel):
    confirmed: bool
    status: str
    transaction_id: Optional[str] = None


class AwaitRequest(VerifyRequest):
    max_attempts: Optional[int] = Field(default=None, ge=1)


class AwaitResponse(VerifyResponse):
    attempts: int


def _price(config: PaymentConfig, purpose: str, amount: Optional[Decimal]) -> Decimal:
    if amount is not None:
        return amount
    if purpose not in PURPOSES:
        raise MalformedInputError(f"Unknown purpose: {purpose!r}")
    return config.subscription_price_usdc if purpose == "subscription" else config.listing_price_usdc


@router.post("/reference")
async def create_reference(
    request: ReferenceRequest,
    facilitator: FacilitatorService = Depends(get_facilitator),
):
    """Generate a fresh payment reference for one payment attempt."""
    return facilitator.new_reference(request.network, amount=request.amount, label=request.label).to_dict()


def _build(facilitator: FacilitatorService, network, request: BuildTransactionRequest) -> BuildTransactionResponse:
    unsigned = facilitator.build_transfer(
        network,
        payer=request.payer,
        amount=request.amount,
        reference=request.reference,
        recipient=request.recipient,
    )
    return BuildTransactionResponse(
        transaction=unsigned.transaction,
        network=unsigned.network.value,
        reference=unsigned.reference,
        base_units=str(unsigned.base_units),
        amount=str(unsigned.amount),
    )


# Plain def: building makes blocking RPC calls, FastAPI runs it in the threadpool
@tx_router.post("/usdc", response_model=BuildTransactionResponse)
def build_usdc_transaction(
    request: BuildTransactionRequest,
    facilitator: FacilitatorService = Depends(get_facilitator),
) -> BuildTransactionResponse:
    """Build an unsigned Solana USDC transfer."""
    return _build(facilitator, NetworkType.SOLANA, request)


@tx_router.post("/{network}", response_model=BuildTransactionResponse)
def build_transaction(
    network: str,
    request: BuildTransactionRequest,
    facilitator: FacilitatorService = Depends(get_facilitator),
) -> BuildTransactionResponse:
    """Build an unsigned USDC transfer on ``network``.

    Raises:
        MalformedInputError: bad payer/recipient/amount/reference (400)
        ChainUnavailableError: checkpoint fetch failed (500, retryable)
    """
    return _build(facilitator, network, request)


@router.get("/check/{network}/{reference}", response_model=VerifyResponse)
def check_payment(
    network: str,
    reference: str,
    facilitator: FacilitatorService = Depends(get_facilitator),
    config: PaymentConfig = Depends(get_config),
) -> VerifyResponse:
    """Has ``reference`` paid the listing price yet?"""
    outcome = facilitator.verify_payment(network, reference, config.listing_price_usdc)
    return VerifyResponse(**outcome.to_dict())


@router.post("/verify", response_model=VerifyResponse)
def verify_payment(
    request: VerifyRequest,
    facilitator: FacilitatorService = Depends(get_facilitator),
    config: PaymentConfig = Depends(get_config),
) -> VerifyResponse:
    outcome = facilitator.verify_payment(
        request.network, request.reference, _price(config, request.purpose, request.amount)
    )
    return VerifyResponse(**outcome.to_dict())


@router.post("/await", response_model=AwaitResponse)
async def await_payment(
    request: AwaitRequest,
    facilitator: FacilitatorService = Depends(get_facilitator),
    config: PaymentConfig = Depends(get_config),
    gate: AdmissionGate = Depends(get_gate),
    cancel_event: asyncio.Event = Depends(disconnect_event),
) -> AwaitResponse:
    """Poll the chain server-side until the payment confirms or the ceiling is hit.

    The wait ends early, as ``cancelled``, when the client disconnects.
    """
    amount = _price(config, request.purpose, request.amount)
    client = facilitator.client_for(request.network)
    reference = client.validate_reference(request.reference)
    result = await gate.poller.wait_for_confirmation(
        lambda: facilitator.verify_payment(client.network, reference, amount),
        cancel_event,
        max_attempts=request.max_attempts,
    )
    return AwaitResponse(
        confirmed=result.confirmed,
        status=result.status.value,
        transaction_id=result.outcome.transaction_id if result.outcome else None,
        attempts=result.attempts,
    )


@router.get("/networks")
async def get_supported_networks(facilitator: FacilitatorService = Depends(get_facilitator)):
    """Get list of supported payment networks and their configuration."""
    return facilitator.get_supported_networks()


@config_router.get("")
async def get_config_summary(config: PaymentConfig = Depends(get_config)):
    return {
        "recipient": config.evm_merchant_address,
        "listing_price_usdc": str(config.listing_price_usdc),
        "subscription_price_usdc": str(config.subscription_price_usdc),
    }


@config_router.get("/merchant-addresses")
async def get_merchant_addresses(facilitator: FacilitatorService = Depends(get_facilitator)):
    return facilitator.merchant_addresses()
