"""FastAPI dependencies: services are built once in ``create_app`` and kept on app.state."""

import asyncio
import logging
from typing import AsyncIterator

from fastapi import Request

from .admission.gate import AdmissionGate
from .admission.promo import PromoAllowanceStore
from .listings.service import ListingService
from .payment.config import PaymentConfig
from .payment.facilitator import FacilitatorService
from .subscriptions.service import SubscriptionService

logger = logging.getLogger(__name__)

DISCONNECT_CHECK_SECONDS = 0.5


def get_config(request: Request) -> PaymentConfig:
    return request.app.state.config


def get_facilitator(request: Request) -> FacilitatorService:
    return request.app.state.facilitator


def get_gate(request: Request) -> AdmissionGate:
    return request.app.state.gate


def get_promo_store(request: Request) -> PromoAllowanceStore:
    return request.app.state.promos


def get_listing_service(request: Request) -> ListingService:
    return request.app.state.listings


def get_subscription_service(request: Request) -> SubscriptionService:
    return request.app.state.subscriptions


async def watch_disconnect(
    request: Request,
    cancel_event: asyncio.Event,
    interval: float = DISCONNECT_CHECK_SECONDS,
) -> None:
    """Set ``cancel_event`` once the client has gone away."""
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info(f"Client left {request.url.path}, cancelling the payment wait")
            cancel_event.set()
            return
        await asyncio.sleep(interval)


async def disconnect_event(request: Request) -> AsyncIterator[asyncio.Event]:
    """Cancel event for long server-side waits, set when the client disconnects."""
    cancel_event = asyncio.Event()
    watcher = asyncio.create_task(watch_disconnect(request, cancel_event))
    try:
        yield cancel_event
    finally:
        watcher.cancel()
        try:
            await watcher
        except asyncio.CancelledError:
            pass
