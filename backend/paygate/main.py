"""
Main FastAPI application entry point.

This module creates and configures the FastAPI application: it builds the
repositories, chain clients and services once, registers the routers and
exception handlers, and runs the daily expired-listing purge.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load environment variables from .env file
load_dotenv()

from paygate import __version__
from paygate.admission.gate import AdmissionGate
from paygate.admission.mongo import mongo_repositories
from paygate.admission.polling import PaymentPoller
from paygate.admission.promo import PromoAllowanceStore
from paygate.admission.repository import Repositories, in_memory_repositories
from paygate.admission.routes import router as promo_router
from paygate.auth import router as auth_router
from paygate.listings.routes import router as listings_router
from paygate.listings.service import ListingService
from paygate.payment.config import PaymentConfig, get_payment_config
from paygate.payment.errors import PaymentError
from paygate.payment.facilitator import FacilitatorService
from paygate.payment.routes import config_router, router as payment_router, tx_router
from paygate.subscriptions.routes import router as subscriptions_router
from paygate.subscriptions.service import SubscriptionService

logger = logging.getLogger(__name__)

# Configuration constants
DEFAULT_PORT = 8000
SERVICE_NAME = "paygate-api"
PURGE_INTERVAL_SECONDS = 24 * 60 * 60

ENV_PORT = "PORT"


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_repositories(config: PaymentConfig) -> Repositories:
    if config.mongodb_uri:
        return mongo_repositories(config.mongodb_uri, config.mongodb_db_name)
    logger.warning("MONGODB_URI not set: using in-process storage, data is lost on restart")
    return in_memory_repositories()


async def purge_expired_daily(listings: ListingService, interval_seconds: float = PURGE_INTERVAL_SECONDS) -> None:
    """Delete expired listings once per interval until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await listings.purge_expired()
        except Exception:
            logger.exception("Expired listing purge failed")


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": jsonable_errors(exc)},
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]


def create_app(
    config: Optional[PaymentConfig] = None,
    repositories: Optional[Repositories] = None,
    facilitator: Optional[FacilitatorService] = None,
    poller: Optional[PaymentPoller] = None,
    run_background_tasks: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Payment configuration (defaults to the environment)
        repositories: Storage (defaults to MongoDB, or in-process without MONGODB_URI)
        facilitator: Chain access (defaults to clients built from ``config``)
        poller: Confirmation poller (defaults to the configured interval/ceiling)
        run_background_tasks: Start the daily expired-listing purge
    """
    config = config or get_payment_config()
    repositories = repositories or build_repositories(config)
    facilitator = facilitator or FacilitatorService.from_config(config)
    poller = poller or PaymentPoller(config.payment_poll_interval_seconds, config.payment_poll_max_attempts)

    promos = PromoAllowanceStore(repositories.promos)
    lease_seconds = config.admission_lease_seconds
    poll_window = poller.interval_seconds * poller.max_attempts
    if lease_seconds <= poll_window:
        logger.warning(f"ADMISSION_LEASE_SECONDS={lease_seconds} does not outlast the {poll_window:.0f}s poll window")
    gate = AdmissionGate(
        facilitator, repositories.admissions, promos, poller, claim_lease=timedelta(seconds=lease_seconds)
    )
    listings = ListingService(repositories.listings, gate, config)
    subscriptions = SubscriptionService(repositories.subscriptions, gate, config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await repositories.ensure_indexes()
        if config.promo_code:
            seeded = await promos.seed(config.promo_code, config.promo_max_uses)
            if seeded is not None:
                logger.info(f"Promo {seeded.code} available with {seeded.remaining_uses} uses")

        purge_task = None
        if run_background_tasks:
            purge_task = asyncio.create_task(purge_expired_daily(listings))
        try:
            yield
        finally:
            if purge_task is not None:
                purge_task.cancel()
                try:
                    await purge_task
                except asyncio.CancelledError:
                    pass

    app = FastAPI(
        title="Paygate API",
        description="Listing marketplace with multi-chain USDC payment admission",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.repositories = repositories
    app.state.facilitator = facilitator
    app.state.promos = promos
    app.state.gate = gate
    app.state.listings = listings
    app.state.subscriptions = subscriptions

    app.add_exception_handler(PaymentError, payment_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check() -> JSONResponse:
        """Health check endpoint for monitoring and load balancers."""
        return JSONResponse(
            content={
                "status": "healthy",
                "service": SERVICE_NAME,
                "version": __version__,
                "networks": [n.value for n in facilitator.clients],
                "rpc": facilitator.endpoint_status(),
            }
        )

    app.include_router(payment_router)
    app.include_router(tx_router)
    app.include_router(config_router)
    app.include_router(listings_router)
    app.include_router(subscriptions_router)
    app.include_router(promo_router)
    app.include_router(auth_router)

    return app


def _create_default_app() -> FastAPI:
    config = get_payment_config()
    configure_logging(config.log_level)
    return create_app(config)


# Create the application instance
app = _create_default_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv(ENV_PORT, str(DEFAULT_PORT))))
