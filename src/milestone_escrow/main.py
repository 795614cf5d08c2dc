"""ASGI entry point for the milestone escrow service.

    uvicorn milestone_escrow.main:app --host 0.0.0.0 --port 8000

Startup configures logging and the database; shutdown disposes the engine.
The simulated payment provider lives on app.state for the whole process, so
a retried approval replays its original transfer instead of paying twice.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from milestone_escrow.api.middleware import setup_middleware
from milestone_escrow.api.routes import (
    audit,
    escrow,
    health,
    payouts,
    releases,
    webhooks,
    workflow,
)
from milestone_escrow.config import get_settings
from milestone_escrow.infrastructure.database.engine import close_db, init_db
from milestone_escrow.logging_config import get_logger, setup_logging
from milestone_escrow.services.payment_service import SimulatedPaymentProvider

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = get_logger(__name__)

API_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
        env=settings.app_env,
    )
    logger.info(
        "app.starting",
        version=API_VERSION,
        payments="stripe" if settings.stripe_enabled else "simulated",
        provider_timeout_s=settings.payment_provider_timeout_seconds,
    )
    if settings.stripe_enabled and settings.is_development:
        logger.warning("app.live_payouts_in_development")

    await init_db()
    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    await close_db()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Build the FastAPI app with middleware, routers and the payout simulator."""
    settings = get_settings()

    app = FastAPI(
        title="Milestone Escrow",
        description=(
            "Milestone-gated escrow for construction projects: "
            "receipts in, verified payouts out."
        ),
        version=API_VERSION,
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None,
    )
    app.state.payment_provider = SimulatedPaymentProvider()

    setup_middleware(app, settings)
    for module in (health, escrow, releases, payouts, workflow, audit, webhooks):
        app.include_router(module.router)

    return app


app = create_app()
