"""Health endpoint for container health checks and the load balancer.

Always answers 200. "degraded" plus the database field names the failing
dependency; payments reports whether payouts go to Stripe or the simulator.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError

from milestone_escrow.api.deps import get_app_settings
from milestone_escrow.config import Settings  # noqa: TC001 - used by Depends
from milestone_escrow.infrastructure.database.engine import check_connection
from milestone_escrow.logging_config import get_logger
from milestone_escrow.schemas.workflow import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)

SERVICE_VERSION = "0.1.0"


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health_check(settings: Settings = Depends(get_app_settings)) -> HealthResponse:
    database = "healthy"
    try:
        await check_connection()
    except (SQLAlchemyError, OSError) as exc:
        database = f"unhealthy: {exc}"
        logger.error("health.database_unreachable", error=str(exc))

    return HealthResponse(
        status="ok" if database == "healthy" else "degraded",
        version=SERVICE_VERSION,
        database=database,
        payments="stripe" if settings.stripe_enabled else "simulated",
    )
