"""Audit trail routes.

Routes:
    GET    /api/v1/audit                                    Feed, newest first
    GET    /api/v1/audit/{resource_type}/{resource_id}      Events for one resource
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - FastAPI resolves query types at runtime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002 - used by Depends

from milestone_escrow.api.deps import get_db_session
from milestone_escrow.domain.enums import ResourceType
from milestone_escrow.schemas.workflow import AuditEventResponse
from milestone_escrow.services.audit_trail import MAX_FEED_LIMIT, AuditTrail

router = APIRouter(prefix="/api/v1/audit", tags=["Audit"])


@router.get("", response_model=list[AuditEventResponse], summary="Audit feed")
async def audit_feed(
    limit: int = Query(default=50, ge=1, le=MAX_FEED_LIMIT),
    after: datetime | None = Query(default=None, description="Only events created after this"),
    session: AsyncSession = Depends(get_db_session),
) -> list[AuditEventResponse]:
    events = await AuditTrail(session).feed(limit=limit, after=after)
    return [AuditEventResponse.model_validate(e) for e in events]


@router.get(
    "/{resource_type}/{resource_id}",
    response_model=list[AuditEventResponse],
    summary="Audit events for one resource",
)
async def resource_events(
    resource_type: ResourceType,
    resource_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> list[AuditEventResponse]:
    events = await AuditTrail(session).list_events(resource_type, resource_id)
    return [AuditEventResponse.model_validate(e) for e in events]
