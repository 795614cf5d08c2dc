"""Permit and review routes behind their upstream gates.

Routes:
    GET    /api/v1/projects/{id}/permit-eligibility
    POST   /api/v1/projects/{id}/permits
    GET    /api/v1/projects/{id}/review-eligibility
    POST   /api/v1/projects/{id}/reviews
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter types at runtime

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002 - used by Depends

from milestone_escrow.api.deps import get_current_actor, get_db_session
from milestone_escrow.domain.identity import Actor  # noqa: TC001 - used by Depends
from milestone_escrow.schemas.workflow import (
    PermitResponse,
    PreconditionResponse,
    ReviewResponse,
    SubmitPermitRequest,
    SubmitReviewRequest,
)
from milestone_escrow.services.workflow_gates import WorkflowGateService

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])


@router.get("/{project_id}/permit-eligibility", response_model=PreconditionResponse)
async def get_permit_eligibility(
    project_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
) -> PreconditionResponse:
    result = await WorkflowGateService(session).permit_status(project_id)
    return PreconditionResponse.model_validate(result.to_dict())


@router.post("/{project_id}/permits", response_model=PermitResponse, status_code=201)
async def submit_permit(
    project_id: uuid.UUID,
    request: SubmitPermitRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
) -> PermitResponse:
    """Requires a signed contract, an approved design and a complete readiness checklist."""
    permit = await WorkflowGateService(session).submit_permit(
        project_id, actor, jurisdiction=request.jurisdiction, notes=request.notes
    )
    return PermitResponse.model_validate(permit)


@router.get("/{project_id}/review-eligibility", response_model=PreconditionResponse)
async def get_review_eligibility(
    project_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
) -> PreconditionResponse:
    result = await WorkflowGateService(session).review_status(project_id)
    return PreconditionResponse.model_validate(result.to_dict())


@router.post("/{project_id}/reviews", response_model=ReviewResponse, status_code=201)
async def submit_review(
    project_id: uuid.UUID,
    request: SubmitReviewRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
) -> ReviewResponse:
    """Requires closeout completed and the final payment released."""
    review = await WorkflowGateService(session).submit_review(
        project_id, actor, rating=request.rating, comment=request.comment
    )
    return ReviewResponse.model_validate(review)
