"""Workflow Gate Service: permit and review submission behind their gates.

The write paths call exactly the same evaluator checks that the advisory
status endpoints expose, so "allowed" on the status endpoint means the
submission will go through (unless upstream state moves in between).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from milestone_escrow.domain.enums import AuditAction, PermitStatus, ResourceType, UserRole
from milestone_escrow.domain.exceptions import ProjectNotFoundError, ValidationError
from milestone_escrow.domain.identity import Actor, ensure_can_act
from milestone_escrow.infrastructure.database.orm_models import PermitSubmission, ProjectReview
from milestone_escrow.infrastructure.database.repositories import (
    PermitRepository,
    ProjectReadRepository,
    ReviewRepository,
)
from milestone_escrow.logging_config import get_logger
from milestone_escrow.services.audit_trail import AuditTrail
from milestone_escrow.services.precondition_service import PreconditionEvaluator, ensure_allowed

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.domain.preconditions import PreconditionResult
    from milestone_escrow.infrastructure.database.orm_models import Project

logger = get_logger(__name__)

MIN_RATING = 1
MAX_RATING = 5


class WorkflowGateService:
    """Gated project actions that live outside the escrow tables."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._evaluator = PreconditionEvaluator(session)
        self._projects = ProjectReadRepository(session)
        self._permits = PermitRepository(session)
        self._reviews = ReviewRepository(session)
        self._audit = AuditTrail(session)

    async def permit_status(self, project_id: uuid.UUID) -> PreconditionResult:
        return await self._evaluator.can_submit_permit(project_id)

    async def review_status(self, project_id: uuid.UUID) -> PreconditionResult:
        return await self._evaluator.can_submit_review(project_id)

    async def submit_permit(
        self,
        project_id: uuid.UUID,
        actor: Actor,
        jurisdiction: str | None = None,
        notes: str | None = None,
    ) -> PermitSubmission:
        ensure_allowed(await self._evaluator.can_submit_permit(project_id), "Permit submission")
        project = await self._get_project_or_raise(project_id)
        ensure_can_act(
            actor,
            "submit permits",
            user_ids={project.owner_id},
            roles={UserRole.ADMIN, UserRole.PROJECT_MANAGER, UserRole.CONTRACTOR},
        )

        permit = await self._permits.create(
            PermitSubmission(
                project_id=project_id,
                jurisdiction=jurisdiction,
                notes=notes,
                status=PermitStatus.SUBMITTED.value,
                submitted_by=actor.user_id,
            )
        )
        await self._audit.record(
            actor.user_id,
            AuditAction.PERMIT_SUBMITTED,
            ResourceType.PERMIT_SUBMISSION,
            permit.id,
            {"project_id": str(project_id)},
        )
        logger.info("permit.submitted", project_id=str(project_id), permit_id=str(permit.id))
        return permit

    async def submit_review(
        self,
        project_id: uuid.UUID,
        actor: Actor,
        rating: int,
        comment: str | None = None,
    ) -> ProjectReview:
        if not MIN_RATING <= rating <= MAX_RATING:
            raise ValidationError(
                f"rating must be between {MIN_RATING} and {MAX_RATING}", field="rating"
            )
        ensure_allowed(await self._evaluator.can_submit_review(project_id), "Review submission")
        project = await self._get_project_or_raise(project_id)
        ensure_can_act(actor, "submit reviews", user_ids={project.owner_id})

        if await self._reviews.get_by_reviewer(project_id, actor.user_id) is not None:
            raise ValidationError("This project has already been reviewed by you", field="project_id")

        review = await self._reviews.create(
            ProjectReview(
                project_id=project_id,
                reviewer_id=actor.user_id,
                rating=rating,
                comment=comment,
            )
        )
        await self._audit.record(
            actor.user_id,
            AuditAction.REVIEW_SUBMITTED,
            ResourceType.PROJECT_REVIEW,
            review.id,
            {"project_id": str(project_id), "rating": rating},
        )
        logger.info("review.submitted", project_id=str(project_id), review_id=str(review.id))
        return review

    async def _get_project_or_raise(self, project_id: uuid.UUID) -> Project:
        project = await self._projects.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(str(project_id))
        return project
