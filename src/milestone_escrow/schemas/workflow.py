"""Pydantic schemas for gates, gated actions, the audit feed and health."""

from __future__ import annotations

import uuid  # noqa: TC003 - needed at runtime by pydantic
from datetime import datetime  # noqa: TC003 - needed at runtime by pydantic

from pydantic import BaseModel, ConfigDict, Field


class BlockingReasonResponse(BaseModel):
    type: str
    message: str


class PreconditionResponse(BaseModel):
    """Result of one gate evaluation. Computed fresh on every call."""

    allowed: bool
    blocking_reasons: list[BlockingReasonResponse] = Field(default_factory=list)


class ReleaseStatusResponse(BaseModel):
    transaction_id: uuid.UUID
    status: str
    version: int
    verification_complete: bool
    allowed_events: list[str]
    release_gate: PreconditionResponse


class SubmitPermitRequest(BaseModel):
    jurisdiction: str | None = Field(default=None, max_length=200)
    notes: str | None = Field(default=None, max_length=5000)


class PermitResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    project_id: uuid.UUID
    jurisdiction: str | None
    notes: str | None
    status: str
    submitted_by: str
    submitted_at: datetime


class SubmitReviewRequest(BaseModel):
    # Range is enforced by the service so it maps to VALIDATION_ERROR.
    rating: int
    comment: str | None = Field(default=None, max_length=5000)


class ReviewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    project_id: uuid.UUID
    reviewer_id: str
    rating: int
    comment: str | None
    created_at: datetime


class AuditEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    actor_id: str
    action: str
    resource_type: str
    resource_id: str
    detail: dict | None
    created_at: datetime


class HealthResponse(BaseModel):
    """Liveness plus the two dependencies a release needs: the database and payouts."""

    status: str = "ok"
    version: str
    database: str
    payments: str = Field(description="\"stripe\" or \"simulated\"")
