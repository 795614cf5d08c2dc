"""Audit Trail: append-only record of every completed workflow step.

Writes go into a SAVEPOINT of the caller's transaction, so a failed audit
insert rolls back only itself. The failure is logged and swallowed: the
primary state transition it describes still commits.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from milestone_escrow.infrastructure.database.repositories import AuditRepository
from milestone_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.domain.enums import AuditAction, ResourceType
    from milestone_escrow.infrastructure.database.orm_models import AuditEvent

logger = get_logger(__name__)

MAX_FEED_LIMIT = 500


class AuditTrail:
    """Best-effort writer and reader for audit_events."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._repo = AuditRepository(session)

    async def record(
        self,
        actor_id: str,
        action: AuditAction,
        resource_type: ResourceType,
        resource_id: object,
        detail: dict | None = None,
    ) -> AuditEvent | None:
        """Append one event. Returns None if the write failed."""
        try:
            async with self._session.begin_nested():
                evt = await self._repo.record(
                    actor_id=actor_id,
                    action=action.value,
                    resource_type=resource_type.value,
                    resource_id=str(resource_id),
                    detail=detail,
                )
        except SQLAlchemyError as exc:
            logger.error(
                "audit.write_failed",
                action=action.value,
                resource_type=resource_type.value,
                resource_id=str(resource_id),
                error=str(exc),
            )
            return None

        logger.debug("audit.recorded", action=action.value, resource_id=str(resource_id))
        return evt

    async def list_events(self, resource_type: ResourceType, resource_id: object) -> list[AuditEvent]:
        return await self._repo.list_for_resource(resource_type.value, str(resource_id))

    async def feed(self, limit: int = 50, after: datetime | None = None) -> list[AuditEvent]:
        """Most recent events first, capped at MAX_FEED_LIMIT."""
        return await self._repo.feed(limit=max(1, min(limit, MAX_FEED_LIMIT)), after=after)
