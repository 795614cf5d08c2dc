"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
the calling actor, the payment provider, and configuration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002

from milestone_escrow.config import Settings, get_settings
from milestone_escrow.domain.enums import UserRole
from milestone_escrow.domain.exceptions import ValidationError
from milestone_escrow.domain.identity import Actor
from milestone_escrow.infrastructure.database.engine import get_async_session
from milestone_escrow.services.payment_service import build_payment_provider

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from milestone_escrow.domain.payment_protocol import PaymentProvider


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


async def get_current_actor(
    x_user_id: str = Header(..., min_length=1, max_length=64),
    x_user_role: str = Header(default=UserRole.HOMEOWNER.value),
) -> Actor:
    """Build the actor from headers set by the upstream auth gateway."""
    try:
        role = UserRole(x_user_role.upper())
    except ValueError as exc:
        raise ValidationError(f"Unknown role: {x_user_role}", field="X-User-Role") from exc
    return Actor(user_id=x_user_id, role=role)


async def get_payment_provider(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> PaymentProvider:
    """Stripe when configured, otherwise the process-wide simulator."""
    return build_payment_provider(session, settings, request.app.state.payment_provider)
