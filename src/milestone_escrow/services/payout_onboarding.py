"""Payout Onboarding: give a payee a provider account they can be paid on.

The payee creates their account once, then completes the provider's hosted
onboarding through a one-time link. Whether payouts are enabled is learned
from the provider afterwards (account.updated events, or the refresh
StripePaymentProvider does on every payout-account lookup).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from milestone_escrow.config import get_settings
from milestone_escrow.domain.enums import AuditAction, ResourceType, UserRole
from milestone_escrow.domain.exceptions import PayoutAccountNotFoundError
from milestone_escrow.domain.identity import Actor, ensure_can_act
from milestone_escrow.infrastructure.database.repositories import PayoutAccountRepository
from milestone_escrow.logging_config import get_logger
from milestone_escrow.services.audit_trail import AuditTrail

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.domain.payment_protocol import PaymentProvider
    from milestone_escrow.infrastructure.database.orm_models import PayoutAccountRecord

logger = get_logger(__name__)


class PayoutOnboardingService:
    """Creates payee accounts and hosted onboarding links."""

    def __init__(self, session: AsyncSession, provider: PaymentProvider) -> None:
        self._accounts = PayoutAccountRepository(session)
        self._audit = AuditTrail(session)
        self._provider = provider

    async def create_account(self, actor: Actor, email: str | None = None) -> PayoutAccountRecord:
        """Open the actor's payout account. Calling it again returns the existing one."""
        ensure_can_act(actor, "create payout account", roles={UserRole.CONTRACTOR, UserRole.ADMIN})

        existing = await self._accounts.get(actor.user_id)
        if existing is not None:
            return existing

        account = await self._provider.create_payout_account(actor.user_id, email)
        record = await self._accounts.upsert(
            actor.user_id, account.account_id, account.payouts_enabled
        )
        await self._audit.record(
            actor.user_id,
            AuditAction.PAYOUT_ACCOUNT_CREATED,
            ResourceType.PAYOUT_ACCOUNT,
            actor.user_id,
            {"provider_account_id": account.account_id},
        )
        logger.info(
            "payout.account_created",
            user_id=actor.user_id,
            provider_account_id=account.account_id,
        )
        return record

    async def create_onboarding_link(
        self,
        actor: Actor,
        refresh_url: str | None = None,
        return_url: str | None = None,
    ) -> str:
        ensure_can_act(
            actor, "start payout onboarding", roles={UserRole.CONTRACTOR, UserRole.ADMIN}
        )
        record = await self.get_account(actor.user_id)

        base = get_settings().frontend_url.rstrip("/")
        return await self._provider.create_onboarding_link(
            record.provider_account_id,
            refresh_url=refresh_url or f"{base}/owner/escrow/refresh",
            return_url=return_url or f"{base}/owner/escrow/return",
        )

    async def get_account(self, user_id: str) -> PayoutAccountRecord:
        record = await self._accounts.get(user_id)
        if record is None:
            raise PayoutAccountNotFoundError(user_id)
        return record
