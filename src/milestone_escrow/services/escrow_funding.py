"""Escrow Funding: take the payer's deposit and record it on the ledger.

The payer either pays through the provider here (payment_method_id) or has
already paid client-side and sends the payment reference
(provider_payment_id), which is checked with the provider before anything
is written. Either way EscrowLedger.fund_agreement records the DEPOSIT row
and moves the agreement to FUNDED in the same unit of work.

The agreement is locked and its fund transition guarded before the provider
is called, so a charge is never attempted for an agreement that cannot be
funded.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from milestone_escrow.config import get_settings
from milestone_escrow.domain.exceptions import (
    AgreementNotFoundError,
    ProviderTimeoutError,
    ValidationError,
)
from milestone_escrow.domain.identity import Actor, ensure_can_act
from milestone_escrow.domain.state_machine import AgreementStateMachine, guard_transition
from milestone_escrow.infrastructure.database.repositories import AgreementRepository
from milestone_escrow.logging_config import get_logger
from milestone_escrow.services.escrow_ledger import EscrowLedger, to_money
from milestone_escrow.services.payment_service import deposit_idempotency_key

if TYPE_CHECKING:
    import uuid
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.domain.payment_protocol import DepositResult, PaymentProvider
    from milestone_escrow.infrastructure.database.orm_models import EscrowAgreement

logger = get_logger(__name__)


class EscrowFundingService:
    """Collects or verifies the payer's deposit, then funds the agreement."""

    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProvider,
        provider_timeout_seconds: float | None = None,
    ) -> None:
        self._agreements = AgreementRepository(session)
        self._ledger = EscrowLedger(session)
        self._provider = provider
        self._timeout = (
            provider_timeout_seconds
            if provider_timeout_seconds is not None
            else get_settings().payment_provider_timeout_seconds
        )

    async def fund(
        self,
        agreement_id: uuid.UUID,
        actor: Actor,
        *,
        provider_payment_id: str | None = None,
        payment_method_id: str | None = None,
        amount: Decimal | str | None = None,
    ) -> EscrowAgreement:
        """Fund the agreement from exactly one of a payment reference or a payment method.

        Raises:
            ValidationError: Neither or both payment inputs, or a partial amount.
            ExternalProviderError: The provider declined or the payment does not
                match the escrow amount. Nothing is recorded.
            ProviderTimeoutError: The provider did not answer in time. Retrying
                is safe; charges are keyed by agreement id.
        """
        if bool(provider_payment_id) == bool(payment_method_id):
            raise ValidationError(
                "Send exactly one of provider_payment_id or payment_method_id",
                field="provider_payment_id",
            )

        agreement = await self._agreements.get_for_update(agreement_id)
        if agreement is None:
            raise AgreementNotFoundError(str(agreement_id))
        ensure_can_act(actor, "fund escrow", user_ids={agreement.payer_id})
        guard_transition(agreement.status, "fund", machine=AgreementStateMachine)
        if amount is not None and to_money(amount) != agreement.total_amount:
            raise ValidationError(
                f"Partial funding is not supported; deposit exactly {agreement.total_amount}",
                field="amount",
            )

        deposit = await self._call_provider(agreement, provider_payment_id, payment_method_id)
        return await self._ledger.fund_agreement(
            agreement_id, actor, provider_payment_id=deposit.payment_id
        )

    async def _call_provider(
        self,
        agreement: EscrowAgreement,
        provider_payment_id: str | None,
        payment_method_id: str | None,
    ) -> DepositResult:
        if provider_payment_id:
            call = self._provider.confirm_deposit(
                provider_payment_id, agreement.total_amount, agreement.currency
            )
        else:
            call = self._provider.collect_deposit(
                amount=agreement.total_amount,
                currency=agreement.currency,
                payment_method_id=payment_method_id,
                metadata={
                    "agreement_id": str(agreement.id),
                    "project_id": str(agreement.project_id),
                },
                idempotency_key=deposit_idempotency_key(agreement.id),
            )

        try:
            deposit = await asyncio.wait_for(call, timeout=self._timeout)
        except TimeoutError as exc:
            logger.warning("escrow.deposit_timeout", agreement_id=str(agreement.id))
            raise ProviderTimeoutError(
                f"Payment provider did not answer within {self._timeout}s; retry funding"
            ) from exc

        logger.info(
            "escrow.deposit_confirmed",
            agreement_id=str(agreement.id),
            payment_id=deposit.payment_id,
        )
        return deposit
