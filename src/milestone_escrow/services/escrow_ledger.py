"""Escrow Ledger: agreement lifecycle and balance bookkeeping.

This is the application layer that coordinates between:
    - AgreementStateMachine (transition guard)
    - Repositories (data access, row locks)
    - AuditTrail (one event per completed step)

Money is never mutated in place: every movement is a new
escrow_transactions row, and the available balance is derived from them.

    available = completed deposits + completed adjustments
              - completed releases - open releases
              - completed refunds - completed fees
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from milestone_escrow.config import get_settings
from milestone_escrow.domain.enums import (
    CLOSED_AGREEMENT_STATUSES,
    OPEN_RELEASE_STATUSES,
    AgreementStatus,
    AuditAction,
    ResourceType,
    TransactionStatus,
    TransactionType,
    UserRole,
)
from milestone_escrow.domain.exceptions import (
    AgreementClosedError,
    AgreementNotFoundError,
    InsufficientFundsError,
    ProjectNotFoundError,
    ValidationError,
)
from milestone_escrow.domain.identity import Actor, ensure_can_act
from milestone_escrow.domain.state_machine import AgreementStateMachine, guard_transition
from milestone_escrow.infrastructure.database.orm_models import EscrowAgreement, EscrowTransaction
from milestone_escrow.infrastructure.database.repositories import (
    AgreementRepository,
    ProjectReadRepository,
    TransactionRepository,
)
from milestone_escrow.logging_config import get_logger
from milestone_escrow.services.audit_trail import AuditTrail
from milestone_escrow.services.precondition_service import PreconditionEvaluator, ensure_allowed

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

ZERO = Decimal("0")
CENTS = Decimal("0.01")

# Types that take money out of the escrow balance.
DEBIT_TYPES = frozenset({TransactionType.RELEASE, TransactionType.REFUND, TransactionType.FEE})


def to_money(value: Decimal | str | int | float, field: str = "amount") -> Decimal:
    """Parse an amount into a 2-decimal Decimal; floats go through str()."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as err:
        raise ValidationError(f"{field} is not a valid amount: {value!r}", field=field) from err
    if not amount.is_finite():
        raise ValidationError(f"{field} is not a valid amount: {value!r}", field=field)
    return amount.quantize(CENTS)


@dataclass(frozen=True)
class EscrowBalance:
    agreement_id: uuid.UUID
    currency: str
    total_amount: Decimal
    funded_amount: Decimal
    deposited: Decimal
    adjustments: Decimal
    released: Decimal
    pending_releases: Decimal
    refunded: Decimal
    fees: Decimal

    @property
    def available(self) -> Decimal:
        return (
            self.deposited
            + self.adjustments
            - self.released
            - self.pending_releases
            - self.refunded
            - self.fees
        )

    def to_dict(self) -> dict:
        return {
            "agreement_id": str(self.agreement_id),
            "currency": self.currency,
            "total_amount": str(self.total_amount),
            "funded_amount": str(self.funded_amount),
            "deposited": str(self.deposited),
            "adjustments": str(self.adjustments),
            "released": str(self.released),
            "pending_releases": str(self.pending_releases),
            "refunded": str(self.refunded),
            "fees": str(self.fees),
            "available": str(self.available),
        }


def _sum(
    sums: dict[tuple[str, str], Decimal],
    tx_type: TransactionType,
    statuses: frozenset[TransactionStatus] | tuple[TransactionStatus, ...],
) -> Decimal:
    total = sum((sums.get((tx_type.value, s.value), ZERO) for s in statuses), ZERO)
    return total.quantize(CENTS)


def _holds_funds(tx_type: TransactionType, status: TransactionStatus) -> bool:
    """Whether a row of this type and status is counted against the balance."""
    if status == TransactionStatus.COMPLETED:
        return True
    return tx_type == TransactionType.RELEASE and status in OPEN_RELEASE_STATUSES


class EscrowLedger:
    """Manages escrow agreements and their transaction ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._agreements = AgreementRepository(session)
        self._transactions = TransactionRepository(session)
        self._projects = ProjectReadRepository(session)
        self._audit = AuditTrail(session)

    # ------------------------------------------------------------------
    # Agreement creation and funding
    # ------------------------------------------------------------------

    async def create_agreement(
        self,
        project_id: uuid.UUID,
        payer_id: str,
        payee_id: str,
        total_amount: Decimal | str,
        actor: Actor,
        currency: str | None = None,
        contract_id: uuid.UUID | None = None,
    ) -> EscrowAgreement:
        """Create a new escrow agreement in DRAFT state."""
        ensure_can_act(
            actor,
            "create escrow agreement",
            user_ids={payer_id},
            roles={UserRole.ADMIN, UserRole.PROJECT_MANAGER},
        )
        amount = to_money(total_amount, "total_amount")
        if amount <= ZERO:
            raise ValidationError("total_amount must be positive", field="total_amount")
        if payer_id == payee_id:
            raise ValidationError("payer and payee must be different users", field="payee_id")

        if await self._projects.get_project(project_id) is None:
            raise ProjectNotFoundError(str(project_id))
        if await self._agreements.get_by_project(project_id) is not None:
            raise ValidationError(
                f"Project {project_id} already has an escrow agreement", field="project_id"
            )

        agreement = EscrowAgreement(
            project_id=project_id,
            contract_id=contract_id,
            payer_id=payer_id,
            payee_id=payee_id,
            total_amount=amount,
            currency=(currency or get_settings().default_currency).upper(),
            funded=False,
            funded_amount=ZERO,
            status=AgreementStatus.DRAFT.value,
            created_by=actor.user_id,
        )
        agreement = await self._agreements.create(agreement)

        await self._audit.record(
            actor.user_id,
            AuditAction.AGREEMENT_CREATED,
            ResourceType.ESCROW_AGREEMENT,
            agreement.id,
            {"project_id": str(project_id), "total_amount": str(amount)},
        )
        logger.info(
            "escrow.agreement_created",
            agreement_id=str(agreement.id),
            project_id=str(project_id),
            total=str(amount),
        )
        return agreement

    async def request_funding(self, agreement_id: uuid.UUID, actor: Actor) -> EscrowAgreement:
        """DRAFT -> PENDING_FUNDING: the payer has been asked to deposit."""
        agreement = await self._lock_agreement_or_raise(agreement_id)
        ensure_can_act(
            actor,
            "request escrow funding",
            user_ids={agreement.payer_id, agreement.payee_id},
            roles={UserRole.ADMIN, UserRole.PROJECT_MANAGER},
        )
        self._fire_transition(agreement, "request_funding")
        await self._agreements.update_status(agreement, AgreementStatus.PENDING_FUNDING)

        await self._audit.record(
            actor.user_id,
            AuditAction.AGREEMENT_FUNDING_REQUESTED,
            ResourceType.ESCROW_AGREEMENT,
            agreement.id,
        )
        logger.info("escrow.funding_requested", agreement_id=str(agreement_id))
        return agreement

    async def fund_agreement(
        self,
        agreement_id: uuid.UUID,
        actor: Actor,
        provider_payment_id: str,
        amount: Decimal | str | None = None,
    ) -> EscrowAgreement:
        """Record the payer's deposit and move the agreement to FUNDED.

        Funding is all-or-nothing: an explicit amount must equal total_amount.
        """
        agreement = await self._lock_agreement_or_raise(agreement_id)
        ensure_can_act(actor, "fund escrow", user_ids={agreement.payer_id})

        if amount is not None and to_money(amount) != agreement.total_amount:
            raise ValidationError(
                f"Partial funding is not supported; deposit exactly {agreement.total_amount}",
                field="amount",
            )
        if not provider_payment_id:
            raise ValidationError("provider_payment_id is required", field="provider_payment_id")

        old_status = agreement.status
        self._fire_transition(agreement, "fund")

        now = datetime.now(UTC)
        deposit = EscrowTransaction(
            type=TransactionType.DEPOSIT.value,
            amount=agreement.total_amount,
            currency=agreement.currency,
            status=TransactionStatus.COMPLETED.value,
            provider_payment_id=provider_payment_id,
            requested_by=actor.user_id,
            requested_at=now,
        )
        deposit = await self.record_transaction(agreement, deposit)
        await self._agreements.update_status(
            agreement,
            AgreementStatus.FUNDED,
            funded=True,
            funded_amount=agreement.total_amount,
            funded_at=now,
        )

        await self._audit.record(
            actor.user_id,
            AuditAction.AGREEMENT_FUNDED,
            ResourceType.ESCROW_AGREEMENT,
            agreement.id,
            {
                "from_status": old_status,
                "deposit_id": str(deposit.id),
                "amount": str(agreement.total_amount),
                "provider_payment_id": provider_payment_id,
            },
        )
        logger.info(
            "escrow.funded",
            agreement_id=str(agreement_id),
            amount=str(agreement.total_amount),
            provider_payment_id=provider_payment_id,
        )
        return agreement

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    async def record_transaction(
        self, agreement: EscrowAgreement, transaction: EscrowTransaction
    ) -> EscrowTransaction:
        """Append a transaction after the closed-agreement and balance checks.

        The agreement row is locked for the rest of the unit of work, so two
        debits cannot both pass the balance check against the same snapshot.
        """
        locked = await self._agreements.get_for_update(agreement.id)
        if locked is None:
            raise AgreementNotFoundError(str(agreement.id))
        if locked.status in CLOSED_AGREEMENT_STATUSES:
            raise AgreementClosedError(str(locked.id), locked.status)

        tx_type = TransactionType(transaction.type)
        status = TransactionStatus(transaction.status or TransactionStatus.PENDING.value)
        amount = to_money(transaction.amount)
        if amount == ZERO or (amount < ZERO and tx_type != TransactionType.ADJUSTMENT):
            raise ValidationError("amount must be positive", field="amount")
        if transaction.currency and transaction.currency.upper() != locked.currency:
            raise ValidationError(
                f"currency must match the agreement ({locked.currency})", field="currency"
            )

        if tx_type in DEBIT_TYPES:
            debit = amount
        elif tx_type == TransactionType.ADJUSTMENT and amount < ZERO:
            debit = -amount
        else:
            debit = ZERO

        if debit > ZERO and _holds_funds(tx_type, status):
            balance = await self.get_balance(locked.id)
            if debit > balance.available:
                logger.warning(
                    "ledger.insufficient_funds",
                    agreement_id=str(locked.id),
                    required=str(debit),
                    available=str(balance.available),
                )
                raise InsufficientFundsError(str(debit), str(balance.available))

        transaction.agreement_id = locked.id
        transaction.amount = amount
        transaction.currency = locked.currency
        transaction.status = status.value
        transaction = await self._transactions.create(transaction)

        logger.info(
            "ledger.transaction_recorded",
            agreement_id=str(locked.id),
            transaction_id=str(transaction.id),
            type=tx_type.value,
            status=status.value,
            amount=str(amount),
        )
        return transaction

    async def get_balance(self, agreement_id: uuid.UUID) -> EscrowBalance:
        agreement = await self._get_agreement_or_raise(agreement_id)
        sums = await self._transactions.sum_by_type_and_status(agreement_id)
        completed = (TransactionStatus.COMPLETED,)

        return EscrowBalance(
            agreement_id=agreement.id,
            currency=agreement.currency,
            total_amount=to_money(agreement.total_amount),
            funded_amount=to_money(agreement.funded_amount),
            deposited=_sum(sums, TransactionType.DEPOSIT, completed),
            adjustments=_sum(sums, TransactionType.ADJUSTMENT, completed),
            released=_sum(sums, TransactionType.RELEASE, completed),
            pending_releases=_sum(sums, TransactionType.RELEASE, OPEN_RELEASE_STATUSES),
            refunded=_sum(sums, TransactionType.REFUND, completed),
            fees=_sum(sums, TransactionType.FEE, completed),
        )

    async def record_refund(
        self,
        agreement_id: uuid.UUID,
        amount: Decimal | str,
        actor: Actor,
        reason: str,
    ) -> EscrowTransaction:
        """Return funds to the payer as a new REFUND transaction."""
        agreement = await self._lock_agreement_or_raise(agreement_id)
        ensure_can_act(actor, "refund escrow", user_ids={agreement.payee_id})
        if not reason or not reason.strip():
            raise ValidationError("A refund reason is required", field="reason")

        refund = EscrowTransaction(
            type=TransactionType.REFUND.value,
            amount=to_money(amount),
            currency=agreement.currency,
            status=TransactionStatus.COMPLETED.value,
            requested_by=actor.user_id,
            requested_at=datetime.now(UTC),
            notes=reason.strip(),
        )
        refund = await self.record_transaction(agreement, refund)

        await self._audit.record(
            actor.user_id,
            AuditAction.REFUND_RECORDED,
            ResourceType.ESCROW_TRANSACTION,
            refund.id,
            {"agreement_id": str(agreement_id), "amount": str(refund.amount), "reason": refund.notes},
        )
        logger.info("escrow.refund_recorded", agreement_id=str(agreement_id), amount=str(refund.amount))
        return refund

    # ------------------------------------------------------------------
    # Agreement lifecycle
    # ------------------------------------------------------------------

    async def activate(self, agreement: EscrowAgreement) -> EscrowAgreement:
        """FUNDED -> ACTIVE on the first completed release; no-op once ACTIVE."""
        if agreement.status == AgreementStatus.ACTIVE.value:
            return agreement
        self._fire_transition(agreement, "first_release_completed")
        await self._agreements.update_status(agreement, AgreementStatus.ACTIVE)
        logger.info("escrow.activated", agreement_id=str(agreement.id))
        return agreement

    async def complete_agreement(self, agreement_id: uuid.UUID, actor: Actor) -> EscrowAgreement:
        """ACTIVE -> COMPLETED once every milestone is paid and closeout is done."""
        agreement = await self._lock_agreement_or_raise(agreement_id)
        ensure_can_act(actor, "complete escrow agreement", user_ids={agreement.payer_id})
        self._fire_transition(agreement, "complete")

        result = await PreconditionEvaluator(self._session).can_complete_agreement(agreement_id)
        ensure_allowed(result, "Agreement completion")

        await self._agreements.update_status(agreement, AgreementStatus.COMPLETED)
        await self._audit.record(
            actor.user_id,
            AuditAction.AGREEMENT_COMPLETED,
            ResourceType.ESCROW_AGREEMENT,
            agreement.id,
        )
        logger.info("escrow.completed", agreement_id=str(agreement_id))
        return agreement

    async def cancel_agreement(
        self, agreement_id: uuid.UUID, actor: Actor, reason: str | None = None
    ) -> EscrowAgreement:
        agreement = await self._lock_agreement_or_raise(agreement_id)
        ensure_can_act(actor, "cancel escrow agreement", user_ids={agreement.payer_id})
        old_status = agreement.status
        self._fire_transition(agreement, "cancel")
        await self._agreements.update_status(agreement, AgreementStatus.CANCELLED)

        await self._audit.record(
            actor.user_id,
            AuditAction.AGREEMENT_CANCELLED,
            ResourceType.ESCROW_AGREEMENT,
            agreement.id,
            {"from_status": old_status, "reason": reason},
        )
        logger.info("escrow.cancelled", agreement_id=str(agreement_id), by=actor.user_id)
        return agreement

    async def mark_disputed(
        self, agreement_id: uuid.UUID, actor: Actor, reason: str
    ) -> EscrowAgreement:
        agreement = await self._lock_agreement_or_raise(agreement_id)
        ensure_can_act(
            actor,
            "dispute escrow agreement",
            user_ids={agreement.payer_id, agreement.payee_id},
        )
        if not reason or not reason.strip():
            raise ValidationError("A dispute reason is required", field="reason")
        old_status = agreement.status
        self._fire_transition(agreement, "dispute")
        await self._agreements.update_status(agreement, AgreementStatus.DISPUTED)

        await self._audit.record(
            actor.user_id,
            AuditAction.AGREEMENT_DISPUTED,
            ResourceType.ESCROW_AGREEMENT,
            agreement.id,
            {"from_status": old_status, "reason": reason.strip()},
        )
        logger.info("escrow.dispute_raised", agreement_id=str(agreement_id), by=actor.user_id)
        return agreement

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_agreement(self, agreement_id: uuid.UUID) -> EscrowAgreement:
        return await self._get_agreement_or_raise(agreement_id)

    async def list_transactions(self, agreement_id: uuid.UUID) -> list[EscrowTransaction]:
        await self._get_agreement_or_raise(agreement_id)
        return await self._transactions.list_by_agreement(agreement_id)

    async def get_status(self, agreement_id: uuid.UUID) -> dict:
        """Get agreement status with allowed events."""
        agreement = await self._get_agreement_or_raise(agreement_id)
        sm = AgreementStateMachine(current_status=agreement.status)
        return {
            "agreement_id": str(agreement.id),
            "status": agreement.status,
            "allowed_events": sm.get_allowed_events(),
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _get_agreement_or_raise(self, agreement_id: uuid.UUID) -> EscrowAgreement:
        agreement = await self._agreements.get_by_id(agreement_id)
        if agreement is None:
            raise AgreementNotFoundError(str(agreement_id))
        return agreement

    async def _lock_agreement_or_raise(self, agreement_id: uuid.UUID) -> EscrowAgreement:
        agreement = await self._agreements.get_for_update(agreement_id)
        if agreement is None:
            raise AgreementNotFoundError(str(agreement_id))
        return agreement

    @staticmethod
    def _fire_transition(agreement: EscrowAgreement, event_name: str) -> None:
        """Raises InvalidStateTransitionError if the transition is illegal."""
        guard_transition(agreement.status, event_name, machine=AgreementStateMachine)

