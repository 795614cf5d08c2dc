"""Release Orchestrator: milestone release request, approval and rejection.

Coordinates between:
    - PreconditionEvaluator (release gates, re-checked at approval time)
    - ReleaseStateMachine (transition guard)
    - EscrowLedger (balance checks, agreement activation)
    - PaymentProvider (the external transfer)
    - AuditTrail (one event per completed step)

Approval ordering:
    1. Re-evaluate can_release_escrow and authorize the approver.
    2. Check the payee's payout account.
    3. Claim the release: PENDING_APPROVAL -> APPROVED in one status+version
       guarded UPDATE. A concurrent approver or rejecter that already won
       makes this raise StaleStateError before any money moves.
    4. Call the provider with a bounded timeout. The idempotency key is
       derived from the transaction id, so retries never pay twice.
    5. APPROVED -> COMPLETED with the provider's transfer id, mark the
       milestone PAID and activate the agreement on first release.

If the provider fails or times out the claim is handed back
(APPROVED -> PENDING_APPROVAL), the outcome is kept on the release and a
RELEASE_TRANSFER_FAILED audit event is written. A timed-out release cannot
be rejected until a retried approval settles what the provider did.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from milestone_escrow.config import get_settings
from milestone_escrow.domain.enums import (
    AuditAction,
    BlockingReasonType,
    ResourceType,
    TransactionStatus,
    TransactionType,
    UserRole,
)
from milestone_escrow.domain.exceptions import (
    AgreementNotFoundError,
    ExternalProviderError,
    MilestoneNotFoundError,
    PreconditionBlockedError,
    ProviderTimeoutError,
    StaleStateError,
    TransactionNotFoundError,
    ValidationError,
)
from milestone_escrow.domain.identity import Actor, ensure_can_act
from milestone_escrow.domain.preconditions import block
from milestone_escrow.domain.state_machine import ReleaseStateMachine, guard_transition
from milestone_escrow.infrastructure.database.orm_models import EscrowAgreement, EscrowTransaction
from milestone_escrow.infrastructure.database.repositories import (
    AgreementRepository,
    MilestoneRepository,
    TransactionRepository,
)
from milestone_escrow.logging_config import get_logger
from milestone_escrow.services.audit_trail import AuditTrail
from milestone_escrow.services.escrow_ledger import EscrowLedger
from milestone_escrow.services.payment_service import release_idempotency_key
from milestone_escrow.services.precondition_service import PreconditionEvaluator, ensure_allowed

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.domain.payment_protocol import PaymentProvider

logger = get_logger(__name__)


class ReleaseOrchestrator:
    """Drives RELEASE transactions from request to payout."""

    def __init__(
        self,
        session: AsyncSession,
        payment_provider: PaymentProvider,
        provider_timeout_seconds: float | None = None,
    ) -> None:
        self._session = session
        self._provider = payment_provider
        self._timeout = (
            provider_timeout_seconds
            if provider_timeout_seconds is not None
            else get_settings().payment_provider_timeout_seconds
        )
        self._transactions = TransactionRepository(session)
        self._agreements = AgreementRepository(session)
        self._milestones = MilestoneRepository(session)
        self._evaluator = PreconditionEvaluator(session)
        self._ledger = EscrowLedger(session)
        self._audit = AuditTrail(session)

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    async def request_release(
        self,
        milestone_id: uuid.UUID,
        requester: Actor,
        notes: str | None = None,
    ) -> EscrowTransaction:
        """Open a RELEASE for a milestone's amount in VERIFICATION_REQUIRED."""
        result = await self._evaluator.can_request_release(milestone_id)
        ensure_allowed(result, "Release request")

        milestone = await self._milestones.get_by_id(milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError(str(milestone_id))
        agreement = await self._agreements.get_by_project(milestone.project_id)
        if agreement is None:
            raise AgreementNotFoundError(f"project {milestone.project_id}")
        ensure_can_act(
            requester,
            "request escrow release",
            user_ids={agreement.payee_id},
            roles={UserRole.ADMIN, UserRole.PROJECT_MANAGER},
        )

        status = guard_transition(TransactionStatus.PENDING.value, "require_verification")
        release = EscrowTransaction(
            type=TransactionType.RELEASE.value,
            amount=milestone.amount,
            currency=agreement.currency,
            milestone_id=milestone.id,
            status=status,
            verification_complete=False,
            requested_by=requester.user_id,
            requested_at=datetime.now(UTC),
            notes=notes,
        )
        try:
            async with self._session.begin_nested():
                release = await self._ledger.record_transaction(agreement, release)
        except IntegrityError as exc:
            # Lost the race on the one-live-release-per-milestone index.
            raise PreconditionBlockedError(
                "Release request", [block(BlockingReasonType.RELEASE_ALREADY_REQUESTED)]
            ) from exc

        await self._audit.record(
            requester.user_id,
            AuditAction.RELEASE_REQUESTED,
            ResourceType.ESCROW_TRANSACTION,
            release.id,
            {
                "milestone_id": str(milestone.id),
                "agreement_id": str(agreement.id),
                "amount": str(release.amount),
            },
        )
        logger.info(
            "release.requested",
            transaction_id=str(release.id),
            milestone_id=str(milestone.id),
            amount=str(release.amount),
        )
        return release

    # ------------------------------------------------------------------
    # Approve
    # ------------------------------------------------------------------

    async def approve(
        self,
        transaction_id: uuid.UUID,
        approver: Actor,
        notes: str | None = None,
    ) -> EscrowTransaction:
        """Pay out a verified release.

        The release is claimed (PENDING_APPROVAL -> APPROVED) before the
        provider is called. While APPROVED it accepts no receipts, rejection
        or second approval, so nothing can change it under an in-flight
        transfer.

        Raises:
            PreconditionBlockedError: A release gate or payout-account check failed.
            UnauthorizedError: The approver is not the payer or an admin.
            ProviderTimeoutError: The transfer outcome is unknown; retry approve.
            ExternalProviderError: The provider declined the transfer.
            StaleStateError: Another approval or rejection won the race.
        """
        result = await self._evaluator.can_release_escrow(transaction_id)
        ensure_allowed(result, "Escrow release")

        transaction = await self._get_release_or_raise(transaction_id)
        agreement = await self._get_agreement_or_raise(transaction)
        ensure_can_act(approver, "approve escrow release", user_ids={agreement.payer_id})

        account = await self._provider.get_payout_account(agreement.payee_id)
        ensure_allowed(self._evaluator.check_payout_account(account), "Escrow release")

        guard_transition(transaction.status, "approve")
        transaction = await self._transactions.transition(
            transaction,
            expected_status=TransactionStatus.PENDING_APPROVAL,
            expected_version=transaction.version,
            new_status=TransactionStatus.APPROVED,
            approved_by=approver.user_id,
            approved_at=datetime.now(UTC),
            approval_notes=notes,
        )
        claimed_version = transaction.version

        try:
            transfer = await asyncio.wait_for(
                self._provider.create_transfer(
                    amount=transaction.amount,
                    currency=transaction.currency,
                    destination_account_id=account.account_id,
                    metadata={
                        "transaction_id": str(transaction.id),
                        "milestone_id": str(transaction.milestone_id or ""),
                        "agreement_id": str(agreement.id),
                    },
                    idempotency_key=release_idempotency_key(transaction.id),
                ),
                timeout=self._timeout,
            )
        except TimeoutError as exc:
            err = ProviderTimeoutError(
                f"Payment provider did not answer within {self._timeout}s; "
                "the transfer outcome is unknown, retry approval"
            )
            await self._release_claim(transaction, claimed_version, approver, err)
            raise err from exc
        except ExternalProviderError as err:
            await self._release_claim(transaction, claimed_version, approver, err)
            raise

        guard_transition(transaction.status, "transfer_confirmed")
        try:
            transaction = await self._transactions.transition(
                transaction,
                expected_status=TransactionStatus.APPROVED,
                expected_version=claimed_version,
                new_status=TransactionStatus.COMPLETED,
                provider_transfer_id=transfer.transfer_id,
                last_transfer_outcome=None,
            )
        except StaleStateError:
            logger.error(
                "release.claim_lost_after_transfer",
                transaction_id=str(transaction_id),
                transfer_id=transfer.transfer_id,
            )
            raise

        if transaction.milestone_id is not None:
            milestone = await self._milestones.get_by_id(transaction.milestone_id)
            if milestone is not None:
                await self._milestones.mark_paid(milestone, released_by=approver.user_id)
        await self._ledger.activate(agreement)

        await self._audit.record(
            approver.user_id,
            AuditAction.RELEASE_APPROVED,
            ResourceType.ESCROW_TRANSACTION,
            transaction.id,
            {
                "amount": str(transaction.amount),
                "provider_transfer_id": transfer.transfer_id,
                "replayed": transfer.replayed,
                "notes": notes,
            },
        )
        logger.info(
            "release.approved",
            transaction_id=str(transaction.id),
            transfer_id=transfer.transfer_id,
            amount=str(transaction.amount),
        )
        return transaction

    # ------------------------------------------------------------------
    # Reject
    # ------------------------------------------------------------------

    async def reject(
        self,
        transaction_id: uuid.UUID,
        rejecter: Actor,
        reason: str,
    ) -> EscrowTransaction:
        """Reject a release. The held amount returns to the available balance.

        A release whose last payout attempt timed out may already have been
        paid, so it cannot be rejected until a retried approval settles it.
        """
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", field="reason")

        transaction = await self._get_release_or_raise(transaction_id)
        agreement = await self._get_agreement_or_raise(transaction)
        ensure_can_act(rejecter, "reject escrow release", user_ids={agreement.payer_id})

        current = TransactionStatus(transaction.status)
        expected_version = transaction.version
        guard_transition(current.value, "reject")
        if transaction.last_transfer_outcome == ProviderTimeoutError.outcome:
            raise PreconditionBlockedError(
                "Release rejection", [block(BlockingReasonType.TRANSFER_OUTCOME_UNKNOWN)]
            )

        transaction = await self._transactions.transition(
            transaction,
            expected_status=current,
            expected_version=expected_version,
            new_status=TransactionStatus.REJECTED,
            rejected_by=rejecter.user_id,
            rejected_at=datetime.now(UTC),
            rejection_reason=reason.strip(),
        )

        await self._audit.record(
            rejecter.user_id,
            AuditAction.RELEASE_REJECTED,
            ResourceType.ESCROW_TRANSACTION,
            transaction.id,
            {"from_status": current.value, "reason": transaction.rejection_reason},
        )
        logger.info("release.rejected", transaction_id=str(transaction.id), by=rejecter.user_id)
        return transaction

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_release(self, transaction_id: uuid.UUID) -> EscrowTransaction:
        return await self._get_release_or_raise(transaction_id)

    async def get_release_status(self, transaction_id: uuid.UUID) -> dict:
        """Status, allowed events and the current approval gate for a release."""
        transaction = await self._get_release_or_raise(transaction_id)
        sm = ReleaseStateMachine(current_status=transaction.status)
        gate = await self._evaluator.can_release_escrow(transaction_id)
        return {
            "transaction_id": str(transaction.id),
            "status": transaction.status,
            "version": transaction.version,
            "verification_complete": transaction.verification_complete,
            "allowed_events": sm.get_allowed_events(),
            "release_gate": gate.to_dict(),
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _release_claim(
        self,
        transaction: EscrowTransaction,
        claimed_version: int,
        approver: Actor,
        err: ExternalProviderError,
    ) -> None:
        """Hand an unpaid release back to PENDING_APPROVAL and record the attempt."""
        guard_transition(transaction.status, "transfer_failed")
        await self._transactions.transition(
            transaction,
            expected_status=TransactionStatus.APPROVED,
            expected_version=claimed_version,
            new_status=TransactionStatus.PENDING_APPROVAL,
            approved_by=None,
            approved_at=None,
            approval_notes=None,
            last_transfer_outcome=err.outcome,
        )
        logger.error(
            "release.transfer_failed",
            transaction_id=str(transaction.id),
            outcome=err.outcome,
            code=err.code,
            error=err.message,
        )
        await self._audit.record(
            approver.user_id,
            AuditAction.RELEASE_TRANSFER_FAILED,
            ResourceType.ESCROW_TRANSACTION,
            transaction.id,
            {"outcome": err.outcome, "code": err.code, "error": err.message},
        )

    async def _get_release_or_raise(self, transaction_id: uuid.UUID) -> EscrowTransaction:
        transaction = await self._transactions.get_by_id(transaction_id)
        if transaction is None or transaction.type != TransactionType.RELEASE.value:
            raise TransactionNotFoundError(str(transaction_id))
        return transaction

    async def _get_agreement_or_raise(self, transaction: EscrowTransaction) -> EscrowAgreement:
        agreement = await self._agreements.get_by_id(transaction.agreement_id)
        if agreement is None:
            raise AgreementNotFoundError(str(transaction.agreement_id))
        return agreement
