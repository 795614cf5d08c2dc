"""Precondition Service: loads upstream state and evaluates workflow gates.

Read-only. Each check loads a fresh snapshot through the repositories and
hands it to the pure rules in domain/preconditions.py. The advisory status
endpoints and the write paths (release approval, permit and review
submission) all go through this one evaluator, so they can never disagree.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from milestone_escrow.domain.enums import (
    AgreementStatus,
    CloseoutStatus,
    ContractStatus,
    DesignStatus,
    MilestoneStatus,
    ProjectStatus,
    TransactionStatus,
)
from milestone_escrow.domain.exceptions import AgreementNotFoundError, PreconditionBlockedError
from milestone_escrow.domain.preconditions import (
    AgreementCompletionSnapshot,
    PayoutSnapshot,
    PermitSnapshot,
    ReleaseApprovalSnapshot,
    ReleaseRequestSnapshot,
    ReviewSnapshot,
    evaluate_agreement_completion,
    evaluate_payout_account,
    evaluate_permit_submission,
    evaluate_release_approval,
    evaluate_release_request,
    evaluate_review_submission,
)
from milestone_escrow.infrastructure.database.repositories import (
    AgreementRepository,
    MilestoneRepository,
    ProjectReadRepository,
    TransactionRepository,
)
from milestone_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.domain.payment_protocol import PayoutAccount
    from milestone_escrow.domain.preconditions import PreconditionResult

logger = get_logger(__name__)


def ensure_allowed(result: PreconditionResult, action: str) -> None:
    """Raise PreconditionBlockedError carrying every reason if the gate is closed."""
    if not result.allowed:
        raise PreconditionBlockedError(action, list(result.blocking_reasons))


class PreconditionEvaluator:
    """Evaluates the cross-cutting workflow rules against current state."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._projects = ProjectReadRepository(session)
        self._agreements = AgreementRepository(session)
        self._transactions = TransactionRepository(session)
        self._milestones = MilestoneRepository(session)

    async def can_submit_permit(self, project_id: uuid.UUID) -> PreconditionResult:
        project = await self._projects.get_project(project_id)
        contract = await self._projects.latest_contract(project_id)
        design = await self._projects.latest_design(project_id)
        incomplete = await self._projects.incomplete_required_readiness(project_id)

        snapshot = PermitSnapshot(
            project_exists=project is not None,
            latest_contract_status=ContractStatus(contract.status) if contract else None,
            latest_design_status=DesignStatus(design.status) if design else None,
            incomplete_required_items=tuple(incomplete),
        )
        return self._log(evaluate_permit_submission(snapshot), "permit_submission", project_id)

    async def can_submit_review(self, project_id: uuid.UUID) -> PreconditionResult:
        project = await self._projects.get_project(project_id)
        closeout = await self._projects.get_closeout(project_id)

        snapshot = ReviewSnapshot(
            project_exists=project is not None,
            project_status=ProjectStatus(project.status) if project else None,
            closeout_status=CloseoutStatus(closeout.status) if closeout else None,
            final_payment_released=bool(closeout and closeout.final_payment_released),
        )
        return self._log(evaluate_review_submission(snapshot), "review_submission", project_id)

    async def can_request_release(self, milestone_id: uuid.UUID) -> PreconditionResult:
        milestone = await self._milestones.get_by_id(milestone_id)
        agreement = None
        has_dispute = False
        if milestone is not None:
            agreement = await self._agreements.get_by_project(milestone.project_id)
            has_dispute = await self._projects.has_active_dispute(milestone.project_id)
        live_release = await self._transactions.get_live_release_for_milestone(milestone_id)

        snapshot = ReleaseRequestSnapshot(
            milestone_exists=milestone is not None,
            agreement_status=AgreementStatus(agreement.status) if agreement else None,
            has_open_release=(
                live_release is not None
                or (milestone is not None and milestone.status == MilestoneStatus.PAID.value)
            ),
            has_active_dispute=has_dispute,
        )
        return self._log(evaluate_release_request(snapshot), "release_request", milestone_id)

    async def can_release_escrow(self, transaction_id: uuid.UUID) -> PreconditionResult:
        transaction = await self._transactions.get_by_id(transaction_id)
        if transaction is None:
            snapshot = ReleaseApprovalSnapshot(transaction_exists=False)
            return self._log(evaluate_release_approval(snapshot), "release_approval", transaction_id)

        agreement = await self._agreements.get_by_id(transaction.agreement_id)
        has_dispute = (
            await self._projects.has_active_dispute(agreement.project_id) if agreement else False
        )
        snapshot = ReleaseApprovalSnapshot(
            transaction_exists=True,
            transaction_status=TransactionStatus(transaction.status),
            verification_complete=transaction.verification_complete,
            agreement_status=AgreementStatus(agreement.status) if agreement else None,
            has_active_dispute=has_dispute,
        )
        return self._log(evaluate_release_approval(snapshot), "release_approval", transaction_id)

    async def can_complete_agreement(self, agreement_id: uuid.UUID) -> PreconditionResult:
        agreement = await self._agreements.get_by_id(agreement_id)
        if agreement is None:
            raise AgreementNotFoundError(str(agreement_id))

        milestones = await self._milestones.list_by_project(agreement.project_id)
        closeout = await self._projects.get_closeout(agreement.project_id)
        snapshot = AgreementCompletionSnapshot(
            unpaid_milestones=tuple(
                m.name for m in milestones if m.status != MilestoneStatus.PAID.value
            ),
            closeout_status=CloseoutStatus(closeout.status) if closeout else None,
        )
        return self._log(
            evaluate_agreement_completion(snapshot), "agreement_completion", agreement_id
        )

    def check_payout_account(self, account: PayoutAccount | None) -> PreconditionResult:
        snapshot = PayoutSnapshot(
            account_id=account.account_id if account else None,
            payouts_enabled=bool(account and account.payouts_enabled),
        )
        return evaluate_payout_account(snapshot)

    @staticmethod
    def _log(result: PreconditionResult, gate: str, subject_id: object) -> PreconditionResult:
        if not result.allowed:
            logger.info(
                "preconditions.blocked",
                gate=gate,
                subject_id=str(subject_id),
                reasons=[r.value for r in result.reason_types],
            )
        return result
