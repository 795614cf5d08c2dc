"""Workflow precondition rules.

Pure, side-effect-free evaluation of whether a gated action is currently
allowed. Each rule takes a frozen snapshot of the upstream state (loaded by
services/precondition_service.py) and returns a PreconditionResult listing
every unmet condition. Rules never short-circuit: callers render the full
list as remediation guidance.

Missing related entities arrive as None / False in the snapshot and become
blocking reasons, never exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import assert_never

from milestone_escrow.domain.enums import (
    CLOSED_AGREEMENT_STATUSES,
    RELEASABLE_AGREEMENT_STATUSES,
    AgreementStatus,
    BlockingReasonType,
    CloseoutStatus,
    ContractStatus,
    DesignStatus,
    ProjectStatus,
    TransactionStatus,
)


@dataclass(frozen=True)
class BlockingReason:
    type: BlockingReasonType
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type.value, "message": self.message}


@dataclass(frozen=True)
class PreconditionResult:
    """Outcome of one evaluation. Never cached: upstream state moves concurrently."""

    blocking_reasons: tuple[BlockingReason, ...] = ()

    @property
    def allowed(self) -> bool:
        return not self.blocking_reasons

    @property
    def reason_types(self) -> list[BlockingReasonType]:
        return [reason.type for reason in self.blocking_reasons]

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "blocking_reasons": [reason.to_dict() for reason in self.blocking_reasons],
        }


def describe_reason(reason_type: BlockingReasonType, detail: str = "") -> str:
    """Render the remediation message for a reason type.

    The match is exhaustive; adding a BlockingReasonType member without a case
    here is reported by the type checker at assert_never.
    """
    match reason_type:
        case BlockingReasonType.PROJECT_NOT_FOUND:
            message = "Project does not exist"
        case BlockingReasonType.CONTRACT_NOT_SIGNED:
            message = "Contract must be fully signed before permit submission"
        case BlockingReasonType.DESIGN_NOT_APPROVED:
            message = "Design must be approved for permit before submission"
        case BlockingReasonType.READINESS_INCOMPLETE:
            message = "Required readiness items must be completed"
        case BlockingReasonType.PROJECT_NOT_COMPLETED:
            message = "Project must be completed before reviews can be submitted"
        case BlockingReasonType.CLOSEOUT_INCOMPLETE:
            message = "Project closeout must be completed"
        case BlockingReasonType.FINAL_PAYMENT_NOT_RELEASED:
            message = "Final payment must be released"
        case BlockingReasonType.MILESTONE_NOT_FOUND:
            message = "Milestone does not exist"
        case BlockingReasonType.ESCROW_NOT_FOUND:
            message = "No escrow agreement exists for this project"
        case BlockingReasonType.ESCROW_NOT_FUNDED:
            message = "Escrow agreement must be funded before releases can be requested"
        case BlockingReasonType.RELEASE_ALREADY_REQUESTED:
            message = "A release for this milestone is already open or paid"
        case BlockingReasonType.TRANSACTION_NOT_FOUND:
            message = "Release transaction does not exist"
        case BlockingReasonType.VERIFICATION_INCOMPLETE:
            message = "At least one receipt must be uploaded and every receipt verified"
        case BlockingReasonType.TRANSACTION_NOT_PENDING_APPROVAL:
            message = "Transaction is not awaiting approval"
        case BlockingReasonType.ACTIVE_DISPUTE:
            message = "Escrow releases are frozen due to an active dispute"
        case BlockingReasonType.AGREEMENT_CLOSED:
            message = "Escrow agreement is closed"
        case BlockingReasonType.PAYOUT_ACCOUNT_MISSING:
            message = "Payee has no payment provider account"
        case BlockingReasonType.PAYOUTS_NOT_ENABLED:
            message = "Payee payment provider account is not enabled for payouts"
        case BlockingReasonType.TRANSFER_OUTCOME_UNKNOWN:
            message = "The last payout attempt timed out; retry approval to settle it first"
        case BlockingReasonType.MILESTONES_UNPAID:
            message = "All milestones must be paid"
        case _:
            assert_never(reason_type)
    return f"{message} ({detail})" if detail else message


def block(reason_type: BlockingReasonType, detail: str = "") -> BlockingReason:
    return BlockingReason(type=reason_type, message=describe_reason(reason_type, detail))


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PermitSnapshot:
    project_exists: bool
    latest_contract_status: ContractStatus | None = None
    latest_design_status: DesignStatus | None = None
    incomplete_required_items: tuple[str, ...] = ()


@dataclass(frozen=True)
class ReviewSnapshot:
    project_exists: bool
    project_status: ProjectStatus | None = None
    closeout_status: CloseoutStatus | None = None
    final_payment_released: bool = False


@dataclass(frozen=True)
class ReleaseRequestSnapshot:
    milestone_exists: bool
    agreement_status: AgreementStatus | None = None
    has_open_release: bool = False
    has_active_dispute: bool = False


@dataclass(frozen=True)
class ReleaseApprovalSnapshot:
    transaction_exists: bool
    transaction_status: TransactionStatus | None = None
    verification_complete: bool = False
    agreement_status: AgreementStatus | None = None
    has_active_dispute: bool = False


@dataclass(frozen=True)
class AgreementCompletionSnapshot:
    unpaid_milestones: tuple[str, ...] = ()
    closeout_status: CloseoutStatus | None = None


@dataclass(frozen=True)
class PayoutSnapshot:
    account_id: str | None = None
    payouts_enabled: bool = False


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def evaluate_permit_submission(snapshot: PermitSnapshot) -> PreconditionResult:
    reasons: list[BlockingReason] = []

    if not snapshot.project_exists:
        reasons.append(block(BlockingReasonType.PROJECT_NOT_FOUND))

    if snapshot.latest_contract_status != ContractStatus.FULLY_SIGNED:
        reasons.append(block(BlockingReasonType.CONTRACT_NOT_SIGNED))

    if snapshot.latest_design_status != DesignStatus.APPROVED_FOR_PERMIT:
        reasons.append(block(BlockingReasonType.DESIGN_NOT_APPROVED))

    if snapshot.incomplete_required_items:
        titles = ", ".join(snapshot.incomplete_required_items)
        reasons.append(
            block(
                BlockingReasonType.READINESS_INCOMPLETE,
                f"{len(snapshot.incomplete_required_items)} remaining: {titles}",
            )
        )

    return PreconditionResult(tuple(reasons))


def evaluate_review_submission(snapshot: ReviewSnapshot) -> PreconditionResult:
    reasons: list[BlockingReason] = []

    if not snapshot.project_exists:
        reasons.append(block(BlockingReasonType.PROJECT_NOT_FOUND))

    if snapshot.project_status != ProjectStatus.COMPLETED:
        reasons.append(block(BlockingReasonType.PROJECT_NOT_COMPLETED))

    if snapshot.closeout_status != CloseoutStatus.COMPLETED:
        reasons.append(block(BlockingReasonType.CLOSEOUT_INCOMPLETE))

    if not snapshot.final_payment_released:
        reasons.append(block(BlockingReasonType.FINAL_PAYMENT_NOT_RELEASED))

    return PreconditionResult(tuple(reasons))


def evaluate_release_request(snapshot: ReleaseRequestSnapshot) -> PreconditionResult:
    reasons: list[BlockingReason] = []

    if not snapshot.milestone_exists:
        reasons.append(block(BlockingReasonType.MILESTONE_NOT_FOUND))

    if snapshot.agreement_status is None:
        reasons.append(block(BlockingReasonType.ESCROW_NOT_FOUND))
    elif snapshot.agreement_status in CLOSED_AGREEMENT_STATUSES:
        reasons.append(block(BlockingReasonType.AGREEMENT_CLOSED, snapshot.agreement_status.value))
    elif snapshot.agreement_status not in RELEASABLE_AGREEMENT_STATUSES:
        reasons.append(block(BlockingReasonType.ESCROW_NOT_FUNDED, snapshot.agreement_status.value))

    if snapshot.has_open_release:
        reasons.append(block(BlockingReasonType.RELEASE_ALREADY_REQUESTED))

    if snapshot.has_active_dispute:
        reasons.append(block(BlockingReasonType.ACTIVE_DISPUTE))

    return PreconditionResult(tuple(reasons))


def evaluate_release_approval(snapshot: ReleaseApprovalSnapshot) -> PreconditionResult:
    if not snapshot.transaction_exists:
        return PreconditionResult((block(BlockingReasonType.TRANSACTION_NOT_FOUND),))

    reasons: list[BlockingReason] = []

    if not snapshot.verification_complete:
        reasons.append(block(BlockingReasonType.VERIFICATION_INCOMPLETE))

    if snapshot.transaction_status != TransactionStatus.PENDING_APPROVAL:
        current = snapshot.transaction_status.value if snapshot.transaction_status else "unknown"
        reasons.append(block(BlockingReasonType.TRANSACTION_NOT_PENDING_APPROVAL, current))

    if snapshot.agreement_status is None or snapshot.agreement_status in CLOSED_AGREEMENT_STATUSES:
        current = snapshot.agreement_status.value if snapshot.agreement_status else "missing"
        reasons.append(block(BlockingReasonType.AGREEMENT_CLOSED, current))

    if snapshot.has_active_dispute:
        reasons.append(block(BlockingReasonType.ACTIVE_DISPUTE))

    return PreconditionResult(tuple(reasons))


def evaluate_payout_account(snapshot: PayoutSnapshot) -> PreconditionResult:
    if snapshot.account_id is None:
        return PreconditionResult((block(BlockingReasonType.PAYOUT_ACCOUNT_MISSING),))
    if not snapshot.payouts_enabled:
        return PreconditionResult(
            (block(BlockingReasonType.PAYOUTS_NOT_ENABLED, snapshot.account_id),)
        )
    return PreconditionResult()


def evaluate_agreement_completion(snapshot: AgreementCompletionSnapshot) -> PreconditionResult:
    reasons: list[BlockingReason] = []

    if snapshot.unpaid_milestones:
        reasons.append(
            block(BlockingReasonType.MILESTONES_UNPAID, ", ".join(snapshot.unpaid_milestones))
        )

    if snapshot.closeout_status != CloseoutStatus.COMPLETED:
        reasons.append(block(BlockingReasonType.CLOSEOUT_INCOMPLETE))

    return PreconditionResult(tuple(reasons))
