"""Tests for the pure precondition rules.

Each rule collects every failing reason, not just the first.
"""

from __future__ import annotations

from milestone_escrow.domain.enums import (
    AgreementStatus,
    BlockingReasonType,
    CloseoutStatus,
    ContractStatus,
    DesignStatus,
    ProjectStatus,
    TransactionStatus,
)
from milestone_escrow.domain.preconditions import (
    AgreementCompletionSnapshot,
    PayoutSnapshot,
    PermitSnapshot,
    ReleaseApprovalSnapshot,
    ReleaseRequestSnapshot,
    ReviewSnapshot,
    describe_reason,
    evaluate_agreement_completion,
    evaluate_payout_account,
    evaluate_permit_submission,
    evaluate_release_approval,
    evaluate_release_request,
    evaluate_review_submission,
)


class TestPermitSubmission:
    def test_allowed_when_everything_is_ready(self) -> None:
        result = evaluate_permit_submission(
            PermitSnapshot(
                project_exists=True,
                latest_contract_status=ContractStatus.FULLY_SIGNED,
                latest_design_status=DesignStatus.APPROVED_FOR_PERMIT,
            )
        )
        assert result.allowed
        assert result.to_dict() == {"allowed": True, "blocking_reasons": []}

    def test_reports_all_reasons(self) -> None:
        result = evaluate_permit_submission(
            PermitSnapshot(
                project_exists=True,
                latest_contract_status=ContractStatus.PARTIALLY_SIGNED,
                latest_design_status=DesignStatus.IN_REVIEW,
                incomplete_required_items=("Site survey", "Soil test"),
            )
        )
        assert not result.allowed
        assert result.reason_types == [
            BlockingReasonType.CONTRACT_NOT_SIGNED,
            BlockingReasonType.DESIGN_NOT_APPROVED,
            BlockingReasonType.READINESS_INCOMPLETE,
        ]
        assert "2 remaining: Site survey, Soil test" in result.blocking_reasons[2].message

    def test_missing_project(self) -> None:
        result = evaluate_permit_submission(PermitSnapshot(project_exists=False))
        assert BlockingReasonType.PROJECT_NOT_FOUND in result.reason_types


class TestReviewSubmission:
    def test_allowed_after_closeout_and_final_payment(self) -> None:
        result = evaluate_review_submission(
            ReviewSnapshot(
                project_exists=True,
                project_status=ProjectStatus.COMPLETED,
                closeout_status=CloseoutStatus.COMPLETED,
                final_payment_released=True,
            )
        )
        assert result.allowed

    def test_final_payment_pending(self) -> None:
        result = evaluate_review_submission(
            ReviewSnapshot(
                project_exists=True,
                project_status=ProjectStatus.COMPLETED,
                closeout_status=CloseoutStatus.COMPLETED,
                final_payment_released=False,
            )
        )
        assert result.reason_types == [BlockingReasonType.FINAL_PAYMENT_NOT_RELEASED]


class TestReleaseRequest:
    def test_allowed_on_funded_agreement(self) -> None:
        result = evaluate_release_request(
            ReleaseRequestSnapshot(milestone_exists=True, agreement_status=AgreementStatus.FUNDED)
        )
        assert result.allowed

    def test_unfunded_agreement(self) -> None:
        result = evaluate_release_request(
            ReleaseRequestSnapshot(milestone_exists=True, agreement_status=AgreementStatus.DRAFT)
        )
        assert result.reason_types == [BlockingReasonType.ESCROW_NOT_FUNDED]

    def test_closed_agreement_and_open_release_and_dispute(self) -> None:
        result = evaluate_release_request(
            ReleaseRequestSnapshot(
                milestone_exists=True,
                agreement_status=AgreementStatus.DISPUTED,
                has_open_release=True,
                has_active_dispute=True,
            )
        )
        assert result.reason_types == [
            BlockingReasonType.AGREEMENT_CLOSED,
            BlockingReasonType.RELEASE_ALREADY_REQUESTED,
            BlockingReasonType.ACTIVE_DISPUTE,
        ]


class TestReleaseApproval:
    def test_missing_transaction_short_circuits(self) -> None:
        result = evaluate_release_approval(ReleaseApprovalSnapshot(transaction_exists=False))
        assert result.reason_types == [BlockingReasonType.TRANSACTION_NOT_FOUND]

    def test_allowed(self) -> None:
        result = evaluate_release_approval(
            ReleaseApprovalSnapshot(
                transaction_exists=True,
                transaction_status=TransactionStatus.PENDING_APPROVAL,
                verification_complete=True,
                agreement_status=AgreementStatus.ACTIVE,
            )
        )
        assert result.allowed

    def test_unverified_and_frozen(self) -> None:
        result = evaluate_release_approval(
            ReleaseApprovalSnapshot(
                transaction_exists=True,
                transaction_status=TransactionStatus.VERIFICATION_REQUIRED,
                verification_complete=False,
                agreement_status=AgreementStatus.FUNDED,
                has_active_dispute=True,
            )
        )
        assert result.reason_types == [
            BlockingReasonType.VERIFICATION_INCOMPLETE,
            BlockingReasonType.TRANSACTION_NOT_PENDING_APPROVAL,
            BlockingReasonType.ACTIVE_DISPUTE,
        ]


class TestPayoutAndCompletion:
    def test_missing_account(self) -> None:
        result = evaluate_payout_account(PayoutSnapshot())
        assert result.reason_types == [BlockingReasonType.PAYOUT_ACCOUNT_MISSING]

    def test_payouts_disabled(self) -> None:
        result = evaluate_payout_account(PayoutSnapshot(account_id="acct_1"))
        assert result.reason_types == [BlockingReasonType.PAYOUTS_NOT_ENABLED]
        assert "acct_1" in result.blocking_reasons[0].message

    def test_completion_lists_unpaid_milestones(self) -> None:
        result = evaluate_agreement_completion(
            AgreementCompletionSnapshot(
                unpaid_milestones=("Framing",), closeout_status=CloseoutStatus.IN_PROGRESS
            )
        )
        assert result.reason_types == [
            BlockingReasonType.MILESTONES_UNPAID,
            BlockingReasonType.CLOSEOUT_INCOMPLETE,
        ]
        assert "Framing" in result.blocking_reasons[0].message


def test_every_reason_has_a_message() -> None:
    for reason_type in BlockingReasonType:
        assert describe_reason(reason_type)
