"""Tests for ReleaseOrchestrator: request, approve, reject.

Covers the end-to-end $10,000 / $3,000 milestone scenario, the approval
gate, the dispute freeze, provider failures and timeouts, idempotent
retries, and writes that race an in-flight payout.
"""

from __future__ import annotations

import uuid
from decimal import Decimal

import pytest
from sqlalchemy import update

from milestone_escrow.domain.enums import (
    AgreementStatus,
    AuditAction,
    BlockingReasonType,
    MilestoneStatus,
    ResourceType,
    TransactionStatus,
)
from milestone_escrow.domain.exceptions import (
    ExternalProviderError,
    InvalidStateTransitionError,
    PreconditionBlockedError,
    ProviderTimeoutError,
    StaleStateError,
    TransactionNotFoundError,
    TransactionNotOpenForEvidenceError,
    UnauthorizedError,
    ValidationError,
)
from milestone_escrow.domain.preconditions import PreconditionResult
from milestone_escrow.infrastructure.database.orm_models import EscrowTransaction
from milestone_escrow.services.audit_trail import AuditTrail
from milestone_escrow.services.escrow_ledger import EscrowLedger
from milestone_escrow.services.payment_service import (
    SimulatedPaymentProvider,
    release_idempotency_key,
)
from milestone_escrow.services.precondition_service import PreconditionEvaluator
from milestone_escrow.services.receipt_gate import ReceiptData, ReceiptVerificationGate
from milestone_escrow.services.release_orchestrator import ReleaseOrchestrator


async def _verified_release(session, funded_project, actors, orchestrator):  # noqa: ANN001, ANN202
    """Request the foundation release and verify one receipt for it."""
    release = await orchestrator.request_release(funded_project.foundation.id, actors.payee)
    gate = ReceiptVerificationGate(session)
    receipt = await gate.attach_receipt(
        release.id,
        ReceiptData(file_url="s3://receipts/concrete.pdf", amount="3000.00"),
        actors.payee,
    )
    await gate.verify(receipt.id, True, actors.payer)
    return release


def _reason_types(exc: PreconditionBlockedError) -> list[BlockingReasonType]:
    return [reason.type for reason in exc.blocking_reasons]


class TestRequestRelease:
    @pytest.mark.asyncio
    async def test_request_holds_milestone_amount(
        self, session, funded_project, actors, provider
    ) -> None:
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await orchestrator.request_release(
            funded_project.foundation.id, actors.payee, notes="Foundation poured"
        )

        assert release.status == TransactionStatus.VERIFICATION_REQUIRED
        assert release.amount == Decimal("3000.00")
        assert release.version == 1
        assert release.requested_by == actors.payee.user_id

        balance = await EscrowLedger(session).get_balance(funded_project.agreement.id)
        assert balance.available == Decimal("7000.00")

    @pytest.mark.asyncio
    async def test_one_open_release_per_milestone(
        self, session, funded_project, actors, provider
    ) -> None:
        orchestrator = ReleaseOrchestrator(session, provider)
        await orchestrator.request_release(funded_project.foundation.id, actors.payee)

        with pytest.raises(PreconditionBlockedError) as exc_info:
            await orchestrator.request_release(funded_project.foundation.id, actors.payee)
        assert _reason_types(exc_info.value) == [BlockingReasonType.RELEASE_ALREADY_REQUESTED]

    @pytest.mark.asyncio
    async def test_unique_index_blocks_request_that_slipped_past_gate(
        self, session, funded_project, actors, provider, monkeypatch
    ) -> None:
        """Two requests that both passed the gate: the second loses on the index."""
        orchestrator = ReleaseOrchestrator(session, provider)
        first = await orchestrator.request_release(funded_project.foundation.id, actors.payee)

        async def always_allowed(self, milestone_id):  # noqa: ANN001, ANN202
            return PreconditionResult()

        monkeypatch.setattr(PreconditionEvaluator, "can_request_release", always_allowed)

        with pytest.raises(PreconditionBlockedError) as exc_info:
            await orchestrator.request_release(funded_project.foundation.id, actors.payee)
        assert _reason_types(exc_info.value) == [BlockingReasonType.RELEASE_ALREADY_REQUESTED]

        balance = await EscrowLedger(session).get_balance(funded_project.agreement.id)
        assert balance.pending_releases == first.amount
        assert balance.available == Decimal("7000.00")

    @pytest.mark.asyncio
    async def test_unfunded_agreement_blocks(self, session, factory, actors, provider) -> None:
        project = await factory.project()
        milestone = await factory.milestone(project, "Demo", "500.00")
        await EscrowLedger(session).create_agreement(
            project.id, actors.payer.user_id, actors.payee.user_id, "500.00", actors.payer
        )

        with pytest.raises(PreconditionBlockedError) as exc_info:
            await ReleaseOrchestrator(session, provider).request_release(milestone.id, actors.payee)
        assert _reason_types(exc_info.value) == [BlockingReasonType.ESCROW_NOT_FUNDED]

    @pytest.mark.asyncio
    async def test_unknown_milestone(self, session, actors, provider) -> None:
        with pytest.raises(PreconditionBlockedError) as exc_info:
            await ReleaseOrchestrator(session, provider).request_release(uuid.uuid4(), actors.payee)
        assert BlockingReasonType.MILESTONE_NOT_FOUND in _reason_types(exc_info.value)

    @pytest.mark.asyncio
    async def test_payer_cannot_request(self, session, funded_project, actors, provider) -> None:
        with pytest.raises(UnauthorizedError):
            await ReleaseOrchestrator(session, provider).request_release(
                funded_project.foundation.id, actors.payer
            )


class TestApprove:
    @pytest.mark.asyncio
    async def test_end_to_end_release(self, session, funded_project, actors, provider) -> None:
        """$10,000 funded, $3,000 milestone approved: $7,000 left, one transfer."""
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await _verified_release(session, funded_project, actors, orchestrator)
        assert release.status == TransactionStatus.PENDING_APPROVAL

        release = await orchestrator.approve(release.id, actors.payer, notes="Looks good")

        assert release.status == TransactionStatus.COMPLETED
        assert release.approved_by == actors.payer.user_id
        assert release.provider_transfer_id is not None
        assert release.version == 4

        assert len(provider.transfers) == 1
        transfer = provider.transfers[0]
        assert transfer.idempotency_key == release_idempotency_key(release.id)
        assert transfer.raw["amount"] == 300000
        assert transfer.raw["destination"] == "acct_contractor_1"
        assert transfer.raw["metadata"]["milestone_id"] == str(funded_project.foundation.id)

        balance = await EscrowLedger(session).get_balance(funded_project.agreement.id)
        assert balance.released == Decimal("3000.00")
        assert balance.pending_releases == Decimal("0.00")
        assert balance.available == Decimal("7000.00")

        assert funded_project.foundation.status == MilestoneStatus.PAID
        assert funded_project.foundation.released_by == actors.payer.user_id
        assert funded_project.agreement.status == AgreementStatus.ACTIVE

        events = await AuditTrail(session).list_events(ResourceType.ESCROW_TRANSACTION, release.id)
        assert [e.action for e in events] == [
            AuditAction.RELEASE_REQUESTED,
            AuditAction.RELEASE_APPROVED,
        ]

    @pytest.mark.asyncio
    async def test_unverified_release_is_blocked(
        self, session, funded_project, actors, provider
    ) -> None:
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await orchestrator.request_release(funded_project.foundation.id, actors.payee)

        with pytest.raises(PreconditionBlockedError) as exc_info:
            await orchestrator.approve(release.id, actors.payer)
        assert BlockingReasonType.VERIFICATION_INCOMPLETE in _reason_types(exc_info.value)
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_active_dispute_freezes_release(
        self, session, factory, funded_project, actors, provider
    ) -> None:
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await _verified_release(session, funded_project, actors, orchestrator)
        await factory.dispute(funded_project.project)

        with pytest.raises(PreconditionBlockedError) as exc_info:
            await orchestrator.approve(release.id, actors.payer)
        assert _reason_types(exc_info.value) == [BlockingReasonType.ACTIVE_DISPUTE]
        assert release.status == TransactionStatus.PENDING_APPROVAL
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_resolved_dispute_does_not_block(
        self, session, factory, funded_project, actors, provider
    ) -> None:
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await _verified_release(session, funded_project, actors, orchestrator)
        await factory.dispute(funded_project.project, status="RESOLVED")

        release = await orchestrator.approve(release.id, actors.payer)
        assert release.status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_automation_cannot_approve(
        self, session, funded_project, actors, provider
    ) -> None:
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await _verified_release(session, funded_project, actors, orchestrator)

        with pytest.raises(UnauthorizedError):
            await orchestrator.approve(release.id, actors.automation)
        with pytest.raises(UnauthorizedError):
            await orchestrator.approve(release.id, actors.payee)
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_admin_can_approve(self, session, funded_project, actors, provider) -> None:
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await _verified_release(session, funded_project, actors, orchestrator)
        release = await orchestrator.approve(release.id, actors.admin)
        assert release.approved_by == actors.admin.user_id

    @pytest.mark.asyncio
    async def test_missing_payout_account(self, session, funded_project, actors) -> None:
        provider = SimulatedPaymentProvider()
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await _verified_release(session, funded_project, actors, orchestrator)

        with pytest.raises(PreconditionBlockedError) as exc_info:
            await orchestrator.approve(release.id, actors.payer)
        assert _reason_types(exc_info.value) == [BlockingReasonType.PAYOUT_ACCOUNT_MISSING]

    @pytest.mark.asyncio
    async def test_payouts_disabled(self, session, funded_project, actors) -> None:
        provider = SimulatedPaymentProvider()
        provider.register_payout_account(actors.payee.user_id, "acct_x", payouts_enabled=False)
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await _verified_release(session, funded_project, actors, orchestrator)

        with pytest.raises(PreconditionBlockedError) as exc_info:
            await orchestrator.approve(release.id, actors.payer)
        assert _reason_types(exc_info.value) == [BlockingReasonType.PAYOUTS_NOT_ENABLED]

    @pytest.mark.asyncio
    async def test_completed_release_cannot_be_approved_again(
        self, session, funded_project, actors, provider
    ) -> None:
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await _verified_release(session, funded_project, actors, orchestrator)
        await orchestrator.approve(release.id, actors.payer)

        with pytest.raises(PreconditionBlockedError) as exc_info:
            await orchestrator.approve(release.id, actors.payer)
        assert BlockingReasonType.TRANSACTION_NOT_PENDING_APPROVAL in _reason_types(exc_info.value)
        assert len(provider.transfers) == 1


class TestProviderFailures:
    @pytest.mark.asyncio
    async def test_declined_transfer_leaves_release_pending(
        self, session, funded_project, actors, provider
    ) -> None:
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await _verified_release(session, funded_project, actors, orchestrator)
        provider.fail_next_transfer(ExternalProviderError("card_declined", provider_code="declined"))

        with pytest.raises(ExternalProviderError):
            await orchestrator.approve(release.id, actors.payer)

        assert release.status == TransactionStatus.PENDING_APPROVAL
        assert release.last_transfer_outcome == "FAILED"
        assert release.approved_by is None
        assert funded_project.foundation.status != MilestoneStatus.PAID
        events = await AuditTrail(session).list_events(ResourceType.ESCROW_TRANSACTION, release.id)
        assert events[-1].action == AuditAction.RELEASE_TRANSFER_FAILED
        assert events[-1].detail["outcome"] == "FAILED"

        # Retry succeeds once the provider recovers.
        release = await orchestrator.approve(release.id, actors.payer)
        assert release.status == TransactionStatus.COMPLETED
        assert release.last_transfer_outcome is None

    @pytest.mark.asyncio
    async def test_declined_release_can_still_be_rejected(
        self, session, funded_project, actors, provider
    ) -> None:
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await _verified_release(session, funded_project, actors, orchestrator)
        provider.fail_next_transfer()

        with pytest.raises(ExternalProviderError):
            await orchestrator.approve(release.id, actors.payer)

        release = await orchestrator.reject(release.id, actors.payer, reason="Payee closed account")
        assert release.status == TransactionStatus.REJECTED
        assert provider.transfers == []

    @pytest.mark.asyncio
    async def test_timeout_then_idempotent_retry(self, session, funded_project, actors) -> None:
        provider = SimulatedPaymentProvider(latency_seconds=0.2)
        provider.register_payout_account(actors.payee.user_id, "acct_contractor_1")
        orchestrator = ReleaseOrchestrator(session, provider, provider_timeout_seconds=0.05)
        release = await _verified_release(session, funded_project, actors, orchestrator)

        with pytest.raises(ProviderTimeoutError) as exc_info:
            await orchestrator.approve(release.id, actors.payer)
        assert exc_info.value.outcome == "UNKNOWN"
        assert release.status == TransactionStatus.PENDING_APPROVAL
        assert release.last_transfer_outcome == "UNKNOWN"

        # The provider did record the transfer; the retry replays it.
        provider.latency_seconds = 0.0
        release = await orchestrator.approve(release.id, actors.payer)

        assert release.status == TransactionStatus.COMPLETED
        assert release.last_transfer_outcome is None
        assert len(provider.transfers) == 1
        assert release.provider_transfer_id == provider.transfers[0].transfer_id

        events = await AuditTrail(session).list_events(ResourceType.ESCROW_TRANSACTION, release.id)
        approved = [e for e in events if e.action == AuditAction.RELEASE_APPROVED]
        assert approved[0].detail["replayed"] is True

    @pytest.mark.asyncio
    async def test_timed_out_release_cannot_be_rejected(
        self, session, funded_project, actors
    ) -> None:
        provider = SimulatedPaymentProvider(latency_seconds=0.2)
        provider.register_payout_account(actors.payee.user_id, "acct_contractor_1")
        orchestrator = ReleaseOrchestrator(session, provider, provider_timeout_seconds=0.05)
        release = await _verified_release(session, funded_project, actors, orchestrator)

        with pytest.raises(ProviderTimeoutError):
            await orchestrator.approve(release.id, actors.payer)

        with pytest.raises(PreconditionBlockedError) as exc_info:
            await orchestrator.reject(release.id, actors.admin, reason="Too slow")
        assert _reason_types(exc_info.value) == [BlockingReasonType.TRANSFER_OUTCOME_UNKNOWN]
        assert release.status == TransactionStatus.PENDING_APPROVAL


class _InterleavingProvider(SimulatedPaymentProvider):
    """Runs one callback while the first transfer is in flight and keeps its error."""

    def __init__(self, during_transfer) -> None:  # noqa: ANN001
        super().__init__()
        self._during_transfer = during_transfer
        self.interleaved_error: Exception | None = None

    async def create_transfer(self, **kwargs):  # noqa: ANN003, ANN204
        callback, self._during_transfer = self._during_transfer, None
        if callback is not None:
            try:
                await callback()
            except Exception as exc:  # noqa: BLE001
                self.interleaved_error = exc
        return await super().create_transfer(**kwargs)


class TestInFlightApproval:
    """Writes that land while the payout call is waiting on the provider."""

    @pytest.mark.asyncio
    async def test_second_approval_is_refused(self, session, funded_project, actors) -> None:
        release_holder: dict = {}

        async def approve_again() -> None:
            await orchestrator.approve(release_holder["id"], actors.admin)

        provider = _InterleavingProvider(approve_again)
        provider.register_payout_account(actors.payee.user_id, "acct_contractor_1")
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await _verified_release(session, funded_project, actors, orchestrator)
        release_holder["id"] = release.id

        release = await orchestrator.approve(release.id, actors.payer)

        assert isinstance(provider.interleaved_error, PreconditionBlockedError)
        assert _reason_types(provider.interleaved_error) == [
            BlockingReasonType.TRANSACTION_NOT_PENDING_APPROVAL
        ]
        assert release.status == TransactionStatus.COMPLETED
        assert release.approved_by == actors.payer.user_id
        assert provider.calls == 1
        assert len(provider.transfers) == 1

    @pytest.mark.asyncio
    async def test_rejection_cannot_override_a_payout(
        self, session, funded_project, actors
    ) -> None:
        release_holder: dict = {}

        async def reject_now() -> None:
            await orchestrator.reject(release_holder["id"], actors.admin, reason="dispute")

        provider = _InterleavingProvider(reject_now)
        provider.register_payout_account(actors.payee.user_id, "acct_contractor_1")
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await _verified_release(session, funded_project, actors, orchestrator)
        release_holder["id"] = release.id

        release = await orchestrator.approve(release.id, actors.payer)

        assert isinstance(provider.interleaved_error, InvalidStateTransitionError)
        assert release.status == TransactionStatus.COMPLETED
        assert release.provider_transfer_id == provider.transfers[0].transfer_id
        assert release.rejected_by is None

        balance = await EscrowLedger(session).get_balance(funded_project.agreement.id)
        assert balance.released == Decimal("3000.00")
        assert balance.available == Decimal("7000.00")

    @pytest.mark.asyncio
    async def test_new_receipt_is_refused_during_payout(
        self, session, funded_project, actors
    ) -> None:
        release_holder: dict = {}

        async def attach_late_receipt() -> None:
            await ReceiptVerificationGate(session).attach_receipt(
                release_holder["id"],
                ReceiptData(file_url="s3://receipts/late.pdf", amount="10.00"),
                actors.payee,
            )

        provider = _InterleavingProvider(attach_late_receipt)
        provider.register_payout_account(actors.payee.user_id, "acct_contractor_1")
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await _verified_release(session, funded_project, actors, orchestrator)
        release_holder["id"] = release.id

        release = await orchestrator.approve(release.id, actors.payer)

        assert isinstance(provider.interleaved_error, TransactionNotOpenForEvidenceError)
        assert release.status == TransactionStatus.COMPLETED
        assert release.verification_complete is True

    @pytest.mark.asyncio
    async def test_claim_lost_before_transfer_moves_no_money(
        self, session, funded_project, actors, provider, monkeypatch
    ) -> None:
        """A writer that bumps the version between read and claim wins."""
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await _verified_release(session, funded_project, actors, orchestrator)
        original_transition = orchestrator._transactions.transition

        async def racing_transition(transaction, **kwargs):  # noqa: ANN001, ANN003, ANN202
            await session.execute(
                update(EscrowTransaction)
                .where(EscrowTransaction.id == transaction.id)
                .values(version=EscrowTransaction.version + 1)
                .execution_options(synchronize_session=False)
            )
            return await original_transition(transaction, **kwargs)

        monkeypatch.setattr(orchestrator._transactions, "transition", racing_transition)

        with pytest.raises(StaleStateError):
            await orchestrator.approve(release.id, actors.payer)
        assert provider.calls == 0


class TestReject:
    @pytest.mark.asyncio
    async def test_reject_returns_funds(self, session, funded_project, actors, provider) -> None:
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await orchestrator.request_release(funded_project.foundation.id, actors.payee)

        release = await orchestrator.reject(release.id, actors.payer, reason="  No receipts  ")
        assert release.status == TransactionStatus.REJECTED
        assert release.rejection_reason == "No receipts"

        balance = await EscrowLedger(session).get_balance(funded_project.agreement.id)
        assert balance.available == Decimal("10000.00")

        # A rejected release no longer blocks a new request for the milestone.
        again = await orchestrator.request_release(funded_project.foundation.id, actors.payee)
        assert again.id != release.id

    @pytest.mark.asyncio
    async def test_empty_reason_changes_nothing(
        self, session, funded_project, actors, provider
    ) -> None:
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await _verified_release(session, funded_project, actors, orchestrator)
        before = await EscrowLedger(session).get_balance(funded_project.agreement.id)

        with pytest.raises(ValidationError):
            await orchestrator.reject(release.id, actors.payer, reason="   ")

        assert release.status == TransactionStatus.PENDING_APPROVAL
        after = await EscrowLedger(session).get_balance(funded_project.agreement.id)
        assert after == before

    @pytest.mark.asyncio
    async def test_cannot_reject_completed(self, session, funded_project, actors, provider) -> None:
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await _verified_release(session, funded_project, actors, orchestrator)
        await orchestrator.approve(release.id, actors.payer)

        with pytest.raises(InvalidStateTransitionError):
            await orchestrator.reject(release.id, actors.payer, reason="Changed my mind")

    @pytest.mark.asyncio
    async def test_automation_cannot_reject(
        self, session, funded_project, actors, provider
    ) -> None:
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await orchestrator.request_release(funded_project.foundation.id, actors.payee)
        with pytest.raises(UnauthorizedError):
            await orchestrator.reject(release.id, actors.automation, reason="Blurry photo")


class TestReleaseStatus:
    @pytest.mark.asyncio
    async def test_status_reports_gate(self, session, funded_project, actors, provider) -> None:
        orchestrator = ReleaseOrchestrator(session, provider)
        release = await orchestrator.request_release(funded_project.foundation.id, actors.payee)

        status = await orchestrator.get_release_status(release.id)
        assert status["status"] == "VERIFICATION_REQUIRED"
        assert "reject" in status["allowed_events"]
        assert status["release_gate"]["allowed"] is False

    @pytest.mark.asyncio
    async def test_unknown_release(self, session, provider) -> None:
        with pytest.raises(TransactionNotFoundError):
            await ReleaseOrchestrator(session, provider).get_release(uuid.uuid4())
