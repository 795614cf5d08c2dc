"""Receipt Verification Gate: evidence collection for RELEASE transactions.

A release can only reach PENDING_APPROVAL once at least one receipt is
attached and every attached receipt is verified. Rejecting a receipt does
not fail the release: the payee uploads a corrected one and the gate
re-evaluates. The core stores file references only; bytes live in the
document store.

Evidence is accepted while the release is VERIFICATION_REQUIRED or
PENDING_APPROVAL. Any change that leaves verification incomplete moves a
PENDING_APPROVAL release back to VERIFICATION_REQUIRED.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from milestone_escrow.domain.enums import (
    EVIDENCE_OPEN_STATUSES,
    AuditAction,
    ResourceType,
    TransactionStatus,
    TransactionType,
    UserRole,
)
from milestone_escrow.domain.exceptions import (
    AgreementNotFoundError,
    ReceiptNotFoundError,
    TransactionNotFoundError,
    TransactionNotOpenForEvidenceError,
    ValidationError,
)
from milestone_escrow.domain.identity import Actor, ensure_can_act
from milestone_escrow.domain.state_machine import guard_transition
from milestone_escrow.infrastructure.database.orm_models import (
    EscrowAgreement,
    EscrowTransaction,
    Receipt,
)
from milestone_escrow.infrastructure.database.repositories import (
    AgreementRepository,
    ReceiptRepository,
    TransactionRepository,
)
from milestone_escrow.logging_config import get_logger
from milestone_escrow.services.audit_trail import AuditTrail
from milestone_escrow.services.escrow_ledger import ZERO, to_money

if TYPE_CHECKING:
    import uuid
    from datetime import date
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@dataclass(frozen=True)
class ReceiptData:
    """Receipt metadata supplied by the uploader. The file itself is already stored."""

    file_url: str
    amount: Decimal | str
    file_name: str | None = None
    file_type: str | None = None
    file_size: int | None = None
    vendor: str | None = None
    receipt_date: date | None = None
    description: str | None = None
    category: str | None = None
    ocr_extraction: dict | None = field(default=None)


@dataclass(frozen=True)
class VerificationStatus:
    transaction_id: uuid.UUID
    status: str
    verification_complete: bool
    total: int
    verified: int
    rejected: int
    pending: int

    def to_dict(self) -> dict:
        return {
            "transaction_id": str(self.transaction_id),
            "status": self.status,
            "verification_complete": self.verification_complete,
            "total": self.total,
            "verified": self.verified,
            "rejected": self.rejected,
            "pending": self.pending,
        }


def is_verification_complete(receipts: list[Receipt]) -> bool:
    """True iff there is at least one receipt and all of them are verified."""
    return bool(receipts) and all(r.verified is True for r in receipts)


class ReceiptVerificationGate:
    """Attaches and verifies receipts, keeping verification_complete in sync."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._transactions = TransactionRepository(session)
        self._receipts = ReceiptRepository(session)
        self._agreements = AgreementRepository(session)
        self._audit = AuditTrail(session)

    async def attach_receipt(
        self,
        transaction_id: uuid.UUID,
        receipt_data: ReceiptData,
        actor: Actor,
    ) -> Receipt:
        transaction = await self._get_release_or_raise(transaction_id)
        self._ensure_open_for_evidence(transaction)
        agreement = await self._get_agreement_or_raise(transaction)
        ensure_can_act(
            actor,
            "attach receipts",
            user_ids={agreement.payee_id, transaction.requested_by or agreement.payee_id},
            roles={UserRole.ADMIN, UserRole.PROJECT_MANAGER, UserRole.AUTOMATION},
            allow_automation=True,
        )

        if not receipt_data.file_url or not receipt_data.file_url.strip():
            raise ValidationError("file_url is required", field="file_url")
        amount = to_money(receipt_data.amount)
        if amount <= ZERO:
            raise ValidationError("Receipt amount must be positive", field="amount")

        receipt = Receipt(
            transaction_id=transaction.id,
            file_url=receipt_data.file_url.strip(),
            file_name=receipt_data.file_name,
            file_type=receipt_data.file_type,
            file_size=receipt_data.file_size,
            amount=amount,
            vendor=receipt_data.vendor,
            receipt_date=receipt_data.receipt_date,
            description=receipt_data.description,
            category=receipt_data.category,
            ocr_extraction=receipt_data.ocr_extraction,
            uploaded_by=actor.user_id,
        )
        receipt = await self._receipts.create(receipt)
        await self._sync_verification(transaction)

        await self._audit.record(
            actor.user_id,
            AuditAction.RECEIPT_ATTACHED,
            ResourceType.RECEIPT,
            receipt.id,
            {"transaction_id": str(transaction.id), "amount": str(amount)},
        )
        logger.info(
            "receipt.attached",
            transaction_id=str(transaction.id),
            receipt_id=str(receipt.id),
            amount=str(amount),
        )
        return receipt

    async def verify(
        self,
        receipt_id: uuid.UUID,
        verified: bool,
        verifier: Actor,
        notes: str | None = None,
    ) -> Receipt:
        """Record a verify/reject decision and re-evaluate the release's gate."""
        receipt = await self._receipts.get_by_id(receipt_id)
        if receipt is None:
            raise ReceiptNotFoundError(str(receipt_id))

        transaction = await self._get_release_or_raise(receipt.transaction_id)
        self._ensure_open_for_evidence(transaction)
        agreement = await self._get_agreement_or_raise(transaction)
        ensure_can_act(verifier, "verify receipts", user_ids={agreement.payer_id})

        receipt = await self._receipts.update_verification(
            receipt, verified=verified, verified_by=verifier.user_id, notes=notes
        )
        await self._sync_verification(transaction)

        action = AuditAction.RECEIPT_VERIFIED if verified else AuditAction.RECEIPT_REJECTED
        await self._audit.record(
            verifier.user_id,
            action,
            ResourceType.RECEIPT,
            receipt.id,
            {
                "transaction_id": str(transaction.id),
                "notes": notes,
                "verification_complete": transaction.verification_complete,
            },
        )
        logger.info(
            "receipt.verified" if verified else "receipt.rejected",
            receipt_id=str(receipt.id),
            transaction_id=str(transaction.id),
            transaction_status=transaction.status,
        )
        return receipt

    async def get_verification_status(self, transaction_id: uuid.UUID) -> VerificationStatus:
        transaction = await self._get_release_or_raise(transaction_id)
        receipts = await self._receipts.list_by_transaction(transaction.id)
        return VerificationStatus(
            transaction_id=transaction.id,
            status=transaction.status,
            verification_complete=transaction.verification_complete,
            total=len(receipts),
            verified=sum(1 for r in receipts if r.verified is True),
            rejected=sum(1 for r in receipts if r.verified is False),
            pending=sum(1 for r in receipts if r.verified is None),
        )

    async def list_receipts(self, transaction_id: uuid.UUID) -> list[Receipt]:
        transaction = await self._get_release_or_raise(transaction_id)
        return await self._receipts.list_by_transaction(transaction.id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _sync_verification(self, transaction: EscrowTransaction) -> None:
        """Recompute verification_complete and move the release between gates."""
        receipts = await self._receipts.list_by_transaction(transaction.id)
        complete = is_verification_complete(receipts)
        status = TransactionStatus(transaction.status)

        if complete and status == TransactionStatus.VERIFICATION_REQUIRED:
            event_name, new_status = "verification_completed", TransactionStatus.PENDING_APPROVAL
        elif not complete and status == TransactionStatus.PENDING_APPROVAL:
            event_name, new_status = "verification_reopened", TransactionStatus.VERIFICATION_REQUIRED
        else:
            return

        guard_transition(status.value, event_name)
        await self._transactions.transition(
            transaction,
            expected_status=status,
            expected_version=transaction.version,
            new_status=new_status,
            verification_complete=complete,
        )
        logger.info(
            "release.verification_changed",
            transaction_id=str(transaction.id),
            from_status=status.value,
            to_status=new_status.value,
        )

    async def _get_release_or_raise(self, transaction_id: uuid.UUID) -> EscrowTransaction:
        transaction = await self._transactions.get_by_id(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(str(transaction_id))
        if transaction.type != TransactionType.RELEASE.value:
            raise ValidationError(
                "Receipts only apply to RELEASE transactions", field="transaction_id"
            )
        return transaction

    async def _get_agreement_or_raise(self, transaction: EscrowTransaction) -> EscrowAgreement:
        agreement = await self._agreements.get_by_id(transaction.agreement_id)
        if agreement is None:
            raise AgreementNotFoundError(str(transaction.agreement_id))
        return agreement

    @staticmethod
    def _ensure_open_for_evidence(transaction: EscrowTransaction) -> None:
        if TransactionStatus(transaction.status) not in EVIDENCE_OPEN_STATUSES:
            raise TransactionNotOpenForEvidenceError(str(transaction.id), transaction.status)
