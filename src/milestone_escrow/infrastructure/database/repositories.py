"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update

from milestone_escrow.domain.enums import (
    ACTIVE_DISPUTE_STATUSES,
    MilestoneStatus,
    ReadinessStatus,
    TransactionStatus,
    TransactionType,
)
from milestone_escrow.domain.exceptions import StaleStateError
from milestone_escrow.infrastructure.database.orm_models import (
    AuditEvent,
    Closeout,
    ContractAgreement,
    DesignVersion,
    Dispute,
    EscrowAgreement,
    EscrowTransaction,
    Milestone,
    PayoutAccountRecord,
    PermitSubmission,
    Project,
    ProjectReview,
    ReadinessItem,
    Receipt,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.domain.enums import AgreementStatus


class AgreementRepository:
    """Data access for escrow agreements."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, agreement: EscrowAgreement) -> EscrowAgreement:
        """Insert a new escrow agreement."""
        self._session.add(agreement)
        await self._session.flush()
        return agreement

    async def get_by_id(self, agreement_id: uuid.UUID) -> EscrowAgreement | None:
        result = await self._session.execute(
            select(EscrowAgreement).where(EscrowAgreement.id == agreement_id)
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, agreement_id: uuid.UUID) -> EscrowAgreement | None:
        """Fetch and row-lock an agreement (SELECT ... FOR UPDATE on PostgreSQL).

        Serializes balance checks on one agreement. Dialects without row locks
        (SQLite) render a plain SELECT.
        """
        result = await self._session.execute(
            select(EscrowAgreement)
            .where(EscrowAgreement.id == agreement_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_project(self, project_id: uuid.UUID) -> EscrowAgreement | None:
        result = await self._session.execute(
            select(EscrowAgreement).where(EscrowAgreement.project_id == project_id)
        )
        return result.scalar_one_or_none()

    async def update_status(
        self,
        agreement: EscrowAgreement,
        new_status: AgreementStatus,
        **fields: Any,
    ) -> EscrowAgreement:
        """Update the status of an agreement (call AFTER state machine validation)."""
        agreement.status = new_status.value
        for name, value in fields.items():
            setattr(agreement, name, value)
        agreement.updated_at = datetime.now(UTC)
        await self._session.flush()
        return agreement


class TransactionRepository:
    """Data access for escrow transactions."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, transaction: EscrowTransaction) -> EscrowTransaction:
        self._session.add(transaction)
        await self._session.flush()
        return transaction

    async def get_by_id(self, transaction_id: uuid.UUID) -> EscrowTransaction | None:
        result = await self._session.execute(
            select(EscrowTransaction).where(EscrowTransaction.id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def list_by_agreement(self, agreement_id: uuid.UUID) -> list[EscrowTransaction]:
        """Fetch all transactions for an agreement, oldest first."""
        result = await self._session.execute(
            select(EscrowTransaction)
            .where(EscrowTransaction.agreement_id == agreement_id)
            .order_by(EscrowTransaction.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_live_release_for_milestone(
        self, milestone_id: uuid.UUID
    ) -> EscrowTransaction | None:
        """The milestone's RELEASE that is open or paid (anything but REJECTED)."""
        result = await self._session.execute(
            select(EscrowTransaction).where(
                EscrowTransaction.milestone_id == milestone_id,
                EscrowTransaction.type == TransactionType.RELEASE.value,
                EscrowTransaction.status != TransactionStatus.REJECTED.value,
            )
        )
        return result.scalars().first()

    async def sum_by_type_and_status(
        self, agreement_id: uuid.UUID
    ) -> dict[tuple[str, str], Decimal]:
        """Sum amounts grouped by (type, status) in a single query.

        One statement gives the balance computation a consistent snapshot.
        """
        result = await self._session.execute(
            select(
                EscrowTransaction.type,
                EscrowTransaction.status,
                func.sum(EscrowTransaction.amount),
            )
            .where(EscrowTransaction.agreement_id == agreement_id)
            .group_by(EscrowTransaction.type, EscrowTransaction.status)
        )
        return {
            (tx_type, status): Decimal(str(total or 0))
            for tx_type, status, total in result.all()
        }

    async def transition(
        self,
        transaction: EscrowTransaction,
        *,
        expected_status: TransactionStatus,
        expected_version: int,
        new_status: TransactionStatus,
        **values: Any,
    ) -> EscrowTransaction:
        """Compare-and-set a status change (call AFTER state machine validation).

        The UPDATE only matches while the row still has the status and version
        the caller read. A concurrent writer that got there first bumps the
        version, so this write matches zero rows and raises StaleStateError.

        Raises:
            StaleStateError: If the row changed since the caller read it.
        """
        result = await self._session.execute(
            update(EscrowTransaction)
            .where(
                EscrowTransaction.id == transaction.id,
                EscrowTransaction.status == expected_status.value,
                EscrowTransaction.version == expected_version,
            )
            .values(
                status=new_status.value,
                version=EscrowTransaction.version + 1,
                updated_at=datetime.now(UTC),
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleStateError(str(transaction.id), expected_status.value, expected_version)

        await self._session.refresh(transaction)
        return transaction


class ReceiptRepository:
    """Data access for release receipts."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, receipt: Receipt) -> Receipt:
        self._session.add(receipt)
        await self._session.flush()
        return receipt

    async def get_by_id(self, receipt_id: uuid.UUID) -> Receipt | None:
        result = await self._session.execute(select(Receipt).where(Receipt.id == receipt_id))
        return result.scalar_one_or_none()

    async def list_by_transaction(self, transaction_id: uuid.UUID) -> list[Receipt]:
        """Fetch all receipts for a transaction in upload order."""
        result = await self._session.execute(
            select(Receipt)
            .where(Receipt.transaction_id == transaction_id)
            .order_by(Receipt.uploaded_at.asc())
        )
        return list(result.scalars().all())

    async def update_verification(
        self,
        receipt: Receipt,
        verified: bool,
        verified_by: str,
        notes: str | None,
    ) -> Receipt:
        """Record the verification decision on a receipt."""
        receipt.verified = verified
        receipt.verified_by = verified_by
        receipt.verified_at = datetime.now(UTC)
        receipt.verification_notes = notes
        await self._session.flush()
        return receipt


class MilestoneRepository:
    """Data access for project milestones (status is the only field written here)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, milestone_id: uuid.UUID) -> Milestone | None:
        result = await self._session.execute(select(Milestone).where(Milestone.id == milestone_id))
        return result.scalar_one_or_none()

    async def list_by_project(self, project_id: uuid.UUID) -> list[Milestone]:
        result = await self._session.execute(
            select(Milestone)
            .where(Milestone.project_id == project_id)
            .order_by(Milestone.sort_order.asc())
        )
        return list(result.scalars().all())

    async def mark_paid(self, milestone: Milestone, released_by: str) -> Milestone:
        milestone.status = MilestoneStatus.PAID.value
        milestone.paid_at = datetime.now(UTC)
        milestone.released_by = released_by
        await self._session.flush()
        return milestone


class ProjectReadRepository:
    """Read-only queries over collaborator-owned project state."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_project(self, project_id: uuid.UUID) -> Project | None:
        result = await self._session.execute(select(Project).where(Project.id == project_id))
        return result.scalar_one_or_none()

    async def latest_contract(self, project_id: uuid.UUID) -> ContractAgreement | None:
        result = await self._session.execute(
            select(ContractAgreement)
            .where(ContractAgreement.project_id == project_id)
            .order_by(ContractAgreement.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def latest_design(self, project_id: uuid.UUID) -> DesignVersion | None:
        result = await self._session.execute(
            select(DesignVersion)
            .where(DesignVersion.project_id == project_id)
            .order_by(DesignVersion.version.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def incomplete_required_readiness(self, project_id: uuid.UUID) -> list[str]:
        """Titles of required readiness items that are not COMPLETED."""
        result = await self._session.execute(
            select(ReadinessItem.title)
            .where(
                ReadinessItem.project_id == project_id,
                ReadinessItem.required.is_(True),
                ReadinessItem.status != ReadinessStatus.COMPLETED.value,
            )
            .order_by(ReadinessItem.title.asc())
        )
        return list(result.scalars().all())

    async def get_closeout(self, project_id: uuid.UUID) -> Closeout | None:
        result = await self._session.execute(
            select(Closeout).where(Closeout.project_id == project_id)
        )
        return result.scalar_one_or_none()

    async def has_active_dispute(self, project_id: uuid.UUID) -> bool:
        result = await self._session.execute(
            select(func.count(Dispute.id)).where(
                Dispute.project_id == project_id,
                Dispute.status.in_([s.value for s in ACTIVE_DISPUTE_STATUSES]),
            )
        )
        return int(result.scalar_one()) > 0


class PayoutAccountRepository:
    """Data access for the payee payout-account directory."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, user_id: str) -> PayoutAccountRecord | None:
        result = await self._session.execute(
            select(PayoutAccountRecord).where(PayoutAccountRecord.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_by_provider_account(self, provider_account_id: str) -> PayoutAccountRecord | None:
        result = await self._session.execute(
            select(PayoutAccountRecord).where(
                PayoutAccountRecord.provider_account_id == provider_account_id
            )
        )
        return result.scalar_one_or_none()

    async def upsert(
        self, user_id: str, provider_account_id: str, payouts_enabled: bool
    ) -> PayoutAccountRecord:
        record = await self.get(user_id)
        if record is None:
            record = PayoutAccountRecord(user_id=user_id)
            self._session.add(record)
        record.provider_account_id = provider_account_id
        record.payouts_enabled = payouts_enabled
        await self._session.flush()
        return record


class AuditRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        actor_id: str,
        action: str,
        resource_type: str,
        resource_id: str,
        detail: dict | None = None,
    ) -> AuditEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = AuditEvent(
            actor_id=actor_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            detail=detail,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def list_for_resource(self, resource_type: str, resource_id: str) -> list[AuditEvent]:
        """Fetch all events for one resource in chronological order."""
        result = await self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.resource_type == resource_type,
                AuditEvent.resource_id == resource_id,
            )
            .order_by(AuditEvent.created_at.asc())
        )
        return list(result.scalars().all())

    async def feed(self, limit: int, after: datetime | None = None) -> list[AuditEvent]:
        """Fetch the most recent events, newest first, optionally only those after a time."""
        stmt = select(AuditEvent)
        if after is not None:
            stmt = stmt.where(AuditEvent.created_at > after)
        result = await self._session.execute(
            stmt.order_by(AuditEvent.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())


class PermitRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, permit: PermitSubmission) -> PermitSubmission:
        self._session.add(permit)
        await self._session.flush()
        return permit


class ReviewRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, review: ProjectReview) -> ProjectReview:
        self._session.add(review)
        await self._session.flush()
        return review

    async def get_by_reviewer(
        self, project_id: uuid.UUID, reviewer_id: str
    ) -> ProjectReview | None:
        result = await self._session.execute(
            select(ProjectReview).where(
                ProjectReview.project_id == project_id,
                ProjectReview.reviewer_id == reviewer_id,
            )
        )
        return result.scalar_one_or_none()
