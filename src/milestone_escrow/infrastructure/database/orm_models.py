"""SQLAlchemy 2.0 ORM models for the milestone escrow service.

Escrow tables (written only by the ledger and release orchestrator):
    1. escrow_agreements    One agreement per project between payer and payee.
    2. escrow_transactions  Deposits, releases, refunds, fees, adjustments.
    3. receipts             Evidence attached to RELEASE transactions.
    4. audit_events         Append-only audit log of every completed step.

Gated action tables:
    5. permit_submissions
    6. project_reviews

Collaborator read models (owned upstream, read-only here except
milestones.status which becomes PAID on release):
    projects, contract_agreements, design_versions, readiness_items,
    closeouts, disputes, milestones, payout_accounts

Design decisions:
    - UUIDs as primary keys; user ids are opaque strings from the auth gateway.
    - Decimal for money (no floating point rounding errors).
    - JSON columns (JSONB on PostgreSQL) for audit detail and OCR payloads.
    - CHECK constraints on statuses and amounts at DB level.
    - escrow_transactions.version backs the status+version guarded UPDATE.
    - Partial unique index: at most one non-REJECTED RELEASE per milestone.
    - audit_events is append-only: no UPDATE or DELETE at the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from milestone_escrow.domain.enums import (
    AgreementStatus,
    TransactionStatus,
    TransactionType,
)

JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(14, 2)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


def _in_clause(column: str, values) -> str:  # noqa: ANN001
    quoted = ", ".join(f"'{v.value}'" for v in values)
    return f"{column} IN ({quoted})"


# ---------------------------------------------------------------------------
# Collaborator read models
# ---------------------------------------------------------------------------
class Project(Base):
    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PLANNING")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    def __repr__(self) -> str:
        return f"<Project id={self.id} status={self.status}>"


class ContractAgreement(Base):
    """Construction contract; only the latest one per project counts."""

    __tablename__ = "contract_agreements"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="DRAFT")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_contract_project_created", "project_id", "created_at"),)


class DesignVersion(Base):
    """Design revision; the highest version per project counts."""

    __tablename__ = "design_versions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="DRAFT")

    __table_args__ = (
        UniqueConstraint("project_id", "version", name="uq_design_project_version"),
    )


class ReadinessItem(Base):
    __tablename__ = "readiness_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")

    __table_args__ = (Index("idx_readiness_project", "project_id"),)


class Closeout(Base):
    __tablename__ = "closeouts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="NOT_STARTED")
    final_payment_released: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class Dispute(Base):
    """An OPEN or IN_REVIEW dispute freezes escrow releases for its project."""

    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="OPEN")
    raised_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_dispute_project_status", "project_id", "status"),)


class Milestone(Base):
    __tablename__ = "milestones"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    contract_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("contract_agreements.id", ondelete="SET NULL"), nullable=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_milestone_positive_amount"),
        Index("idx_milestone_project", "project_id"),
    )

    def __repr__(self) -> str:
        return f"<Milestone id={self.id} name={self.name!r} status={self.status}>"


class PayoutAccountRecord(Base):
    """Payee directory: platform user -> payment provider account."""

    __tablename__ = "payout_accounts"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    provider_account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


# ---------------------------------------------------------------------------
# 1. escrow_agreements
# ---------------------------------------------------------------------------
class EscrowAgreement(Base):
    """Escrow agreement between a payer (homeowner) and a payee (contractor).

    Never deleted; terminal states are COMPLETED, CANCELLED and DISPUTED.
    """

    __tablename__ = "escrow_agreements"

    # --- Primary Key ---
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Ownership ---
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
        comment="One escrow agreement per project",
    )
    contract_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("contract_agreements.id", ondelete="SET NULL"), nullable=True
    )
    payer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payee_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # --- Financials ---
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    funded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    funded_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    funded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # --- Status (Enum-guarded) ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=AgreementStatus.DRAFT.value,
        comment="Current lifecycle state (guarded by AgreementStateMachine)",
    )

    # --- Timestamps ---
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(_in_clause("status", AgreementStatus), name="ck_agreement_valid_status"),
        CheckConstraint("total_amount > 0", name="ck_agreement_positive_total"),
        CheckConstraint(
            "funded_amount >= 0 AND funded_amount <= total_amount",
            name="ck_agreement_funded_bounds",
        ),
        Index("idx_agreement_status", "status"),
        Index("idx_agreement_payer", "payer_id"),
        Index("idx_agreement_payee", "payee_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowAgreement id={self.id} status={self.status} "
            f"total={self.total_amount} {self.currency}>"
        )


# ---------------------------------------------------------------------------
# 2. escrow_transactions
# ---------------------------------------------------------------------------
class EscrowTransaction(Base):
    """A money movement against an agreement.

    COMPLETED and REJECTED rows are immutable. Status changes go through
    TransactionRepository.transition, which bumps `version`.
    """

    __tablename__ = "escrow_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    agreement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_agreements.id", ondelete="RESTRICT"), nullable=False
    )
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("milestones.id", ondelete="SET NULL"), nullable=True
    )

    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=TransactionStatus.PENDING.value
    )
    verification_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # --- Workflow audit columns ---
    requested_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approval_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Payment provider references ---
    provider_transfer_id: Mapped[str | None] = mapped_column(
        String(128), nullable=True, comment="Set only on COMPLETED RELEASE"
    )
    provider_payment_id: Mapped[str | None] = mapped_column(
        String(128), nullable=True, comment="Inbound payment reference for DEPOSIT"
    )
    last_transfer_outcome: Mapped[str | None] = mapped_column(
        String(16), nullable=True, comment="FAILED or UNKNOWN after an unsuccessful payout"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(_in_clause("type", TransactionType), name="ck_transaction_valid_type"),
        CheckConstraint(
            _in_clause("status", TransactionStatus), name="ck_transaction_valid_status"
        ),
        # Only ADJUSTMENT may be negative (a debit correction).
        CheckConstraint(
            "amount > 0 OR (type = 'ADJUSTMENT' AND amount <> 0)",
            name="ck_transaction_amount_sign",
        ),
        CheckConstraint("version >= 1", name="ck_transaction_version"),
        Index("idx_transaction_agreement", "agreement_id"),
        Index("idx_transaction_status", "status"),
        Index(
            "uq_transaction_open_release_per_milestone",
            "milestone_id",
            unique=True,
            postgresql_where=text("type = 'RELEASE' AND status <> 'REJECTED'"),
            sqlite_where=text("type = 'RELEASE' AND status <> 'REJECTED'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowTransaction id={self.id} type={self.type} "
            f"status={self.status} v{self.version} amount={self.amount}>"
        )


# ---------------------------------------------------------------------------
# 3. receipts
# ---------------------------------------------------------------------------
class Receipt(Base):
    """Evidence for a RELEASE transaction. The core stores only the file reference."""

    __tablename__ = "receipts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_transactions.id", ondelete="CASCADE"), nullable=False
    )

    # --- File reference ---
    file_url: Mapped[str] = mapped_column(Text, nullable=False)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # --- Receipt metadata ---
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    vendor: Mapped[str | None] = mapped_column(String(200), nullable=True)
    receipt_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    ocr_extraction: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True, comment="Advisory OCR output; never decides verification"
    )
    uploaded_by: Mapped[str] = mapped_column(String(64), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    # --- Verification (null = pending) ---
    verified: Mapped[bool | None] = mapped_column(Boolean, nullable=True, default=None)
    verified_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verification_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_receipt_positive_amount"),
        Index("idx_receipt_transaction", "transaction_id"),
    )

    def __repr__(self) -> str:
        return f"<Receipt id={self.id} tx={self.transaction_id} verified={self.verified}>"


# ---------------------------------------------------------------------------
# 4. audit_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class AuditEvent(Base):
    """Immutable audit record of a completed workflow step.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "audit_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(64), nullable=False)
    detail: Mapped[dict | None] = mapped_column(JSONType, nullable=True, default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_audit_resource", "resource_type", "resource_id"),
        Index("idx_audit_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action} {self.resource_type}:{self.resource_id}>"


# ---------------------------------------------------------------------------
# 5-6. Gated actions
# ---------------------------------------------------------------------------
class PermitSubmission(Base):
    __tablename__ = "permit_submissions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    jurisdiction: Mapped[str | None] = mapped_column(String(200), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="SUBMITTED")
    submitted_by: Mapped[str] = mapped_column(String(64), nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class ProjectReview(Base):
    __tablename__ = "project_reviews"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    reviewer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_review_rating_range"),
        UniqueConstraint("project_id", "reviewer_id", name="uq_review_project_reviewer"),
    )


# ---------------------------------------------------------------------------
# Register the auto-update listener for updated_at
# ---------------------------------------------------------------------------
event.listen(EscrowAgreement, "before_update", _set_updated_at)
event.listen(EscrowTransaction, "before_update", _set_updated_at)
