"""Domain enumerations for the milestone escrow service.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class AgreementStatus(enum.StrEnum):
    """Lifecycle states of an escrow agreement.

    State transitions are enforced by AgreementStateMachine.
    See domain/state_machine.py for the transition table.
    """

    DRAFT = "DRAFT"
    PENDING_FUNDING = "PENDING_FUNDING"
    FUNDED = "FUNDED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


# No further transactions may be recorded against these.
CLOSED_AGREEMENT_STATUSES = frozenset(
    {AgreementStatus.COMPLETED, AgreementStatus.CANCELLED, AgreementStatus.DISPUTED}
)
RELEASABLE_AGREEMENT_STATUSES = frozenset({AgreementStatus.FUNDED, AgreementStatus.ACTIVE})


class TransactionType(enum.StrEnum):
    DEPOSIT = "DEPOSIT"
    RELEASE = "RELEASE"
    REFUND = "REFUND"
    FEE = "FEE"
    ADJUSTMENT = "ADJUSTMENT"


class TransactionStatus(enum.StrEnum):
    """Lifecycle states of an escrow transaction.

    RELEASE transactions walk VERIFICATION_REQUIRED -> PENDING_APPROVAL ->
    APPROVED -> COMPLETED, or end in REJECTED. Ledger-recorded DEPOSIT and
    REFUND transactions are written directly as COMPLETED.
    """

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    VERIFICATION_REQUIRED = "VERIFICATION_REQUIRED"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"
    REFUNDED = "REFUNDED"


# Releases in these states still hold their amount against the available balance.
OPEN_RELEASE_STATUSES = frozenset(
    {
        TransactionStatus.PENDING,
        TransactionStatus.PROCESSING,
        TransactionStatus.VERIFICATION_REQUIRED,
        TransactionStatus.PENDING_APPROVAL,
        TransactionStatus.APPROVED,
    }
)
EVIDENCE_OPEN_STATUSES = frozenset(
    {TransactionStatus.VERIFICATION_REQUIRED, TransactionStatus.PENDING_APPROVAL}
)


class UserRole(enum.StrEnum):
    HOMEOWNER = "HOMEOWNER"
    CONTRACTOR = "CONTRACTOR"
    PROJECT_MANAGER = "PROJECT_MANAGER"
    ADMIN = "ADMIN"
    AUTOMATION = "AUTOMATION"


class BlockingReasonType(enum.StrEnum):
    """Every reason a gated action can be blocked.

    Messages are rendered by domain.preconditions.describe_reason, which
    matches exhaustively over this enum.
    """

    # Permit submission
    PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"
    CONTRACT_NOT_SIGNED = "CONTRACT_NOT_SIGNED"
    DESIGN_NOT_APPROVED = "DESIGN_NOT_APPROVED"
    READINESS_INCOMPLETE = "READINESS_INCOMPLETE"

    # Review submission
    PROJECT_NOT_COMPLETED = "PROJECT_NOT_COMPLETED"
    CLOSEOUT_INCOMPLETE = "CLOSEOUT_INCOMPLETE"
    FINAL_PAYMENT_NOT_RELEASED = "FINAL_PAYMENT_NOT_RELEASED"

    # Release request
    MILESTONE_NOT_FOUND = "MILESTONE_NOT_FOUND"
    ESCROW_NOT_FOUND = "ESCROW_NOT_FOUND"
    ESCROW_NOT_FUNDED = "ESCROW_NOT_FUNDED"
    RELEASE_ALREADY_REQUESTED = "RELEASE_ALREADY_REQUESTED"

    # Release approval
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    VERIFICATION_INCOMPLETE = "VERIFICATION_INCOMPLETE"
    TRANSACTION_NOT_PENDING_APPROVAL = "TRANSACTION_NOT_PENDING_APPROVAL"
    ACTIVE_DISPUTE = "ACTIVE_DISPUTE"
    AGREEMENT_CLOSED = "AGREEMENT_CLOSED"
    PAYOUT_ACCOUNT_MISSING = "PAYOUT_ACCOUNT_MISSING"
    PAYOUTS_NOT_ENABLED = "PAYOUTS_NOT_ENABLED"

    # Release rejection
    TRANSFER_OUTCOME_UNKNOWN = "TRANSFER_OUTCOME_UNKNOWN"

    # Agreement completion
    MILESTONES_UNPAID = "MILESTONES_UNPAID"


class AuditAction(enum.StrEnum):
    """Actions recorded in the append-only audit_events table.

    Every completed step produces exactly one event.
    """

    # Agreement lifecycle
    AGREEMENT_CREATED = "AGREEMENT_CREATED"
    AGREEMENT_FUNDING_REQUESTED = "AGREEMENT_FUNDING_REQUESTED"
    AGREEMENT_FUNDED = "AGREEMENT_FUNDED"
    AGREEMENT_COMPLETED = "AGREEMENT_COMPLETED"
    AGREEMENT_CANCELLED = "AGREEMENT_CANCELLED"
    AGREEMENT_DISPUTED = "AGREEMENT_DISPUTED"
    REFUND_RECORDED = "REFUND_RECORDED"

    # Release workflow
    RELEASE_REQUESTED = "RELEASE_REQUESTED"
    RECEIPT_ATTACHED = "RECEIPT_ATTACHED"
    RECEIPT_VERIFIED = "RECEIPT_VERIFIED"
    RECEIPT_REJECTED = "RECEIPT_REJECTED"
    RELEASE_APPROVED = "RELEASE_APPROVED"
    RELEASE_TRANSFER_FAILED = "RELEASE_TRANSFER_FAILED"
    RELEASE_REJECTED = "RELEASE_REJECTED"

    # Gated project actions
    PERMIT_SUBMITTED = "PERMIT_SUBMITTED"
    REVIEW_SUBMITTED = "REVIEW_SUBMITTED"

    # Payee onboarding
    PAYOUT_ACCOUNT_CREATED = "PAYOUT_ACCOUNT_CREATED"
    PAYOUT_ACCOUNT_UPDATED = "PAYOUT_ACCOUNT_UPDATED"


class ResourceType(enum.StrEnum):
    ESCROW_AGREEMENT = "EscrowAgreement"
    ESCROW_TRANSACTION = "EscrowTransaction"
    RECEIPT = "Receipt"
    PERMIT_SUBMISSION = "PermitSubmission"
    PROJECT_REVIEW = "ProjectReview"
    PAYOUT_ACCOUNT = "PayoutAccount"


# --- Collaborator read-model statuses ---


class ProjectStatus(enum.StrEnum):
    PLANNING = "PLANNING"
    IN_PROGRESS = "IN_PROGRESS"
    ON_HOLD = "ON_HOLD"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ContractStatus(enum.StrEnum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    PARTIALLY_SIGNED = "PARTIALLY_SIGNED"
    FULLY_SIGNED = "FULLY_SIGNED"
    VOID = "VOID"


class DesignStatus(enum.StrEnum):
    DRAFT = "DRAFT"
    IN_REVIEW = "IN_REVIEW"
    CHANGES_REQUESTED = "CHANGES_REQUESTED"
    APPROVED_FOR_PERMIT = "APPROVED_FOR_PERMIT"


class ReadinessStatus(enum.StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class CloseoutStatus(enum.StrEnum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class MilestoneStatus(enum.StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    PAID = "PAID"


class DisputeStatus(enum.StrEnum):
    OPEN = "OPEN"
    IN_REVIEW = "IN_REVIEW"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


ACTIVE_DISPUTE_STATUSES = frozenset({DisputeStatus.OPEN, DisputeStatus.IN_REVIEW})


class PermitStatus(enum.StrEnum):
    SUBMITTED = "SUBMITTED"
