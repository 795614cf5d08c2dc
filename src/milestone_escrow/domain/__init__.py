"""Domain layer: pure business logic with zero framework dependencies."""

from milestone_escrow.domain.enums import (
    AgreementStatus,
    AuditAction,
    BlockingReasonType,
    TransactionStatus,
    TransactionType,
    UserRole,
)
from milestone_escrow.domain.exceptions import (
    EscrowWorkflowError,
    InvalidStateTransitionError,
    NotFoundError,
    PreconditionBlockedError,
)
from milestone_escrow.domain.identity import Actor
from milestone_escrow.domain.payment_protocol import (
    PaymentProvider,
    PayoutAccount,
    TransferResult,
)
from milestone_escrow.domain.preconditions import BlockingReason, PreconditionResult
from milestone_escrow.domain.state_machine import (
    AgreementStateMachine,
    ReleaseStateMachine,
)

__all__ = [
    "AgreementStatus",
    "AuditAction",
    "BlockingReasonType",
    "TransactionStatus",
    "TransactionType",
    "UserRole",
    "EscrowWorkflowError",
    "InvalidStateTransitionError",
    "NotFoundError",
    "PreconditionBlockedError",
    "Actor",
    "PaymentProvider",
    "PayoutAccount",
    "TransferResult",
    "BlockingReason",
    "PreconditionResult",
    "AgreementStateMachine",
    "ReleaseStateMachine",
]
