"""Domain exceptions for the milestone escrow service.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware.
Every one of them is scoped to a single request: the caller re-fetches state
or fixes its input and tries again.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from milestone_escrow.domain.preconditions import BlockingReason


class EscrowWorkflowError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "ESCROW_WORKFLOW_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Input Errors ---


class ValidationError(EscrowWorkflowError):
    """Raised for malformed input, before any state change."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message=message, code="VALIDATION_ERROR")
        self.field = field


# --- Gate Errors ---


class PreconditionBlockedError(EscrowWorkflowError):
    """Raised when an upstream gate is not satisfied.

    Always carries the full list of blocking reasons, never just the first.
    """

    def __init__(self, action: str, blocking_reasons: list[BlockingReason]) -> None:
        summary = "; ".join(reason.message for reason in blocking_reasons)
        super().__init__(
            message=f"{action} blocked: {summary}",
            code="PRECONDITION_BLOCKED",
        )
        self.action = action
        self.blocking_reasons = list(blocking_reasons)

    def reasons_as_dicts(self) -> list[dict[str, str]]:
        return [reason.to_dict() for reason in self.blocking_reasons]


class UnauthorizedError(EscrowWorkflowError):
    """Raised when an actor outside the permitted role set attempts an action."""

    def __init__(self, actor_id: str, action: str) -> None:
        super().__init__(
            message=f"User {actor_id} is not permitted to {action}",
            code="UNAUTHORIZED",
        )
        self.actor_id = actor_id
        self.action = action


# --- State Errors ---


class InvalidStateTransitionError(EscrowWorkflowError):
    """Raised when an attempted state transition is not allowed.

    Example: DRAFT -> ACTIVE (must be funded first).
    """

    def __init__(self, current_state: str, attempted: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {current_state} -> {attempted}",
            code="INVALID_STATE_TRANSITION",
        )
        self.current_state = current_state
        self.attempted_state = attempted


class StaleStateError(EscrowWorkflowError):
    """Raised when an optimistic-concurrency guarded update loses the race."""

    def __init__(self, transaction_id: str, expected_status: str, expected_version: int) -> None:
        super().__init__(
            message=(
                f"Transaction {transaction_id} changed concurrently "
                f"(expected {expected_status} at version {expected_version}); re-fetch and retry"
            ),
            code="STALE_STATE",
        )
        self.transaction_id = transaction_id
        self.expected_status = expected_status
        self.expected_version = expected_version


class AgreementClosedError(EscrowWorkflowError):
    """Raised when recording against a COMPLETED, CANCELLED or DISPUTED agreement."""

    def __init__(self, agreement_id: str, status: str) -> None:
        super().__init__(
            message=f"Escrow agreement {agreement_id} is {status}; no further transactions allowed",
            code="AGREEMENT_CLOSED",
        )
        self.agreement_id = agreement_id
        self.status = status


class TransactionNotOpenForEvidenceError(EscrowWorkflowError):
    """Raised when receipts are attached or verified outside the evidence window."""

    def __init__(self, transaction_id: str, status: str) -> None:
        super().__init__(
            message=f"Transaction {transaction_id} is {status} and no longer accepts evidence",
            code="TRANSACTION_NOT_OPEN_FOR_EVIDENCE",
        )
        self.transaction_id = transaction_id
        self.status = status


# --- Ledger Errors ---


class InsufficientFundsError(EscrowWorkflowError):
    """Raised when a transaction would drive the available balance negative."""

    def __init__(self, required: str, available: str) -> None:
        super().__init__(
            message=f"Insufficient escrow funds: required {required}, available {available}",
            code="INSUFFICIENT_FUNDS",
        )
        self.required = required
        self.available = available


# --- Payment Provider Errors ---


class ExternalProviderError(EscrowWorkflowError):
    """Raised when the payment provider confirms a transfer failed.

    The release transaction stays in PENDING_APPROVAL; approve may be retried.
    """

    outcome = "FAILED"

    def __init__(self, message: str, provider_code: str | None = None) -> None:
        super().__init__(message=message, code="EXTERNAL_PROVIDER_ERROR")
        self.provider_code = provider_code


class ProviderTimeoutError(ExternalProviderError):
    """Raised when the provider did not answer in time; the outcome is unknown.

    Retrying approve is safe because transfers carry the transaction id as
    their idempotency key.
    """

    outcome = "UNKNOWN"

    def __init__(self, message: str) -> None:
        super().__init__(message=message)
        self.code = "EXTERNAL_PROVIDER_TIMEOUT"


# --- Lookup Errors ---


class NotFoundError(EscrowWorkflowError):
    """Base for missing entities."""

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(
            message=f"{resource} not found: {resource_id}",
            code=f"{resource.upper().replace(' ', '_')}_NOT_FOUND",
        )
        self.resource_id = resource_id


class AgreementNotFoundError(NotFoundError):
    def __init__(self, agreement_id: str) -> None:
        super().__init__("Agreement", agreement_id)


class TransactionNotFoundError(NotFoundError):
    def __init__(self, transaction_id: str) -> None:
        super().__init__("Transaction", transaction_id)


class ReceiptNotFoundError(NotFoundError):
    def __init__(self, receipt_id: str) -> None:
        super().__init__("Receipt", receipt_id)


class MilestoneNotFoundError(NotFoundError):
    def __init__(self, milestone_id: str) -> None:
        super().__init__("Milestone", milestone_id)


class ProjectNotFoundError(NotFoundError):
    def __init__(self, project_id: str) -> None:
        super().__init__("Project", project_id)


class PayoutAccountNotFoundError(NotFoundError):
    def __init__(self, user_id: str) -> None:
        super().__init__("Payout account", user_id)


# --- Provider Integration Errors ---


class ProviderNotConfiguredError(EscrowWorkflowError):
    """Raised when an operation needs provider credentials the service was not given."""

    def __init__(self, setting: str) -> None:
        super().__init__(
            message=f"Payment provider is not configured: {setting} is not set",
            code="PROVIDER_NOT_CONFIGURED",
        )
        self.setting = setting


class WebhookVerificationError(EscrowWorkflowError):
    """Raised when a provider webhook fails signature verification."""

    def __init__(self, reason: str) -> None:
        super().__init__(message=f"Webhook rejected: {reason}", code="WEBHOOK_SIGNATURE_INVALID")
