"""Escrow State Machine Guards.

Uses python-statemachine to enforce legal state transitions at the domain level.
No matter what the API or a service does, an illegal transition (e.g.,
DRAFT -> ACTIVE, or REJECTED -> COMPLETED) raises TransitionNotAllowed before
any ORM status field is written.

Machines are instantiated per entity at its current status and fired to
validate a transition; the repositories then persist the resulting status.

Agreement transition table:
    DRAFT            -> PENDING_FUNDING  (request_funding)
    DRAFT            -> FUNDED           (fund)
    PENDING_FUNDING  -> FUNDED           (fund)
    FUNDED           -> ACTIVE           (first_release_completed)
    ACTIVE           -> COMPLETED        (complete)
    <non-terminal>   -> CANCELLED        (cancel)
    <non-terminal>   -> DISPUTED         (dispute)

Release transaction transition table:
    PENDING                -> VERIFICATION_REQUIRED  (require_verification)
    VERIFICATION_REQUIRED  -> PENDING_APPROVAL       (verification_completed)
    PENDING_APPROVAL       -> VERIFICATION_REQUIRED  (verification_reopened)
    PENDING_APPROVAL       -> APPROVED               (approve)
    APPROVED               -> COMPLETED              (transfer_confirmed)
    APPROVED               -> PENDING_APPROVAL       (transfer_failed)
    VERIFICATION_REQUIRED  -> REJECTED               (reject)
    PENDING_APPROVAL       -> REJECTED               (reject)
"""

from __future__ import annotations

from statemachine import State, StateMachine


class _GuardMixin:
    """Shared construction and helpers for the status guards."""

    def _start_at(self, current_status: str) -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        StateMachine.__init__(self, start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the status enum)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [event.name for event in self.allowed_events]


class AgreementStateMachine(_GuardMixin, StateMachine):
    """Guards escrow agreement lifecycle transitions.

    Usage:
        sm = AgreementStateMachine(current_status="DRAFT")
        sm.fund()
        sm.status  # "FUNDED"
    """

    # --- States ---
    DRAFT = State("DRAFT", initial=True)
    PENDING_FUNDING = State("PENDING_FUNDING")
    FUNDED = State("FUNDED")
    ACTIVE = State("ACTIVE")
    COMPLETED = State("COMPLETED", final=True)
    CANCELLED = State("CANCELLED", final=True)
    DISPUTED = State("DISPUTED", final=True)

    # --- Events / Transitions ---
    request_funding = DRAFT.to(PENDING_FUNDING)
    fund = DRAFT.to(FUNDED) | PENDING_FUNDING.to(FUNDED)
    first_release_completed = FUNDED.to(ACTIVE)
    complete = ACTIVE.to(COMPLETED)

    # Administrative exits from any non-terminal state
    cancel = (
        DRAFT.to(CANCELLED)
        | PENDING_FUNDING.to(CANCELLED)
        | FUNDED.to(CANCELLED)
        | ACTIVE.to(CANCELLED)
    )
    dispute = (
        DRAFT.to(DISPUTED)
        | PENDING_FUNDING.to(DISPUTED)
        | FUNDED.to(DISPUTED)
        | ACTIVE.to(DISPUTED)
    )

    def __init__(self, current_status: str = "DRAFT") -> None:
        self._start_at(current_status)


class ReleaseStateMachine(_GuardMixin, StateMachine):
    """Guards RELEASE transaction transitions.

    COMPLETED and REJECTED are final: once there, no event can fire.
    """

    # --- States ---
    PENDING = State("PENDING", initial=True)
    VERIFICATION_REQUIRED = State("VERIFICATION_REQUIRED")
    PENDING_APPROVAL = State("PENDING_APPROVAL")
    APPROVED = State("APPROVED")
    COMPLETED = State("COMPLETED", final=True)
    REJECTED = State("REJECTED", final=True)

    # --- Events / Transitions ---
    require_verification = PENDING.to(VERIFICATION_REQUIRED)
    verification_completed = VERIFICATION_REQUIRED.to(PENDING_APPROVAL)
    verification_reopened = PENDING_APPROVAL.to(VERIFICATION_REQUIRED)
    approve = PENDING_APPROVAL.to(APPROVED)
    transfer_confirmed = APPROVED.to(COMPLETED)
    transfer_failed = APPROVED.to(PENDING_APPROVAL)
    reject = VERIFICATION_REQUIRED.to(REJECTED) | PENDING_APPROVAL.to(REJECTED)

    def __init__(self, current_status: str = "PENDING") -> None:
        self._start_at(current_status)


def _fire(sm: StateMachine, event_name: str) -> None:
    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {sm.status}: {sm.get_allowed_events()}"
        )
    event_method()


def guard_transition(
    current_status: str,
    *event_names: str,
    machine: type[StateMachine] = ReleaseStateMachine,
) -> str:
    """Fire the events in order on a throwaway machine at current_status.

    Used before every persisted status change. Returns the resulting status,
    or raises InvalidStateTransitionError naming the first event that was
    refused.
    """
    from statemachine.exceptions import TransitionNotAllowed

    from milestone_escrow.domain.exceptions import InvalidStateTransitionError

    sm = machine(current_status=current_status)
    for event_name in event_names:
        try:
            _fire(sm, event_name)
        except (TransitionNotAllowed, ValueError) as err:
            raise InvalidStateTransitionError(sm.status, event_name) from err
    return sm.status
