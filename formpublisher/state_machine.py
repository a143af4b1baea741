"""Transition tables for orchestrator steps and signup request review.

Two small lifecycles are enforced here:

Step lifecycle (one per publish/withdraw step):
    pending -> in-progress -> completed | error

Review lifecycle (one per signup request):
    pending -> approved | rejected

Usage:
    >>> from formpublisher.state_machine import StepStateMachine
    >>> from formpublisher.types import StepId, StepStatus
    >>> step = StepStateMachine(step_id=StepId.SETTLE, label="Confirming")
    >>> step.transition_to(StepStatus.IN_PROGRESS)
    >>> step.can_transition_to(StepStatus.PENDING)
    False
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Set, TypeVar

from formpublisher.errors import FormPublisherError
from formpublisher.types import ErrorCode, RequestStatus, StepId, StepStatus


S = TypeVar("S", bound=Enum)


class InvalidStateTransitionError(FormPublisherError):
    """Raised when attempting an invalid state transition.

    Attributes:
        current_state: The current state before the attempted transition
        target_state: The target state that was attempted
    """

    code = ErrorCode.INVALID_TRANSITION

    def __init__(self, current_state: Enum, target_state: Enum, message: str):
        super().__init__(
            message,
            current_state=current_state.value,
            target_state=target_state.value,
        )
        self.current_state = current_state
        self.target_state = target_state


STEP_TRANSITIONS: Dict[StepStatus, Set[StepStatus]] = {
    StepStatus.PENDING: {StepStatus.IN_PROGRESS},
    StepStatus.IN_PROGRESS: {StepStatus.COMPLETED, StepStatus.ERROR},
    # Terminal states
    StepStatus.COMPLETED: set(),
    StepStatus.ERROR: set(),
}


REVIEW_TRANSITIONS: Dict[RequestStatus, Set[RequestStatus]] = {
    RequestStatus.PENDING: {RequestStatus.APPROVED, RequestStatus.REJECTED},
    RequestStatus.APPROVED: set(),
    RequestStatus.REJECTED: set(),
}


def check_transition(table: Mapping[S, Set[S]], current: S, target: S) -> None:
    """Raise InvalidStateTransitionError unless ``current -> target`` is allowed."""
    allowed = table.get(current, set())
    if target in allowed:
        return
    if allowed:
        message = (
            f"Invalid state transition: cannot transition from '{current.value}' "
            f"to '{target.value}'. Valid transitions from '{current.value}' are: "
            f"{', '.join(sorted(s.value for s in allowed))}"
        )
    else:
        message = (
            f"Invalid state transition: '{current.value}' is a terminal state, "
            f"no transitions are allowed."
        )
    raise InvalidStateTransitionError(
        current_state=current, target_state=target, message=message
    )


@dataclass
class StepStateMachine:
    """Status tracker for one named orchestrator step.

    Attributes:
        step_id: Stable step identifier
        label: Human-readable label for progress displays
        status: Current status
        error: Failure message once the step is in the error state

    Examples:
        >>> step = StepStateMachine(StepId.GENERATE_ARTIFACT, label="Generating")
        >>> step.transition_to(StepStatus.IN_PROGRESS)
        >>> step.transition_to(StepStatus.ERROR, error="boom")
        >>> step.to_dict()["status"], step.to_dict()["error"]
        ('error', 'boom')
    """

    step_id: StepId
    label: str
    status: StepStatus = StepStatus.PENDING
    error: Optional[str] = None

    def can_transition_to(self, target: StepStatus) -> bool:
        return target in STEP_TRANSITIONS.get(self.status, set())

    def transition_to(self, target: StepStatus, error: Optional[str] = None) -> None:
        """Move to ``target``, recording ``error`` when entering the error state.

        Raises:
            InvalidStateTransitionError: If the transition is not allowed
        """
        check_transition(STEP_TRANSITIONS, self.status, target)
        self.status = target
        if target == StepStatus.ERROR:
            self.error = error or "Step failed"

    def is_terminal(self) -> bool:
        return len(STEP_TRANSITIONS[self.status]) == 0

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.step_id.value,
            "label": self.label,
            "status": self.status.value,
        }
        if self.error is not None:
            result["error"] = self.error
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepStateMachine":
        return cls(
            step_id=StepId(data["id"]),
            label=data["label"],
            status=StepStatus(data["status"]),
            error=data.get("error"),
        )


__all__ = [
    "InvalidStateTransitionError",
    "STEP_TRANSITIONS",
    "REVIEW_TRANSITIONS",
    "check_transition",
    "StepStateMachine",
]
