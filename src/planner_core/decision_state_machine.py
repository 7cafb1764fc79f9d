"""State machine validation for decision request status transitions.

A decision request starts pending and leaves it exactly once:
- pending → decided (resolved by an editor)
- pending → cancelled (withdrawn by an editor)
- pending → expired (expiry passed, applied lazily or by a sweep)

Terminal states accept no further transitions, not even to themselves, so a
second resolve or cancel is rejected rather than silently repeated.
"""
import logging

from .errors import InvalidStateError
from .models import DecisionStatus

logger = logging.getLogger("planner-core.decision_state_machine")


class StateTransitionError(InvalidStateError):
    """Raised when an invalid decision status transition is attempted."""

    def __init__(
        self,
        message: str,
        current_status: DecisionStatus,
        requested_status: DecisionStatus,
        allowed_transitions: list[DecisionStatus]
    ):
        super().__init__(message)
        self.current_status = current_status
        self.requested_status = requested_status
        self.allowed_transitions = allowed_transitions


# Maps current status → list of allowed next statuses
TRANSITION_MATRIX: dict[DecisionStatus, list[DecisionStatus]] = {
    DecisionStatus.PENDING: [
        DecisionStatus.DECIDED,
        DecisionStatus.CANCELLED,
        DecisionStatus.EXPIRED,
    ],
    DecisionStatus.DECIDED: [],
    DecisionStatus.CANCELLED: [],
    DecisionStatus.EXPIRED: [],
}

TERMINAL_STATUSES = frozenset(
    status for status, allowed in TRANSITION_MATRIX.items() if not allowed
)


def is_terminal(status: DecisionStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_transition_valid(
    current_status: DecisionStatus,
    new_status: DecisionStatus
) -> bool:
    """
    Check if a status transition is valid.

    Args:
        current_status: Current decision status
        new_status: Requested new decision status

    Returns:
        True if transition is allowed, False otherwise
    """
    return new_status in TRANSITION_MATRIX.get(current_status, [])


def validate_transition(
    current_status: DecisionStatus,
    new_status: DecisionStatus
) -> None:
    """
    Validate a status transition and raise exception if invalid.

    Args:
        current_status: Effective status of the request (expiry applied)
        new_status: Requested new status

    Raises:
        StateTransitionError: If the transition is not allowed
    """
    if is_transition_valid(current_status, new_status):
        logger.debug(f"Valid transition: {current_status.value} → {new_status.value}")
        return

    allowed_transitions = TRANSITION_MATRIX.get(current_status, [])

    if current_status == DecisionStatus.EXPIRED:
        error_msg = "Decision request has expired"
    elif is_terminal(current_status):
        if current_status == new_status:
            error_msg = f"Decision request is already {current_status.value}"
        else:
            error_msg = (
                f"Decision request is already {current_status.value} "
                f"and cannot become {new_status.value}"
            )
    else:
        allowed_names = [s.value for s in allowed_transitions]
        error_msg = (
            f"Invalid status transition: {current_status.value} → {new_status.value}. "
            f"From {current_status.value}, you can only transition to: {', '.join(allowed_names)}."
        )

    logger.warning(f"Blocked transition: {error_msg}")
    raise StateTransitionError(
        message=error_msg,
        current_status=current_status,
        requested_status=new_status,
        allowed_transitions=allowed_transitions
    )


def get_allowed_transitions(current_status: DecisionStatus) -> list[DecisionStatus]:
    """List the statuses reachable from current_status."""
    return list(TRANSITION_MATRIX.get(current_status, []))

