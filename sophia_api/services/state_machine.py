from enum import Enum
from typing import Union


class RegistrationState(str, Enum):
    UNREGISTERED = "unregistered"
    AWAITING_EMAIL = "awaiting_email"
    REGISTERED = "registered"


class SessionStatus(str, Enum):
    COLLECTING = "collecting"
    VALIDATING = "validating"
    COMPLETE = "complete"
    GENERATING = "generating"
    SENT = "sent"
    ABANDONED = "abandoned"


REGISTRATION_TRANSITIONS = {
    RegistrationState.UNREGISTERED: [RegistrationState.AWAITING_EMAIL, RegistrationState.REGISTERED],
    RegistrationState.AWAITING_EMAIL: [RegistrationState.UNREGISTERED, RegistrationState.REGISTERED],
    RegistrationState.REGISTERED: [RegistrationState.UNREGISTERED],
}

SESSION_TRANSITIONS = {
    SessionStatus.COLLECTING: [SessionStatus.VALIDATING, SessionStatus.COMPLETE, SessionStatus.ABANDONED],
    SessionStatus.VALIDATING: [SessionStatus.COLLECTING, SessionStatus.COMPLETE, SessionStatus.ABANDONED],
    SessionStatus.COMPLETE: [SessionStatus.GENERATING, SessionStatus.ABANDONED],
    SessionStatus.GENERATING: [SessionStatus.SENT, SessionStatus.ABANDONED],
    SessionStatus.SENT: [],
    SessionStatus.ABANDONED: [],
}

ACTIVE_SESSION_STATUSES = (SessionStatus.COLLECTING, SessionStatus.VALIDATING)
IDLE_SWEEP_STATUSES = (SessionStatus.COLLECTING, SessionStatus.VALIDATING)

State = Union[RegistrationState, SessionStatus]


class InvalidTransitionError(Exception):
    def __init__(self, from_state: State, to_state: State):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def _table_for(state: State) -> dict:
    if isinstance(state, RegistrationState):
        return REGISTRATION_TRANSITIONS
    return SESSION_TRANSITIONS


def can_transition(from_state: State, to_state: State) -> bool:
    """Check if transition is valid."""
    if type(from_state) is not type(to_state):
        return False
    allowed = _table_for(from_state).get(from_state, [])
    return to_state in allowed


def transition(from_state: State, to_state: State) -> State:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def is_terminal(status: SessionStatus) -> bool:
    return not SESSION_TRANSITIONS.get(status)


def status_after_update(has_missing: bool, is_valid: bool) -> SessionStatus:
    """Target status for a session once its fields have been re-evaluated."""
    if has_missing:
        return SessionStatus.COLLECTING
    if is_valid:
        return SessionStatus.COMPLETE
    return SessionStatus.VALIDATING


def begin_generation(current: SessionStatus) -> SessionStatus:
    return transition(current, SessionStatus.GENERATING)


def mark_sent(current: SessionStatus) -> SessionStatus:
    return transition(current, SessionStatus.SENT)


def abandon(current: SessionStatus) -> SessionStatus:
    return transition(current, SessionStatus.ABANDONED)
