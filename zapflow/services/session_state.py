from enum import Enum


class SessionStatus(str, Enum):
    PENDING = "pending"
    QR_CODE = "qr_code"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


# Self-transitions are refreshes (new QR, re-announced connection, repeated logout).
VALID_TRANSITIONS = {
    SessionStatus.PENDING: [SessionStatus.QR_CODE, SessionStatus.CONNECTED, SessionStatus.DISCONNECTED],
    SessionStatus.QR_CODE: [SessionStatus.QR_CODE, SessionStatus.CONNECTED, SessionStatus.DISCONNECTED],
    SessionStatus.CONNECTED: [SessionStatus.CONNECTED, SessionStatus.DISCONNECTED],
    SessionStatus.DISCONNECTED: [SessionStatus.DISCONNECTED, SessionStatus.QR_CODE, SessionStatus.CONNECTED],
}

EVENT_TARGETS = {
    "qr_code": SessionStatus.QR_CODE,
    "connected": SessionStatus.CONNECTED,
    "disconnected": SessionStatus.DISCONNECTED,
    "logged_out": SessionStatus.DISCONNECTED,
}


class InvalidSessionTransitionError(Exception):
    def __init__(self, from_state: SessionStatus, to_state: SessionStatus):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid session transition: {from_state.value} -> {to_state.value}")


def parse_status(value: str | None) -> SessionStatus:
    """Unknown or missing stored values are treated as pending."""
    try:
        return SessionStatus(value)
    except ValueError:
        return SessionStatus.PENDING


def can_transition(from_state: SessionStatus, to_state: SessionStatus) -> bool:
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: SessionStatus, to_state: SessionStatus) -> SessionStatus:
    """Perform state transition. Raises InvalidSessionTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidSessionTransitionError(from_state, to_state)
    return to_state
