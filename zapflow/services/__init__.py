from zapflow.services.identity_service import (
    Resolution,
    extract_identity,
    resolve_conversation,
)
from zapflow.services.message_service import (
    apply_status_update,
    record_message,
    record_outgoing_reply,
)
from zapflow.services.session_service import apply_session_event, get_session
from zapflow.services.session_state import (
    InvalidSessionTransitionError,
    SessionStatus,
    can_transition,
    transition,
)
