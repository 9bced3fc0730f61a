from app.services.contact_service import resolve_contact
from app.services.conversation_service import (
    ConversationResolution,
    ResolutionAction,
    resolve_conversation,
)
from app.services.event_classifier import classify
from app.services.message_service import (
    PersistResult,
    persist_inbound_message,
    persist_message,
)
from app.services.state_machine import (
    ConversationStatus,
    InvalidTransitionError,
    MessageStatus,
    can_transition,
    transition,
)
