from enum import Enum
from typing import Union


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class ConversationStatus(str, Enum):
    OPEN = "open"
    PENDING = "pending"
    CLOSED = "closed"


# Media rows start at PENDING and settle exactly once.
VALID_TRANSITIONS = {
    MessageStatus.PENDING: [MessageStatus.DELIVERED, MessageStatus.FAILED],
    MessageStatus.SENT: [MessageStatus.DELIVERED, MessageStatus.FAILED],
    MessageStatus.DELIVERED: [],
    MessageStatus.FAILED: [],
}

CONVERSATION_TRANSITIONS = {
    ConversationStatus.OPEN: [ConversationStatus.PENDING, ConversationStatus.CLOSED],
    ConversationStatus.PENDING: [ConversationStatus.OPEN, ConversationStatus.CLOSED],
    ConversationStatus.CLOSED: [ConversationStatus.OPEN],
}

Status = Union[MessageStatus, ConversationStatus]


class InvalidTransitionError(Exception):
    def __init__(self, from_state: Status, to_state: Status):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def _allowed(from_state: Status) -> list:
    if isinstance(from_state, ConversationStatus):
        return CONVERSATION_TRANSITIONS.get(from_state, [])
    return VALID_TRANSITIONS.get(from_state, [])


def can_transition(from_state: Status, to_state: Status) -> bool:
    """Check if transition is valid."""
    return to_state in _allowed(from_state)


def transition(from_state: Status, to_state: Status) -> Status:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def initial_message_status(kind: str, is_from_self: bool) -> MessageStatus:
    """Status a freshly persisted message starts in."""
    if kind != "text":
        return MessageStatus.PENDING
    return MessageStatus.SENT if is_from_self else MessageStatus.DELIVERED


def reopen(current: ConversationStatus) -> ConversationStatus:
    """Client re-engaged a closed conversation."""
    return transition(current, ConversationStatus.OPEN)
