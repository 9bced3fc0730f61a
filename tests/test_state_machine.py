import pytest

from app.services.state_machine import (
    ConversationStatus,
    InvalidTransitionError,
    MessageStatus,
    can_transition,
    initial_message_status,
    reopen,
    transition,
)


class TestMessageTransitions:
    def test_pending_to_delivered(self):
        assert transition(MessageStatus.PENDING, MessageStatus.DELIVERED) == MessageStatus.DELIVERED

    def test_pending_to_failed(self):
        assert transition(MessageStatus.PENDING, MessageStatus.FAILED) == MessageStatus.FAILED

    def test_delivered_is_terminal(self):
        with pytest.raises(InvalidTransitionError):
            transition(MessageStatus.DELIVERED, MessageStatus.FAILED)

    def test_failed_is_terminal(self):
        with pytest.raises(InvalidTransitionError):
            transition(MessageStatus.FAILED, MessageStatus.DELIVERED)

    def test_same_state(self):
        with pytest.raises(InvalidTransitionError):
            transition(MessageStatus.PENDING, MessageStatus.PENDING)


class TestConversationTransitions:
    def test_reopen_closed(self):
        assert reopen(ConversationStatus.CLOSED) == ConversationStatus.OPEN

    def test_reopen_open_fails(self):
        with pytest.raises(InvalidTransitionError):
            reopen(ConversationStatus.OPEN)

    def test_open_to_closed(self):
        assert can_transition(ConversationStatus.OPEN, ConversationStatus.CLOSED) is True

    def test_closed_to_pending_not_allowed(self):
        assert can_transition(ConversationStatus.CLOSED, ConversationStatus.PENDING) is False


class TestInitialStatus:
    def test_inbound_text_is_delivered(self):
        assert initial_message_status("text", is_from_self=False) == MessageStatus.DELIVERED

    def test_own_text_is_sent(self):
        assert initial_message_status("text", is_from_self=True) == MessageStatus.SENT

    @pytest.mark.parametrize("kind", ["audio", "image", "video", "document", "sticker"])
    def test_media_starts_pending(self, kind):
        assert initial_message_status(kind, is_from_self=False) == MessageStatus.PENDING
        assert initial_message_status(kind, is_from_self=True) == MessageStatus.PENDING


class TestErrorMessage:
    def test_error_message_names_states(self):
        error = InvalidTransitionError(MessageStatus.DELIVERED, MessageStatus.PENDING)
        assert str(error) == "Invalid transition: delivered -> pending"
