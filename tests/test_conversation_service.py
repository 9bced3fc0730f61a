from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import Mock, patch
from uuid import uuid4

from sqlalchemy.dialects import postgresql

from app.models import Conversation, ConversationHistory
from app.services import conversation_service
from app.services.contact_service import ResolvedContact
from app.services.conversation_service import (
    ConversationResolution,
    ResolutionAction,
    resolve_conversation,
    touch_conversation,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _connection():
    return SimpleNamespace(id=uuid4(), name="Vendas", company_id=uuid4())


def _updates(db: Mock) -> dict:
    """Values dict passed to the field-scoped update()."""
    return db.query.return_value.filter.return_value.update.call_args.args[0]


class TestResolveConversation:
    def test_existing_open_conversation_is_touched(self):
        db = Mock()
        active = SimpleNamespace(id=uuid4(), status="open")
        contact = ResolvedContact(id=uuid4())

        with (
            patch.object(conversation_service, "find_active_conversation", return_value=active),
            patch.object(conversation_service, "touch_conversation") as touch,
        ):
            result = resolve_conversation(db, uuid4(), contact, _connection(), False, NOW)

        assert result == ConversationResolution(active.id, ResolutionAction.EXISTING)
        touch.assert_called_once_with(db, active.id, NOW, False)
        db.commit.assert_called_once()

    def test_closed_conversation_is_reopened(self):
        db = Mock()
        closed = SimpleNamespace(id=uuid4(), status="closed")
        department = SimpleNamespace(id=uuid4(), name="Suporte")

        with (
            patch.object(conversation_service, "find_active_conversation", return_value=None),
            patch.object(conversation_service, "find_latest_closed_conversation", return_value=closed),
        ):
            result = resolve_conversation(
                db, uuid4(), ResolvedContact(id=uuid4()), _connection(), False, NOW, default_department=department
            )

        assert result.action == ResolutionAction.REOPENED
        assert result.conversation_id == closed.id
        updates = _updates(db)
        assert updates[Conversation.status] == "open"
        assert updates[Conversation.closed_at] is None
        assert updates[Conversation.assigned_user_id] is None
        assert updates[Conversation.unread_count] == 1
        assert updates[Conversation.department_id] == department.id

        history = db.add.call_args.args[0]
        assert isinstance(history, ConversationHistory)
        assert history.event_type == "reopened"
        assert history.event_data == {"reason": "client_message", "previous_status": "closed"}
        assert history.performed_by_name == "Sistema"

    def test_reopen_keeps_department_without_default(self):
        db = Mock()
        closed = SimpleNamespace(id=uuid4(), status="closed")

        with (
            patch.object(conversation_service, "find_active_conversation", return_value=None),
            patch.object(conversation_service, "find_latest_closed_conversation", return_value=closed),
        ):
            resolve_conversation(db, uuid4(), ResolvedContact(id=uuid4()), _connection(), True, NOW)

        updates = _updates(db)
        assert Conversation.department_id not in updates
        assert updates[Conversation.unread_count] == 0

    def test_blocked_contact_with_closed_conversation_stays_closed(self):
        db = Mock()
        closed = SimpleNamespace(id=uuid4(), status="closed")

        with (
            patch.object(conversation_service, "find_active_conversation", return_value=None),
            patch.object(conversation_service, "find_latest_closed_conversation", return_value=closed),
        ):
            result = resolve_conversation(
                db, uuid4(), ResolvedContact(id=uuid4(), is_blocked=True), _connection(), False, NOW
            )

        assert result == ConversationResolution(closed.id, ResolutionAction.BLOCKED)
        assert result.is_ignored is False
        db.query.return_value.filter.return_value.update.assert_not_called()
        db.commit.assert_not_called()

    def test_blocked_contact_without_history_is_ignored(self):
        db = Mock()

        with (
            patch.object(conversation_service, "find_active_conversation", return_value=None),
            patch.object(conversation_service, "find_latest_closed_conversation", return_value=None),
        ):
            result = resolve_conversation(
                db, uuid4(), ResolvedContact(id=uuid4(), is_blocked=True), _connection(), False, NOW
            )

        assert result.is_ignored is True
        db.add.assert_not_called()

    def test_new_conversation_created_with_history(self):
        db = Mock()
        created_id = uuid4()
        db.execute.return_value.scalar_one_or_none.return_value = created_id
        connection = _connection()
        company_id = uuid4()
        contact = ResolvedContact(id=uuid4())

        with (
            patch.object(conversation_service, "find_active_conversation", return_value=None),
            patch.object(conversation_service, "find_latest_closed_conversation", return_value=None),
        ):
            result = resolve_conversation(
                db,
                company_id,
                contact,
                connection,
                False,
                NOW,
                contact_name="Maria",
                contact_phone="5511999999999",
            )

        assert result == ConversationResolution(created_id, ResolutionAction.CREATED)
        params = db.execute.call_args.args[0].compile(dialect=postgresql.dialect()).params
        assert params["company_id"] == company_id
        assert params["status"] == "open"
        assert params["unread_count"] == 1
        assert params["department_id"] is None
        (history,) = [call.args[0] for call in db.add.call_args_list]
        assert history.conversation_id == created_id
        assert history.event_type == "created"
        assert history.event_data["connection_name"] == "Vendas"
        assert history.event_data["contact_phone"] == "5511999999999"
        db.commit.assert_called_once()

    def test_insert_targets_active_conversation_index(self):
        db = Mock()
        db.execute.return_value.scalar_one_or_none.return_value = uuid4()

        with (
            patch.object(conversation_service, "find_active_conversation", return_value=None),
            patch.object(conversation_service, "find_latest_closed_conversation", return_value=None),
        ):
            resolve_conversation(db, uuid4(), ResolvedContact(id=uuid4()), _connection(), False, NOW)

        sql = str(db.execute.call_args.args[0].compile(dialect=postgresql.dialect()))
        assert "ON CONFLICT (contact_id, whatsapp_connection_id) WHERE status <> 'closed' DO NOTHING" in sql
        assert "RETURNING conversations.id" in sql

    def test_concurrent_create_reuses_winner(self):
        db = Mock()
        db.execute.return_value.scalar_one_or_none.return_value = None
        winner = SimpleNamespace(id=uuid4(), status="open")
        contact = ResolvedContact(id=uuid4())

        with (
            patch.object(conversation_service, "find_active_conversation", side_effect=[None, winner]),
            patch.object(conversation_service, "find_latest_closed_conversation", return_value=None),
            patch.object(conversation_service, "touch_conversation") as touch,
        ):
            result = resolve_conversation(db, uuid4(), contact, _connection(), False, NOW)

        assert result == ConversationResolution(winner.id, ResolutionAction.EXISTING)
        touch.assert_called_once_with(db, winner.id, NOW, False)
        db.add.assert_not_called()

    def test_only_one_open_conversation_index(self):
        (index,) = [i for i in Conversation.__table__.indexes if i.unique]
        assert [column.name for column in index.columns] == ["contact_id", "whatsapp_connection_id"]
        assert str(index.dialect_options["postgresql"]["where"]) == "status <> 'closed'"


class TestTouchConversation:
    def test_inbound_increments_unread(self):
        db = Mock()
        touch_conversation(db, uuid4(), NOW, is_from_self=False)
        updates = _updates(db)
        assert updates[Conversation.last_message_at] == NOW
        assert Conversation.unread_count in updates

    def test_own_message_leaves_unread(self):
        db = Mock()
        touch_conversation(db, uuid4(), NOW, is_from_self=True)
        assert Conversation.unread_count not in _updates(db)
