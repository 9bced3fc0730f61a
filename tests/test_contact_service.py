from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import Mock
from uuid import uuid4

from sqlalchemy.dialects import postgresql

from app.services.contact_service import ResolvedContact, build_contact_upsert, resolve_contact

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


class TestContactUpsert:
    def test_conflicts_on_company_and_phone(self):
        sql = _sql(build_contact_upsert(uuid4(), "5511999999999", "Maria", None, NOW))
        assert "ON CONFLICT (company_id, phone_number) DO UPDATE" in sql
        assert "RETURNING contacts.id, contacts.is_blocked" in sql

    def test_manual_name_is_protected(self):
        sql = _sql(build_contact_upsert(uuid4(), "5511999999999", "Maria", None, NOW))
        assert "CASE WHEN (contacts.name_manually_edited IS true) THEN contacts.name ELSE excluded.name END" in sql

    def test_avatar_only_replaced_when_sent(self):
        sql = _sql(build_contact_upsert(uuid4(), "5511999999999", "Maria", None, NOW))
        assert "coalesce(excluded.avatar_url, contacts.avatar_url)" in sql

    def test_name_defaults_to_phone(self):
        stmt = build_contact_upsert(uuid4(), "5511999999999", None, None, NOW)
        params = stmt.compile(dialect=postgresql.dialect()).params
        assert params["name"] == "5511999999999"


class TestResolveContact:
    def test_returns_id_and_block_flag(self):
        contact_id = uuid4()
        db = Mock()
        db.execute.return_value.one.return_value = SimpleNamespace(id=contact_id, is_blocked=True)

        result = resolve_contact(db, uuid4(), "5511999999999", "Maria", now=NOW)

        assert result == ResolvedContact(id=contact_id, is_blocked=True)
        db.commit.assert_called_once()

    def test_null_block_flag_is_false(self):
        db = Mock()
        db.execute.return_value.one.return_value = SimpleNamespace(id=uuid4(), is_blocked=None)

        result = resolve_contact(db, uuid4(), "5511999999999", None)

        assert result.is_blocked is False
