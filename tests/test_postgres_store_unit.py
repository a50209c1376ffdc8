import uuid
from datetime import datetime, timezone

import pytest
from psycopg import errors

from insightdash.storage.errors import ConstraintViolation
from insightdash.storage.models import ActivityAction, ActivityLog, EntityType, Role
from insightdash.storage.postgres import PostgresStore, _activity_from_row


class DummyCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class RecordingConnection:
    def __init__(self, result=None, raises=None):
        self.result = result or DummyCursor()
        self.raises = raises
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.statements.append((sql, params))
        if self.raises:
            raise self.raises
        return self.result


class DummyPool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


class GuardPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store(conn=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool(conn) if conn else GuardPool()
    return store


def _user_row(**overrides):
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "email": "alice@example.com",
        "name": "Alice",
        "role": "viewer",
        "is_active": True,
        "last_login_at": None,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


def test_create_user_lowercases_email():
    conn = RecordingConnection(DummyCursor([_user_row()]))
    user = _store(conn).create_user(" Alice@Example.com ", "Alice")

    sql, params = conn.statements[0]
    assert "INSERT INTO app_user" in sql
    assert params[1] == "alice@example.com"
    assert params[3] == "viewer"
    assert user.role == Role.VIEWER
    assert isinstance(user.id, str)


def test_create_user_unique_violation_becomes_constraint_violation():
    conn = RecordingConnection(raises=errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation) as exc_info:
        _store(conn).create_user("alice@example.com", "Alice")
    assert exc_info.value.detail == {"field": "email"}


def test_get_user_with_non_uuid_skips_query():
    assert _store().get_user("not-a-uuid") is None


def test_get_activity_log_with_non_uuid_skips_query():
    assert _store().get_activity_log("nope") is None


def test_list_activity_logs_with_non_uuid_user_is_empty():
    assert _store().list_activity_logs(user_id="nope") == []


def test_update_user_builds_whitelisted_assignments():
    conn = RecordingConnection(DummyCursor([_user_row(role="manager", name="Al")]))
    user_id = str(uuid.uuid4())

    user = _store(conn).update_user(user_id, role=Role.MANAGER, name="Al")

    sql, params = conn.statements[0]
    assert "SET name = %s, role = %s, updated_at = now()" in sql
    assert params == ("Al", "manager", user_id)
    assert user.role == Role.MANAGER


def test_update_user_rejects_unknown_columns():
    with pytest.raises(ValueError):
        _store().update_user(str(uuid.uuid4()), password_hash="x")


def test_update_user_email_conflict():
    conn = RecordingConnection(raises=errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation):
        _store(conn).update_user(str(uuid.uuid4()), email="taken@example.com")


def test_save_password_for_missing_user():
    conn = RecordingConnection(raises=errors.ForeignKeyViolation("fk"))
    with pytest.raises(ConstraintViolation):
        _store(conn).save_password(str(uuid.uuid4()), "hash", "argon2id")


def test_delete_user_reports_rowcount():
    conn = RecordingConnection(DummyCursor(rowcount=1))
    assert _store(conn).delete_user(str(uuid.uuid4())) is True
    conn.result = DummyCursor(rowcount=0)
    assert _store(conn).delete_user(str(uuid.uuid4())) is False


def test_list_activity_logs_filters():
    conn = RecordingConnection(DummyCursor([]))
    user_id = str(uuid.uuid4())
    _store(conn).list_activity_logs(user_id=user_id, action="login", limit=5)

    sql, params = conn.statements[0]
    assert "WHERE user_id = %s AND action = %s" in sql
    assert params == [user_id, "login", 5]


def test_create_activity_log_serializes_details():
    conn = RecordingConnection()
    entry = ActivityLog.new(
        str(uuid.uuid4()),
        ActivityAction.USER_CREATED,
        entity_type=EntityType.USER,
        details={"createdUserEmail": "b@example.com"},
    )
    _store(conn).create_activity_log(entry)

    _, params = conn.statements[0]
    assert params[2] == "user.created"
    assert params[3] == "user"
    assert params[5] == '{"createdUserEmail": "b@example.com"}'


def test_activity_row_mapping_decodes_json_text():
    row = {
        "id": uuid.uuid4(),
        "user_id": uuid.uuid4(),
        "action": "user.status_toggled",
        "entity_type": "user",
        "entity_id": "abc",
        "details": '{"newStatus": false}',
        "ip_address": "10.0.0.1",
        "user_agent": "pytest",
        "created_at": datetime.now(timezone.utc),
    }
    entry = _activity_from_row(row)
    assert entry.action == ActivityAction.USER_STATUS_TOGGLED
    assert entry.entity_type == EntityType.USER
    assert entry.details == {"newStatus": False}


def test_list_users_search_matches_wildcards_literally():
    conn = RecordingConnection(DummyCursor([]))
    _store(conn).list_users(search="50%_off\\")

    sql, params = conn.statements[0]
    assert "email ILIKE %s ESCAPE" in sql
    assert params[0] == "%50\\%\\_off\\\\%"
    assert params[1] == params[0]
