from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from insightdash.logging import get_logger
from insightdash.storage.errors import ConstraintViolation
from insightdash.storage.models import (
    ActivityAction,
    ActivityLog,
    EntityType,
    Role,
    User,
    utcnow,
)

_UPDATABLE_USER_COLUMNS = ("email", "name", "role", "is_active")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'viewer',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_log (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL,
        action TEXT NOT NULL,
        entity_type TEXT,
        entity_id TEXT,
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS activity_log_user_created_idx ON activity_log (user_id, created_at DESC)",
)


def _escape_like(value: str) -> str:
    """Make ``%``, ``_`` and ``\\`` match literally inside a LIKE pattern."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _user_from_row(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        name=row["name"],
        role=Role(row.get("role") or Role.VIEWER),
        is_active=row.get("is_active", True),
        last_login_at=row.get("last_login_at"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _activity_from_row(row: dict) -> ActivityLog:
    details = row.get("details") or {}
    if isinstance(details, str):
        details = json.loads(details)
    return ActivityLog(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        action=ActivityAction(row["action"]),
        entity_type=EntityType(row["entity_type"]) if row.get("entity_type") else None,
        entity_id=row.get("entity_id"),
        details=details,
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        created_at=row.get("created_at") or utcnow(),
    )


class PostgresStore:
    """Postgres-backed credential and activity store."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # user / auth
    def create_user(
        self,
        email: str,
        name: str,
        *,
        role: Role | str = Role.VIEWER,
        is_active: bool = True,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, role, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email.strip().lower(), name, Role(role).value, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(user_id)
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return _user_from_row(row) if row else None

    def list_users(
        self,
        *,
        role: Role | str | None = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
        limit: int = 100,
    ) -> List[User]:
        clauses: list[str] = []
        params: list[Any] = []
        if role is not None:
            clauses.append("role = %s")
            params.append(Role(role).value)
        if is_active is not None:
            clauses.append("is_active = %s")
            params.append(is_active)
        if search:
            pattern = f"%{_escape_like(search)}%"
            clauses.append("(email ILIKE %s ESCAPE '\\' OR name ILIKE %s ESCAPE '\\')")
            params.extend([pattern, pattern])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM app_user {where} ORDER BY created_at DESC LIMIT %s",
                params,
            ).fetchall()
        return [_user_from_row(row) for row in rows]

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - set(_UPDATABLE_USER_COLUMNS)
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if "email" in fields:
            fields["email"] = fields["email"].strip().lower()
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        # column names come from the fixed whitelist above
        assignments = [f"{column} = %s" for column in _UPDATABLE_USER_COLUMNS if column in fields]
        params = [fields[column] for column in _UPDATABLE_USER_COLUMNS if column in fields]
        assignments.append("updated_at = now()")
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                    (*params, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _user_from_row(row) if row else None

    def touch_last_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s",
                (when or utcnow(), user_id),
            )

    def delete_user(self, user_id: str) -> bool:
        try:
            uuid.UUID(user_id)
        except ValueError:
            return False
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cursor.rowcount > 0

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # activity log
    def create_activity_log(self, entry: ActivityLog) -> ActivityLog:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO activity_log (id, user_id, action, entity_type, entity_id, details, ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.action.value,
                    entry.entity_type.value if entry.entity_type else None,
                    entry.entity_id,
                    json.dumps(entry.details),
                    entry.ip_address,
                    entry.user_agent,
                    entry.created_at,
                ),
            )
        return entry

    def get_activity_log(self, log_id: str) -> Optional[ActivityLog]:
        try:
            uuid.UUID(log_id)
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM activity_log WHERE id = %s", (log_id,)
            ).fetchone()
        return _activity_from_row(row) if row else None

    def list_activity_logs(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[ActivityLog]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            try:
                uuid.UUID(user_id)
            except ValueError:
                return []
            clauses.append("user_id = %s")
            params.append(user_id)
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        if until is not None:
            clauses.append("created_at <= %s")
            params.append(until)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM activity_log {where} ORDER BY created_at DESC LIMIT %s",
                params,
            ).fetchall()
        return [_activity_from_row(row) for row in rows]
