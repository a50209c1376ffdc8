from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from insightdash.logging import get_logger
from insightdash.storage.errors import ConstraintViolation
from insightdash.storage.models import ActivityLog, Role, User, utcnow

_UPDATABLE_USER_FIELDS = {"email", "name", "role", "is_active"}


class MemoryStore:
    """In-memory credential and activity store for development and tests."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.activity_logs: List[ActivityLog] = []
        # RLock so store methods may call each other while holding the lock
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # user / auth
    def create_user(
        self,
        email: str,
        name: str,
        *,
        role: Role | str = Role.VIEWER,
        is_active: bool = True,
    ) -> User:
        normalized_email = email.strip().lower()
        with self._data_lock:
            if self._find_by_email(normalized_email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized_email,
                name=name,
                role=Role(role),
                is_active=is_active,
            )
            self.users[user.id] = user
            return replace(user)

    def _find_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_email(email.strip().lower())
            return replace(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def list_users(
        self,
        *,
        role: Role | str | None = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
        limit: int = 100,
    ) -> List[User]:
        needle = search.lower() if search else None
        with self._data_lock:
            results = [
                replace(u)
                for u in self.users.values()
                if (role is None or u.role == Role(role))
                and (is_active is None or u.is_active == is_active)
                and (
                    needle is None
                    or needle in u.email
                    or needle in u.name.lower()
                )
            ]
        return sorted(results, key=lambda u: u.created_at, reverse=True)[:limit]

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in fields:
                fields["email"] = fields["email"].strip().lower()
                existing = self._find_by_email(fields["email"])
                if existing and existing.id != user_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            if "role" in fields:
                fields["role"] = Role(fields["role"])
            updated = replace(user, **fields, updated_at=utcnow())
            self.users[user_id] = updated
            return replace(updated)

    def touch_last_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                # Does not bump updated_at; logging in is not a profile edit
                self.users[user_id] = replace(user, last_login_at=when or utcnow())

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # activity log
    def create_activity_log(self, entry: ActivityLog) -> ActivityLog:
        with self._data_lock:
            self.activity_logs.append(entry)
        return entry

    def get_activity_log(self, log_id: str) -> Optional[ActivityLog]:
        with self._data_lock:
            return next((e for e in self.activity_logs if e.id == log_id), None)

    def list_activity_logs(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[ActivityLog]:
        with self._data_lock:
            entries = list(self.activity_logs)
        results = [
            e
            for e in entries
            if (user_id is None or e.user_id == user_id)
            and (action is None or e.action.value == action)
            and (since is None or e.created_at >= since)
            and (until is None or e.created_at <= until)
        ]
        return sorted(results, key=lambda e: e.created_at, reverse=True)[:limit]
