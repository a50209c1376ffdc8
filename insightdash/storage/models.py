from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    VIEWER = "viewer"


class ActivityAction(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_DELETED = "user.deleted"
    USER_STATUS_TOGGLED = "user.status_toggled"


class EntityType(str, Enum):
    AUTH = "auth"
    USER = "user"


@dataclass
class User:
    id: str
    email: str
    name: str
    role: Role = Role.VIEWER
    is_active: bool = True
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ActivityLog:
    """Immutable audit record; written once by the audit sink."""

    id: str
    user_id: str
    action: ActivityAction
    entity_type: Optional[EntityType] = None
    entity_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        action: ActivityAction | str,
        *,
        entity_type: EntityType | str | None = None,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "ActivityLog":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            action=ActivityAction(action),
            entity_type=EntityType(entity_type) if entity_type else None,
            entity_id=entity_id,
            details=dict(details or {}),
            ip_address=ip_address,
            user_agent=user_agent,
        )
