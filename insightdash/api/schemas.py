from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from insightdash.storage.models import ActivityLog, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class CamelModel(BaseModel):
    """Payload model exchanged with the dashboard in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2 or not all(_EMAIL_DOMAIN_LABEL.match(label) for label in labels):
        raise ValueError("invalid email address format")
    return normalized


def _require_text(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError("must not be empty")
    return stripped


# requests
class RegisterRequest(CamelModel):
    email: str
    password: str = Field(..., max_length=1024)
    name: str = Field(..., max_length=200)
    role: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _require_text(value)


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        return _require_text(value).lower()


class TokenRefreshRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class CreateUserRequest(RegisterRequest):
    is_active: bool = True


class UpdateUserRequest(CamelModel):
    email: Optional[str] = None
    password: Optional[str] = Field(default=None, max_length=1024)
    name: Optional[str] = Field(default=None, max_length=200)
    role: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: Optional[str]) -> Optional[str]:
        return _require_text(value) if value is not None else None


# responses
class UserResponse(CamelModel):
    id: str
    email: str
    name: str
    role: str
    is_active: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role.value,
            is_active=user.is_active,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class AuthResponse(CamelModel):
    user: UserResponse
    access_token: str


class TokenRefreshResponse(CamelModel):
    access_token: str
    refresh_token: Optional[str] = None


class MeResponse(CamelModel):
    user: UserResponse


class UserListResponse(CamelModel):
    items: List[UserResponse]


class ActivityLogResponse(CamelModel):
    id: str
    user_id: str
    action: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: ActivityLog) -> "ActivityLogResponse":
        return cls(
            id=entry.id,
            user_id=entry.user_id,
            action=entry.action.value,
            entity_type=entry.entity_type.value if entry.entity_type else None,
            entity_id=entry.entity_id,
            details=entry.details,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            created_at=entry.created_at,
        )


class ActivityLogListResponse(CamelModel):
    items: List[ActivityLogResponse]
