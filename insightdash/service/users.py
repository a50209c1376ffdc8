from __future__ import annotations

from typing import Any, Dict, List, Optional

from insightdash.logging import get_logger
from insightdash.service.audit import AuditSink, RequestMeta
from insightdash.service.auth import AuthService, parse_role
from insightdash.service.errors import ConflictError, ForbiddenError, NotFoundError
from insightdash.storage.errors import ConstraintViolation
from insightdash.storage.models import ActivityAction, EntityType, User

logger = get_logger(__name__)


class UserService:
    """Administrative account management; every mutation is audited."""

    def __init__(self, auth: AuthService, audit: Optional[AuditSink] = None) -> None:
        self.auth = auth
        self.store = auth.store
        self.audit = audit

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
        limit: int = 100,
    ) -> List[User]:
        parsed_role = parse_role(role) if role else None
        return self.store.list_users(
            role=parsed_role, is_active=is_active, search=search, limit=limit
        )

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def create_user(
        self,
        actor: User,
        *,
        email: str,
        password: str,
        name: str,
        role: Optional[str] = None,
        is_active: bool = True,
        request_meta: Optional[RequestMeta] = None,
    ) -> User:
        self.auth.validate_password(password)
        parsed_role = parse_role(role)
        try:
            user = self.store.create_user(
                email, name, role=parsed_role, is_active=is_active
            )
        except ConstraintViolation as exc:
            raise ConflictError("user with this email already exists", detail=exc.detail)
        try:
            self.auth.save_password(user.id, password)
        except Exception:
            self.store.delete_user(user.id)
            raise
        logger.info("user_created", actor_id=actor.id, user_id=user.id)
        self._audit(
            actor,
            ActivityAction.USER_CREATED,
            user.id,
            {"createdUserEmail": user.email, "createdUserRole": user.role.value},
            request_meta,
        )
        return user

    def update_user(
        self,
        actor: User,
        user_id: str,
        *,
        changes: Dict[str, Any],
        request_meta: Optional[RequestMeta] = None,
    ) -> User:
        """Apply a partial update.

        ``changes`` may carry ``email``, ``name``, ``role``, ``is_active`` and
        ``password``; the password hash is only recomputed when a new password
        is supplied.
        """
        fields = {k: v for k, v in changes.items() if v is not None}
        password = fields.pop("password", None)
        if "role" in fields:
            fields["role"] = parse_role(fields["role"])
        if password is not None:
            self.auth.validate_password(password)
        self.get_user(user_id)
        try:
            user = self.store.update_user(user_id, **fields) if fields else self.store.get_user(user_id)
        except ConstraintViolation as exc:
            raise ConflictError("user with this email already exists", detail=exc.detail)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        if password is not None:
            self.auth.save_password(user_id, password)
        updated_fields = sorted(list(fields) + (["password"] if password is not None else []))
        logger.info("user_updated", actor_id=actor.id, user_id=user_id, fields=updated_fields)
        self._audit(
            actor,
            ActivityAction.USER_UPDATED,
            user_id,
            {"updatedFields": updated_fields},
            request_meta,
        )
        return user

    def delete_user(
        self,
        actor: User,
        user_id: str,
        *,
        request_meta: Optional[RequestMeta] = None,
    ) -> None:
        if user_id == actor.id:
            raise ForbiddenError("you cannot delete your own account")
        if not self.store.delete_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        logger.info("user_deleted", actor_id=actor.id, user_id=user_id)
        self._audit(actor, ActivityAction.USER_DELETED, user_id, None, request_meta)

    def toggle_status(
        self,
        actor: User,
        user_id: str,
        *,
        request_meta: Optional[RequestMeta] = None,
    ) -> User:
        current = self.get_user(user_id)
        user = self.store.update_user(user_id, is_active=not current.is_active)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self._audit(
            actor,
            ActivityAction.USER_STATUS_TOGGLED,
            user_id,
            {"newStatus": user.is_active},
            request_meta,
        )
        return user

    def _audit(
        self,
        actor: User,
        action: ActivityAction,
        entity_id: str,
        details: Optional[Dict[str, Any]],
        request_meta: Optional[RequestMeta],
    ) -> None:
        if self.audit:
            self.audit.record(
                actor.id,
                action,
                EntityType.USER,
                entity_id,
                details,
                request_meta,
            )
