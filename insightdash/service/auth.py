from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from insightdash.config import Settings
from insightdash.logging import get_logger
from insightdash.service.audit import AuditSink, RequestMeta
from insightdash.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidTokenError,
    SubjectNotFoundError,
    ValidationError,
)
from insightdash.service.tokens import TokenPair, TokenService
from insightdash.storage.errors import ConstraintViolation
from insightdash.storage.models import ActivityAction, EntityType, Role, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
INVALID_CREDENTIALS = "invalid email or password"
NO_TOKEN = "not authorized, no token provided"
TOKEN_FAILED = "not authorized, token failed"


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        name: str,
        *,
        role: Role | str = Role.VIEWER,
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def touch_last_login(self, user_id: str, when=None) -> None: ...


@dataclass
class AuthContext:
    """Result of the authenticate stage: who the bearer token says you are."""

    user_id: str


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair


def parse_role(value: Optional[str]) -> Role:
    if value is None or value == "":
        return Role.VIEWER
    try:
        return Role(value)
    except ValueError:
        raise ValidationError(
            "invalid role, must be admin, manager, or viewer",
            detail={"field": "role", "allowed": [r.value for r in Role]},
        )


class AuthService:
    """Password login, token issuance and the two bearer-token stages."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        tokens: Optional[TokenService] = None,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens or TokenService(settings)
        self.audit = audit
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # passwords
    def validate_password(self, password: str) -> None:
        if len(password) < self.settings.min_password_length:
            raise ValidationError(
                f"password must be at least {self.settings.min_password_length} characters",
                detail={"field": "password"},
            )

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    # account flows
    async def register(
        self,
        email: str,
        password: str,
        name: str,
        role: Optional[str] = None,
        *,
        request_meta: Optional[RequestMeta] = None,
    ) -> AuthResult:
        self.validate_password(password)
        parsed_role = parse_role(role)
        try:
            user = self.store.create_user(email, name, role=parsed_role)
        except ConstraintViolation as exc:
            raise ConflictError("user with this email already exists", detail=exc.detail)
        try:
            self.save_password(user.id, password)
        except Exception:
            self.store.delete_user(user.id)
            raise
        tokens = self.tokens.issue_token_pair(user.id)
        self.logger.info("user_registered", user_id=user.id, role=user.role.value)
        # Registration also logs the user in
        self._audit(user.id, ActivityAction.LOGIN, request_meta)
        return AuthResult(user=user, tokens=tokens)

    async def login(
        self,
        email: str,
        password: str,
        *,
        request_meta: Optional[RequestMeta] = None,
    ) -> AuthResult:
        user = self.store.get_user_by_email(email)
        if not user or not self.verify_password(user.id, password):
            self.logger.info("login_failed", reason="invalid_credentials")
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not user.is_active:
            self.logger.info("login_failed", user_id=user.id, reason="inactive")
            raise AuthenticationError(
                "account deactivated, please contact an administrator"
            )
        self.store.touch_last_login(user.id)
        user = self.store.get_user(user.id) or user
        tokens = self.tokens.issue_token_pair(user.id)
        self.logger.info("login_succeeded", user_id=user.id)
        self._audit(user.id, ActivityAction.LOGIN, request_meta)
        return AuthResult(user=user, tokens=tokens)

    async def refresh(self, refresh_token: Optional[str]) -> TokenPair:
        if not refresh_token:
            raise AuthenticationError("refresh token is required")
        try:
            return self.tokens.refresh(refresh_token, self.store.get_user)
        except InvalidTokenError as exc:
            self.logger.info("refresh_rejected", reason=exc.reason)
            raise
        except SubjectNotFoundError as exc:
            self.logger.info("refresh_rejected", reason="subject_not_found")
            raise AuthenticationError("user not found", detail=exc.detail)

    def get_me(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise SubjectNotFoundError("user not found")
        return user

    def logout(
        self, context: Optional[AuthContext], *, request_meta: Optional[RequestMeta] = None
    ) -> None:
        if context:
            self._audit(context.user_id, ActivityAction.LOGOUT, request_meta)

    # request stages
    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError(NO_TOKEN)
        try:
            user_id = self.tokens.verify_access_token(token)
        except InvalidTokenError as exc:
            self.logger.info("token_rejected", reason=exc.reason)
            raise AuthenticationError(TOKEN_FAILED, detail={"reason": exc.public_message})
        return AuthContext(user_id=user_id)

    def try_authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        try:
            return self.authenticate(authorization)
        except AuthenticationError:
            return None

    def authorize(self, context: AuthContext, allowed_roles: Iterable[Role | str]) -> User:
        allowed: List[Role] = [Role(r) for r in allowed_roles]
        user = self.store.get_user(context.user_id)
        if not user:
            raise ForbiddenError("user not found")
        if not user.is_active:
            raise ForbiddenError("account deactivated")
        if user.role not in allowed:
            raise ForbiddenError(
                f"user role '{user.role.value}' is not authorized to access this resource",
                detail={"required": [r.value for r in allowed]},
            )
        return user

    def _audit(
        self,
        user_id: str,
        action: ActivityAction,
        request_meta: Optional[RequestMeta],
    ) -> None:
        if self.audit:
            self.audit.record(
                user_id, action, EntityType.AUTH, request_meta=request_meta
            )
