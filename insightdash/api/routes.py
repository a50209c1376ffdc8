from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from insightdash.api.schemas import (
    ActivityLogListResponse,
    ActivityLogResponse,
    AuthResponse,
    CreateUserRequest,
    Envelope,
    LoginRequest,
    MeResponse,
    RegisterRequest,
    TokenRefreshRequest,
    TokenRefreshResponse,
    UpdateUserRequest,
    UserListResponse,
    UserResponse,
)
from insightdash.logging import get_correlation_id, get_logger
from insightdash.service.audit import RequestMeta
from insightdash.service.auth import AuthContext
from insightdash.service.errors import NotFoundError
from insightdash.service.runtime import get_runtime
from insightdash.service.tokens import TokenPair
from insightdash.storage.models import Role, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _ok(data: Any) -> Envelope:
    if hasattr(data, "model_dump"):
        data = data.model_dump(by_alias=True, mode="json")
    envelope = Envelope(status="ok", data=data)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return envelope


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Authenticate stage: bearer token to subject id."""
    return get_runtime().auth.authenticate(authorization)


def require_roles(*roles: Role):
    """Authenticate then authorize against ``roles`` with a fresh user lookup."""

    async def _authorized_user(principal: AuthContext = Depends(get_principal)) -> User:
        return get_runtime().auth.authorize(principal, roles)

    return _authorized_user


get_admin_user = require_roles(Role.ADMIN)


def _apply_refresh_cookie(response: Response, refresh_token: str) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        settings.refresh_cookie_name,
        refresh_token,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        max_age=settings.refresh_token_max_age,
        path="/",
    )


def _clear_refresh_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        settings.refresh_cookie_name,
        path="/",
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
    )


# auth
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and sign it in.

    Raises:
        400: missing fields, short password or unknown role
        409: email already registered
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email,
        body.password,
        body.name,
        body.role,
        request_meta=RequestMeta.from_request(request),
    )
    _apply_refresh_cookie(response, result.tokens.refresh_token)
    return _ok(
        AuthResponse(
            user=UserResponse.from_user(result.user),
            access_token=result.tokens.access_token,
        )
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        request_meta=RequestMeta.from_request(request),
    )
    _apply_refresh_cookie(response, result.tokens.refresh_token)
    return _ok(
        AuthResponse(
            user=UserResponse.from_user(result.user),
            access_token=result.tokens.access_token,
        )
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
):
    """Rotate the token pair.

    The cookie wins; the body field is accepted for clients without a cookie
    jar, and only those get the new refresh token echoed back in the body.
    """
    runtime = get_runtime()
    cookie_token = request.cookies.get(runtime.settings.refresh_cookie_name)
    body_token = body.refresh_token if body else None
    tokens: TokenPair = await runtime.auth.refresh(cookie_token or body_token)
    _apply_refresh_cookie(response, tokens.refresh_token)
    return _ok(
        TokenRefreshResponse(
            access_token=tokens.access_token,
            refresh_token=None if cookie_token else tokens.refresh_token,
        ).model_dump(by_alias=True, exclude_none=True)
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    context = runtime.auth.try_authenticate(authorization)
    runtime.auth.logout(context, request_meta=RequestMeta.from_request(request))
    _clear_refresh_cookie(response)
    return _ok({"message": "logged out successfully"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    user = get_runtime().auth.get_me(principal.user_id)
    return _ok(MeResponse(user=UserResponse.from_user(user)))


# users (admin)
@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    role: Optional[str] = None,
    is_active: Optional[bool] = Query(None, alias="isActive"),
    search: Optional[str] = Query(None, max_length=200),
    limit: int = Query(100, ge=1, le=500),
    admin: User = Depends(get_admin_user),
):
    users = get_runtime().users.list_users(
        role=role, is_active=is_active, search=search, limit=limit
    )
    return _ok(UserListResponse(items=[UserResponse.from_user(u) for u in users]))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(
    user_id: str = Path(..., max_length=64),
    admin: User = Depends(get_admin_user),
):
    user = get_runtime().users.get_user(user_id)
    return _ok(UserResponse.from_user(user))


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(
    body: CreateUserRequest,
    request: Request,
    admin: User = Depends(get_admin_user),
):
    user = get_runtime().users.create_user(
        admin,
        email=body.email,
        password=body.password,
        name=body.name,
        role=body.role,
        is_active=body.is_active,
        request_meta=RequestMeta.from_request(request),
    )
    return _ok(UserResponse.from_user(user))


@router.put("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    body: UpdateUserRequest,
    request: Request,
    user_id: str = Path(..., max_length=64),
    admin: User = Depends(get_admin_user),
):
    user = get_runtime().users.update_user(
        admin,
        user_id,
        changes=body.model_dump(exclude_unset=True),
        request_meta=RequestMeta.from_request(request),
    )
    return _ok(UserResponse.from_user(user))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(
    request: Request,
    user_id: str = Path(..., max_length=64),
    admin: User = Depends(get_admin_user),
):
    get_runtime().users.delete_user(
        admin, user_id, request_meta=RequestMeta.from_request(request)
    )
    return _ok({"message": "user deleted"})


@router.patch("/users/{user_id}/toggle-status", response_model=Envelope, tags=["users"])
async def toggle_user_status(
    request: Request,
    user_id: str = Path(..., max_length=64),
    admin: User = Depends(get_admin_user),
):
    user = get_runtime().users.toggle_status(
        admin, user_id, request_meta=RequestMeta.from_request(request)
    )
    return _ok(UserResponse.from_user(user))


# activity logs (admin)
@router.get("/activity-logs", response_model=Envelope, tags=["activity"])
async def list_activity_logs(
    user_id: Optional[str] = Query(None, alias="userId", max_length=64),
    action: Optional[str] = Query(None, max_length=64),
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=500),
    admin: User = Depends(get_admin_user),
):
    entries = get_runtime().store.list_activity_logs(
        user_id=user_id,
        action=action,
        since=_as_utc(since),
        until=_as_utc(until),
        limit=limit,
    )
    return _ok(
        ActivityLogListResponse(
            items=[ActivityLogResponse.from_entry(e) for e in entries]
        )
    )


@router.get("/activity-logs/{log_id}", response_model=Envelope, tags=["activity"])
async def get_activity_log(
    log_id: str = Path(..., max_length=64),
    admin: User = Depends(get_admin_user),
):
    entry = get_runtime().store.get_activity_log(log_id)
    if not entry:
        raise NotFoundError("activity log not found", detail={"log_id": log_id})
    return _ok(ActivityLogResponse.from_entry(entry))
