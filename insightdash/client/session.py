from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Optional

import httpx

from insightdash.client.storage import (
    ACCESS_TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    MemoryTokenStorage,
    TokenStorage,
)
from insightdash.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
REFRESH_COOKIE_NAME = "refreshToken"


class ApiError(Exception):
    """Non-2xx response from the API, carrying the decoded error envelope."""

    def __init__(
        self, status_code: int, message: str, payload: Optional[Dict[str, Any]] = None
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.payload = payload or {}


class InvalidCredentialsError(ApiError):
    """The login endpoint rejected the email/password pair."""


class AuthSession:
    """Client-side auth state, passed explicitly to ``ApiClient``.

    The session is the only writer of the stored access token. The refresh
    token normally lives in the HTTP client's cookie jar; it is kept here only
    when the server hands one back in a response body.
    """

    def __init__(
        self,
        storage: Optional[TokenStorage] = None,
        *,
        on_session_expired: Optional[Callable[[], None]] = None,
    ) -> None:
        self.storage = storage if storage is not None else MemoryTokenStorage()
        self.on_session_expired = on_session_expired
        self.user: Optional[Dict[str, Any]] = None

    @property
    def access_token(self) -> Optional[str]:
        return self.storage.get(ACCESS_TOKEN_KEY)

    @property
    def refresh_token(self) -> Optional[str]:
        return self.storage.get(REFRESH_TOKEN_KEY)

    @property
    def is_authenticated(self) -> bool:
        return self.access_token is not None

    def store_tokens(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        self.storage.set(ACCESS_TOKEN_KEY, access_token)
        if refresh_token:
            self.storage.set(REFRESH_TOKEN_KEY, refresh_token)

    def drop_refresh_token(self) -> None:
        self.storage.remove(REFRESH_TOKEN_KEY)

    def clear(self) -> None:
        self.storage.remove(ACCESS_TOKEN_KEY)
        self.storage.remove(REFRESH_TOKEN_KEY)
        self.user = None

    def expire(self) -> None:
        """Drop all auth state and send the user back to sign in."""
        self.clear()
        if self.on_session_expired:
            self.on_session_expired()


class ApiClient:
    """Async API client that renews an expired access token transparently.

    Each call is retried at most once after a 401. With ``coalesce_refresh``
    concurrent 401s share a single refresh call; without it every failing
    call refreshes on its own.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[AuthSession] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        coalesce_refresh: bool = True,
        api_prefix: str = "/v1",
    ) -> None:
        self.session = session or AuthSession()
        self.coalesce_refresh = coalesce_refresh
        self.api_prefix = api_prefix.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=httpx.Timeout(timeout),
            headers={"Content-Type": "application/json"},
        )
        self._refresh_lock = asyncio.Lock()
        # bumped after every refresh attempt, successful or not
        self._refresh_generation = 0
        self._refresh_failure: Optional[Exception] = None
        self.refresh_calls = 0

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def cookies(self) -> httpx.Cookies:
        return self._client.cookies

    def _url(self, path: str) -> str:
        return f"{self.api_prefix}/{path.lstrip('/')}"

    def _is_login(self, url: str) -> bool:
        return url.rstrip("/").endswith("/auth/login")

    def _auth_headers(self, token: Optional[str]) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _has_refresh_cookie(self) -> bool:
        return any(
            cookie.name == REFRESH_COOKIE_NAME for cookie in self._client.cookies.jar
        )

    def _has_refresh_credential(self) -> bool:
        return bool(self.session.refresh_token) or self._has_refresh_cookie()

    def _error_from(self, response: httpx.Response) -> ApiError:
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        error = payload.get("error") if isinstance(payload, dict) else None
        message = (
            error.get("message") if isinstance(error, dict) and error.get("message")
            else response.reason_phrase or "request failed"
        )
        if self._is_login(response.request.url.path) and response.status_code == 401:
            return InvalidCredentialsError(response.status_code, message, payload)
        return ApiError(response.status_code, message, payload)

    def _unwrap(self, response: httpx.Response) -> Any:
        if response.is_success:
            return response.json().get("data")
        raise self._error_from(response)

    def _expire_session(self, reason: str) -> None:
        logger.info("client_session_expired", reason=reason)
        self._client.cookies.delete(REFRESH_COOKIE_NAME)
        self.session.expire()

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        response = await self._send(method, self._url(path), json=json, params=params)
        return self._unwrap(response)

    async def _send(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        token = self.session.access_token
        generation = self._refresh_generation
        response = await self._client.request(
            method, url, json=json, params=params, headers=self._auth_headers(token)
        )
        if response.status_code != 401 or self._is_login(url):
            return response

        new_token = await self._refresh_access_token(generation, self._error_from(response))
        # the retried call is never refreshed again; a second 401 surfaces as-is
        return await self._client.request(
            method, url, json=json, params=params, headers=self._auth_headers(new_token)
        )

    async def _refresh_access_token(self, seen_generation: int, original: ApiError) -> str:
        if not self.coalesce_refresh:
            return await self._perform_refresh(original)
        async with self._refresh_lock:
            if self._refresh_generation != seen_generation:
                token = self.session.access_token
                if token:
                    return token
                raise self._refresh_failure or original
            return await self._perform_refresh(original)

    async def _perform_refresh(self, original: ApiError) -> str:
        if not self._has_refresh_credential():
            self._refresh_failure = original
            self._refresh_generation += 1
            self._expire_session("no_refresh_token")
            raise original

        # the server prefers the cookie over a body token
        cookie_present = self._has_refresh_cookie()
        stored_refresh = None if cookie_present else self.session.refresh_token
        self.refresh_calls += 1
        try:
            response = await self._client.post(
                self._url("/auth/refresh"),
                json={"refreshToken": stored_refresh} if stored_refresh else None,
            )
            data = self._unwrap(response)
            access_token = data["accessToken"]
        except (ApiError, httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            self._refresh_failure = exc
            self._refresh_generation += 1
            self._expire_session("refresh_failed")
            raise

        self.session.store_tokens(access_token, data.get("refreshToken"))
        if cookie_present:
            self.session.drop_refresh_token()
        self._refresh_failure = None
        self._refresh_generation += 1
        logger.debug("client_token_refreshed", generation=self._refresh_generation)
        return access_token

    # auth endpoints
    async def register(
        self, email: str, password: str, name: str, role: Optional[str] = None
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"email": email, "password": password, "name": name}
        if role:
            body["role"] = role
        response = await self._client.post(self._url("/auth/register"), json=body)
        return self._accept_auth(self._unwrap(response))

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        response = await self._client.post(
            self._url("/auth/login"), json={"email": email, "password": password}
        )
        return self._accept_auth(self._unwrap(response))

    def _accept_auth(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self.session.clear()
        self.session.store_tokens(data["accessToken"], data.get("refreshToken"))
        self.session.user = data["user"]
        return data["user"]

    async def logout(self) -> None:
        try:
            response = await self._client.post(
                self._url("/auth/logout"),
                headers=self._auth_headers(self.session.access_token),
            )
            if not response.is_success:
                logger.warning("client_logout_failed", status_code=response.status_code)
        finally:
            self._client.cookies.delete(REFRESH_COOKIE_NAME)
            self.session.clear()

    async def me(self) -> Dict[str, Any]:
        data = await self.get("/auth/me")
        self.session.user = data["user"]
        return data["user"]

    # generic verbs
    async def get(self, path: str, *, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Any = None) -> Any:
        return await self.request("POST", path, json=json)

    async def put(self, path: str, json: Any = None) -> Any:
        return await self.request("PUT", path, json=json)

    async def patch(self, path: str, json: Any = None) -> Any:
        return await self.request("PATCH", path, json=json)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)
