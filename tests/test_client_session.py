"""Tests for the client session and transparent token renewal.

The client talks to the real app in-process through ``httpx.ASGITransport``;
protocol corner cases use ``httpx.MockTransport``.
"""

import asyncio
import json
import stat
import time

import httpx
import pytest

from insightdash import app as app_module
from insightdash.client.session import (
    ApiClient,
    ApiError,
    AuthSession,
    InvalidCredentialsError,
)
from insightdash.client.storage import (
    ACCESS_TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    FileTokenStorage,
    MemoryTokenStorage,
)
from insightdash.service.runtime import get_runtime
from insightdash.service.tokens import TokenService

BASE_URL = "http://testserver"
EMAIL = "dana@example.com"
PASSWORD = "secret-pass"


@pytest.fixture
def transport():
    return httpx.ASGITransport(app=app_module.app)


class ExpiryRecorder:
    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1


def _expired_access_token(user_id: str) -> str:
    settings = get_runtime().settings
    past = TokenService(settings, clock=lambda: time.time() - 3600)
    return past.issue_token_pair(user_id).access_token


def _has_refresh_cookie(client: ApiClient) -> bool:
    return any(cookie.name == "refreshToken" for cookie in client.cookies.jar)


class TestSignIn:
    async def test_register_stores_access_token_and_cookie(self, transport):
        async with ApiClient(BASE_URL, transport=transport) as client:
            user = await client.register(EMAIL, PASSWORD, "Dana")

            assert user["email"] == EMAIL
            assert client.session.user == user
            assert client.session.is_authenticated
            # refresh token travels in the cookie, not in storage
            assert client.session.refresh_token is None
            assert _has_refresh_cookie(client)

    async def test_login_failure_is_invalid_credentials(self, transport):
        expired = ExpiryRecorder()
        session = AuthSession(on_session_expired=expired)
        async with ApiClient(BASE_URL, transport=transport, session=session) as client:
            await client.register(EMAIL, PASSWORD, "Dana")
            with pytest.raises(InvalidCredentialsError) as exc_info:
                await client.login(EMAIL, "wrong-password")

            assert exc_info.value.status_code == 401
            assert exc_info.value.message == "invalid email or password"
            assert client.refresh_calls == 0
            assert expired.calls == 0

    async def test_concurrent_calls_with_valid_token(self, transport):
        async with ApiClient(BASE_URL, transport=transport) as client:
            user = await client.register(EMAIL, PASSWORD, "Dana")

            results = await asyncio.gather(*(client.me() for _ in range(10)))

            assert {r["id"] for r in results} == {user["id"]}
            assert client.refresh_calls == 0

    async def test_logout_clears_everything(self, transport):
        async with ApiClient(BASE_URL, transport=transport) as client:
            await client.register(EMAIL, PASSWORD, "Dana")
            await client.logout()

            assert client.session.access_token is None
            assert client.session.user is None
            assert not _has_refresh_cookie(client)


class TestTransparentRefresh:
    async def test_expired_access_token_is_renewed(self, transport):
        async with ApiClient(BASE_URL, transport=transport) as client:
            user = await client.register(EMAIL, PASSWORD, "Dana")
            stale = _expired_access_token(user["id"])
            client.session.store_tokens(stale)

            me = await client.me()

            assert me["id"] == user["id"]
            assert client.refresh_calls == 1
            assert client.session.access_token not in (None, stale)

    async def test_concurrent_401s_share_one_refresh(self, transport):
        async with ApiClient(BASE_URL, transport=transport) as client:
            user = await client.register(EMAIL, PASSWORD, "Dana")
            client.session.store_tokens(_expired_access_token(user["id"]))

            results = await asyncio.gather(*(client.me() for _ in range(5)))

            assert {r["id"] for r in results} == {user["id"]}
            assert client.refresh_calls == 1

    async def test_independent_refresh_when_not_coalescing(self, transport):
        async with ApiClient(BASE_URL, transport=transport, coalesce_refresh=False) as client:
            user = await client.register(EMAIL, PASSWORD, "Dana")
            client.session.store_tokens(_expired_access_token(user["id"]))

            results = await asyncio.gather(*(client.me() for _ in range(5)))

            assert {r["id"] for r in results} == {user["id"]}
            assert client.refresh_calls == 5

    async def test_refresh_failure_expires_session(self, transport):
        expired = ExpiryRecorder()
        session = AuthSession(on_session_expired=expired)
        async with ApiClient(BASE_URL, transport=transport, session=session) as client:
            user = await client.register(EMAIL, PASSWORD, "Dana")
            get_runtime().store.delete_user(user["id"])
            client.session.store_tokens(_expired_access_token(user["id"]))

            with pytest.raises(ApiError) as exc_info:
                await client.me()

            assert exc_info.value.status_code == 401
            assert expired.calls == 1
            assert client.session.access_token is None
            assert not _has_refresh_cookie(client)

    async def test_concurrent_failures_expire_once(self, transport):
        expired = ExpiryRecorder()
        session = AuthSession(on_session_expired=expired)
        async with ApiClient(BASE_URL, transport=transport, session=session) as client:
            user = await client.register(EMAIL, PASSWORD, "Dana")
            get_runtime().store.delete_user(user["id"])
            client.session.store_tokens(_expired_access_token(user["id"]))

            results = await asyncio.gather(
                *(client.me() for _ in range(3)), return_exceptions=True
            )

            assert all(isinstance(r, ApiError) for r in results)
            assert client.refresh_calls == 1
            assert expired.calls == 1

    async def test_no_refresh_credential_surfaces_original_error(self, transport):
        expired = ExpiryRecorder()
        session = AuthSession(on_session_expired=expired)
        session.store_tokens("stale-access-token")
        async with ApiClient(BASE_URL, transport=transport, session=session) as client:
            with pytest.raises(ApiError) as exc_info:
                await client.me()

            assert exc_info.value.status_code == 401
            assert exc_info.value.message == "not authorized, token failed"
            assert client.refresh_calls == 0
            assert expired.calls == 1

    async def test_other_errors_do_not_refresh(self, transport):
        async with ApiClient(BASE_URL, transport=transport) as client:
            await client.register(EMAIL, PASSWORD, "Dana")
            with pytest.raises(ApiError) as exc_info:
                await client.get("/users")

            assert exc_info.value.status_code == 403
            assert client.refresh_calls == 0


class TestRefreshProtocol:
    async def test_retry_happens_at_most_once(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.path, request.headers.get("Authorization"), request.content))
            if request.url.path == "/v1/auth/refresh":
                return httpx.Response(
                    200, json={"status": "ok", "data": {"accessToken": "fresh"}}
                )
            return httpx.Response(
                401,
                json={
                    "status": "error",
                    "error": {"code": "unauthorized", "message": "not authorized, token failed"},
                },
            )

        session = AuthSession()
        session.store_tokens("stale", "refresh-1")
        async with ApiClient(
            "http://api.test", transport=httpx.MockTransport(handler), session=session
        ) as client:
            with pytest.raises(ApiError) as exc_info:
                await client.me()

        assert exc_info.value.status_code == 401
        assert [path for path, _, _ in seen] == [
            "/v1/auth/me",
            "/v1/auth/refresh",
            "/v1/auth/me",
        ]
        assert seen[0][1] == "Bearer stale"
        assert json.loads(seen[1][2]) == {"refreshToken": "refresh-1"}
        assert seen[2][1] == "Bearer fresh"
        assert client.refresh_calls == 1

    async def test_body_refresh_token_is_rotated_in_storage(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/auth/refresh":
                return httpx.Response(
                    200,
                    json={"status": "ok", "data": {"accessToken": "fresh", "refreshToken": "refresh-2"}},
                )
            if request.headers.get("Authorization") == "Bearer fresh":
                return httpx.Response(200, json={"status": "ok", "data": {"ok": True}})
            return httpx.Response(401, json={"status": "error", "error": {"message": "expired"}})

        session = AuthSession()
        session.store_tokens("stale", "refresh-1")
        async with ApiClient(
            "http://api.test", transport=httpx.MockTransport(handler), session=session
        ) as client:
            assert await client.get("/anything") == {"ok": True}

        assert session.access_token == "fresh"
        assert session.refresh_token == "refresh-2"

    async def test_cookie_refresh_sends_no_body_and_drops_stored_token(self):
        refresh_requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/auth/refresh":
                refresh_requests.append(request)
                return httpx.Response(
                    200, json={"status": "ok", "data": {"accessToken": "fresh"}}
                )
            if request.headers.get("Authorization") == "Bearer fresh":
                return httpx.Response(200, json={"status": "ok", "data": {"ok": True}})
            return httpx.Response(401, json={"status": "error", "error": {"message": "expired"}})

        session = AuthSession()
        session.store_tokens("stale", "refresh-1")
        async with ApiClient(
            "http://api.test", transport=httpx.MockTransport(handler), session=session
        ) as client:
            client.cookies.set("refreshToken", "cookie-token", domain="api.test")
            assert await client.get("/anything") == {"ok": True}

        assert len(refresh_requests) == 1
        assert refresh_requests[0].content == b""
        assert "refreshToken=cookie-token" in refresh_requests[0].headers["Cookie"]
        assert session.access_token == "fresh"
        assert session.refresh_token is None

    async def test_malformed_refresh_response_expires_session(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/auth/refresh":
                return httpx.Response(200, json={"status": "ok", "data": {}})
            return httpx.Response(401, json={})

        expired = ExpiryRecorder()
        session = AuthSession(on_session_expired=expired)
        session.store_tokens("stale", "refresh-1")
        async with ApiClient(
            "http://api.test", transport=httpx.MockTransport(handler), session=session
        ) as client:
            with pytest.raises(KeyError):
                await client.get("/anything")

        assert expired.calls == 1
        assert session.refresh_token is None


class TestTokenStorage:
    def test_memory_storage(self):
        storage = MemoryTokenStorage()
        storage.set(ACCESS_TOKEN_KEY, "a")
        storage.remove(ACCESS_TOKEN_KEY)
        assert storage.get(ACCESS_TOKEN_KEY) is None

    def test_file_storage_survives_reopen(self, tmp_path):
        path = tmp_path / "tokens.json"
        FileTokenStorage(path).set(ACCESS_TOKEN_KEY, "a")
        FileTokenStorage(path).set(REFRESH_TOKEN_KEY, "r")

        reopened = FileTokenStorage(path)
        assert reopened.get(ACCESS_TOKEN_KEY) == "a"
        assert reopened.get(REFRESH_TOKEN_KEY) == "r"
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_file_storage_remove_and_clear(self, tmp_path):
        storage = FileTokenStorage(tmp_path / "tokens.json")
        storage.set(ACCESS_TOKEN_KEY, "a")
        storage.set(REFRESH_TOKEN_KEY, "r")

        storage.remove(ACCESS_TOKEN_KEY)
        assert storage.get(ACCESS_TOKEN_KEY) is None
        assert storage.get(REFRESH_TOKEN_KEY) == "r"

        storage.clear()
        assert storage.get(REFRESH_TOKEN_KEY) is None

    def test_corrupt_file_reads_as_empty(self, tmp_path):
        path = tmp_path / "tokens.json"
        path.write_text("{not json", encoding="utf-8")
        assert FileTokenStorage(path).get(ACCESS_TOKEN_KEY) is None

    def test_session_clear_uses_storage(self, tmp_path):
        storage = FileTokenStorage(tmp_path / "tokens.json")
        session = AuthSession(storage)
        session.store_tokens("a", "r")
        session.clear()
        assert storage.get(ACCESS_TOKEN_KEY) is None
        assert storage.get(REFRESH_TOKEN_KEY) is None
