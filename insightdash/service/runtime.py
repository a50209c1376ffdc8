from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from insightdash.config import get_settings, reset_settings_cache
from insightdash.logging import get_logger
from insightdash.service.audit import AuditSink
from insightdash.service.auth import AuthService
from insightdash.service.tokens import TokenService
from insightdash.service.users import UserService
from insightdash.storage.memory import MemoryStore
from insightdash.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a DSN with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            environment=self.settings.environment.value,
        )
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.audit = AuditSink(self.store, max_workers=self.settings.audit_max_workers)
        self.tokens = TokenService(self.settings)
        self.auth = AuthService(
            self.store, self.settings, tokens=self.tokens, audit=self.audit
        )
        self.users = UserService(self.auth, audit=self.audit)
        logger.info("runtime_init_completed", store_type=store_type)

    def close(self) -> None:
        self.audit.shutdown(wait=True)
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime
