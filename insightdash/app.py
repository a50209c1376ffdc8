from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from insightdash.api.error_handling import register_exception_handlers
from insightdash.api.routes import router
from insightdash.config import get_settings
from insightdash.logging import configure_logging, get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3.0

_settings = get_settings()
configure_logging(_settings.environment.value, _settings.log_level, _settings.log_json)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from insightdash.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", environment=runtime.settings.environment.value)
    yield
    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="InsightDash API", version=__version__, lifespan=lifespan)

# Credentials are allowed so the browser sends the refresh cookie; never combine with "*"
app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with X-Request-ID (client-supplied or generated)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    if request.url.scheme == "https" and _settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Liveness plus a bounded credential store check."""
    from insightdash.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection),
            HEALTH_CHECK_TIMEOUT_SECONDS,
        )
        db_ok = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        db_ok = False
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        db_ok = False
    store_type = "memory" if runtime.settings.use_memory_store else "postgres"
    return {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": {
            "database": {"status": "healthy" if db_ok else "unhealthy", "type": store_type}
        },
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
