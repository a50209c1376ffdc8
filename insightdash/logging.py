from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

# Correlation id for the request currently being handled
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Environments that log for a human reading a terminal
CONSOLE_ENVIRONMENTS = ("development", "test")

_SENSITIVE_KEY_PARTS = ("password", "secret", "token", "authorization", "cookie", "email")
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and addresses, keeping two characters at each end."""
    for key, value in event_dict.items():
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(part in key.lower() for part in _SENSITIVE_KEY_PARTS):
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def select_renderer(environment: str, json_output: Optional[bool] = None):
    """Pick the final processor for ``environment``.

    Development and test render for the console; every other environment
    emits JSON lines. An explicit ``json_output`` overrides the choice.
    """
    environment = (environment or "").strip().lower()
    if json_output is None:
        json_output = environment not in CONSOLE_ENVIRONMENTS
    if json_output:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=environment == "development")


def configure_logging(
    environment: str = "development",
    log_level: str = "INFO",
    json_output: Optional[bool] = None,
) -> None:
    renderer = select_renderer(environment, json_output)
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _mask_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if isinstance(renderer, structlog.processors.JSONRenderer):
        processors.append(structlog.processors.format_exc_info)
    processors.append(renderer)

    level = getattr(logging, (log_level or "INFO").upper(), logging.INFO)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        # settings may reconfigure after module-level loggers exist
        cache_logger_on_first_use=False,
    )


def _env_flag(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip().lower() in _TRUTHY


# Settings import this module, so the first pass reads the process env directly;
# the app reconfigures from Settings once they are loaded.
configure_logging(
    os.getenv("ENVIRONMENT", "development"),
    os.getenv("LOG_LEVEL", "INFO"),
    _env_flag("LOG_JSON"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger; entries carry the request correlation ID."""
    return structlog.get_logger(name)
