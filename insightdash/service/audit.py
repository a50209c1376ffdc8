from __future__ import annotations

import concurrent.futures
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from fastapi import Request

from insightdash.logging import get_logger
from insightdash.storage.models import ActivityAction, ActivityLog, EntityType

logger = get_logger(__name__)

UNKNOWN = "unknown"


class ActivityLogWriter(Protocol):
    def create_activity_log(self, entry: ActivityLog) -> ActivityLog: ...


@dataclass(frozen=True)
class RequestMeta:
    ip_address: str = UNKNOWN
    user_agent: str = UNKNOWN

    @classmethod
    def from_request(cls, request: Request) -> "RequestMeta":
        forwarded = request.headers.get("x-forwarded-for")
        ip = forwarded.split(",")[0].strip() if forwarded else None
        if not ip:
            ip = request.headers.get("x-real-ip")
        if not ip and request.client:
            ip = request.client.host
        return cls(
            ip_address=ip or UNKNOWN,
            user_agent=request.headers.get("user-agent") or UNKNOWN,
        )


class AuditSink:
    """Fire-and-forget writer for activity log entries.

    ``record`` returns immediately; the write happens on a small worker pool
    and any failure is logged and dropped so it can never change the outcome
    of the request that triggered it.
    """

    def __init__(self, store: ActivityLogWriter, *, max_workers: int = 1) -> None:
        self.store = store
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix="audit"
        )
        self._pending: set[concurrent.futures.Future] = set()
        self._lock = threading.Lock()
        self._shutdown = False

    def record(
        self,
        actor_id: str,
        action: ActivityAction | str,
        entity_type: EntityType | str | None = None,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        request_meta: Optional[RequestMeta] = None,
    ) -> None:
        try:
            entry = ActivityLog.new(
                actor_id,
                action,
                entity_type=entity_type,
                entity_id=entity_id,
                details=details,
                ip_address=request_meta.ip_address if request_meta else None,
                user_agent=request_meta.user_agent if request_meta else None,
            )
        except ValueError as exc:
            logger.warning("audit_entry_invalid", action=str(action), error=str(exc))
            return
        with self._lock:
            if self._shutdown:
                logger.warning("audit_sink_closed", action=entry.action.value)
                return
            future = self._executor.submit(self._write, entry)
            self._pending.add(future)
        future.add_done_callback(self._discard)

    def _write(self, entry: ActivityLog) -> None:
        try:
            self.store.create_activity_log(entry)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=entry.action.value,
                user_id=entry.user_id,
                error=str(exc),
            )

    def _discard(self, future: concurrent.futures.Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def flush(self, timeout: Optional[float] = 5.0) -> None:
        """Block until writes submitted so far have finished."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            concurrent.futures.wait(pending, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            if self._shutdown:
                return
            self._shutdown = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.info("audit_sink_shutdown", wait=wait)
