from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

from insightdash.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_KEY = "accessToken"
REFRESH_TOKEN_KEY = "refreshToken"


class TokenStorage(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def clear(self) -> None: ...


class MemoryTokenStorage:
    """Process-local token storage; the default for scripts and tests."""

    def __init__(self) -> None:
        self._items: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove(self, key: str) -> None:
        self._items.pop(key, None)

    def clear(self) -> None:
        self._items.clear()


class FileTokenStorage:
    """JSON file backed storage that survives restarts, like browser localStorage.

    Read or write failures are logged and treated as an empty store; losing
    the cached token only forces a fresh login.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("token_storage_read_failed", path=str(self.path), error=str(exc))
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(data), encoding="utf-8")
            os.chmod(tmp_path, 0o600)
            tmp_path.replace(self.path)
        except OSError as exc:
            logger.warning("token_storage_write_failed", path=str(self.path), error=str(exc))

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._load().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key in data:
                data.pop(key)
                self._save(data)

    def clear(self) -> None:
        with self._lock:
            self._save({})
