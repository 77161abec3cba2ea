"""Injectable key-value persistence for per-wallet session data.

Keys are namespaced as ``"<store-name>:<address-lowercased>"`` and values are
JSON objects. The in-memory store backs tests and short-lived processes; the
file store keeps sessions across restarts for CLI and server use.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional, Protocol

from poly_trader.settings import Settings

logger = logging.getLogger("poly_trader.session_store")


def session_key(store_name: str, address: str) -> str:
    return f"{store_name}:{address.strip().lower()}"


class SessionStore(Protocol):
    def get(self, key: str) -> Optional[dict[str, Any]]: ...

    def put(self, key: str, value: dict[str, Any]) -> None: ...

    def invalidate(self, key: str) -> None: ...


class MemorySessionStore:
    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}

    def get(self, key: str) -> Optional[dict[str, Any]]:
        value = self._data.get(key)
        return dict(value) if value is not None else None

    def put(self, key: str, value: dict[str, Any]) -> None:
        self._data[key] = dict(value)

    def invalidate(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data.keys())


class JsonFileSessionStore:
    def __init__(self, path: Path) -> None:
        self._path = path
        self._data: dict[str, dict[str, Any]] = self._read_file()

    def get(self, key: str) -> Optional[dict[str, Any]]:
        value = self._data.get(key)
        return dict(value) if value is not None else None

    def put(self, key: str, value: dict[str, Any]) -> None:
        self._data[key] = dict(value)
        self._write_file()

    def invalidate(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._write_file()

    def keys(self) -> list[str]:
        return list(self._data.keys())

    def _read_file(self) -> dict[str, dict[str, Any]]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.exception("session_store_unreadable", extra={"context": str(self._path)})
            return {}
        if not isinstance(raw, dict):
            return {}
        return {k: v for k, v in raw.items() if isinstance(v, dict)}

    def _write_file(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._data, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self._path)


def make_session_store(settings: Settings) -> SessionStore:
    if settings.session_store_path.strip():
        return JsonFileSessionStore(Path(settings.session_store_path).expanduser())
    return MemorySessionStore()
