"""Durable holder of the bearer token and cached user profile."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

LOGGER = logging.getLogger(__name__)


class StorageBackend(ABC):
    """Key/value string store with browser local-storage semantics."""

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def remove_item(self, key: str) -> None:
        ...


class MemoryStorage(StorageBackend):
    """Process-lifetime storage; shared instances survive runtime rebuilds."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class JsonFileStorage(StorageBackend):
    """Storage persisted as a single JSON object on disk.

    Every mutation rewrites the file through a temporary file and
    ``os.replace`` so a crash never leaves a half-written store behind.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def get_item(self, key: str) -> Optional[str]:
        value = self._read().get(key)
        return value if isinstance(value, str) else None

    def set_item(self, key: str, value: str) -> None:
        items = self._read()
        items[key] = value
        self._write(items)

    def remove_item(self, key: str) -> None:
        items = self._read()
        if key in items:
            del items[key]
            self._write(items)

    def _read(self) -> Dict[str, Any]:
        if not self._path.is_file():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Ignoring unreadable session store %s: %s", self._path, exc)
            return {}
        if not isinstance(raw, dict):
            LOGGER.warning("Ignoring session store %s without a top-level mapping", self._path)
            return {}
        return raw

    def _write(self, items: Dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".session-", dir=str(self._path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(items, handle)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class TokenStore:
    """Stores the credential and profile under fixed key names.

    Only the session manager writes here; other components receive
    :meth:`get_token` as a read-only token provider.
    """

    def __init__(
        self,
        storage: StorageBackend,
        *,
        token_key: str = "console_token",
        user_key: str = "console_user",
    ) -> None:
        self._storage = storage
        self._token_key = token_key
        self._user_key = user_key

    def get_token(self) -> Optional[str]:
        return self._storage.get_item(self._token_key) or None

    def get_user(self) -> Optional[Dict[str, Any]]:
        raw = self._storage.get_item(self._user_key)
        if not raw:
            return None
        try:
            user = json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.warning("Discarding unparsable cached user profile")
            return None
        return user if isinstance(user, dict) else None

    @property
    def has_token(self) -> bool:
        return self.get_token() is not None

    def save(self, token: str, user: Optional[Dict[str, Any]]) -> None:
        if not token:
            raise ValueError("token must be a non-empty string")
        self._storage.set_item(self._token_key, token)
        self.set_user(user)

    def set_user(self, user: Optional[Dict[str, Any]]) -> None:
        if user:
            self._storage.set_item(self._user_key, json.dumps(user))
        else:
            self._storage.remove_item(self._user_key)

    def clear(self) -> None:
        self._storage.remove_item(self._token_key)
        self._storage.remove_item(self._user_key)
