"""Ordered multicast registry shared by session, realtime and transfer listeners."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, Hashable, List

LOGGER = logging.getLogger(__name__)

Callback = Callable[[Any], Any]
Disposer = Callable[[], None]


class _Entry:
    __slots__ = ("callback",)

    def __init__(self, callback: Callback) -> None:
        self.callback = callback


class CallbackRegistry:
    """Maps a key to callbacks invoked in registration order.

    The same callback may be registered more than once; every registration is
    an independent entry with its own disposer. Delivery is synchronous and a
    raising callback never prevents its siblings from running.
    """

    def __init__(self, name: str = "callbacks") -> None:
        self._name = name
        self._entries: Dict[Hashable, List[_Entry]] = defaultdict(list)

    def add(self, key: Hashable, callback: Callback) -> Disposer:
        if not callable(callback):
            raise TypeError(f"{self._name} callback must be callable")
        entry = _Entry(callback)
        self._entries[key].append(entry)
        LOGGER.debug("Registered %s callback for %s: %s", self._name, key, callback)

        def dispose() -> None:
            entries = self._entries.get(key)
            if not entries:
                return
            for index, existing in enumerate(entries):
                if existing is entry:
                    del entries[index]
                    break
            if not entries:
                self._entries.pop(key, None)

        return dispose

    def emit(self, key: Hashable, payload: Any) -> int:
        """Invoke every callback registered for ``key``; return how many ran."""

        entries = list(self._entries.get(key, ()))
        for entry in entries:
            try:
                entry.callback(payload)
            except Exception:  # noqa: BLE001
                LOGGER.exception("%s callback failed for %s: %s", self._name, key, entry.callback)
        return len(entries)

    def count(self, key: Hashable) -> int:
        return len(self._entries.get(key, ()))

    def keys(self) -> list[Hashable]:
        return list(self._entries.keys())

    def clear(self) -> None:
        self._entries.clear()


__all__ = ["CallbackRegistry", "Disposer"]
