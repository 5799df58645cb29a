"""Reference-counted bookkeeping for logical realtime channels."""

from __future__ import annotations

from typing import Dict, Iterator


class ChannelRefCounts:
    """Maps channel name to a positive refcount; absent means zero."""

    def __init__(self) -> None:
        self._counts: Dict[str, int] = {}

    def acquire(self, name: str) -> bool:
        """Increment ``name``; return True on the 0 -> 1 transition."""

        if not name:
            raise ValueError("channel name must be non-empty")
        count = self._counts.get(name, 0) + 1
        self._counts[name] = count
        return count == 1

    def release(self, name: str) -> bool:
        """Decrement ``name``; return True on the 1 -> 0 transition."""

        count = self._counts.get(name, 0)
        if count <= 0:
            raise ValueError(f"channel {name!r} is not joined")
        if count == 1:
            del self._counts[name]
            return True
        self._counts[name] = count - 1
        return False

    def refcount(self, name: str) -> int:
        return self._counts.get(name, 0)

    def names(self) -> list[str]:
        return list(self._counts)

    def __contains__(self, name: object) -> bool:
        return name in self._counts

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._counts))

    def __len__(self) -> int:
        return len(self._counts)
