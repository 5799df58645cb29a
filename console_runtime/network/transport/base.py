"""Transport abstractions for the realtime connection."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from console_runtime.config import RuntimeSettings


class BaseTransport(ABC):
    """Abstract WebSocket-like transport owned by the realtime connection."""

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def receive(self) -> dict[str, Any]:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


TransportFactory = Callable[[RuntimeSettings, Optional[str]], BaseTransport]
