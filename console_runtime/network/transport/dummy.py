"""In-memory transport for offline use and tests."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Union

from console_runtime.errors import NetworkError
from console_runtime.network.transport.base import BaseTransport

LOGGER = logging.getLogger(__name__)

_Inbound = Union[dict[str, Any], Exception]


class DummyTransport(BaseTransport):
    """Transport that records sent frames and replays injected ones.

    ``inject`` queues an inbound frame; ``drop`` makes the pending
    ``receive`` fail as if the socket went away.
    """

    def __init__(self, settings=None, token: Optional[str] = None) -> None:
        self._settings = settings
        self.token = token
        self.sent: list[dict[str, Any]] = []
        self.connected = False
        self._inbound: asyncio.Queue[_Inbound] = asyncio.Queue()

    async def connect(self) -> None:
        LOGGER.debug("Dummy transport connect()")
        self.connected = True

    async def send(self, message: dict[str, Any]) -> None:
        if not self.connected:
            raise NetworkError("Dummy transport not connected")
        LOGGER.debug("Dummy transport send(): %s", message)
        self.sent.append(message)

    async def receive(self) -> dict[str, Any]:
        item = await self._inbound.get()
        if isinstance(item, Exception):
            if isinstance(item, NetworkError):
                self.connected = False
            raise item
        return item

    async def close(self) -> None:
        LOGGER.debug("Dummy transport close()")
        self.connected = False

    def inject(self, message: dict[str, Any]) -> None:
        self._inbound.put_nowait(message)

    def drop(self, reason: str = "transport dropped") -> None:
        self._inbound.put_nowait(NetworkError(reason))
