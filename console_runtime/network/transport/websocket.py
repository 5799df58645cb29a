"""WebSocket transport implementation."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus

from console_runtime.config import RuntimeSettings
from console_runtime.errors import HandshakeRejected, NetworkError, ProtocolError
from console_runtime.network.transport.base import BaseTransport

LOGGER = logging.getLogger(__name__)


class WebSocketTransport(BaseTransport):
    """WebSocket transport carrying the bearer token in the handshake."""

    def __init__(self, settings: RuntimeSettings, token: Optional[str] = None) -> None:
        self._settings = settings
        self._token = token
        self._ws: Optional[ClientConnection] = None

    async def connect(self) -> None:
        url = str(self._settings.ws_url)
        LOGGER.info("Connecting to realtime endpoint %s", url)
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else None
        try:
            self._ws = await connect(
                url,
                additional_headers=headers,
                open_timeout=self._settings.request_timeout_seconds,
            )
        except InvalidStatus as exc:
            status_code = exc.response.status_code
            raise HandshakeRejected(f"Realtime handshake rejected (HTTP {status_code})", status_code=status_code) from exc
        except InvalidHandshake as exc:
            raise HandshakeRejected(f"Realtime handshake failed: {exc}") from exc
        except (OSError, TimeoutError) as exc:
            raise NetworkError(f"Realtime connect to {url} failed: {exc}") from exc

    async def send(self, message: dict[str, Any]) -> None:
        if not self._ws:
            raise NetworkError("WebSocket transport not connected")
        payload = json.dumps(message)
        LOGGER.debug("WebSocket send: %s", payload)
        try:
            await self._ws.send(payload)
        except ConnectionClosed as exc:
            raise NetworkError(f"WebSocket closed during send: {exc}") from exc

    async def receive(self) -> dict[str, Any]:
        if not self._ws:
            raise NetworkError("WebSocket transport not connected")
        try:
            raw = await self._ws.recv()
        except ConnectionClosed as exc:
            raise NetworkError(f"WebSocket closed: {exc}") from exc
        LOGGER.debug("WebSocket receive: %s", raw)
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"Realtime frame is not valid JSON: {raw[:200]!r}") from exc
        if not isinstance(message, dict):
            raise ProtocolError("Realtime frame must be a JSON object")
        return message

    async def close(self) -> None:
        if self._ws:
            LOGGER.info("Closing WebSocket transport")
            ws, self._ws = self._ws, None
            await ws.close()
