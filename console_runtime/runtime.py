"""Runtime composition root: wires session, gateway, realtime and transfers."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Optional, Set

import requests

from console_runtime.auth import (
    JsonFileStorage,
    SessionChange,
    SessionManager,
    SessionStatus,
    StorageBackend,
    TokenStore,
)
from console_runtime.config import RuntimeSettings, get_settings
from console_runtime.errors import ConnectionExhaustedError
from console_runtime.network import (
    DummyTransport,
    RealtimeConnection,
    RequestGateway,
    TransportFactory,
    WebSocketTransport,
)
from console_runtime.presence import DevicePresence
from console_runtime.transfers import TransferQueue

LOGGER = logging.getLogger(__name__)


class ConsoleRuntime:
    """Process-wide session context shared by every console feature.

    Built once at start-up and torn down with :meth:`shutdown`. The realtime
    connection follows the session: it opens once the session is
    authenticated and closes when the session is cleared.
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        storage: StorageBackend,
        transport_factory: TransportFactory,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.settings = settings
        self.token_store = TokenStore(storage, token_key=settings.token_key, user_key=settings.user_key)
        self.gateway = RequestGateway(settings, token_provider=self.token_store.get_token, http=http)
        self.session = SessionManager(settings, self.token_store, self.gateway)
        self.gateway.on_unauthorized = self.session.invalidate
        self.realtime = RealtimeConnection(
            settings,
            transport_factory,
            token_provider=self.token_store.get_token,
        )
        self.transfers = TransferQueue.from_settings(settings)
        self.presence = DevicePresence(self.realtime)
        self._background: Set[asyncio.Task[Any]] = set()
        self._detach_session = self.session.on_change(self._on_session_change)
        self._detach_presence = self.presence.attach()

    async def start(self) -> bool:
        """Restore a stored session; return whether the user is authenticated."""

        if not self.token_store.has_token:
            LOGGER.info("No stored session; login required")
            return False
        restored = await self.session.verify_session()
        LOGGER.info("Stored session %s", "restored" if restored else "rejected")
        return restored

    async def shutdown(self) -> None:
        self._detach_session()
        self._detach_presence()
        await self.realtime.disconnect()
        await self.transfers.aclose()
        for task in list(self._background):
            task.cancel()
        for task in list(self._background):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.session.aclose()

    def _on_session_change(self, change: SessionChange) -> None:
        if change.status is SessionStatus.AUTHENTICATED and change.previous is not SessionStatus.AUTHENTICATED:
            if self.settings.realtime_autoconnect:
                self._spawn(self._connect_realtime(), "runtime-realtime-connect")
        elif change.status is SessionStatus.UNAUTHENTICATED and change.previous is not SessionStatus.UNAUTHENTICATED:
            self._spawn(self.realtime.disconnect(), "runtime-realtime-disconnect")

    async def _connect_realtime(self) -> None:
        try:
            await self.realtime.connect()
        except ConnectionExhaustedError as exc:
            # already broadcast to connection observers
            LOGGER.warning("Realtime connection unavailable: %s", exc)

    def _spawn(self, coro: Any, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


def default_transport_factory(settings: RuntimeSettings) -> TransportFactory:
    if settings.transport == "websocket":
        return lambda s, token: WebSocketTransport(s, token)
    return lambda s, token: DummyTransport(s, token)


def build_runtime(
    settings: Optional[RuntimeSettings] = None,
    *,
    storage: Optional[StorageBackend] = None,
    http: Optional[requests.Session] = None,
    transport_factory: Optional[TransportFactory] = None,
) -> ConsoleRuntime:
    """Construct a runtime from settings, defaulting to the durable file store."""

    settings = settings or get_settings()
    resolved_factory = transport_factory or default_transport_factory(settings)
    LOGGER.debug("Initialising console runtime (transport=%s)", settings.transport)
    return ConsoleRuntime(
        settings,
        storage=storage if storage is not None else JsonFileStorage(settings.storage_path),
        transport_factory=resolved_factory,
        http=http,
    )


__all__ = ["ConsoleRuntime", "build_runtime", "default_transport_factory"]
