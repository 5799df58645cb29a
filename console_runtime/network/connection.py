"""Realtime connection that owns the transport lifecycle, channels and topics."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, List, Optional, Set

from pydantic import ValidationError

from console_runtime.config import RuntimeSettings
from console_runtime.errors import (
    ConnectionExhaustedError,
    ConsoleRuntimeError,
    NetworkError,
    ProtocolError,
)
from console_runtime.events import CallbackRegistry, Disposer
from console_runtime.models import ChannelControl, InboundEvent
from console_runtime.network.channels import ChannelRefCounts
from console_runtime.network.transport.base import BaseTransport, TransportFactory

LOGGER = logging.getLogger(__name__)

ANNOUNCE_MESSAGE: dict[str, Any] = {"type": "admin-connect"}
_STATUS = "status"
_PROTOCOL_ERROR = "protocol_error"


class ConnectionState(enum.Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"


@dataclass(frozen=True)
class ConnectionStatus:
    """Payload delivered to connection observers on every transition."""

    state: ConnectionState
    attempt: int
    error: Optional[ConsoleRuntimeError] = None

    @property
    def exhausted(self) -> bool:
        return isinstance(self.error, ConnectionExhaustedError)


class RealtimeConnection:
    """Maintains the single multiplexed realtime connection of the console.

    ``attempt`` counts consecutive failed connect attempts. When it reaches
    ``max_reconnect_attempts`` the connection stops in DISCONNECTED with a
    :class:`ConnectionExhaustedError`; only an explicit :meth:`connect`
    starts over. Channel refcounts and topic subscriptions are local state
    and survive reconnects and :meth:`disconnect`.
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        transport_factory: TransportFactory,
        *,
        token_provider: Callable[[], Optional[str]],
    ) -> None:
        self._settings = settings
        self._transport_factory = transport_factory
        self._token_provider = token_provider
        self._state = ConnectionState.DISCONNECTED
        self._attempt = 0
        self._transport: Optional[BaseTransport] = None
        self._supervisor: Optional[asyncio.Task[None]] = None
        self._writer: Optional[asyncio.Task[Exception]] = None
        self._generation = 0
        self._outbox: Optional[asyncio.Queue[tuple[dict[str, Any], bool]]] = None
        self._pending: Deque[dict[str, Any]] = deque()
        self._channels = ChannelRefCounts()
        self._wire_joined: Set[str] = set()
        self._topics = CallbackRegistry("topic subscriber")
        self._observers = CallbackRegistry("connection observer")
        self._waiters: List[asyncio.Future[bool]] = []
        self.last_error: Optional[ConsoleRuntimeError] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def status(self) -> ConnectionStatus:
        return ConnectionStatus(state=self._state, attempt=self._attempt, error=self.last_error)

    def channels(self) -> list[str]:
        return self._channels.names()

    def channel_refcount(self, name: str) -> int:
        return self._channels.refcount(name)

    def subscriber_count(self, topic: str) -> int:
        return self._topics.count(topic)

    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------ lifecycle

    async def connect(self) -> bool:
        """Open the connection, or rejoin an attempt already in progress.

        Returns True once connected and False if :meth:`disconnect` aborted
        the attempt. Raises :class:`ConnectionExhaustedError` when the
        attempt limit is reached.
        """

        if self._state is ConnectionState.CONNECTED:
            return True
        self._attempt = 0
        self.last_error = None
        waiter: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        if self._supervisor is None or self._supervisor.done():
            self._generation += 1
            self._set_state(ConnectionState.CONNECTING)
            self._supervisor = asyncio.create_task(
                self._supervise(self._generation), name="realtime-supervisor"
            )
        return await waiter

    async def disconnect(self) -> None:
        """Tear the transport down and cancel any pending reconnect.

        State flips to DISCONNECTED before the first await, so a
        :meth:`connect` issued while the old transport is still closing
        starts a fresh supervisor that this call leaves alone.
        """

        supervisor = self._supervisor
        self._supervisor = None
        self._generation += 1
        writer, transport = self._detach_transport()
        self._resolve_waiters(result=False)
        if self._state is not ConnectionState.DISCONNECTED:
            LOGGER.info("Realtime connection closed")
            self._set_state(ConnectionState.DISCONNECTED)
        if supervisor and not supervisor.done():
            supervisor.cancel()
            if supervisor is not asyncio.current_task():
                with contextlib.suppress(asyncio.CancelledError):
                    await supervisor
        await self._close_detached(writer, transport)

    # ------------------------------------------------------------------ channels & topics

    def join_channel(self, name: str) -> Disposer:
        """Reference-count ``name``; the returned disposer releases it once."""

        first = self._channels.acquire(name)
        if first and self._state is ConnectionState.CONNECTED:
            self._wire_joined.add(name)
            self._enqueue(ChannelControl(type="join", channel=name).model_dump(), control=True)
        released = False

        def leave() -> None:
            nonlocal released
            if released:
                return
            released = True
            last = self._channels.release(name)
            if last and name in self._wire_joined:
                self._wire_joined.discard(name)
                if self._state is ConnectionState.CONNECTED:
                    self._enqueue(ChannelControl(type="leave", channel=name).model_dump(), control=True)

        return leave

    def subscribe(self, topic: str, callback: Callable[[dict[str, Any]], Any]) -> Disposer:
        """Deliver every event for ``topic`` to ``callback`` until disposed."""

        if not topic:
            raise ValueError("topic must be non-empty")
        return self._topics.add(topic, callback)

    def send(self, message: dict[str, Any]) -> None:
        """Send an application message, queueing it while not connected."""

        if not isinstance(message, dict):
            raise TypeError("realtime messages must be dicts")
        if self._state is ConnectionState.CONNECTED and self._outbox is not None:
            self._enqueue(message, control=False)
        else:
            LOGGER.debug("Queueing realtime message until connected: %s", message)
            self._pending.append(message)

    def on_state_change(self, callback: Callable[[ConnectionStatus], Any]) -> Disposer:
        return self._observers.add(_STATUS, callback)

    def on_protocol_error(self, callback: Callable[[ProtocolError], Any]) -> Disposer:
        return self._observers.add(_PROTOCOL_ERROR, callback)

    # ------------------------------------------------------------------ internals

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before attempt ``attempt + 1``; non-decreasing and capped."""

        base = self._settings.reconnect_delay_ms
        strategy = self._settings.reconnect_backoff
        if strategy == "linear":
            delay = base * max(1, attempt)
        elif strategy == "exponential":
            delay = base * (2 ** (max(1, attempt) - 1))
        else:
            delay = base
        cap = max(self._settings.reconnect_max_delay_ms, base)
        return min(delay, cap) / 1000.0

    async def _supervise(self, generation: int) -> None:
        try:
            while True:
                transport = await self._establish()
                if generation != self._generation:
                    await self._close_quietly(transport)
                    return
                self._on_transport_ready(transport)
                error = await self._pump(transport)
                await self._close_detached(*self._detach_transport())
                if generation != self._generation:
                    return
                self.last_error = error
                LOGGER.warning("Realtime transport dropped: %s", error)
                self._set_state(ConnectionState.RECONNECTING, error=error)
                await asyncio.sleep(self.backoff_delay(1))
        except ConnectionExhaustedError as exc:
            if generation != self._generation:
                return
            self.last_error = exc
            LOGGER.error("Realtime connection exhausted after %s attempt(s)", exc.attempts)
            self._set_state(ConnectionState.DISCONNECTED, error=exc)
            self._resolve_waiters(exc=exc)

    async def _establish(self) -> BaseTransport:
        max_attempts = self._settings.max_reconnect_attempts
        while True:
            transport: Optional[BaseTransport] = None
            try:
                transport = self._transport_factory(self._settings, self._token_provider())
                await transport.connect()
                return transport
            except asyncio.CancelledError:
                if transport is not None:
                    await self._close_quietly(transport)
                raise
            except Exception as exc:  # noqa: BLE001
                if transport is not None:
                    await self._close_quietly(transport)
                self._attempt += 1
                error = exc if isinstance(exc, ConsoleRuntimeError) else NetworkError(str(exc))
                self.last_error = error
                if self._attempt >= max_attempts:
                    raise ConnectionExhaustedError(self._attempt) from exc
                delay = self.backoff_delay(self._attempt)
                LOGGER.warning(
                    "Realtime connect failed (attempt %s/%s): %s; retrying in %.2fs",
                    self._attempt,
                    max_attempts,
                    exc,
                    delay,
                )
                self._set_state(ConnectionState.RECONNECTING, error=error)
                await asyncio.sleep(delay)

    def _on_transport_ready(self, transport: BaseTransport) -> None:
        self._transport = transport
        self._attempt = 0
        self.last_error = None
        self._wire_joined.clear()
        outbox: asyncio.Queue[tuple[dict[str, Any], bool]] = asyncio.Queue()
        if self._settings.announce_on_connect:
            outbox.put_nowait((dict(ANNOUNCE_MESSAGE), True))
        for name in self._channels:
            self._wire_joined.add(name)
            outbox.put_nowait((ChannelControl(type="join", channel=name).model_dump(), True))
        while self._pending:
            outbox.put_nowait((self._pending.popleft(), False))
        self._outbox = outbox
        self._writer = asyncio.create_task(self._write_loop(transport, outbox), name="realtime-writer")
        LOGGER.info("Realtime connected; rejoining %s channel(s)", len(self._wire_joined))
        self._set_state(ConnectionState.CONNECTED)
        self._resolve_waiters(result=True)

    async def _write_loop(
        self,
        transport: BaseTransport,
        outbox: asyncio.Queue[tuple[dict[str, Any], bool]],
    ) -> Exception:
        while True:
            message, control = await outbox.get()
            try:
                await transport.send(message)
            except asyncio.CancelledError:
                self._requeue(outbox, None if control else message)
                raise
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Realtime send failed: %s", exc)
                self._requeue(outbox, None if control else message)
                return exc

    async def _pump(self, transport: BaseTransport) -> ConsoleRuntimeError:
        """Dispatch inbound frames until the transport fails; return the failure."""

        assert self._writer is not None
        writer = self._writer
        while True:
            receive = asyncio.ensure_future(transport.receive())
            try:
                done, _ = await asyncio.wait({receive, writer}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                if not receive.done():
                    receive.cancel()
                    with contextlib.suppress(asyncio.CancelledError, Exception):
                        await receive
            if receive not in done:
                error = None if writer.cancelled() else writer.result()
                return error if isinstance(error, ConsoleRuntimeError) else NetworkError(str(error or "writer stopped"))
            try:
                raw = receive.result()
            except ProtocolError as exc:
                self._report_protocol_error(exc)
                continue
            except Exception as exc:  # noqa: BLE001
                return exc if isinstance(exc, ConsoleRuntimeError) else NetworkError(str(exc))
            self._dispatch(raw)

    def _dispatch(self, raw: Any) -> None:
        try:
            event = InboundEvent.model_validate(raw)
        except ValidationError as exc:
            self._report_protocol_error(
                ProtocolError(f"Malformed realtime event ({exc.error_count()} validation error(s))")
            )
            return
        delivered = self._topics.emit(event.topic, event.payload)
        if not delivered:
            LOGGER.debug("No subscriber for realtime topic %s", event.topic)

    def _report_protocol_error(self, error: ProtocolError) -> None:
        LOGGER.warning("Discarding realtime frame: %s", error)
        self._observers.emit(_PROTOCOL_ERROR, error)

    def _enqueue(self, message: dict[str, Any], *, control: bool) -> None:
        assert self._outbox is not None
        LOGGER.debug("Realtime enqueue: %s", message)
        self._outbox.put_nowait((message, control))

    def _requeue(
        self,
        outbox: asyncio.Queue[tuple[dict[str, Any], bool]],
        in_flight: Optional[dict[str, Any]] = None,
    ) -> None:
        """Move unsent application messages back to the front of the pending queue."""

        leftovers = [in_flight] if in_flight is not None else []
        while not outbox.empty():
            message, control = outbox.get_nowait()
            if not control:
                leftovers.append(message)
        self._pending.extendleft(reversed(leftovers))

    def _detach_transport(self) -> tuple[Optional[asyncio.Task[Exception]], Optional[BaseTransport]]:
        """Unhook the live transport without awaiting; the caller closes what is returned."""

        writer, self._writer = self._writer, None
        transport, self._transport = self._transport, None
        outbox, self._outbox = self._outbox, None
        if outbox is not None:
            self._requeue(outbox)
        if writer is not None and not writer.done():
            writer.cancel()
        self._wire_joined.clear()
        return writer, transport

    async def _close_detached(
        self,
        writer: Optional[asyncio.Task[Exception]],
        transport: Optional[BaseTransport],
    ) -> None:
        if writer is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await writer
        if transport is not None:
            await self._close_quietly(transport)

    async def _close_quietly(self, transport: BaseTransport) -> None:
        try:
            await transport.close()
        except Exception:  # noqa: BLE001
            LOGGER.debug("Suppress transport close error", exc_info=True)

    def _set_state(self, state: ConnectionState, *, error: Optional[ConsoleRuntimeError] = None) -> None:
        previous = self._state
        self._state = state
        LOGGER.debug("Realtime %s -> %s (attempt %s)", previous.value, state.value, self._attempt)
        self._observers.emit(_STATUS, ConnectionStatus(state=state, attempt=self._attempt, error=error))

    def _resolve_waiters(
        self,
        *,
        result: Optional[bool] = None,
        exc: Optional[BaseException] = None,
    ) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if waiter.done():
                continue
            if exc is not None:
                waiter.set_exception(exc)
            else:
                waiter.set_result(bool(result))


__all__ = [
    "ANNOUNCE_MESSAGE",
    "ConnectionState",
    "ConnectionStatus",
    "RealtimeConnection",
]
