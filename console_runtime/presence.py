"""Live online/offline state of devices, fed by realtime status events."""

from __future__ import annotations

import logging
from typing import Any, Dict, Literal, Optional

from console_runtime.events import Disposer
from console_runtime.network.connection import RealtimeConnection

LOGGER = logging.getLogger(__name__)

Presence = Literal["online", "offline"]


class DevicePresence:
    """Tracks ``deviceId -> online|offline`` from realtime events."""

    def __init__(self, connection: RealtimeConnection) -> None:
        self._connection = connection
        self._status: Dict[str, Presence] = {}

    def attach(self) -> Disposer:
        disposers = [
            self._connection.subscribe("device_status", self._on_status),
            self._connection.subscribe("device_connected", lambda payload: self._update(payload, "online")),
            self._connection.subscribe("device_disconnected", lambda payload: self._update(payload, "offline")),
        ]

        def detach() -> None:
            for dispose in disposers:
                dispose()

        return detach

    def status(self, device_id: str, default: Optional[Presence] = None) -> Optional[Presence]:
        return self._status.get(device_id, default)

    def snapshot(self) -> Dict[str, Presence]:
        return dict(self._status)

    def _on_status(self, payload: Dict[str, Any]) -> None:
        self._update(payload, "online" if payload.get("status") == "online" else "offline")

    def _update(self, payload: Dict[str, Any], presence: Presence) -> None:
        device_id = payload.get("deviceId")
        if not device_id:
            LOGGER.debug("Ignoring presence event without deviceId: %s", payload)
            return
        self._status[str(device_id)] = presence
