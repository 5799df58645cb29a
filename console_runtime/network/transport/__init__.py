"""Realtime transport implementations."""

from .base import BaseTransport, TransportFactory
from .dummy import DummyTransport
from .websocket import WebSocketTransport

__all__ = ["BaseTransport", "DummyTransport", "TransportFactory", "WebSocketTransport"]
