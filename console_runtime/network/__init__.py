"""Network stack (gateway, realtime connection, transports) for the console runtime."""

from console_runtime.network.channels import ChannelRefCounts
from console_runtime.network.connection import ConnectionState, ConnectionStatus, RealtimeConnection
from console_runtime.network.gateway import RequestGateway
from console_runtime.network.transport.base import BaseTransport, TransportFactory
from console_runtime.network.transport.dummy import DummyTransport
from console_runtime.network.transport.websocket import WebSocketTransport

__all__ = [
    "BaseTransport",
    "ChannelRefCounts",
    "ConnectionState",
    "ConnectionStatus",
    "DummyTransport",
    "RealtimeConnection",
    "RequestGateway",
    "TransportFactory",
    "WebSocketTransport",
]
