"""HTTP and WebSocket server."""

from parley.server.app import ParleyServer, create_app
from parley.server.runner import ServerRunner
from parley.server.websocket import WebSocketHub

__all__ = [
    "ParleyServer",
    "ServerRunner",
    "WebSocketHub",
    "create_app",
]
