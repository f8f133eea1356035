from __future__ import annotations

from .websocket import WebSocketConfig, WebSocketTransport

__all__ = [
    "WebSocketConfig",
    "WebSocketTransport",
]
