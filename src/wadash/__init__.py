"""
wadash: realtime web dashboard for a linked WhatsApp account.

A single linked-device session is driven through its connection lifecycle,
its history and live events are synced into a chat/message store, and every
change is pushed to connected browser sessions over a WebSocket.
"""

from __future__ import annotations

from .exceptions import WadashError
from .service import DashboardService

__all__ = [
    "DashboardService",
    "WadashError",
]

__version__ = "0.1.0"
