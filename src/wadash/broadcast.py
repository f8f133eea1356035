from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any, Literal, Protocol

from .events import Identity
from .store import Chat, Message

logger = logging.getLogger(__name__)

UIStatus = Literal["connecting", "connected", "disconnected"]


@dataclass(frozen=True, slots=True)
class StatusSnapshot:
    status: UIStatus
    identity: Identity | None = None
    pairing_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"status": self.status}
        if self.identity is not None:
            out["user"] = {"id": self.identity.id, "name": self.identity.name}
        if self.pairing_code:
            out["qr"] = self.pairing_code
        return out


DISCONNECTED = StatusSnapshot(status="disconnected")


class UISession(Protocol):
    async def send_json(self, data: Any) -> None: ...


class Broadcaster:
    """
    Fan-out of realtime events to every connected UI session.

    Delivery is fire-and-forget: no acks, no replay. Late joiners get a status
    snapshot (and the live pairing code while connecting) on `join`. A session
    that does not take a frame within `send_timeout_s` is dropped.
    """

    def __init__(
        self,
        status_provider: Callable[[], StatusSnapshot] | None = None,
        *,
        send_timeout_s: float = 5.0,
    ) -> None:
        self._sessions: set[UISession] = set()
        self.send_timeout_s = send_timeout_s
        self._status_provider = status_provider or (lambda: DISCONNECTED)

    def set_status_provider(self, provider: Callable[[], StatusSnapshot]) -> None:
        self._status_provider = provider

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    async def join(self, session: UISession) -> None:
        self._sessions.add(session)
        snapshot = self._status_provider()
        logger.debug("UI session joined (%d connected)", len(self._sessions))
        if snapshot.status == "connecting" and snapshot.pairing_code:
            await self._send(session, "pairing_code", {"qr": snapshot.pairing_code})
        await self._send(session, "status", snapshot.to_dict())

    def leave(self, session: UISession) -> None:
        self._sessions.discard(session)
        logger.debug("UI session left (%d connected)", len(self._sessions))

    async def publish(self, event: str, data: Any = None) -> None:
        if not self._sessions:
            return
        sessions = list(self._sessions)
        await asyncio.gather(*(self._send(s, event, data) for s in sessions))

    async def _send(self, session: UISession, event: str, data: Any) -> None:
        try:
            await asyncio.wait_for(
                session.send_json({"event": event, "data": data}), timeout=self.send_timeout_s
            )
        except asyncio.TimeoutError:
            logger.info("Dropping UI session too slow to take a %s frame", event)
            self._sessions.discard(session)
        except Exception as e:
            logger.debug("Dropping UI session after failed %s send: %s", event, e)
            self._sessions.discard(session)

    async def status(self, snapshot: StatusSnapshot) -> None:
        await self.publish("status", snapshot.to_dict())

    async def pairing_code(self, code: str) -> None:
        await self.publish("pairing_code", {"qr": code})

    async def chat_update(self, chat: Chat | None = None) -> None:
        await self.publish("chat_update", asdict(chat) if chat is not None else None)

    async def message_upsert(self, message: Message) -> None:
        await self.publish("message_upsert", asdict(message))

    async def message_update(self, data: Message | dict[str, Any]) -> None:
        await self.publish("message_update", asdict(data) if isinstance(data, Message) else data)
