from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

from .auth.store import CredentialStore
from .config import BridgeConfig
from .connection.websocket import WebSocketConfig, WebSocketTransport
from .events import (
    SESSION_EVENT,
    ConnectionState,
    DisconnectReason,
    Identity,
    parse_frame,
)
from .exceptions import AuthError, SendRejectedError, TransportError, UnknownEventError
from .messages import timestamp_of
from .util.asyncio import cancel_suppress, ensure_task
from .util.events import AsyncEventEmitter
from .util.json import dumps_frame, loads_object

logger = logging.getLogger(__name__)

ACK_PREFIX = "ack:"


@dataclass(frozen=True, slots=True)
class SentReceipt:
    id: str
    timestamp_s: int


class SessionClient(Protocol):
    """
    What the dashboard needs from a linked-device session.

    Typed events (`wadash.events.SessionEvent`) are emitted on
    `events` under the `SESSION_EVENT` name.
    """

    events: AsyncEventEmitter

    @property
    def identity(self) -> Identity | None: ...

    async def connect(self, credentials: CredentialStore) -> None: ...

    async def send(self, chat_id: str, payload: dict[str, Any]) -> SentReceipt: ...

    async def delete(self, chat_id: str, message_id: str, *, from_me: bool) -> None: ...

    async def request_history(self) -> None: ...

    async def close(self) -> None: ...


class BridgeSessionClient:
    """
    Session client backed by an external session bridge over a WebSocket.

    The bridge owns the WhatsApp Web protocol (pairing, Noise, Signal). This
    side speaks JSON frames:

    - commands (`send`, `delete`, `history.request`) carry a tag `id` and are
      answered by an `ack` frame with the same id;
    - `creds` frames are persisted to the credential folder;
    - every other frame is parsed into a typed event and emitted.
    """

    def __init__(self, config: BridgeConfig | None = None) -> None:
        self.config = config or BridgeConfig()
        self.events = AsyncEventEmitter()
        self._transport = WebSocketTransport(
            WebSocketConfig(
                url=self.config.url,
                connect_timeout_s=self.config.connect_timeout_s,
                extra_headers=self.config.headers,
            )
        )
        self._credentials: CredentialStore | None = None
        self._identity: Identity | None = None
        self._recv_task: asyncio.Task[None] | None = None
        self._closed = False

        self._epoch = 0
        self._uq_tag = f"{int(time.time())}-"

    @property
    def identity(self) -> Identity | None:
        return self._identity

    @property
    def is_open(self) -> bool:
        return self._transport.is_open

    def _next_tag(self) -> str:
        self._epoch += 1
        return f"{self._uq_tag}{self._epoch}"

    async def connect(self, credentials: CredentialStore) -> None:
        if self._closed:
            raise TransportError("session client was closed")
        self._credentials = credentials
        creds = await credentials.load()

        await self._transport.connect()
        if self._closed:
            # close() ran while the transport was opening.
            await self._transport.close()
            raise TransportError("session client was closed during connect")
        self._recv_task = ensure_task(self._recv_loop(), name="wadash.bridge.recv_loop")
        await self._transport.send(
            dumps_frame({"type": "hello", "creds": creds, "browser": list(self.config.browser)})
        )
        logger.info(
            "Connected to session bridge at %s (%s credentials)",
            self.config.url,
            "stored" if creds else "no",
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await cancel_suppress(self._recv_task)
        self._recv_task = None
        await self._transport.close()

    async def send(self, chat_id: str, payload: dict[str, Any]) -> SentReceipt:
        ack = await self._query({"type": "send", "jid": chat_id, "payload": payload})
        mid = ack.get("message_id")
        if not mid:
            raise TransportError("send acknowledged without a message id")
        return SentReceipt(
            id=str(mid), timestamp_s=timestamp_of(ack.get("timestamp")) or int(time.time())
        )

    async def delete(self, chat_id: str, message_id: str, *, from_me: bool) -> None:
        await self._query(
            {
                "type": "delete",
                "jid": chat_id,
                "key": {"remoteJid": chat_id, "id": message_id, "fromMe": from_me},
            }
        )

    async def request_history(self) -> None:
        await self._query({"type": "history.request"})

    async def _query(self, frame: dict[str, Any]) -> dict[str, Any]:
        tag = self._next_tag()
        frame["id"] = tag

        # Register the waiter before sending to avoid missing fast acks.
        event = f"{ACK_PREFIX}{tag}"
        fut = self.events.wait_for_future(event)
        try:
            await self._transport.send(dumps_frame(frame))
            ack = await asyncio.wait_for(fut, timeout=self.config.ack_timeout_s)
        except asyncio.TimeoutError as e:
            raise TransportError(f"bridge did not acknowledge {frame['type']!r}") from e
        finally:
            self.events.remove_waiter_future(event, fut)

        if not isinstance(ack, dict):
            raise TransportError(f"unexpected ack type: {type(ack).__name__}")
        if ack.get("error"):
            raise SendRejectedError(code=str(ack["error"]), ack=ack)
        return ack

    async def _recv_loop(self) -> None:
        while True:
            try:
                raw = await self._transport.recv()
            except TransportError as e:
                if self._closed:
                    return
                logger.warning("Session bridge stream ended: %s", e)
                await self._emit_session_event(
                    ConnectionState(state="close", reason=DisconnectReason(message=str(e)))
                )
                return
            await self._on_frame(raw)

    async def _on_frame(self, raw: str) -> None:
        try:
            frame = loads_object(raw)
        except (TypeError, ValueError) as e:
            logger.warning("Dropping malformed bridge frame: %s", e)
            return

        typ = frame.get("type")
        if typ == "ack":
            await self.events.emit(f"{ACK_PREFIX}{frame.get('id')}", frame)
            return
        if typ == "creds":
            await self._save_creds(frame.get("creds"))
            return

        try:
            event = parse_frame(frame)
        except UnknownEventError as e:
            logger.warning("Rejected bridge frame: %s", e)
            return

        if isinstance(event, ConnectionState) and event.identity is not None:
            self._identity = event.identity
        await self._emit_session_event(event)

    async def _emit_session_event(self, event: Any) -> None:
        try:
            await self.events.emit(SESSION_EVENT, event)
        except Exception:
            # A failing listener must not stop the receive loop.
            logger.exception("Session event listener failed for %s", type(event).__name__)

    async def _save_creds(self, creds: Any) -> None:
        if not isinstance(creds, dict) or self._credentials is None:
            logger.warning("Ignoring creds frame without a credential object")
            return
        try:
            await self._credentials.save(creds)
        except AuthError as e:
            logger.error("Failed to persist credentials from the bridge: %s", e)
