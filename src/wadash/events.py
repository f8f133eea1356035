"""
Typed events emitted by a session client.

The session bridge speaks loosely-typed JSON frames; `parse_frame` turns each
one into exactly one of the variants below so consumers can dispatch
exhaustively. Frames internal to the adapter (`ack`, `creds`) are consumed by
the adapter itself and never reach the lifecycle manager.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias

from .constants import DISCONNECT_LOGGED_OUT
from .exceptions import UnknownEventError

ConnectionPhase = Literal["connecting", "open", "close"]

# Name used on `SessionClient.events` for every typed event.
SESSION_EVENT = "session.event"


@dataclass(frozen=True, slots=True)
class Identity:
    id: str
    name: str | None = None


@dataclass(frozen=True, slots=True)
class DisconnectReason:
    code: int | None = None
    message: str | None = None

    @property
    def is_logged_out(self) -> bool:
        return self.code == DISCONNECT_LOGGED_OUT


@dataclass(frozen=True, slots=True)
class PairingCode:
    code: str


@dataclass(frozen=True, slots=True)
class ConnectionState:
    state: ConnectionPhase
    reason: DisconnectReason | None = None
    identity: Identity | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state == "close" and self.reason is not None and self.reason.is_logged_out


@dataclass(frozen=True, slots=True)
class HistoryBatch:
    contacts: list[dict[str, Any]] = field(default_factory=list)
    chats: list[dict[str, Any]] = field(default_factory=list)
    messages: list[dict[str, Any]] = field(default_factory=list)
    is_latest: bool = False


@dataclass(frozen=True, slots=True)
class MessageInbound:
    messages: list[dict[str, Any]] = field(default_factory=list)
    # "notify" for live traffic, "append" for messages appended while offline.
    kind: str = "notify"


@dataclass(frozen=True, slots=True)
class StatusUpdate:
    message_id: str
    chat_jid: str | None
    status_code: int


@dataclass(frozen=True, slots=True)
class MessageStatus:
    updates: list[StatusUpdate] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class Presence:
    jid: str
    # participant jid -> {"lastKnownPresence": ..., "lastSeen": ...}
    presences: dict[str, dict[str, Any]] = field(default_factory=dict)


SessionEvent: TypeAlias = (
    PairingCode | ConnectionState | HistoryBatch | MessageInbound | MessageStatus | Presence
)


def _list_of_dicts(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, dict)]


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def parse_identity(value: Any) -> Identity | None:
    if not isinstance(value, dict) or not value.get("id"):
        return None
    name = value.get("name")
    return Identity(id=str(value["id"]), name=str(name) if name else None)


def _parse_status_updates(raw: Any) -> list[StatusUpdate]:
    out: list[StatusUpdate] = []
    for item in _list_of_dicts(raw):
        key = item.get("key") if isinstance(item.get("key"), dict) else {}
        update = item.get("update") if isinstance(item.get("update"), dict) else {}
        mid = key.get("id")
        code = _int_or_none(update.get("status"))
        if not mid or code is None:
            continue
        out.append(
            StatusUpdate(message_id=str(mid), chat_jid=key.get("remoteJid"), status_code=code)
        )
    return out


def parse_frame(frame: dict[str, Any]) -> SessionEvent:
    """
    Map one bridge frame onto a typed event.

    Raises `UnknownEventError` for frame types outside the closed set, including
    the adapter-internal `ack`/`creds` frames (callers handle those first).
    """

    typ = frame.get("type")
    if typ == "pairing_code":
        code = frame.get("code")
        if not isinstance(code, str) or not code:
            raise UnknownEventError("pairing_code frame without a code")
        return PairingCode(code=code)

    if typ == "connection":
        state = frame.get("state")
        if state not in ("connecting", "open", "close"):
            raise UnknownEventError(f"unknown connection state: {state!r}")
        reason = None
        raw_reason = frame.get("reason")
        if isinstance(raw_reason, dict):
            reason = DisconnectReason(
                code=_int_or_none(raw_reason.get("code")),
                message=raw_reason.get("message"),
            )
        return ConnectionState(
            state=state, reason=reason, identity=parse_identity(frame.get("user"))
        )

    if typ == "history":
        return HistoryBatch(
            contacts=_list_of_dicts(frame.get("contacts")),
            chats=_list_of_dicts(frame.get("chats")),
            messages=_list_of_dicts(frame.get("messages")),
            is_latest=bool(frame.get("is_latest")),
        )

    if typ == "messages":
        return MessageInbound(
            messages=_list_of_dicts(frame.get("messages")),
            kind=str(frame.get("kind") or "notify"),
        )

    if typ == "message_status":
        return MessageStatus(updates=_parse_status_updates(frame.get("updates")))

    if typ == "presence":
        jid = frame.get("id")
        if not isinstance(jid, str) or not jid:
            raise UnknownEventError("presence frame without a chat id")
        presences = frame.get("presences")
        return Presence(
            jid=jid,
            presences={
                str(k): v for k, v in (presences or {}).items() if isinstance(v, dict)
            }
            if isinstance(presences, dict)
            else {},
        )

    raise UnknownEventError(f"unknown frame type: {typ!r}")
