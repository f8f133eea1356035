from __future__ import annotations

import asyncio
import contextlib
import logging
import sqlite3
from collections.abc import Iterator
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Protocol

from .constants import DEFAULT_AUTO_REPLY_MESSAGE, DEFAULT_BOT_PERSONA
from .exceptions import StoreError
from .messages import ContentType, DeliveryStatus, is_real_name

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Chat:
    jid: str
    name: str
    unread_count: int = 0
    last_message_timestamp_s: int | None = None
    is_online: bool = False
    is_typing: bool = False
    last_seen_s: int | None = None
    is_starred: bool = False
    is_muted: bool = False
    is_pinned: bool = False
    is_marked_unread: bool = False
    is_group: bool = False
    group_description: str | None = None
    last_message_from_me: bool = False


@dataclass(slots=True)
class ChatPatch:
    """
    Partial chat update. `None` means "keep what is stored".

    `name` is special: a placeholder (empty, the JID, "Unknown") never replaces
    a real name that is already stored.
    """

    jid: str
    name: str | None = None
    unread_count: int | None = None
    last_message_timestamp_s: int | None = None
    is_online: bool | None = None
    is_typing: bool | None = None
    last_seen_s: int | None = None
    is_starred: bool | None = None
    is_muted: bool | None = None
    is_pinned: bool | None = None
    is_marked_unread: bool | None = None
    is_group: bool | None = None
    group_description: str | None = None
    last_message_from_me: bool | None = None


@dataclass(slots=True)
class Message:
    id: str
    chat_jid: str
    sender_jid: str
    timestamp_s: int
    sender_name: str | None = None
    content: str | None = None
    content_type: ContentType = "text"
    file_url: str | None = None
    file_name: str | None = None
    from_me: bool = False
    status: DeliveryStatus = "sent"
    is_starred: bool = False


@dataclass(slots=True)
class Settings:
    auto_reply_enabled: bool = True
    auto_reply_message: str = DEFAULT_AUTO_REPLY_MESSAGE
    bot_persona: str = DEFAULT_BOT_PERSONA


_SETTINGS_FIELDS = frozenset(f.name for f in fields(Settings))
_STATUS_RANK = {"sent": 0, "delivered": 1, "read": 2}


def merge_chat(existing: Chat | None, patch: ChatPatch) -> Chat:
    """Apply `patch` on top of `existing` (or a fresh chat). Shared by every backend."""

    base = existing or Chat(jid=patch.jid, name=patch.jid)
    if is_real_name(patch.name, patch.jid):
        name = patch.name or base.name
    elif is_real_name(base.name, base.jid):
        name = base.name
    else:
        name = patch.name or base.name or patch.jid

    merged = replace(base, name=name)
    for f in fields(ChatPatch):
        if f.name in ("jid", "name"):
            continue
        value = getattr(patch, f.name)
        if value is not None:
            setattr(merged, f.name, value)

    # History replays carry older conversation timestamps; never move backwards.
    if (
        existing is not None
        and existing.last_message_timestamp_s is not None
        and patch.last_message_timestamp_s is not None
        and patch.last_message_timestamp_s < existing.last_message_timestamp_s
    ):
        merged.last_message_timestamp_s = existing.last_message_timestamp_s
    return merged


def merge_message(existing: Message | None, incoming: Message) -> Message:
    """Update-in-place semantics for a message id that is already stored."""

    if existing is None:
        return replace(incoming)
    status = incoming.status
    if _STATUS_RANK.get(existing.status, 0) > _STATUS_RANK.get(status, 0):
        status = existing.status
    return replace(
        incoming,
        sender_name=incoming.sender_name or existing.sender_name,
        content=incoming.content if incoming.content is not None else existing.content,
        file_url=incoming.file_url or existing.file_url,
        file_name=incoming.file_name or existing.file_name,
        status=status,
        # Starring is a local user action; ingestion never clears it.
        is_starred=existing.is_starred or incoming.is_starred,
    )


def _settings_changes(changes: dict[str, Any]) -> dict[str, Any]:
    unknown = set(changes) - _SETTINGS_FIELDS
    if unknown:
        raise ValueError(f"unknown settings field(s): {', '.join(sorted(unknown))}")
    return {k: v for k, v in changes.items() if v is not None}


def _chat_sort_key(chat: Chat) -> int:
    return -(chat.last_message_timestamp_s or 0)


class ChatStore(Protocol):
    async def get_settings(self) -> Settings: ...

    async def update_settings(self, **changes: Any) -> Settings: ...

    async def get_chats(self) -> list[Chat]: ...

    async def get_chat(self, jid: str) -> Chat | None: ...

    async def upsert_chat(self, patch: ChatPatch) -> Chat: ...

    async def get_messages(self, chat_jid: str) -> list[Message]: ...

    async def get_message(self, message_id: str) -> Message | None: ...

    async def upsert_message(self, message: Message) -> Message: ...

    async def update_message_status(
        self, message_id: str, status: DeliveryStatus
    ) -> Message | None: ...

    async def toggle_star(self, message_id: str, star: bool) -> Message | None: ...

    async def delete_message(self, message_id: str) -> Message | None: ...

    async def close(self) -> None: ...


class InMemoryStore:
    """
    In-process store, used when no durable database is configured or usable.

    Returned records are copies; callers never hold a live reference that could
    drift from the store.
    """

    def __init__(self) -> None:
        self._settings = Settings()
        self._chats: dict[str, Chat] = {}
        self._messages: dict[str, Message] = {}

    async def get_settings(self) -> Settings:
        return replace(self._settings)

    async def update_settings(self, **changes: Any) -> Settings:
        self._settings = replace(self._settings, **_settings_changes(changes))
        return replace(self._settings)

    async def get_chats(self) -> list[Chat]:
        return [replace(c) for c in sorted(self._chats.values(), key=_chat_sort_key)]

    async def get_chat(self, jid: str) -> Chat | None:
        chat = self._chats.get(jid)
        return replace(chat) if chat else None

    async def upsert_chat(self, patch: ChatPatch) -> Chat:
        merged = merge_chat(self._chats.get(patch.jid), patch)
        self._chats[patch.jid] = merged
        return replace(merged)

    async def get_messages(self, chat_jid: str) -> list[Message]:
        msgs = [m for m in self._messages.values() if m.chat_jid == chat_jid]
        return [replace(m) for m in sorted(msgs, key=lambda m: m.timestamp_s)]

    async def get_message(self, message_id: str) -> Message | None:
        msg = self._messages.get(message_id)
        return replace(msg) if msg else None

    async def upsert_message(self, message: Message) -> Message:
        merged = merge_message(self._messages.get(message.id), message)
        self._messages[message.id] = merged
        return replace(merged)

    async def update_message_status(
        self, message_id: str, status: DeliveryStatus
    ) -> Message | None:
        msg = self._messages.get(message_id)
        if msg is None:
            return None
        msg.status = status
        return replace(msg)

    async def toggle_star(self, message_id: str, star: bool) -> Message | None:
        msg = self._messages.get(message_id)
        if msg is None:
            return None
        msg.is_starred = star
        return replace(msg)

    async def delete_message(self, message_id: str) -> Message | None:
        return self._messages.pop(message_id, None)

    async def close(self) -> None:
        return None


_SETTINGS_DDL = """
CREATE TABLE IF NOT EXISTS settings (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    auto_reply_enabled INTEGER NOT NULL,
    auto_reply_message TEXT NOT NULL,
    bot_persona TEXT NOT NULL
);
"""

_CHATS_DDL = """
CREATE TABLE IF NOT EXISTS chats (
    jid TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    unread_count INTEGER NOT NULL DEFAULT 0,
    last_message_timestamp_s INTEGER,
    is_online INTEGER NOT NULL DEFAULT 0,
    is_typing INTEGER NOT NULL DEFAULT 0,
    last_seen_s INTEGER,
    is_starred INTEGER NOT NULL DEFAULT 0,
    is_muted INTEGER NOT NULL DEFAULT 0,
    is_pinned INTEGER NOT NULL DEFAULT 0,
    is_marked_unread INTEGER NOT NULL DEFAULT 0,
    is_group INTEGER NOT NULL DEFAULT 0,
    group_description TEXT,
    last_message_from_me INTEGER NOT NULL DEFAULT 0
);
"""

_MESSAGES_DDL = """
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    chat_jid TEXT NOT NULL,
    sender_jid TEXT NOT NULL,
    timestamp_s INTEGER NOT NULL,
    sender_name TEXT,
    content TEXT,
    content_type TEXT NOT NULL DEFAULT 'text',
    file_url TEXT,
    file_name TEXT,
    from_me INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'sent',
    is_starred INTEGER NOT NULL DEFAULT 0
);
"""

_CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_chats_last_ts ON chats(last_message_timestamp_s DESC);",
    "CREATE INDEX IF NOT EXISTS idx_messages_chat_ts ON messages(chat_jid, timestamp_s);",
]

_CHAT_COLUMNS = [f.name for f in fields(Chat)]
_MESSAGE_COLUMNS = [f.name for f in fields(Message)]
_CHAT_BOOLS = {"is_online", "is_typing", "is_starred", "is_muted", "is_pinned",
               "is_marked_unread", "is_group", "last_message_from_me"}
_MESSAGE_BOOLS = {"from_me", "is_starred"}


def _upsert_sql(table: str, columns: list[str], key: str) -> str:
    cols = ", ".join(columns)
    marks = ", ".join("?" for _ in columns)
    updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != key)
    return (
        f"INSERT INTO {table} ({cols}) VALUES ({marks}) "
        f"ON CONFLICT({key}) DO UPDATE SET {updates}"
    )


_CHAT_UPSERT = _upsert_sql("chats", _CHAT_COLUMNS, "jid")
_MESSAGE_UPSERT = _upsert_sql("messages", _MESSAGE_COLUMNS, "id")
_CHAT_SELECT = f"SELECT {', '.join(_CHAT_COLUMNS)} FROM chats"
_MESSAGE_SELECT = f"SELECT {', '.join(_MESSAGE_COLUMNS)} FROM messages"


def _row_to_chat(row: sqlite3.Row) -> Chat:
    data = {k: row[k] for k in _CHAT_COLUMNS}
    for k in _CHAT_BOOLS:
        data[k] = bool(data[k])
    return Chat(**data)


def _row_to_message(row: sqlite3.Row) -> Message:
    data = {k: row[k] for k in _MESSAGE_COLUMNS}
    for k in _MESSAGE_BOOLS:
        data[k] = bool(data[k])
    return Message(**data)


def _row_values(obj: Chat | Message, columns: list[str]) -> tuple[Any, ...]:
    d = asdict(obj)
    return tuple(int(d[c]) if isinstance(d[c], bool) else d[c] for c in columns)


class SQLiteStore:
    """SQLite-backed chat/message/settings repository."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(Path(db_path).expanduser())
        self._write_lock = asyncio.Lock()

    @property
    def db_path(self) -> str:
        return self._db_path

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    async def init(self) -> None:
        """Create the schema; raises `StoreError` when the database is unusable."""

        def _init() -> None:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as connection:
                connection.execute("PRAGMA journal_mode = WAL;")
                connection.execute(_SETTINGS_DDL)
                connection.execute(_CHATS_DDL)
                connection.execute(_MESSAGES_DDL)
                for statement in _CREATE_INDEXES:
                    connection.execute(statement)
                defaults = Settings()
                connection.execute(
                    "INSERT OR IGNORE INTO settings "
                    "(id, auto_reply_enabled, auto_reply_message, bot_persona) VALUES (1, ?, ?, ?)",
                    (
                        int(defaults.auto_reply_enabled),
                        defaults.auto_reply_message,
                        defaults.bot_persona,
                    ),
                )

        try:
            await asyncio.to_thread(_init)
        except (sqlite3.Error, OSError) as e:
            raise StoreError(f"failed to initialise database at {self._db_path}: {e}") from e
        logger.info("Chat database initialised at %s", self._db_path)

    async def close(self) -> None:
        return None

    async def _read(self, fn: Any, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    async def _write(self, fn: Any, *args: Any) -> Any:
        async with self._write_lock:
            return await self._read(fn, *args)

    def _get_settings_sync(self) -> Settings:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT auto_reply_enabled, auto_reply_message, bot_persona FROM settings WHERE id = 1"
            ).fetchone()
        if row is None:
            return Settings()
        return Settings(
            auto_reply_enabled=bool(row["auto_reply_enabled"]),
            auto_reply_message=row["auto_reply_message"],
            bot_persona=row["bot_persona"],
        )

    async def get_settings(self) -> Settings:
        return await self._read(self._get_settings_sync)

    async def update_settings(self, **changes: Any) -> Settings:
        valid = _settings_changes(changes)

        def _update() -> Settings:
            merged = replace(self._get_settings_sync(), **valid)
            with self._connect() as connection:
                connection.execute(
                    "INSERT OR REPLACE INTO settings "
                    "(id, auto_reply_enabled, auto_reply_message, bot_persona) VALUES (1, ?, ?, ?)",
                    (int(merged.auto_reply_enabled), merged.auto_reply_message, merged.bot_persona),
                )
            return merged

        return await self._write(_update)

    def _get_chat_sync(self, jid: str) -> Chat | None:
        with self._connect() as connection:
            row = connection.execute(f"{_CHAT_SELECT} WHERE jid = ?", (jid,)).fetchone()
        return _row_to_chat(row) if row else None

    async def get_chats(self) -> list[Chat]:
        def _fetch() -> list[Chat]:
            with self._connect() as connection:
                rows = connection.execute(
                    f"{_CHAT_SELECT} ORDER BY COALESCE(last_message_timestamp_s, 0) DESC, rowid ASC"
                ).fetchall()
            return [_row_to_chat(r) for r in rows]

        return await self._read(_fetch)

    async def get_chat(self, jid: str) -> Chat | None:
        return await self._read(self._get_chat_sync, jid)

    async def upsert_chat(self, patch: ChatPatch) -> Chat:
        def _upsert() -> Chat:
            merged = merge_chat(self._get_chat_sync(patch.jid), patch)
            with self._connect() as connection:
                connection.execute(_CHAT_UPSERT, _row_values(merged, _CHAT_COLUMNS))
            return merged

        return await self._write(_upsert)

    def _get_message_sync(self, message_id: str) -> Message | None:
        with self._connect() as connection:
            row = connection.execute(f"{_MESSAGE_SELECT} WHERE id = ?", (message_id,)).fetchone()
        return _row_to_message(row) if row else None

    async def get_messages(self, chat_jid: str) -> list[Message]:
        def _fetch() -> list[Message]:
            with self._connect() as connection:
                rows = connection.execute(
                    f"{_MESSAGE_SELECT} WHERE chat_jid = ? ORDER BY timestamp_s ASC, rowid ASC",
                    (chat_jid,),
                ).fetchall()
            return [_row_to_message(r) for r in rows]

        return await self._read(_fetch)

    async def get_message(self, message_id: str) -> Message | None:
        return await self._read(self._get_message_sync, message_id)

    async def upsert_message(self, message: Message) -> Message:
        def _upsert() -> Message:
            merged = merge_message(self._get_message_sync(message.id), message)
            with self._connect() as connection:
                connection.execute(_MESSAGE_UPSERT, _row_values(merged, _MESSAGE_COLUMNS))
            return merged

        return await self._write(_upsert)

    def _set_message_column(self, message_id: str, column: str, value: Any) -> Message | None:
        with self._connect() as connection:
            cur = connection.execute(
                f"UPDATE messages SET {column} = ? WHERE id = ?", (value, message_id)
            )
            if cur.rowcount == 0:
                return None
        return self._get_message_sync(message_id)

    async def update_message_status(
        self, message_id: str, status: DeliveryStatus
    ) -> Message | None:
        return await self._write(self._set_message_column, message_id, "status", status)

    async def toggle_star(self, message_id: str, star: bool) -> Message | None:
        return await self._write(self._set_message_column, message_id, "is_starred", int(star))

    async def delete_message(self, message_id: str) -> Message | None:
        def _delete() -> Message | None:
            existing = self._get_message_sync(message_id)
            if existing is None:
                return None
            with self._connect() as connection:
                connection.execute("DELETE FROM messages WHERE id = ?", (message_id,))
            return existing

        return await self._write(_delete)


async def open_store(db_path: str | Path | None) -> ChatStore:
    """
    Pick the storage strategy once, at startup.

    SQLite when a path is configured and the schema can be created, the
    in-memory store otherwise.
    """

    if db_path is None:
        logger.info("No database configured; using in-memory store")
        return InMemoryStore()
    store = SQLiteStore(db_path)
    try:
        await store.init()
    except StoreError as e:
        logger.warning("Durable store unavailable, falling back to in-memory store: %s", e)
        return InMemoryStore()
    return store
