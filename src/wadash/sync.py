from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar

from .broadcast import Broadcaster
from .events import HistoryBatch, MessageInbound, MessageStatus, Presence
from .jid import is_broadcast_jid, is_group_jid
from .messages import (
    attachment_of,
    contact_display_name,
    content_type_of,
    extract_message_text,
    is_real_name,
    presence_flags,
    status_from_code,
    timestamp_of,
)
from .store import ChatPatch, ChatStore, Message

logger = logging.getLogger(__name__)

T = TypeVar("T")

SyncEvent = HistoryBatch | MessageInbound | MessageStatus | Presence


class Responder(Protocol):
    async def consider(self, message: Message) -> Any: ...


class SyncPipeline:
    """
    Applies session events to the store, then tells UIs about it.

    Every write completes before the matching broadcast, so a UI that refetches
    on a broadcast always sees the new state. A failure on one event (or one
    record inside a batch) is logged and does not stop the next one.
    """

    def __init__(
        self,
        store: ChatStore,
        broadcaster: Broadcaster,
        *,
        responder: Responder | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.responder = responder
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    async def handle(self, event: SyncEvent) -> None:
        try:
            if isinstance(event, HistoryBatch):
                await self.apply_history(event)
            elif isinstance(event, MessageInbound):
                await self.ingest_messages(event)
            elif isinstance(event, MessageStatus):
                await self.apply_status(event)
            elif isinstance(event, Presence):
                await self.apply_presence(event)
            else:
                logger.warning("Sync pipeline rejected event %r", event)
        except Exception:
            logger.exception("Failed to apply %s", type(event).__name__)

    async def _guard(self, what: str, key: Any, op: Callable[[], Awaitable[T]]) -> T | None:
        try:
            return await op()
        except Exception:
            logger.exception("Failed to apply %s %s", what, key)
            return None

    async def apply_history(self, batch: HistoryBatch) -> None:
        logger.info(
            "Syncing history: %d chats, %d messages, %d contacts",
            len(batch.chats),
            len(batch.messages),
            len(batch.contacts),
        )

        for contact in batch.contacts:
            jid = contact.get("id")
            if not isinstance(jid, str) or not jid or is_broadcast_jid(jid):
                continue
            patch = ChatPatch(
                jid=jid, name=contact_display_name(contact), is_group=is_group_jid(jid)
            )
            await self._guard("contact", jid, lambda p=patch: self.store.upsert_chat(p))

        for chat in batch.chats:
            patch = self._chat_patch_from_history(chat)
            if patch is None:
                continue
            await self._guard("chat", patch.jid, lambda p=patch: self.store.upsert_chat(p))

        stored = 0
        for wm in batch.messages:
            message = self._message_from_payload(wm)
            if message is None:
                continue
            await self._guard("message", message.id, lambda m=message: self._store_history(m))
            stored += 1

        logger.debug("History batch stored %d message(s)", stored)
        await self.broadcaster.chat_update()

    def _chat_patch_from_history(self, chat: dict[str, Any]) -> ChatPatch | None:
        jid = chat.get("id")
        if not isinstance(jid, str) or not jid or is_broadcast_jid(jid):
            return None
        name = chat.get("name")
        unread = chat.get("unreadCount")
        return ChatPatch(
            jid=jid,
            name=name if isinstance(name, str) else None,
            unread_count=int(unread) if isinstance(unread, int) else None,
            last_message_timestamp_s=timestamp_of(chat.get("conversationTimestamp")),
            is_group=is_group_jid(jid),
            is_pinned=bool(chat.get("pinned")) if "pinned" in chat else None,
            is_muted=bool(chat.get("muteEndTime")) if "muteEndTime" in chat else None,
            is_marked_unread=(
                bool(chat.get("markedAsUnread")) if "markedAsUnread" in chat else None
            ),
            group_description=chat.get("description") or None,
        )

    async def _store_history(self, message: Message) -> None:
        # Make sure the chat exists; merging never moves its timestamp backwards.
        await self.store.upsert_chat(
            ChatPatch(
                jid=message.chat_jid,
                last_message_timestamp_s=message.timestamp_s,
                is_group=is_group_jid(message.chat_jid),
            )
        )
        await self.store.upsert_message(message)

    def _message_from_payload(
        self, wm: dict[str, Any], *, sender_name: str | None = None
    ) -> Message | None:
        key = wm.get("key")
        if not isinstance(key, dict):
            return None
        chat_jid = key.get("remoteJid")
        mid = key.get("id")
        if not chat_jid or not mid or is_broadcast_jid(chat_jid):
            return None

        body = wm.get("message")
        text = extract_message_text(body)
        kind = content_type_of(body)
        if not text and kind == "text":
            return None
        url, file_name = attachment_of(body)

        return Message(
            id=str(mid),
            chat_jid=chat_jid,
            sender_jid=key.get("participant") or chat_jid,
            sender_name=sender_name or wm.get("pushName") or None,
            content=text,
            content_type=kind,
            file_url=url,
            file_name=file_name,
            timestamp_s=timestamp_of(wm.get("messageTimestamp")) or self._now(),
            from_me=bool(key.get("fromMe")),
            status=status_from_code(wm.get("status")),
        )

    async def ingest_messages(self, event: MessageInbound) -> None:
        if event.kind not in ("notify", "append"):
            logger.debug("Skipping %d message(s) of kind %s", len(event.messages), event.kind)
            return
        for wm in event.messages:
            key = wm.get("key")
            mid = key.get("id") if isinstance(key, dict) else None
            await self._guard("inbound message", mid, lambda w=wm: self._ingest_one(w))

    async def _ingest_one(self, wm: dict[str, Any]) -> None:
        key = wm.get("key") if isinstance(wm.get("key"), dict) else {}
        jid = key.get("remoteJid")
        if not jid or is_broadcast_jid(jid):
            return
        if not extract_message_text(wm.get("message")):
            return

        existing = await self.store.get_chat(jid)
        known = existing.name if existing and is_real_name(existing.name, jid) else None
        push = wm.get("pushName") if isinstance(wm.get("pushName"), str) else None
        group = is_group_jid(jid)
        # In groups the push name belongs to the participant, not the chat.
        chat_name = known or (None if group else push) or jid

        message = self._message_from_payload(wm, sender_name=push or known or jid)
        if message is None:
            return

        # A redelivered id updates the record but must not count or reply twice.
        is_new = await self.store.get_message(message.id) is None
        unread = None
        if is_new and not message.from_me:
            unread = (existing.unread_count if existing else 0) + 1
        chat = await self.store.upsert_chat(
            ChatPatch(
                jid=jid,
                name=chat_name,
                unread_count=unread,
                last_message_timestamp_s=message.timestamp_s,
                last_message_from_me=message.from_me,
                is_group=group,
            )
        )
        stored = await self.store.upsert_message(message)

        await self.broadcaster.message_upsert(stored)
        await self.broadcaster.chat_update(chat)

        if is_new and not stored.from_me and self.responder is not None:
            await self.responder.consider(stored)

    async def apply_status(self, event: MessageStatus) -> None:
        for upd in event.updates:
            updated = await self._guard(
                "receipt",
                upd.message_id,
                lambda u=upd: self.store.update_message_status(
                    u.message_id, status_from_code(u.status_code)
                ),
            )
            if updated is None:
                continue
            await self.broadcaster.message_update(updated)

    async def apply_presence(self, event: Presence) -> None:
        chat = await self.store.get_chat(event.jid)
        if chat is None:
            return

        online = typing = False
        for entry in event.presences.values():
            o, t = presence_flags(entry.get("lastKnownPresence"))
            online = online or o
            typing = typing or t

        patch = ChatPatch(jid=event.jid, is_online=online, is_typing=typing)
        if online and not chat.is_online:
            patch.last_seen_s = self._now()
        updated = await self.store.upsert_chat(patch)
        await self.broadcaster.chat_update(updated)

    async def reconcile(self) -> None:
        """Nudge UIs to refetch after a fresh pairing; the history batch itself arrives as an event."""

        await self.broadcaster.chat_update()
