from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol

from .broadcast import Broadcaster
from .client import SessionClient
from .events import Identity
from .exceptions import WadashError
from .jid import is_group_jid, jid_normalized_user
from .messages import ContentType, build_outbound_payload
from .store import ChatPatch, ChatStore, Message

logger = logging.getLogger(__name__)


class SessionSource(Protocol):
    @property
    def client(self) -> SessionClient | None: ...

    @property
    def is_paired(self) -> bool: ...

    @property
    def identity(self) -> Identity | None: ...

    def require_client(self) -> SessionClient: ...


class OutboundSender:
    """Dashboard-initiated actions: send, delete, star."""

    def __init__(
        self,
        session: SessionSource,
        store: ChatStore,
        broadcaster: Broadcaster,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.session = session
        self.store = store
        self.broadcaster = broadcaster
        self._clock = clock

    async def send_message(
        self,
        chat_jid: str,
        content: str,
        *,
        kind: ContentType = "text",
        attachment_ref: str | None = None,
        attachment_name: str | None = None,
    ) -> Message:
        """
        Send through the live session, then mirror the message locally.

        Raises `NotConnectedError` without a paired session; adapter failures
        propagate and nothing is stored.
        """

        payload = build_outbound_payload(
            content, kind=kind, attachment_ref=attachment_ref, attachment_name=attachment_name
        )
        client = self.session.require_client()
        receipt = await client.send(chat_jid, payload)

        now = int(self._clock())
        existing = await self.store.get_chat(chat_jid)
        identity = self.session.identity
        message = await self.store.upsert_message(
            Message(
                id=receipt.id,
                chat_jid=chat_jid,
                sender_jid=jid_normalized_user(identity.id) if identity is not None else chat_jid,
                # Label with the chat's known name, never a synthetic "me".
                sender_name=existing.name if existing is not None else None,
                content=content,
                content_type=kind,
                file_url=attachment_ref,
                file_name=attachment_name,
                timestamp_s=now,
                from_me=True,
                status="sent",
            )
        )
        chat = await self.store.upsert_chat(
            ChatPatch(
                jid=chat_jid,
                last_message_timestamp_s=now,
                last_message_from_me=True,
                is_group=is_group_jid(chat_jid),
            )
        )

        await self.broadcaster.message_upsert(message)
        await self.broadcaster.chat_update(chat)
        logger.info("Sent %s message %s to %s", kind, message.id, chat_jid)
        return message

    async def send_text(self, chat_jid: str, text: str) -> Message:
        return await self.send_message(chat_jid, text)

    async def delete_message(self, message_id: str) -> bool:
        """
        Delete for everyone when paired, locally in any case.

        Returns False when the message is unknown.
        """

        message = await self.store.get_message(message_id)
        if message is None:
            return False

        client = self.session.client if self.session.is_paired else None
        if client is not None:
            try:
                await client.delete(message.chat_jid, message.id, from_me=message.from_me)
            except WadashError as e:
                logger.warning("Remote delete of %s failed, deleting locally: %s", message_id, e)
        else:
            logger.info("Not connected; deleting %s locally only", message_id)

        await self.store.delete_message(message_id)
        await self.broadcaster.message_update(
            {"id": message.id, "chat_jid": message.chat_jid, "deleted": True}
        )
        return True

    async def star_message(self, message_id: str, star: bool) -> Message | None:
        message = await self.store.toggle_star(message_id, star)
        if message is not None:
            await self.broadcaster.message_update(message)
        return message
