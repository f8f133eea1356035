from __future__ import annotations

import asyncio
import contextlib
import logging
import urllib.error
import urllib.request
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, cast

from .config import ReplyConfig
from .exceptions import ReplyGenerationError, WadashError
from .store import ChatStore, Message, Settings
from .util.asyncio import ensure_task
from .util.json import dumps, loads_object

logger = logging.getLogger(__name__)

ReplySender = Callable[[str, str], Awaitable[Any]]


class ReplyGenerator(Protocol):
    async def generate(self, prompt: str, *, persona: str) -> str: ...


class OpenRouterReplyGenerator:
    """Chat-completion call against an OpenAI-compatible endpoint (OpenRouter by default)."""

    def __init__(self, config: ReplyConfig | None = None) -> None:
        self.config = config or ReplyConfig()

    async def generate(self, prompt: str, *, persona: str) -> str:
        if not self.config.api_key:
            raise ReplyGenerationError("no completion API key configured")

        body = dumps(
            {
                "model": self.config.model,
                "messages": [
                    {"role": "system", "content": persona},
                    {"role": "user", "content": prompt},
                ],
            }
        ).encode("utf-8")
        raw = await asyncio.to_thread(self._post, body)

        try:
            data = loads_object(raw.decode("utf-8"))
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ReplyGenerationError("malformed completion response") from e
        if not isinstance(text, str) or not text.strip():
            raise ReplyGenerationError("completion returned no text")
        return text.strip()

    def _post(self, body: bytes) -> bytes:
        req = urllib.request.Request(
            self.config.url,
            data=body,
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.config.timeout_s) as resp:
                return cast(bytes, resp.read())
        except urllib.error.HTTPError as e:
            detail = b""
            with contextlib.suppress(Exception):
                detail = e.read()
            raise ReplyGenerationError(f"completion http error {e.code}: {detail[:200]!r}") from e
        except Exception as e:
            raise ReplyGenerationError(f"completion request failed: {e}") from e


class AutoResponder:
    """
    Sends one generated reply per eligible inbound message.

    The reply runs as a background task after a short fixed delay so ingestion
    never waits on the completion call. When generation fails the configured
    fallback text goes out instead.
    """

    def __init__(
        self,
        store: ChatStore,
        generator: ReplyGenerator,
        send: ReplySender,
        *,
        delay_s: float = 1.0,
    ) -> None:
        self.store = store
        self.generator = generator
        self.send = send
        self.delay_s = delay_s

    @staticmethod
    def should_reply(message: Message, settings: Settings) -> bool:
        if not settings.auto_reply_enabled or message.from_me:
            return False
        text = (message.content or "").strip()
        if not text:
            return False
        # Our own fallback echoed back must not start a reply loop.
        return text != settings.auto_reply_message.strip()

    async def consider(self, message: Message) -> asyncio.Task[None] | None:
        settings = await self.store.get_settings()
        if not self.should_reply(message, settings):
            return None
        logger.debug("Scheduling auto-reply for %s in %s", message.id, message.chat_jid)
        return ensure_task(
            self._reply(message.chat_jid, message.content or "", settings),
            name="wadash.autoreply",
        )

    async def _reply(self, chat_jid: str, text: str, settings: Settings) -> None:
        await asyncio.sleep(self.delay_s)
        try:
            reply = await self.generator.generate(text, persona=settings.bot_persona)
        except ReplyGenerationError as e:
            logger.warning("Reply generation failed, sending fallback: %s", e)
            reply = settings.auto_reply_message

        try:
            await self.send(chat_jid, reply)
        except WadashError as e:
            logger.warning("Auto-reply to %s not sent: %s", chat_jid, e)
            return
        logger.info("Auto-replied to %s", chat_jid)
