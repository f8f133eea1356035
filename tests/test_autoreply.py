from __future__ import annotations

import json

import pytest

from wadash.autoreply import AutoResponder, OpenRouterReplyGenerator
from wadash.config import ReplyConfig
from wadash.exceptions import NotConnectedError, ReplyGenerationError
from wadash.store import InMemoryStore, Message, Settings

ALICE = "111@s.whatsapp.net"


class StubGenerator:
    def __init__(self, reply: str | None = "Sure, see you then!") -> None:
        self.reply = reply
        self.calls: list[tuple[str, str]] = []

    async def generate(self, prompt: str, *, persona: str) -> str:
        self.calls.append((prompt, persona))
        if self.reply is None:
            raise ReplyGenerationError("model unavailable")
        return self.reply


class RecordingSend:
    def __init__(self, error: Exception | None = None) -> None:
        self.sent: list[tuple[str, str]] = []
        self.error = error

    async def __call__(self, chat_jid: str, text: str) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append((chat_jid, text))


def _inbound(text: str | None = "are we still on for 6?", *, from_me: bool = False) -> Message:
    return Message(
        id="M1", chat_jid=ALICE, sender_jid=ALICE, timestamp_s=1, content=text, from_me=from_me
    )


@pytest.mark.parametrize(
    ("message", "settings", "expected"),
    [
        (_inbound(), Settings(), True),
        (_inbound(), Settings(auto_reply_enabled=False), False),
        (_inbound(from_me=True), Settings(), False),
        (_inbound("   "), Settings(), False),
        (_inbound(None), Settings(), False),
        (_inbound("Hello! This is an automated message."), Settings(), False),
    ],
)
def test_should_reply(message: Message, settings: Settings, expected: bool) -> None:
    assert AutoResponder.should_reply(message, settings) is expected


@pytest.mark.asyncio
async def test_generated_reply_is_sent_with_persona() -> None:
    store = InMemoryStore()
    await store.update_settings(bot_persona="You are terse.")
    generator = StubGenerator()
    send = RecordingSend()
    responder = AutoResponder(store, generator, send, delay_s=0)

    task = await responder.consider(_inbound())
    assert task is not None
    await task

    assert generator.calls == [("are we still on for 6?", "You are terse.")]
    assert send.sent == [(ALICE, "Sure, see you then!")]


@pytest.mark.asyncio
async def test_generation_failure_sends_fallback() -> None:
    store = InMemoryStore()
    await store.update_settings(auto_reply_message="Away right now.")
    send = RecordingSend()
    responder = AutoResponder(store, StubGenerator(reply=None), send, delay_s=0)

    task = await responder.consider(_inbound())
    assert task is not None
    await task

    assert send.sent == [(ALICE, "Away right now.")]


@pytest.mark.asyncio
async def test_own_fallback_text_never_triggers_a_reply() -> None:
    store = InMemoryStore()
    settings = await store.get_settings()
    responder = AutoResponder(store, StubGenerator(), RecordingSend(), delay_s=0)

    assert await responder.consider(_inbound(settings.auto_reply_message)) is None


@pytest.mark.asyncio
async def test_send_failure_is_logged_not_raised(caplog) -> None:
    store = InMemoryStore()
    responder = AutoResponder(
        store, StubGenerator(), RecordingSend(error=NotConnectedError()), delay_s=0
    )

    task = await responder.consider(_inbound())
    assert task is not None
    await task
    assert "Auto-reply to" in caplog.text


@pytest.mark.asyncio
async def test_openrouter_generator_requires_api_key() -> None:
    gen = OpenRouterReplyGenerator(ReplyConfig(api_key=""))
    with pytest.raises(ReplyGenerationError):
        await gen.generate("hi", persona="p")


@pytest.mark.asyncio
async def test_openrouter_generator_parses_completion(monkeypatch) -> None:
    gen = OpenRouterReplyGenerator(ReplyConfig(api_key="sk-test", model="m"))
    bodies: list[dict] = []

    def fake_post(body: bytes) -> bytes:
        bodies.append(json.loads(body))
        return json.dumps({"choices": [{"message": {"content": "  On my way \n"}}]}).encode()

    monkeypatch.setattr(gen, "_post", fake_post)

    assert await gen.generate("where are you?", persona="Be kind.") == "On my way"
    assert bodies[0]["model"] == "m"
    assert bodies[0]["messages"] == [
        {"role": "system", "content": "Be kind."},
        {"role": "user", "content": "where are you?"},
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw",
    [
        b"not json",
        b"[]",
        b'{"choices": []}',
        b'{"choices": [{"message": {"content": "   "}}]}',
    ],
)
async def test_openrouter_generator_rejects_unusable_responses(monkeypatch, raw: bytes) -> None:
    gen = OpenRouterReplyGenerator(ReplyConfig(api_key="sk-test"))
    monkeypatch.setattr(gen, "_post", lambda body: raw)

    with pytest.raises(ReplyGenerationError):
        await gen.generate("hi", persona="p")
