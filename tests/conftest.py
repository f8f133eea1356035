from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any

import pytest
import pytest_asyncio

from wadash.auth.store import CredentialStore
from wadash.broadcast import Broadcaster
from wadash.client import SentReceipt
from wadash.config import ReconnectPolicy
from wadash.events import SESSION_EVENT, Identity
from wadash.lifecycle import ConnectionManager, RetryTimer
from wadash.store import InMemoryStore, SQLiteStore
from wadash.sync import SyncPipeline
from wadash.util.events import AsyncEventEmitter


class FakeSessionClient:
    def __init__(self) -> None:
        self.events = AsyncEventEmitter()
        self.identity: Identity | None = None
        self.connect_error: Exception | None = None
        self.connect_gate: asyncio.Event | None = None
        self.connect_started = asyncio.Event()
        self.send_error: Exception | None = None
        self.delete_error: Exception | None = None
        self.connected_with: CredentialStore | None = None
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.deleted: list[tuple[str, str, bool]] = []
        self.history_requests = 0
        self.closed = False
        self.close_calls = 0
        self._n = 0

    async def connect(self, credentials: CredentialStore) -> None:
        self.connect_started.set()
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.connect_error is not None:
            raise self.connect_error
        self.connected_with = credentials

    async def send(self, chat_id: str, payload: dict[str, Any]) -> SentReceipt:
        if self.send_error is not None:
            raise self.send_error
        self._n += 1
        self.sent.append((chat_id, payload))
        return SentReceipt(id=f"OUT{self._n}", timestamp_s=1_700_000_000)

    async def delete(self, chat_id: str, message_id: str, *, from_me: bool) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append((chat_id, message_id, from_me))

    async def request_history(self) -> None:
        self.history_requests += 1

    async def close(self) -> None:
        self.closed = True
        self.close_calls += 1

    async def emit(self, event: Any) -> None:
        await self.events.emit(SESSION_EVENT, event)


class FakeClientFactory:
    def __init__(self) -> None:
        self.clients: list[FakeSessionClient] = []
        self.create_error: Exception | None = None
        self.connect_error: Exception | None = None
        self.connect_gate: asyncio.Event | None = None

    def __call__(self) -> FakeSessionClient:
        if self.create_error is not None:
            raise self.create_error
        client = FakeSessionClient()
        client.connect_error = self.connect_error
        client.connect_gate = self.connect_gate
        self.clients.append(client)
        return client

    @property
    def latest(self) -> FakeSessionClient:
        return self.clients[-1]


class RecordingTimer(RetryTimer):
    """Retry timer that records delays and only fires when told to."""

    def __init__(self) -> None:
        super().__init__()
        self.scheduled: list[float] = []
        self._callback: Callable[[], Coroutine[Any, Any, object]] | None = None

    @property
    def pending(self) -> bool:
        return self._callback is not None

    def schedule(
        self, delay_s: float, callback: Callable[[], Coroutine[Any, Any, object]]
    ) -> None:
        self.scheduled.append(delay_s)
        self.last_delay_s = delay_s
        self._callback = callback

    def cancel(self) -> None:
        self._callback = None

    async def fire(self) -> object:
        callback, self._callback = self._callback, None
        assert callback is not None, "no retry pending"
        return await callback()


class RecordingUI:
    def __init__(self, *, fail: bool = False) -> None:
        self.frames: list[dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise RuntimeError("socket gone")
        self.frames.append(data)

    @property
    def events(self) -> list[str]:
        return [f["event"] for f in self.frames]

    def last(self, event: str) -> Any:
        for frame in reversed(self.frames):
            if frame["event"] == event:
                return frame["data"]
        raise AssertionError(f"no {event} frame in {self.events}")


@dataclass
class Harness:
    store: InMemoryStore
    broadcaster: Broadcaster
    pipeline: SyncPipeline
    manager: ConnectionManager
    factory: FakeClientFactory
    timer: RecordingTimer
    credentials: CredentialStore
    ui: RecordingUI


@pytest.fixture
def harness(tmp_path) -> Harness:
    store = InMemoryStore()
    broadcaster = Broadcaster()
    pipeline = SyncPipeline(store, broadcaster, clock=lambda: 1_700_000_500.0)
    factory = FakeClientFactory()
    timer = RecordingTimer()
    credentials = CredentialStore(tmp_path / "auth")
    manager = ConnectionManager(
        client_factory=factory,
        credentials=credentials,
        broadcaster=broadcaster,
        pipeline=pipeline,
        policy=ReconnectPolicy(),
        timer=timer,
    )
    broadcaster.set_status_provider(manager.status)
    ui = RecordingUI()
    # Joined directly so tests start without the snapshot frame.
    broadcaster._sessions.add(ui)
    return Harness(
        store=store,
        broadcaster=broadcaster,
        pipeline=pipeline,
        manager=manager,
        factory=factory,
        timer=timer,
        credentials=credentials,
        ui=ui,
    )


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def any_store(request, tmp_path):
    if request.param == "memory":
        store = InMemoryStore()
    else:
        store = SQLiteStore(tmp_path / "wadash.db")
        await store.init()
    yield store
    await store.close()


def web_message(
    mid: str,
    text: str | None = "hello",
    *,
    jid: str = "111@s.whatsapp.net",
    from_me: bool = False,
    push_name: str | None = None,
    ts: int | None = 1_700_000_000,
    status: int | None = None,
    participant: str | None = None,
    message: dict[str, Any] | None = None,
) -> dict[str, Any]:
    key: dict[str, Any] = {"remoteJid": jid, "id": mid, "fromMe": from_me}
    if participant:
        key["participant"] = participant
    wm: dict[str, Any] = {"key": key}
    if message is not None:
        wm["message"] = message
    elif text is not None:
        wm["message"] = {"conversation": text}
    if push_name is not None:
        wm["pushName"] = push_name
    if ts is not None:
        wm["messageTimestamp"] = ts
    if status is not None:
        wm["status"] = status
    return wm
