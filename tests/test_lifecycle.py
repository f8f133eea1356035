from __future__ import annotations

import asyncio

import pytest

from wadash.config import ReconnectPolicy
from wadash.events import (
    SESSION_EVENT,
    ConnectionState,
    DisconnectReason,
    Identity,
    MessageInbound,
    PairingCode,
)
from wadash.exceptions import AuthError, LifecycleError, NotConnectedError, TransportError
from wadash.lifecycle import RetryTimer, SessionStatus

from .conftest import FakeSessionClient, web_message

ME = Identity(id="999:3@s.whatsapp.net", name="Me")


def _close(code: int | None = None) -> ConnectionState:
    return ConnectionState(state="close", reason=DisconnectReason(code=code, message="closed"))


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def test_backoff_is_linear_and_capped() -> None:
    policy = ReconnectPolicy()
    assert [policy.delay_for(n) for n in range(1, 9)] == [5, 10, 15, 20, 25, 30, 30, 30]


@pytest.mark.asyncio
async def test_start_connects_and_broadcasts_connecting(harness) -> None:
    assert await harness.manager.start() is True

    client = harness.factory.latest
    assert client.connected_with is harness.credentials
    assert harness.manager.state.status is SessionStatus.CONNECTING
    assert harness.ui.last("status") == {"status": "connecting"}


@pytest.mark.asyncio
async def test_start_is_a_noop_while_connecting_or_paired(harness) -> None:
    await harness.manager.start()
    assert await harness.manager.start() is False

    await harness.factory.latest.emit(ConnectionState(state="open", identity=ME))
    assert await harness.manager.start() is False
    assert len(harness.factory.clients) == 1


@pytest.mark.asyncio
async def test_concurrent_starts_build_one_client(harness) -> None:
    gate = asyncio.Event()
    real_factory = harness.factory

    def slow_factory():
        client = real_factory()
        original = client.connect

        async def connect(credentials):
            await gate.wait()
            await original(credentials)

        client.connect = connect
        return client

    harness.manager._client_factory = slow_factory
    first = asyncio.create_task(harness.manager.start())
    await asyncio.sleep(0)
    assert harness.manager.state.initializing is True
    assert await harness.manager.start() is False

    gate.set()
    assert await first is True
    assert len(real_factory.clients) == 1
    assert harness.manager.state.initializing is False


@pytest.mark.asyncio
async def test_pairing_code_is_stored_and_broadcast(harness) -> None:
    await harness.manager.start()
    await harness.factory.latest.emit(PairingCode(code="2@ref,key"))

    assert harness.manager.status().pairing_code == "2@ref,key"
    assert harness.ui.last("pairing_code") == {"qr": "2@ref,key"}
    assert harness.ui.last("status") == {"status": "connecting", "qr": "2@ref,key"}


@pytest.mark.asyncio
async def test_new_attempt_clears_previous_pairing_code(harness) -> None:
    await harness.manager.start()
    await harness.factory.latest.emit(PairingCode(code="old"))
    await harness.factory.latest.emit(_close(408))

    assert harness.manager.state.pairing_code is None
    await harness.timer.fire()
    assert harness.manager.status().pairing_code is None


@pytest.mark.asyncio
async def test_open_pairs_and_requests_history_once(harness) -> None:
    await harness.manager.start()
    client = harness.factory.latest
    await client.emit(ConnectionState(state="open", identity=ME))
    await _settle()

    assert harness.manager.is_paired
    assert harness.manager.identity == ME
    assert harness.manager.require_client() is client
    assert harness.ui.last("status") == {
        "status": "connected",
        "user": {"id": ME.id, "name": "Me"},
    }
    assert client.history_requests == 1
    assert "chat_update" in harness.ui.events

    await client.emit(ConnectionState(state="open", identity=ME))
    await _settle()
    assert client.history_requests == 1


@pytest.mark.asyncio
async def test_open_resets_counter_and_cancels_retry(harness) -> None:
    await harness.manager.start()
    await harness.factory.latest.emit(_close())
    assert harness.manager.state.reconnect_attempts == 1

    await harness.timer.fire()
    await harness.factory.latest.emit(ConnectionState(state="open", identity=ME))
    assert harness.manager.state.reconnect_attempts == 0
    assert not harness.timer.pending


@pytest.mark.asyncio
async def test_unexpected_close_schedules_backoff(harness) -> None:
    await harness.manager.start()
    first = harness.factory.latest
    await first.emit(_close(428))

    assert harness.manager.state.status is SessionStatus.UNINITIALIZED
    assert first.closed is True
    assert harness.timer.scheduled == [5.0]
    assert harness.ui.last("status") == {"status": "disconnected"}
    with pytest.raises(NotConnectedError):
        harness.manager.require_client()


@pytest.mark.asyncio
async def test_reconnect_ceiling_then_manual_restart(harness) -> None:
    await harness.manager.start()
    for _ in range(10):
        await harness.factory.latest.emit(_close())
        await harness.timer.fire()

    assert harness.timer.scheduled == [5, 10, 15, 20, 25, 30, 30, 30, 30, 30]

    await harness.factory.latest.emit(_close())
    assert not harness.timer.pending
    assert harness.manager.state.reconnect_attempts == 11
    assert harness.ui.last("status") == {"status": "disconnected"}

    assert await harness.manager.start() is False
    assert await harness.manager.restart() is True
    assert harness.manager.state.status is SessionStatus.CONNECTING


@pytest.mark.asyncio
async def test_logout_is_terminal_and_clears_credentials(harness) -> None:
    await harness.credentials.save({"me": {"id": "999@s.whatsapp.net"}})
    await harness.manager.start()
    await harness.factory.latest.emit(ConnectionState(state="open", identity=ME))

    await harness.factory.latest.emit(_close(401))

    assert not harness.timer.pending
    assert harness.timer.scheduled == []
    assert harness.manager.state.status is SessionStatus.UNINITIALIZED
    assert await harness.credentials.load() is None
    assert harness.ui.last("status") == {"status": "disconnected"}


@pytest.mark.asyncio
async def test_factory_error_resolves_to_disconnected(harness) -> None:
    harness.factory.create_error = RuntimeError("library exploded")

    assert await harness.manager.start() is False
    assert harness.manager.state.status is SessionStatus.UNINITIALIZED
    assert harness.manager.state.initializing is False
    assert harness.timer.scheduled == [5.0]
    assert harness.ui.last("status") == {"status": "disconnected"}


@pytest.mark.asyncio
async def test_connect_error_resolves_to_disconnected(harness) -> None:
    harness.factory.connect_error = TransportError("bridge down")

    assert await harness.manager.start() is False
    assert harness.factory.latest.closed is True
    assert harness.manager.client is None
    assert harness.timer.pending


@pytest.mark.asyncio
async def test_disconnect_during_connect_closes_the_late_client(harness) -> None:
    gate = asyncio.Event()
    harness.factory.connect_gate = gate
    starting = asyncio.create_task(harness.manager.start())
    await _settle()
    client = harness.factory.latest
    await asyncio.wait_for(client.connect_started.wait(), timeout=1)

    await harness.manager.disconnect()
    gate.set()

    assert await starting is False
    # Once when discarded, once more after its connect finished.
    assert client.close_calls == 2
    assert harness.manager.client is None
    assert harness.manager.state.status is SessionStatus.UNINITIALIZED
    assert not harness.timer.pending


@pytest.mark.asyncio
async def test_start_tears_down_a_leftover_client(harness) -> None:
    leftover = FakeSessionClient()
    harness.manager._client = leftover

    assert await harness.manager.start() is True
    assert leftover.closed is True
    assert harness.manager.client is harness.factory.latest


@pytest.mark.asyncio
async def test_clear_failure_still_reports_disconnected(harness, monkeypatch) -> None:
    await harness.manager.start()

    async def failing_clear() -> None:
        raise AuthError("read-only filesystem")

    monkeypatch.setattr(harness.credentials, "clear", failing_clear)
    await harness.manager.reconnect()

    assert harness.manager.state.status is SessionStatus.UNINITIALIZED
    assert harness.ui.last("status") == {"status": "disconnected"}

@pytest.mark.asyncio
async def test_events_from_superseded_client_are_ignored(harness) -> None:
    await harness.manager.start()
    stale = harness.factory.latest
    (listener,) = stale.events._listeners[SESSION_EVENT]
    await harness.manager.disconnect()
    await harness.manager.start()

    # Deliver straight to the detached listener, as a late in-flight event would be.
    await listener(ConnectionState(state="open", identity=ME))
    await listener(_close())

    assert harness.manager.state.status is SessionStatus.CONNECTING
    assert harness.manager.state.reconnect_attempts == 0
    assert not harness.timer.pending


@pytest.mark.asyncio
async def test_disconnect_force_resets_without_touching_credentials(harness) -> None:
    await harness.credentials.save({"k": 1})
    await harness.manager.start()
    client = harness.factory.latest
    await client.emit(ConnectionState(state="open", identity=ME))

    await harness.manager.disconnect()

    assert client.closed is True
    assert client.events.listener_count() == 0
    assert harness.manager.client is None
    assert harness.manager.status().status == "disconnected"
    assert harness.manager.state.identity is None
    assert await harness.credentials.load() == {"k": 1}


@pytest.mark.asyncio
async def test_reconnect_clears_credentials_and_restarts_after_settle(harness) -> None:
    await harness.credentials.save({"k": 1})
    await harness.manager.start()
    await harness.factory.latest.emit(ConnectionState(state="open", identity=ME))

    await harness.manager.reconnect()

    assert await harness.credentials.load() is None
    assert harness.timer.scheduled == [1.0]
    await harness.timer.fire()
    assert len(harness.factory.clients) == 2
    assert harness.manager.state.status is SessionStatus.CONNECTING


@pytest.mark.asyncio
async def test_sync_events_reach_the_pipeline(harness) -> None:
    await harness.manager.start()
    await harness.factory.latest.emit(ConnectionState(state="open", identity=ME))
    await harness.factory.latest.emit(
        MessageInbound(messages=[web_message("M1", "hi", push_name="Alice")])
    )

    assert await harness.store.get_message("M1") is not None


@pytest.mark.asyncio
async def test_unknown_event_is_rejected(harness, caplog) -> None:
    await harness.manager.start()
    await harness.factory.latest.emit(object())
    assert "Rejected unknown session event" in caplog.text


def test_invalid_transition_raises(harness) -> None:
    with pytest.raises(LifecycleError):
        harness.manager._transition(SessionStatus.PAIRED)


@pytest.mark.asyncio
async def test_retry_timer_keeps_a_single_pending_callback() -> None:
    fired: list[str] = []

    async def cb(tag: str) -> None:
        fired.append(tag)

    timer = RetryTimer()
    timer.schedule(0.01, lambda: cb("first"))
    timer.schedule(0.01, lambda: cb("second"))
    assert timer.pending
    await asyncio.sleep(0.05)
    assert fired == ["second"]
    assert not timer.pending

    timer.schedule(0.01, lambda: cb("cancelled"))
    timer.cancel()
    await asyncio.sleep(0.03)
    assert fired == ["second"]
