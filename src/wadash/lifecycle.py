from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any

from .auth.store import CredentialStore
from .broadcast import DISCONNECTED, Broadcaster, StatusSnapshot
from .client import SessionClient
from .config import ReconnectPolicy
from .events import (
    SESSION_EVENT,
    ConnectionState,
    DisconnectReason,
    HistoryBatch,
    Identity,
    MessageInbound,
    MessageStatus,
    PairingCode,
    Presence,
)
from .exceptions import AdapterFault, LifecycleError, NotConnectedError, WadashError
from .sync import SyncPipeline
from .util.asyncio import ensure_task

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], SessionClient]


class SessionStatus(enum.Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    PAIRED = "paired"
    CLOSING = "closing"


_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.UNINITIALIZED: frozenset({SessionStatus.CONNECTING}),
    SessionStatus.CONNECTING: frozenset(
        {SessionStatus.PAIRED, SessionStatus.CLOSING, SessionStatus.UNINITIALIZED}
    ),
    SessionStatus.PAIRED: frozenset({SessionStatus.CLOSING, SessionStatus.UNINITIALIZED}),
    SessionStatus.CLOSING: frozenset({SessionStatus.CONNECTING, SessionStatus.UNINITIALIZED}),
}


@dataclass(slots=True)
class SessionState:
    status: SessionStatus = SessionStatus.UNINITIALIZED
    pairing_code: str | None = None
    identity: Identity | None = None
    reconnect_attempts: int = 0
    # Set synchronously at the top of start(), before its first await.
    initializing: bool = False
    # Bumped whenever the current client is replaced or discarded.
    generation: int = 0
    history_generation: int = -1


class RetryTimer:
    """Single-slot delayed callback: scheduling again replaces the pending one."""

    def __init__(self) -> None:
        self._handle: asyncio.TimerHandle | None = None
        self.last_delay_s: float | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(
        self, delay_s: float, callback: Callable[[], Coroutine[Any, Any, object]]
    ) -> None:
        self.cancel()
        self.last_delay_s = delay_s
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay_s, self._fire, callback)

    def _fire(self, callback: Callable[[], Coroutine[Any, Any, object]]) -> None:
        self._handle = None
        ensure_task(callback(), name="wadash.lifecycle.retry")

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class ConnectionManager:
    """
    Owns the one live session client and drives it through its lifecycle.

    uninitialized -> connecting -> paired, with closing used while a forced
    reset tears the client down. Unexpected closes retry with a capped linear
    backoff; a logout (close code 401) clears credentials and stops retrying.

    Events are tagged with the generation of the client that produced them so a
    replaced client can never move the state machine.
    """

    def __init__(
        self,
        *,
        client_factory: ClientFactory,
        credentials: CredentialStore,
        broadcaster: Broadcaster,
        pipeline: SyncPipeline,
        policy: ReconnectPolicy | None = None,
        timer: RetryTimer | None = None,
    ) -> None:
        self._client_factory = client_factory
        self._credentials = credentials
        self._broadcaster = broadcaster
        self._pipeline = pipeline
        self.policy = policy or ReconnectPolicy()
        self.timer = timer or RetryTimer()

        self.state = SessionState()
        self._client: SessionClient | None = None

    # -- queries --------------------------------------------------------------

    @property
    def client(self) -> SessionClient | None:
        return self._client

    @property
    def is_paired(self) -> bool:
        return self.state.status is SessionStatus.PAIRED and self._client is not None

    @property
    def identity(self) -> Identity | None:
        return self.state.identity

    def require_client(self) -> SessionClient:
        if not self.is_paired:
            raise NotConnectedError()
        assert self._client is not None
        return self._client

    def status(self) -> StatusSnapshot:
        st = self.state
        if st.status is SessionStatus.PAIRED:
            return StatusSnapshot(status="connected", identity=st.identity)
        if st.status is SessionStatus.CONNECTING:
            return StatusSnapshot(status="connecting", pairing_code=st.pairing_code)
        return DISCONNECTED

    def _transition(self, to: SessionStatus) -> None:
        current = self.state.status
        if current is to:
            return
        if to not in _TRANSITIONS[current]:
            raise LifecycleError(f"invalid transition {current.value} -> {to.value}")
        logger.debug("Session %s -> %s", current.value, to.value)
        self.state.status = to

    # -- start / stop ---------------------------------------------------------

    async def start(self) -> bool:
        """
        Bring up a fresh session client.

        Returns False (and does nothing) while a start is already in flight, a
        client is live, or the reconnect ceiling has been reached.
        """

        st = self.state
        if st.initializing or st.status in (SessionStatus.CONNECTING, SessionStatus.PAIRED):
            logger.debug("start() ignored: session is %s", st.status.value)
            return False
        if st.reconnect_attempts > self.policy.max_attempts:
            logger.warning("Reconnect ceiling reached; waiting for a manual restart")
            return False

        st.initializing = True
        generation = st.generation
        try:
            self.timer.cancel()
            self._transition(SessionStatus.CONNECTING)
            st.pairing_code = None
            st.identity = None
            await self._discard_client()
            st.generation += 1
            generation = st.generation

            try:
                client = self._client_factory()
                client.events.on(SESSION_EVENT, self._listener(generation))
                self._client = client
                await self._broadcaster.status(self.status())
                if generation != st.generation:
                    logger.debug("start() superseded before connect (generation %d)", generation)
                    return False
                await client.connect(self._credentials)
                if generation != st.generation:
                    logger.debug("Closing session client discarded during connect")
                    await client.close()
                    return False
            except Exception as e:
                fault = e if isinstance(e, WadashError) else AdapterFault(str(e))
                logger.warning("Session client failed to start: %s", fault, exc_info=True)
                if generation == st.generation:
                    await self._handle_close(DisconnectReason(message=str(fault)), terminal=False)
                return False

            logger.info("Session client started (generation %d)", generation)
            return True
        finally:
            # Whatever superseded this start has already released the flag.
            if generation == st.generation:
                st.initializing = False

    def _listener(self, generation: int) -> Callable[[Any], Coroutine[Any, Any, None]]:
        async def _on_event(event: Any) -> None:
            if generation != self.state.generation:
                logger.debug(
                    "Ignoring %s from superseded session client (generation %d)",
                    type(event).__name__,
                    generation,
                )
                return
            await self._dispatch(event)

        return _on_event

    async def restart(self) -> bool:
        """Manual start that also lifts the reconnect ceiling."""

        self.state.reconnect_attempts = 0
        return await self.start()

    async def force_reset(self, *, clear_credentials: bool = False) -> None:
        """Tear the current client down and return to uninitialized."""

        st = self.state
        self.timer.cancel()
        st.generation += 1
        if st.status is not SessionStatus.UNINITIALIZED:
            self._transition(SessionStatus.CLOSING)
        try:
            await self._discard_client()
            if clear_credentials:
                await self._clear_credentials()
        finally:
            st.pairing_code = None
            st.identity = None
            st.reconnect_attempts = 0
            st.initializing = False
            self._transition(SessionStatus.UNINITIALIZED)
        await self._broadcaster.status(DISCONNECTED)

    async def disconnect(self) -> None:
        logger.info("Disconnecting session")
        await self.force_reset()

    async def reconnect(self) -> None:
        """Drop the current pairing and start over with a fresh pairing code."""

        logger.info("Reconnecting with fresh credentials")
        await self.force_reset(clear_credentials=True)
        self.timer.schedule(self.policy.settle_delay_s, self.start)

    async def stop(self) -> None:
        """Shutdown path: close the client without touching credentials or UIs."""

        self.timer.cancel()
        self.state.generation += 1
        self.state.initializing = False
        await self._discard_client()
        self._transition(SessionStatus.UNINITIALIZED)

    async def _discard_client(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        client.events.remove_all_listeners()
        try:
            await client.close()
        except Exception:
            logger.warning("Error while closing session client", exc_info=True)

    async def _clear_credentials(self) -> None:
        try:
            await self._credentials.clear()
        except WadashError as e:
            logger.error("Failed to clear stored credentials: %s", e)

    # -- event handling -------------------------------------------------------

    async def _dispatch(self, event: Any) -> None:
        if isinstance(event, PairingCode):
            await self._on_pairing_code(event)
        elif isinstance(event, ConnectionState):
            if event.state == "open":
                await self._on_open(event)
            elif event.state == "close":
                await self._handle_close(event.reason, terminal=event.is_terminal)
            else:
                logger.debug("Session is connecting")
        elif isinstance(event, (HistoryBatch, MessageInbound, MessageStatus, Presence)):
            await self._pipeline.handle(event)
        else:
            logger.warning("Rejected unknown session event %r", event)

    async def _on_pairing_code(self, event: PairingCode) -> None:
        if self.state.status is not SessionStatus.CONNECTING:
            logger.debug("Ignoring pairing code while %s", self.state.status.value)
            return
        self.state.pairing_code = event.code
        logger.info("New pairing code available")
        await self._broadcaster.pairing_code(event.code)
        await self._broadcaster.status(self.status())

    async def _on_open(self, event: ConnectionState) -> None:
        st = self.state
        if st.status is SessionStatus.PAIRED:
            return
        self._transition(SessionStatus.PAIRED)
        self.timer.cancel()
        st.reconnect_attempts = 0
        st.pairing_code = None
        client = self._client
        st.identity = event.identity or (client.identity if client is not None else None)
        logger.info("Session open as %s", st.identity.id if st.identity else "unknown user")

        await self._broadcaster.status(self.status())
        self._reconcile(st.generation)

    def _reconcile(self, generation: int) -> None:
        st = self.state
        if st.history_generation == generation or self._client is None:
            return
        st.history_generation = generation
        # Spawned, not awaited: the history ack arrives on the loop that is
        # currently dispatching this event.
        ensure_task(
            self._request_history(self._client, generation), name="wadash.lifecycle.history"
        )

    async def _request_history(self, client: SessionClient, generation: int) -> None:
        try:
            await client.request_history()
        except WadashError as e:
            logger.warning("History request failed: %s", e)
            return
        if generation == self.state.generation:
            await self._pipeline.reconcile()

    async def _handle_close(self, reason: DisconnectReason | None, *, terminal: bool) -> None:
        st = self.state
        if st.status is SessionStatus.CLOSING:
            return
        self._transition(SessionStatus.UNINITIALIZED)
        st.pairing_code = None
        st.identity = None
        st.generation += 1
        st.initializing = False
        await self._discard_client()

        if terminal:
            logger.warning("Session logged out; credentials cleared, not reconnecting")
            await self._clear_credentials()
            st.reconnect_attempts = 0
            await self._broadcaster.status(DISCONNECTED)
            return

        st.reconnect_attempts += 1
        attempt = st.reconnect_attempts
        await self._broadcaster.status(DISCONNECTED)
        if attempt > self.policy.max_attempts:
            logger.error(
                "Session closed (%s); giving up after %d attempts",
                _describe(reason),
                self.policy.max_attempts,
            )
            return

        delay = self.policy.delay_for(attempt)
        logger.info(
            "Session closed (%s); retry %d/%d in %.1fs",
            _describe(reason),
            attempt,
            self.policy.max_attempts,
            delay,
        )
        self.timer.schedule(delay, self.start)


def _describe(reason: DisconnectReason | None) -> str:
    if reason is None:
        return "no reason"
    if reason.code is not None:
        return f"code {reason.code}, {reason.message}" if reason.message else f"code {reason.code}"
    return reason.message or "no reason"
