from __future__ import annotations

import logging

from .auth.store import CredentialStore
from .autoreply import AutoResponder, OpenRouterReplyGenerator, ReplyGenerator
from .broadcast import Broadcaster
from .client import BridgeSessionClient
from .config import DashboardConfig
from .lifecycle import ClientFactory, ConnectionManager, RetryTimer
from .outbound import OutboundSender
from .store import ChatStore, open_store
from .sync import SyncPipeline

logger = logging.getLogger(__name__)


class DashboardService:
    """
    Wires store, broadcaster, pipeline, lifecycle manager and send path together.

    Build it with `DashboardService.create(config)`; tests construct it directly
    with their own store and client factory.
    """

    def __init__(
        self,
        config: DashboardConfig,
        store: ChatStore,
        *,
        client_factory: ClientFactory | None = None,
        generator: ReplyGenerator | None = None,
        timer: RetryTimer | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.credentials = CredentialStore(config.auth_dir)
        self.broadcaster = Broadcaster()

        self.pipeline = SyncPipeline(store, self.broadcaster)
        self.manager = ConnectionManager(
            client_factory=client_factory or (lambda: BridgeSessionClient(config.bridge)),
            credentials=self.credentials,
            broadcaster=self.broadcaster,
            pipeline=self.pipeline,
            policy=config.reconnect,
            timer=timer,
        )
        self.broadcaster.set_status_provider(self.manager.status)

        self.outbound = OutboundSender(self.manager, store, self.broadcaster)
        self.responder = AutoResponder(
            store,
            generator or OpenRouterReplyGenerator(config.reply),
            self.outbound.send_text,
            delay_s=config.reply.delay_s,
        )
        self.pipeline.responder = self.responder

    @classmethod
    async def create(cls, config: DashboardConfig) -> DashboardService:
        store = await open_store(config.db_path)
        return cls(config, store)

    async def start(self) -> None:
        if self.config.autostart:
            await self.manager.start()
        else:
            logger.info("Autostart disabled; waiting for a manual restart")

    async def stop(self) -> None:
        await self.manager.stop()
        await self.store.close()
