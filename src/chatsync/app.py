"""Application bootstrap: creates shared components and runs everything.

This is the single place that wires the platform client, the event bus,
the persistence gateway and the auto-reply orchestrator together, then
runs live ingestion and (optionally) a startup reconciliation pass.
"""

from __future__ import annotations

import asyncio
import signal

from loguru import logger

from chatsync.agents.context import ContextWindowBuilder
from chatsync.agents.responder import AutoReplyOrchestrator, AutoReplySettings
from chatsync.config import AppConfig, configure_logging, get_config
from chatsync.constants import SHUTDOWN_DRAIN_TIMEOUT
from chatsync.errors import StoreUnavailable
from chatsync.pipeline.event_bus import EventBus
from chatsync.pipeline.materializer import AttachmentMaterializer
from chatsync.pipeline.realtime import RealTimeIngestionHandler
from chatsync.pipeline.reconcile import BatchReconciliationJob
from chatsync.platform.base import BasePlatformClient
from chatsync.platform.telegram import TelegramPlatformClient
from chatsync.providers.llm import BaseLLMProvider, build_provider
from chatsync.store import BlobStore, PersistenceGateway


class Application:
    """Top-level application that owns all major components.

    Architecture:
        EventBus (per-conversation lanes)
            ├── Platform client         (live events → bus, history, send)
            ├── RealTimeIngestionHandler (bus → gateway → orchestrator)
            └── BatchReconciliationJob   (platform window − stored ids → gateway)
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        platform: BasePlatformClient | None = None,
        llm: BaseLLMProvider | None = None,
    ) -> None:
        self._config = config or get_config()
        configure_logging(self._config.logging.level)

        storage = self._config.storage
        self.gateway = PersistenceGateway(storage.resolved_database)
        self.gateway.init_schema()
        self.blobs = BlobStore(storage.resolved_media_dir)

        # Shared event bus, the single bridge between platform and pipeline
        self.event_bus = EventBus()
        self.platform = platform or self._build_platform()

        self.materializer = AttachmentMaterializer(
            self.platform,
            self.blobs,
            url_prefix=storage.media_url_prefix,
        )

        agent = self._config.agent
        self.orchestrator = AutoReplyOrchestrator(
            gateway=self.gateway,
            platform=self.platform,
            llm=llm or self._build_llm(),
            context_builder=ContextWindowBuilder(self.gateway),
            model_config=agent.defaults,
            completion_timeout=agent.completion_timeout,
        )

        self.realtime = RealTimeIngestionHandler(
            gateway=self.gateway,
            platform=self.platform,
            materializer=self.materializer,
            orchestrator=self.orchestrator,
            auto_reply=AutoReplySettings.from_config(self._config.auto_reply),
        )

        reconcile = self._config.reconcile
        self.reconciler = BatchReconciliationJob(
            gateway=self.gateway,
            platform=self.platform,
            materializer=self.materializer,
            fetch_window=reconcile.fetch_window,
            concurrency=reconcile.concurrency,
        )

        self.drain_timeout = SHUTDOWN_DRAIN_TIMEOUT
        self._shutdown_event = asyncio.Event()

    def _build_platform(self) -> BasePlatformClient:
        """Instantiate the first enabled, usable platform channel."""
        for name, channel_cfg in self._config.get_enabled_channels().items():
            if channel_cfg.type == "telegram":
                if not channel_cfg.token:
                    logger.warning(
                        f"Telegram token not resolved for channel '{name}'. "
                        f"Check your .env file. Skipping."
                    )
                    continue
                logger.info(f"Using platform channel: {name} (type={channel_cfg.type})")
                return TelegramPlatformClient(
                    bus=self.event_bus,
                    token=channel_cfg.token,
                    config=channel_cfg.extra,
                )
            logger.warning(f"Unknown channel type: {channel_cfg.type}")
        raise RuntimeError("No enabled platform channel could be configured")

    def _build_llm(self) -> BaseLLMProvider:
        slug = self._config.agent.defaults.provider
        provider_config = self._config.get_provider(slug)
        if provider_config is None:
            raise ValueError(f"Provider '{slug}' is not configured")
        return build_provider(provider_config)

    async def start(self) -> None:
        """Start all components and run until shutdown signal."""
        logger.info("chatsync starting up...")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler)

        await self.platform.connect()

        dispatch_task = asyncio.create_task(
            self.event_bus.dispatch(self.realtime.handle),
            name="bus-dispatch",
        )

        background: list[asyncio.Task] = []
        if self._config.reconcile.on_startup:
            background.append(
                asyncio.create_task(self.reconciler.reconcile_all(), name="reconcile")
            )

        try:
            incomplete = await self.gateway.messages_missing_attachment()
        except StoreUnavailable as exc:
            logger.warning(f"Could not check for unfinished attachments: {exc}")
            incomplete = []
        if incomplete:
            logger.warning(
                f"{len(incomplete)} stored messages have an unfinished attachment step"
            )

        logger.info("chatsync is running. Press Ctrl+C to stop.")

        await self._shutdown_event.wait()

        await self.shutdown(dispatch_task, *background)

    async def shutdown(self, *tasks: asyncio.Task) -> None:
        """Stop routing, let running lanes finish, then disconnect.

        Lanes still busy after ``drain_timeout`` seconds are cancelled.
        Events not yet routed to a lane are left for reconciliation.
        """
        logger.info("Shutting down...")
        self.event_bus.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self.event_bus.active_lanes:
            logger.info(f"Waiting for {self.event_bus.active_lanes} in-flight conversations")
        try:
            await asyncio.wait_for(self.event_bus.drain(), timeout=self.drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"In-flight events still running after {self.drain_timeout}s, cancelled"
            )

        await self.platform.disconnect()
        logger.info("chatsync stopped.")

    def _signal_handler(self) -> None:
        """Handle SIGINT/SIGTERM by setting the shutdown event."""
        logger.info("Shutdown signal received")
        self._shutdown_event.set()

    def run(self) -> None:
        """Synchronous entry point: creates event loop and runs the app."""
        asyncio.run(self.start())


def main() -> None:
    Application().run()
