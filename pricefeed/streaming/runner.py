"""Streaming runner that wires the feed, pipeline, monitor and broadcaster."""

from __future__ import annotations

import logging
from typing import Any

from ..config import Settings
from ..pairs import PairRegistry
from ..providers.finnhub_rest import FinnhubCandleClient
from ..providers.finnhub_ws import Backoff, FinnhubFeedConnection
from ..storage.sqlite import HourlyAverageStore
from .broadcast import BroadcastHub
from .monitor import StalenessMonitor
from .pipeline import IngestionPipeline


logger = logging.getLogger(__name__)


class StreamingRunner:
    """
    Manages lifecycle of the Finnhub feed and the staleness monitor.

    Both feed the same ingestion pipeline; their timers are independent.
    """

    def __init__(
        self,
        settings: Settings,
        store: HourlyAverageStore,
        hub: BroadcastHub,
        registry: PairRegistry | None = None,
    ):
        self.settings = settings
        self.store = store
        self.hub = hub
        self.registry = registry or PairRegistry()
        self.pipeline = IngestionPipeline(self.registry, store, hub)

        self.snapshots = FinnhubCandleClient(
            settings.finnhub_api_key,
            base_url=settings.finnhub_rest_url,
            window_seconds=settings.snapshot_window_seconds,
        )
        self.feed = FinnhubFeedConnection(
            api_key=settings.finnhub_api_key,
            symbols=self.registry.aliases(),
            on_trade=self.pipeline.ingest,
            url=settings.finnhub_ws_url,
            backoff=Backoff(settings.backoff_floor_ms, settings.backoff_ceiling_ms),
        )
        self.monitor = StalenessMonitor(
            self.pipeline,
            self.registry,
            # Candle queries need the same token as the feed
            self.snapshots if settings.has_valid_api_key() else None,
            stale_threshold_ms=int(settings.stale_threshold_seconds * 1000),
            interval_s=settings.monitor_interval_seconds,
        )

    async def start(self) -> None:
        """Start the feed connection and the staleness monitor."""
        logger.info("Starting streaming runner...")
        if not self.feed.start():
            logger.warning("Finnhub feed not started (configuration error). Staleness monitor still runs.")
        self.monitor.start()

    async def stop(self) -> None:
        """Shut down: no reconnects, no further monitor cycles."""
        logger.info("Stopping streaming runner...")
        await self.feed.shutdown()
        await self.monitor.stop()
        await self.snapshots.close()
        logger.info("Streaming runner stopped.")

    def status(self) -> dict[str, Any]:
        return {
            "feed": self.feed.status(),
            "pairs": self.pipeline.status(),
            "subscribers": len(self.hub),
        }
