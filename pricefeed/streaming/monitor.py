"""Periodic staleness check that keeps every pair visibly live."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from ..pairs import PairKey, PairRegistry
from ..providers.base import NormalizedTick, SnapshotSource
from .pipeline import IngestionPipeline


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParityRule:
    """
    ``pair`` trades close enough to ``tracks`` that the latter's last price is
    an acceptable stand-in when ``pair`` has no data of its own.
    """
    pair: PairKey
    tracks: PairKey


# USDC and USDT both trade near one dollar
USDC_TRACKS_USDT = ParityRule(pair=PairKey.ETH_USDC, tracks=PairKey.ETH_USDT)


class StalenessMonitor:
    """
    Every ``interval_s`` seconds, backfills pairs with no recent tick.

    A stale pair first gets the latest candle from the snapshot source. If
    none is available and a parity rule covers the pair, a synthetic tick is
    derived from the correlated pair's last price. Both go through the
    pipeline's ``record`` so hourly averages include them.
    """

    def __init__(
        self,
        pipeline: IngestionPipeline,
        registry: PairRegistry,
        snapshots: SnapshotSource | None,
        stale_threshold_ms: int = 30_000,
        interval_s: float = 15.0,
        parity_rules: tuple[ParityRule, ...] = (USDC_TRACKS_USDT,),
    ):
        self.pipeline = pipeline
        self.registry = registry
        self.snapshots = snapshots
        self.stale_threshold_ms = stale_threshold_ms
        self.interval_s = interval_s
        self.parity_rules = {rule.pair: rule for rule in parity_rules}
        self._last_backfilled: dict[PairKey, int] = {}  # candle ts already aggregated, per pair
        self._task: asyncio.Task | None = None

    def is_stale(self, pair: PairKey, now: int, threshold_ms: int | None = None) -> bool:
        threshold = self.stale_threshold_ms if threshold_ms is None else threshold_ms
        last = self.pipeline.observation(pair).last_tick_at_ms
        return last is None or now - last >= threshold

    async def check_once(self) -> list[NormalizedTick]:
        """Run one staleness pass over all pairs; returns the ticks injected."""
        injected: list[NormalizedTick] = []
        for pair in self.registry.pairs():
            now = self.pipeline.clock()
            if not self.is_stale(pair, now):
                continue
            try:
                tick = await self._refresh(pair, now)
            except Exception as e:
                logger.warning(f"Staleness refresh for {pair.value} failed: {e}", exc_info=True)
                continue
            if tick is not None:
                injected.append(tick)
        return injected

    async def _refresh(self, pair: PairKey, now: int) -> NormalizedTick | None:
        if self.snapshots is not None:
            symbol = self.registry.primary_alias(pair)
            snapshot = await self.snapshots.latest(symbol)
            if snapshot is not None:
                last_ts = self._last_backfilled.get(pair, 0)
                if snapshot.ts > last_ts:
                    logger.info(f"{pair.value} stale; backfilled from {symbol} candle price={snapshot.price}")
                    tick = await self.pipeline.record(pair, snapshot.price, snapshot.ts)
                    if tick is not None:
                        self._last_backfilled[pair] = snapshot.ts
                    return tick
                # Same candle as last time: already counted once
                logger.debug(f"{pair.value} stale; {symbol} candle ts={snapshot.ts} already backfilled")
                self.pipeline.observe(pair, snapshot.price)

        rule = self.parity_rules.get(pair)
        if rule is None:
            return None
        return await self._synthesize(rule, now)

    async def _synthesize(self, rule: ParityRule, now: int) -> NormalizedTick | None:
        source = self.pipeline.observation(rule.tracks)
        if source.last_price is None:
            return None
        if self.is_stale(rule.tracks, now, threshold_ms=2 * self.stale_threshold_ms):
            return None
        logger.info(
            f"{rule.pair.value} stale; synthesizing from {rule.tracks.value} price={source.last_price}"
        )
        return await self.pipeline.record(rule.pair, source.last_price, now)

    async def run(self) -> None:
        """Loop until cancelled."""
        logger.info(
            f"Staleness monitor started (interval={self.interval_s}s, "
            f"threshold={self.stale_threshold_ms}ms)"
        )
        try:
            while True:
                await asyncio.sleep(self.interval_s)
                await self.check_once()
        except asyncio.CancelledError:
            logger.info("Staleness monitor cancelled.")
            raise

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
