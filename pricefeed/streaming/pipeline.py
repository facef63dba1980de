"""Ingestion pipeline: symbol normalization, hourly aggregation, fan-out."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from ..pairs import PairKey, PairRegistry
from ..providers.base import NormalizedTick, RawTrade
from ..storage.sqlite import HourlyAverageStore, StoreUnavailable
from ..utils.timeframes import now_ms
from .broadcast import BroadcastHub


logger = logging.getLogger(__name__)


@dataclass
class LastObservation:
    """Most recent observation of a pair, used only for staleness checks."""
    last_tick_at_ms: int | None = None  # local receipt time
    last_price: float | None = None


class IngestionPipeline:
    """
    Turns raw trades into normalized ticks.

    Every observation (live trade, snapshot backfill or synthetic tick) goes
    through ``record``: the hourly bucket is updated first, and a tick is
    broadcast only when that update succeeded.
    """

    def __init__(
        self,
        registry: PairRegistry,
        store: HourlyAverageStore,
        hub: BroadcastHub,
        clock: Callable[[], int] = now_ms,
    ):
        self.registry = registry
        self.store = store
        self.hub = hub
        self.clock = clock
        self.observations: dict[PairKey, LastObservation] = {
            pair: LastObservation() for pair in registry.pairs()
        }
        self.dropped_unknown = 0
        self.dropped_store = 0

        # Track last logged minute per pair (for throttled logging)
        self._last_logged_minute: dict[PairKey, int] = {}

    def observation(self, pair: PairKey) -> LastObservation:
        return self.observations.setdefault(pair, LastObservation())

    def observe(self, pair: PairKey, price: float) -> LastObservation:
        """Mark ``pair`` as seen now at ``price`` without aggregating anything."""
        obs = self.observation(pair)
        obs.last_tick_at_ms = self.clock()
        obs.last_price = price
        return obs

    async def ingest(self, trade: RawTrade) -> NormalizedTick | None:
        """Handle one trade item from the live feed."""
        pair = self.registry.resolve(trade.symbol)
        if pair is None:
            self.dropped_unknown += 1
            logger.debug(f"Dropping trade for untracked symbol {trade.symbol}")
            return None
        return await self.record(pair, trade.price, trade.ts)

    async def record(self, pair: PairKey, price: float, ts: int) -> NormalizedTick | None:
        """
        Aggregate and broadcast one observation of ``pair``.

        Returns:
            The broadcast tick, or None when the store was unavailable
        """
        self.observe(pair, price)

        try:
            hourly_avg = await self.store.upsert(pair, ts, price)
        except StoreUnavailable as e:
            self.dropped_store += 1
            logger.warning(f"Dropping {pair.value} tick, hourly store unavailable: {e}")
            return None

        tick = NormalizedTick(pair=pair, price=price, ts=ts, hourly_avg=hourly_avg)
        await self.hub.broadcast(tick)

        current_minute = ts // 60_000
        if current_minute > self._last_logged_minute.get(pair, 0):
            self._last_logged_minute[pair] = current_minute
            logger.info(f"{pair.value} price={price:.6f} hourly_avg={hourly_avg:.6f}")
        return tick

    def status(self) -> dict[str, dict[str, float | int | None]]:
        return {
            pair.value: {
                "last_tick_at_ms": obs.last_tick_at_ms,
                "last_price": obs.last_price,
            }
            for pair, obs in self.observations.items()
        }
