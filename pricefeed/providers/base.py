"""Base types shared by feed providers and the ingestion pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from ..pairs import PairKey


@dataclass(frozen=True)
class RawTrade:
    """One trade item as received from the feed."""
    symbol: str
    price: float
    ts: int  # epoch milliseconds


@dataclass(frozen=True)
class NormalizedTick:
    """Tick broadcast to subscribers after a successful aggregation update."""
    pair: PairKey
    price: float
    ts: int  # epoch milliseconds
    hourly_avg: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "pair": self.pair.value,
            "price": self.price,
            "ts": self.ts,
            "hourlyAvg": self.hourly_avg,
        }


@dataclass(frozen=True)
class Snapshot:
    """Most recent data point returned by a snapshot query."""
    symbol: str
    price: float
    ts: int  # epoch milliseconds


TradeHandler = Callable[[RawTrade], Awaitable[Any]]


class SnapshotSource(Protocol):
    """Protocol for request/response sources of a recent price."""

    async def latest(self, symbol: str) -> Snapshot | None:
        """
        Return the most recent data point for ``symbol``.

        Should return None (and log) on any fetch or parse failure rather than raise.
        """
        ...
