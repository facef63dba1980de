"""Canonical trading pairs and the Finnhub symbol aliases that map to them."""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Sequence


class PairKey(str, Enum):
    """Tracked pairs. The set is fixed at build time."""
    ETH_USDC = "ETH/USDC"
    ETH_USDT = "ETH/USDT"
    ETH_BTC = "ETH/BTC"


# First alias of each tuple is the primary alias (used for snapshot queries)
DEFAULT_ALIASES: dict[PairKey, tuple[str, ...]] = {
    PairKey.ETH_USDC: ("BINANCE:ETHUSDC",),
    PairKey.ETH_USDT: ("BINANCE:ETHUSDT",),
    PairKey.ETH_BTC: ("BINANCE:ETHBTC",),
}


class PairRegistry:
    """
    Static lookup from raw feed symbols to canonical pairs.

    Many aliases map to one pair; an alias belongs to exactly one pair.
    """

    def __init__(self, aliases: Mapping[PairKey, Sequence[str]] | None = None):
        aliases = DEFAULT_ALIASES if aliases is None else aliases
        self._aliases: dict[PairKey, tuple[str, ...]] = {}
        self._by_symbol: dict[str, PairKey] = {}

        for pair, symbols in aliases.items():
            if not symbols:
                raise ValueError(f"Pair {pair.value} has no symbol aliases")
            self._aliases[pair] = tuple(symbols)
            for symbol in symbols:
                owner = self._by_symbol.get(symbol)
                if owner is not None and owner != pair:
                    raise ValueError(
                        f"Alias '{symbol}' mapped to both {owner.value} and {pair.value}"
                    )
                self._by_symbol[symbol] = pair

    def resolve(self, symbol: str) -> PairKey | None:
        """Return the pair owning ``symbol`` or None when it is not tracked."""
        return self._by_symbol.get(symbol)

    def pairs(self) -> list[PairKey]:
        return list(self._aliases)

    def aliases(self) -> list[str]:
        """Every tracked alias, in pair order."""
        return [s for symbols in self._aliases.values() for s in symbols]

    def aliases_for(self, pair: PairKey) -> tuple[str, ...]:
        return self._aliases[pair]

    def primary_alias(self, pair: PairKey) -> str:
        return self._aliases[pair][0]

    def parse_pair(self, value: str) -> PairKey | None:
        """Parse a pair from its display value (e.g. "ETH/USDT")."""
        try:
            pair = PairKey(value)
        except ValueError:
            return None
        return pair if pair in self._aliases else None

    def as_list(self) -> list[dict[str, Any]]:
        """Pair listing for the query API."""
        return [
            {"pair": pair.value, "symbol": symbols[0], "aliases": list(symbols)}
            for pair, symbols in self._aliases.items()
        ]
