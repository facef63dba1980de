"""Finnhub REST candle queries, used to backfill pairs whose live feed went quiet."""

from __future__ import annotations

import asyncio
import logging
import math
import time

import aiohttp

from .base import Snapshot


logger = logging.getLogger(__name__)


class FinnhubCandleClient:
    """Fetches the most recent 1-minute crypto candle for a symbol."""

    def __init__(
        self,
        api_key: str | None,
        base_url: str = "https://finnhub.io/api/v1",
        window_seconds: int = 600,
        session: aiohttp.ClientSession | None = None,
    ):
        """
        Initialize the candle client.

        Args:
            api_key: Finnhub token
            base_url: REST API root
            window_seconds: How far back each query looks
            session: Optional shared session (created lazily otherwise)
        """
        self.api_key = api_key or ""
        self.base_url = base_url.rstrip("/")
        self.window_seconds = max(60, int(window_seconds))
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def latest(self, symbol: str) -> Snapshot | None:
        """
        Fetch the latest close price for ``symbol``.

        Finnhub answers with parallel arrays (``t`` in seconds, ``c`` closes)
        and ``s`` set to "ok" or "no_data".

        Returns:
            Snapshot of the last candle, or None on error / no data
        """
        to_ts = int(time.time())
        params = {
            "symbol": symbol,
            "resolution": "1",
            "from": to_ts - self.window_seconds,
            "to": to_ts,
            "token": self.api_key,
        }

        try:
            session = self._get_session()
            async with session.get(f"{self.base_url}/crypto/candle", params=params) as response:
                if response.status != 200:
                    text = await response.text()
                    logger.warning(f"Finnhub candle error {response.status} for {symbol}: {text[:200]}")
                    return None
                data = await response.json()
        except aiohttp.ClientError as e:
            logger.warning(f"Network error fetching candle for {symbol}: {e}")
            return None
        except asyncio.TimeoutError:
            logger.warning(f"Timed out fetching candle for {symbol}")
            return None
        except ValueError as e:
            logger.warning(f"Invalid candle payload for {symbol}: {e}")
            return None

        return parse_candles(symbol, data)


def parse_candles(symbol: str, data: object) -> Snapshot | None:
    """Extract the most recent (timestamp, close) pair from a candle response."""
    if not isinstance(data, dict):
        logger.warning(f"Unexpected candle payload for {symbol}: {data!r}")
        return None
    if data.get("s") != "ok":
        logger.info(f"No candle data for {symbol} (status={data.get('s')})")
        return None
    try:
        closes = data["c"]
        times = data["t"]
        price = float(closes[-1])
        ts = float(times[-1]) * 1000
    except (KeyError, IndexError, TypeError, ValueError) as e:
        logger.warning(f"Error parsing candle data for {symbol}: {e}")
        return None
    if not math.isfinite(price) or not math.isfinite(ts):
        logger.warning(f"Non-finite candle values for {symbol}: price={price} ts={ts}")
        return None
    return Snapshot(symbol=symbol, price=price, ts=int(ts))
