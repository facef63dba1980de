"""Finnhub trade WebSocket connection, modelled as an explicit state machine."""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import websockets
from websockets.exceptions import InvalidHandshake

from ..config import PLACEHOLDER_API_KEY
from .base import RawTrade, TradeHandler


logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Lifecycle states of the feed connection."""
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    TERMINATED = "terminated"


class FeedAuthenticationError(Exception):
    """The provider rejected the configured credential."""
    pass


@dataclass
class Backoff:
    """Exponential reconnect delay: doubles per unplanned close, reset on open."""
    floor_ms: int = 1000
    ceiling_ms: int = 15000
    current_ms: int = field(init=False)

    def __post_init__(self) -> None:
        if self.floor_ms <= 0 or self.ceiling_ms < self.floor_ms:
            raise ValueError(f"Invalid backoff bounds: floor={self.floor_ms} ceiling={self.ceiling_ms}")
        self.current_ms = self.floor_ms

    def reset(self) -> None:
        self.current_ms = self.floor_ms

    def next_delay(self) -> int:
        """Return the delay to wait now and advance to the next one."""
        delay = self.current_ms
        self.current_ms = min(self.current_ms * 2, self.ceiling_ms)
        return delay


def is_fatal_error(exc: BaseException) -> bool:
    """
    Classify a transport error.

    Handshake rejections with HTTP 401/403 mean the credential is wrong and
    retrying cannot help. Everything else is transient. The message is only
    inspected for a handshake error that carries no status code.
    """
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    if status is not None:
        return status in (401, 403)
    if isinstance(exc, InvalidHandshake):
        return re.search(r"\b401\b", str(exc)) is not None
    return False


def parse_trade(item: Any) -> RawTrade | None:
    """Validate one trade item ``{s, p, t}``; None when malformed."""
    if not isinstance(item, dict):
        return None
    symbol = item.get("s")
    price = item.get("p")
    ts = item.get("t")
    if not isinstance(symbol, str) or not symbol:
        return None
    if isinstance(price, bool) or not isinstance(price, (int, float)) or not math.isfinite(price):
        return None
    if isinstance(ts, bool) or not isinstance(ts, (int, float)) or not math.isfinite(ts):
        return None
    return RawTrade(symbol=symbol, price=float(price), ts=int(ts))


def _default_connect(url: str):
    return websockets.connect(
        url,
        open_timeout=10,
        close_timeout=10,
        ping_interval=20,
        ping_timeout=20,
    )


class FinnhubFeedConnection:
    """
    One logical connection to the Finnhub trade feed.

    The transport task drives discrete events (open, message, close, error)
    into the handlers below; all state changes happen there. A single
    reconnect timer may be pending at a time, and shutdown or an
    authentication failure suppresses any further reconnects.
    """

    def __init__(
        self,
        api_key: str | None,
        symbols: list[str],
        on_trade: TradeHandler,
        url: str = "wss://ws.finnhub.io",
        backoff: Backoff | None = None,
        connect: Callable[[str], Any] | None = None,
    ):
        """
        Initialize the connection.

        Args:
            api_key: Finnhub token; missing or placeholder keys never connect
            symbols: Full alias set to subscribe to
            on_trade: Coroutine called for every valid trade item
            url: WebSocket endpoint (token is appended as a query parameter)
            backoff: Reconnect delay policy (defaults to 1s..15s)
            connect: Factory returning an async context manager for the socket
        """
        self.api_key = (api_key or "").strip()
        self.symbols = list(symbols)
        self.on_trade = on_trade
        self.url = url
        self.backoff = backoff or Backoff()
        self._connect_factory = connect or _default_connect

        self.state = ConnectionState.IDLE
        self.config_error: str | None = None
        self.last_error: str | None = None
        self.fatal_error: FeedAuthenticationError | None = None
        self.last_delay_ms: int | None = None
        self.connect_attempts = 0

        self._ws: Any = None
        self._transport_task: asyncio.Task | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._shutting_down = False

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def has_valid_credential(self) -> bool:
        return bool(self.api_key) and self.api_key != PLACEHOLDER_API_KEY

    def start(self) -> bool:
        """
        Leave IDLE and open the first connection.

        Returns:
            False when no usable credential is configured (stays IDLE for good)
        """
        if self.state != ConnectionState.IDLE:
            return self.state != ConnectionState.TERMINATED
        if not self.has_valid_credential():
            self.config_error = "FINNHUB_API_KEY is not set or is still the placeholder value"
            logger.error(
                "FINNHUB_API_KEY is not set or invalid. Set it in .env or the environment "
                "(get a key at https://finnhub.io). Feed connection will not be attempted."
            )
            return False
        self._connect()
        return True

    def _connect(self) -> None:
        self.state = ConnectionState.CONNECTING
        self.connect_attempts += 1
        logger.info(f"Connecting to Finnhub WebSocket (attempt {self.connect_attempts})")
        self._transport_task = asyncio.create_task(self._run_transport())

    async def _run_transport(self) -> None:
        url = f"{self.url}?token={self.api_key}"
        try:
            async with self._connect_factory(url) as ws:
                self._ws = ws
                await self.handle_open()
                async for raw in ws:
                    await self.handle_message(raw)
        except asyncio.CancelledError:
            self._ws = None
            raise
        except Exception as e:
            self._ws = None
            self.handle_error(e)
            return
        self._ws = None
        self.handle_close("server closed the connection")

    async def handle_open(self) -> None:
        """Transport connected: reset backoff and subscribe to every alias."""
        if self._shutting_down:
            return
        self.state = ConnectionState.OPEN
        self.backoff.reset()
        self.last_error = None
        logger.info(f"Connected to Finnhub WebSocket. Subscribing to {len(self.symbols)} symbols.")
        await self._subscribe_all()

    async def _subscribe_all(self) -> None:
        if self._ws is None:
            return
        for symbol in self.symbols:
            await self._ws.send(json.dumps({"type": "subscribe", "symbol": symbol}))

    async def handle_message(self, raw: str | bytes) -> None:
        """Dispatch one inbound message. Never changes connection state."""
        try:
            if isinstance(raw, (bytes, bytearray)):
                raw = raw.decode("utf-8")
            msg = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to parse Finnhub message: {e}")
            return

        if not isinstance(msg, dict):
            logger.debug(f"Ignoring non-object Finnhub message: {msg!r}")
            return

        msg_type = msg.get("type")
        if msg_type == "trade":
            data = msg.get("data")
            if not isinstance(data, list):
                logger.debug("Ignoring trade message without a data array")
                return
            for item in data:
                trade = parse_trade(item)
                if trade is None:
                    logger.debug(f"Skipping malformed trade item: {item!r}")
                    continue
                try:
                    await self.on_trade(trade)
                except Exception as e:
                    logger.error(f"Error processing trade for {trade.symbol}: {e}", exc_info=True)
        elif msg_type == "ping":
            # Re-subscribe in case the server silently dropped subscriptions
            await self._subscribe_all()
        elif msg_type == "error":
            logger.warning(f"Finnhub reported an error: {msg.get('msg')}")

    def handle_close(self, reason: str = "") -> None:
        """Unplanned close: schedule one reconnect after the current backoff delay."""
        if self._shutting_down or self.state == ConnectionState.TERMINATED:
            return
        if self._reconnect_handle is not None:
            return
        self.state = ConnectionState.CLOSING
        delay = self.backoff.next_delay()
        self.last_delay_ms = delay
        logger.warning(f"Finnhub WS closed ({reason or 'no reason'}). Reconnecting in {delay}ms...")
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay / 1000.0, self._on_reconnect_timer)

    def handle_error(self, exc: BaseException) -> None:
        """Fatal errors terminate the connection; anything else is a close."""
        self.last_error = str(exc) or exc.__class__.__name__
        if is_fatal_error(exc):
            self.state = ConnectionState.TERMINATED
            self._cancel_reconnect()
            self.fatal_error = FeedAuthenticationError(self.last_error)
            logger.error(
                f"Finnhub WebSocket authentication failed ({self.fatal_error}). Check FINNHUB_API_KEY; "
                "no further reconnects will be attempted."
            )
            return
        if self._shutting_down:
            return
        logger.error(f"Finnhub WS error: {self.last_error}")
        self.handle_close(self.last_error)

    def _on_reconnect_timer(self) -> None:
        self._reconnect_handle = None
        if self._shutting_down or self.state == ConnectionState.TERMINATED:
            return
        self._connect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    async def shutdown(self) -> None:
        """Stop for good: cancel the pending timer, close the socket, never reconnect."""
        self._shutting_down = True
        self._cancel_reconnect()
        self.state = ConnectionState.TERMINATED

        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing Finnhub socket during shutdown: {e}")

        task = self._transport_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._transport_task = None
        logger.info("Finnhub feed connection shut down.")

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "backoff_ms": self.backoff.current_ms,
            "reconnect_pending": self.reconnect_pending,
            "connect_attempts": self.connect_attempts,
            "last_error": self.last_error,
            "config_error": self.config_error,
            "fatal_error": str(self.fatal_error) if self.fatal_error else None,
        }
