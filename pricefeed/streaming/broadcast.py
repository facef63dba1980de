"""Best-effort fan-out of normalized ticks to connected subscribers."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Protocol

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from ..providers.base import NormalizedTick


logger = logging.getLogger(__name__)


class Sink(Protocol):
    """One outbound subscriber channel."""

    @property
    def ready(self) -> bool:
        """True when the channel is open and can accept a send."""
        ...

    async def send_text(self, data: str) -> None:
        ...


class WebSocketSink:
    """Adapts a FastAPI WebSocket to the Sink protocol."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    @property
    def ready(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, data: str) -> None:
        await self.websocket.send_text(data)


class BroadcastHub:
    """
    Holds the set of connected sinks and fans each tick out to all of them.

    Sinks are added and removed by the transport layer; the hub only attempts
    sends. A failing sink is logged and never affects the others; a sink that
    does not accept a send within ``send_timeout`` seconds counts as failed.
    """

    def __init__(self, send_timeout: float = 2.0):
        self.send_timeout = send_timeout
        self._sinks: set[Sink] = set()

    def add(self, sink: Sink) -> None:
        self._sinks.add(sink)
        logger.info(f"Subscriber connected (total={len(self._sinks)})")

    def remove(self, sink: Sink) -> None:
        if sink in self._sinks:
            self._sinks.discard(sink)
            logger.info(f"Subscriber disconnected (remaining={len(self._sinks)})")

    def __len__(self) -> int:
        return len(self._sinks)

    @staticmethod
    def encode(tick: NormalizedTick) -> str:
        return json.dumps({"type": "price", "data": tick.to_dict()})

    async def broadcast(self, tick: NormalizedTick) -> int:
        """
        Send ``tick`` to every ready sink.

        Returns:
            Number of sinks the message was delivered to
        """
        message = self.encode(tick)
        targets = [s for s in self._sinks if s.ready]
        if not targets:
            return 0

        results = await asyncio.gather(
            *(asyncio.wait_for(sink.send_text(message), self.send_timeout) for sink in targets),
            return_exceptions=True,
        )

        delivered = 0
        for sink, result in zip(targets, results):
            if isinstance(result, asyncio.TimeoutError):
                logger.warning(
                    f"Failed to send {tick.pair.value} tick to subscriber: "
                    f"timed out after {self.send_timeout}s"
                )
            elif isinstance(result, BaseException):
                logger.warning(f"Failed to send {tick.pair.value} tick to subscriber: {result!r}")
            else:
                delivered += 1
        return delivered
