from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .api import prices
from .config import get_settings
from .pairs import PairRegistry
from .storage.sqlite import HourlyAverageStore
from .streaming.broadcast import BroadcastHub, WebSocketSink
from .streaming.runner import StreamingRunner


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

registry = PairRegistry()
store = HourlyAverageStore(settings.sqlite_path)
hub = BroadcastHub(send_timeout=settings.broadcast_send_timeout_seconds)
runner: StreamingRunner | None = None

prices.set_store(store, registry)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Lifespan context manager for startup/shutdown."""
    global runner

    # Startup: the service runs even when the database is down; /api/health reports it
    if not await store.init():
        logger.error("Hourly store unavailable at startup; ticks will be dropped until it recovers.")
    runner = StreamingRunner(settings, store, hub, registry)
    await runner.start()

    yield

    # Shutdown: stop streaming gracefully
    if runner:
        await runner.stop()


app = FastAPI(
    title="Pair Price Feed API",
    version="0.1.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(prices.router)


@app.get("/api/health")
async def health() -> dict[str, Any]:
    db_ok = await store.health()
    body: dict[str, Any] = {"ok": db_ok, "ts": int(time.time())}
    if runner:
        body.update(runner.status())
    return body


@app.websocket("/ws")
async def ws_prices(websocket: WebSocket) -> None:
    """Live price stream: {"type": "price", "data": {...}} per tick."""
    await websocket.accept()
    sink = WebSocketSink(websocket)
    hub.add(sink)
    try:
        # Inbound frames (text or binary) are not part of the protocol; reading detects disconnects
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    except WebSocketDisconnect:
        pass
    finally:
        hub.remove(sink)


def run() -> None:
    import uvicorn

    uvicorn.run("pricefeed.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
