from __future__ import annotations

import time


HOUR_MS = 3_600_000


def hour_bucket(ts_ms: int) -> int:
    """Start of the clock hour containing ``ts_ms`` (epoch milliseconds)."""
    return (int(ts_ms) // HOUR_MS) * HOUR_MS


def now_ms() -> int:
    return int(time.time() * 1000)
