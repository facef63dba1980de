import logging
import os
import sqlite3
import aiosqlite
from dataclasses import dataclass
from typing import Any

from ..pairs import PairKey
from ..utils.timeframes import HOUR_MS, hour_bucket, now_ms


logger = logging.getLogger(__name__)


CREATE_SQL = """
CREATE TABLE IF NOT EXISTS hourly_averages (
  pair TEXT NOT NULL,
  hour_start INTEGER NOT NULL,
  sum REAL NOT NULL DEFAULT 0,
  count INTEGER NOT NULL DEFAULT 0,
  PRIMARY KEY(pair, hour_start)
);
"""

UPSERT_SQL = """
INSERT INTO hourly_averages (pair, hour_start, sum, count)
VALUES (?, ?, ?, 1)
ON CONFLICT(pair, hour_start) DO UPDATE SET
  sum=hourly_averages.sum + excluded.sum,
  count=hourly_averages.count + 1
RETURNING sum, count;
"""


class StoreUnavailable(Exception):
  """Raised when the hourly store cannot be reached or the statement fails."""


@dataclass
class HourlyBucket:
  pair: str
  hour_start: int
  sum: float
  count: int

  @property
  def avg(self) -> float:
    return self.sum / max(self.count, 1)

  def to_dict(self) -> dict[str, Any]:
    return {
      "pair": self.pair,
      "hourStart": self.hour_start,
      "avg": self.avg,
      "count": self.count,
    }


class HourlyAverageStore:
  def __init__(self, path: str):
    self.path = path

  async def init(self) -> bool:
    """Create the schema. Logs and returns False when the database is unusable."""
    try:
      directory = os.path.dirname(self.path)
      if directory:
        os.makedirs(directory, exist_ok=True)
      async with aiosqlite.connect(self.path) as db:
        await db.execute(CREATE_SQL)
        await db.commit()
    except (sqlite3.Error, OSError) as e:
      logger.error(f"Hourly store initialization failed ({self.path}): {e}")
      return False
    return True

  async def upsert(self, pair: PairKey, ts_ms: int, price: float) -> float:
    """
    Add one observation to the (pair, hour) bucket and return the new average.

    The insert-or-increment runs as a single statement, so concurrent writers
    never lose updates.
    """
    hour_start = hour_bucket(ts_ms)
    try:
      async with aiosqlite.connect(self.path) as db:
        cur = await db.execute(UPSERT_SQL, (pair.value, hour_start, float(price)))
        row = await cur.fetchone()
        await cur.close()
        await db.commit()
    except (sqlite3.Error, OSError) as e:
      raise StoreUnavailable(f"upsert {pair.value}@{hour_start} failed: {e}") from e

    if row is None:
      raise StoreUnavailable(f"upsert {pair.value}@{hour_start} returned no row")
    total, count = float(row[0]), int(row[1])
    return total / max(count, 1)

  async def history(self, pair: PairKey, since_hour_start: int) -> list[HourlyBucket]:
    """Buckets for ``pair`` from ``since_hour_start`` on, oldest first."""
    try:
      async with aiosqlite.connect(self.path) as db:
        db.row_factory = aiosqlite.Row
        cur = await db.execute(
          """
          SELECT pair, hour_start, sum, count
          FROM hourly_averages
          WHERE pair=? AND hour_start>=?
          ORDER BY hour_start ASC;
          """,
          (pair.value, int(since_hour_start)),
        )
        rows = await cur.fetchall()
    except (sqlite3.Error, OSError) as e:
      raise StoreUnavailable(f"history {pair.value} failed: {e}") from e
    return [
      HourlyBucket(
        pair=r["pair"],
        hour_start=int(r["hour_start"]),
        sum=float(r["sum"]),
        count=int(r["count"]),
      )
      for r in rows
    ]

  async def hourly_history(
    self,
    pair: PairKey,
    hours: int,
    now: int | None = None,
  ) -> list[HourlyBucket]:
    """
    Buckets covering the last ``hours`` hours.

    Args:
        pair: Pair to query
        hours: Look-back window in hours
        now: Reference time in epoch ms (defaults to the wall clock)
    """
    ref = now_ms() if now is None else now
    return await self.history(pair, hour_bucket(ref - hours * HOUR_MS))

  async def health(self) -> bool:
    try:
      async with aiosqlite.connect(self.path) as db:
        cur = await db.execute("SELECT 1")
        await cur.fetchone()
    except (sqlite3.Error, OSError) as e:
      logger.error(f"Hourly store health check failed: {e}")
      return False
    return True
