#!/usr/bin/env python3
"""
Quick sanity check that hourly averages are being written.

Usage:
    python verify_aggregates.py [path/to/prices.db]

This script:
1. Checks the database and the hourly_averages table exist
2. Shows bucket counts and observation totals per pair
3. Shows the current hour's average per pair
4. Flags pairs whose latest bucket is not the current hour
"""

import asyncio
import sys
import time
from pathlib import Path

import aiosqlite

HOUR_MS = 3_600_000


async def verify_database(db_path: str = "data/prices.db") -> bool:
    """Verify the database and show recent hourly buckets."""
    if not Path(db_path).exists():
        print(f"❌ Database not found at: {db_path}")
        print("   → Start the API at least once so the schema is created.")
        return False

    print(f"✅ Database exists: {db_path}\n")

    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row

        cursor = await db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='hourly_averages'"
        )
        if not await cursor.fetchone():
            print("❌ 'hourly_averages' table not found.")
            return False

        cursor = await db.execute("""
            SELECT pair, COUNT(*) AS buckets, SUM(count) AS ticks, MAX(hour_start) AS latest
            FROM hourly_averages
            GROUP BY pair
            ORDER BY pair
        """)
        rows = await cursor.fetchall()

        if not rows:
            print("⚠️  No hourly buckets yet.")
            print("   → Check FINNHUB_API_KEY in .env and the API logs.")
            return False

        current_hour = (int(time.time() * 1000) // HOUR_MS) * HOUR_MS
        print(f"{'Pair':<12} {'Buckets':>8} {'Ticks':>10} {'Latest hour (UTC)':<22} {'Avg':>14}")
        print("-" * 72)

        all_live = True
        for row in rows:
            cursor = await db.execute(
                "SELECT sum, count FROM hourly_averages WHERE pair=? AND hour_start=?",
                (row["pair"], row["latest"]),
            )
            latest = await cursor.fetchone()
            avg = latest["sum"] / max(latest["count"], 1)
            hour_str = time.strftime("%Y-%m-%d %H:00", time.gmtime(row["latest"] / 1000))
            print(
                f"{row['pair']:<12} {row['buckets']:>8} {row['ticks']:>10,} "
                f"{hour_str:<22} {avg:>14.6f}"
            )
            if row["latest"] != current_hour:
                all_live = False
        print("-" * 72)
        print()

        if all_live:
            print("✅ Every pair has observations in the current hour.")
        else:
            print("⚠️  Some pairs have no bucket for the current hour. Check the feed logs.")
        return True


async def main():
    """Main entry point."""
    db_path = sys.argv[1] if len(sys.argv) > 1 else "data/prices.db"
    ok = await verify_database(db_path)
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    asyncio.run(main())
