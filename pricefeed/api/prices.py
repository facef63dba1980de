"""
Query API endpoints for pairs and hourly averages.

Thin wrappers over the hourly store; the live stream is served on /ws.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Any, Dict, List
import logging

from ..pairs import PairRegistry
from ..storage.sqlite import HourlyAverageStore, StoreUnavailable

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["prices"])

MAX_HOURS = 720

# Instances (set by main.py)
_store: HourlyAverageStore | None = None
_registry: PairRegistry = PairRegistry()


def set_store(store: HourlyAverageStore, registry: PairRegistry | None = None):
    """Set the store instance (and optionally the pair registry)."""
    global _store, _registry
    _store = store
    if registry is not None:
        _registry = registry


def get_store() -> HourlyAverageStore:
    """Get the store instance."""
    if _store is None:
        raise RuntimeError("Store not initialized")
    return _store


def get_registry() -> PairRegistry:
    return _registry


def clamp_hours(hours: str | None) -> int:
    """Parse ``hours``; non-numeric falls back to 24, then clamp to [1, 720]."""
    try:
        value = int(float(hours)) if hours is not None else 24
    except (ValueError, OverflowError):
        value = 24
    return max(1, min(MAX_HOURS, value))


@router.get("/pairs")
async def get_pairs(registry: PairRegistry = Depends(get_registry)) -> List[Dict[str, Any]]:
    return registry.as_list()


@router.get("/averages")
async def get_averages(
    pair: str = Query(..., description="Pair such as ETH/USDT"),
    hours: str | None = Query(None, description="Look-back window in hours (1-720, default 24)"),
    store: HourlyAverageStore = Depends(get_store),
    registry: PairRegistry = Depends(get_registry),
) -> List[Dict[str, Any]]:
    """
    Hourly averages for ``pair`` over the last ``hours`` hours, oldest first.

    Example:
        [{"pair": "ETH/USDT", "hourStart": 1700000000000, "avg": 2001.5, "count": 42}]
    """
    key = registry.parse_pair(pair)
    if key is None:
        raise HTTPException(status_code=400, detail=f"Unknown pair '{pair}'")

    try:
        buckets = await store.hourly_history(key, clamp_hours(hours))
    except StoreUnavailable as e:
        logger.error(f"Error fetching averages for {pair}: {e}")
        raise HTTPException(status_code=503, detail="Hourly store unavailable")
    return [b.to_dict() for b in buckets]
