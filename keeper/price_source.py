"""
Pool snapshots with a time-boxed cache and a live -> cached -> estimated fallback
"""
import asyncio
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

import structlog

from .error_handling import OracleUnavailableError, error_collector
from .models import PoolSnapshot, SnapshotSource

logger = structlog.get_logger()

PairKey = Tuple[str, str]

# Synthetic depth for estimated snapshots
ESTIMATED_RESERVE_A = 750_000.0
ESTIMATED_VOLUME_24H = 50_000.0


class UsdPriceTable:
    """Symbol -> USD estimate, used when live quotes are unavailable"""

    def __init__(self, prices: Dict[str, float], default_a: float = 0.1, default_b: float = 1.0):
        self.prices = dict(prices)
        self.default_a = default_a
        self.default_b = default_b

    def get(self, symbol: str) -> Optional[float]:
        price = self.prices.get(symbol)
        return price if price and price > 0 else None

    def estimate_ratio(self, asset_a: str, asset_b: str) -> float:
        """How much asset B one unit of asset A buys"""
        usd_a = self.get(asset_a) or self.default_a
        usd_b = self.get(asset_b) or self.default_b
        return usd_a / usd_b


class PriceSourceClient:
    def __init__(
        self,
        oracle,
        price_table: UsdPriceTable,
        cache_ttl_seconds: float = 300.0,
        request_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.oracle = oracle
        self.price_table = price_table
        self.cache_ttl = cache_ttl_seconds
        self.request_timeout = request_timeout
        self._clock = clock
        self._cache: Dict[PairKey, Tuple[PoolSnapshot, float]] = {}
        self._in_flight: Dict[PairKey, asyncio.Task] = {}

    async def get_snapshot(self, asset_a: str, asset_b: str) -> PoolSnapshot:
        key = (asset_a, asset_b)
        try:
            return await self._refresh(key)
        except Exception as e:
            logger.warning("Live price unavailable", pair=f"{asset_a}/{asset_b}", error=str(e))
            if not isinstance(e, (OracleUnavailableError, asyncio.TimeoutError)):
                error_collector.record_error(e, {"pair": f"{asset_a}/{asset_b}"})

        cached = self._fresh_cached(key)
        if cached is not None:
            return cached

        return self._estimate(asset_a, asset_b)

    async def _refresh(self, key: PairKey) -> PoolSnapshot:
        # One oracle request per pair at a time; concurrent callers share it
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch_live(key))
            self._in_flight[key] = task
            task.add_done_callback(lambda _: self._in_flight.pop(key, None))
        return await asyncio.shield(task)

    async def _fetch_live(self, key: PairKey) -> PoolSnapshot:
        asset_a, asset_b = key
        data = await asyncio.wait_for(
            self.oracle.get_pair_data(asset_a, asset_b), timeout=self.request_timeout
        )
        if not data:
            raise OracleUnavailableError(f"Empty oracle result for {asset_a}/{asset_b}")

        try:
            snapshot = PoolSnapshot(
                pair=f"{asset_a}/{asset_b}",
                price=data["price"],
                reserve_a=data.get("reserve_a") or 0.0,
                reserve_b=data.get("reserve_b") or 0.0,
                tvl=data.get("tvl") or 0.0,
                volume_24h=data.get("volume_24h") or 0.0,
                timestamp=_parse_timestamp(data.get("timestamp")),
                source=SnapshotSource.LIVE,
            )
        except (KeyError, ValueError) as e:
            raise OracleUnavailableError(f"Unusable oracle result for {asset_a}/{asset_b}: {e}") from e

        self._cache[key] = (snapshot, self._clock())
        logger.debug("Live snapshot cached", pair=snapshot.pair, price=snapshot.price)
        return snapshot

    def _fresh_cached(self, key: PairKey) -> Optional[PoolSnapshot]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        snapshot, fetched_at = entry
        age = self._clock() - fetched_at
        if age > self.cache_ttl:
            logger.info("Cached snapshot is stale", pair=snapshot.pair, age_seconds=round(age, 1))
            return None
        logger.info("Serving cached snapshot", pair=snapshot.pair, age_seconds=round(age, 1))
        return snapshot.model_copy(update={"source": SnapshotSource.CACHED, "age_seconds": age})

    def _estimate(self, asset_a: str, asset_b: str) -> PoolSnapshot:
        price = self.price_table.estimate_ratio(asset_a, asset_b)
        usd_a = self.price_table.get(asset_a) or self.price_table.default_a
        logger.warning("Using estimated snapshot", pair=f"{asset_a}/{asset_b}", price=price)
        # Estimates are not cached so the next cycle goes back to the oracle
        return PoolSnapshot(
            pair=f"{asset_a}/{asset_b}",
            price=price,
            reserve_a=ESTIMATED_RESERVE_A,
            reserve_b=ESTIMATED_RESERVE_A * price,
            tvl=2 * ESTIMATED_RESERVE_A * usd_a,
            volume_24h=ESTIMATED_VOLUME_24H,
            timestamp=datetime.utcnow(),
            source=SnapshotSource.ESTIMATED,
        )

    def invalidate(self, asset_a: Optional[str] = None, asset_b: Optional[str] = None):
        if asset_a is None:
            self._cache.clear()
        else:
            self._cache.pop((asset_a, asset_b), None)

    def cache_info(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "ttl_seconds": self.cache_ttl,
            "entries": {
                snapshot.pair: round(now - fetched_at, 1)
                for snapshot, fetched_at in self._cache.values()
            },
            "in_flight": len(self._in_flight),
        }


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        # Oracle timestamps are in ms
        seconds = value / 1000 if value > 1e11 else value
        return datetime.utcfromtimestamp(seconds)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).replace(tzinfo=None)
        except ValueError:
            pass
    return datetime.utcnow()
