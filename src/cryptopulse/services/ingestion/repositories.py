"""Database repositories for ingestion services."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from functools import partial
from typing import Any, Dict, Iterable, List, Optional, Sequence

import anyio

from cryptopulse.persistence import migrator
from cryptopulse.persistence.database import Database, get_database
from .providers.market import PricePoint, from_epoch_ms, to_epoch_ms


class NotInitializedError(RuntimeError):
    """The store was used before :meth:`PriceRepository.initialize` completed."""


def _row_to_point(row: Sequence[Any]) -> PricePoint:
    return PricePoint(asset_id=row[0], timestamp=from_epoch_ms(int(row[1])), price=Decimal(row[2]))


def _point_record(point: PricePoint):
    return (point.asset_id, to_epoch_ms(point.timestamp), str(point.price))


class PriceRepository:
    """Append-only store of ``price_points`` rows.

    Every method is a coroutine; SQLite work runs on a worker thread and
    writes are serialised by an internal lock so that seeding and live
    polling can share one repository.
    """

    def __init__(self, db: Optional[Database] = None, *, logger: Optional[logging.Logger] = None):
        self.db = db or get_database()
        self.logger = logger or logging.getLogger(__name__)
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError(f"Price store at {self.db.path} used before initialize()")

    async def _run(self, func, *args):
        return await anyio.to_thread.run_sync(partial(func, *args))

    async def initialize(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            await self._run(migrator.upgrade, self.db)
            self._initialized = True
            self.logger.info("Price store initialised at %s", self.db.path)

    async def clear(self) -> None:
        self._require_initialized()
        async with self._write_lock:
            await self._run(self.db.execute, "DELETE FROM price_points")
        self.logger.info("Cleared all price rows")

    async def insert_batch(self, points: Iterable[PricePoint]) -> int:
        self._require_initialized()
        records = [_point_record(point) for point in points]
        if not records:
            return 0
        async with self._write_lock:
            await self._run(
                self.db.executemany,
                "INSERT INTO price_points (asset_id, ts_ms, price) VALUES (?, ?, ?)",
                records,
            )
        return len(records)

    async def append_one(self, asset_id: str, timestamp: datetime, price: Decimal) -> None:
        self._require_initialized()
        record = _point_record(PricePoint(asset_id, timestamp, price))
        async with self._write_lock:
            await self._run(
                self.db.execute,
                "INSERT INTO price_points (asset_id, ts_ms, price) VALUES (?, ?, ?)",
                record,
            )
        self.logger.debug("Appended %s @ %s = %s", asset_id, timestamp, price)

    async def count(self) -> int:
        self._require_initialized()
        row = await self._run(self.db.fetch_one, "SELECT COUNT(*) FROM price_points")
        return int(row[0]) if row else 0

    async def page(self, page_size: int, page_index: int) -> List[PricePoint]:
        """Newest-first page of rows; negative page indexes read the first page."""
        self._require_initialized()
        if page_size <= 0:
            return []
        page_index = max(0, page_index)
        rows = await self._run(
            self.db.fetch_all,
            """
            SELECT asset_id, ts_ms, price FROM price_points
            ORDER BY ts_ms DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            (page_size, page_index * page_size),
        )
        return [_row_to_point(row) for row in rows]

    async def snapshot(
        self, window: timedelta, now: Optional[datetime] = None
    ) -> Dict[str, List[PricePoint]]:
        self._require_initialized()
        cutoff = (now or datetime.now(timezone.utc)) - window
        rows = await self._run(
            self.db.fetch_all,
            "SELECT asset_id, ts_ms, price FROM price_points WHERE ts_ms >= ? ORDER BY ts_ms, id",
            (to_epoch_ms(cutoff),),
        )
        grouped: Dict[str, List[PricePoint]] = {}
        for row in rows:
            point = _row_to_point(row)
            grouped.setdefault(point.asset_id, []).append(point)
        return grouped

    async def latest_series(self, asset_id: str, limit: int = 500) -> List[PricePoint]:
        """Most recent ``limit`` points for one asset, oldest first."""
        self._require_initialized()
        if limit <= 0:
            return []
        rows = await self._run(
            self.db.fetch_all,
            """
            SELECT asset_id, ts_ms, price FROM price_points
            WHERE asset_id = ?
            ORDER BY ts_ms DESC, id DESC
            LIMIT ?
            """,
            (asset_id, limit),
        )
        rows.reverse()
        return [_row_to_point(row) for row in rows]

    async def asset_ids(self) -> List[str]:
        self._require_initialized()
        rows = await self._run(
            self.db.fetch_all, "SELECT DISTINCT asset_id FROM price_points ORDER BY asset_id"
        )
        return [row[0] for row in rows]


__all__ = ["NotInitializedError", "PriceRepository"]
