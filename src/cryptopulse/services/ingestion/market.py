"""Historical price seeding built on the CoinGecko range fetcher."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .providers import MarketDataProvider, PricePoint
from .repositories import PriceRepository

ProgressCallback = Callable[[int], Any]


@dataclass
class SeedResult:
    assets: List[str]
    rows_written: int = 0
    failures: Dict[str, str] = field(default_factory=dict)
    stopped_early: bool = False


class IngestionCancelled(asyncio.CancelledError):
    """Seeding was cancelled; ``result`` holds what was committed before."""

    def __init__(self, result: SeedResult):
        super().__init__(f"Seeding cancelled after {result.rows_written} rows")
        self.result = result


async def _notify(callback: Optional[Callable[[Any], Any]], value: Any) -> None:
    if callback is None:
        return
    outcome = callback(value)
    if inspect.isawaitable(outcome):
        await outcome


class MarketIngestionService:
    """Fetches price history for many assets and writes it to ``price_points``.

    Fetches run concurrently (bounded by ``max_concurrency``); inserts run one
    asset at a time.  Per-asset fetch failures are logged and reported in the
    result instead of aborting the batch.
    """

    def __init__(
        self,
        provider: MarketDataProvider,
        repository: PriceRepository,
        *,
        history_days: int = 365,
        max_concurrency: int = 4,
        logger: Optional[logging.Logger] = None,
    ):
        self.provider = provider
        self.repository = repository
        self.history_days = int(history_days)
        self.max_concurrency = max(1, int(max_concurrency))
        self.logger = logger or logging.getLogger(__name__)
        self.status = "Ready."

    async def seed_range(
        self,
        asset_id: str,
        quote_currency: str,
        start: datetime,
        end: datetime,
    ) -> int:
        """Seed one asset over an explicit window; returns rows inserted."""
        points = await self.provider.fetch_range(asset_id, quote_currency, start, end)
        if not points:
            return 0
        inserted = await self.repository.insert_batch(points)
        self.logger.info(
            "Inserted %d rows for %s (%s -> %s)", inserted, asset_id, f"{start:%Y-%m-%d}", f"{end:%Y-%m-%d}"
        )
        return inserted

    async def seed_many(
        self,
        asset_ids: Sequence[str],
        quote_currency: str,
        target_rows: int,
        *,
        clear_first: bool = True,
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SeedResult:
        assets = list(asset_ids)
        result = SeedResult(assets=assets)

        if clear_first:
            self.logger.info("Clearing rows before seeding")
            await self.repository.clear()

        if target_rows <= 0 or not assets:
            result.stopped_early = bool(assets)
            self.status = "Nothing to seed."
            return result

        try:
            await self._seed(assets, quote_currency, target_rows, progress, cancel_event, result)
        except IngestionCancelled:
            raise
        except asyncio.CancelledError as exc:
            self.status = "Seeding cancelled."
            self.logger.info("Seeding cancelled after %d rows", result.rows_written)
            raise IngestionCancelled(result) from exc

        if result.failures:
            self.status = (
                f"Seeded {result.rows_written:,} rows; {len(result.failures)} assets failed: "
                + ", ".join(sorted(result.failures))
            )
        else:
            self.status = f"Seeded {result.rows_written:,} rows."
        self.logger.info(
            "Finished seeding %d assets. Inserted %d rows (%d failures).",
            len(assets),
            result.rows_written,
            len(result.failures),
        )
        return result

    async def _seed(
        self,
        assets: List[str],
        quote_currency: str,
        target_rows: int,
        progress: Optional[ProgressCallback],
        cancel_event: Optional[asyncio.Event],
        result: SeedResult,
    ) -> None:
        self.status = f"Fetching {len(assets)} assets from CoinGecko..."
        end = datetime.now(timezone.utc)
        start = end - timedelta(days=self.history_days)
        fetched = await self._fetch_all(assets, quote_currency, start, end, cancel_event, result)

        for asset_id, points in fetched:
            if cancel_event is not None and cancel_event.is_set():
                self._cancelled(result)
            if not points:
                continue
            result.rows_written += await self.repository.insert_batch(points)
            self.status = f"Seeding {asset_id}: {result.rows_written:,} rows so far..."
            await _notify(progress, result.rows_written)
            if result.rows_written >= target_rows:
                result.stopped_early = True
                break

    async def _fetch_all(
        self,
        assets: List[str],
        quote_currency: str,
        start: datetime,
        end: datetime,
        cancel_event: Optional[asyncio.Event],
        result: SeedResult,
    ) -> List[Tuple[str, List[PricePoint]]]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def fetch(asset_id: str) -> List[PricePoint]:
            async with semaphore:
                return await self.provider.fetch_range(asset_id, quote_currency, start, end)

        gathered = asyncio.gather(*(fetch(asset_id) for asset_id in assets), return_exceptions=True)
        if cancel_event is not None:
            waiter = asyncio.ensure_future(cancel_event.wait())
            try:
                await asyncio.wait({gathered, waiter}, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                gathered.cancel()
                raise
            finally:
                waiter.cancel()
            if not gathered.done():
                gathered.cancel()
                try:
                    await gathered
                except asyncio.CancelledError:
                    pass
                self._cancelled(result)
        outcomes = await gathered

        fetched: List[Tuple[str, List[PricePoint]]] = []
        for asset_id, outcome in zip(assets, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                result.failures[asset_id] = str(outcome) or outcome.__class__.__name__
                self.logger.warning("Fetch failed for %s: %s", asset_id, outcome)
                continue
            fetched.append((asset_id, outcome))
        return fetched

    def _cancelled(self, result: SeedResult) -> None:
        self.status = "Seeding cancelled."
        self.logger.info("Seeding cancelled after %d rows", result.rows_written)
        raise IngestionCancelled(result)


__all__ = ["IngestionCancelled", "MarketIngestionService", "SeedResult"]
