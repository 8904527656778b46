"""Fixed-interval spot price polling."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from cryptopulse.services.analysis.movers import MoverAnalysisService, MoverRow
from .providers import MarketDataProvider, PricePoint
from .repositories import PriceRepository


@dataclass
class TickReport:
    started_at: datetime
    updated: Dict[str, Any] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    @property
    def had_progress(self) -> bool:
        return bool(self.updated)

    @property
    def degraded(self) -> bool:
        return not self.updated


@dataclass
class LiveViews:
    """Derived views handed to the presentation layer after each tick."""

    series: Dict[str, List[PricePoint]]
    movers: List[MoverRow]
    row_count: int


class LivePriceService:
    """Poll spot prices for a few assets on a fixed interval and append them.

    ``start`` launches the loop as a task and ``stop`` ends it.  Both are
    no-ops when the service is already in the requested state.  A failure for
    one asset is recorded on the tick report and never ends the loop.
    """

    def __init__(
        self,
        provider: MarketDataProvider,
        repository: PriceRepository,
        asset_ids: Sequence[str],
        *,
        quote_currency: str = "eur",
        interval_seconds: float = 30.0,
        assets_per_tick: int = 5,
        analysis: Optional[MoverAnalysisService] = None,
        window: timedelta = timedelta(hours=24),
        series_limit: int = 500,
        on_refresh: Optional[Callable[[LiveViews], Any]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.provider = provider
        self.repository = repository
        self.asset_ids = list(asset_ids)
        self.quote_currency = quote_currency
        self.interval_seconds = float(interval_seconds)
        self.assets_per_tick = max(1, int(assets_per_tick))
        self.analysis = analysis or MoverAnalysisService(repository)
        self.window = window
        self.series_limit = series_limit
        self.on_refresh = on_refresh
        self.logger = logger or logging.getLogger(__name__)
        self.status = "Idle."
        self.last_report: Optional[TickReport] = None
        self.tick_count = 0
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start polling; returns ``False`` when already running."""
        if self.running:
            return False
        self._stop_event = asyncio.Event()
        self.status = f"Starting live updates ({self.interval_seconds:g}s)..."
        self._task = asyncio.get_running_loop().create_task(self._run(self._stop_event))
        return True

    async def stop(self) -> None:
        if not self.running:
            return
        self.status = "Stopping live updates..."
        assert self._stop_event is not None and self._task is not None
        self._stop_event.set()
        await self._task

    async def _run(self, stop_event: asyncio.Event) -> None:
        self.logger.info("Live polling started for %s", ", ".join(self._tick_assets()))
        try:
            while not stop_event.is_set():
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
                    break
                except asyncio.TimeoutError:
                    pass
                await self.tick(stop_event)
        finally:
            self.status = "Live stopped."
            self.logger.info("Live polling stopped after %d ticks", self.tick_count)

    def _tick_assets(self) -> List[str]:
        return self.asset_ids[: self.assets_per_tick]

    async def tick(self, stop_event: Optional[asyncio.Event] = None) -> TickReport:
        """Poll the tick subset once, append fresh prices and refresh views."""
        report = TickReport(started_at=datetime.now(timezone.utc))
        self.status = "Live: fetching latest..."

        assets = self._tick_assets()
        for index, asset_id in enumerate(assets):
            if stop_event is not None and stop_event.is_set():
                report.skipped.extend(assets[index:])
                break
            try:
                price = await self.provider.fetch_spot(asset_id, self.quote_currency)
                if price is None or price <= 0:
                    continue
                await self.repository.append_one(asset_id, datetime.now(timezone.utc), price)
            except Exception as exc:
                report.failures[asset_id] = str(exc) or exc.__class__.__name__
                self.status = f"Live: error fetching {asset_id}: {exc}"
                self.logger.warning("Live fetch failed for %s: %s", asset_id, exc)
                continue
            report.updated[asset_id] = price
            self.status = (
                f"Live: {asset_id} = {price} {self.quote_currency.upper()} "
                f"@ {datetime.now(timezone.utc):%H:%M:%S}"
            )

        await self._refresh_views()

        self.tick_count += 1
        self.last_report = report
        if report.degraded:
            self.status = "Live: last fetch failed."
            self.logger.warning("Live tick %d made no progress", self.tick_count)
        return report

    async def _refresh_views(self) -> None:
        try:
            series = {}
            for asset_id in self.asset_ids:
                series[asset_id] = await self.repository.latest_series(asset_id, self.series_limit)
            movers = await self.analysis.compute(self.window)
            views = LiveViews(series=series, movers=movers, row_count=await self.repository.count())
            if self.on_refresh is not None:
                outcome = self.on_refresh(views)
                if inspect.isawaitable(outcome):
                    await outcome
        except Exception:
            self.logger.exception("Refreshing live views failed")


__all__ = ["LivePriceService", "LiveViews", "TickReport"]
