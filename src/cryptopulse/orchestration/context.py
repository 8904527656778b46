"""Explicit wiring of CryptoPulse services from settings."""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

import httpx

from cryptopulse.config import Settings, load_settings
from cryptopulse.config.logging import get_logger
from cryptopulse.persistence.database import Database, get_database
from cryptopulse.services.analysis import MoverAnalysisService
from cryptopulse.services.ingestion import (
    IngestionCancelled,
    LivePriceService,
    LiveViews,
    MarketIngestionService,
    PriceRepository,
    SeedResult,
)
from cryptopulse.services.ingestion.providers import CoinGeckoMarketProvider, MarketDataProvider
from cryptopulse.services.ingestion.providers.market import PRO_BASE_URL, PUBLIC_BASE_URL


class AlreadyRunning(RuntimeError):
    pass


class SingleFlight:
    """Allow one run of an async operation at a time.

    ``can_run`` combines the in-flight flag with an optional capability
    check supplied by the owner.
    """

    def __init__(self, name: str, capability: Optional[Callable[[], bool]] = None):
        self.name = name
        self._capability = capability
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    def can_run(self) -> bool:
        return not self._busy and (self._capability is None or self._capability())

    async def run(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        if self._busy:
            raise AlreadyRunning(f"{self.name} is already running")
        if not self.can_run():
            raise AlreadyRunning(f"{self.name} is not available")
        self._busy = True
        try:
            return await func(*args, **kwargs)
        finally:
            self._busy = False


@dataclass
class AppContext:
    settings: Settings
    repository: PriceRepository
    provider: MarketDataProvider
    ingestion: MarketIngestionService
    live: LivePriceService
    analysis: MoverAnalysisService
    assets: List[str]
    quote_currency: str
    target_rows: int
    window: timedelta
    series_limit: int
    latest_views: Optional[LiveViews] = None
    last_seed: Optional[SeedResult] = None
    seed_progress: float = 0.0
    seed_guard: SingleFlight = field(default_factory=lambda: SingleFlight("seed"))
    _seed_cancel: Optional[asyncio.Event] = None
    _seed_task: Optional[asyncio.Task] = None

    async def initialize(self) -> None:
        await self.repository.initialize()

    async def seed(
        self,
        *,
        assets: Optional[List[str]] = None,
        target_rows: Optional[int] = None,
        clear_first: bool = True,
    ) -> SeedResult:
        target = self.target_rows if target_rows is None else int(target_rows)

        def progress(total: int) -> None:
            self.seed_progress = min(1.0, total / target) if target > 0 else 1.0

        async def run() -> SeedResult:
            self._seed_cancel = asyncio.Event()
            self.seed_progress = 0.0
            await self.initialize()
            try:
                result = await self.ingestion.seed_many(
                    assets or self.assets,
                    self.quote_currency,
                    target,
                    clear_first=clear_first,
                    progress=progress,
                    cancel_event=self._seed_cancel,
                )
            except IngestionCancelled as exc:
                self.last_seed = exc.result
                raise
            self.seed_progress = 1.0
            self.last_seed = result
            return result

        return await self.seed_guard.run(run)

    def start_seed(self, **kwargs: Any) -> asyncio.Task:
        """Run :meth:`seed` in the background, refusing overlapping runs."""
        if not self.seed_guard.can_run() or (self._seed_task is not None and not self._seed_task.done()):
            raise AlreadyRunning("seed is already running")
        self._seed_task = asyncio.get_running_loop().create_task(self.seed(**kwargs))
        self._seed_task.add_done_callback(self._seed_finished)
        return self._seed_task

    def _seed_finished(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.ingestion.status = f"Seeding error: {exc}"
            get_logger(__name__).error("Background seed failed: %s", exc)

    def cancel_seed(self) -> bool:
        if self._seed_cancel is None or not self.seed_guard.busy:
            return False
        self._seed_cancel.set()
        return True

    def _store_views(self, views: LiveViews) -> None:
        self.latest_views = views

    async def aclose(self) -> None:
        await self.live.stop()
        if self._seed_task is not None and not self._seed_task.done():
            self.cancel_seed()
            await asyncio.gather(self._seed_task, return_exceptions=True)
        await self.provider.aclose()


def build_context(
    settings: Optional[Settings] = None,
    *,
    db: Optional[Database] = None,
    db_path: Optional[Path] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    provider: Optional[MarketDataProvider] = None,
) -> AppContext:
    """Construct every service once, passing collaborators explicitly."""
    settings = settings or load_settings()
    logger = get_logger()

    database = db or get_database(db_path or Path(settings.get("paths", "db_path", default="data/cryptopulse.db")))
    repository = PriceRepository(database, logger=logger.getChild("store"))

    if provider is None:
        api_key = str(settings.get("coingecko", "api_key") or os.environ.get("COINGECKO_API_KEY") or "") or None
        provider = CoinGeckoMarketProvider(
            api_key=api_key,
            public_base_url=settings.get("coingecko", "public_base_url", default=PUBLIC_BASE_URL),
            pro_base_url=settings.get("coingecko", "pro_base_url", default=PRO_BASE_URL),
            timeout=settings.get_float("coingecko", "timeout_seconds", default=30),
            max_retries=settings.get_int("coingecko", "max_retries", default=3),
            backoff_base=settings.get_float("coingecko", "retry_backoff_base", default=2.0),
            transport=transport,
            logger=logger.getChild("coingecko"),
        )
        logger.info("Using CoinGecko %s API", "PRO" if api_key else "FREE")

    assets = settings.get_list("ingestion", "assets") + settings.get_list("ingestion", "extra_assets")
    quote_currency = str(settings.get("ingestion", "quote_currency", default="eur"))
    window = timedelta(hours=settings.get_float("analysis", "window_hours", default=24))
    top_n = settings.get_int("analysis", "top_n", default=20)
    series_limit = settings.get_int("analysis", "series_limit", default=500)

    analysis = MoverAnalysisService(repository, default_limit=top_n)
    ingestion = MarketIngestionService(
        provider,
        repository,
        history_days=settings.get_int("ingestion", "history_days", default=365),
        max_concurrency=settings.get_int("ingestion", "max_concurrency", default=4),
        logger=logger.getChild("seed"),
    )
    live = LivePriceService(
        provider,
        repository,
        assets,
        quote_currency=quote_currency,
        interval_seconds=settings.get_float("live", "interval_seconds", default=30),
        assets_per_tick=settings.get_int("live", "assets_per_tick", default=5),
        analysis=analysis,
        window=window,
        series_limit=series_limit,
        logger=logger.getChild("live"),
    )
    context = AppContext(
        settings=settings,
        repository=repository,
        provider=provider,
        ingestion=ingestion,
        live=live,
        analysis=analysis,
        assets=assets,
        quote_currency=quote_currency,
        target_rows=settings.get_int("ingestion", "target_rows", default=100000),
        window=window,
        series_limit=series_limit,
    )
    live.on_refresh = context._store_views
    context.seed_guard = SingleFlight("seed", capability=lambda: bool(context.assets))
    return context


__all__ = ["AlreadyRunning", "AppContext", "SingleFlight", "build_context"]
