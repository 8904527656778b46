import asyncio
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

import httpx
import pytest

from cryptopulse.config import reset_settings
from cryptopulse.persistence.database import Database, close_databases
from cryptopulse.services.ingestion.providers import MarketDataProvider, PricePoint
from cryptopulse.services.ingestion.repositories import PriceRepository

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("CRYPTOPULSE__PATHS__DB_PATH", str(tmp_path / "cryptopulse.db"))
    monkeypatch.delenv("COINGECKO_API_KEY", raising=False)
    reset_settings()
    yield
    reset_settings()
    close_databases()


@pytest.fixture
def database(tmp_path):
    db = Database(tmp_path / "prices.db")
    yield db
    db.close()


@pytest.fixture
def repository(database):
    return PriceRepository(database)


def make_series(asset_id: str, start: datetime, prices: Sequence, step=timedelta(hours=1)) -> List[PricePoint]:
    return [
        PricePoint(asset_id, start + step * index, Decimal(str(price)))
        for index, price in enumerate(prices)
    ]


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler):
        self.requests: List[httpx.Request] = []

        async def recording(request: httpx.Request):
            self.requests.append(request)
            result = handler(request)
            if hasattr(result, "__await__"):
                result = await result
            return result

        super().__init__(recording)


def json_response(payload, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, content=json.dumps(payload).encode(), headers={"content-type": "application/json"})


class FakeProvider(MarketDataProvider):
    """In-memory provider for service tests."""

    def __init__(
        self,
        history: Optional[Dict[str, List[PricePoint]]] = None,
        spot: Optional[Dict[str, object]] = None,
        delay: float = 0.0,
    ):
        self.history = history or {}
        self.spot = spot or {}
        self.delay = delay
        self.range_calls: List[str] = []
        self.spot_calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch_range(self, asset_id, quote_currency, start, end):
        self.range_calls.append(asset_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            value = self.history.get(asset_id, [])
            if isinstance(value, Exception):
                raise value
            return list(value)
        finally:
            self.in_flight -= 1

    async def fetch_spot(self, asset_id, quote_currency):
        self.spot_calls.append(asset_id)
        value = self.spot.get(asset_id)
        if isinstance(value, Exception):
            raise value
        return value


def make_context(database, provider, assets=("bitcoin", "ethereum"), target_rows=100):
    from cryptopulse.config import load_settings
    from cryptopulse.orchestration.context import build_context

    settings = load_settings().replace(
        ingestion={"assets": list(assets), "extra_assets": [], "target_rows": target_rows},
        live={"interval_seconds": 60},
    )
    return build_context(settings, db=database, provider=provider)
