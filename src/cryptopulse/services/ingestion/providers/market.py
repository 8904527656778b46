"""Market data providers."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

FINE_CHUNK = timedelta(days=1)
MEDIUM_CHUNK = timedelta(days=90)
COARSE_CHUNK = timedelta(days=180)

PUBLIC_BASE_URL = "https://api.coingecko.com/api/v3/"
PRO_BASE_URL = "https://pro-api.coingecko.com/api/v3/"
API_KEY_HEADER = "x-cg-pro-api-key"

_BODY_EXCERPT = 300


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_epoch_ms(ms: int) -> datetime:
    return EPOCH + timedelta(milliseconds=ms)


def to_epoch_ms(value: datetime) -> int:
    return (ensure_utc(value) - EPOCH) // timedelta(milliseconds=1)


@dataclass(frozen=True)
class PricePoint:
    asset_id: str
    timestamp: datetime
    price: Decimal


@dataclass(frozen=True)
class FetchRange:
    """Half-open ``[start, end)`` interval of UTC instants."""

    start: datetime
    end: datetime

    @property
    def span(self) -> timedelta:
        return self.end - self.start

    @property
    def is_empty(self) -> bool:
        return self.end <= self.start

    def __str__(self) -> str:
        return f"{self.start:%Y-%m-%d %H:%M} -> {self.end:%Y-%m-%d %H:%M}"


def chunk_width(remaining: timedelta) -> timedelta:
    """Pick the request width for the remaining span.

    CoinGecko answers ranges up to a day with 5-minute data, up to 90 days
    hourly and anything longer daily.  The 90-day width applies to every span
    up to 180 days, not only spans up to 90 days, so a 120-day span is fetched
    as two hourly requests instead of one daily one.  Longer spans use
    180-day requests.
    """
    if remaining <= FINE_CHUNK:
        return FINE_CHUNK
    if remaining <= COARSE_CHUNK:
        return MEDIUM_CHUNK
    return COARSE_CHUNK


def chunk_ranges(start: datetime, end: datetime) -> List[FetchRange]:
    start, end = ensure_utc(start), ensure_utc(end)
    chunks: List[FetchRange] = []
    cursor = start
    while cursor < end:
        chunk_end = min(cursor + chunk_width(end - cursor), end)
        chunks.append(FetchRange(cursor, chunk_end))
        cursor = chunk_end
    return chunks


class MarketDataError(RuntimeError):
    """Base class for failures talking to the price API."""


class AuthError(MarketDataError):
    """The API rejected our credentials; retrying will not help."""


class FetchError(MarketDataError):
    def __init__(self, message: str, *, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RateLimitError(FetchError):
    """HTTP 429 from the API."""


class MarketDataProvider(ABC):
    """Abstract provider returning price history and spot prices for an asset."""

    @abstractmethod
    async def fetch_range(
        self, asset_id: str, quote_currency: str, start: datetime, end: datetime
    ) -> List[PricePoint]:
        raise NotImplementedError

    @abstractmethod
    async def fetch_spot(self, asset_id: str, quote_currency: str) -> Optional[Decimal]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None

    async def __aenter__(self) -> "MarketDataProvider":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


def _to_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation:
            return None
        return result if result.is_finite() else None
    return None


class CoinGeckoMarketProvider(MarketDataProvider):
    """Fetch CoinGecko chart ranges and spot prices over ``httpx``.

    With an API key the pro endpoint is used and the key travels in the
    ``x-cg-pro-api-key`` header; without one the public, lower rate-limited
    endpoint is used.  HTTP 429 responses are retried with exponential backoff.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        public_base_url: str = PUBLIC_BASE_URL,
        pro_base_url: str = PRO_BASE_URL,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_base: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.logger = logger or logging.getLogger(__name__)
        self.max_retries = max(0, int(max_retries))
        self.backoff_base = float(backoff_base)
        self.has_api_key = bool(api_key)
        headers = {"accept": "application/json"}
        if api_key:
            headers[API_KEY_HEADER] = api_key
        self.base_url = pro_base_url if api_key else public_base_url
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_range(
        self, asset_id: str, quote_currency: str, start: datetime, end: datetime
    ) -> List[PricePoint]:
        quote = quote_currency.lower()
        collected: List[PricePoint] = []
        for chunk in chunk_ranges(start, end):
            payload = await self._get(
                f"coins/{asset_id}/market_chart/range",
                {
                    "vs_currency": quote,
                    "from": to_epoch_ms(chunk.start) // 1000,
                    "to": to_epoch_ms(chunk.end) // 1000,
                },
                context=f"{asset_id} ({chunk})",
            )
            raw_prices = payload.get("prices") if isinstance(payload, dict) else None
            if not isinstance(raw_prices, list):
                self.logger.warning(
                    "No 'prices' array for %s (%s); stopping range walk with %d rows",
                    asset_id,
                    chunk,
                    len(collected),
                )
                break
            rows = self._parse_prices(asset_id, raw_prices)
            self.logger.debug("Parsed %d rows for %s (%s)", len(rows), asset_id, chunk)
            collected.extend(rows)

        # Chunk boundaries overlap, keep the first sample seen for each instant.
        unique: Dict[datetime, PricePoint] = {}
        for point in collected:
            unique.setdefault(point.timestamp, point)
        result = sorted(unique.values(), key=lambda p: p.timestamp)
        self.logger.debug("Total rows for %s: %d", asset_id, len(result))
        return result

    async def fetch_spot(self, asset_id: str, quote_currency: str) -> Optional[Decimal]:
        quote = quote_currency.lower()
        payload = await self._get(
            "simple/price",
            {"ids": asset_id, "vs_currencies": quote},
            context=f"spot {asset_id}/{quote}",
        )
        if not isinstance(payload, dict):
            return None
        by_currency = payload.get(asset_id)
        if not isinstance(by_currency, dict):
            return None
        return _to_decimal(by_currency.get(quote))

    def _parse_prices(self, asset_id: str, raw_prices: List[Any]) -> List[PricePoint]:
        rows: List[PricePoint] = []
        for pair in raw_prices:
            if not isinstance(pair, (list, tuple)) or len(pair) < 2:
                continue
            ms = _to_decimal(pair[0])
            price = _to_decimal(pair[1])
            if ms is None or price is None:
                continue
            rows.append(PricePoint(asset_id, from_epoch_ms(int(ms)), price))
        return rows

    async def _get(self, path: str, params: Dict[str, Any], *, context: str) -> Any:
        payload: Any = None
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RateLimitError),
            wait=wait_exponential(multiplier=self.backoff_base, max=30),
            stop=stop_after_attempt(self.max_retries + 1),
            reraise=True,
        ):
            with attempt:
                payload = await self._request(path, params, context=context)
        return payload

    async def _request(self, path: str, params: Dict[str, Any], *, context: str) -> Any:
        self.logger.debug("GET %s%s | API key attached? %s", self.base_url, path, self.has_api_key)
        try:
            response = await self._client.get(path, params=params)
        except httpx.HTTPError as exc:
            raise FetchError(f"Request for {context} failed: {exc}") from exc

        status = response.status_code
        if status in (401, 403):
            raise AuthError(
                f"{status} Unauthorized for {context}; check COINGECKO_API_KEY ({self.base_url}{path})"
            )
        if not response.is_success:
            body = response.text[:_BODY_EXCERPT]
            error_cls = RateLimitError if status == 429 else FetchError
            raise error_cls(
                f"Fetch for {context} failed ({status} {response.reason_phrase}): {body}",
                status_code=status,
                body=body,
            )

        if not response.content.strip():
            return None
        try:
            return response.json(parse_float=Decimal)
        except ValueError:
            self.logger.warning("Malformed JSON body for %s", context)
            return None


__all__ = [
    "AuthError",
    "CoinGeckoMarketProvider",
    "FetchError",
    "FetchRange",
    "MarketDataError",
    "MarketDataProvider",
    "PricePoint",
    "RateLimitError",
    "chunk_ranges",
    "chunk_width",
    "ensure_utc",
    "from_epoch_ms",
    "to_epoch_ms",
]
