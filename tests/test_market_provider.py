import asyncio
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from cryptopulse.services.ingestion.providers import (
    AuthError,
    CoinGeckoMarketProvider,
    FetchError,
    RateLimitError,
    chunk_ranges,
)
from cryptopulse.services.ingestion.providers.market import API_KEY_HEADER, to_epoch_ms

from conftest import NOW, RecordingTransport, json_response


def _provider(handler, **kwargs):
    transport = RecordingTransport(handler)
    kwargs.setdefault("backoff_base", 0)
    return CoinGeckoMarketProvider(transport=transport, **kwargs), transport


def test_short_span_is_a_single_request():
    chunks = chunk_ranges(NOW - timedelta(hours=2), NOW)
    assert len(chunks) == 1
    assert chunks[0].start == NOW - timedelta(hours=2)
    assert chunks[0].end == NOW


def test_chunks_cover_range_without_gaps():
    start = NOW - timedelta(days=120)
    chunks = chunk_ranges(start, NOW)
    assert len(chunks) >= 2
    assert chunks[0].span == timedelta(days=90)
    assert chunks[0].start == start
    assert chunks[-1].end == NOW
    for previous, current in zip(chunks, chunks[1:]):
        assert previous.end == current.start


def test_long_span_uses_coarse_chunks():
    chunks = chunk_ranges(NOW - timedelta(days=400), NOW)
    assert [c.span for c in chunks[:2]] == [timedelta(days=180), timedelta(days=180)]
    assert chunks[-1].end == NOW


def test_empty_or_inverted_range_has_no_chunks():
    assert chunk_ranges(NOW, NOW) == []
    assert chunk_ranges(NOW, NOW - timedelta(days=1)) == []


@pytest.mark.asyncio
async def test_inverted_range_makes_no_request():
    provider, transport = _provider(lambda request: json_response({"prices": []}))
    async with provider:
        points = await provider.fetch_range("bitcoin", "eur", NOW, NOW - timedelta(days=3))
    assert points == []
    assert transport.requests == []


@pytest.mark.asyncio
async def test_fetch_range_merges_chunks_sorted_and_deduplicated():
    start = NOW - timedelta(days=120)
    boundary = to_epoch_ms(start + timedelta(days=90))
    first_chunk_from = to_epoch_ms(start) // 1000

    def handler(request):
        if int(request.url.params["from"]) == first_chunk_from:
            return json_response({"prices": [[boundary, 2.0], [to_epoch_ms(start), 1.0]]})
        return json_response({"prices": [[boundary, 99.0], [boundary + 3_600_000, 3.0]]})

    provider, transport = _provider(handler)
    async with provider:
        points = await provider.fetch_range("bitcoin", "EUR", start, NOW)

    assert len(transport.requests) == 2
    request = transport.requests[0]
    assert request.url.path == "/api/v3/coins/bitcoin/market_chart/range"
    assert request.url.params["vs_currency"] == "eur"
    assert request.url.host == "api.coingecko.com"
    assert API_KEY_HEADER not in request.headers

    assert [p.price for p in points] == [Decimal("1.0"), Decimal("2.0"), Decimal("3.0")]
    timestamps = [p.timestamp for p in points]
    assert timestamps == sorted(timestamps)
    assert len(set(timestamps)) == len(timestamps)


@pytest.mark.asyncio
async def test_prices_keep_full_decimal_precision():
    body = b'{"prices": [[1717243200000, 0.000012345678901234567]]}'

    provider, _ = _provider(lambda request: httpx.Response(200, content=body))
    async with provider:
        points = await provider.fetch_range("shiba-inu", "eur", NOW - timedelta(hours=1), NOW)

    assert points[0].price == Decimal("0.000012345678901234567")


@pytest.mark.asyncio
async def test_api_key_switches_to_pro_endpoint():
    provider, transport = _provider(lambda request: json_response({"prices": []}), api_key="secret")
    async with provider:
        await provider.fetch_range("bitcoin", "eur", NOW - timedelta(hours=1), NOW)

    request = transport.requests[0]
    assert request.url.host == "pro-api.coingecko.com"
    assert request.headers[API_KEY_HEADER] == "secret"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_unauthorized_raises_auth_error(status):
    provider, _ = _provider(lambda request: httpx.Response(status, text="denied"))
    async with provider:
        with pytest.raises(AuthError):
            await provider.fetch_range("bitcoin", "eur", NOW - timedelta(hours=1), NOW)


@pytest.mark.asyncio
async def test_server_error_carries_status_and_body():
    provider, transport = _provider(lambda request: httpx.Response(500, text="upstream exploded"))
    async with provider:
        with pytest.raises(FetchError) as excinfo:
            await provider.fetch_range("bitcoin", "eur", NOW - timedelta(hours=1), NOW)

    assert excinfo.value.status_code == 500
    assert "upstream exploded" in excinfo.value.body
    assert "500" in str(excinfo.value)
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_rate_limit_is_retried():
    responses = [httpx.Response(429, text="slow down"), json_response({"prices": [[to_epoch_ms(NOW), 5]]})]

    provider, transport = _provider(lambda request: responses.pop(0), max_retries=2)
    async with provider:
        points = await provider.fetch_range("bitcoin", "eur", NOW - timedelta(hours=1), NOW)

    assert len(transport.requests) == 2
    assert points[0].price == Decimal(5)


@pytest.mark.asyncio
async def test_rate_limit_gives_up_after_max_retries():
    provider, transport = _provider(lambda request: httpx.Response(429, text="slow down"), max_retries=2)
    async with provider:
        with pytest.raises(RateLimitError):
            await provider.fetch_range("bitcoin", "eur", NOW - timedelta(hours=1), NOW)
    assert len(transport.requests) == 3


@pytest.mark.asyncio
async def test_missing_prices_stops_the_walk():
    provider, transport = _provider(lambda request: json_response({"error": "nope"}))
    async with provider:
        points = await provider.fetch_range("bitcoin", "eur", NOW - timedelta(days=120), NOW)

    assert points == []
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_empty_body_stops_the_walk():
    provider, transport = _provider(lambda request: httpx.Response(200, content=b""))
    async with provider:
        points = await provider.fetch_range("bitcoin", "eur", NOW - timedelta(days=120), NOW)

    assert points == []
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_empty_prices_array_continues_the_walk():
    provider, transport = _provider(lambda request: json_response({"prices": []}))
    async with provider:
        points = await provider.fetch_range("bitcoin", "eur", NOW - timedelta(days=120), NOW)

    assert points == []
    assert len(transport.requests) == 2


@pytest.mark.asyncio
async def test_cancellation_propagates():
    started = asyncio.Event()

    async def handler(request):
        started.set()
        await asyncio.sleep(10)
        return json_response({"prices": []})

    provider, _ = _provider(handler)
    async with provider:
        task = asyncio.create_task(provider.fetch_range("bitcoin", "eur", NOW - timedelta(hours=1), NOW))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


@pytest.mark.asyncio
async def test_fetch_spot_reads_simple_price():
    provider, transport = _provider(lambda request: json_response({"bitcoin": {"eur": 61234.5}}))
    async with provider:
        price = await provider.fetch_spot("bitcoin", "EUR")

    assert price == Decimal("61234.5")
    params = transport.requests[0].url.params
    assert params["ids"] == "bitcoin"
    assert params["vs_currencies"] == "eur"


@pytest.mark.asyncio
async def test_fetch_spot_missing_asset_is_none():
    provider, _ = _provider(lambda request: json_response({}))
    async with provider:
        assert await provider.fetch_spot("bitcoin", "eur") is None
