import asyncio
from decimal import Decimal

import pytest

from cryptopulse.services.ingestion import LivePriceService

from conftest import FakeProvider


@pytest.mark.asyncio
async def test_tick_isolates_per_asset_failures(repository):
    await repository.initialize()
    provider = FakeProvider(
        spot={"bitcoin": Decimal("61000.5"), "ethereum": RuntimeError("HTTP 500"), "solana": Decimal("140")}
    )
    service = LivePriceService(provider, repository, ["bitcoin", "ethereum", "solana"])

    report = await service.tick()

    assert set(report.updated) == {"bitcoin", "solana"}
    assert set(report.failures) == {"ethereum"}
    assert not report.degraded
    assert await repository.count() == 2
    (point,) = await repository.latest_series("bitcoin")
    assert point.price == Decimal("61000.5")


@pytest.mark.asyncio
async def test_tick_ignores_missing_and_non_positive_prices(repository):
    await repository.initialize()
    provider = FakeProvider(spot={"bitcoin": None, "ethereum": Decimal(0), "solana": Decimal("-1")})
    service = LivePriceService(provider, repository, ["bitcoin", "ethereum", "solana"])

    report = await service.tick()

    assert report.updated == {}
    assert report.failures == {}
    assert await repository.count() == 0


@pytest.mark.asyncio
async def test_tick_polls_only_the_first_assets(repository):
    await repository.initialize()
    assets = [f"coin-{i}" for i in range(8)]
    provider = FakeProvider(spot={asset: Decimal(1) for asset in assets})
    service = LivePriceService(provider, repository, assets, assets_per_tick=3)

    await service.tick()

    assert provider.spot_calls == assets[:3]


@pytest.mark.asyncio
async def test_tick_refreshes_views(repository):
    await repository.initialize()
    refreshed = []
    provider = FakeProvider(spot={"bitcoin": Decimal(10)})
    service = LivePriceService(provider, repository, ["bitcoin"], on_refresh=refreshed.append)

    await service.tick()
    provider.spot["bitcoin"] = Decimal(12)
    await service.tick()

    views = refreshed[-1]
    assert views.row_count == 2
    assert [p.price for p in views.series["bitcoin"]] == [Decimal(10), Decimal(12)]
    assert views.movers[0].asset_id == "bitcoin"
    assert views.movers[0].change_pct == Decimal(20)


@pytest.mark.asyncio
async def test_degraded_loop_keeps_running_until_stopped(repository):
    await repository.initialize()
    provider = FakeProvider(spot={"bitcoin": RuntimeError("offline")})
    service = LivePriceService(provider, repository, ["bitcoin"], interval_seconds=0.01)

    assert service.start()
    for _ in range(200):
        if service.tick_count >= 2:
            break
        await asyncio.sleep(0.01)

    assert service.running
    assert service.tick_count >= 2
    assert service.last_report.degraded
    assert service.status == "Live: last fetch failed."

    await service.stop()
    assert not service.running
    assert service.status == "Live stopped."


@pytest.mark.asyncio
async def test_start_and_stop_are_idempotent(repository):
    await repository.initialize()
    service = LivePriceService(FakeProvider(), repository, ["bitcoin"], interval_seconds=60)

    await service.stop()
    assert service.start()
    assert not service.start()
    await service.stop()
    await service.stop()
    assert not service.running


@pytest.mark.asyncio
async def test_stop_is_observed_between_assets(repository):
    await repository.initialize()
    stop = asyncio.Event()

    class StoppingProvider(FakeProvider):
        async def fetch_spot(self, asset_id, quote_currency):
            stop.set()
            return await super().fetch_spot(asset_id, quote_currency)

    provider = StoppingProvider(spot={"a": Decimal(1), "b": Decimal(2), "c": Decimal(3)})
    service = LivePriceService(provider, repository, ["a", "b", "c"])

    report = await service.tick(stop)

    assert provider.spot_calls == ["a"]
    assert report.skipped == ["b", "c"]
    assert set(report.updated) == {"a"}
    assert await repository.count() == 1
