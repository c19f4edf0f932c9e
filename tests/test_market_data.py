"""
Tests for MarketDataService: quote cache, provider fallback, bulk refresh
and on-demand history backfill.
"""

from datetime import date
from decimal import Decimal

import pytest

from errors import NoData, ProviderUnavailable
from models import PricePoint
from services.historical_sync import HistoricalSynchronizer
from services.market_data import MarketDataService

from conftest import FakeCandleProvider, FakeQuoteProvider, make_series, utc_ts


@pytest.fixture
def build_service(settings, asset_repo, price_repo, registry_with):
    def _build(quotes=(), candles=None):
        registry = registry_with(candles=candles or FakeCandleProvider(), quotes=quotes)
        synchronizer = HistoricalSynchronizer(registry, price_repo, asset_repo, settings)
        return MarketDataService(registry, asset_repo, price_repo, synchronizer, settings)

    return _build


class TestGetPrice:
    @pytest.mark.asyncio
    async def test_quote_is_cached_for_the_day(self, build_service, asset_repo):
        provider = FakeQuoteProvider({"AAPL": 189.5})
        service = build_service([provider])

        fresh = await service.get_price("aapl")
        cached = await service.get_price("AAPL")

        assert (fresh.price, fresh.cached, fresh.source) == (Decimal("189.50"), False, "fake-quotes")
        assert (cached.price, cached.cached) == (Decimal("189.50"), True)
        assert provider.calls == ["AAPL"]
        assert asset_repo.get_by_symbol("AAPL").price_cents == 18950

    @pytest.mark.asyncio
    async def test_force_refresh_skips_cache(self, build_service):
        provider = FakeQuoteProvider({"AAPL": 189.5})
        service = build_service([provider])

        await service.get_price("AAPL")
        await service.get_price("AAPL", force_refresh=True)

        assert provider.calls == ["AAPL", "AAPL"]

    @pytest.mark.asyncio
    async def test_falls_back_to_next_provider(self, build_service):
        broken = FakeQuoteProvider(name="broken", error=ProviderUnavailable("broken", "HTTP 500"))
        backup = FakeQuoteProvider({"0700": 320.4}, name="backup")
        service = build_service([broken, backup])

        info = await service.get_price("0700")

        assert info.source == "backup"
        assert len(broken.calls) == 3

    @pytest.mark.asyncio
    async def test_no_provider_has_the_symbol(self, build_service):
        service = build_service([FakeQuoteProvider({})])

        with pytest.raises(NoData):
            await service.get_price("NOPE")

    @pytest.mark.asyncio
    async def test_refresh_prices_reports_failures_as_none(self, build_service):
        service = build_service([FakeQuoteProvider({"AAPL": 190.0, "MSFT": 410.0})])

        prices = await service.refresh_prices([("AAPL", "US"), ("MSFT", None), ("NOPE", "US"), ("aapl", "US")])

        assert set(prices) == {"AAPL", "MSFT", "NOPE"}
        assert prices["AAPL"].price == Decimal("190.00")
        assert prices["NOPE"] is None


class TestHistoricalPrice:
    @pytest.mark.asyncio
    async def test_stored_bar_is_returned_without_syncing(self, build_service, price_repo):
        candles = FakeCandleProvider()
        service = build_service(candles=candles)
        price_repo.upsert(PricePoint(symbol="AAPL", price_date=date(2024, 1, 2), close_cents=15000, source="fake"))

        point = await service.get_historical_price("AAPL", date(2024, 1, 2))

        assert point.close_cents == 15000
        assert candles.calls == []

    @pytest.mark.asyncio
    async def test_missing_day_is_backfilled(self, build_service):
        candles = FakeCandleProvider([make_series([utc_ts(2024, 1, 2), utc_ts(2024, 1, 3)], [150.0, 152.0])])
        service = build_service(candles=candles)

        point = await service.get_historical_price("AAPL", date(2024, 1, 3))

        assert point.close_cents == 15200
        assert len(candles.calls) == 1

    @pytest.mark.asyncio
    async def test_weekend_uses_previous_close(self, build_service):
        candles = FakeCandleProvider([make_series([utc_ts(2024, 1, 5), utc_ts(2024, 1, 8)], [181.0, 185.0])])
        service = build_service(candles=candles)

        point = await service.get_historical_price("AAPL", date(2024, 1, 6))

        assert point.price_date == date(2024, 1, 5)
        assert point.close_cents == 18100
