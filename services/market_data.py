"""
Market data service: latest prices with a same-day cache on AssetMeta,
bulk quote refresh, and historical price lookup that backfills on demand.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from config import Settings
from errors import InvestMateError, NoData, ProviderUnavailable
from models import MARKET_CURRENCY_MAP, PricePoint, utc_now
from providers.registry import AdapterRegistry
from repositories import AssetMetaRepository, PriceRepository
from services.common import call_provider, clean_symbol, from_cents, infer_market_type, to_cents, validate_market
from services.historical_sync import HistoricalSynchronizer

logger = logging.getLogger(__name__)

# Days on each side of a requested date synced when the date is missing
HISTORY_BACKFILL_DAYS = 5


@dataclass
class PriceInfo:
    symbol: str
    price: Decimal
    currency: str
    source: str
    as_of: datetime
    cached: bool = False


class MarketDataService:
    """
    Service for current and historical prices.
    Quotes are cached on AssetMeta and reused for the rest of the (UTC) day.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        assets: AssetMetaRepository,
        prices: PriceRepository,
        synchronizer: HistoricalSynchronizer,
        settings: Settings
    ):
        self.registry = registry
        self.assets = assets
        self.prices = prices
        self.synchronizer = synchronizer
        self.settings = settings

    async def get_price(self, symbol: str, market: Optional[str] = None, force_refresh: bool = False) -> PriceInfo:
        """
        Latest price for a symbol.

        Args:
            symbol: Instrument symbol
            market: Market code; inferred from the symbol when omitted
            force_refresh: Skip the same-day cache

        Returns:
            PriceInfo

        Raises:
            NoData: if no quote provider has a price
            ProviderUnavailable: if every quote provider failed
        """
        symbol = clean_symbol(symbol)
        market = validate_market(market or infer_market_type(symbol))

        asset = await asyncio.to_thread(self.assets.get_by_symbol, symbol)
        if (
            not force_refresh
            and asset is not None
            and asset.price_cents
            and asset.updated_at.date() == utc_now().date()
        ):
            return PriceInfo(
                symbol=symbol,
                price=from_cents(asset.price_cents),
                currency=asset.currency,
                source=asset.source or "cache",
                as_of=asset.updated_at,
                cached=True,
            )

        last_error: Optional[InvestMateError] = None
        for provider in self.registry.quote_providers(market):
            try:
                quote = await call_provider(lambda: provider.fetch_quote(symbol), self.settings, provider.name)
            except (NoData, ProviderUnavailable) as e:
                logger.warning(f"{provider.name} could not quote {symbol}: {e}")
                last_error = e
                continue

            await asyncio.to_thread(self.assets.get_or_create, symbol, market)
            updated = await asyncio.to_thread(
                self.assets.update_price, symbol, to_cents(quote.price), provider.name, quote.name
            )
            return PriceInfo(
                symbol=symbol,
                price=from_cents(updated.price_cents),
                currency=quote.currency or MARKET_CURRENCY_MAP.get(market, "USD"),
                source=provider.name,
                as_of=updated.updated_at,
            )

        if last_error is not None:
            raise last_error
        raise ProviderUnavailable("registry", f"no quote provider for market {market}")

    async def refresh_prices(self, items: Iterable[Tuple[str, Optional[str]]]) -> Dict[str, Optional[PriceInfo]]:
        """
        Refresh quotes for several symbols concurrently.

        Args:
            items: (symbol, market) pairs; market may be None

        Returns:
            Mapping of symbol to PriceInfo, or None where the refresh failed
        """
        semaphore = asyncio.Semaphore(self.settings.quote_refresh_concurrency)

        async def _one(symbol: str, market: Optional[str]) -> Tuple[str, Optional[PriceInfo]]:
            async with semaphore:
                try:
                    return symbol, await self.get_price(symbol, market, force_refresh=True)
                except InvestMateError as e:
                    logger.error(f"Price refresh failed for {symbol}: {e}")
                    return symbol, None

        unique = dict.fromkeys((clean_symbol(s), m) for s, m in items)
        results = await asyncio.gather(*(_one(s, m) for s, m in unique))
        refreshed = sum(1 for _, info in results if info is not None)
        logger.info(f"Refreshed {refreshed}/{len(results)} prices")
        return dict(results)

    async def get_historical_price(self, symbol: str, day: date, market: Optional[str] = None) -> Optional[PricePoint]:
        """
        Close for a symbol on a day, syncing a window around it when missing.

        When the exact day has no bar (weekend, holiday) the closest earlier
        bar within the window is returned.

        Returns:
            PricePoint or None if nothing is stored even after syncing
        """
        symbol = clean_symbol(symbol)
        market = validate_market(market or infer_market_type(symbol))

        point = await asyncio.to_thread(self.prices.get_by_date, symbol, day)
        if point is not None:
            return point

        window_start = day - timedelta(days=HISTORY_BACKFILL_DAYS)
        window_end = day + timedelta(days=HISTORY_BACKFILL_DAYS)
        logger.info(f"No stored price for {symbol} on {day}, syncing {window_start} -> {window_end}")
        await self.synchronizer.sync_historical_data(symbol, window_start, window_end, market=market)

        point = await asyncio.to_thread(self.prices.get_by_date, symbol, day)
        if point is not None:
            return point
        earlier: List[PricePoint] = await asyncio.to_thread(self.prices.get_range, symbol, window_start, day)
        return earlier[-1] if earlier else None
