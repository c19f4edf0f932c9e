"""
Historical synchronizer: pulls daily candles from a provider and upserts them
as PricePoint rows keyed by (symbol, trading day).

Syncs of the same symbol are serialized; different symbols run concurrently.
Provider calls are bounded by a timeout and retried with tenacity. If the
fetch ultimately fails nothing is written.
"""

import asyncio
import logging
import threading
import time as time_module
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from config import Settings
from errors import InvestMateError, ProviderUnavailable, ValidationError
from models import PricePoint
from providers.base import CandleProvider, CandleSeries
from providers.registry import AdapterRegistry
from repositories import AssetMetaRepository, PriceRepository
from services.common import (
    KeyedLocks,
    bar_timezone,
    call_provider,
    clean_symbol,
    timestamp_to_trade_date,
    to_cents,
    validate_market,
)

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"      # some rows failed to write
    NO_DATA = "no_data"      # provider had nothing for the range
    FAILED = "failed"        # only produced by sync_many for a symbol whose sync raised


@dataclass
class SyncResult:
    """Outcome of syncing one symbol over one date range."""
    symbol: str
    market: str
    from_date: date
    to_date: date
    status: SyncStatus = SyncStatus.COMPLETED
    provider: Optional[str] = None
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def written(self) -> int:
        return self.inserted + self.updated


@dataclass
class SyncRequest:
    symbol: str
    from_date: date
    to_date: date
    market: str = "US"
    asset_type: Optional[str] = None


@dataclass
class _BatchOutcome:
    inserted: int = 0
    updated: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False


def _as_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value


class HistoricalSynchronizer:
    """
    Synchronizes daily price history from provider adapters into the price repository.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        prices: PriceRepository,
        assets: AssetMetaRepository,
        settings: Settings,
        locks: Optional[KeyedLocks] = None
    ):
        self.registry = registry
        self.prices = prices
        self.assets = assets
        self.settings = settings
        self.locks = locks or KeyedLocks("price-sync")

    async def fetch_candles(
        self,
        provider: CandleProvider,
        symbol: str,
        resolution: str,
        from_time: int,
        to_time: int
    ) -> CandleSeries:
        """
        Call the provider with a timeout, retrying transient failures.

        Raises:
            ProviderUnavailable: after the last attempt failed or timed out
            RateLimited: if the provider kept throttling through the last attempt
        """
        return await call_provider(
            lambda: provider.fetch_candles(symbol, resolution, from_time, to_time),
            self.settings,
            provider.name
        )

    async def _fetch_from_first_available(
        self,
        symbol: str,
        market: str,
        asset_type: Optional[str],
        resolution: str,
        from_time: int,
        to_time: int
    ) -> Tuple[CandleProvider, CandleSeries]:
        """
        Ask the market's candle providers in preference order.

        A provider that stays unavailable through its retries hands over to
        the next one. An empty series is an answer and stops the search.

        Raises:
            ProviderUnavailable: if no provider is registered or the last one failed
        """
        providers = self.registry.candle_providers(market, asset_type)
        if not providers:
            raise ProviderUnavailable("registry", f"no candle provider for market {market}")

        last_error: Optional[ProviderUnavailable] = None
        for provider in providers:
            try:
                series = await self.fetch_candles(provider, symbol, resolution, from_time, to_time)
            except ProviderUnavailable as e:
                logger.warning(f"{provider.name} could not serve candles for {symbol}: {e}")
                last_error = e
                continue
            return provider, series
        raise last_error

    async def sync_historical_data(
        self,
        symbol: str,
        from_date: Union[date, datetime],
        to_date: Union[date, datetime],
        market: str = "US",
        wait: bool = True,
        asset_type: Optional[str] = None,
        resolution: str = "D"
    ) -> SyncResult:
        """
        Fetch daily candles for [from_date, to_date] and upsert them.

        Args:
            symbol: Instrument symbol
            from_date: First day of the range
            to_date: Last day of the range, after from_date
            market: "US", "HK" or "CN"
            wait: Queue behind a running sync of the same symbol; when False, fail fast
            asset_type: Used to pick a provider and when creating the AssetMeta
            resolution: Provider resolution code

        Returns:
            SyncResult with per-row counts

        Raises:
            ValidationError: for an empty symbol, unknown market or inverted range
            SyncInProgress: if wait is False and the symbol is already syncing
            ProviderUnavailable: if every provider kept failing; nothing was written
            RateLimited: if the provider kept throttling; nothing was written
        """
        symbol = clean_symbol(symbol)
        market = validate_market(market)
        from_day, to_day = _as_date(from_date), _as_date(to_date)
        if from_day >= to_day:
            raise ValidationError("from_date must be before to_date", field="from_date")

        tz = bar_timezone(market, resolution)
        from_time = int(datetime.combine(from_day, time.min, tz).timestamp())
        to_time = int(datetime.combine(to_day + timedelta(days=1), time.min, tz).timestamp()) - 1

        async with self.locks.hold(symbol, wait=wait):
            started = time_module.monotonic()
            logger.info(f"Syncing {symbol} ({market}) {from_day} -> {to_day}")
            provider, series = await self._fetch_from_first_available(
                symbol, market, asset_type, resolution, from_time, to_time
            )
            result = SyncResult(symbol=symbol, market=market, from_date=from_day, to_date=to_day, provider=provider.name)
            result.fetched = len(series)

            if series.is_empty:
                result.status = SyncStatus.NO_DATA
                result.duration_seconds = time_module.monotonic() - started
                logger.info(f"No candles for {symbol} between {from_day} and {to_day}")
                return result

            points = self._to_points(series, symbol, market, provider.name, resolution)
            await asyncio.to_thread(self.assets.get_or_create, symbol, market, asset_type or "stock")

            batch = await self._write_batch(points)
            result.inserted = batch.inserted
            result.updated = batch.updated
            result.failed = batch.failed
            result.errors = batch.errors
            result.status = SyncStatus.PARTIAL if batch.failed else SyncStatus.COMPLETED
            result.duration_seconds = time_module.monotonic() - started

        logger.info(
            f"Synced {symbol}: {result.fetched} fetched, {result.inserted} inserted, "
            f"{result.updated} updated, {result.failed} failed"
        )
        return result

    @staticmethod
    def _to_points(series: CandleSeries, symbol: str, market: str, source: str, resolution: str = "D") -> List[PricePoint]:
        """One PricePoint per trading day; a later candle on the same day wins."""
        by_day: Dict[date, PricePoint] = {}
        for i, ts in enumerate(series.timestamps):
            trade_day = timestamp_to_trade_date(ts, market, resolution)
            by_day[trade_day] = PricePoint(
                symbol=symbol,
                price_date=trade_day,
                open_cents=to_cents(series.opens[i]),
                high_cents=to_cents(series.highs[i]),
                low_cents=to_cents(series.lows[i]),
                close_cents=to_cents(series.closes[i]),
                volume=int(series.volumes[i]),
                market=market,
                source=source,
            )
        return [by_day[day] for day in sorted(by_day)]

    async def _write_batch(self, points: List[PricePoint]) -> _BatchOutcome:
        """
        Upsert rows in a worker thread.

        On cancellation the thread stops before the next row and the caller
        keeps the symbol lock until it has finished, then the cancellation
        propagates.
        """
        stop = threading.Event()
        future = asyncio.ensure_future(asyncio.to_thread(self._write_rows, points, stop))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            stop.set()
            await asyncio.wait({future})
            if not future.cancelled() and future.exception() is None:
                outcome = future.result()
                logger.warning(
                    f"Sync of {points[0].symbol} cancelled after {outcome.inserted + outcome.updated} rows"
                )
            raise

    def _write_rows(self, points: List[PricePoint], stop: threading.Event) -> _BatchOutcome:
        outcome = _BatchOutcome()
        for point in points:
            if stop.is_set():
                outcome.cancelled = True
                break
            try:
                if self.prices.upsert(point) == "inserted":
                    outcome.inserted += 1
                else:
                    outcome.updated += 1
            except Exception as e:
                outcome.failed += 1
                outcome.errors.append(f"{point.price_date}: {e}")
                logger.error(f"Failed to store {point.symbol} {point.price_date}: {e}")
        return outcome

    async def sync_many(self, requests: List[SyncRequest], wait: bool = True) -> List[SyncResult]:
        """
        Sync several symbols concurrently.

        A failing symbol yields a FAILED result carrying the error; it never
        hides the results of the others.
        """
        async def _one(request: SyncRequest) -> SyncResult:
            try:
                return await self.sync_historical_data(
                    request.symbol,
                    request.from_date,
                    request.to_date,
                    market=request.market,
                    wait=wait,
                    asset_type=request.asset_type,
                )
            except InvestMateError as e:
                logger.error(f"Sync failed for {request.symbol}: {e}")
                return SyncResult(
                    symbol=request.symbol,
                    market=request.market,
                    from_date=_as_date(request.from_date),
                    to_date=_as_date(request.to_date),
                    status=SyncStatus.FAILED,
                    errors=[str(e)],
                )

        return list(await asyncio.gather(*(_one(r) for r in requests)))

    async def get_history(self, symbol: str, start: Optional[date] = None, end: Optional[date] = None) -> List[PricePoint]:
        """Stored bars for a symbol, oldest first."""
        return await asyncio.to_thread(self.prices.get_range, clean_symbol(symbol), start, end)
