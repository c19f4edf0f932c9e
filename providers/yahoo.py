"""
Yahoo Finance adapter via yfinance.
Covers US, HK and CN listings; yfinance is blocking, so calls run in a worker thread.
"""

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Optional

import pandas as pd
import yfinance as yf
from yfinance.exceptions import YFRateLimitError

from errors import NoData, ProviderUnavailable, RateLimited
from models import MARKET_CURRENCY_MAP
from providers.base import CandleProvider, CandleSeries, Quote, QuoteProvider, build_quote, build_series
from services.common import day_start_timestamp, infer_market_type, normalize_symbol

logger = logging.getLogger(__name__)

# Finnhub-style resolution codes to yfinance intervals; every bar is stamped
# at 00:00 UTC of its exchange-local trading date
RESOLUTION_INTERVALS = {
    "D": "1d",
    "W": "1wk",
    "M": "1mo",
}


class YahooAdapter(CandleProvider, QuoteProvider):
    """Candles and quotes from Yahoo Finance for any supported market."""

    name = "yahoo"
    markets = frozenset({"US", "HK", "CN"})

    def __init__(self, market: Optional[str] = None):
        # When set, every symbol is treated as listed on this market
        self.market = market

    def _yf_symbol(self, symbol: str) -> str:
        market = self.market or infer_market_type(symbol)
        return normalize_symbol(symbol, market)

    def _fetch_history(
        self,
        yf_symbol: str,
        start: date,
        end: date,
        interval: str
    ) -> pd.DataFrame:
        ticker = yf.Ticker(yf_symbol)
        return ticker.history(start=start, end=end, interval=interval, auto_adjust=False)

    def _fetch_info(self, yf_symbol: str) -> Dict:
        ticker = yf.Ticker(yf_symbol)
        info = ticker.info or {}
        price = info.get('currentPrice') or info.get('regularMarketPrice') or info.get('lastPrice')
        if price is None:
            hist = ticker.history(period="1d")
            if not hist.empty:
                info = {**info, 'currentPrice': float(hist['Close'].iloc[-1])}
        return info

    async def _call(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except YFRateLimitError:
            raise RateLimited(self.name)
        except Exception as e:
            # yfinance surfaces network and parsing problems as assorted exceptions
            raise ProviderUnavailable(self.name, str(e) or type(e).__name__)

    async def fetch_candles(self, symbol: str, resolution: str, from_time: int, to_time: int) -> CandleSeries:
        self.check_range(from_time, to_time)
        interval = RESOLUTION_INTERVALS.get(resolution, "1d")
        yf_symbol = self._yf_symbol(symbol)
        # Daily windows are bounded at midnight UTC; yfinance reads plain dates in
        # the exchange timezone and treats the end date as exclusive
        start = datetime.fromtimestamp(from_time, timezone.utc).date()
        end = datetime.fromtimestamp(to_time, timezone.utc).date() + timedelta(days=1)

        logger.info(f"Fetching {interval} history for {yf_symbol} from {start:%Y-%m-%d} to {end:%Y-%m-%d}")
        df = await self._call(self._fetch_history, yf_symbol, start, end, interval)
        if df is None or df.empty:
            return CandleSeries.empty()

        df = df.dropna(subset=['Close'])
        df = df[~df.index.duplicated(keep='last')].sort_index()
        if df.empty:
            return CandleSeries.empty()

        close = df['Close']
        return build_series(
            self.name,
            opens=df['Open'].fillna(close).astype(float).tolist(),
            highs=df['High'].fillna(close).astype(float).tolist(),
            lows=df['Low'].fillna(close).astype(float).tolist(),
            closes=close.astype(float).tolist(),
            volumes=df['Volume'].fillna(0).astype('int64').tolist(),
            timestamps=[day_start_timestamp(ts.date()) for ts in df.index],
        )

    async def fetch_quote(self, symbol: str) -> Quote:
        yf_symbol = self._yf_symbol(symbol)
        info = await self._call(self._fetch_info, yf_symbol)
        price = info.get('currentPrice') or info.get('regularMarketPrice') or info.get('lastPrice')
        if not price:
            raise NoData(symbol, self.name)

        market = self.market or infer_market_type(symbol)
        return build_quote(
            self.name,
            symbol=symbol,
            price=float(price),
            currency=info.get('currency') or MARKET_CURRENCY_MAP.get(market, "USD"),
            name=info.get('shortName') or info.get('longName'),
            open=info.get('open') or info.get('regularMarketOpen'),
            high=info.get('dayHigh') or info.get('regularMarketDayHigh'),
            low=info.get('dayLow') or info.get('regularMarketDayLow'),
            previous_close=info.get('previousClose') or info.get('regularMarketPreviousClose'),
        )
