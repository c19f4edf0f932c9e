"""
Pytest configuration and shared fixtures for the test suite.

Provides:
- Settings with fast retries and short timeouts
- A file-backed SQLite engine per test (threads each get their own connection)
- Repositories bound to that engine
- Scriptable fake providers, analyzer and page fetcher
"""

import asyncio
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Union

import pytest

from config import Settings
from db_engine import create_db_engine, init_db
from errors import NoData
from providers.base import CandleProvider, CandleSeries, Quote, QuoteProvider
from providers.crawler import FetchedPage
from providers.registry import AdapterRegistry
from repositories import (
    AccountRepository,
    AssetMetaRepository,
    CompanyInfoRepository,
    MarketInformationRepository,
    PriceRepository,
    TransactionRepository,
)
from services.analyzer import AnalysisResult, MarketAnalyzer


# =============================================================================
# HELPERS
# =============================================================================


def utc_ts(year: int, month: int, day: int, hour: int = 14, minute: int = 30) -> int:
    """Unix seconds for a UTC wall-clock time (14:30 UTC is the US open in winter)."""
    return int(datetime(year, month, day, hour, minute, tzinfo=timezone.utc).timestamp())


def make_series(timestamps: List[int], closes: List[float], volumes: Optional[List[int]] = None) -> CandleSeries:
    volumes = volumes or [1000] * len(closes)
    return CandleSeries(
        opens=[c - 1 for c in closes],
        highs=[c + 1 for c in closes],
        lows=[c - 2 for c in closes],
        closes=closes,
        volumes=volumes,
        timestamps=timestamps,
    )


def make_analysis(**overrides) -> AnalysisResult:
    fields = {
        "sentiment": "positive",
        "importance": 7,
        "summary": "Apple beat revenue expectations on strong services growth.",
        "key_topics": ["earnings", "services"],
        "market_impact": "Likely supportive for large-cap tech.",
        "key_data_points": ["Revenue $94.9B"],
        "symbol": "AAPL",
        "symbols": ["AAPL"],
    }
    fields.update(overrides)
    return AnalysisResult(**fields)


# =============================================================================
# FAKES
# =============================================================================


class FakeCandleProvider(CandleProvider):
    """
    Candle provider answering from a script.

    Each call consumes the next scripted response; the last one repeats.
    A response is a CandleSeries to return or an exception to raise.
    """

    name = "fake"
    markets = frozenset({"US", "HK", "CN"})

    def __init__(self, responses: Sequence[Union[CandleSeries, Exception]] = (), delay: float = 0.0):
        self.responses = list(responses) or [CandleSeries.empty()]
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def fetch_candles(self, symbol: str, resolution: str, from_time: int, to_time: int) -> CandleSeries:
        self.check_range(from_time, to_time)
        self.calls.append((symbol, resolution, from_time, to_time))
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        response = self.responses[index]

        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.active -= 1

        if isinstance(response, Exception):
            raise response
        return response


class FakeQuoteProvider(QuoteProvider):
    """Quote provider with fixed prices per symbol; unknown symbols raise NoData."""

    markets = frozenset({"US", "HK", "CN"})

    def __init__(self, prices=None, name: str = "fake-quotes", error: Optional[Exception] = None):
        self.prices = dict(prices or {})
        self.name = name
        self.error = error
        self.calls = []

    async def fetch_quote(self, symbol: str) -> Quote:
        self.calls.append(symbol)
        if self.error is not None:
            raise self.error
        if symbol not in self.prices:
            raise NoData(symbol, self.name)
        return Quote(symbol=symbol, price=self.prices[symbol], source=self.name, name=f"{symbol} Inc.")


class FakeAnalyzer(MarketAnalyzer):
    """Returns a scripted AnalysisResult, raises a scripted error, or stalls."""

    def __init__(self, result: Optional[AnalysisResult] = None, error: Optional[Exception] = None, delay: float = 0.0):
        self.result = result or make_analysis()
        self.error = error
        self.delay = delay
        self.calls = []

    async def analyze(self, title: str, content: str, tracked_symbols: Sequence[str] = ()) -> AnalysisResult:
        self.calls.append((title, content, list(tracked_symbols)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


class FakeLLMClient:
    """Answers every prompt with a canned reply and records what it was asked."""

    def __init__(self, reply: str):
        self.reply = reply
        self.prompts = []

    async def ainvoke(self, message: str, system_message=None) -> str:
        self.prompts.append((message, system_message))
        return self.reply


class FakeFetcher:
    """Stands in for WebPageFetcher with a canned page."""

    def __init__(self, text: str = "", title: str = "Example headline", error: Optional[Exception] = None):
        self.text = text
        self.title = title
        self.error = error
        self.calls = []

    async def fetch(self, url: str) -> FetchedPage:
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        return FetchedPage(url=url, title=self.title, text=self.text, source_name="news.example.com")


# =============================================================================
# SETTINGS AND DATABASE
# =============================================================================


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        finnhub_api_key=None,
        openai_api_key=None,
        provider_timeout_seconds=0.5,
        provider_max_attempts=3,
        retry_wait_multiplier=0,
        retry_wait_max_seconds=0,
        analysis_timeout_seconds=0.5,
        min_content_chars=50,
    )


@pytest.fixture
def engine(settings):
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def asset_repo(engine):
    return AssetMetaRepository(engine)


@pytest.fixture
def price_repo(engine):
    return PriceRepository(engine)


@pytest.fixture
def info_repo(engine):
    return MarketInformationRepository(engine)


@pytest.fixture
def account_repo(engine):
    return AccountRepository(engine)


@pytest.fixture
def transaction_repo(engine):
    return TransactionRepository(engine)


@pytest.fixture
def company_repo(engine):
    return CompanyInfoRepository(engine)


@pytest.fixture
def registry_with():
    """Factory building a registry around the given fakes."""

    def _build(candles: Optional[CandleProvider] = None, quotes: Sequence[QuoteProvider] = ()):
        registry = AdapterRegistry()
        if candles is not None:
            registry.register_candles(candles)
        for provider in quotes:
            registry.register_quotes(provider)
        return registry

    return _build
