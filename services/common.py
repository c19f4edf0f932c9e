"""
Common utilities and shared functions.
Symbol normalization, market type inference, money conversion,
content fingerprints and keyed async locks.
"""

import asyncio
import hashlib
import logging
import re
import unicodedata
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import AsyncIterator, Awaitable, Callable, Dict, Hashable, Optional, TypeVar
from zoneinfo import ZoneInfo

from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from errors import ProviderUnavailable, RateLimited, SyncInProgress, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SUPPORTED_MARKETS = ("US", "HK", "CN")

# Exchange-local timezone used to date intraday candles and to tell today's date
MARKET_TIMEZONES = {
    "US": "America/New_York",
    "HK": "Asia/Hong_Kong",
    "CN": "Asia/Shanghai",
}

# Daily and longer bars are stamped at 00:00 UTC of their trading day
DAILY_RESOLUTIONS = frozenset({"D", "W", "M"})

CENT = Decimal("0.01")

_WHITESPACE = re.compile(r"\s+")


def clean_symbol(symbol: Optional[str]) -> str:
    """
    Canonical form used as the storage key for a symbol.

    Raises:
        ValidationError: if the symbol is empty
    """
    cleaned = (symbol or "").strip().upper()
    if not cleaned:
        raise ValidationError("Symbol must not be empty", field="symbol")
    return cleaned


def validate_market(market: Optional[str]) -> str:
    market = (market or "").strip().upper()
    if market not in SUPPORTED_MARKETS:
        raise ValidationError(f"Unknown market: {market or '<empty>'}", field="market")
    return market


def normalize_symbol(symbol: str, market_type: str) -> str:
    """
    Convert a stock symbol to yfinance format based on market type.

    Args:
        symbol: Stock symbol (e.g., "NVDA", "0700", "600519")
        market_type: Market type ("US", "HK", "CN")

    Returns:
        Properly formatted yfinance symbol

    Examples:
        >>> normalize_symbol("NVDA", "US")
        'NVDA'
        >>> normalize_symbol("0700", "HK")
        '0700.HK'
        >>> normalize_symbol("600519", "CN")
        '600519.SS'
        >>> normalize_symbol("000001", "CN")
        '000001.SZ'
    """
    if market_type == "US":
        return symbol
    elif market_type == "HK":
        if symbol.endswith(".HK"):
            return symbol
        # Yahoo lists HK codes with four digits
        code = symbol.lstrip("0").zfill(4) if symbol.isdigit() else symbol
        return f"{code}.HK"
    elif market_type == "CN":
        if symbol.endswith((".SS", ".SZ")):
            return symbol
        # Shenzhen codes start with 0 or 3, Shanghai with 6 or 9
        if symbol[:1] in ("0", "3"):
            return f"{symbol}.SZ"
        return f"{symbol}.SS"
    else:
        logger.warning(f"Unknown market type: {market_type}, returning symbol as-is")
        return symbol


def infer_market_type(symbol: str) -> str:
    """
    Infer market type from symbol format.

    Args:
        symbol: Stock symbol

    Returns:
        Inferred market type ("US", "HK", or "CN")
    """
    symbol = symbol.upper()
    if symbol.endswith(".HK"):
        return "HK"
    if symbol.endswith((".SS", ".SZ")):
        return "CN"
    if len(symbol) == 6 and symbol.isdigit():
        return "CN"
    if 4 <= len(symbol) <= 5 and symbol.isdigit():
        return "HK"
    return "US"


def to_cents(value) -> int:
    """Convert a price in major units to integer cents, rounding half up."""
    return int((Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: Optional[int]) -> Optional[Decimal]:
    if cents is None:
        return None
    return (Decimal(cents) / 100).quantize(CENT)


def content_fingerprint(content: str) -> str:
    """
    SHA-256 over normalized content.

    Normalization applies Unicode NFKC, lower-casing and whitespace collapsing,
    so trivially reformatted copies of the same text share a fingerprint.
    """
    normalized = unicodedata.normalize("NFKC", content or "").lower()
    normalized = _WHITESPACE.sub(" ", normalized).strip()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def bar_timezone(market: str, resolution: str = "D"):
    """Timezone in which bars of a resolution are dated."""
    if resolution in DAILY_RESOLUTIONS:
        return timezone.utc
    return ZoneInfo(MARKET_TIMEZONES.get(market, "UTC"))


def timestamp_to_trade_date(timestamp: int, market: str, resolution: str = "D") -> date:
    """
    Trading day of a candle timestamp.

    Daily bars carry the trading day at midnight UTC, so they are dated in UTC;
    intraday bars are dated in the exchange's local timezone.
    """
    return datetime.fromtimestamp(int(timestamp), bar_timezone(market, resolution)).date()


def day_start_timestamp(day: date) -> int:
    """Unix seconds of 00:00 UTC on a calendar day, the stamp of a daily bar."""
    return int(datetime.combine(day, time.min, timezone.utc).timestamp())


def conversion_rate(from_currency: str, to_currency: str, rates: Dict[str, float]) -> Decimal:
    """
    Fixed-rate factor turning an amount in `from_currency` into `to_currency`.

    Args:
        rates: Units of a common base currency per unit of each currency

    Raises:
        ValidationError: if either currency has no configured rate
    """
    if from_currency == to_currency:
        return Decimal(1)
    for currency in (from_currency, to_currency):
        if currency not in rates:
            raise ValidationError(f"No exchange rate configured for {currency}", field="currency")
    return Decimal(str(rates[from_currency])) / Decimal(str(rates[to_currency]))


def market_today(market: str) -> date:
    return datetime.now(ZoneInfo(MARKET_TIMEZONES.get(market, "UTC"))).date()


class KeyedLocks:
    """
    One asyncio.Lock per key.

    Serializes work on the same key (a symbol, a record id, an account) while
    different keys proceed concurrently. A key's lock is dropped once nobody
    holds or waits for it.
    """

    def __init__(self, name: str = "lock"):
        self.name = name
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        # Holders plus waiters per key
        self._users: Dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: Hashable, wait: bool = True) -> AsyncIterator[None]:
        """
        Hold the lock for `key` for the duration of the block.

        Args:
            key: Lock key
            wait: When False, fail immediately instead of queueing behind a holder

        Raises:
            SyncInProgress: if wait is False and the key is already held
        """
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        elif not wait and lock.locked():
            raise SyncInProgress(str(key))

        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


def _provider_wait(settings):
    backoff = wait_exponential(
        multiplier=settings.retry_wait_multiplier,
        max=settings.retry_wait_max_seconds,
    )

    def _wait(retry_state) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimited) and exc.retry_after is not None:
            return min(exc.retry_after, settings.retry_wait_max_seconds)
        return backoff(retry_state)

    return _wait


async def call_provider(call: Callable[[], Awaitable[T]], settings, provider_name: str) -> T:
    """
    Await a provider call with a timeout, retrying transient failures.

    Each attempt is bounded by `provider_timeout_seconds`; a timeout counts as
    ProviderUnavailable. RateLimited waits honour the provider's retry-after.

    Args:
        call: Zero-argument factory returning a fresh awaitable per attempt
        settings: Settings with retry and timeout configuration
        provider_name: Used in the timeout error

    Raises:
        ProviderUnavailable: after the last attempt failed or timed out
        RateLimited: if the provider kept throttling through the last attempt
    """
    timeout = settings.provider_timeout_seconds
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(settings.provider_max_attempts),
        wait=_provider_wait(settings),
        retry=retry_if_exception_type(ProviderUnavailable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    ):
        with attempt:
            try:
                return await asyncio.wait_for(call(), timeout=timeout)
            except asyncio.TimeoutError:
                raise ProviderUnavailable(provider_name, f"no response within {timeout:g}s")
