"""
Shared column helpers and enumerations for InvestMate models.
"""

from datetime import datetime, timezone
from enum import Enum


def utc_now() -> datetime:
    """Naive UTC timestamp. SQLite drops tzinfo, so all stored times are naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Market(str, Enum):
    US = "US"
    HK = "HK"
    CN = "CN"


class AssetType(str, Enum):
    STOCK = "stock"
    ETF = "etf"
    FUND = "fund"
    CRYPTO = "crypto"


# Currency each market settles in
MARKET_CURRENCY_MAP = {
    "US": "USD",
    "HK": "HKD",
    "CN": "CNY"
}
