"""
AssetMeta model - one row per tracked instrument.
"""

from typing import Optional
from datetime import datetime
from sqlmodel import SQLModel, Field

from models.common import utc_now


class AssetMeta(SQLModel, table=True):
    """
    Metadata for a tracked instrument.
    Holds the latest cached price so quote lookups can skip the provider
    when the price was refreshed today.
    """
    __tablename__ = "asset_meta"

    id: Optional[int] = Field(default=None, primary_key=True)
    symbol: str = Field(index=True, unique=True)  # e.g., "AAPL", "0700", "600519"
    market: str = Field(default="US")  # "US", "HK", "CN"
    asset_type: str = Field(default="stock")  # "stock", "etf", "fund", "crypto"
    name: Optional[str] = Field(default=None)
    price_cents: Optional[int] = Field(default=None)  # Latest cached price in minor units
    currency: str = Field(default="USD")
    source: Optional[str] = Field(default=None)  # Provider that produced price_cents
    investment_memo: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
