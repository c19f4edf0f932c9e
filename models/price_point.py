"""
PricePoint model - one daily OHLCV bar per symbol.
"""

from typing import Optional
from datetime import date, datetime
from sqlalchemy import UniqueConstraint, BigInteger, Column
from sqlmodel import SQLModel, Field

from models.common import utc_now


class PricePoint(SQLModel, table=True):
    """
    Daily price bar for a symbol, written only by the historical synchronizer.
    Prices are integer cents. (symbol, price_date) is unique, so a re-sync
    overwrites rather than appends.
    """
    __tablename__ = "price_point"
    __table_args__ = (UniqueConstraint("symbol", "price_date", name="uq_price_point_symbol_date"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    symbol: str = Field(index=True)
    price_date: date = Field(index=True)  # Exchange-local trading day

    open_cents: Optional[int] = Field(default=None)
    high_cents: Optional[int] = Field(default=None)
    low_cents: Optional[int] = Field(default=None)
    close_cents: int
    volume: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))

    market: str = Field(default="US")
    source: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
