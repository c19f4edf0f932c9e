"""
Provider contracts and the normalized shapes adapters return.

Adapters validate raw payloads into these pydantic models at the boundary,
so everything past an adapter can rely on equal-length ascending arrays.
"""

import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import FrozenSet, List, Optional

import pydantic
from pydantic import BaseModel, Field, field_validator, model_validator

from errors import ProviderUnavailable, ValidationError


class CandleStatus(str, Enum):
    OK = "ok"
    NO_DATA = "no_data"


class CandleSeries(BaseModel):
    """Parallel OHLCV arrays with Unix-second timestamps in ascending order."""

    opens: List[float] = Field(default_factory=list)
    highs: List[float] = Field(default_factory=list)
    lows: List[float] = Field(default_factory=list)
    closes: List[float] = Field(default_factory=list)
    volumes: List[int] = Field(default_factory=list)
    timestamps: List[int] = Field(default_factory=list)
    status: CandleStatus = CandleStatus.OK

    @field_validator("volumes", mode="before")
    @classmethod
    def _fill_missing_volumes(cls, value):
        # Some feeds report null volume for halted or thin sessions
        if isinstance(value, (list, tuple)):
            return [0 if v is None else int(round(v)) if isinstance(v, float) else v for v in value]
        return value

    @model_validator(mode="after")
    def _check_shape(self) -> "CandleSeries":
        size = len(self.timestamps)
        for name in ("opens", "highs", "lows", "closes", "volumes"):
            if len(getattr(self, name)) != size:
                raise ValueError(f"{name} has {len(getattr(self, name))} entries, expected {size}")
        if any(a >= b for a, b in zip(self.timestamps, self.timestamps[1:])):
            raise ValueError("timestamps must be strictly ascending")
        if size == 0:
            self.status = CandleStatus.NO_DATA
        return self

    @classmethod
    def empty(cls) -> "CandleSeries":
        return cls(status=CandleStatus.NO_DATA)

    def __len__(self) -> int:
        return len(self.timestamps)

    @property
    def is_empty(self) -> bool:
        return len(self.timestamps) == 0


class Quote(BaseModel):
    """Latest price for a symbol in major currency units."""

    symbol: str
    price: float = Field(gt=0)
    currency: str = "USD"
    timestamp: int = Field(default_factory=lambda: int(time.time()))
    name: Optional[str] = None
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    previous_close: Optional[float] = None
    source: str


def build_series(provider: str, **fields) -> CandleSeries:
    """Validate raw arrays into a CandleSeries, mapping bad payloads to ProviderUnavailable."""
    try:
        return CandleSeries(**fields)
    except pydantic.ValidationError as e:
        raise ProviderUnavailable(provider, f"malformed candle payload: {e.errors()[0]['msg']}")


def build_quote(provider: str, **fields) -> Quote:
    try:
        return Quote(source=provider, **fields)
    except pydantic.ValidationError as e:
        raise ProviderUnavailable(provider, f"malformed quote payload: {e.errors()[0]['msg']}")


class CandleProvider(ABC):
    """Source of historical daily bars."""

    name: str = "candles"
    markets: FrozenSet[str] = frozenset()

    @abstractmethod
    async def fetch_candles(self, symbol: str, resolution: str, from_time: int, to_time: int) -> CandleSeries:
        """
        Fetch bars for [from_time, to_time].

        Args:
            symbol: Instrument symbol as stored locally
            resolution: "D", "W" or "M"
            from_time: Range start, Unix seconds
            to_time: Range end, Unix seconds

        Returns:
            CandleSeries; an empty series with status no_data when the
            provider has nothing for the range

        Raises:
            ValidationError: if from_time is not before to_time
            ProviderUnavailable: on network, auth, server or payload errors
            RateLimited: when the provider throttles the request
        """

    @staticmethod
    def check_range(from_time: int, to_time: int):
        if from_time >= to_time:
            raise ValidationError("from_time must be before to_time", field="from_time")


class QuoteProvider(ABC):
    """Source of latest quotes."""

    name: str = "quotes"
    markets: FrozenSet[str] = frozenset()

    @abstractmethod
    async def fetch_quote(self, symbol: str) -> Quote:
        """
        Fetch the latest quote.

        Raises:
            NoData: if the provider knows no price for the symbol
            ProviderUnavailable: on network, auth, server or payload errors
            RateLimited: when the provider throttles the request
        """
