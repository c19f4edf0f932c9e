"""
Finnhub adapter for US equities: daily candles and quotes over HTTPS.
"""

import logging
import time
from typing import Any, Dict, Optional

import httpx

from errors import NoData, ProviderUnavailable, RateLimited
from providers.base import CandleProvider, CandleSeries, Quote, QuoteProvider, build_quote, build_series

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://finnhub.io/api/v1"


class FinnhubAdapter(CandleProvider, QuoteProvider):
    """
    Finnhub REST client.

    Candle payloads have the shape ``{"c": [...], "h": [...], "l": [...],
    "o": [...], "t": [...], "v": [...], "s": "ok"}``; ``s == "no_data"``
    means the range is empty.
    """

    name = "finnhub"
    markets = frozenset({"US"})

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _get(self, path: str, params: Dict[str, Any]) -> Any:
        url = f"{self.base_url}{path}"
        params = {**params, "token": self.api_key}
        try:
            if self._client is not None:
                response = await self._client.get(url, params=params, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise ProviderUnavailable(self.name, f"request timed out: {e}")
        except httpx.HTTPError as e:
            raise ProviderUnavailable(self.name, f"network error: {e}")

        status = response.status_code
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimited(self.name, float(retry_after) if retry_after and retry_after.isdigit() else None)
        if status in (401, 403):
            raise ProviderUnavailable(self.name, f"authentication failed (HTTP {status})")
        if status >= 400:
            raise ProviderUnavailable(self.name, f"HTTP {status}")

        try:
            return response.json()
        except ValueError:
            raise ProviderUnavailable(self.name, "response is not valid JSON")

    async def fetch_candles(self, symbol: str, resolution: str, from_time: int, to_time: int) -> CandleSeries:
        self.check_range(from_time, to_time)
        payload = await self._get("/stock/candle", {
            "symbol": symbol,
            "resolution": resolution,
            "from": int(from_time),
            "to": int(to_time),
        })
        if not isinstance(payload, dict):
            raise ProviderUnavailable(self.name, "unexpected candle payload")

        if payload.get("s") == "no_data":
            logger.info(f"Finnhub has no candles for {symbol} in [{from_time}, {to_time}]")
            return CandleSeries.empty()
        if payload.get("s") != "ok":
            raise ProviderUnavailable(self.name, f"unexpected candle status: {payload.get('s')!r}")

        return build_series(
            self.name,
            opens=payload.get("o") or [],
            highs=payload.get("h") or [],
            lows=payload.get("l") or [],
            closes=payload.get("c") or [],
            volumes=payload.get("v") or [],
            timestamps=payload.get("t") or [],
        )

    async def fetch_quote(self, symbol: str) -> Quote:
        payload = await self._get("/quote", {"symbol": symbol})
        if not isinstance(payload, dict):
            raise ProviderUnavailable(self.name, "unexpected quote payload")

        # Unknown symbols come back as all zeros
        price = payload.get("c")
        if not price:
            raise NoData(symbol, self.name)

        return build_quote(
            self.name,
            symbol=symbol,
            price=price,
            currency="USD",
            timestamp=payload.get("t") or int(time.time()),
            open=payload.get("o"),
            high=payload.get("h"),
            low=payload.get("l"),
            previous_close=payload.get("pc"),
        )
