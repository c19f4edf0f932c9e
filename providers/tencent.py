"""
Tencent quote feed for Hong Kong listings.

The feed answers ``v_r_hk00700="100~NAME~00700~PRICE~PREV_CLOSE~OPEN~...";``
with tilde-separated fields.
"""

import logging
import re
from typing import List, Optional

import httpx

from errors import NoData, ProviderUnavailable, RateLimited
from providers.base import Quote, QuoteProvider, build_quote

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://sqt.gtimg.cn/utf8"

_PAYLOAD = re.compile(r'v_r_hk\d+="(.*?)"', re.S)

# Field positions in the tilde-separated payload
NAME_FIELD = 1
CODE_FIELD = 2
PRICE_FIELD = 3
PREV_CLOSE_FIELD = 4
OPEN_FIELD = 5
HIGH_FIELD = 33
LOW_FIELD = 34


def to_tencent_code(symbol: str) -> str:
    """'0700', '700' and '0700.HK' all map to '00700'."""
    code = symbol.upper().removesuffix(".HK")
    return code.zfill(5) if code.isdigit() else code


def parse_quote_payload(text: str) -> Optional[List[str]]:
    """Split a feed response into fields, or None if it carries no quote."""
    match = _PAYLOAD.search(text or "")
    if not match or not match.group(1):
        return None
    return match.group(1).split("~")


def _number(fields: List[str], index: int) -> Optional[float]:
    try:
        value = float(fields[index])
    except (IndexError, ValueError):
        return None
    return value if value > 0 else None


class TencentQuoteAdapter(QuoteProvider):
    """Quote-only adapter for HK symbols."""

    name = "tencent"
    markets = frozenset({"HK"})

    def __init__(self, base_url: str = DEFAULT_BASE_URL, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def fetch_quote(self, symbol: str) -> Quote:
        code = to_tencent_code(symbol)
        url = f"{self.base_url}/q=r_hk{code}"
        try:
            if self._client is not None:
                response = await self._client.get(url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url)
        except httpx.HTTPError as e:
            raise ProviderUnavailable(self.name, f"network error: {e}")

        if response.status_code == 429:
            raise RateLimited(self.name)
        if response.status_code >= 400:
            raise ProviderUnavailable(self.name, f"HTTP {response.status_code}")

        fields = parse_quote_payload(response.text)
        if fields is None:
            raise NoData(symbol, self.name)
        if len(fields) <= LOW_FIELD:
            raise ProviderUnavailable(self.name, f"quote payload has {len(fields)} fields")

        price = _number(fields, PRICE_FIELD)
        if price is None:
            raise NoData(symbol, self.name)

        return build_quote(
            self.name,
            symbol=symbol,
            price=price,
            currency="HKD",
            name=fields[NAME_FIELD] or None,
            previous_close=_number(fields, PREV_CLOSE_FIELD),
            open=_number(fields, OPEN_FIELD),
            high=_number(fields, HIGH_FIELD),
            low=_number(fields, LOW_FIELD),
        )
