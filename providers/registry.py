"""
Adapter registry: ordered candle and quote providers per market and asset type.
"""

import logging
from typing import Dict, List, Optional, Tuple

from providers.base import CandleProvider, QuoteProvider

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """
    Ordered provider lists keyed by market.

    Providers registered for a specific asset type win over the market default.
    Registration order is preference order.
    """

    def __init__(self):
        self._candles: Dict[Tuple[str, Optional[str]], List[CandleProvider]] = {}
        self._quotes: Dict[Tuple[str, Optional[str]], List[QuoteProvider]] = {}

    def register_candles(self, provider: CandleProvider, markets=None, asset_type: Optional[str] = None):
        for market in markets or provider.markets:
            self._candles.setdefault((market, asset_type), []).append(provider)

    def register_quotes(self, provider: QuoteProvider, markets=None, asset_type: Optional[str] = None):
        for market in markets or provider.markets:
            self._quotes.setdefault((market, asset_type), []).append(provider)

    def candle_providers(self, market: str, asset_type: Optional[str] = None) -> List[CandleProvider]:
        return self._candles.get((market, asset_type)) or self._candles.get((market, None), [])

    def quote_providers(self, market: str, asset_type: Optional[str] = None) -> List[QuoteProvider]:
        return self._quotes.get((market, asset_type)) or self._quotes.get((market, None), [])


def build_default_registry(settings) -> AdapterRegistry:
    """
    Registry with the production adapters.

    Finnhub serves US equities when an API key is configured; Yahoo covers
    every market and takes over candles and quotes when Finnhub fails. Tencent
    is the first quote source for HK.
    """
    from providers.finnhub import FinnhubAdapter
    from providers.tencent import TencentQuoteAdapter
    from providers.yahoo import YahooAdapter

    registry = AdapterRegistry()
    if settings.is_finnhub_configured:
        finnhub = FinnhubAdapter(
            api_key=settings.finnhub_api_key,
            base_url=settings.finnhub_base_url,
            timeout=settings.provider_timeout_seconds,
        )
        registry.register_candles(finnhub)
        registry.register_quotes(finnhub)
    else:
        logger.info("FINNHUB_API_KEY not set, US data will come from Yahoo")

    for market in ("US", "HK", "CN"):
        yahoo = YahooAdapter(market=market)
        registry.register_candles(yahoo, markets=[market])
        if market == "HK":
            registry.register_quotes(
                TencentQuoteAdapter(base_url=settings.tencent_quote_url, timeout=settings.provider_timeout_seconds),
                markets=["HK"],
            )
        registry.register_quotes(yahoo, markets=[market])
    return registry
