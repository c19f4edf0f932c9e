"""
Provider adapters for InvestMate.
Normalize external market data and web content into validated shapes.
"""

from providers.base import (
    CandleProvider,
    CandleSeries,
    CandleStatus,
    Quote,
    QuoteProvider,
)
from providers.registry import AdapterRegistry, build_default_registry

__all__ = [
    'CandleProvider',
    'CandleSeries',
    'CandleStatus',
    'Quote',
    'QuoteProvider',
    'AdapterRegistry',
    'build_default_registry',
]
