"""
Services package for InvestMate.
Provides core business logic separated from the data and provider layers.
"""

from services.common import (
    normalize_symbol,
    infer_market_type,
    clean_symbol,
    content_fingerprint,
    KeyedLocks,
)
from services.historical_sync import HistoricalSynchronizer, SyncResult, SyncRequest, SyncStatus
from services.market_data import MarketDataService, PriceInfo
from services.analyzer import AnalysisResult, MarketAnalyzer, LLMMarketAnalyzer
from services.ingestion import (
    InformationIngestionPipeline,
    IngestionOutcome,
    IngestionResult,
    ManualInput,
)
from services.analytics import (
    AllocationBands,
    PortfolioAnalyticsEngine,
    PortfolioAnalysisService,
    PortfolioAnalysis,
    PortfolioMetrics,
    PositionSnapshot,
    RiskScore,
)
from services.ledger import LedgerService, TransactionRequest
from services.queries import QueryService

__all__ = [
    # Common utilities
    'normalize_symbol',
    'infer_market_type',
    'clean_symbol',
    'content_fingerprint',
    'KeyedLocks',
    # Price history
    'HistoricalSynchronizer',
    'SyncResult',
    'SyncRequest',
    'SyncStatus',
    'MarketDataService',
    'PriceInfo',
    # Market information
    'AnalysisResult',
    'MarketAnalyzer',
    'LLMMarketAnalyzer',
    'InformationIngestionPipeline',
    'IngestionOutcome',
    'IngestionResult',
    'ManualInput',
    # Portfolio
    'AllocationBands',
    'PortfolioAnalyticsEngine',
    'PortfolioAnalysisService',
    'PortfolioAnalysis',
    'PortfolioMetrics',
    'PositionSnapshot',
    'RiskScore',
    'LedgerService',
    'TransactionRequest',
    'QueryService',
]
