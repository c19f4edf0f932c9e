"""
Application wiring: builds repositories, adapters and services from Settings.

Entry points create one AppContext and pass its members around; nothing in
the core reaches for a global.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine

from config import Settings
from db_engine import create_db_engine, init_db
from providers.crawler import WebPageFetcher
from providers.registry import AdapterRegistry, build_default_registry
from repositories import (
    AccountRepository,
    AssetMetaRepository,
    CompanyInfoRepository,
    MarketInformationRepository,
    PriceRepository,
    TransactionRepository,
)
from services.analytics import AllocationBands, PortfolioAnalysisService, PortfolioAnalyticsEngine
from services.analyzer import LLMMarketAnalyzer, MarketAnalyzer
from services.historical_sync import HistoricalSynchronizer
from services.ingestion import InformationIngestionPipeline
from services.ledger import LedgerService
from services.market_data import MarketDataService
from services.queries import QueryService

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    engine: Engine
    assets: AssetMetaRepository
    synchronizer: HistoricalSynchronizer
    market_data: MarketDataService
    ingestion: InformationIngestionPipeline
    analytics: PortfolioAnalysisService
    ledger: LedgerService
    queries: QueryService

    @classmethod
    def build(
        cls,
        settings: Settings,
        engine: Optional[Engine] = None,
        registry: Optional[AdapterRegistry] = None,
        analyzer: Optional[MarketAnalyzer] = None,
        fetcher: Optional[WebPageFetcher] = None
    ) -> "AppContext":
        """
        Wire the application.

        Args:
            settings: Application settings
            engine: Database engine; created from settings.database_url when omitted
            registry: Provider registry; production adapters when omitted
            analyzer: Market analyzer; LLM-backed when omitted
            fetcher: Web page fetcher for crawl intake
        """
        if engine is None:
            engine = create_db_engine(settings.database_url, settings.db_echo)
        init_db(engine)

        assets = AssetMetaRepository(engine)
        prices = PriceRepository(engine)
        market_info = MarketInformationRepository(engine)
        accounts = AccountRepository(engine)

        registry = registry or build_default_registry(settings)
        if analyzer is None:
            from llm_engine import LLMClient

            analyzer = LLMMarketAnalyzer(
                LLMClient(settings),
                max_chars=settings.analysis_max_chars,
                language=settings.default_language,
            )

        synchronizer = HistoricalSynchronizer(registry, prices, assets, settings)
        market_data = MarketDataService(registry, assets, prices, synchronizer, settings)
        analytics_engine = PortfolioAnalyticsEngine(AllocationBands.from_settings(settings), settings.exchange_rates_to_usd)

        return cls(
            settings=settings,
            engine=engine,
            assets=assets,
            synchronizer=synchronizer,
            market_data=market_data,
            ingestion=InformationIngestionPipeline(
                market_info,
                assets,
                analyzer,
                fetcher or WebPageFetcher(timeout=settings.crawl_timeout_seconds),
                settings,
            ),
            analytics=PortfolioAnalysisService(accounts, assets, prices, analytics_engine, settings, market_data=market_data),
            ledger=LedgerService(accounts, TransactionRepository(engine), assets, settings.exchange_rates_to_usd),
            queries=QueryService(assets, market_info, CompanyInfoRepository(engine)),
        )
