"""
Repositories package for InvestMate.
Provides data access layer for all database operations.
"""

from repositories.base import BaseRepository
from repositories.asset_meta_repository import AssetMetaRepository
from repositories.price_repository import PriceRepository
from repositories.market_information_repository import MarketInformationRepository, merge_tags
from repositories.account_repository import AccountRepository
from repositories.transaction_repository import TransactionRepository
from repositories.company_info_repository import CompanyInfoRepository

__all__ = [
    'BaseRepository',
    'AssetMetaRepository',
    'PriceRepository',
    'MarketInformationRepository',
    'merge_tags',
    'AccountRepository',
    'TransactionRepository',
    'CompanyInfoRepository',
]
