"""
Database models for InvestMate.
All SQLModel table definitions are centralized here.
"""

from models.common import utc_now, Market, AssetType, MARKET_CURRENCY_MAP
from models.asset_meta import AssetMeta
from models.price_point import PricePoint
from models.market_information import (
    MarketInformation,
    MarketInformationAssetLink,
    InformationStatus,
    SourceType,
    ContentFormat,
)
from models.account import Account, Position
from models.transaction import Transaction, TransactionType
from models.company_info import AssetCompanyInfo

__all__ = [
    'utc_now',
    'Market',
    'AssetType',
    'MARKET_CURRENCY_MAP',
    'AssetMeta',
    'PricePoint',
    'MarketInformation',
    'MarketInformationAssetLink',
    'InformationStatus',
    'SourceType',
    'ContentFormat',
    'Account',
    'Position',
    'Transaction',
    'TransactionType',
    'AssetCompanyInfo',
]
