"""
Read-only projections the assistant queries through its tools,
plus the write path for company notes.
"""

import asyncio
import logging
from typing import Any, Dict, List

from errors import NotFoundError, ValidationError
from models import AssetCompanyInfo, MarketInformation
from repositories import AssetMetaRepository, CompanyInfoRepository, MarketInformationRepository
from services.common import clean_symbol, from_cents, infer_market_type

logger = logging.getLogger(__name__)


class QueryService:
    """Asset, market information and company info lookups."""

    def __init__(
        self,
        assets: AssetMetaRepository,
        market_info: MarketInformationRepository,
        company_info: CompanyInfoRepository
    ):
        self.assets = assets
        self.market_info = market_info
        self.company_info = company_info

    async def query_asset_info(self, query: str, limit: int = 10) -> str:
        """
        Describe tracked assets matching a symbol or name.

        Args:
            query: Symbol or part of a name
            limit: Maximum number of assets listed

        Returns:
            One line per asset, or a not-found message
        """
        query = (query or "").strip()
        if not query:
            raise ValidationError("Query must not be empty", field="query")

        matches = await asyncio.to_thread(self.assets.search, query, limit)
        if not matches:
            return f"No tracked asset matches '{query}'."

        lines = []
        for asset in matches:
            line = f"{asset.symbol} ({asset.market}, {asset.asset_type}) {asset.name or ''}".rstrip()
            if asset.price_cents:
                line += f" | price {from_cents(asset.price_cents)} {asset.currency} as of {asset.updated_at:%Y-%m-%d %H:%M} UTC"
            else:
                line += " | no cached price"
            if asset.investment_memo:
                line += f" | memo: {asset.investment_memo}"
            lines.append(line)
        return "\n".join(lines)

    async def query_market_info(self, symbol: str, limit: int = 10) -> List[MarketInformation]:
        """Processed market information linked to a symbol, newest first."""
        asset = await asyncio.to_thread(self.assets.get_by_symbol, clean_symbol(symbol))
        if asset is None:
            return []
        return await asyncio.to_thread(self.market_info.list_for_asset, asset.id, limit)

    async def query_company_info(self, symbol: str) -> Dict[str, Any]:
        """
        Company notes and memo for a symbol.

        Raises:
            NotFoundError: if the symbol is not tracked
        """
        symbol = clean_symbol(symbol)
        asset = await asyncio.to_thread(self.assets.get_by_symbol, symbol)
        if asset is None:
            raise NotFoundError("Asset", symbol)

        notes = await asyncio.to_thread(self.company_info.get_by_asset, asset.id)
        return {
            "symbol": asset.symbol,
            "name": asset.name,
            "market": asset.market,
            "asset_type": asset.asset_type,
            "investment_memo": asset.investment_memo,
            "company_info": [
                {
                    "title": note.title,
                    "content": note.content,
                    "updated_at": note.updated_at.isoformat(),
                }
                for note in notes
            ],
        }

    async def save_company_info(self, symbol: str, title: str, content: str) -> AssetCompanyInfo:
        title, content = (title or "").strip(), (content or "").strip()
        if not title or not content:
            raise ValidationError("Title and content are required", field="content")
        symbol = clean_symbol(symbol)
        asset = await asyncio.to_thread(self.assets.get_or_create, symbol, infer_market_type(symbol))
        note = await asyncio.to_thread(self.company_info.add, asset.id, title, content)
        logger.info(f"Saved company info '{title}' for {symbol}")
        return note
