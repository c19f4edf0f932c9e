"""
LangChain tools exposing the read-only query interfaces to the assistant.
"""

import logging
from typing import List

from langchain_core.tools import BaseTool, tool

from errors import InvestMateError
from services.queries import QueryService

logger = logging.getLogger(__name__)


def format_market_info(items) -> str:
    """Render processed market information as a compact text block."""
    if not items:
        return "No analyzed market information found."

    output = ""
    for i, info in enumerate(items, 1):
        output += f"{i}. {info.title}\n"
        output += f"   Sentiment: {info.sentiment} | Importance: {info.importance}/10 | {info.created_at:%Y-%m-%d}\n"
        if info.summary:
            output += f"   Summary: {info.summary}\n"
        if info.market_impact:
            output += f"   Impact: {info.market_impact}\n"
        if info.key_data_points:
            output += f"   Data: {'; '.join(info.key_data_points)}\n"
        if info.source_url:
            output += f"   Source: {info.source_url}\n"
        output += "\n"
    return output


def build_tools(queries: QueryService) -> List[BaseTool]:
    """Create the assistant's tools bound to a QueryService."""

    @tool
    async def query_asset_info(query: str) -> str:
        """
        Look up tracked assets by symbol or name.

        Args:
            query: Symbol (e.g., "AAPL", "0700") or part of a company name

        Returns:
            One line per matching asset with market, cached price and memo
        """
        try:
            return await queries.query_asset_info(query)
        except InvestMateError as e:
            logger.error(f"query_asset_info failed for {query!r}: {e}")
            return f"Error looking up assets: {e}"

    @tool
    async def query_market_info(symbol: str) -> str:
        """
        Get recent analyzed news and notes for a symbol.

        Args:
            symbol: Stock symbol (e.g., "AAPL", "0700", "600519")

        Returns:
            Summaries with sentiment, importance and market impact, newest first
        """
        try:
            items = await queries.query_market_info(symbol)
        except InvestMateError as e:
            logger.error(f"query_market_info failed for {symbol!r}: {e}")
            return f"Error fetching market information for {symbol}: {e}"
        return format_market_info(items)

    @tool
    async def query_company_info(symbol: str) -> str:
        """
        Get company background, financial notes and the investment memo for a symbol.

        Args:
            symbol: Stock symbol

        Returns:
            Company name, memo and saved notes
        """
        try:
            info = await queries.query_company_info(symbol)
        except InvestMateError as e:
            return f"Error fetching company info for {symbol}: {e}"

        result = f"Company: {info['name']} ({info['symbol']}, {info['market']})\n"
        if info['investment_memo']:
            result += f"Investment memo: {info['investment_memo']}\n"
        if not info['company_info']:
            result += "No company notes saved.\n"
        for note in info['company_info']:
            result += f"\n{note['title']} (updated {note['updated_at'][:10]}):\n{note['content']}\n"
        return result

    return [query_asset_info, query_market_info, query_company_info]
