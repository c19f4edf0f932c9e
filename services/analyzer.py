"""
Market information analyzer.

Turns raw text into sentiment, importance, summary, market impact and the
symbols it mentions. The default implementation prompts an LLM for JSON and
validates the reply with pydantic.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, List, Literal, Optional, Sequence

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from errors import AnalysisFailure
from prompts import get_market_analysis_prompt

logger = logging.getLogger(__name__)

MAX_KEY_TOPICS = 5

# Chinese labels the zh prompt asks for
SENTIMENT_ALIASES = {
    "积极": "positive",
    "消极": "negative",
    "中性": "neutral",
    "bullish": "positive",
    "bearish": "negative",
}

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.I)


def _as_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


class AnalysisResult(BaseModel):
    """Validated analyzer output."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    title: Optional[str] = None
    symbol: Optional[str] = None
    symbols: List[str] = Field(default_factory=list)
    sentiment: Literal["positive", "negative", "neutral"]
    importance: int = Field(ge=1, le=10)
    summary: str = Field(min_length=1)
    key_topics: List[str] = Field(min_length=1, alias="keyTopics")
    market_impact: str = Field(min_length=1, alias="marketImpact")
    # Required, but text without figures may legitimately yield none
    key_data_points: List[str] = Field(alias="keyDataPoints")

    @field_validator("sentiment", mode="before")
    @classmethod
    def _normalize_sentiment(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return SENTIMENT_ALIASES.get(value, value.lower())
        return value

    @field_validator("importance", mode="before")
    @classmethod
    def _clamp_importance(cls, value: Any) -> Any:
        try:
            return max(1, min(10, int(round(float(value)))))
        except (TypeError, ValueError):
            return value

    @field_validator("symbols", "key_data_points", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> List[str]:
        return _as_str_list(value)

    @field_validator("key_topics", mode="before")
    @classmethod
    def _limit_topics(cls, value: Any) -> List[str]:
        return _as_str_list(value)[:MAX_KEY_TOPICS]

    @field_validator("symbol", mode="before")
    @classmethod
    def _blank_symbol(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() in ("", "null", "none", "n/a"):
            return None
        return value

    def mentioned_symbols(self) -> List[str]:
        """Primary symbol first, then the rest, upper-cased and de-duplicated."""
        ordered = ([self.symbol] if self.symbol else []) + self.symbols
        return list(dict.fromkeys(s.strip().upper() for s in ordered if s and s.strip()))


def parse_analysis_response(raw: str) -> AnalysisResult:
    """
    Parse an LLM reply into an AnalysisResult.

    Accepts bare JSON, fenced JSON, or JSON embedded in surrounding prose.

    Raises:
        AnalysisFailure: if no valid JSON object can be extracted or it fails validation
    """
    text = _FENCE.sub("", (raw or "").strip())
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        raise AnalysisFailure("Analyzer reply contains no JSON object")

    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise AnalysisFailure(f"Analyzer reply is not valid JSON: {e.msg}")
    if not isinstance(data, dict):
        raise AnalysisFailure("Analyzer reply is not a JSON object")

    try:
        return AnalysisResult.model_validate(data)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(p) for p in first["loc"])
        raise AnalysisFailure(f"Analyzer reply failed validation at {location}: {first['msg']}")


class MarketAnalyzer(ABC):
    """Produces an AnalysisResult for a piece of market information."""

    @abstractmethod
    async def analyze(self, title: str, content: str, tracked_symbols: Sequence[str] = ()) -> AnalysisResult:
        """
        Raises:
            AnalysisFailure: when no usable result can be produced
        """


class LLMMarketAnalyzer(MarketAnalyzer):
    """Analyzer backed by an LLMClient."""

    SYSTEM_MESSAGE = "You are a precise financial analyst. You reply with a single JSON object."

    def __init__(self, llm_client, max_chars: int = 4000, language: str = "en"):
        self.llm_client = llm_client
        self.max_chars = max_chars
        self.language = language

    def build_prompt(self, title: str, content: str, tracked_symbols: Sequence[str] = ()) -> str:
        template = get_market_analysis_prompt(self.language)
        return template.format(
            title=title or "",
            content=(content or "")[:self.max_chars],
            tracked_symbols=", ".join(tracked_symbols) if tracked_symbols else "none",
        )

    async def analyze(self, title: str, content: str, tracked_symbols: Sequence[str] = ()) -> AnalysisResult:
        prompt = self.build_prompt(title, content, tracked_symbols)
        raw = await self.llm_client.ainvoke(prompt, system_message=self.SYSTEM_MESSAGE)
        result = parse_analysis_response(raw)
        logger.info(f"Analyzed '{title[:60]}': {result.sentiment}, importance {result.importance}")
        return result
