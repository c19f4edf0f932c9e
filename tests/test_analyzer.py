"""
Tests for analyzer reply parsing and the LLM-backed analyzer.
"""

import json

import pytest

from errors import AnalysisFailure, ValidationError
from llm_engine import LLMClient
from services.analyzer import LLMMarketAnalyzer, parse_analysis_response

from conftest import FakeLLMClient


VALID = {
    "title": "Apple beats",
    "symbol": "AAPL",
    "symbols": ["AAPL", "MSFT"],
    "sentiment": "positive",
    "importance": 8,
    "summary": "Apple beat estimates.",
    "keyTopics": ["earnings"],
    "marketImpact": "Supportive for tech.",
    "keyDataPoints": ["EPS $2.18"],
}


class TestParseResponse:
    def test_bare_json(self):
        result = parse_analysis_response(json.dumps(VALID))

        assert result.sentiment == "positive"
        assert result.importance == 8
        assert result.key_topics == ["earnings"]
        assert result.market_impact == "Supportive for tech."
        assert result.key_data_points == ["EPS $2.18"]
        assert result.mentioned_symbols() == ["AAPL", "MSFT"]

    def test_fenced_json_with_prose(self):
        raw = "Here is the analysis:\n```json\n" + json.dumps(VALID) + "\n```\nLet me know if you need more."

        assert parse_analysis_response(raw).summary == "Apple beat estimates."

    def test_chinese_sentiment_labels(self):
        reply = {**VALID, "sentiment": "消极"}

        assert parse_analysis_response(json.dumps(reply, ensure_ascii=False)).sentiment == "negative"

    @pytest.mark.parametrize("raw,expected", [(15, 10), (0, 1), ("6", 6), (7.6, 8)])
    def test_importance_is_clamped(self, raw, expected):
        assert parse_analysis_response(json.dumps({**VALID, "importance": raw})).importance == expected

    def test_topics_are_capped_at_five(self):
        reply = {**VALID, "keyTopics": [f"topic {i}" for i in range(8)]}

        assert len(parse_analysis_response(json.dumps(reply)).key_topics) == 5

    def test_null_symbol_and_string_symbols(self):
        reply = {**VALID, "symbol": "null", "symbols": "tsla"}

        assert parse_analysis_response(json.dumps(reply)).mentioned_symbols() == ["TSLA"]

    @pytest.mark.parametrize("raw", [
        "",
        "I cannot analyze this content.",
        "{not json}",
        "[1, 2, 3]",
        json.dumps({**VALID, "sentiment": "ecstatic"}),
        json.dumps({**VALID, "summary": ""}),
        json.dumps({k: v for k, v in VALID.items() if k != "importance"}),
        json.dumps({k: v for k, v in VALID.items() if k != "marketImpact"}),
        json.dumps({**VALID, "marketImpact": "   "}),
        json.dumps({**VALID, "keyTopics": []}),
        json.dumps({k: v for k, v in VALID.items() if k != "keyDataPoints"}),
    ])
    def test_unusable_replies_raise(self, raw):
        with pytest.raises(AnalysisFailure):
            parse_analysis_response(raw)

    def test_reply_without_figures_keeps_an_empty_data_point_list(self):
        result = parse_analysis_response(json.dumps({**VALID, "keyDataPoints": []}))

        assert result.key_data_points == []
        assert result.market_impact == "Supportive for tech."


class TestLLMMarketAnalyzer:
    @pytest.mark.asyncio
    async def test_prompt_carries_title_content_and_tracked_symbols(self):
        client = FakeLLMClient(json.dumps(VALID))
        analyzer = LLMMarketAnalyzer(client, max_chars=20)

        result = await analyzer.analyze("Apple beats", "x" * 100, ["AAPL", "0700"])

        prompt, system_message = client.prompts[0]
        assert result.importance == 8
        assert "Title: Apple beats" in prompt
        assert "x" * 20 in prompt
        assert "x" * 21 not in prompt
        assert "AAPL, 0700" in prompt
        assert "JSON" in system_message

    @pytest.mark.asyncio
    async def test_chinese_template(self):
        analyzer = LLMMarketAnalyzer(FakeLLMClient(json.dumps(VALID)), language="zh")

        prompt = analyzer.build_prompt("标题", "内容")

        assert "标题" in prompt
        assert "内容" in prompt

    @pytest.mark.asyncio
    async def test_bad_reply_raises_analysis_failure(self):
        analyzer = LLMMarketAnalyzer(FakeLLMClient("Sorry, I can't help with that."))

        with pytest.raises(AnalysisFailure):
            await analyzer.analyze("t", "c")


class TestLLMClient:
    def test_local_mode_needs_no_key(self, settings):
        client = LLMClient(settings, mode="local", model_name="qwen2.5:7b")

        assert client.model_name == "qwen2.5:7b"

    def test_cloud_mode_without_key_is_rejected(self, settings):
        with pytest.raises(ValidationError):
            LLMClient(settings, mode="cloud")


class TestPrompts:
    def test_unknown_language_falls_back_to_english(self):
        from prompts import get_market_analysis_prompt, get_system_prompt

        assert get_system_prompt("fr") == get_system_prompt("en")
        assert "{tracked_symbols}" in get_market_analysis_prompt("zh")
