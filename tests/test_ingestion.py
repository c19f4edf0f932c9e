"""
Tests for InformationIngestionPipeline.

Covers:
- Manual intake ends PROCESSED with derived fields and asset links
- Analyzer errors, incomplete replies and timeouts end FAILED with no derived fields
- Duplicate content is skipped and its tags merged
- FAILED content can be resubmitted as a new attempt
- Crawl intake rejects pages without enough text
- Stale PENDING sweep, listing and deletion
"""

import asyncio
import json
from datetime import timedelta

import pytest

from errors import AnalysisFailure, NotFoundError, ProviderUnavailable, ValidationError
from models import InformationStatus, MarketInformation, utc_now
from services.analyzer import LLMMarketAnalyzer
from services.common import content_fingerprint
from services.ingestion import InformationIngestionPipeline, IngestionOutcome, ManualInput

from conftest import FakeAnalyzer, FakeFetcher, FakeLLMClient, make_analysis


NEWS = (
    "Apple reported quarterly revenue of $94.9 billion, up 6% year over year, "
    "driven by record services revenue and strong iPhone demand in emerging markets."
)


@pytest.fixture
def build_pipeline(info_repo, asset_repo, settings):
    def _build(analyzer=None, fetcher=None):
        return InformationIngestionPipeline(
            info_repo,
            asset_repo,
            analyzer or FakeAnalyzer(),
            fetcher or FakeFetcher(),
            settings,
        )

    return _build


# -----------------------------------------------------------------------
# PENDING -> PROCESSED
# -----------------------------------------------------------------------

class TestProcessed:
    @pytest.mark.asyncio
    async def test_manual_note_is_analyzed_and_linked(self, build_pipeline, info_repo):
        pipeline = build_pipeline()

        result = await pipeline.save_market_info(ManualInput(content=NEWS, tags=["earnings"]))

        assert result.outcome == IngestionOutcome.PROCESSED
        info = info_repo.get_by_id(result.info_id)
        assert info.status == InformationStatus.PROCESSED
        assert info.sentiment == "positive"
        assert info.importance == 7
        assert info.key_topics == ["earnings", "services"]
        assert info.failure_reason is None
        assert info.processed_at is not None
        assert info.content_fingerprint == content_fingerprint(NEWS)
        assert result.linked_symbols == ["AAPL"]

    @pytest.mark.asyncio
    async def test_caller_symbols_and_mentioned_symbols_are_both_linked(self, build_pipeline, info_repo):
        analyzer = FakeAnalyzer(make_analysis(symbol="AAPL", symbols=["AAPL", "MSFT", "not a ticker!"]))
        pipeline = build_pipeline(analyzer)

        result = await pipeline.save_market_info(ManualInput(content=NEWS, symbols=["0700"]))

        assert result.linked_symbols == ["0700", "AAPL", "MSFT"]
        assert info_repo.get_by_id(result.info_id).symbol == "0700"

    @pytest.mark.asyncio
    async def test_untitled_note_takes_its_first_line_as_title(self, build_pipeline):
        pipeline = build_pipeline()

        result = await pipeline.save_market_info(ManualInput(content="Fed holds rates\n\n" + NEWS))

        assert result.info.title == "Fed holds rates"

    @pytest.mark.asyncio
    async def test_html_content_is_analyzed_as_text(self, build_pipeline):
        analyzer = FakeAnalyzer()
        pipeline = build_pipeline(analyzer)
        html = f"<html><head><title>Apple results</title></head><body><article><p>{NEWS}</p></article></body></html>"

        result = await pipeline.save_market_info(ManualInput(content=html, content_format="html"))

        assert result.outcome == IngestionOutcome.PROCESSED
        assert result.info.title == "Apple results"
        _, analyzed_text, _ = analyzer.calls[0]
        assert "<p>" not in analyzed_text
        assert analyzed_text == NEWS

    @pytest.mark.asyncio
    async def test_analyzing_a_terminal_record_changes_nothing(self, build_pipeline):
        analyzer = FakeAnalyzer()
        pipeline = build_pipeline(analyzer)
        first = await pipeline.save_market_info(ManualInput(content=NEWS))

        again = await pipeline.analyze(first.info_id)

        assert again.outcome == IngestionOutcome.PROCESSED
        assert len(analyzer.calls) == 1


# -----------------------------------------------------------------------
# PENDING -> FAILED
# -----------------------------------------------------------------------

class TestFailed:
    @pytest.mark.asyncio
    async def test_analysis_failure_marks_record_failed(self, build_pipeline, info_repo):
        pipeline = build_pipeline(FakeAnalyzer(error=AnalysisFailure("Analyzer reply contains no JSON object")))

        result = await pipeline.save_market_info(ManualInput(content=NEWS))

        assert result.outcome == IngestionOutcome.FAILED
        info = info_repo.get_by_id(result.info_id)
        assert info.status == InformationStatus.FAILED
        assert info.failure_reason == "Analyzer reply contains no JSON object"
        assert info.sentiment is None
        assert info.importance is None
        assert info.summary is None
        assert info.processed_at is None

    @pytest.mark.asyncio
    async def test_reply_missing_market_impact_marks_record_failed(self, build_pipeline, info_repo):
        reply = {
            "sentiment": "positive",
            "importance": 7,
            "summary": "Apple beat revenue expectations.",
        }
        pipeline = build_pipeline(LLMMarketAnalyzer(FakeLLMClient(json.dumps(reply))))

        result = await pipeline.save_market_info(ManualInput(content=NEWS))

        assert result.outcome == IngestionOutcome.FAILED
        info = info_repo.get_by_id(result.info_id)
        assert info.status == InformationStatus.FAILED
        assert "failed validation" in info.failure_reason
        assert info.summary is None
        assert info.market_impact is None
        assert info.key_topics is None

    @pytest.mark.asyncio
    async def test_analysis_timeout_marks_record_failed(self, build_pipeline, settings):
        pipeline = build_pipeline(FakeAnalyzer(delay=settings.analysis_timeout_seconds * 4))

        result = await pipeline.save_market_info(ManualInput(content=NEWS))

        assert result.outcome == IngestionOutcome.FAILED
        assert "timed out" in result.info.failure_reason

    @pytest.mark.asyncio
    async def test_unexpected_analyzer_error_marks_record_failed(self, build_pipeline):
        pipeline = build_pipeline(FakeAnalyzer(error=KeyError("sentiment")))

        result = await pipeline.save_market_info(ManualInput(content=NEWS))

        assert result.outcome == IngestionOutcome.FAILED
        assert result.info.failure_reason.startswith("KeyError")

    @pytest.mark.asyncio
    async def test_failed_record_keeps_caller_links_only(self, build_pipeline):
        pipeline = build_pipeline(FakeAnalyzer(error=AnalysisFailure("bad reply")))

        result = await pipeline.save_market_info(ManualInput(content=NEWS, symbols=["NVDA"]))

        assert result.linked_symbols == ["NVDA"]


# -----------------------------------------------------------------------
# De-duplication
# -----------------------------------------------------------------------

class TestDuplicates:
    @pytest.mark.asyncio
    async def test_same_content_is_skipped_and_tags_merged(self, build_pipeline, info_repo):
        analyzer = FakeAnalyzer()
        pipeline = build_pipeline(analyzer)

        first = await pipeline.save_market_info(ManualInput(content=NEWS, tags=["earnings"]))
        second = await pipeline.save_market_info(ManualInput(content=NEWS, tags=["apple", "earnings"]))

        assert second.outcome == IngestionOutcome.DUPLICATE_SKIPPED
        assert second.info_id == first.info_id
        assert info_repo.get_by_id(first.info_id).tags == ["earnings", "apple"]
        assert len(analyzer.calls) == 1

    @pytest.mark.asyncio
    async def test_reformatted_copy_counts_as_duplicate(self, build_pipeline):
        pipeline = build_pipeline()

        first = await pipeline.save_market_info(ManualInput(content=NEWS))
        second = await pipeline.save_market_info(ManualInput(content="  " + NEWS.upper().replace(" ", "\n  ")))

        assert second.outcome == IngestionOutcome.DUPLICATE_SKIPPED
        assert second.info_id == first.info_id

    @pytest.mark.asyncio
    async def test_same_content_from_another_source_is_not_a_duplicate(self, build_pipeline):
        pipeline = build_pipeline()

        first = await pipeline.save_market_info(ManualInput(content=NEWS))
        second = await pipeline.save_market_info(
            ManualInput(content=NEWS, source_name="reuters", source_url="https://reuters.com/a")
        )

        assert second.outcome == IngestionOutcome.PROCESSED
        assert second.info_id != first.info_id

    @pytest.mark.asyncio
    async def test_concurrent_submissions_create_one_record(self, build_pipeline, info_repo):
        analyzer = FakeAnalyzer(delay=0.05)
        pipeline = build_pipeline(analyzer)

        results = await asyncio.gather(*(pipeline.save_market_info(ManualInput(content=NEWS)) for _ in range(3)))

        assert len({r.info_id for r in results}) == 1
        assert sorted(r.outcome.value for r in results) == ["duplicate_skipped", "duplicate_skipped", "processed"]
        assert len(info_repo.list()) == 1

    @pytest.mark.asyncio
    async def test_failed_content_is_not_treated_as_duplicate(self, build_pipeline, info_repo):
        failing = build_pipeline(FakeAnalyzer(error=AnalysisFailure("bad reply")))
        first = await failing.save_market_info(ManualInput(content=NEWS))

        working = build_pipeline(FakeAnalyzer())
        second = await working.save_market_info(ManualInput(content=NEWS))

        assert second.outcome == IngestionOutcome.PROCESSED
        assert second.info_id != first.info_id
        assert info_repo.get_by_id(first.info_id).status == InformationStatus.FAILED


# -----------------------------------------------------------------------
# Resubmission
# -----------------------------------------------------------------------

class TestResubmit:
    @pytest.mark.asyncio
    async def test_resubmit_creates_a_new_attempt(self, build_pipeline, info_repo):
        analyzer = FakeAnalyzer(error=AnalysisFailure("bad reply"))
        pipeline = build_pipeline(analyzer)
        failed = await pipeline.save_market_info(ManualInput(content=NEWS, tags=["earnings"], symbols=["AAPL"]))

        analyzer.error = None
        retried = await pipeline.resubmit(failed.info_id)

        assert retried.outcome == IngestionOutcome.PROCESSED
        assert retried.info_id != failed.info_id
        assert retried.info.attempt_of == failed.info_id
        assert retried.info.tags == ["earnings"]
        assert "AAPL" in retried.linked_symbols
        assert info_repo.get_by_id(failed.info_id).status == InformationStatus.FAILED

    @pytest.mark.asyncio
    async def test_only_failed_records_can_be_resubmitted(self, build_pipeline):
        pipeline = build_pipeline()
        processed = await pipeline.save_market_info(ManualInput(content=NEWS))

        with pytest.raises(ValidationError):
            await pipeline.resubmit(processed.info_id)

    @pytest.mark.asyncio
    async def test_resubmit_unknown_record(self, build_pipeline):
        with pytest.raises(NotFoundError):
            await build_pipeline().resubmit(999)


# -----------------------------------------------------------------------
# Crawl intake
# -----------------------------------------------------------------------

class TestCrawl:
    @pytest.mark.asyncio
    async def test_crawled_page_is_stored_with_its_source(self, build_pipeline):
        fetcher = FakeFetcher(text=NEWS)
        pipeline = build_pipeline(fetcher=fetcher)

        result = await pipeline.crawl_market_info("https://news.example.com/apple", tags=["web"])

        assert result.outcome == IngestionOutcome.PROCESSED
        assert result.info.source_type == "web"
        assert result.info.source_name == "news.example.com"
        assert result.info.source_url == "https://news.example.com/apple"
        assert result.info.title == "Example headline"

    @pytest.mark.asyncio
    async def test_page_without_enough_text_is_rejected(self, build_pipeline, info_repo):
        pipeline = build_pipeline(fetcher=FakeFetcher(text="Subscribe to read"))

        with pytest.raises(ValidationError):
            await pipeline.crawl_market_info("https://news.example.com/paywalled")

        assert info_repo.list() == []

    @pytest.mark.asyncio
    async def test_fetch_error_stores_nothing(self, build_pipeline, info_repo):
        pipeline = build_pipeline(fetcher=FakeFetcher(error=ProviderUnavailable("web", "HTTP 503")))

        with pytest.raises(ProviderUnavailable):
            await pipeline.crawl_market_info("https://news.example.com/down")

        assert info_repo.list() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["", "news.example.com/a", "ftp://news.example.com/a"])
    async def test_invalid_url_is_rejected(self, build_pipeline, url):
        fetcher = FakeFetcher(text=NEWS)

        with pytest.raises(ValidationError):
            await build_pipeline(fetcher=fetcher).crawl_market_info(url)

        assert fetcher.calls == []


# -----------------------------------------------------------------------
# Input validation, housekeeping and reads
# -----------------------------------------------------------------------

class TestHousekeeping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("item", [
        ManualInput(content="   "),
        ManualInput(content=NEWS, content_format="pdf"),
        ManualInput(content=NEWS, source_url="not a url"),
    ])
    async def test_bad_manual_input_is_rejected(self, build_pipeline, info_repo, item):
        with pytest.raises(ValidationError):
            await build_pipeline().save_market_info(item)

        assert info_repo.list() == []

    @pytest.mark.asyncio
    async def test_stale_pending_records_are_failed(self, build_pipeline, info_repo):
        stale = info_repo.create_pending(MarketInformation(
            title="stuck",
            content=NEWS,
            content_fingerprint=content_fingerprint(NEWS),
            created_at=utc_now() - timedelta(hours=2),
        ))
        fresh = info_repo.create_pending(MarketInformation(
            title="fresh",
            content=NEWS + " more",
            content_fingerprint=content_fingerprint(NEWS + " more"),
        ))

        count = await build_pipeline().fail_stale_pending()

        assert count == 1
        assert info_repo.get_by_id(stale.id).status == InformationStatus.FAILED
        assert info_repo.get_by_id(stale.id).failure_reason == "analysis timed out"
        assert info_repo.get_by_id(fresh.id).status == InformationStatus.PENDING

    @pytest.mark.asyncio
    async def test_list_filters_by_tag_and_delete_by_tag(self, build_pipeline):
        pipeline = build_pipeline()
        await pipeline.save_market_info(ManualInput(content=NEWS, tags=["earnings"]))
        await pipeline.save_market_info(ManualInput(content=NEWS + " Guidance raised.", tags=["guidance"]))

        tagged = await pipeline.list_market_info(tag="earnings")
        assert [i.tags for i in tagged] == [["earnings"]]

        assert await pipeline.delete_by_tag("earnings") == 1
        remaining = await pipeline.list_market_info()
        assert [i.tags for i in remaining] == [["guidance"]]

    @pytest.mark.asyncio
    async def test_get_and_delete_single_record(self, build_pipeline):
        pipeline = build_pipeline()
        result = await pipeline.save_market_info(ManualInput(content=NEWS))

        info, symbols = await pipeline.get_market_info(result.info_id)
        assert info.id == result.info_id
        assert symbols == ["AAPL"]

        assert await pipeline.delete_market_info(result.info_id) is True
        with pytest.raises(NotFoundError):
            await pipeline.get_market_info(result.info_id)

    @pytest.mark.asyncio
    async def test_delete_keeps_later_attempts(self, build_pipeline, info_repo):
        analyzer = FakeAnalyzer(error=AnalysisFailure("bad reply"))
        pipeline = build_pipeline(analyzer)
        failed = await pipeline.save_market_info(ManualInput(content=NEWS))
        analyzer.error = None
        retried = await pipeline.resubmit(failed.info_id)

        assert await pipeline.delete_market_info(failed.info_id) is True

        survivor = info_repo.get_by_id(retried.info_id)
        assert survivor.status == InformationStatus.PROCESSED
        assert survivor.attempt_of is None
