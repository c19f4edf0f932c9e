"""
Information ingestion pipeline.

Crawled pages and manual notes enter as PENDING records, are analyzed once,
and end PROCESSED (derived fields populated, mentioned assets linked) or
FAILED (no derived fields, failure reason set). Terminal records never move
again; a FAILED record can be resubmitted as a fresh attempt.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import List, Optional, Sequence, Tuple, assert_never

from sqlmodel import Session

from config import Settings
from errors import AnalysisFailure, NotFoundError, ValidationError
from models import (
    ContentFormat,
    InformationStatus,
    MarketInformation,
    SourceType,
    utc_now,
)
from providers.crawler import WebPageFetcher, extract_main_text, validate_url
from repositories import AssetMetaRepository, MarketInformationRepository, merge_tags
from services.analyzer import AnalysisResult, MarketAnalyzer
from services.common import KeyedLocks, content_fingerprint, infer_market_type

logger = logging.getLogger(__name__)

# Symbols accepted from analyzer output before an AssetMeta is created for them
_SYMBOL_PATTERN = re.compile(r"^[A-Z0-9][A-Z0-9.\-]{0,11}$")

STALE_FAILURE_REASON = "analysis timed out"


class IngestionOutcome(str, Enum):
    PROCESSED = "processed"
    FAILED = "failed"
    DUPLICATE_SKIPPED = "duplicate_skipped"


@dataclass
class IngestionResult:
    """What happened to one submitted item."""
    outcome: IngestionOutcome
    info: MarketInformation
    linked_symbols: List[str] = field(default_factory=list)

    @property
    def info_id(self) -> int:
        return self.info.id


@dataclass
class ManualInput:
    """Caller-supplied market information."""
    content: str
    content_format: str = ContentFormat.TEXT.value
    title: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    symbols: List[str] = field(default_factory=list)
    source_name: str = "manual"
    source_url: Optional[str] = None


def _default_title(content: str, limit: int = 80) -> str:
    first_line = next((line.strip() for line in content.splitlines() if line.strip()), "")
    return first_line if len(first_line) <= limit else first_line[:limit - 3] + "..."


def _terminal_outcome(status: InformationStatus) -> Optional[IngestionOutcome]:
    """Outcome for a terminal status, None while the record is still PENDING."""
    if status is InformationStatus.PENDING:
        return None
    elif status is InformationStatus.PROCESSED:
        return IngestionOutcome.PROCESSED
    elif status is InformationStatus.FAILED:
        return IngestionOutcome.FAILED
    else:
        assert_never(status)


class InformationIngestionPipeline:
    """
    Intake, de-duplication and analysis of market information.

    Intake is serialized per content fingerprint so two submissions of the same
    item cannot both create records. Analysis is serialized per record id.
    """

    def __init__(
        self,
        repository: MarketInformationRepository,
        assets: AssetMetaRepository,
        analyzer: MarketAnalyzer,
        fetcher: WebPageFetcher,
        settings: Settings,
        intake_locks: Optional[KeyedLocks] = None,
        analysis_locks: Optional[KeyedLocks] = None
    ):
        self.repository = repository
        self.assets = assets
        self.analyzer = analyzer
        self.fetcher = fetcher
        self.settings = settings
        self.intake_locks = intake_locks or KeyedLocks("intake")
        self.analysis_locks = analysis_locks or KeyedLocks("analysis")

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def crawl_market_info(
        self,
        url: str,
        tags: Optional[Sequence[str]] = None,
        symbols: Optional[Sequence[str]] = None
    ) -> IngestionResult:
        """
        Fetch a web page, extract its text and ingest it.

        Args:
            url: Absolute http(s) URL
            tags: Tags to attach
            symbols: Symbols the caller already knows the page is about

        Returns:
            IngestionResult

        Raises:
            ValidationError: for an invalid URL or a page without enough text
            ProviderUnavailable: if the page could not be fetched; nothing is stored
        """
        url = validate_url(url)
        page = await self.fetcher.fetch(url)
        if len(page.text) < self.settings.min_content_chars:
            raise ValidationError(
                f"Page at {url} has only {len(page.text)} characters of readable text",
                field="url"
            )

        return await self._intake(
            title=page.title,
            content=page.text,
            content_format=ContentFormat.TEXT.value,
            source_type=SourceType.WEB.value,
            source_name=page.source_name,
            source_url=url,
            tags=list(tags or []),
            symbols=list(symbols or []),
        )

    async def save_market_info(self, item: ManualInput) -> IngestionResult:
        """
        Ingest caller-supplied content.

        Raises:
            ValidationError: for empty content, an unknown format or a bad source URL
        """
        content = (item.content or "").strip()
        if not content:
            raise ValidationError("Content must not be empty", field="content")
        try:
            content_format = ContentFormat(item.content_format).value
        except ValueError:
            raise ValidationError(f"Unsupported content format: {item.content_format}", field="content_format")
        source_url = validate_url(item.source_url) if item.source_url else None

        title = (item.title or "").strip()
        if not title and content_format == ContentFormat.HTML.value:
            html_title, text = extract_main_text(content)
            title = html_title or _default_title(text)
        elif not title:
            title = _default_title(content)

        return await self._intake(
            title=title,
            content=content,
            content_format=content_format,
            source_type=SourceType.MANUAL.value,
            source_name=(item.source_name or "manual").strip(),
            source_url=source_url,
            tags=list(item.tags),
            symbols=list(item.symbols),
        )

    async def _intake(
        self,
        title: str,
        content: str,
        content_format: str,
        source_type: str,
        source_name: str,
        source_url: Optional[str],
        tags: List[str],
        symbols: List[str]
    ) -> IngestionResult:
        fingerprint = content_fingerprint(content)
        tags = merge_tags([], tags)
        symbols = self._clean_symbols(symbols)

        async with self.intake_locks.hold((source_type, source_name, source_url, fingerprint)):
            asset_ids = await self._ensure_assets(symbols)
            existing = await asyncio.to_thread(
                self.repository.find_duplicate, source_type, source_name, source_url, fingerprint
            )
            if existing is not None:
                merged = await asyncio.to_thread(
                    self.repository.merge_tags_and_links, existing.id, tags, asset_ids
                )
                logger.info(f"Duplicate of market information {existing.id} skipped, tags merged")
                linked = await asyncio.to_thread(self.repository.get_linked_assets, existing.id)
                return IngestionResult(
                    outcome=IngestionOutcome.DUPLICATE_SKIPPED,
                    info=merged,
                    linked_symbols=[a.symbol for a in linked],
                )

            info = MarketInformation(
                title=title,
                source_type=source_type,
                source_name=source_name,
                source_url=source_url,
                content=content,
                content_format=content_format,
                content_fingerprint=fingerprint,
                tags=tags,
                symbol=symbols[0] if symbols else None,
            )
            info = await asyncio.to_thread(self.repository.create_pending, info)
            if asset_ids:
                await asyncio.to_thread(self.repository.link_assets, info.id, asset_ids)
            logger.info(f"Market information {info.id} stored as PENDING ({source_type}: {title[:60]})")

        return await self.analyze(info.id)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def analyze(self, info_id: int) -> IngestionResult:
        """
        Analyze a PENDING record and move it to PROCESSED or FAILED.

        Analyzer errors and timeouts mark the record FAILED and are not raised.
        Calling this on a terminal record returns its current outcome unchanged.

        Raises:
            NotFoundError: if the record does not exist
        """
        async with self.analysis_locks.hold(info_id):
            info = await asyncio.to_thread(self.repository.get_by_id, info_id)
            if info is None:
                raise NotFoundError("MarketInformation", info_id)

            outcome = _terminal_outcome(info.status)
            if outcome is not None:
                return await self._result(outcome, info_id)

            tracked = [asset.symbol for asset in await asyncio.to_thread(self.assets.get_all)]
            text = extract_main_text(info.content)[1] if info.content_format == ContentFormat.HTML.value else info.content
            timeout = self.settings.analysis_timeout_seconds

            try:
                analysis = await asyncio.wait_for(self.analyzer.analyze(info.title, text, tracked), timeout=timeout)
            except asyncio.TimeoutError:
                return await self._fail(info_id, f"analysis timed out after {timeout:g}s")
            except AnalysisFailure as e:
                return await self._fail(info_id, str(e))
            except Exception as e:
                # Any analyzer bug fails this one item only
                logger.exception(f"Analyzer raised for market information {info_id}")
                return await self._fail(info_id, f"{type(e).__name__}: {e}")

            return await self._complete(info, analysis)

    async def _complete(self, info: MarketInformation, analysis: AnalysisResult) -> IngestionResult:
        mentioned = [s for s in analysis.mentioned_symbols() if _SYMBOL_PATTERN.match(s)]
        values = {
            "sentiment": analysis.sentiment,
            "importance": analysis.importance,
            "summary": analysis.summary,
            "market_impact": analysis.market_impact,
            "key_topics": analysis.key_topics,
            "key_data_points": analysis.key_data_points,
            "symbol": info.symbol or (mentioned[0] if mentioned else None),
            "failure_reason": None,
            "processed_at": utc_now(),
        }

        def _apply() -> bool:
            with Session(self.repository.engine, expire_on_commit=False) as sess:
                moved = self.repository.transition_from_pending(
                    info.id, InformationStatus.PROCESSED, values, session=sess
                )
                if moved and mentioned:
                    asset_ids = [
                        self.assets.get_or_create(symbol, infer_market_type(symbol), session=sess).id
                        for symbol in mentioned
                    ]
                    self.repository.link_assets(info.id, asset_ids, session=sess)
                sess.commit()
                return moved

        moved = await asyncio.to_thread(_apply)
        if not moved:
            logger.warning(f"Market information {info.id} left PENDING before analysis finished")
            current = await asyncio.to_thread(self.repository.get_by_id, info.id)
            return await self._result(_terminal_outcome(current.status) or IngestionOutcome.FAILED, info.id)

        logger.info(f"Market information {info.id} PROCESSED: {analysis.sentiment}, importance {analysis.importance}")
        return await self._result(IngestionOutcome.PROCESSED, info.id)

    async def _fail(self, info_id: int, reason: str) -> IngestionResult:
        moved = await asyncio.to_thread(
            self.repository.transition_from_pending,
            info_id,
            InformationStatus.FAILED,
            {"failure_reason": reason[:500]},
        )
        if moved:
            logger.warning(f"Market information {info_id} FAILED: {reason}")
        current = await asyncio.to_thread(self.repository.get_by_id, info_id)
        return await self._result(_terminal_outcome(current.status) or IngestionOutcome.FAILED, info_id)

    async def _result(self, outcome: IngestionOutcome, info_id: int) -> IngestionResult:
        info = await asyncio.to_thread(self.repository.get_by_id, info_id)
        linked = await asyncio.to_thread(self.repository.get_linked_assets, info_id)
        return IngestionResult(outcome=outcome, info=info, linked_symbols=[a.symbol for a in linked])

    async def resubmit(self, info_id: int) -> IngestionResult:
        """
        Start a fresh analysis attempt for a FAILED record.

        The FAILED record is left as it is; the new attempt references it
        through attempt_of and inherits its tags and asset links.

        Raises:
            NotFoundError: if the record does not exist
            ValidationError: if the record is not FAILED
        """
        failed = await asyncio.to_thread(self.repository.get_by_id, info_id)
        if failed is None:
            raise NotFoundError("MarketInformation", info_id)
        if failed.status is not InformationStatus.FAILED:
            raise ValidationError(
                f"Only FAILED records can be resubmitted, {info_id} is {failed.status.value}",
                field="status"
            )

        attempt = MarketInformation(
            title=failed.title,
            source_type=failed.source_type,
            source_name=failed.source_name,
            source_url=failed.source_url,
            content=failed.content,
            content_format=failed.content_format,
            content_fingerprint=failed.content_fingerprint,
            tags=list(failed.tags or []),
            symbol=failed.symbol,
            attempt_of=failed.id,
        )
        attempt = await asyncio.to_thread(self.repository.create_pending, attempt)
        linked = await asyncio.to_thread(self.repository.get_linked_assets, failed.id)
        if linked:
            await asyncio.to_thread(self.repository.link_assets, attempt.id, [a.id for a in linked])
        logger.info(f"Resubmitted market information {info_id} as {attempt.id}")
        return await self.analyze(attempt.id)

    # ------------------------------------------------------------------
    # Housekeeping and reads
    # ------------------------------------------------------------------

    async def fail_stale_pending(self, max_age_minutes: Optional[int] = None) -> int:
        """Mark PENDING records older than the configured age FAILED so none stay pending forever."""
        minutes = max_age_minutes if max_age_minutes is not None else self.settings.pending_stale_minutes
        cutoff = utc_now() - timedelta(minutes=minutes)
        count = await asyncio.to_thread(self.repository.fail_stale_pending, cutoff, STALE_FAILURE_REASON)
        if count:
            logger.warning(f"Marked {count} stale PENDING market information records FAILED")
        return count

    async def list_market_info(
        self,
        limit: int = 20,
        offset: int = 0,
        tag: Optional[str] = None,
        status: Optional[InformationStatus] = None,
        source_type: Optional[str] = None
    ) -> List[MarketInformation]:
        if limit <= 0 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative", field="limit")
        return await asyncio.to_thread(
            self.repository.list, limit, offset, tag, status, source_type
        )

    async def get_market_info(self, info_id: int) -> Tuple[MarketInformation, List[str]]:
        """
        Raises:
            NotFoundError: if the record does not exist
        """
        info = await asyncio.to_thread(self.repository.get_by_id, info_id)
        if info is None:
            raise NotFoundError("MarketInformation", info_id)
        linked = await asyncio.to_thread(self.repository.get_linked_assets, info_id)
        return info, [a.symbol for a in linked]

    async def delete_market_info(self, info_id: int) -> bool:
        deleted = await asyncio.to_thread(self.repository.delete, info_id)
        if deleted:
            logger.info(f"Deleted market information {info_id}")
        return deleted

    async def delete_by_tag(self, tag: str) -> int:
        tag = (tag or "").strip()
        if not tag:
            raise ValidationError("Tag must not be empty", field="tag")
        count = await asyncio.to_thread(self.repository.delete_by_tag, tag)
        logger.info(f"Deleted {count} market information records tagged '{tag}'")
        return count

    # ------------------------------------------------------------------

    @staticmethod
    def _clean_symbols(symbols: Sequence[str]) -> List[str]:
        cleaned = (s.strip().upper() for s in symbols if s and s.strip())
        return list(dict.fromkeys(s for s in cleaned if _SYMBOL_PATTERN.match(s)))

    async def _ensure_assets(self, symbols: List[str]) -> List[int]:
        ids = []
        for symbol in symbols:
            asset = await asyncio.to_thread(self.assets.get_or_create, symbol, infer_market_type(symbol))
            ids.append(asset.id)
        return ids
