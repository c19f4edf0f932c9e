"""
MarketInformation model - crawled or manually entered market news and notes.
"""

from enum import Enum
from typing import List, Optional
from datetime import datetime
from sqlalchemy import Column, JSON, Text, UniqueConstraint
from sqlmodel import SQLModel, Field

from models.common import utc_now


class InformationStatus(str, Enum):
    """Processing state. PROCESSED and FAILED are terminal."""
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class SourceType(str, Enum):
    WEB = "web"
    MANUAL = "manual"


class ContentFormat(str, Enum):
    TEXT = "text"
    MARKDOWN = "markdown"
    HTML = "html"


class MarketInformation(SQLModel, table=True):
    """
    A piece of market information and, once analyzed, its derived fields.

    Derived fields (sentiment, importance, summary, market_impact, key_topics,
    key_data_points) are only set on PROCESSED records. failure_reason is only
    set on FAILED records.
    """
    __tablename__ = "market_information"

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    source_type: str = Field(default=SourceType.MANUAL.value, index=True)
    source_name: str = Field(default="")
    source_url: Optional[str] = Field(default=None, index=True)
    content: str = Field(sa_column=Column(Text, nullable=False))
    content_format: str = Field(default=ContentFormat.TEXT.value)
    content_fingerprint: str = Field(index=True)
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    symbol: Optional[str] = Field(default=None, index=True)  # Primary symbol for display
    status: InformationStatus = Field(default=InformationStatus.PENDING, index=True)

    # Derived by analysis
    sentiment: Optional[str] = Field(default=None)  # "positive", "negative", "neutral"
    importance: Optional[int] = Field(default=None)  # 1-10
    summary: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    market_impact: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    key_topics: Optional[List[str]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    key_data_points: Optional[List[str]] = Field(default=None, sa_column=Column(JSON, nullable=True))

    failure_reason: Optional[str] = Field(default=None)
    attempt_of: Optional[int] = Field(default=None, foreign_key="market_information.id")

    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now)
    processed_at: Optional[datetime] = Field(default=None)


class MarketInformationAssetLink(SQLModel, table=True):
    """Many-to-many link between market information and the assets it mentions."""
    __tablename__ = "market_information_asset_link"
    __table_args__ = (
        UniqueConstraint("market_information_id", "asset_meta_id", name="uq_info_asset_link"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    market_information_id: int = Field(foreign_key="market_information.id", index=True)
    asset_meta_id: int = Field(foreign_key="asset_meta.id", index=True)
