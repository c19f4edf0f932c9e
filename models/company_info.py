"""
AssetCompanyInfo model - company and financial notes attached to an asset.
"""

from typing import Optional
from datetime import datetime
from sqlalchemy import Column, Text
from sqlmodel import SQLModel, Field

from models.common import utc_now


class AssetCompanyInfo(SQLModel, table=True):
    __tablename__ = "asset_company_info"

    id: Optional[int] = Field(default=None, primary_key=True)
    asset_meta_id: int = Field(foreign_key="asset_meta.id", index=True)
    title: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
