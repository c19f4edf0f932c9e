"""
Company Info Repository - notes on a company attached to its AssetMeta.
"""

from typing import Optional, List
from sqlmodel import Session, select

from models import AssetCompanyInfo
from repositories.base import BaseRepository


class CompanyInfoRepository(BaseRepository):

    def add(self, asset_meta_id: int, title: str, content: str, session: Optional[Session] = None) -> AssetCompanyInfo:
        def _create(sess: Session) -> AssetCompanyInfo:
            info = AssetCompanyInfo(asset_meta_id=asset_meta_id, title=title, content=content)
            sess.add(info)
            sess.flush()
            sess.refresh(info)
            return info

        return self._run(_create, session, write=True)

    def get_by_asset(self, asset_meta_id: int, session: Optional[Session] = None) -> List[AssetCompanyInfo]:
        """Notes for an asset, most recently updated first."""
        def _get(sess: Session) -> List[AssetCompanyInfo]:
            statement = select(AssetCompanyInfo).where(
                AssetCompanyInfo.asset_meta_id == asset_meta_id
            ).order_by(AssetCompanyInfo.updated_at.desc(), AssetCompanyInfo.id.desc())
            return list(sess.exec(statement).all())

        return self._run(_get, session)
