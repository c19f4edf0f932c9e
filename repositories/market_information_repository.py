"""
MarketInformation Repository - persistence for ingested market information.

Status changes go through compare-and-set updates guarded by
``status = PENDING`` so a terminal record can never be moved again.
"""

from typing import Any, Dict, Iterable, List, Optional
from datetime import datetime
from sqlalchemy import update, delete
from sqlmodel import Session, select

from models import (
    AssetMeta,
    InformationStatus,
    MarketInformation,
    MarketInformationAssetLink,
    utc_now,
)
from repositories.base import BaseRepository


def merge_tags(existing: Iterable[str], extra: Iterable[str]) -> List[str]:
    """Union two tag lists, keeping first-seen order and dropping blanks."""
    merged: List[str] = []
    for tag in list(existing) + list(extra):
        tag = tag.strip()
        if tag and tag not in merged:
            merged.append(tag)
    return merged


class MarketInformationRepository(BaseRepository):
    """Repository for MarketInformation records and their asset links."""

    def create_pending(self, info: MarketInformation, session: Optional[Session] = None) -> MarketInformation:
        """
        Insert a new record in PENDING state.

        Args:
            info: Unsaved record; status and derived fields are reset
            session: Optional existing session for transaction reuse

        Returns:
            The stored record with its id
        """
        def _create(sess: Session) -> MarketInformation:
            info.status = InformationStatus.PENDING
            info.sentiment = None
            info.importance = None
            info.summary = None
            info.market_impact = None
            info.key_topics = None
            info.key_data_points = None
            info.failure_reason = None
            info.processed_at = None
            sess.add(info)
            sess.flush()
            sess.refresh(info)
            return info

        return self._run(_create, session, write=True)

    def get_by_id(self, info_id: int, session: Optional[Session] = None) -> Optional[MarketInformation]:
        return self._run(lambda sess: sess.get(MarketInformation, info_id), session)

    def find_duplicate(
        self,
        source_type: str,
        source_name: str,
        source_url: Optional[str],
        fingerprint: str,
        session: Optional[Session] = None
    ) -> Optional[MarketInformation]:
        """
        Find a live (non-FAILED) record with the same source reference and content.

        FAILED records are excluded so resubmitting failed content starts a
        fresh attempt instead of being skipped.
        """
        def _find(sess: Session) -> Optional[MarketInformation]:
            statement = select(MarketInformation).where(
                MarketInformation.source_type == source_type,
                MarketInformation.source_name == source_name,
                MarketInformation.content_fingerprint == fingerprint,
                MarketInformation.status != InformationStatus.FAILED,
            )
            if source_url is None:
                statement = statement.where(MarketInformation.source_url.is_(None))
            else:
                statement = statement.where(MarketInformation.source_url == source_url)
            return sess.exec(statement.order_by(MarketInformation.id).limit(1)).first()

        return self._run(_find, session)

    def merge_tags_and_links(
        self,
        info_id: int,
        tags: Iterable[str],
        asset_ids: Iterable[int],
        session: Optional[Session] = None
    ) -> MarketInformation:
        """Merge extra tags and asset links into an existing record without touching its status."""
        tags = list(tags)
        asset_ids = list(asset_ids)

        def _merge(sess: Session) -> MarketInformation:
            info = sess.get(MarketInformation, info_id)
            merged = merge_tags(info.tags or [], tags)
            if merged != list(info.tags or []):
                # Reassign so the JSON column is marked dirty
                info.tags = merged
                info.updated_at = utc_now()
                sess.add(info)
            self._add_links(sess, info_id, asset_ids)
            return info

        return self._run(_merge, session, write=True)

    def link_assets(self, info_id: int, asset_ids: Iterable[int], session: Optional[Session] = None) -> int:
        """Create missing links; returns how many were added."""
        asset_ids = list(asset_ids)
        return self._run(lambda sess: self._add_links(sess, info_id, asset_ids), session, write=True)

    @staticmethod
    def _add_links(sess: Session, info_id: int, asset_ids: List[int]) -> int:
        existing = set(sess.exec(
            select(MarketInformationAssetLink.asset_meta_id).where(
                MarketInformationAssetLink.market_information_id == info_id
            )
        ).all())
        added = 0
        for asset_id in dict.fromkeys(asset_ids):
            if asset_id in existing:
                continue
            sess.add(MarketInformationAssetLink(market_information_id=info_id, asset_meta_id=asset_id))
            added += 1
        return added

    def get_linked_assets(self, info_id: int, session: Optional[Session] = None) -> List[AssetMeta]:
        def _linked(sess: Session) -> List[AssetMeta]:
            statement = select(AssetMeta).join(
                MarketInformationAssetLink,
                MarketInformationAssetLink.asset_meta_id == AssetMeta.id
            ).where(
                MarketInformationAssetLink.market_information_id == info_id
            ).order_by(AssetMeta.symbol)
            return list(sess.exec(statement).all())

        return self._run(_linked, session)

    def transition_from_pending(
        self,
        info_id: int,
        new_status: InformationStatus,
        values: Dict[str, Any],
        session: Optional[Session] = None
    ) -> bool:
        """
        Atomically move a PENDING record to a terminal status.

        Args:
            info_id: Record id
            new_status: PROCESSED or FAILED
            values: Column values written together with the status
            session: Optional existing session for transaction reuse

        Returns:
            True if the record was PENDING and has been moved, False otherwise
        """
        def _transition(sess: Session) -> bool:
            now = utc_now()
            statement = update(MarketInformation).where(
                MarketInformation.id == info_id,
                MarketInformation.status == InformationStatus.PENDING,
            ).values(status=new_status, updated_at=now, **values)
            result = sess.connection().execute(statement)
            return result.rowcount == 1

        return self._run(_transition, session, write=True)

    def fail_stale_pending(self, older_than: datetime, reason: str, session: Optional[Session] = None) -> int:
        """Mark PENDING records created before `older_than` as FAILED. Returns the count."""
        def _fail(sess: Session) -> int:
            statement = update(MarketInformation).where(
                MarketInformation.status == InformationStatus.PENDING,
                MarketInformation.created_at < older_than,
            ).values(status=InformationStatus.FAILED, failure_reason=reason, updated_at=utc_now())
            return sess.connection().execute(statement).rowcount

        return self._run(_fail, session, write=True)

    def list(
        self,
        limit: int = 20,
        offset: int = 0,
        tag: Optional[str] = None,
        status: Optional[InformationStatus] = None,
        source_type: Optional[str] = None,
        symbol: Optional[str] = None,
        session: Optional[Session] = None
    ) -> List[MarketInformation]:
        """
        List records newest first.

        Tags live in a JSON column, so the tag filter is applied after the
        query and pagination follows it.
        """
        def _list(sess: Session) -> List[MarketInformation]:
            statement = select(MarketInformation)
            if status is not None:
                statement = statement.where(MarketInformation.status == status)
            if source_type is not None:
                statement = statement.where(MarketInformation.source_type == source_type)
            if symbol is not None:
                statement = statement.where(MarketInformation.symbol == symbol)
            statement = statement.order_by(MarketInformation.created_at.desc(), MarketInformation.id.desc())

            if tag is None:
                return list(sess.exec(statement.offset(offset).limit(limit)).all())

            matching = [info for info in sess.exec(statement).all() if tag in (info.tags or [])]
            return matching[offset:offset + limit]

        return self._run(_list, session)

    def list_for_asset(self, asset_id: int, limit: int = 10, session: Optional[Session] = None) -> List[MarketInformation]:
        """Processed records linked to an asset, newest first."""
        def _list(sess: Session) -> List[MarketInformation]:
            statement = select(MarketInformation).join(
                MarketInformationAssetLink,
                MarketInformationAssetLink.market_information_id == MarketInformation.id
            ).where(
                MarketInformationAssetLink.asset_meta_id == asset_id,
                MarketInformation.status == InformationStatus.PROCESSED,
            ).order_by(MarketInformation.created_at.desc(), MarketInformation.id.desc()).limit(limit)
            return list(sess.exec(statement).all())

        return self._run(_list, session)

    def delete(self, info_id: int, session: Optional[Session] = None) -> bool:
        def _delete(sess: Session) -> bool:
            info = sess.get(MarketInformation, info_id)
            if info is None:
                return False
            self._delete_rows(sess, [info_id])
            return True

        return self._run(_delete, session, write=True)

    def delete_by_tag(self, tag: str, session: Optional[Session] = None) -> int:
        def _delete(sess: Session) -> int:
            ids = [
                info.id for info in sess.exec(select(MarketInformation)).all()
                if tag in (info.tags or [])
            ]
            self._delete_rows(sess, ids)
            return len(ids)

        return self._run(_delete, session, write=True)

    @staticmethod
    def _delete_rows(sess: Session, ids: List[int]):
        if not ids:
            return
        conn = sess.connection()
        conn.execute(delete(MarketInformationAssetLink).where(
            MarketInformationAssetLink.market_information_id.in_(ids)
        ))
        # Later attempts keep pointing at nothing rather than blocking the delete
        conn.execute(update(MarketInformation).where(
            MarketInformation.attempt_of.in_(ids)
        ).values(attempt_of=None))
        conn.execute(delete(MarketInformation).where(MarketInformation.id.in_(ids)))
