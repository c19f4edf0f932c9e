"""
AssetMeta Repository - data access layer for tracked instruments.
"""

from typing import Optional, List
from sqlalchemy.exc import IntegrityError
from sqlalchemy import delete, func
from sqlmodel import Session, select

from errors import NotFoundError, ValidationError
from models import (
    AssetCompanyInfo,
    AssetMeta,
    MarketInformationAssetLink,
    Position,
    MARKET_CURRENCY_MAP,
    utc_now,
)
from repositories.base import BaseRepository


def _same_symbol(symbol: str):
    # Exact match ignoring case; LIKE would treat _ and % in symbols as wildcards
    return func.lower(AssetMeta.symbol) == symbol.lower()


class AssetMetaRepository(BaseRepository):
    """Repository for AssetMeta CRUD operations."""

    def get_by_symbol(self, symbol: str, session: Optional[Session] = None) -> Optional[AssetMeta]:
        """
        Retrieve an asset by symbol (case-insensitive).

        Args:
            symbol: Symbol to search for
            session: Optional existing session for transaction reuse

        Returns:
            AssetMeta or None if not found
        """
        def _get(sess: Session) -> Optional[AssetMeta]:
            statement = select(AssetMeta).where(_same_symbol(symbol))
            return sess.exec(statement).first()

        return self._run(_get, session)

    def get_by_id(self, asset_id: int, session: Optional[Session] = None) -> Optional[AssetMeta]:
        return self._run(lambda sess: sess.get(AssetMeta, asset_id), session)

    def get_all(self, session: Optional[Session] = None) -> List[AssetMeta]:
        def _get_all(sess: Session) -> List[AssetMeta]:
            return list(sess.exec(select(AssetMeta).order_by(AssetMeta.symbol)).all())

        return self._run(_get_all, session)

    def search(self, query: str, limit: int = 10, session: Optional[Session] = None) -> List[AssetMeta]:
        """
        Find assets whose symbol or name contains the query text.

        Args:
            query: Free text, matched case-insensitively
            limit: Maximum number of results
            session: Optional existing session for transaction reuse

        Returns:
            Matching assets, exact symbol matches first
        """
        pattern = f"%{query.strip()}%"

        def _search(sess: Session) -> List[AssetMeta]:
            statement = select(AssetMeta).where(
                AssetMeta.symbol.ilike(pattern) | AssetMeta.name.ilike(pattern)
            ).limit(limit)
            results = list(sess.exec(statement).all())
            results.sort(key=lambda a: (a.symbol.upper() != query.strip().upper(), a.symbol))
            return results

        return self._run(_search, session)

    def get_or_create(
        self,
        symbol: str,
        market: str = "US",
        asset_type: str = "stock",
        name: Optional[str] = None,
        session: Optional[Session] = None
    ) -> AssetMeta:
        """
        Return the AssetMeta for a symbol, creating it on first reference.

        Args:
            symbol: Instrument symbol
            market: Market code used when creating
            asset_type: Asset type used when creating
            name: Display name used when creating
            session: Optional existing session for transaction reuse

        Returns:
            Existing or newly created AssetMeta
        """
        def _get_or_create(sess: Session) -> AssetMeta:
            existing = sess.exec(select(AssetMeta).where(_same_symbol(symbol))).first()
            if existing:
                return existing
            asset = AssetMeta(
                symbol=symbol,
                market=market,
                asset_type=asset_type,
                name=name or symbol,
                currency=MARKET_CURRENCY_MAP.get(market, "USD"),
            )
            sess.add(asset)
            sess.flush()
            sess.refresh(asset)
            return asset

        if session is not None:
            return self._run(_get_or_create, session, write=True)
        try:
            return self._run(_get_or_create, write=True)
        except IntegrityError:
            # Lost a race with a concurrent insert of the same symbol
            existing = self.get_by_symbol(symbol)
            if existing is None:
                raise
            return existing

    def update_price(
        self,
        symbol: str,
        price_cents: int,
        source: str,
        name: Optional[str] = None,
        session: Optional[Session] = None
    ) -> AssetMeta:
        """Store the latest quote on the asset row."""
        def _update(sess: Session) -> AssetMeta:
            asset = sess.exec(select(AssetMeta).where(_same_symbol(symbol))).first()
            if asset is None:
                raise NotFoundError("Asset", symbol)
            asset.price_cents = price_cents
            asset.source = source
            if name and (not asset.name or asset.name == asset.symbol):
                asset.name = name
            asset.updated_at = utc_now()
            sess.add(asset)
            return asset

        return self._run(_update, session, write=True)

    def update_memo(self, symbol: str, memo: Optional[str], session: Optional[Session] = None) -> AssetMeta:
        def _update(sess: Session) -> AssetMeta:
            asset = sess.exec(select(AssetMeta).where(_same_symbol(symbol))).first()
            if asset is None:
                raise NotFoundError("Asset", symbol)
            asset.investment_memo = memo
            asset.updated_at = utc_now()
            sess.add(asset)
            return asset

        return self._run(_update, session, write=True)

    def delete(self, symbol: str, session: Optional[Session] = None) -> bool:
        """
        Delete an asset that no position references, with its information
        links and company profiles.

        Raises:
            ValidationError: if an open position still holds the symbol
        """
        def _delete(sess: Session) -> bool:
            asset = sess.exec(select(AssetMeta).where(_same_symbol(symbol))).first()
            if asset is None:
                return False
            held = sess.exec(select(Position).where(Position.symbol == asset.symbol)).first()
            if held is not None:
                raise ValidationError(f"Asset {asset.symbol} is held by an open position", field="symbol")
            conn = sess.connection()
            conn.execute(delete(MarketInformationAssetLink).where(
                MarketInformationAssetLink.asset_meta_id == asset.id
            ))
            conn.execute(delete(AssetCompanyInfo).where(AssetCompanyInfo.asset_meta_id == asset.id))
            sess.delete(asset)
            return True

        return self._run(_delete, session, write=True)
