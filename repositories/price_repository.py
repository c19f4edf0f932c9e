"""
Price Repository - data access layer for daily PricePoint bars.
"""

from typing import Literal, Optional, List
from datetime import date
from sqlmodel import Session, select, func

from models import PricePoint, utc_now
from repositories.base import BaseRepository

UpsertOutcome = Literal["inserted", "updated"]


class PriceRepository(BaseRepository):
    """Repository for PricePoint reads and keyed upserts."""

    def upsert(self, point: PricePoint, session: Optional[Session] = None) -> UpsertOutcome:
        """
        Save or update a daily price bar.
        Uses upsert logic: if a row exists for symbol + date, overwrite its
        OHLCV; otherwise insert.

        Args:
            point: Bar to store
            session: Optional existing session for transaction reuse

        Returns:
            "inserted" or "updated"
        """
        def _upsert(sess: Session) -> UpsertOutcome:
            statement = select(PricePoint).where(
                PricePoint.symbol == point.symbol,
                PricePoint.price_date == point.price_date
            )
            existing = sess.exec(statement).first()

            if existing:
                existing.open_cents = point.open_cents
                existing.high_cents = point.high_cents
                existing.low_cents = point.low_cents
                existing.close_cents = point.close_cents
                existing.volume = point.volume
                existing.market = point.market
                existing.source = point.source
                existing.updated_at = utc_now()
                sess.add(existing)
                return "updated"

            sess.add(point)
            return "inserted"

        return self._run(_upsert, session, write=True)

    def get_range(
        self,
        symbol: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        session: Optional[Session] = None
    ) -> List[PricePoint]:
        """
        Get bars for a symbol within [start, end], oldest first.
        """
        def _range(sess: Session) -> List[PricePoint]:
            statement = select(PricePoint).where(PricePoint.symbol == symbol)
            if start is not None:
                statement = statement.where(PricePoint.price_date >= start)
            if end is not None:
                statement = statement.where(PricePoint.price_date <= end)
            statement = statement.order_by(PricePoint.price_date)
            return list(sess.exec(statement).all())

        return self._run(_range, session)

    def get_by_date(self, symbol: str, price_date: date, session: Optional[Session] = None) -> Optional[PricePoint]:
        def _get(sess: Session) -> Optional[PricePoint]:
            statement = select(PricePoint).where(
                PricePoint.symbol == symbol,
                PricePoint.price_date == price_date
            )
            return sess.exec(statement).first()

        return self._run(_get, session)

    def get_latest(self, symbol: str, session: Optional[Session] = None) -> Optional[PricePoint]:
        """Get the most recent bar for a symbol."""
        def _latest(sess: Session) -> Optional[PricePoint]:
            statement = select(PricePoint).where(
                PricePoint.symbol == symbol
            ).order_by(PricePoint.price_date.desc()).limit(1)
            return sess.exec(statement).first()

        return self._run(_latest, session)

    def get_recent(self, symbol: str, limit: int, session: Optional[Session] = None) -> List[PricePoint]:
        """Get the last `limit` bars for a symbol, oldest first."""
        def _recent(sess: Session) -> List[PricePoint]:
            statement = select(PricePoint).where(
                PricePoint.symbol == symbol
            ).order_by(PricePoint.price_date.desc()).limit(limit)
            return list(reversed(sess.exec(statement).all()))

        return self._run(_recent, session)

    def count(self, symbol: Optional[str] = None, session: Optional[Session] = None) -> int:
        def _count(sess: Session) -> int:
            statement = select(func.count()).select_from(PricePoint)
            if symbol is not None:
                statement = statement.where(PricePoint.symbol == symbol)
            return int(sess.exec(statement).one())

        return self._run(_count, session)

    def list_symbols(self, session: Optional[Session] = None) -> List[str]:
        def _symbols(sess: Session) -> List[str]:
            statement = select(PricePoint.symbol).distinct().order_by(PricePoint.symbol)
            return list(sess.exec(statement).all())

        return self._run(_symbols, session)
