"""
Account Repository - data access layer for accounts and their positions.
"""

from typing import Optional, List
from sqlmodel import Session, select

from models import Account, Position, utc_now
from repositories.base import BaseRepository


class AccountRepository(BaseRepository):
    """Repository for Account and Position operations."""

    def add(
        self,
        name: str,
        currency: str = "USD",
        cash_balance_cents: int = 0,
        session: Optional[Session] = None
    ) -> Account:
        """
        Create an account.

        Args:
            name: Display name
            currency: Account currency
            cash_balance_cents: Opening cash balance in minor units
            session: Optional existing session for transaction reuse

        Returns:
            Created Account
        """
        def _create(sess: Session) -> Account:
            account = Account(name=name, currency=currency, cash_balance_cents=cash_balance_cents)
            sess.add(account)
            sess.flush()
            sess.refresh(account)
            return account

        return self._run(_create, session, write=True)

    def get_by_id(self, account_id: int, session: Optional[Session] = None) -> Optional[Account]:
        return self._run(lambda sess: sess.get(Account, account_id), session)

    def get_all(self, session: Optional[Session] = None) -> List[Account]:
        return self._run(lambda sess: list(sess.exec(select(Account).order_by(Account.id)).all()), session)

    def get_positions(self, account_id: int, session: Optional[Session] = None) -> List[Position]:
        """Open positions of an account ordered by symbol."""
        def _positions(sess: Session) -> List[Position]:
            statement = select(Position).where(Position.account_id == account_id).order_by(Position.symbol)
            return list(sess.exec(statement).all())

        return self._run(_positions, session)

    def get_position(self, account_id: int, symbol: str, session: Optional[Session] = None) -> Optional[Position]:
        def _position(sess: Session) -> Optional[Position]:
            statement = select(Position).where(
                Position.account_id == account_id,
                Position.symbol == symbol
            )
            return sess.exec(statement).first()

        return self._run(_position, session)

    def save_position(self, position: Position, session: Optional[Session] = None) -> Position:
        def _save(sess: Session) -> Position:
            position.updated_at = utc_now()
            sess.add(position)
            return position

        return self._run(_save, session, write=True)

    def delete_position(self, position: Position, session: Optional[Session] = None):
        self._run(lambda sess: sess.delete(position), session, write=True)

    def get_held_symbols(self, session: Optional[Session] = None) -> List[str]:
        """Distinct symbols held across all accounts."""
        def _symbols(sess: Session) -> List[str]:
            return list(sess.exec(select(Position.symbol).distinct().order_by(Position.symbol)).all())

        return self._run(_symbols, session)
