"""
Transaction Repository - data access layer for ledger transactions.
Optimized with optional session parameter for transaction reuse.
"""

from typing import Optional, List
from sqlmodel import Session, select

from models import Transaction
from repositories.base import BaseRepository


class TransactionRepository(BaseRepository):
    """Repository for Transaction records."""

    def add(self, transaction: Transaction, session: Optional[Session] = None) -> Transaction:
        """
        Store an applied transaction.

        Args:
            transaction: Unsaved Transaction
            session: Optional existing session for transaction reuse

        Returns:
            Stored Transaction with its id
        """
        def _create(sess: Session) -> Transaction:
            sess.add(transaction)
            sess.flush()
            sess.refresh(transaction)
            return transaction

        return self._run(_create, session, write=True)

    def get_by_account(
        self,
        account_id: int,
        limit: Optional[int] = None,
        session: Optional[Session] = None
    ) -> List[Transaction]:
        """
        Retrieve transactions of an account, newest first.

        Args:
            account_id: Account ID
            limit: Optional maximum number of rows
            session: Optional existing session for transaction reuse

        Returns:
            List of Transaction objects
        """
        def _get(sess: Session) -> List[Transaction]:
            statement = select(Transaction).where(
                Transaction.account_id == account_id
            ).order_by(Transaction.trade_time.desc(), Transaction.id.desc())
            if limit is not None:
                statement = statement.limit(limit)
            return list(sess.exec(statement).all())

        return self._run(_get, session)

    def get_by_symbol(self, account_id: int, symbol: str, session: Optional[Session] = None) -> List[Transaction]:
        def _get(sess: Session) -> List[Transaction]:
            statement = select(Transaction).where(
                Transaction.account_id == account_id,
                Transaction.symbol == symbol
            ).order_by(Transaction.trade_time, Transaction.id)
            return list(sess.exec(statement).all())

        return self._run(_get, session)
