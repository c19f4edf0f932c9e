"""
Ledger service: applies buy/sell/deposit/withdrawal/fee transactions to an
account's cash balance and positions in a single database transaction.

Trade prices and position costs stay in the listing market's currency; the
cash side of a trade is converted into the account currency at the fixed
rates from configuration.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional

from sqlmodel import Session

from errors import NotFoundError, ValidationError
from models import MARKET_CURRENCY_MAP, Account, Position, Transaction, TransactionType, utc_now
from repositories import AccountRepository, AssetMetaRepository, TransactionRepository
from services.common import KeyedLocks, clean_symbol, conversion_rate, infer_market_type, to_cents, validate_market

logger = logging.getLogger(__name__)

# Quantities below this are treated as a fully closed position
QUANTITY_EPSILON = 1e-9


@dataclass
class TransactionRequest:
    """
    A transaction to apply.

    `price` is per unit for buy/sell, in the currency of the listing market.
    `amount` (deposit, withdrawal, fee) and `fee` are in the account currency.
    All values are in major currency units.
    """
    transaction_type: str
    symbol: Optional[str] = None
    quantity: Optional[float] = None
    price: Optional[float] = None
    amount: Optional[float] = None
    fee: float = 0.0
    market: Optional[str] = None
    asset_type: str = "stock"
    description: Optional[str] = None
    trade_time: Optional[datetime] = None


def _cents(value, field: str) -> int:
    if value is None:
        raise ValidationError(f"{field} is required", field=field)
    cents = to_cents(value)
    if cents <= 0:
        raise ValidationError(f"{field} must be positive", field=field)
    return cents


class LedgerService:
    """
    Applies transactions; writes to one account are serialized.

    Args:
        exchange_rates: Units of a common base currency per unit of each
            currency; accounts may only be opened in one of these currencies
    """

    def __init__(
        self,
        accounts: AccountRepository,
        transactions: TransactionRepository,
        assets: AssetMetaRepository,
        exchange_rates: Optional[Dict[str, float]] = None,
        locks: Optional[KeyedLocks] = None
    ):
        self.accounts = accounts
        self.transactions = transactions
        self.assets = assets
        self.exchange_rates = exchange_rates or {"USD": 1.0}
        self.locks = locks or KeyedLocks("ledger")

    async def create_account(self, name: str, currency: str = "USD", initial_cash: float = 0.0) -> Account:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Account name must not be empty", field="name")
        currency = (currency or "").strip().upper()
        if currency not in self.exchange_rates:
            raise ValidationError(
                f"Unsupported account currency {currency or '(empty)'}; expected one of {', '.join(sorted(self.exchange_rates))}",
                field="currency"
            )
        if initial_cash < 0:
            raise ValidationError("Initial cash must not be negative", field="initial_cash")
        account = await asyncio.to_thread(self.accounts.add, name, currency, to_cents(initial_cash))
        logger.info(f"Created account {account.id} ({name}, {account.currency})")
        return account

    async def apply_transaction(self, account_id: int, request: TransactionRequest) -> Transaction:
        """
        Apply a transaction to an account.

        Args:
            account_id: Target account
            request: Transaction details

        Returns:
            The stored Transaction

        Raises:
            NotFoundError: if the account does not exist
            ValidationError: for bad input, overselling or insufficient cash
        """
        try:
            tx_type = TransactionType(request.transaction_type)
        except ValueError:
            raise ValidationError(f"Unsupported transaction type: {request.transaction_type}", field="transaction_type")

        async with self.locks.hold(account_id):
            return await asyncio.to_thread(self._apply, account_id, tx_type, request)

    def _apply(self, account_id: int, tx_type: TransactionType, request: TransactionRequest) -> Transaction:
        with Session(self.accounts.engine, expire_on_commit=False) as session:
            account = self.accounts.get_by_id(account_id, session=session)
            if account is None:
                raise NotFoundError("Account", account_id)

            fee_cents = to_cents(request.fee or 0)
            if fee_cents < 0:
                raise ValidationError("fee must not be negative", field="fee")

            if tx_type in (TransactionType.BUY, TransactionType.SELL):
                transaction = self._apply_trade(session, account, tx_type, request, fee_cents)
            else:
                transaction = self._apply_cash(account, tx_type, request, fee_cents)

            if account.cash_balance_cents < 0:
                raise ValidationError(
                    f"Insufficient cash: balance would be {account.cash_balance_cents / 100:.2f}",
                    field="amount"
                )

            account.updated_at = utc_now()
            session.add(account)
            transaction.trade_time = request.trade_time or utc_now()
            transaction.description = request.description
            self.transactions.add(transaction, session=session)
            session.commit()

        logger.info(
            f"Applied {tx_type.value} on account {account_id}: "
            f"{transaction.symbol or ''} cash effect {transaction.total_amount_cents / 100:.2f}"
        )
        return transaction

    def _apply_trade(
        self,
        session: Session,
        account: Account,
        tx_type: TransactionType,
        request: TransactionRequest,
        fee_cents: int
    ) -> Transaction:
        symbol = clean_symbol(request.symbol)
        market = validate_market(request.market or infer_market_type(symbol))
        price_cents = _cents(request.price, "price")
        if request.quantity is None or request.quantity <= 0:
            raise ValidationError("quantity must be positive", field="quantity")
        quantity = float(request.quantity)
        # Gross trade value, converted from the listing currency into the account currency
        rate = conversion_rate(MARKET_CURRENCY_MAP[market], account.currency, self.exchange_rates)
        gross_cents = to_cents(Decimal(str(quantity)) * Decimal(price_cents) / 100 * rate)

        position = self.accounts.get_position(account.id, symbol, session=session)

        if tx_type is TransactionType.BUY:
            self.assets.get_or_create(symbol, market, request.asset_type, session=session)
            if position is None:
                position = Position(
                    account_id=account.id,
                    symbol=symbol,
                    quantity=quantity,
                    average_cost_cents=price_cents,
                    asset_type=request.asset_type,
                    market=market,
                )
            else:
                total_cost = Decimal(str(position.quantity)) * position.average_cost_cents + Decimal(str(quantity)) * price_cents
                position.quantity = position.quantity + quantity
                position.average_cost_cents = int(
                    (total_cost / Decimal(str(position.quantity))).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
                )
            self.accounts.save_position(position, session=session)
            cash_effect = -(gross_cents + fee_cents)
        else:
            held = position.quantity if position is not None else 0.0
            if quantity > held + QUANTITY_EPSILON:
                raise ValidationError(f"Cannot sell {quantity:g} {symbol}, only {held:g} held", field="quantity")
            remaining = held - quantity
            if remaining <= QUANTITY_EPSILON:
                self.accounts.delete_position(position, session=session)
            else:
                position.quantity = remaining
                self.accounts.save_position(position, session=session)
            cash_effect = gross_cents - fee_cents

        account.cash_balance_cents += cash_effect
        return Transaction(
            account_id=account.id,
            transaction_type=tx_type.value,
            symbol=symbol,
            quantity=quantity,
            price_cents=price_cents,
            total_amount_cents=cash_effect,
            fee_cents=fee_cents,
            market=market,
        )

    @staticmethod
    def _apply_cash(account: Account, tx_type: TransactionType, request: TransactionRequest, fee_cents: int) -> Transaction:
        amount_cents = _cents(request.amount, "amount")
        if tx_type is TransactionType.DEPOSIT:
            cash_effect = amount_cents - fee_cents
        else:
            # Withdrawals and fees both take cash out
            cash_effect = -(amount_cents + fee_cents)

        account.cash_balance_cents += cash_effect
        return Transaction(
            account_id=account.id,
            transaction_type=tx_type.value,
            total_amount_cents=cash_effect,
            fee_cents=fee_cents,
        )

    async def get_transactions(self, account_id: int, limit: Optional[int] = None) -> List[Transaction]:
        return await asyncio.to_thread(self.transactions.get_by_account, account_id, limit)
