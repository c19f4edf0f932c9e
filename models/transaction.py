"""
Transaction model - an applied ledger entry for an account.
"""

from enum import Enum
from typing import Optional
from datetime import datetime
from sqlmodel import SQLModel, Field

from models.common import utc_now


class TransactionType(str, Enum):
    BUY = "buy"
    SELL = "sell"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    FEE = "fee"


class Transaction(SQLModel, table=True):
    """Represents a cash or trade movement on an account."""
    __tablename__ = "ledger_transaction"

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: int = Field(foreign_key="account.id", index=True)
    transaction_type: str  # TransactionType value
    symbol: Optional[str] = Field(default=None, index=True)
    quantity: Optional[float] = Field(default=None)
    price_cents: Optional[int] = Field(default=None)  # Price per unit at trade time
    total_amount_cents: int  # Signed cash effect on the account
    fee_cents: int = Field(default=0)
    market: Optional[str] = Field(default=None)
    description: Optional[str] = Field(default=None)
    trade_time: datetime = Field(default_factory=utc_now, index=True)
    created_at: datetime = Field(default_factory=utc_now)
