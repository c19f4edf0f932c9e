"""
Account and Position models - cash balance and open holdings.
"""

from typing import Optional
from datetime import datetime
from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field

from models.common import utc_now


class Account(SQLModel, table=True):
    """A portfolio account holding cash in a single currency."""
    __tablename__ = "account"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    currency: str = Field(default="USD")
    cash_balance_cents: int = Field(default=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Position(SQLModel, table=True):
    """
    An open holding. Quantity and average cost are maintained by the ledger;
    a position whose quantity reaches zero is deleted.
    """
    __tablename__ = "position"
    __table_args__ = (UniqueConstraint("account_id", "symbol", name="uq_position_account_symbol"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: int = Field(foreign_key="account.id", index=True)
    symbol: str = Field(index=True)
    quantity: float
    average_cost_cents: int
    asset_type: str = Field(default="stock")
    market: str = Field(default="US")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
