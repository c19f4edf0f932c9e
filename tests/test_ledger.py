"""
Tests for LedgerService: cash movements, weighted average cost, oversell
protection and conversion of foreign-market trades into the account currency.
"""

import asyncio
from decimal import Decimal

import pytest

from errors import NotFoundError, ValidationError
from services.analytics import AllocationBands, PortfolioAnalysisService, PortfolioAnalyticsEngine
from services.ledger import LedgerService, TransactionRequest


@pytest.fixture
def ledger(account_repo, transaction_repo, asset_repo, settings):
    return LedgerService(account_repo, transaction_repo, asset_repo, settings.exchange_rates_to_usd)


@pytest.fixture
def account(account_repo):
    return account_repo.add("Main", "USD", cash_balance_cents=1000000)


def buy(symbol, quantity, price, fee=0.0):
    return TransactionRequest("buy", symbol=symbol, quantity=quantity, price=price, fee=fee)


def sell(symbol, quantity, price, fee=0.0):
    return TransactionRequest("sell", symbol=symbol, quantity=quantity, price=price, fee=fee)


class TestTrades:
    @pytest.mark.asyncio
    async def test_buy_opens_position_and_spends_cash(self, ledger, account, account_repo, asset_repo):
        tx = await ledger.apply_transaction(account.id, buy("aapl", 10, 100, fee=1))

        assert tx.total_amount_cents == -100100
        assert tx.symbol == "AAPL"
        assert account_repo.get_by_id(account.id).cash_balance_cents == 899900
        position = account_repo.get_position(account.id, "AAPL")
        assert (position.quantity, position.average_cost_cents) == (10, 10000)
        assert asset_repo.get_by_symbol("AAPL") is not None

    @pytest.mark.asyncio
    async def test_second_buy_averages_cost(self, ledger, account, account_repo):
        await ledger.apply_transaction(account.id, buy("AAPL", 10, 100))
        await ledger.apply_transaction(account.id, buy("AAPL", 10, 200))

        position = account_repo.get_position(account.id, "AAPL")
        assert position.quantity == 20
        assert position.average_cost_cents == 15000

    @pytest.mark.asyncio
    async def test_partial_sell_keeps_average_cost(self, ledger, account, account_repo):
        await ledger.apply_transaction(account.id, buy("AAPL", 10, 100))
        tx = await ledger.apply_transaction(account.id, sell("AAPL", 4, 150, fee=2))

        assert tx.total_amount_cents == 59800
        position = account_repo.get_position(account.id, "AAPL")
        assert (position.quantity, position.average_cost_cents) == (6, 10000)
        assert account_repo.get_by_id(account.id).cash_balance_cents == 1000000 - 100000 + 59800

    @pytest.mark.asyncio
    async def test_selling_everything_closes_position(self, ledger, account, account_repo):
        await ledger.apply_transaction(account.id, buy("AAPL", 10, 100))
        await ledger.apply_transaction(account.id, sell("AAPL", 10, 120))

        assert account_repo.get_position(account.id, "AAPL") is None
        assert account_repo.get_held_symbols() == []

    @pytest.mark.asyncio
    async def test_oversell_is_rejected_without_changes(self, ledger, account, account_repo, transaction_repo):
        await ledger.apply_transaction(account.id, buy("AAPL", 5, 100))

        with pytest.raises(ValidationError, match="only 5 held"):
            await ledger.apply_transaction(account.id, sell("AAPL", 6, 100))

        assert account_repo.get_position(account.id, "AAPL").quantity == 5
        assert account_repo.get_by_id(account.id).cash_balance_cents == 950000
        assert len(transaction_repo.get_by_account(account.id)) == 1

    @pytest.mark.asyncio
    async def test_buy_beyond_cash_is_rejected(self, ledger, account, account_repo):
        with pytest.raises(ValidationError, match="Insufficient cash"):
            await ledger.apply_transaction(account.id, buy("NVDA", 100, 900))

        assert account_repo.get_position(account.id, "NVDA") is None
        assert account_repo.get_by_id(account.id).cash_balance_cents == 1000000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("request_", [
        buy("AAPL", 0, 100),
        buy("AAPL", 1, 0),
        buy("", 1, 100),
        TransactionRequest("short", symbol="AAPL", quantity=1, price=1),
    ])
    async def test_invalid_requests(self, ledger, account, request_):
        with pytest.raises(ValidationError):
            await ledger.apply_transaction(account.id, request_)

    @pytest.mark.asyncio
    async def test_concurrent_buys_are_serialized(self, ledger, account, account_repo):
        await asyncio.gather(*(ledger.apply_transaction(account.id, buy("AAPL", 1, 100)) for _ in range(5)))

        assert account_repo.get_position(account.id, "AAPL").quantity == 5
        assert account_repo.get_by_id(account.id).cash_balance_cents == 950000


class TestForeignMarketTrades:
    @pytest.mark.asyncio
    async def test_hk_buy_spends_converted_cash(self, ledger, account, account_repo):
        tx = await ledger.apply_transaction(
            account.id, TransactionRequest("buy", symbol="0700", quantity=100, price=300, market="HK")
        )

        # 30,000 HKD at 0.128 USD per HKD
        assert tx.total_amount_cents == -384000
        assert account_repo.get_by_id(account.id).cash_balance_cents == 1000000 - 384000
        # Cost stays in the listing currency
        assert account_repo.get_position(account.id, "0700").average_cost_cents == 30000

    @pytest.mark.asyncio
    async def test_buy_at_market_price_keeps_portfolio_value(
        self, ledger, account, account_repo, asset_repo, price_repo, settings
    ):
        await ledger.apply_transaction(
            account.id, TransactionRequest("buy", symbol="0700", quantity=100, price=300, market="HK")
        )
        engine = PortfolioAnalyticsEngine(AllocationBands(), settings.exchange_rates_to_usd)
        service = PortfolioAnalysisService(account_repo, asset_repo, price_repo, engine, settings)

        metrics = (await service.get_portfolio_analysis(account.id)).portfolio_metrics

        assert metrics.cash_balance == Decimal("6160.00")
        assert metrics.total_market_value == Decimal("3840.00")
        assert metrics.total_assets_value == Decimal("10000.00")

    @pytest.mark.asyncio
    async def test_sell_credits_converted_cash(self, ledger, account, account_repo):
        hk_buy = TransactionRequest("buy", symbol="0700", quantity=100, price=300, market="HK")
        await ledger.apply_transaction(account.id, hk_buy)

        tx = await ledger.apply_transaction(
            account.id, TransactionRequest("sell", symbol="0700", quantity=50, price=400, market="HK")
        )

        assert tx.total_amount_cents == 256000
        assert account_repo.get_by_id(account.id).cash_balance_cents == 1000000 - 384000 + 256000

    @pytest.mark.asyncio
    async def test_us_buy_on_hkd_account(self, ledger, account_repo):
        hk_account = await ledger.create_account("HK", "HKD", initial_cash=100000)

        tx = await ledger.apply_transaction(hk_account.id, buy("AAPL", 10, 100))

        # 1,000 USD at 7.8125 HKD per USD
        assert tx.total_amount_cents == -781250
        assert account_repo.get_by_id(hk_account.id).cash_balance_cents == 10000000 - 781250

    @pytest.mark.asyncio
    @pytest.mark.parametrize("currency", ["EUR", "", "  "])
    async def test_account_currency_must_have_a_rate(self, ledger, currency):
        with pytest.raises(ValidationError, match="Unsupported account currency"):
            await ledger.create_account("Main", currency)

    @pytest.mark.asyncio
    async def test_account_currency_is_normalized(self, ledger):
        created = await ledger.create_account("Main", " usd ")

        assert created.currency == "USD"


class TestCashMovements:
    @pytest.mark.asyncio
    async def test_deposit_withdrawal_and_fee(self, ledger, account, account_repo):
        await ledger.apply_transaction(account.id, TransactionRequest("deposit", amount=500))
        await ledger.apply_transaction(account.id, TransactionRequest("withdrawal", amount=200))
        await ledger.apply_transaction(account.id, TransactionRequest("fee", amount=9.99))

        assert account_repo.get_by_id(account.id).cash_balance_cents == 1000000 + 50000 - 20000 - 999

    @pytest.mark.asyncio
    async def test_withdrawal_beyond_balance_is_rejected(self, ledger, account, account_repo):
        with pytest.raises(ValidationError):
            await ledger.apply_transaction(account.id, TransactionRequest("withdrawal", amount=10000.01))

        assert account_repo.get_by_id(account.id).cash_balance_cents == 1000000

    @pytest.mark.asyncio
    async def test_transactions_listed_newest_first(self, ledger, account):
        await ledger.apply_transaction(account.id, TransactionRequest("deposit", amount=1))
        await ledger.apply_transaction(account.id, TransactionRequest("withdrawal", amount=1))

        history = await ledger.get_transactions(account.id)

        assert [t.transaction_type for t in history] == ["withdrawal", "deposit"]

    @pytest.mark.asyncio
    async def test_unknown_account(self, ledger):
        with pytest.raises(NotFoundError):
            await ledger.apply_transaction(404, TransactionRequest("deposit", amount=1))

    @pytest.mark.asyncio
    async def test_create_account_stores_opening_cash(self, ledger, account_repo):
        created = await ledger.create_account("Savings", "hkd", initial_cash=2500.5)

        stored = account_repo.get_by_id(created.id)
        assert (stored.currency, stored.cash_balance_cents) == ("HKD", 250050)

    @pytest.mark.asyncio
    async def test_account_validation(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.create_account("  ")
        with pytest.raises(ValidationError):
            await ledger.create_account("Main", initial_cash=-1)
