"""
Portfolio analytics: valuation, allocation, diversification, risk level,
risk score, allocation advice and portfolio risk insights (single-asset
concentration, HHI allocation risk and return correlation).

PortfolioAnalyticsEngine is pure computation over position snapshots.
PortfolioAnalysisService loads an account from the repositories, resolves a
current price for every position and runs the engine.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import pandas as pd

from config import Settings
from errors import NotFoundError, ValidationError
from models import MARKET_CURRENCY_MAP, Position, utc_now
from repositories import AccountRepository, AssetMetaRepository, PriceRepository
from services.common import CENT, clean_symbol, conversion_rate, from_cents
from services.financial_calculations import (
    calculate_allocation_risk,
    calculate_annualized_return,
    calculate_concentration_risk,
    calculate_correlation_matrix,
    calculate_hhi,
    calculate_max_drawdown,
    calculate_sharpe_ratio,
    calculate_volatility,
    daily_returns,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class AllocationBands:
    """Thresholds used for risk level and advice."""
    stock_max: float = 0.9
    stock_min: float = 0.3
    cash_max: float = 0.5
    aggressive_stock: float = 0.8
    moderate_stock: float = 0.5
    min_diversification: float = 30.0
    diversification_full_count: int = 10
    concentration_limit: float = 0.3
    high_correlation: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> "AllocationBands":
        return cls(
            stock_max=settings.stock_allocation_max,
            stock_min=settings.stock_allocation_min,
            cash_max=settings.cash_allocation_max,
            aggressive_stock=settings.aggressive_stock_allocation,
            moderate_stock=settings.moderate_stock_allocation,
            min_diversification=settings.min_diversification_score,
            diversification_full_count=settings.diversification_full_count,
            concentration_limit=settings.position_concentration_limit,
            high_correlation=settings.high_correlation_threshold,
        )


@dataclass
class PositionSnapshot:
    """A position with the price it should be valued at, in its own currency."""
    symbol: str
    quantity: Decimal
    average_cost: Decimal
    current_price: Decimal
    currency: str = "USD"
    asset_type: str = "stock"
    market: str = "US"
    price_source: str = "cache"  # "cache", "history" or "cost"


@dataclass
class HoldingValuation:
    """Valuation of one position in the account currency."""
    symbol: str
    quantity: Decimal
    average_cost: Decimal
    current_price: Decimal
    currency: str
    market_value: Decimal
    cost_basis: Decimal
    unrealized_pnl: Decimal
    unrealized_pnl_pct: float
    weight: float  # share of total position value
    price_source: str
    asset_type: str = "stock"


@dataclass
class Allocation:
    stock: float = 0.0
    cash: float = 0.0


@dataclass
class PortfolioMetrics:
    """Portfolio-level figures. Money is Decimal in the account currency."""
    currency: str
    cash_balance: Decimal
    total_market_value: Decimal
    total_assets_value: Decimal
    total_cost: Decimal
    total_assets_cost: Decimal
    stock_gain: Decimal
    stock_gain_pct: float
    allocation: Allocation
    risk_level: str
    diversification_score: float
    largest_position_weight: float
    position_count: int
    holdings: List[HoldingValuation] = field(default_factory=list)


@dataclass
class RiskScore:
    score: int
    level: str  # "low", "medium", "high"
    recommendations: List[str] = field(default_factory=list)


@dataclass
class CashAsset:
    amount: Decimal
    currency: str
    available: Decimal
    type: str = "cash"


@dataclass
class StockBreakdown:
    count: int
    total_value: Decimal
    total_cost: Decimal
    unrealized_pnl: Decimal


@dataclass
class CashBreakdown:
    amount: Decimal
    currency: str
    percentage: float


@dataclass
class AssetBreakdown:
    stocks: StockBreakdown
    cash: CashBreakdown


@dataclass
class PortfolioAnalysis:
    """Everything the assistant or UI needs to describe an account."""
    account_id: int
    cash_asset: CashAsset
    asset_breakdown: AssetBreakdown
    portfolio_metrics: PortfolioMetrics
    risk_score: RiskScore
    generated_at: datetime = field(default_factory=utc_now)


@dataclass
class PriceRisk:
    """Return and risk statistics from stored daily closes."""
    symbol: str
    start: date
    end: date
    observations: int
    total_return: float
    annualized_return: float
    volatility: float
    sharpe_ratio: float
    max_drawdown: float


@dataclass
class AssetWeight:
    symbol: str
    weight: float  # percent of total assets


@dataclass
class CategoryWeight:
    category: str  # asset type, or "cash"
    weight: float  # percent of total assets


@dataclass
class CorrelationPair:
    first: str
    second: str
    correlation: float


@dataclass
class ConcentrationRisk:
    """Single-asset concentration against the risk mode's threshold."""
    score: float
    single_asset_threshold: float
    top_assets: List[AssetWeight] = field(default_factory=list)
    alerts: List[str] = field(default_factory=list)


@dataclass
class AllocationRisk:
    """Spread across asset types and cash, scored from the normalized HHI."""
    score: float
    hhi: float
    categories: List[CategoryWeight] = field(default_factory=list)
    alerts: List[str] = field(default_factory=list)


@dataclass
class CorrelationRisk:
    """Average absolute correlation of daily returns between held symbols."""
    score: float
    average_correlation: float
    symbols: List[str] = field(default_factory=list)
    high_correlation_pairs: List[CorrelationPair] = field(default_factory=list)


@dataclass
class PortfolioRiskInsights:
    account_id: int
    risk_mode: str
    concentration: ConcentrationRisk
    allocation: AllocationRisk
    correlation: CorrelationRisk
    suggestions: List[str] = field(default_factory=list)
    generated_at: datetime = field(default_factory=utc_now)


RISK_MODE_THRESHOLDS = {"retail": 10.0, "advanced": 5.0}


def _ratio(part: Decimal, whole: Decimal) -> float:
    """part / whole as a float, 0 when whole is not positive."""
    if whole <= 0:
        return 0.0
    return float(part / whole)


class PortfolioAnalyticsEngine:
    """
    Stateless portfolio calculations.

    Args:
        bands: Allocation thresholds
        exchange_rates: Units of a common base currency per unit of each currency
    """

    def __init__(self, bands: Optional[AllocationBands] = None, exchange_rates: Optional[Dict[str, float]] = None):
        self.bands = bands or AllocationBands()
        self.exchange_rates = exchange_rates or {"USD": 1.0}

    def conversion_rate(self, from_currency: str, to_currency: str) -> Decimal:
        return conversion_rate(from_currency, to_currency, self.exchange_rates)

    def diversification_score(self, position_count: int, largest_position_weight: float) -> float:
        """
        Score in [0, 100].

        Up to 40 points for the number of positions, saturating at
        `diversification_full_count`, plus 60 points scaled by how small the
        largest position is relative to all positions.
        """
        if position_count <= 0:
            return 0.0
        full = max(1, self.bands.diversification_full_count)
        count_points = 40.0 * min(position_count, full) / full
        spread_points = 60.0 * (1.0 - min(max(largest_position_weight, 0.0), 1.0))
        return round(max(0.0, min(100.0, count_points + spread_points)), 2)

    def risk_level(self, stock_allocation: float, diversification_score: float, position_count: int) -> str:
        """
        conservative / moderate / aggressive by stock allocation, raised one
        step when a non-empty portfolio is poorly diversified.
        """
        levels = ["conservative", "moderate", "aggressive"]
        if stock_allocation > self.bands.aggressive_stock:
            index = 2
        elif stock_allocation > self.bands.moderate_stock:
            index = 1
        else:
            index = 0
        if position_count > 0 and diversification_score < self.bands.min_diversification:
            index = min(index + 1, 2)
        return levels[index]

    def compute(self, cash_balance: Decimal, currency: str, positions: List[PositionSnapshot]) -> PortfolioMetrics:
        """
        Value positions and derive portfolio metrics.

        Args:
            cash_balance: Cash in the account currency
            currency: Account currency all values are expressed in
            positions: Positions with resolved current prices

        Returns:
            PortfolioMetrics
        """
        cash_balance = Decimal(cash_balance).quantize(CENT)
        holdings: List[HoldingValuation] = []

        for pos in positions:
            rate = self.conversion_rate(pos.currency, currency)
            market_value = (pos.quantity * pos.current_price * rate).quantize(CENT)
            cost_basis = (pos.quantity * pos.average_cost * rate).quantize(CENT)
            pnl = market_value - cost_basis
            holdings.append(HoldingValuation(
                symbol=pos.symbol,
                quantity=pos.quantity,
                average_cost=pos.average_cost,
                current_price=pos.current_price,
                currency=pos.currency,
                market_value=market_value,
                cost_basis=cost_basis,
                unrealized_pnl=pnl,
                unrealized_pnl_pct=_ratio(pnl, cost_basis),
                weight=0.0,
                price_source=pos.price_source,
                asset_type=pos.asset_type,
            ))

        total_market_value = sum((h.market_value for h in holdings), ZERO)
        total_cost = sum((h.cost_basis for h in holdings), ZERO)
        stock_gain = sum((h.unrealized_pnl for h in holdings), ZERO)
        total_assets_value = cash_balance + total_market_value

        for h in holdings:
            h.weight = _ratio(h.market_value, total_market_value)
        holdings.sort(key=lambda h: h.market_value, reverse=True)

        allocation = Allocation(
            stock=_ratio(total_market_value, total_assets_value),
            cash=_ratio(cash_balance, total_assets_value),
        )
        largest = max((h.weight for h in holdings), default=0.0)
        diversification = self.diversification_score(len(holdings), largest)

        return PortfolioMetrics(
            currency=currency,
            cash_balance=cash_balance,
            total_market_value=total_market_value,
            total_assets_value=total_assets_value,
            total_cost=total_cost,
            total_assets_cost=total_cost + cash_balance,
            stock_gain=stock_gain,
            stock_gain_pct=_ratio(stock_gain, total_cost),
            allocation=allocation,
            risk_level=self.risk_level(allocation.stock, diversification, len(holdings)),
            diversification_score=diversification,
            largest_position_weight=largest,
            position_count=len(holdings),
            holdings=holdings,
        )

    def get_allocation_advice(self, allocation: Allocation, largest_position_weight: Optional[float] = None) -> List[str]:
        """
        Human-readable advice for allocations outside the configured bands.

        An empty portfolio (both allocations zero) gets no advice.
        """
        if allocation.stock == 0 and allocation.cash == 0:
            return []

        bands = self.bands
        advice = []
        if allocation.stock > bands.stock_max:
            advice.append(
                f"Stock allocation is {allocation.stock:.0%}, above {bands.stock_max:.0%}; "
                "consider building a cash reserve."
            )
        elif allocation.stock < bands.stock_min:
            advice.append(
                f"Stock allocation is {allocation.stock:.0%}, below {bands.stock_min:.0%}; "
                "consider putting more cash to work in equities."
            )

        if allocation.cash > bands.cash_max:
            advice.append(
                f"Cash is {allocation.cash:.0%} of assets, above {bands.cash_max:.0%}; "
                "idle cash may drag on long-term returns."
            )

        if largest_position_weight is not None and largest_position_weight > bands.concentration_limit:
            advice.append(
                f"Largest position is {largest_position_weight:.0%} of holdings, above "
                f"{bands.concentration_limit:.0%}; consider trimming concentration."
            )
        return advice

    def calculate_risk_score(self, metrics: PortfolioMetrics) -> RiskScore:
        """
        Score 0-100 from stock allocation, reduced by diversification and
        position count. Above 70 is high, above 40 medium, otherwise low.
        """
        score = metrics.allocation.stock * 100
        score -= (metrics.diversification_score / 100.0) * 20
        score -= min(metrics.position_count * 5, 20)
        score = max(0.0, min(100.0, score))

        if score > 70:
            level = "high"
        elif score > 40:
            level = "medium"
        else:
            level = "low"

        recommendations = self.get_allocation_advice(metrics.allocation, metrics.largest_position_weight)
        return RiskScore(score=int(round(score)), level=level, recommendations=recommendations)

    @staticmethod
    def single_asset_threshold(risk_mode: str) -> float:
        """Largest acceptable single-asset weight, in percent of total assets."""
        if risk_mode not in RISK_MODE_THRESHOLDS:
            raise ValidationError(
                f"Unknown risk mode {risk_mode!r}; expected one of {sorted(RISK_MODE_THRESHOLDS)}",
                field="risk_mode",
            )
        return RISK_MODE_THRESHOLDS[risk_mode]

    def concentration_risk(self, metrics: PortfolioMetrics, risk_mode: str = "retail") -> ConcentrationRisk:
        """
        Score the largest holding's share of total assets (cash included).

        A portfolio with holdings but no positive value scores a neutral 50.
        """
        threshold = self.single_asset_threshold(risk_mode)
        if not metrics.holdings:
            return ConcentrationRisk(score=0.0, single_asset_threshold=threshold)
        total = metrics.total_assets_value
        if total <= 0:
            return ConcentrationRisk(score=50.0, single_asset_threshold=threshold)

        weights = sorted(
            ((h.symbol, _ratio(h.market_value, total) * 100) for h in metrics.holdings),
            key=lambda item: item[1],
            reverse=True,
        )
        alerts = [
            f"{symbol} is {weight:.1f}% of the portfolio, above the {threshold:g}% single-asset threshold"
            for symbol, weight in weights
            if weight > threshold
        ]
        return ConcentrationRisk(
            score=round(calculate_concentration_risk(weights[0][1], threshold), 2),
            single_asset_threshold=threshold,
            top_assets=[AssetWeight(symbol, round(weight, 2)) for symbol, weight in weights[:5]],
            alerts=alerts,
        )

    def allocation_risk(self, metrics: PortfolioMetrics) -> AllocationRisk:
        """
        HHI over asset-type buckets plus cash.

        Flags any asset type above half the portfolio, and cash above 30% or
        below 5% when some cash is held.
        """
        if not metrics.holdings:
            return AllocationRisk(score=0.0, hhi=0.0)
        total = metrics.total_assets_value
        if total <= 0:
            return AllocationRisk(score=50.0, hhi=0.0)

        by_type: Dict[str, Decimal] = {}
        for h in metrics.holdings:
            by_type[h.asset_type] = by_type.get(h.asset_type, ZERO) + h.market_value
        fractions = {category: _ratio(value, total) for category, value in by_type.items()}
        if metrics.cash_balance > 0:
            fractions["cash"] = _ratio(metrics.cash_balance, total)

        alerts = [
            f"{category} is {fraction:.1%} of the portfolio; consider spreading across asset types"
            for category, fraction in fractions.items()
            if category != "cash" and fraction > 0.5
        ]
        cash = fractions.get("cash", 0.0)
        if cash > 0.3:
            alerts.append(f"Cash is {cash:.1%} of the portfolio and may hold back long-term returns")
        elif 0 < cash < 0.05:
            alerts.append(f"Cash reserve is only {cash:.1%}; keep some cash on hand")

        return AllocationRisk(
            score=round(calculate_allocation_risk(list(fractions.values())), 2),
            hhi=round(calculate_hhi(list(fractions.values())), 4),
            categories=[CategoryWeight(category, round(fraction * 100, 2)) for category, fraction in fractions.items()],
            alerts=alerts,
        )

    def correlation_risk(self, closes: Dict[str, pd.Series]) -> CorrelationRisk:
        """
        Average absolute pairwise correlation of daily returns, as a 0-100 score.

        Args:
            closes: Daily closes per held symbol, indexed by trading day
        """
        matrix = calculate_correlation_matrix(closes)
        symbols = list(matrix.columns)
        if len(symbols) < 2:
            return CorrelationRisk(score=0.0, average_correlation=0.0, symbols=symbols)

        pairs = []
        for i, first in enumerate(symbols):
            for second in symbols[i + 1:]:
                pairs.append(CorrelationPair(first, second, round(float(matrix.loc[first, second]), 4)))

        average = sum(abs(p.correlation) for p in pairs) / len(pairs)
        high = sorted(
            (p for p in pairs if abs(p.correlation) > self.bands.high_correlation),
            key=lambda p: abs(p.correlation),
            reverse=True,
        )
        return CorrelationRisk(
            score=round(average * 100, 2),
            average_correlation=round(average, 4),
            symbols=symbols,
            high_correlation_pairs=high,
        )

    def risk_suggestions(
        self,
        concentration: ConcentrationRisk,
        allocation: AllocationRisk,
        correlation: CorrelationRisk
    ) -> List[str]:
        suggestions = []
        if concentration.top_assets and concentration.top_assets[0].weight > concentration.single_asset_threshold:
            suggestions.append(f"Reduce the {concentration.top_assets[0].symbol} position to spread risk")

        cash = next((c.weight for c in allocation.categories if c.category == "cash"), 0.0)
        if cash > 30:
            suggestions.append(f"Cash is {cash:.1f}% of the portfolio; consider putting more of it to work")
        elif 0 < cash < 5:
            suggestions.append(f"Cash reserve is only {cash:.1f}%; keep an adequate cash buffer")

        if correlation.high_correlation_pairs:
            pair = correlation.high_correlation_pairs[0]
            suggestions.append(
                f"{pair.first} and {pair.second} move together (correlation {pair.correlation:.2f}); "
                "holding both adds little diversification"
            )
        return suggestions

    def assess_portfolio_risk(
        self,
        account_id: int,
        metrics: PortfolioMetrics,
        closes: Dict[str, pd.Series],
        risk_mode: str = "retail"
    ) -> PortfolioRiskInsights:
        concentration = self.concentration_risk(metrics, risk_mode)
        allocation = self.allocation_risk(metrics)
        correlation = self.correlation_risk(closes)
        return PortfolioRiskInsights(
            account_id=account_id,
            risk_mode=risk_mode,
            concentration=concentration,
            allocation=allocation,
            correlation=correlation,
            suggestions=self.risk_suggestions(concentration, allocation, correlation),
        )


class PortfolioAnalysisService:
    """Loads account state and runs the analytics engine over it."""

    def __init__(
        self,
        accounts: AccountRepository,
        assets: AssetMetaRepository,
        prices: PriceRepository,
        engine: PortfolioAnalyticsEngine,
        settings: Settings,
        market_data=None
    ):
        self.accounts = accounts
        self.assets = assets
        self.prices = prices
        self.engine = engine
        self.settings = settings
        self.market_data = market_data

    def _resolve_price(self, position: Position) -> Tuple[int, str]:
        """Newer of cached quote and latest stored close, then average cost."""
        asset = self.assets.get_by_symbol(position.symbol)
        latest = self.prices.get_latest(position.symbol)

        if asset is not None and asset.price_cents:
            # A quote cached on the close's own day is the fresher intraday value
            if latest is None or asset.updated_at.date() >= latest.price_date:
                return asset.price_cents, "cache"

        if latest is not None:
            return latest.close_cents, "history"

        logger.warning(f"No price for {position.symbol}, valuing at average cost")
        return position.average_cost_cents, "cost"

    def _snapshots(self, positions: List[Position]) -> List[PositionSnapshot]:
        snapshots = []
        for position in positions:
            price_cents, source = self._resolve_price(position)
            snapshots.append(PositionSnapshot(
                symbol=position.symbol,
                quantity=Decimal(str(position.quantity)),
                average_cost=from_cents(position.average_cost_cents),
                current_price=from_cents(price_cents),
                currency=MARKET_CURRENCY_MAP.get(position.market, "USD"),
                asset_type=position.asset_type,
                market=position.market,
                price_source=source,
            ))
        return snapshots

    async def get_portfolio_analysis(self, account_id: int, refresh_prices: bool = False) -> PortfolioAnalysis:
        """
        Analyze an account.

        Args:
            account_id: Account to analyze
            refresh_prices: Refresh quotes for held symbols first

        Returns:
            PortfolioAnalysis

        Raises:
            NotFoundError: if the account does not exist
        """
        account = await asyncio.to_thread(self.accounts.get_by_id, account_id)
        if account is None:
            raise NotFoundError("Account", account_id)
        positions = await asyncio.to_thread(self.accounts.get_positions, account_id)

        if refresh_prices and self.market_data is not None and positions:
            await self.market_data.refresh_prices([(p.symbol, p.market) for p in positions])

        snapshots = await asyncio.to_thread(self._snapshots, positions)
        metrics = self.engine.compute(from_cents(account.cash_balance_cents), account.currency, snapshots)
        risk = self.engine.calculate_risk_score(metrics)

        cash = metrics.cash_balance
        return PortfolioAnalysis(
            account_id=account_id,
            cash_asset=CashAsset(amount=cash, currency=account.currency, available=cash),
            asset_breakdown=AssetBreakdown(
                stocks=StockBreakdown(
                    count=metrics.position_count,
                    total_value=metrics.total_market_value,
                    total_cost=metrics.total_cost,
                    unrealized_pnl=metrics.stock_gain,
                ),
                cash=CashBreakdown(
                    amount=cash,
                    currency=account.currency,
                    percentage=round(metrics.allocation.cash * 100, 2),
                ),
            ),
            portfolio_metrics=metrics,
            risk_score=risk,
        )

    def calculate_risk_score(self, metrics: PortfolioMetrics) -> RiskScore:
        return self.engine.calculate_risk_score(metrics)

    def get_allocation_advice(self, allocation: Allocation, largest_position_weight: Optional[float] = None) -> List[str]:
        return self.engine.get_allocation_advice(allocation, largest_position_weight)

    async def get_price_risk(self, symbol: str, days: int = 365) -> PriceRisk:
        """
        Return and risk statistics for a symbol over the last `days` calendar days of stored closes.

        Raises:
            ValidationError: if fewer than two closes are stored in the window
        """
        symbol = clean_symbol(symbol)
        end = date.today()
        points = await asyncio.to_thread(self.prices.get_range, symbol, end - timedelta(days=days), end)
        if len(points) < 2:
            raise ValidationError(f"Not enough price history for {symbol}", field="symbol")

        closes = [p.close_cents / 100 for p in points]
        span_days = (points[-1].price_date - points[0].price_date).days
        total_return = closes[-1] / closes[0] - 1
        annualized = calculate_annualized_return(total_return, span_days)
        volatility = calculate_volatility(daily_returns(closes), 1)

        return PriceRisk(
            symbol=symbol,
            start=points[0].price_date,
            end=points[-1].price_date,
            observations=len(points),
            total_return=total_return,
            annualized_return=annualized,
            volatility=volatility,
            sharpe_ratio=calculate_sharpe_ratio(annualized, volatility, self.settings.risk_free_rate),
            max_drawdown=calculate_max_drawdown(closes),
        )

    def _load_closes(self, symbols: List[str], start: date, end: date) -> Dict[str, pd.Series]:
        closes = {}
        for symbol in symbols:
            points = self.prices.get_range(symbol, start, end)
            if len(points) >= 2:
                closes[symbol] = pd.Series(
                    [p.close_cents / 100 for p in points],
                    index=[p.price_date for p in points],
                    dtype=float,
                )
        return closes

    async def get_portfolio_risk(
        self,
        account_id: int,
        risk_mode: Optional[str] = None,
        days: Optional[int] = None,
        refresh_prices: bool = False
    ) -> PortfolioRiskInsights:
        """
        Concentration, allocation and correlation risk for an account.

        Args:
            account_id: Account to assess
            risk_mode: "retail" or "advanced"; defaults to settings.risk_mode
            days: Calendar days of stored closes used for correlation;
                defaults to settings.correlation_lookback_days
            refresh_prices: Refresh quotes for held symbols first

        Raises:
            NotFoundError: if the account does not exist
            ValidationError: for an unknown risk mode
        """
        risk_mode = risk_mode or self.settings.risk_mode
        self.engine.single_asset_threshold(risk_mode)
        analysis = await self.get_portfolio_analysis(account_id, refresh_prices)
        metrics = analysis.portfolio_metrics

        end = date.today()
        start = end - timedelta(days=days or self.settings.correlation_lookback_days)
        closes = await asyncio.to_thread(self._load_closes, [h.symbol for h in metrics.holdings], start, end)

        insights = self.engine.assess_portfolio_risk(account_id, metrics, closes, risk_mode)
        logger.info(
            f"Risk for account {account_id}: concentration {insights.concentration.score}, "
            f"allocation {insights.allocation.score}, correlation {insights.correlation.score}"
        )
        return insights
