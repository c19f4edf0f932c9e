"""
Return and risk statistics over price or net-value series.
Pure numpy/pandas helpers; no I/O.
"""

from typing import Dict, List, Sequence

import numpy as np
import pandas as pd

TRADING_DAYS_PER_YEAR = 252
DEFAULT_RISK_FREE_RATE = 0.025
MIN_CORRELATION_OBSERVATIONS = 5


def calculate_annualized_return(total_return: float, days_invested: int) -> float:
    """
    Compound annual growth rate.

    Args:
        total_return: Total return as a decimal (0.15 for 15%)
        days_invested: Calendar days the return was earned over

    Returns:
        (1 + total_return) ** (365 / days_invested) - 1, or 0 for a non-positive span
    """
    if days_invested <= 0 or total_return <= -1:
        return 0.0
    return float((1 + total_return) ** (365 / days_invested) - 1)


def calculate_volatility(return_rates: Sequence[float], days: int) -> float:
    """
    Annualized standard deviation of returns.

    Uses the sample standard deviation scaled by sqrt(252 / n), where n is
    `days` bounded to [1, len(return_rates)]. Pass days=1 for a series of
    daily returns.
    """
    rates = np.asarray(return_rates, dtype=float)
    if rates.size == 0:
        return 0.0
    daily = float(np.std(rates, ddof=1)) if rates.size > 1 else 0.0
    trading_days = max(1, min(days, rates.size))
    return daily * float(np.sqrt(TRADING_DAYS_PER_YEAR / trading_days))


def calculate_sharpe_ratio(
    annualized_return: float,
    volatility: float,
    risk_free_rate: float = DEFAULT_RISK_FREE_RATE
) -> float:
    if volatility == 0:
        return 0.0
    return (annualized_return - risk_free_rate) / volatility


def calculate_drawdown_series(net_values: Sequence[float]) -> List[float]:
    """Drawdown from the running peak at each point (0 or negative)."""
    values = pd.Series(net_values, dtype=float)
    if values.empty:
        return []
    peak = values.cummax()
    return ((values - peak) / peak).tolist()


def calculate_max_drawdown(net_values: Sequence[float]) -> float:
    """Largest peak-to-trough decline as a negative decimal (-0.085 for -8.5%)."""
    series = calculate_drawdown_series(net_values)
    return min(series) if series else 0.0


def daily_returns(prices: Sequence[float]) -> List[float]:
    values = pd.Series(prices, dtype=float)
    return values.pct_change().dropna().tolist()


def calculate_concentration_risk(max_weight_pct: float, threshold_pct: float) -> float:
    """
    Concentration score in [0, 100] from the largest single-asset weight.

    Grows linearly to 50 at the threshold, then with the square of the
    relative excess, so a position twice the threshold scores 100.
    """
    if threshold_pct <= 0:
        return 100.0 if max_weight_pct > 0 else 0.0
    if max_weight_pct <= threshold_pct:
        score = max_weight_pct / threshold_pct * 50
    else:
        excess = (max_weight_pct - threshold_pct) / threshold_pct
        score = 50 + excess * excess * 50
    return float(min(100.0, max(0.0, score)))


def calculate_hhi(weights: Sequence[float]) -> float:
    """Herfindahl-Hirschman index of fractional weights."""
    return float(sum(w * w for w in weights))


def calculate_allocation_risk(weights: Sequence[float]) -> float:
    """
    HHI normalized to [0, 100]: 0 for an even split, 100 for a single bucket.

    Args:
        weights: Fractional weights of each allocation bucket, summing to 1
    """
    n = len(weights)
    if n == 0:
        return 0.0
    if n == 1:
        return 100.0
    floor = 1 / n
    normalized = (calculate_hhi(weights) - floor) / (1 - floor) * 100
    return float(min(100.0, max(0.0, normalized)))


def calculate_correlation_matrix(closes: Dict[str, pd.Series]) -> pd.DataFrame:
    """
    Pearson correlation of daily returns between series of closes.

    Series are aligned on their index (trading day). A pair with fewer than
    MIN_CORRELATION_OBSERVATIONS overlapping returns, or a flat series,
    correlates as 0.
    """
    if not closes:
        return pd.DataFrame()
    frame = pd.DataFrame(closes).sort_index()
    returns = frame.pct_change(fill_method=None)
    matrix = returns.corr(min_periods=MIN_CORRELATION_OBSERVATIONS).fillna(0.0)
    values = matrix.to_numpy(copy=True)
    np.fill_diagonal(values, 1.0)
    return pd.DataFrame(values, index=matrix.index, columns=matrix.columns)
