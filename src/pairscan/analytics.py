"""
Performance analytics for spread backtests.

All metrics work on per-period PnL in spread units (additive, not compounded).
"""

import logging
from typing import Dict, Iterable

import numpy as np

logger = logging.getLogger(__name__)

STATUS_THRESHOLDS = (
    (1.8, 'ELITE'),
    (1.3, 'STRONG'),
    (0.8, 'DECENT'),
    (0.3, 'WEAK'),
)


def calculate_sharpe(pnl: Iterable[float], periods_per_year: float) -> float:
    """Annualized Sharpe ratio with population std floored at 1e-8."""
    p = np.asarray(pnl, dtype=float)
    if p.size == 0:
        return 0.0
    mean = float(p.mean())
    std = float(np.sqrt(max(1e-16, float(np.mean((p - mean) ** 2)))))
    return mean / std * float(np.sqrt(periods_per_year))


def calculate_max_drawdown(pnl: Iterable[float]) -> float:
    """Largest peak-to-trough drop of cumulative PnL; the peak starts at 0."""
    p = np.asarray(pnl, dtype=float)
    if p.size == 0:
        return 0.0
    equity = np.cumsum(p)
    peak = np.maximum.accumulate(np.maximum(equity, 0.0))
    return float(np.max(peak - equity))


def calculate_calmar(pnl: Iterable[float], periods_per_year: float, max_drawdown: float) -> float:
    """Annualized mean PnL over max drawdown (0 if there was no drawdown)."""
    p = np.asarray(pnl, dtype=float)
    if p.size == 0 or max_drawdown <= 0:
        return 0.0
    return float(p.mean()) * periods_per_year / max_drawdown


def calculate_profit_factor(gross_win: float, gross_loss: float) -> float:
    if gross_loss > 0:
        return gross_win / gross_loss
    return float('inf') if gross_win > 0 else 0.0


def calculate_win_rate(wins: int, losses: int) -> float:
    total = wins + losses
    return wins / total if total > 0 else 0.0


def calculate_turnover(total_size_changes: float, n_periods: int, periods_per_year: float) -> float:
    """Annualized count of position changes."""
    if n_periods <= 0:
        return 0.0
    return total_size_changes / n_periods * periods_per_year


def calculate_performance_metrics(pnl: Iterable[float],
                                  periods_per_year: float,
                                  wins: int = 0,
                                  losses: int = 0,
                                  gross_win: float = 0.0,
                                  gross_loss: float = 0.0,
                                  total_size_changes: float = 0.0,
                                  trades: int = 0) -> Dict:
    """
    Comprehensive performance metrics for a spread PnL path.

    Args:
        pnl: Per-period PnL (first element is the idle first period)
        periods_per_year: Annualization factor
        wins, losses: Closed (or final open) trades by sign of profit
        gross_win, gross_loss: Summed winning / losing trade profit (loss positive)
        total_size_changes: Summed absolute position changes
        trades: Closed trades

    Returns:
        Dictionary of performance metrics
    """
    p = np.asarray(pnl, dtype=float)
    max_dd = calculate_max_drawdown(p)

    return {
        'sharpe': calculate_sharpe(p, periods_per_year),
        'calmar': calculate_calmar(p, periods_per_year, max_dd),
        'max_drawdown': max_dd,
        'win_rate': calculate_win_rate(wins, losses),
        'profit_factor': calculate_profit_factor(gross_win, gross_loss),
        'annual_turnover': calculate_turnover(total_size_changes, p.size, periods_per_year),
        'trades': int(trades),
    }


def classify_sharpe(sharpe: float) -> str:
    """Status label for an out-of-sample Sharpe ratio."""
    if sharpe is None or not np.isfinite(sharpe):
        return 'DEAD'
    for threshold, label in STATUS_THRESHOLDS:
        if sharpe > threshold:
            return label
    return 'DEAD'
