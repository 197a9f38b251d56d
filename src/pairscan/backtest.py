"""
Spread backtesting engine for pairs trading.

A position in "spread units" is driven by the z-score of the residual path
against fixed training statistics. PnL_t = size * pos_{t-1->t} * (e_t - e_{t-1}).
"""

import logging
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import NamedTuple, Optional, Union

import numpy as np

from .analytics import calculate_performance_metrics
from .errors import InvalidParameterError
from .utils import calculate_zscore

logger = logging.getLogger(__name__)

DEFAULT_PERIODS_PER_YEAR = 252.0 * 6.5


class SizingMode(str, Enum):
    FIXED = "Fixed"
    HALF_LIFE_SCALED = "HalfLifeScaled"
    VOL_SCALED = "VolScaled"

    @classmethod
    def parse(cls, value: Union[str, "SizingMode"]) -> "SizingMode":
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        for mode in cls:
            if mode.value.lower() == key or mode.name.lower() == key:
                return mode
        raise InvalidParameterError(f"Unknown sizing mode: {value}")


class Position(IntEnum):
    FLAT = 0
    LONG_SPREAD = 1
    SHORT_SPREAD = -1


@dataclass(frozen=True)
class BacktestReport:
    sharpe: float = 0.0
    calmar: float = 0.0
    max_drawdown: float = 0.0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    annual_turnover: float = 0.0
    trades: int = 0


class SimulationPath(NamedTuple):
    pnl: np.ndarray
    positions: np.ndarray
    wins: int
    losses: int
    gross_win: float
    gross_loss: float
    turnover: float
    trades: int


def position_size(sizing: SizingMode, sigma: float, half_life: Optional[float] = None) -> float:
    """Per-unit position size for a sizing mode."""
    sizing = SizingMode.parse(sizing)
    if sizing is SizingMode.HALF_LIFE_SCALED:
        hl = 1.0 if half_life is None or not np.isfinite(half_life) else half_life
        return 1.0 / np.sqrt(max(1.0, hl))
    if sizing is SizingMode.VOL_SCALED:
        return 1.0 / sigma
    return 1.0


def _check_thresholds(z_entry: float, z_exit: float, z_stop: Optional[float]):
    for label, v in (("z_entry", z_entry), ("z_exit", z_exit), ("z_stop", z_stop)):
        if v is not None and np.isnan(v):
            raise InvalidParameterError(f"{label} is NaN")


def simulate_positions(residual,
                       mu: float,
                       sigma: float,
                       z_entry: float,
                       z_exit: float,
                       z_stop: Optional[float] = None,
                       size: float = 1.0) -> SimulationPath:
    """
    Run the Flat / Long-Spread / Short-Spread state machine over a residual path.

    At each step t >= 1 the z-score of residual[t-1] decides, in order:
    close on |z| >= z_stop (stop-loss) or |z| <= z_exit (take-profit), then,
    if flat, open short-spread when z >= z_entry or long-spread when z <= -z_entry.
    The position then earns size * pos * (residual[t] - residual[t-1]).

    Args:
        residual: Residual path on the evaluated window
        mu: Training residual mean
        sigma: Training residual standard deviation (> 0)
        z_entry: Entry threshold on |z|
        z_exit: Exit threshold on |z|
        z_stop: Stop threshold on |z| (None disables the stop)
        size: Position size multiplier

    Returns:
        SimulationPath with per-step PnL, positions held over each step and trade tallies
    """
    _check_thresholds(z_entry, z_exit, z_stop)

    e = np.asarray(residual, dtype=float)
    n = e.size
    z = calculate_zscore(e, mu, sigma)

    pnl = np.zeros(n)
    positions = np.zeros(n, dtype=int)
    pos = Position.FLAT
    trade_pnl = 0.0
    wins = losses = trades = 0
    gross_win = gross_loss = 0.0
    turnover = 0.0

    for t in range(1, n):
        az = abs(z[t - 1])

        # Exits are checked before entries
        if pos != Position.FLAT:
            stop_hit = z_stop is not None and az >= z_stop
            if stop_hit or az <= z_exit:
                if trade_pnl > 0:
                    wins += 1
                    gross_win += trade_pnl
                elif trade_pnl < 0:
                    losses += 1
                    gross_loss -= trade_pnl
                turnover += abs(int(pos))
                trades += 1
                pos = Position.FLAT
                trade_pnl = 0.0

        if pos == Position.FLAT and az >= z_entry:
            pos = Position.SHORT_SPREAD if z[t - 1] > 0 else Position.LONG_SPREAD
            turnover += abs(int(pos))

        step_pnl = size * int(pos) * (e[t] - e[t - 1])
        pnl[t] = step_pnl
        positions[t] = int(pos)
        if pos != Position.FLAT:
            trade_pnl += step_pnl

    # Open position at the end is tallied without a close
    if pos != Position.FLAT:
        if trade_pnl > 0:
            wins += 1
            gross_win += trade_pnl
        elif trade_pnl < 0:
            losses += 1
            gross_loss -= trade_pnl

    return SimulationPath(pnl, positions, wins, losses, gross_win, gross_loss, turnover, trades)


def _is_degenerate(residual, sigma: float) -> bool:
    return np.asarray(residual).size < 3 or not np.isfinite(sigma) or sigma <= 0


def run_backtest(residual,
                 mu: float,
                 sigma: float,
                 z_entry: float,
                 z_exit: float,
                 z_stop: Optional[float] = None,
                 sizing: SizingMode = SizingMode.FIXED,
                 half_life: Optional[float] = None,
                 periods_per_year: float = DEFAULT_PERIODS_PER_YEAR) -> BacktestReport:
    """
    Backtest a z-score spread strategy on a residual path.

    Args:
        residual: Residual path on the evaluated window
        mu: Training residual mean
        sigma: Training residual standard deviation
        z_entry: Entry threshold
        z_exit: Exit threshold
        z_stop: Stop threshold (None disables the stop)
        sizing: Sizing mode
        half_life: Training half-life (HalfLifeScaled sizing)
        periods_per_year: Annualization factor

    Returns:
        BacktestReport; all zeros for fewer than 3 points or non-positive sigma
    """
    _check_thresholds(z_entry, z_exit, z_stop)
    if _is_degenerate(residual, sigma):
        return BacktestReport()

    size = position_size(sizing, sigma, half_life)
    sim = simulate_positions(residual, mu, sigma, z_entry, z_exit, z_stop, size)

    metrics = calculate_performance_metrics(
        sim.pnl, periods_per_year,
        wins=sim.wins, losses=sim.losses,
        gross_win=sim.gross_win, gross_loss=sim.gross_loss,
        total_size_changes=sim.turnover, trades=sim.trades
    )
    return BacktestReport(**metrics)


def backtest_equity(residual,
                    mu: float,
                    sigma: float,
                    z_entry: float,
                    z_exit: float,
                    z_stop: Optional[float] = None,
                    sizing: SizingMode = SizingMode.FIXED,
                    half_life: Optional[float] = None) -> np.ndarray:
    """Cumulative PnL path of the same simulation run_backtest scores."""
    _check_thresholds(z_entry, z_exit, z_stop)
    if _is_degenerate(residual, sigma):
        return np.zeros(np.asarray(residual).size)

    size = position_size(sizing, sigma, half_life)
    sim = simulate_positions(residual, mu, sigma, z_entry, z_exit, z_stop, size)
    return np.cumsum(sim.pnl)
