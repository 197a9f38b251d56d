"""
Visualization utilities for spread signals and out-of-sample equity.
"""

from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from .backtest import position_size, simulate_positions
from .utils import calculate_zscore


def plot_spread_signals(residual,
                        mu: float,
                        sigma: float,
                        config,
                        index: Optional[pd.Index] = None,
                        half_life: Optional[float] = None,
                        show: bool = True):
    """
    Visualize the residual, its z-score, threshold bands and trade entries/exits.

    Args:
        residual: Residual path on the evaluated window
        mu: Training residual mean
        sigma: Training residual standard deviation
        config: ValidationConfig (thresholds and sizing)
        index: Optional timestamps for the x axis
        half_life: Training half-life (HalfLifeScaled sizing)
        show: Call plt.show() before returning

    Returns:
        The matplotlib Figure
    """
    e = np.asarray(residual, dtype=float)
    if index is None:
        index = pd.RangeIndex(e.size)
    spread = pd.Series(e, index=index)
    zscore = pd.Series(calculate_zscore(e, mu, sigma), index=index)

    size = position_size(config.sizing, sigma, half_life)
    sim = simulate_positions(e, mu, sigma, config.z_entry, config.z_exit, config.z_stop, size)

    fig, ax = plt.subplots(figsize=(16, 6))

    # Primary axis: Spread
    ax.plot(spread, color='blue', alpha=0.7, linewidth=1.3, label='Residual')
    ax.set_ylabel('Residual', color='blue')
    ax.tick_params(axis='y', labelcolor='blue')

    # Secondary axis: Z-Score
    ax2 = ax.twinx()
    ax2.plot(zscore, color='purple', alpha=0.7, linewidth=1.2, label='Z-Score')
    ax2.set_ylabel('Z-Score', color='purple')
    ax2.tick_params(axis='y', labelcolor='purple')

    ax2.axhline(config.z_entry, color='r', linestyle='--', alpha=0.8, label='Entry Short')
    ax2.axhline(-config.z_entry, color='g', linestyle='--', alpha=0.8, label='Entry Long')
    ax2.axhline(config.z_exit, color='orange', linestyle=':', alpha=0.8, label='Exit')
    ax2.axhline(-config.z_exit, color='orange', linestyle=':', alpha=0.8)
    if config.z_stop is not None:
        ax2.axhline(config.z_stop, color='black', linestyle='-.', alpha=0.6, label='Stop')
        ax2.axhline(-config.z_stop, color='black', linestyle='-.', alpha=0.6)

    # Decisions at step t use z[t-1]; mark them on the bar that triggered them
    pos = sim.positions
    changes = np.flatnonzero(np.diff(pos) != 0) + 1
    for t in changes:
        trigger = index[t - 1]
        if pos[t - 1] != 0:
            ax2.scatter(trigger, zscore.iloc[t - 1], color='cyan', marker='o', s=80,
                        edgecolor='black', zorder=5)
        if pos[t] != 0:
            marker = '^' if pos[t] > 0 else 'v'
            color = 'lime' if pos[t] > 0 else 'red'
            ax2.scatter(trigger, zscore.iloc[t - 1], color=color, marker=marker, s=100,
                        edgecolor='black', zorder=5)

    mode = getattr(config, 'mode', 'static')
    ax.set_title(f"Spread and Z-Score with Trades ({mode}, sizing={config.sizing.value})", fontsize=14)
    ax.grid(True, alpha=0.3)

    lines, labels = [], []
    for a in (ax, ax2):
        lns, lbls = a.get_legend_handles_labels()
        lines += lns
        labels += lbls
    ax.legend(lines, labels, loc='upper right', framealpha=0.8, fontsize=9)

    plt.tight_layout()
    if show:
        plt.show()
    return fig


def plot_oos_equity(equity: pd.DataFrame, show: bool = True, figsize=(14, 8)):
    """
    Plot out-of-sample cumulative PnL curves and the drawdown of the best one.

    Args:
        equity: Equity table (one column per strategy, best first)
        show: Call plt.show() before returning
        figsize: Figure size

    Returns:
        The matplotlib Figure
    """
    fig, axes = plt.subplots(2, 1, figsize=figsize, sharex=True)

    for col in equity.columns:
        axes[0].plot(equity.index, equity[col], linewidth=1.3, label=col)
    axes[0].set_title('Out-of-Sample Cumulative PnL')
    axes[0].set_ylabel('PnL (spread units)')
    axes[0].grid(True, alpha=0.3)
    if len(equity.columns):
        axes[0].legend(loc='upper left', fontsize=8)

    if len(equity.columns):
        best = equity.iloc[:, 0]
        peak = best.cummax().clip(lower=0.0)
        drawdown = best - peak
        axes[1].fill_between(equity.index, drawdown, 0, alpha=0.5, color='red')
        axes[1].set_title(f'Drawdown: {equity.columns[0]}')
    axes[1].set_ylabel('Drawdown')
    axes[1].grid(True, alpha=0.3)

    plt.tight_layout()
    if show:
        plt.show()
    return fig
