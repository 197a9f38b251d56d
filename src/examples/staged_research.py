"""
Example: Stage-by-stage research with CSV hand-off between stages.

Each stage writes its table; the next stage reloads it, the way separate
clustering, cointegration and validation runs share results.
"""

import logging
import sys

import numpy as np
import pandas as pd
from pairscan import (
    ResearchConfig,
    build_aligned_log_prices,
    split_windows,
    cluster_table,
    cointegration_table,
    validation_table,
    export_table,
    load_cluster_map,
    load_cointegration_results,
    load_validation_results,
    replay_out_of_sample,
    select_top_configs,
    plot_spread_signals,
    setup_logging
)
from pairscan.hedge import hedge_residuals, static_residuals
from pairscan.pipeline import run_clustering_stage, run_cointegration_stage, run_validation_stage
from pairscan.utils import residual_stats

setup_logging(level=logging.INFO)
logger = logging.getLogger(__name__)


def load_prices(path: str) -> pd.DataFrame:
    """Wide CSV with a timestamp column followed by one close column per series."""
    df = pd.read_csv(path)
    df[df.columns[0]] = pd.to_datetime(df[df.columns[0]], utc=True)
    return df.set_index(df.columns[0])


def synthetic_prices(n=2000, seed=7) -> pd.DataFrame:
    rng = np.random.RandomState(seed)
    t = pd.date_range('2024-01-02', periods=n, freq='h', tz='UTC')
    trend = np.cumsum(rng.randn(n) * 0.01)
    cols = {}
    for i in range(8):
        spread = np.zeros(n)
        for k in range(1, n):
            spread[k] = 0.9 * spread[k - 1] + rng.randn() * 0.003
        cols[f"X{i}"] = np.exp(4.0 + (0.9 + 0.05 * i) * trend + spread)
    return pd.DataFrame(cols, index=t)


def main():
    prices = load_prices(sys.argv[1]) if len(sys.argv) > 1 else synthetic_prices()
    config = ResearchConfig(cluster_mode='manual', pcs=4, k_min=2, k_max=4, min_size=2, max_size=8,
                            z_entry=(1.5, 2.0), z_exit=(0.5,), z_stop=(3.0,))
    out_dir = 'results'

    log_prices = build_aligned_log_prices(prices)
    split = split_windows(len(log_prices), config.train_fraction, min_obs=300)
    train = log_prices.iloc[split.train]
    valid = log_prices.iloc[split.valid]

    # Stage 1: clustering
    clusters = run_clustering_stage(train, config, progress=lambda f: logger.debug(f"clustering {f:.0%}"))
    cluster_path = export_table(cluster_table(clusters), out_dir, 'clusters')

    # Stage 2: cointegration within the saved clusters
    coint = run_cointegration_stage(train, load_cluster_map(cluster_path), config)
    coint_path = export_table(cointegration_table(coint), out_dir, 'cointegration')

    # Stage 3: grid validation from the saved cointegration table
    _, validation = run_validation_stage(load_cointegration_results(coint_path), train, valid, config)
    validation_path = export_table(validation_table(validation), out_dir, 'validation')

    # Stage 4: out-of-sample replay of the saved validation table
    selected = select_top_configs(load_validation_results(validation_path), config.top_per_pair)
    oos, equity = replay_out_of_sample(selected, log_prices, split, config.periods_per_year)
    export_table(equity, out_dir, 'equity', index=True)

    if oos:
        best = oos[0].validation
        y, x = best.series_y, best.series_x
        mu, sigma = residual_stats(static_residuals(train[y], train[x], best.alpha, best.beta))
        test = log_prices.iloc[split.test]
        plot_spread_signals(hedge_residuals(test[y], test[x], best.alpha, best.beta, best.config.hedge),
                            mu, sigma, best.config, index=test.index, half_life=best.half_life)


if __name__ == '__main__':
    main()
