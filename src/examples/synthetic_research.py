"""
Example: Full pairs research run on a synthetic universe.

Clusters 30 series, tests cointegration within clusters, grid-validates the
cointegrated pairs and replays the best configurations out of sample.
"""

import numpy as np
import pandas as pd
from pairscan import (
    ResearchConfig,
    run_research,
    print_research_summary,
    cluster_table,
    cointegration_table,
    validation_table,
    oos_table,
    export_table,
    plot_oos_equity,
    setup_logging
)

setup_logging(verbose_modules=False)

# Three sectors, each with a few cointegrated members around a common trend
np.random.seed(42)
n = 3000
t = pd.date_range('2024-01-02 09:30', periods=n, freq='h')

prices = {}
for sector in range(3):
    trend = np.cumsum(np.random.randn(n) * 0.01)
    for i in range(10):
        spread = np.zeros(n)
        for k in range(1, n):
            spread[k] = 0.92 * spread[k - 1] + np.random.randn() * 0.004
        beta = 0.8 + 0.4 * np.random.rand()
        log_price = 3.0 + sector + beta * trend + spread + np.random.randn(n) * 0.001
        prices[f"S{sector}_{i:02d}"] = pd.Series(np.exp(log_price), index=t)


def main():

    config = ResearchConfig(
        cluster_mode='auto',
        target_per_cluster=10,
        alpha_level=5,
        hl_min=1.0,
        hl_max=100.0,
        z_entry=(1.5, 2.0),
        z_exit=(0.5, 1.0),
        z_stop=(3.0, None),
        top_per_pair=1,
        equity_top_n=10,
        n_jobs=4  # Set according to your CPU. -1 uses every core
    )

    results = run_research(prices, config)

    print_research_summary(results, top_n=10)

    # Timestamped CSVs under ./results
    out_dir = 'results'
    export_table(cluster_table(results.clusters), out_dir, 'clusters')
    export_table(cointegration_table(results.cointegration), out_dir, 'cointegration')
    export_table(validation_table(results.validation), out_dir, 'validation')
    export_table(oos_table(results.oos), out_dir, 'oos')
    export_table(results.equity, out_dir, 'equity', index=True)

    if not results.equity.empty:
        plot_oos_equity(results.equity)


if __name__ == '__main__':
    main()
