"""
End-to-end research pipeline with out-of-sample replay.

Aligned prices are split into contiguous train / validation / test windows:
clustering and cointegration run on train, the grid search on validation,
and the best configurations per pair are replayed on the held-out test window.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .alignment import PriceInput, build_aligned_log_prices, build_log_return_matrix
from .analytics import classify_sharpe
from .backtest import BacktestReport, DEFAULT_PERIODS_PER_YEAR, backtest_equity, run_backtest
from .clustering import ClusterResult, fit_auto, fit_manual
from .cointegration import CointegrationResult, scan_cointegration
from .config import ResearchConfig
from .errors import InsufficientDataError, PairScanError
from .hedge import KalmanHedge, run_kalman_hedge, static_residuals
from .tables import equity_table
from .utils import WindowSplit, residual_stats, split_windows
from .validation import (
    Observer,
    PairCandidate,
    ValidationResult,
    grid_search_validation,
    log_observer,
    select_candidates,
    select_top_configs,
)

logger = logging.getLogger(__name__)

MIN_VALIDATION_OBS = 200
MIN_OOS_OBS = 300


@dataclass
class OOSResult:
    """Replay of one validated configuration on the held-out window."""
    validation: ValidationResult
    report: BacktestReport
    equity: pd.Series
    status: str

    @property
    def sharpe(self) -> float:
        return self.report.sharpe


@dataclass
class ResearchResults:
    """Outputs of every pipeline stage."""
    split: WindowSplit
    log_prices: pd.DataFrame
    clusters: Optional[ClusterResult]
    cointegration: List[CointegrationResult]
    candidates: List[PairCandidate]
    validation: List[ValidationResult]
    oos: List[OOSResult] = field(default_factory=list)
    equity: pd.DataFrame = field(default_factory=pd.DataFrame)


def run_clustering_stage(train_log_prices: pd.DataFrame,
                         config: Optional[ResearchConfig] = None,
                         progress: Optional[Callable[[float], None]] = None) -> ClusterResult:
    """Cluster training-window log returns in the configured mode."""
    if config is None:
        config = ResearchConfig()

    returns = build_log_return_matrix(train_log_prices)

    if config.cluster_mode == "auto":
        return fit_auto(
            returns,
            tau=config.tau,
            pcs_cap=config.pcs_cap,
            target_per_cluster=config.target_per_cluster,
            max_iter=config.kmeans_max_iter,
            seed=config.seed
        )

    return fit_manual(
        returns,
        pcs=config.pcs,
        k=config.k,
        k_min=config.k_min,
        k_max=config.k_max,
        min_size=config.min_size,
        max_size=config.max_size,
        max_iter=config.kmeans_max_iter,
        runs=config.kmeans_runs,
        seed=config.seed,
        progress=progress
    )


def run_cointegration_stage(train_log_prices: pd.DataFrame,
                            clusters: Optional[Union[ClusterResult, Mapping[str, int]]] = None,
                            config: Optional[ResearchConfig] = None,
                            progress: Optional[Callable[[float], None]] = None) -> List[CointegrationResult]:
    """Directional Engle-Granger sweep within clusters on the training window."""
    if config is None:
        config = ResearchConfig()
    if isinstance(clusters, ClusterResult):
        clusters = clusters.cluster_map()
    return scan_cointegration(train_log_prices, clusters, max_lag=config.max_lag, progress=progress)


def run_validation_stage(coint_results: Sequence[CointegrationResult],
                         train_log_prices: pd.DataFrame,
                         valid_log_prices: pd.DataFrame,
                         config: Optional[ResearchConfig] = None,
                         progress: Optional[Callable[[float], None]] = None,
                         observer: Optional[Observer] = log_observer
                         ) -> Tuple[List[PairCandidate], List[ValidationResult]]:
    """Select cointegrated candidates and grid-search them on the validation window."""
    if config is None:
        config = ResearchConfig()

    candidates = select_candidates(coint_results, train_log_prices,
                                   alpha_level=config.alpha_level,
                                   hl_min=config.hl_min, hl_max=config.hl_max)
    results = grid_search_validation(
        candidates,
        valid_log_prices,
        grid=config.grid(),
        periods_per_year=config.periods_per_year,
        modes=config.modes,
        n_jobs=config.n_jobs,
        progress=progress,
        observer=observer
    )
    return candidates, results


def _replay_one(v: ValidationResult,
                train: pd.DataFrame,
                test: pd.DataFrame,
                periods_per_year: float) -> Tuple[BacktestReport, np.ndarray]:
    y_tr = train[v.series_y].to_numpy(dtype=float)
    x_tr = train[v.series_x].to_numpy(dtype=float)
    y_te = test[v.series_y].to_numpy(dtype=float)
    x_te = test[v.series_x].to_numpy(dtype=float)

    mu, sigma = residual_stats(static_residuals(y_tr, x_tr, v.alpha, v.beta))

    hedge = v.config.hedge
    if isinstance(hedge, KalmanHedge):
        residual = run_kalman_hedge(y_te, x_te, v.alpha, v.beta, hedge.q, hedge.r).residuals
    else:
        residual = static_residuals(y_te, x_te, v.alpha, v.beta)

    c = v.config
    report = run_backtest(residual, mu, sigma, c.z_entry, c.z_exit, c.z_stop,
                          c.sizing, v.half_life, periods_per_year)
    equity = backtest_equity(residual, mu, sigma, c.z_entry, c.z_exit, c.z_stop,
                             c.sizing, v.half_life)
    return report, equity


def replay_out_of_sample(selected: Sequence[ValidationResult],
                         log_prices: pd.DataFrame,
                         split: WindowSplit,
                         periods_per_year: float = DEFAULT_PERIODS_PER_YEAR,
                         equity_top_n: int = 10) -> Tuple[List[OOSResult], pd.DataFrame]:
    """
    Replay selected configurations on the held-out test window.

    Training mu/sigma come from the static training residuals with each
    configuration's alpha/beta. Kalman configurations rerun the filter over
    the test window starting from the training beta.

    Args:
        selected: Validated configurations to replay
        log_prices: Full aligned log-price matrix
        split: Window split over log_prices
        periods_per_year: Annualization factor
        equity_top_n: Number of best strategies in the equity table

    Returns:
        (OOS results ranked by OOS Sharpe, equity table indexed by test timestamps)
    """
    if split.n_obs < MIN_OOS_OBS:
        raise InsufficientDataError(
            f"Out-of-sample replay needs at least {MIN_OOS_OBS} observations, got {split.n_obs}"
        )

    train = log_prices.iloc[split.train]
    test = log_prices.iloc[split.test]

    results: List[OOSResult] = []
    for v in selected:
        try:
            report, equity = _replay_one(v, train, test, periods_per_year)
        except (PairScanError, KeyError) as e:
            logger.warning(f"OOS replay failed for {v.series_y}/{v.series_x} ({v.config.mode}): {e}")
            continue
        results.append(OOSResult(
            validation=v,
            report=report,
            equity=pd.Series(equity, index=test.index),
            status=classify_sharpe(report.sharpe)
        ))

    results.sort(key=lambda r: r.sharpe if np.isfinite(r.sharpe) else -np.inf, reverse=True)

    equity = equity_table(results, top_n=equity_top_n, index=test.index)

    n_good = sum(r.status != 'DEAD' for r in results)
    logger.info(f"OOS replay: {len(results)} configurations, {n_good} with Sharpe > 0.3")
    return results, equity


def run_research(prices: PriceInput,
                 config: Optional[ResearchConfig] = None,
                 start: Optional[pd.Timestamp] = None,
                 end: Optional[pd.Timestamp] = None,
                 progress: Optional[Callable[[float], None]] = None,
                 observer: Optional[Observer] = log_observer) -> ResearchResults:
    """
    Run every research stage on a price map.

    Args:
        prices: Mapping of series id to price Series, or a wide DataFrame
        config: Stage parameters (defaults to ResearchConfig())
        start: Optional window start
        end: Optional window end
        progress: Optional callback for the validation grid search
        observer: Grid-search event callback

    Returns:
        ResearchResults
    """
    if config is None:
        config = ResearchConfig()

    log_prices = build_aligned_log_prices(prices, start, end)
    min_obs = MIN_OOS_OBS if config.run_oos else MIN_VALIDATION_OBS
    split = split_windows(len(log_prices), config.train_fraction, min_obs)

    train = log_prices.iloc[split.train]
    valid = log_prices.iloc[split.valid]
    logger.info(f"Research window: {log_prices.shape[1]} series, {split.n_obs} obs "
                f"(train {split.n_train}, valid {split.n_valid}, test {split.n_test})")

    clusters = run_clustering_stage(train, config) if config.cluster_series else None
    coint = run_cointegration_stage(train, clusters, config)
    candidates, validation = run_validation_stage(coint, train, valid, config,
                                                  progress=progress, observer=observer)

    results = ResearchResults(
        split=split,
        log_prices=log_prices,
        clusters=clusters,
        cointegration=coint,
        candidates=candidates,
        validation=validation
    )

    if config.run_oos:
        selected = select_top_configs(validation, config.top_per_pair)
        results.oos, results.equity = replay_out_of_sample(
            selected, log_prices, split,
            periods_per_year=config.periods_per_year,
            equity_top_n=config.equity_top_n
        )

    return results


def print_research_summary(results: ResearchResults, top_n: int = 10):
    """Print a console summary of a research run."""
    split = results.split
    print("\n" + "="*80)
    print("PAIRS RESEARCH SUMMARY")
    print("="*80)

    print(f"\nSeries: {results.log_prices.shape[1]}   Observations: {split.n_obs}")
    print(f"  Train: {split.n_train:>6d}   Valid: {split.n_valid:>6d}   Test: {split.n_test:>6d}")

    if results.clusters is not None:
        print(f"\nClusters: K={results.clusters.k}, inertia={results.clusters.inertia:.4f}")
        for cid, members in results.clusters.members().items():
            print(f"  {cid:>3d}: {len(members):>3d} series")

    n_pass5 = sum(r.pass_5 for r in results.cointegration)
    n_pass10 = sum(r.pass_10 for r in results.cointegration)
    print(f"\nCointegration: {len(results.cointegration)} directional tests, "
          f"{n_pass5} pass at 5%, {n_pass10} pass at 10%")
    print(f"Candidates: {len(results.candidates)}   Validated configurations: {len(results.validation)}")

    if results.validation:
        print(f"\nTop Validation Configurations:")
        for v in results.validation[:top_n]:
            c = v.config
            print(f"  {v.series_y:>10s} ~ {v.series_x:<10s} {c.mode:7s} "
                  f"in={c.z_entry:.2f} out={c.z_exit:.2f} sizing={c.sizing.value:15s} "
                  f"Sharpe={v.sharpe:>7.3f}")

    if results.oos:
        print(f"\nOut-of-Sample:")
        for o in results.oos[:top_n]:
            v = o.validation
            print(f"  {v.series_y:>10s} ~ {v.series_x:<10s} {v.config.mode:7s} "
                  f"Sharpe={o.sharpe:>7.3f}  MaxDD={o.report.max_drawdown:>8.4f}  "
                  f"Trades={o.report.trades:>4d}  {o.status}")
        counts: Dict[str, int] = {}
        for o in results.oos:
            counts[o.status] = counts.get(o.status, 0) + 1
        print(f"\nStatus Distribution:")
        for status in ('ELITE', 'STRONG', 'DECENT', 'WEAK', 'DEAD'):
            if status in counts:
                pct = counts[status] / len(results.oos) * 100
                print(f"  {status:8s}: {counts[status]:>3d} ({pct:>5.1f}%)")
