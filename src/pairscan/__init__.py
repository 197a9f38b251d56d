"""
Pairs Trading Research Engine

PCA + K-means clustering, Engle-Granger cointegration, static and Kalman
hedge ratios, spread backtesting and grid validation with out-of-sample replay.
"""

__version__ = "0.1.0"

from .errors import (
    PairScanError,
    InsufficientDataError,
    SingularRegressionError,
    FilterDivergenceError,
    InvalidParameterError
)

from .alignment import build_aligned_log_prices, build_log_return_matrix

from .clustering import ClusterResult, fit_auto, fit_manual, kmeans

from .cointegration import (
    CointegrationResult,
    engle_granger,
    engle_granger_pair,
    estimate_half_life,
    scan_cointegration
)

from .hedge import (
    StaticHedge,
    KalmanHedge,
    run_kalman_hedge,
    hedge_residuals
)

from .backtest import BacktestReport, SizingMode, run_backtest, backtest_equity

from .analytics import calculate_performance_metrics, classify_sharpe

from .validation import (
    ValidationGrid,
    ValidationConfig,
    ValidationResult,
    PairCandidate,
    evaluate_pair,
    grid_search_validation,
    select_candidates,
    select_top_configs,
    log_observer
)

from .config import ResearchConfig

from .pipeline import (
    OOSResult,
    ResearchResults,
    replay_out_of_sample,
    run_research,
    print_research_summary
)

from .tables import (
    cluster_table,
    cointegration_table,
    validation_table,
    oos_table,
    equity_table,
    export_table,
    load_cluster_map,
    load_cointegration_results,
    load_validation_results
)

from .plotting import plot_spread_signals, plot_oos_equity

from .utils import setup_logging, split_windows

__all__ = [
    # Errors
    'PairScanError',
    'InsufficientDataError',
    'SingularRegressionError',
    'FilterDivergenceError',
    'InvalidParameterError',
    # Alignment
    'build_aligned_log_prices',
    'build_log_return_matrix',
    # Clustering
    'ClusterResult',
    'fit_auto',
    'fit_manual',
    'kmeans',
    # Cointegration
    'CointegrationResult',
    'engle_granger',
    'engle_granger_pair',
    'estimate_half_life',
    'scan_cointegration',
    # Hedge
    'StaticHedge',
    'KalmanHedge',
    'run_kalman_hedge',
    'hedge_residuals',
    # Backtesting
    'BacktestReport',
    'SizingMode',
    'run_backtest',
    'backtest_equity',
    # Analytics
    'calculate_performance_metrics',
    'classify_sharpe',
    # Validation
    'ValidationGrid',
    'ValidationConfig',
    'ValidationResult',
    'PairCandidate',
    'evaluate_pair',
    'grid_search_validation',
    'select_candidates',
    'select_top_configs',
    'log_observer',
    # Pipeline
    'ResearchConfig',
    'OOSResult',
    'ResearchResults',
    'replay_out_of_sample',
    'run_research',
    'print_research_summary',
    # Tables
    'cluster_table',
    'cointegration_table',
    'validation_table',
    'oos_table',
    'equity_table',
    'export_table',
    'load_cluster_map',
    'load_cointegration_results',
    'load_validation_results',
    # Plotting
    'plot_spread_signals',
    'plot_oos_equity',
    # Utils
    'setup_logging',
    'split_windows'
]
