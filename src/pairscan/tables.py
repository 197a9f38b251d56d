"""
Result tables and CSV import/export.

Builds the cluster, cointegration, validation, out-of-sample and equity
tables as DataFrames with fixed column orders, and reads the cluster,
cointegration and validation tables back for later stages.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from .backtest import BacktestReport, SizingMode
from .clustering import ClusterResult
from .cointegration import CRITICAL_VALUES, CointegrationResult
from .errors import InvalidParameterError
from .hedge import KalmanHedge, StaticHedge
from .validation import ValidationConfig, ValidationResult

logger = logging.getLogger(__name__)

CLUSTER_COLUMNS = ['series', 'cluster_id']

COINTEGRATION_COLUMNS = [
    'cluster', 'series_y', 'series_x', 'n', 'adf_stat', 'beta', 'alpha',
    'used_lag', 'half_life', 'pass_5', 'pass_10', 'approx_pvalue'
]

VALIDATION_COLUMNS = [
    'pair_y', 'pair_x', 'mode', 'z_entry', 'z_exit', 'z_stop', 'sizing',
    'sharpe', 'calmar', 'max_dd', 'win_rate', 'profit_factor', 'turnover',
    'alpha', 'beta', 'half_life', 'q', 'r'
]

OOS_COLUMNS = VALIDATION_COLUMNS + [
    'oos_sharpe', 'oos_calmar', 'oos_max_dd', 'oos_win_rate',
    'oos_profit_factor', 'oos_turnover', 'trades', 'status'
]


def _opt(value: Optional[float]) -> float:
    return np.nan if value is None else float(value)


def _none_if_nan(value) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    return float(value)


def cluster_table(result: ClusterResult) -> pd.DataFrame:
    return pd.DataFrame(
        {'series': list(result.series), 'cluster_id': [int(c) for c in result.labels]},
        columns=CLUSTER_COLUMNS
    )


def cointegration_table(results: Iterable[CointegrationResult]) -> pd.DataFrame:
    rows = [{
        'cluster': r.cluster,
        'series_y': r.series_y,
        'series_x': r.series_x,
        'n': r.nobs,
        'adf_stat': r.adf_stat,
        'beta': r.beta,
        'alpha': r.alpha,
        'used_lag': r.used_lag,
        'half_life': _opt(r.half_life),
        'pass_5': bool(r.pass_5),
        'pass_10': bool(r.pass_10),
        'approx_pvalue': _opt(r.approx_pvalue),
    } for r in results]
    return pd.DataFrame(rows, columns=COINTEGRATION_COLUMNS)


def _validation_row(v: ValidationResult) -> Dict:
    c = v.config
    rep = v.report
    return {
        'pair_y': v.series_y,
        'pair_x': v.series_x,
        'mode': c.mode,
        'z_entry': c.z_entry,
        'z_exit': c.z_exit,
        'z_stop': _opt(c.z_stop),
        'sizing': c.sizing.value,
        'sharpe': rep.sharpe,
        'calmar': rep.calmar,
        'max_dd': rep.max_drawdown,
        'win_rate': rep.win_rate,
        'profit_factor': rep.profit_factor,
        'turnover': rep.annual_turnover,
        'alpha': v.alpha,
        'beta': v.beta,
        'half_life': _opt(v.half_life),
        'q': _opt(c.q),
        'r': _opt(c.r),
    }


def validation_table(results: Iterable[ValidationResult]) -> pd.DataFrame:
    return pd.DataFrame([_validation_row(v) for v in results], columns=VALIDATION_COLUMNS)


def oos_table(oos_results: Iterable) -> pd.DataFrame:
    """One row per replayed configuration: validation metrics then OOS metrics."""
    rows = []
    for o in oos_results:
        row = _validation_row(o.validation)
        rep = o.report
        row.update({
            'oos_sharpe': rep.sharpe,
            'oos_calmar': rep.calmar,
            'oos_max_dd': rep.max_drawdown,
            'oos_win_rate': rep.win_rate,
            'oos_profit_factor': rep.profit_factor,
            'oos_turnover': rep.annual_turnover,
            'trades': rep.trades,
            'status': o.status,
        })
        rows.append(row)
    return pd.DataFrame(rows, columns=OOS_COLUMNS)


def equity_column_name(oos_result, rank: int) -> str:
    v = oos_result.validation
    return f"{v.series_y}_{v.series_x}_{v.config.mode}_{rank}"


def equity_table(oos_results: Sequence, top_n: int = 10, index: Optional[pd.Index] = None) -> pd.DataFrame:
    """
    Cumulative PnL of the top strategies, one column each.

    Args:
        oos_results: OOS results, already ranked
        top_n: Number of strategies to include
        index: Test-window timestamps (taken from the first equity path if omitted)

    Returns:
        DataFrame indexed by test timestamp
    """
    top = list(oos_results)[:top_n]
    if index is None:
        index = top[0].equity.index if top else pd.Index([])
    columns = {equity_column_name(o, rank): o.equity for rank, o in enumerate(top, start=1)}
    return pd.DataFrame(columns, index=index)


def export_table(df: pd.DataFrame, out_dir: str, prefix: str, index: bool = False) -> str:
    """
    Write a table to <out_dir>/<prefix>_<UTC yyyymmdd_HHMMSS>.csv.

    Returns:
        Path of the written file
    """
    os.makedirs(out_dir, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')
    path = os.path.join(out_dir, f"{prefix}_{stamp}.csv")
    df.to_csv(path, index=index)
    logger.info(f"Wrote {len(df)} rows to {path}")
    return path


def _require_columns(df: pd.DataFrame, required: List[str], path: str):
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise InvalidParameterError(f"{path} is missing columns {missing}")


def load_cluster_map(path: str) -> Dict[str, int]:
    """Read a cluster table into {series: cluster_id}."""
    df = pd.read_csv(path, dtype={'series': str})
    _require_columns(df, CLUSTER_COLUMNS, path)
    return {str(s): int(c) for s, c in zip(df['series'], df['cluster_id'])}


def load_cointegration_results(path: str) -> List[CointegrationResult]:
    """Read a cointegration table back into CointegrationResult records."""
    df = pd.read_csv(path, dtype={'series_y': str, 'series_x': str})
    _require_columns(df, COINTEGRATION_COLUMNS, path)

    results = []
    for row in df.itertuples(index=False):
        stat = float(row.adf_stat)
        results.append(CointegrationResult(
            series_y=row.series_y,
            series_x=row.series_x,
            alpha=float(row.alpha),
            beta=float(row.beta),
            adf_stat=stat,
            used_lag=int(row.used_lag),
            nobs=int(row.n),
            half_life=_none_if_nan(row.half_life),
            pass_5=bool(row.pass_5),
            pass_10=bool(row.pass_10),
            pass_15=stat < CRITICAL_VALUES['15%'],
            approx_pvalue=_none_if_nan(row.approx_pvalue),
            cluster=int(row.cluster)
        ))
    return results


def load_validation_results(path: str) -> List[ValidationResult]:
    """
    Read a validation table back into ValidationResult records for replay.

    Trade counts are not part of the table and come back as 0.
    """
    df = pd.read_csv(path, dtype={'pair_y': str, 'pair_x': str})
    _require_columns(df, VALIDATION_COLUMNS, path)

    results = []
    for row in df.itertuples(index=False):
        mode = str(row.mode).strip().lower()
        if mode == 'kalman':
            hedge = KalmanHedge(float(row.q), float(row.r))
        elif mode == 'static':
            hedge = StaticHedge()
        else:
            raise InvalidParameterError(f"Unknown mode {row.mode!r} in {path}")

        config = ValidationConfig(
            z_entry=float(row.z_entry),
            z_exit=float(row.z_exit),
            z_stop=_none_if_nan(row.z_stop),
            sizing=SizingMode.parse(row.sizing),
            hedge=hedge
        )
        report = BacktestReport(
            sharpe=float(row.sharpe),
            calmar=float(row.calmar),
            max_drawdown=float(row.max_dd),
            win_rate=float(row.win_rate),
            profit_factor=float(row.profit_factor),
            annual_turnover=float(row.turnover)
        )
        results.append(ValidationResult(
            series_y=row.pair_y,
            series_x=row.pair_x,
            config=config,
            report=report,
            alpha=float(row.alpha),
            beta=float(row.beta),
            half_life=_none_if_nan(row.half_life)
        ))
    return results
