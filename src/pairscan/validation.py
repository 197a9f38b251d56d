"""
Grid validation of cointegrated pairs on the validation window.

For every candidate pair the static residual path is scored over the full
threshold x sizing grid, then the Kalman filter is run once per retained
(Q, R) and its residual path is scored over the same grid. Results from all
pairs are ranked by Sharpe.
"""

import itertools
import logging
import math
from dataclasses import dataclass, field
from functools import partial
from multiprocessing import Pool, cpu_count
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .backtest import BacktestReport, SizingMode, run_backtest, DEFAULT_PERIODS_PER_YEAR
from .cointegration import CointegrationResult
from .errors import FilterDivergenceError, InsufficientDataError, InvalidParameterError, PairScanError
from .hedge import HedgeMode, KalmanHedge, StaticHedge, check_filter_divergence, run_kalman_hedge, static_residuals
from .utils import residual_stats

logger = logging.getLogger(__name__)

MIN_VALID_OBS = 50
QR_RATIO_MIN = 1e-7
QR_RATIO_MAX = 1e4
NOISE_VALUE_MAX = 1e3
DIVERGENCE_RATIO = 10.0
MODES = ("static", "kalman")

Observer = Callable[[str, Dict[str, Any]], None]


def parse_grid_values(text: str, allow_none: bool = False) -> Tuple[Optional[float], ...]:
    """
    Parse a comma-separated list of numbers, e.g. "1,1.5,2".

    Args:
        text: Comma-separated values; blanks are ignored
        allow_none: Accept "none" as a disabled value (stop thresholds)

    Returns:
        Tuple of floats (or None where allowed)
    """
    values = []
    for token in str(text).split(','):
        token = token.strip()
        if not token:
            continue
        if allow_none and token.lower() == 'none':
            values.append(None)
            continue
        try:
            v = float(token)
        except ValueError:
            raise InvalidParameterError(f"Malformed grid value: {token!r}") from None
        if not math.isfinite(v):
            raise InvalidParameterError(f"Grid value must be finite: {token!r}")
        values.append(v)
    return tuple(values)


@dataclass(frozen=True)
class ValidationGrid:
    """Threshold, sizing and optional explicit noise grids."""
    z_entry: Tuple[float, ...] = (1.0, 1.5, 2.0)
    z_exit: Tuple[float, ...] = (0.5, 1.0)
    z_stop: Tuple[Optional[float], ...] = (3.0, 4.0)
    sizing: Tuple[SizingMode, ...] = (SizingMode.FIXED, SizingMode.HALF_LIFE_SCALED)
    q: Tuple[float, ...] = ()
    r: Tuple[float, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'z_entry', _finite_tuple('z_entry', self.z_entry))
        object.__setattr__(self, 'z_exit', _finite_tuple('z_exit', self.z_exit))
        object.__setattr__(self, 'z_stop', _finite_tuple('z_stop', self.z_stop, allow_none=True))
        object.__setattr__(self, 'sizing', tuple(SizingMode.parse(s) for s in self.sizing))
        object.__setattr__(self, 'q', _finite_tuple('q', self.q, required=False))
        object.__setattr__(self, 'r', _finite_tuple('r', self.r, required=False))

        if not self.sizing:
            raise InvalidParameterError("sizing grid is empty")
        if any(v < 0 for v in self.z_entry + self.z_exit):
            raise InvalidParameterError("z thresholds must be >= 0")
        if any(v <= 0 for v in self.q + self.r):
            raise InvalidParameterError("q and r values must be positive")

    @classmethod
    def from_strings(cls,
                     z_entry: str = "1,1.5,2",
                     z_exit: str = "0.5,1",
                     z_stop: str = "3,4",
                     sizing: str = "Fixed,HalfLifeScaled",
                     q: str = "",
                     r: str = "") -> "ValidationGrid":
        return cls(
            z_entry=parse_grid_values(z_entry),
            z_exit=parse_grid_values(z_exit),
            z_stop=parse_grid_values(z_stop, allow_none=True),
            sizing=tuple(SizingMode.parse(s.strip()) for s in sizing.split(',') if s.strip()),
            q=parse_grid_values(q),
            r=parse_grid_values(r)
        )

    @property
    def has_explicit_noise(self) -> bool:
        return bool(self.q) and bool(self.r)

    def threshold_grid(self) -> List[Tuple[float, float, Optional[float], SizingMode]]:
        return list(itertools.product(self.z_entry, self.z_exit, self.z_stop, self.sizing))


def _finite_tuple(name: str, values: Iterable, allow_none: bool = False, required: bool = True) -> tuple:
    out = []
    for v in values:
        if v is None and allow_none:
            out.append(None)
            continue
        try:
            f = float(v)
        except (TypeError, ValueError):
            raise InvalidParameterError(f"{name} contains a non-numeric value: {v!r}") from None
        if not math.isfinite(f):
            raise InvalidParameterError(f"{name} contains a non-finite value: {v!r}")
        out.append(f)
    if required and not out:
        raise InvalidParameterError(f"{name} grid is empty")
    return tuple(out)


@dataclass(frozen=True)
class PairCandidate:
    """A cointegrated directional pair with its training statistics."""
    series_y: str
    series_x: str
    alpha: float
    beta: float
    half_life: Optional[float]
    mu_train: float
    sigma_train: float


@dataclass(frozen=True)
class ValidationConfig:
    z_entry: float
    z_exit: float
    z_stop: Optional[float]
    sizing: SizingMode
    hedge: HedgeMode = field(default_factory=StaticHedge)

    @property
    def mode(self) -> str:
        return self.hedge.name

    @property
    def q(self) -> Optional[float]:
        return self.hedge.q if isinstance(self.hedge, KalmanHedge) else None

    @property
    def r(self) -> Optional[float]:
        return self.hedge.r if isinstance(self.hedge, KalmanHedge) else None


@dataclass(frozen=True)
class ValidationResult:
    series_y: str
    series_x: str
    config: ValidationConfig
    report: BacktestReport
    alpha: float
    beta: float
    half_life: Optional[float]

    @property
    def sharpe(self) -> float:
        return self.report.sharpe

    @property
    def pair(self) -> Tuple[str, str]:
        return self.series_y, self.series_x


def _notify(observer: Optional[Observer], event: str, payload: Dict[str, Any]):
    if observer is not None:
        observer(event, payload)


def log_observer(event: str, payload: Dict[str, Any]):
    """Observer forwarding grid-search events to the module logger."""
    pair = f"{payload.get('series_y')}/{payload.get('series_x')}"
    if event == 'auto_noise_grid':
        q, r = payload['q'], payload['r']
        hl = payload.get('half_life')
        hl_text = f"{hl:.1f}" if hl is not None else "n/a"
        logger.info(f"[Auto Q/R] {pair} HL={hl_text} sigma={payload['sigma_train']:.4f} "
                    f"Q: {len(q)} values, R: {len(r)} values")
    elif event == 'kalman_summary':
        logger.info(f"[Kalman] {pair}: {payload['valid']}/{payload['tested']} valid Q/R pairs "
                    f"({payload['ratio_filtered']} ratio-filtered, {payload['diverged']} diverged)")
    elif event == 'pair_done':
        logger.info(f"{pair}: {payload['n_results']} configs, best Sharpe {payload['best_sharpe']:.3f}")
    elif event == 'pair_skipped':
        logger.warning(f"{pair} skipped: {payload['reason']}")
    else:
        logger.debug(f"{event}: {payload}")


def auto_noise_grid(half_life: Optional[float], sigma_train: float) -> Tuple[Tuple[float, ...], Tuple[float, ...]]:
    """
    Adaptive (Q, R) grids from the training half-life and residual variance.

    Q values are spread around 1/hl^2 (fixed tiny values for hl < 5), R
    values are multiples of sigma_train^2. A generic fallback applies when
    the half-life is missing or at most 0.5.

    Returns:
        (q_values, r_values), each restricted to (0, 1e3), de-duplicated and sorted
    """
    s2 = sigma_train * sigma_train

    if half_life is not None and np.isfinite(half_life) and half_life > 0.5:
        hl = float(half_life)
        q_opt = 1.0 / (hl * hl)

        if hl < 5:
            q_list = [1e-9, 5e-9, 1e-8, 5e-8, 1e-7, 5e-7, 1e-6, 5e-6, 1e-5, 5e-5, 1e-4]
            r_mult = [1e-4, 1e-3, 1e-2, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 20, 50, 100]
        elif hl < 20:
            q_list = [q_opt * m for m in (1e-5, 1e-4, 1e-3, 1e-2, 0.1, 0.5, 1, 2, 5, 10, 50, 100)]
            r_mult = [1e-3, 1e-2, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 20, 50]
        elif hl < 100:
            q_list = [q_opt * m for m in (1e-4, 1e-3, 1e-2, 0.1, 0.25, 0.5, 1, 2, 4, 10, 25, 50, 100)]
            r_mult = [1e-4, 1e-3, 1e-2, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 20, 50, 100]
        else:
            q_list = [q_opt * m for m in (0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 20, 50, 100, 200)]
            r_mult = [1e-3, 1e-2, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 20, 50]
    else:
        q_list = [1e-9, 1e-8, 1e-7, 1e-6, 1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1.0]
        r_mult = [1e-3, 1e-2, 0.1, 1, 10, 100]

    r_list = [s2 * m for m in r_mult]

    def _clean(values):
        return tuple(sorted({v for v in values if 0 < v < NOISE_VALUE_MAX}))

    return _clean(q_list), _clean(r_list)


def noise_pairs(q_values: Sequence[float], r_values: Sequence[float]) -> List[Tuple[float, float]]:
    """(Q, R) cross product without degenerate signal-to-noise ratios."""
    return [(q, r) for q in q_values for r in r_values
            if QR_RATIO_MIN <= q / r <= QR_RATIO_MAX]


def _normalize_modes(modes: Iterable[str]) -> Tuple[str, ...]:
    out = tuple(m.strip().lower() for m in modes)
    unknown = [m for m in out if m not in MODES]
    if unknown:
        raise InvalidParameterError(f"Unknown hedge modes: {unknown}")
    return out


def evaluate_pair(candidate: PairCandidate,
                  y_valid,
                  x_valid,
                  grid: Optional[ValidationGrid] = None,
                  periods_per_year: float = DEFAULT_PERIODS_PER_YEAR,
                  modes: Sequence[str] = MODES,
                  observer: Optional[Observer] = None) -> List[ValidationResult]:
    """
    Score one pair over the whole validation grid.

    Args:
        candidate: Pair with training alpha/beta/half-life/mu/sigma
        y_valid: Validation-window log prices of the dependent series
        x_valid: Validation-window log prices of the independent series
        grid: Validation grid (defaults to ValidationGrid())
        periods_per_year: Annualization factor
        modes: Hedge modes to evaluate ("static", "kalman")
        observer: Optional event callback

    Returns:
        Ranked list of ValidationResult
    """
    if grid is None:
        grid = ValidationGrid()
    modes = _normalize_modes(modes)

    y = np.asarray(y_valid, dtype=float)
    x = np.asarray(x_valid, dtype=float)
    if y.size != x.size:
        raise InvalidParameterError(f"Length mismatch: {y.size} vs {x.size}")
    if y.size < MIN_VALID_OBS:
        raise InsufficientDataError(f"Validation window needs at least {MIN_VALID_OBS} obs, got {y.size}")

    c = candidate
    combos = grid.threshold_grid()
    results: List[ValidationResult] = []

    def _sweep(residual: np.ndarray, hedge: HedgeMode):
        for z_entry, z_exit, z_stop, sizing in combos:
            report = run_backtest(residual, c.mu_train, c.sigma_train, z_entry, z_exit, z_stop,
                                  sizing, c.half_life, periods_per_year)
            config = ValidationConfig(z_entry, z_exit, z_stop, sizing, hedge)
            results.append(ValidationResult(c.series_y, c.series_x, config, report,
                                            c.alpha, c.beta, c.half_life))

    if 'static' in modes:
        _sweep(static_residuals(y, x, c.alpha, c.beta), StaticHedge())

    if 'kalman' in modes:
        if grid.has_explicit_noise:
            q_values, r_values = grid.q, grid.r
        else:
            q_values, r_values = auto_noise_grid(c.half_life, c.sigma_train)
            _notify(observer, 'auto_noise_grid', {
                'series_y': c.series_y, 'series_x': c.series_x,
                'half_life': c.half_life, 'sigma_train': c.sigma_train,
                'q': q_values, 'r': r_values,
            })

        pairs = noise_pairs(q_values, r_values)
        diverged = 0
        for q, r in pairs:
            kf = run_kalman_hedge(y, x, c.alpha, c.beta, q, r)
            try:
                check_filter_divergence(kf.residuals, c.sigma_train, DIVERGENCE_RATIO)
            except FilterDivergenceError as e:
                logger.debug(f"{c.series_y}/{c.series_x} q={q:.3g} r={r:.3g}: {e}")
                diverged += 1
                continue
            _sweep(kf.residuals, KalmanHedge(q, r))

        tested = len(q_values) * len(r_values)
        _notify(observer, 'kalman_summary', {
            'series_y': c.series_y, 'series_x': c.series_x,
            'tested': tested, 'ratio_filtered': tested - len(pairs),
            'diverged': diverged, 'valid': len(pairs) - diverged,
        })

    return rank_results(results)


def _sharpe_key(result: ValidationResult) -> float:
    s = result.report.sharpe
    return s if s is not None and not np.isnan(s) else -np.inf


def rank_results(results: Iterable[ValidationResult]) -> List[ValidationResult]:
    """Stable sort by Sharpe, descending; NaN Sharpe ranks last."""
    return sorted(results, key=_sharpe_key, reverse=True)


def _evaluate_task(task: Tuple[PairCandidate, np.ndarray, np.ndarray],
                   grid: ValidationGrid,
                   periods_per_year: float,
                   modes: Tuple[str, ...]) -> Tuple[List[ValidationResult], List[Tuple[str, Dict]], Optional[str]]:
    """Worker function for parallel evaluation; events are buffered for the parent."""
    candidate, y, x = task
    events: List[Tuple[str, Dict]] = []
    try:
        results = evaluate_pair(candidate, y, x, grid, periods_per_year, modes,
                                observer=lambda event, payload: events.append((event, payload)))
    except (PairScanError, ValueError, ArithmeticError) as e:
        return [], events, str(e)
    return results, events, None


def grid_search_validation(candidates: Sequence[PairCandidate],
                           valid_log_prices: pd.DataFrame,
                           grid: Optional[ValidationGrid] = None,
                           periods_per_year: float = DEFAULT_PERIODS_PER_YEAR,
                           modes: Sequence[str] = MODES,
                           n_jobs: int = 1,
                           progress: Optional[Callable[[float], None]] = None,
                           observer: Optional[Observer] = None) -> List[ValidationResult]:
    """
    Grid search over all candidate pairs on the validation window.

    Failing pairs are reported through the observer and skipped. Per-pair
    results are gathered in candidate order before the final ranking, so the
    output does not depend on n_jobs.

    Args:
        candidates: Cointegrated pairs with training statistics
        valid_log_prices: Validation-window aligned log prices
        grid: Validation grid (defaults to ValidationGrid())
        periods_per_year: Annualization factor
        modes: Hedge modes to evaluate
        n_jobs: Worker processes (-1 for all cores)
        progress: Optional callback receiving the completed fraction
        observer: Optional event callback

    Returns:
        Ranked list of ValidationResult across all pairs
    """
    if grid is None:
        grid = ValidationGrid()
    modes = _normalize_modes(modes)

    tasks = []
    skipped = []
    for c in candidates:
        missing = [s for s in (c.series_y, c.series_x) if s not in valid_log_prices.columns]
        if missing:
            skipped.append((c, f"missing series {missing}"))
            continue
        tasks.append((c,
                      valid_log_prices[c.series_y].to_numpy(dtype=float),
                      valid_log_prices[c.series_x].to_numpy(dtype=float)))

    for c, reason in skipped:
        _notify(observer, 'pair_skipped', {'series_y': c.series_y, 'series_x': c.series_x, 'reason': reason})

    logger.info(f"Grid validation: {len(tasks)} pairs, {len(grid.threshold_grid())} threshold combos, "
                f"modes={list(modes)}, {n_jobs} jobs")

    if n_jobs == -1:
        n_jobs = cpu_count()

    worker = partial(_evaluate_task, grid=grid, periods_per_year=periods_per_year, modes=modes)
    all_results: List[ValidationResult] = []
    total = len(tasks)

    def _collect(i: int, task, outcome):
        results, events, error = outcome
        c = task[0]
        for event, payload in events:
            _notify(observer, event, payload)
        if error is not None:
            _notify(observer, 'pair_skipped', {'series_y': c.series_y, 'series_x': c.series_x, 'reason': error})
        else:
            all_results.extend(results)
            _notify(observer, 'pair_done', {
                'series_y': c.series_y, 'series_x': c.series_x,
                'n_results': len(results),
                'best_sharpe': results[0].sharpe if results else float('nan'),
            })
        if progress is not None:
            progress((i + 1) / total)

    if n_jobs > 1 and total > 1:
        with Pool(n_jobs) as pool:
            for i, outcome in enumerate(pool.imap(worker, tasks)):
                _collect(i, tasks[i], outcome)
    else:
        for i, task in enumerate(tasks):
            _collect(i, task, worker(task))

    ranked = rank_results(all_results)
    logger.info(f"Grid validation done: {len(ranked)} configurations")
    return ranked


def select_candidates(coint_results: Iterable[CointegrationResult],
                      train_log_prices: pd.DataFrame,
                      alpha_level: int = 5,
                      hl_min: Optional[float] = None,
                      hl_max: Optional[float] = None) -> List[PairCandidate]:
    """
    Keep cointegrated pairs and attach training residual statistics.

    Args:
        coint_results: Directional cointegration results
        train_log_prices: Training-window aligned log prices
        alpha_level: 5 keeps pairs passing at 5%; 10 keeps pairs passing at 5% or 10%
        hl_min: Minimum half-life (pairs without a half-life are dropped)
        hl_max: Maximum half-life (pairs without a half-life are dropped)

    Pairs naming a series absent from train_log_prices are logged and skipped.

    Returns:
        List of PairCandidate
    """
    level = int(alpha_level)
    if level not in (5, 10):
        raise InvalidParameterError(f"alpha_level must be 5 or 10, got {alpha_level}")

    candidates = []
    for res in coint_results:
        passed = res.pass_5 if level == 5 else (res.pass_5 or res.pass_10)
        if not passed:
            continue
        if hl_min is not None and (res.half_life is None or res.half_life < hl_min):
            continue
        if hl_max is not None and (res.half_life is None or res.half_life > hl_max):
            continue
        missing = [s for s in (res.series_y, res.series_x) if s not in train_log_prices.columns]
        if missing:
            logger.warning(f"{res.series_y}/{res.series_x} skipped: missing series {missing} in training window")
            continue

        resid = static_residuals(train_log_prices[res.series_y], train_log_prices[res.series_x],
                                 res.alpha, res.beta)
        mu, sigma = residual_stats(resid)
        candidates.append(PairCandidate(res.series_y, res.series_x, res.alpha, res.beta,
                                        res.half_life, mu, sigma))

    logger.info(f"Selected {len(candidates)} candidate pairs at the {level}% level")
    return candidates


def select_top_configs(results: Iterable[ValidationResult], top_per_pair: int = 1) -> List[ValidationResult]:
    """Best `top_per_pair` configurations per directional pair, keeping ranked order."""
    if top_per_pair < 1:
        raise InvalidParameterError(f"top_per_pair must be >= 1, got {top_per_pair}")
    counts: Dict[Tuple[str, str], int] = {}
    selected = []
    for res in results:
        n = counts.get(res.pair, 0)
        if n < top_per_pair:
            selected.append(res)
            counts[res.pair] = n + 1
    return selected
