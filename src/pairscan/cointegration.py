"""
Engle-Granger cointegration testing for directional pairs.

OLS hedge regression, ADF test on the residual with BIC lag selection,
fixed asymptotic critical values and AR(1) half-life estimation.
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, NamedTuple, Optional, Tuple

import numpy as np
import pandas as pd

from .errors import InsufficientDataError, InvalidParameterError, PairScanError, SingularRegressionError

logger = logging.getLogger(__name__)

MIN_OBS = 50
MIN_ADF_OBS = 10
MIN_HALF_LIFE_OBS = 20
PIVOT_TOLERANCE = 1e-14

# Asymptotic ADF critical values, constant-only regression, two variables
CRITICAL_VALUES: Dict[str, float] = {
    '5%': -2.86,
    '10%': -2.57,
    '15%': -2.43,
}

# (statistic, p-value) anchors for the piecewise-linear lookup
PVALUE_ANCHORS: Tuple[Tuple[float, float], ...] = (
    (-4.00, 0.001),
    (-3.43, 0.01),
    (-2.86, 0.05),
    (-2.57, 0.10),
    (-2.43, 0.15),
    (-2.00, 0.30),
    (-1.50, 0.50),
    (0.00, 0.96),
)


@dataclass(frozen=True)
class CointegrationResult:
    """Engle-Granger outcome for the ordered pair (series_y ~ series_x)."""
    series_y: str
    series_x: str
    alpha: float
    beta: float
    adf_stat: float
    used_lag: int
    nobs: int
    half_life: Optional[float]
    pass_5: bool
    pass_10: bool
    pass_15: bool
    approx_pvalue: Optional[float]
    cluster: int = 0


class OLSFit(NamedTuple):
    alpha: float
    beta: float
    residuals: np.ndarray


class ADFRegression(NamedTuple):
    stat: float
    bic: float
    nobs: int
    lag: int


def ols_fit(y, x) -> OLSFit:
    """
    Fit y = alpha + beta * x + u with the closed-form 2x2 normal equations.

    Raises:
        SingularRegressionError: if the normal-equations determinant is
            numerically zero (constant x)
    """
    y = np.asarray(y, dtype=float)
    x = np.asarray(x, dtype=float)
    if y.shape != x.shape:
        raise InvalidParameterError(f"Length mismatch: y has {y.size} obs, x has {x.size}")

    n = float(y.size)
    sx = float(x.sum())
    sy = float(y.sum())
    sxx = float(np.dot(x, x))
    sxy = float(np.dot(x, y))

    det = n * sxx - sx * sx
    if abs(det) <= 1e-12 * n * max(sxx, 1e-300):
        raise SingularRegressionError("OLS normal equations are singular")

    beta = (n * sxy - sx * sy) / det
    alpha = (sy - beta * sx) / n
    return OLSFit(alpha, beta, y - (alpha + beta * x))


def gauss_jordan_inverse(matrix) -> np.ndarray:
    """
    Invert a square matrix by Gauss-Jordan elimination with partial pivoting.

    Raises:
        SingularRegressionError: if the best available pivot is below 1e-14
    """
    A = np.array(matrix, dtype=float)
    n = A.shape[0]
    if A.ndim != 2 or A.shape[1] != n:
        raise InvalidParameterError("Matrix must be square")

    aug = np.hstack([A, np.eye(n)])
    for col in range(n):
        pivot_row = col + int(np.argmax(np.abs(aug[col:, col])))
        if abs(aug[pivot_row, col]) < PIVOT_TOLERANCE:
            raise SingularRegressionError(f"Singular matrix (pivot {aug[pivot_row, col]:.3e} at column {col})")
        if pivot_row != col:
            aug[[col, pivot_row]] = aug[[pivot_row, col]]

        aug[col] /= aug[col, col]
        for row in range(n):
            if row != col:
                aug[row] -= aug[row, col] * aug[col]

    return aug[:, n:]


def adf_regression(u, lag: int) -> ADFRegression:
    """
    ADF regression du_t = c + rho*u_{t-1} + sum_i gamma_i*du_{t-i} at a fixed lag.

    Args:
        u: Residual series
        lag: Number of lagged differences

    Returns:
        ADFRegression with the t-statistic of rho, the BIC, T and the lag
    """
    u = np.asarray(u, dtype=float)
    if lag < 0:
        raise InvalidParameterError(f"lag must be >= 0, got {lag}")

    n = u.size
    T = n - 1 - lag
    k = 2 + lag
    if T < MIN_ADF_OBS or T <= k:
        raise InsufficientDataError(f"ADF lag {lag} leaves {T} observations")

    du = np.diff(u)
    target = du[lag:]

    X = np.empty((T, k))
    X[:, 0] = 1.0
    X[:, 1] = u[lag:n - 1]
    for i in range(1, lag + 1):
        X[:, 1 + i] = du[lag - i:n - 1 - i]

    xtx_inv = gauss_jordan_inverse(X.T @ X)
    coef = xtx_inv @ (X.T @ target)
    resid = target - X @ coef
    rss = float(np.dot(resid, resid))

    sigma2 = rss / (T - k)
    se = math.sqrt(max(1e-18, sigma2 * xtx_inv[1, 1]))
    stat = float(coef[1] / se)
    bic = T * math.log(max(rss / T, 1e-300)) + k * math.log(T)

    return ADFRegression(stat, bic, T, lag)


def adf_test(u, max_lag: int = 4) -> ADFRegression:
    """
    ADF test with the lag chosen by minimum BIC over 0..max_lag.

    Lags that are too short or singular are skipped; if none succeeds the
    last failure is raised.
    """
    best: Optional[ADFRegression] = None
    last_error: Optional[PairScanError] = None

    for lag in range(max_lag + 1):
        try:
            reg = adf_regression(u, lag)
        except (InsufficientDataError, SingularRegressionError) as e:
            last_error = e
            continue
        if best is None or reg.bic < best.bic:
            best = reg

    if best is None:
        if last_error is None:
            raise InvalidParameterError(f"max_lag must be >= 0, got {max_lag}")
        raise last_error
    return best


def approx_pvalue(stat: float) -> Optional[float]:
    """Piecewise-linear p-value between anchor critical points, clamped at both ends."""
    if stat is None or not np.isfinite(stat):
        return None
    xs = [a[0] for a in PVALUE_ANCHORS]
    ps = [a[1] for a in PVALUE_ANCHORS]
    return float(np.interp(stat, xs, ps))


def estimate_half_life(residuals, min_obs: int = MIN_HALF_LIFE_OBS) -> Optional[float]:
    """
    Half-life of mean reversion from an AR(1) fit eps_t = c + phi*eps_{t-1}.

    Returns:
        -ln(2)/ln(phi) when phi is in (0, 1) and the result is finite and
        below 1e6, otherwise None
    """
    e = np.asarray(residuals, dtype=float)
    if e.size < min_obs or not np.all(np.isfinite(e)):
        return None

    try:
        fit = ols_fit(e[1:], e[:-1])
    except PairScanError:
        return None

    phi = fit.beta
    if not 0.0 < phi < 1.0:
        return None

    hl = -math.log(2.0) / math.log(phi)
    if not math.isfinite(hl) or hl <= 0 or hl >= 1e6:
        return None
    return hl


def engle_granger(y, x,
                  name_y: str = "y",
                  name_x: str = "x",
                  max_lag: int = 4,
                  cluster: int = 0) -> CointegrationResult:
    """
    Engle-Granger test of y on x.

    Args:
        y: Dependent log-price series
        x: Independent log-price series
        name_y: Identifier of y
        name_x: Identifier of x
        max_lag: Maximum ADF lag considered
        cluster: Cluster id recorded on the result

    Returns:
        CointegrationResult
    """
    y = np.asarray(y, dtype=float)
    x = np.asarray(x, dtype=float)
    if y.size != x.size:
        raise InvalidParameterError(f"Length mismatch: {name_y} has {y.size} obs, {name_x} has {x.size}")
    if y.size < MIN_OBS:
        raise InsufficientDataError(f"Need at least {MIN_OBS} observations, got {y.size}")

    fit = ols_fit(y, x)
    adf = adf_test(fit.residuals, max_lag=max_lag)

    return CointegrationResult(
        series_y=name_y,
        series_x=name_x,
        alpha=fit.alpha,
        beta=fit.beta,
        adf_stat=adf.stat,
        used_lag=adf.lag,
        nobs=adf.nobs,
        half_life=estimate_half_life(fit.residuals),
        pass_5=adf.stat < CRITICAL_VALUES['5%'],
        pass_10=adf.stat < CRITICAL_VALUES['10%'],
        pass_15=adf.stat < CRITICAL_VALUES['15%'],
        approx_pvalue=approx_pvalue(adf.stat),
        cluster=int(cluster)
    )


def engle_granger_pair(y, x,
                       name_y: str = "y",
                       name_x: str = "x",
                       max_lag: int = 4,
                       cluster: int = 0) -> Tuple[CointegrationResult, CointegrationResult]:
    """Both directions of a pair: (y ~ x) first, then (x ~ y)."""
    forward = engle_granger(y, x, name_y, name_x, max_lag=max_lag, cluster=cluster)
    reverse = engle_granger(x, y, name_x, name_y, max_lag=max_lag, cluster=cluster)
    return forward, reverse


def _group_by_cluster(columns: List[str], clusters: Optional[Mapping[str, int]]) -> Dict[int, List[str]]:
    groups: Dict[int, List[str]] = {}
    for col in columns:
        cid = int(clusters.get(col, 0)) if clusters else 0
        groups.setdefault(cid, []).append(col)
    return dict(sorted(groups.items()))


def scan_cointegration(log_prices: pd.DataFrame,
                       clusters: Optional[Mapping[str, int]] = None,
                       max_lag: int = 4,
                       progress: Optional[Callable[[float], None]] = None) -> List[CointegrationResult]:
    """
    Test every directional pair inside each cluster.

    For each unordered pair (i < j) in column order, (names[j] ~ names[i]) is
    tested first, then (names[i] ~ names[j]). A failing direction is logged
    and skipped. Results are sorted by ADF statistic within each cluster,
    clusters in ascending id order.

    Args:
        log_prices: Training-window aligned log prices
        clusters: Mapping series -> cluster id; missing series go to cluster 0,
            no mapping puts everything in one group
        max_lag: Maximum ADF lag
        progress: Optional callback receiving the completed fraction

    Returns:
        List of CointegrationResult
    """
    if len(log_prices) < MIN_OBS:
        raise InsufficientDataError(
            f"Cointegration needs at least {MIN_OBS} observations, got {len(log_prices)}"
        )

    # Series ids are strings throughout, whatever the frame's column labels
    log_prices = log_prices.rename(columns=str)
    groups = _group_by_cluster(list(log_prices.columns), clusters)
    total_pairs = sum(len(g) * (len(g) - 1) // 2 for g in groups.values())
    done = 0
    results: List[CointegrationResult] = []

    for cid, names in groups.items():
        if len(names) < 2:
            logger.warning(f"Cluster {cid} has fewer than 2 series, skipped")
            continue

        values = {name: log_prices[name].to_numpy(dtype=float) for name in names}
        cluster_results: List[CointegrationResult] = []

        for i in range(len(names)):
            for j in range(i + 1, len(names)):
                for dep, indep in ((names[j], names[i]), (names[i], names[j])):
                    try:
                        cluster_results.append(
                            engle_granger(values[dep], values[indep], dep, indep,
                                          max_lag=max_lag, cluster=cid)
                        )
                    except PairScanError as e:
                        logger.warning(f"Cointegration failed for {dep} ~ {indep}: {e}")

                done += 1
                if progress is not None and total_pairs > 0:
                    progress(done / total_pairs)

        cluster_results.sort(key=lambda r: r.adf_stat)
        results.extend(cluster_results)
        logger.info(f"Cluster {cid}: {len(names)} series, {len(cluster_results)} directional tests, "
                    f"{sum(r.pass_5 for r in cluster_results)} pass at 5%")

    return results
