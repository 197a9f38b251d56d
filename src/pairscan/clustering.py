"""
PCA + K-means clustering of asset returns.

Returns are standardized, projected on their leading principal components,
and the per-series loadings are grouped with k-means++ seeded K-means.
Two entry points:

- fit_auto: components from an explained-variance threshold, K from a
  series-per-cluster heuristic, one K-means run.
- fit_manual: caller-chosen components, fixed K or a K range searched with
  restarts, cluster-size constraints and inertia-based early stopping.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import linalg

from .errors import InsufficientDataError, InvalidParameterError

logger = logging.getLogger(__name__)

DEFAULT_SEED = 42

# Early-stop thresholds for the manual K search
WITHIN_K_MIN_GAIN = 0.001
ACROSS_K_MIN_GAIN = 0.01
WITHIN_K_MIN_RUNS = 3


@dataclass(frozen=True)
class ClusterResult:
    """Cluster assignment for every series plus the PCA pieces behind it."""
    series: List[str]
    labels: np.ndarray
    loadings: np.ndarray
    explained_variance: np.ndarray
    total_variance: float
    k: int
    inertia: float

    @property
    def explained_variance_ratio(self) -> np.ndarray:
        return self.explained_variance / max(self.total_variance, 1e-12)

    def cluster_map(self) -> Dict[str, int]:
        return {s: int(c) for s, c in zip(self.series, self.labels)}

    def members(self) -> Dict[int, List[str]]:
        groups: Dict[int, List[str]] = {}
        for s, c in zip(self.series, self.labels):
            groups.setdefault(int(c), []).append(s)
        return dict(sorted(groups.items()))


class KMeansFit(NamedTuple):
    labels: np.ndarray
    centroids: np.ndarray
    inertia: float
    n_iter: int
    history: List[float]


def standardize_returns(returns) -> np.ndarray:
    """Zero mean, unit population variance per column (variance floored at 1e-12)."""
    R = np.asarray(returns, dtype=float)
    mean = R.mean(axis=0)
    var = np.mean((R - mean) ** 2, axis=0)
    std = np.sqrt(np.maximum(var, 1e-12))
    return (R - mean) / std


def principal_components(standardized: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Eigen-decomposition of the sample covariance of standardized returns.

    Returns:
        (eigenvalues, eigenvectors) sorted by descending eigenvalue; negative
        eigenvalues from round-off are clamped to zero
    """
    Z = np.asarray(standardized, dtype=float)
    n = Z.shape[0]
    cov = (Z.T @ Z) / max(1.0, n - 1.0)

    eigvals, eigvecs = linalg.eigh(cov)
    eigvals = np.maximum(eigvals, 0.0)
    order = np.argsort(-eigvals, kind='stable')
    return eigvals[order], eigvecs[:, order]


def choose_num_components(eigenvalues: np.ndarray, tau: float = 0.85, pcs_cap: int = 8) -> int:
    """
    Smallest component count reaching the explained-variance threshold tau,
    clamped to [2, min(pcs_cap, number of series)].
    """
    if pcs_cap < 2:
        raise InvalidParameterError(f"pcs_cap must be >= 2, got {pcs_cap}")

    vals = np.asarray(eigenvalues, dtype=float)
    total = max(float(vals.sum()), 1e-12)
    cumulative = np.cumsum(vals) / total

    hits = np.nonzero(cumulative >= tau)[0]
    pcs = int(hits[0]) + 1 if hits.size else 1
    return int(np.clip(pcs, 2, min(pcs_cap, len(vals))))


def choose_num_clusters(n_series: int, target_per_cluster: int = 10) -> int:
    """K = round(n_series / target_per_cluster), clamped to [2, min(12, n_series)]."""
    if target_per_cluster <= 0:
        raise InvalidParameterError(f"target_per_cluster must be positive, got {target_per_cluster}")
    k = int(round(n_series / float(target_per_cluster)))
    return int(np.clip(k, 2, min(12, n_series)))


def _squared_distances(X: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    diff = X[:, None, :] - centroids[None, :, :]
    return np.sum(diff * diff, axis=2)


def _kmeans_plus_plus(X: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    m, d = X.shape
    centroids = np.empty((k, d))
    centroids[0] = X[rng.integers(m)]

    for c in range(1, k):
        dist2 = _squared_distances(X, centroids[:c]).min(axis=1)
        total = float(dist2.sum())
        if total <= 0:
            centroids[c] = X[rng.integers(m)]
            continue
        r = rng.random() * total
        pick = int(np.searchsorted(np.cumsum(dist2), r, side='left'))
        centroids[c] = X[min(pick, m - 1)]

    return centroids


def kmeans(points,
           k: int,
           max_iter: int = 100,
           rng: Optional[np.random.Generator] = None) -> KMeansFit:
    """
    K-means with k-means++ seeding on the rows of `points`.

    Iterates assign/recompute until no label changes or the inertia moves by
    less than 1e-8. An empty cluster gets its centroid reseeded from a
    uniformly random point.

    Args:
        points: (n_points, n_dims) array
        k: Number of clusters
        max_iter: Maximum Lloyd iterations
        rng: Random generator (seeded with DEFAULT_SEED if None)

    Returns:
        KMeansFit with labels, centroids, final inertia, iterations and inertia history
    """
    X = np.asarray(points, dtype=float)
    if X.ndim != 2 or X.shape[0] == 0:
        raise InvalidParameterError("points must be a non-empty 2-D array")
    m = X.shape[0]
    if not 1 <= k <= m:
        raise InvalidParameterError(f"k must be in [1, {m}], got {k}")
    if max_iter < 1:
        raise InvalidParameterError(f"max_iter must be >= 1, got {max_iter}")
    if rng is None:
        rng = np.random.default_rng(DEFAULT_SEED)

    centroids = _kmeans_plus_plus(X, k, rng)
    labels = np.full(m, -1, dtype=int)
    prev_inertia = np.inf
    history: List[float] = []
    n_iter = 0

    for n_iter in range(1, max_iter + 1):
        new_labels = np.argmin(_squared_distances(X, centroids), axis=1)
        changed = bool(np.any(new_labels != labels))
        labels = new_labels

        for j in range(k):
            mask = labels == j
            if not mask.any():
                centroids[j] = X[rng.integers(m)]
            else:
                centroids[j] = X[mask].mean(axis=0)

        inertia = float(np.sum((X - centroids[labels]) ** 2))
        history.append(inertia)

        if not changed or abs(prev_inertia - inertia) < 1e-8:
            prev_inertia = inertia
            break
        prev_inertia = inertia

    return KMeansFit(labels, centroids, prev_inertia, n_iter, history)


def _prepare_returns(returns, series: Optional[Sequence[str]]) -> Tuple[np.ndarray, List[str]]:
    if isinstance(returns, pd.DataFrame):
        names = [str(c) for c in returns.columns] if series is None else list(series)
        R = returns.to_numpy(dtype=float)
    else:
        R = np.asarray(returns, dtype=float)
        if series is None:
            raise InvalidParameterError("series names are required for array input")
        names = list(series)

    if R.ndim != 2:
        raise InvalidParameterError("returns must be a 2-D (time x series) matrix")
    n, m = R.shape
    if m != len(names):
        raise InvalidParameterError(f"{m} return columns but {len(names)} series names")
    if m < 2:
        raise InsufficientDataError(f"Need at least 2 series to cluster, got {m}")
    if n < 2:
        raise InsufficientDataError(f"Need at least 2 return observations, got {n}")
    if not np.all(np.isfinite(R)):
        raise InvalidParameterError("returns contain NaN or infinite values")
    return R, names


def _resolve_rng(seed: Optional[int], rng: Optional[np.random.Generator]) -> np.random.Generator:
    if rng is not None:
        return rng
    return np.random.default_rng(seed)


def fit_auto(returns,
             series: Optional[Sequence[str]] = None,
             tau: float = 0.85,
             pcs_cap: int = 8,
             target_per_cluster: int = 10,
             max_iter: int = 100,
             seed: Optional[int] = DEFAULT_SEED,
             rng: Optional[np.random.Generator] = None) -> ClusterResult:
    """
    Automatic mode: components from explained variance, K from a size heuristic.

    Args:
        returns: Training-window return matrix (time x series), DataFrame or array
        series: Series names (taken from DataFrame columns when omitted)
        tau: Cumulative explained-variance threshold
        pcs_cap: Upper bound on retained components
        target_per_cluster: Desired series per cluster
        max_iter: K-means iteration cap
        seed: Seed for the default generator
        rng: Injected generator (overrides seed)

    Returns:
        ClusterResult
    """
    R, names = _prepare_returns(returns, series)
    m = R.shape[1]

    eigvals, eigvecs = principal_components(standardize_returns(R))
    pcs = choose_num_components(eigvals, tau=tau, pcs_cap=pcs_cap)
    loadings = eigvecs[:, :pcs]
    k = choose_num_clusters(m, target_per_cluster)

    logger.info(f"Auto clustering: {m} series, {pcs} PCs, K={k}")

    fit = kmeans(loadings, k, max_iter=max_iter, rng=_resolve_rng(seed, rng))

    return ClusterResult(
        series=names,
        labels=fit.labels,
        loadings=loadings,
        explained_variance=eigvals[:pcs].copy(),
        total_variance=float(eigvals.sum()),
        k=k,
        inertia=fit.inertia
    )


def fit_manual(returns,
               series: Optional[Sequence[str]] = None,
               pcs: int = 6,
               k: Optional[int] = None,
               k_min: int = 3,
               k_max: int = 12,
               min_size: int = 5,
               max_size: int = 20,
               max_iter: int = 200,
               runs: int = 10,
               seed: Optional[int] = DEFAULT_SEED,
               rng: Optional[np.random.Generator] = None,
               progress: Optional[Callable[[float], None]] = None) -> ClusterResult:
    """
    Manual mode: fixed component count, fixed K or a searched K range.

    Every candidate K gets up to `runs` K-means restarts. Restarts producing a
    cluster smaller than `min_size` or larger than `max_size` are discarded;
    the lowest-inertia admissible labelling wins. Restarts within a K stop once
    three were admissible and the latest improved that K's best inertia by less
    than 0.1%. The K sweep stops once a K improves the best inertia of the
    previous Ks by less than 1%. With nothing admissible, K = max(2, k_min) is
    fitted once with no size constraints.

    Args:
        returns: Training-window return matrix (time x series)
        series: Series names
        pcs: Number of principal components, clamped to [1, min(20, n_series)]
        k: Fixed cluster count (skips the K search)
        k_min, k_max: K search range
        min_size, max_size: Admissible cluster sizes
        max_iter: K-means iteration cap
        runs: Restarts per K
        seed: Seed for the default generator
        rng: Injected generator (overrides seed)
        progress: Optional callback receiving the completed fraction

    Returns:
        ClusterResult
    """
    R, names = _prepare_returns(returns, series)
    m = R.shape[1]

    if runs < 1:
        raise InvalidParameterError(f"runs must be >= 1, got {runs}")
    if min_size > max_size:
        raise InvalidParameterError(f"min_size {min_size} exceeds max_size {max_size}")

    pcs = int(np.clip(pcs, 1, min(20, m)))
    eigvals, eigvecs = principal_components(standardize_returns(R))
    loadings = eigvecs[:, :pcs]

    if k is not None:
        if not 1 <= k <= m:
            raise InvalidParameterError(f"k must be in [1, {m}], got {k}")
        candidates = [int(k)]
    else:
        candidates = list(range(max(1, k_min), min(k_max, m) + 1))

    rng = _resolve_rng(seed, rng)
    total_steps = max(1, len(candidates) * runs)
    step = 0

    best_fit: Optional[KMeansFit] = None
    best_k = -1
    prev_best_across_k = np.inf

    for K in candidates:
        best_this_k = np.inf
        valid_runs = 0

        for _ in range(runs):
            fit = kmeans(loadings, K, max_iter=max_iter, rng=rng)
            sizes = np.bincount(fit.labels, minlength=K)

            step += 1
            if progress is not None:
                progress(step / total_steps)

            if sizes.min() < min_size or sizes.max() > max_size:
                continue

            valid_runs += 1
            previous_best = best_this_k

            if best_fit is None or fit.inertia < best_fit.inertia:
                best_fit = fit
                best_k = K
            if fit.inertia < best_this_k:
                best_this_k = fit.inertia

            if valid_runs >= WITHIN_K_MIN_RUNS:
                gain = max(0.0, previous_best - fit.inertia) / max(1e-12, abs(previous_best))
                if gain < WITHIN_K_MIN_GAIN:
                    break

        if np.isfinite(prev_best_across_k) and np.isfinite(best_this_k):
            gain_k = (prev_best_across_k - best_this_k) / max(1e-12, prev_best_across_k)
            if gain_k < ACROSS_K_MIN_GAIN:
                logger.debug(f"K search stopped at K={K} (gain {gain_k:.4%})")
                break
        if np.isfinite(best_this_k):
            prev_best_across_k = min(prev_best_across_k, best_this_k)

    if best_fit is None:
        best_k = min(max(2, k_min), m)
        logger.warning(f"No clustering met size constraints [{min_size}, {max_size}]; "
                       f"falling back to K={best_k} without constraints")
        best_fit = kmeans(loadings, best_k, max_iter=max_iter, rng=rng)

    if progress is not None:
        progress(1.0)

    logger.info(f"Manual clustering: {m} series, {pcs} PCs, K={best_k}, inertia={best_fit.inertia:.6f}")

    return ClusterResult(
        series=names,
        labels=best_fit.labels,
        loadings=loadings,
        explained_variance=eigvals[:pcs].copy(),
        total_variance=float(eigvals.sum()),
        k=best_k,
        inertia=best_fit.inertia
    )
