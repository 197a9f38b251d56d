"""
Utility functions and logging setup for the pairs research engine.
"""

import logging
import math
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .errors import InsufficientDataError, InvalidParameterError


def setup_logging(level=logging.INFO, verbose_modules=False):
    """
    Configure logging for the package.

    Args:
        level: Logging level (logging.INFO, logging.WARNING, etc.)
        verbose_modules: If False, reduces verbosity of the inner numerical modules
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if not verbose_modules:
        # Per-call modules are chatty inside grid search
        logging.getLogger('pairscan.hedge').setLevel(logging.WARNING)
        logging.getLogger('pairscan.backtest').setLevel(logging.WARNING)
        # Stage-level modules stay at INFO
        logging.getLogger('pairscan.validation').setLevel(logging.INFO)
        logging.getLogger('pairscan.pipeline').setLevel(logging.INFO)


@dataclass(frozen=True)
class WindowSplit:
    """Contiguous train / validation / test ranges over aligned timestamps."""
    train: slice
    valid: slice
    test: slice
    n_obs: int

    @property
    def n_train(self) -> int:
        return self.train.stop - self.train.start

    @property
    def n_valid(self) -> int:
        return self.valid.stop - self.valid.start

    @property
    def n_test(self) -> int:
        return self.test.stop - self.test.start


def split_windows(n_obs: int, train_fraction: float = 0.8, min_obs: int = 200) -> WindowSplit:
    """
    Split aligned timestamps into leading train and trailing validation/test windows.

    The hold-out after the training cut is halved: the first half validates,
    the second half is the out-of-sample test. Nothing is shuffled.

    Args:
        n_obs: Number of aligned timestamps
        train_fraction: Share of observations used for training
        min_obs: Minimum observations required for the split

    Returns:
        WindowSplit with integer slices
    """
    if not 0.0 < train_fraction < 1.0:
        raise InvalidParameterError(f"train_fraction must be in (0, 1), got {train_fraction}")
    if n_obs < min_obs:
        raise InsufficientDataError(
            f"Dataset too short for train/valid/test split: {n_obs} obs (need >= {min_obs})"
        )

    cut = int(math.floor(n_obs * train_fraction))
    valid_len = (n_obs - cut) // 2
    return WindowSplit(
        train=slice(0, cut),
        valid=slice(cut, cut + valid_len),
        test=slice(cut + valid_len, n_obs),
        n_obs=n_obs
    )


def residual_stats(residuals) -> Tuple[float, float]:
    """
    Mean and population standard deviation of a residual path.

    The variance is floored at 1e-16 so a flat path still yields a usable sigma.
    """
    r = np.asarray(residuals, dtype=float)
    if r.size == 0:
        raise InsufficientDataError("Empty residual series")

    mu = float(r.mean())
    sigma = float(np.sqrt(max(1e-16, float(np.mean((r - mu) ** 2)))))
    if not (np.isfinite(mu) and np.isfinite(sigma)) or sigma <= 0:
        raise InvalidParameterError(f"Invalid training residual stats: mu={mu}, sigma={sigma}")
    return mu, sigma


def calculate_zscore(series, mu: float, sigma: float) -> np.ndarray:
    """
    Z-score against fixed training statistics.

    Mean and sigma come from the training window only, never from the window
    being scored, which keeps evaluation free of look-ahead bias.

    Args:
        series: Residual path
        mu: Training mean
        sigma: Training standard deviation (> 0)

    Returns:
        Z-score array
    """
    if sigma <= 0:
        raise InvalidParameterError(f"sigma must be positive, got {sigma}")
    return (np.asarray(series, dtype=float) - mu) / sigma
