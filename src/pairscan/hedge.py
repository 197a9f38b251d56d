"""
Hedge ratio models for pairs trading.

Supports the static OLS hedge from the training window and a scalar Kalman
filter producing a time-varying hedge ratio with alpha held fixed.
"""

import logging
import math
from dataclasses import dataclass
from typing import NamedTuple, Union

import numpy as np

from .errors import FilterDivergenceError, InvalidParameterError

logger = logging.getLogger(__name__)

S_FLOOR = 1e-16
P_FLOOR = 1e-12


@dataclass(frozen=True)
class StaticHedge:
    """Training-window alpha/beta reused unchanged."""

    @property
    def name(self) -> str:
        return "static"


@dataclass(frozen=True)
class KalmanHedge:
    """Random-walk beta filtered with process noise q and measurement noise r."""
    q: float
    r: float

    def __post_init__(self):
        for label, v in (("q", self.q), ("r", self.r)):
            if not np.isfinite(v) or v < 0:
                raise InvalidParameterError(f"Kalman {label} must be finite and >= 0, got {v}")

    @property
    def name(self) -> str:
        return "kalman"


HedgeMode = Union[StaticHedge, KalmanHedge]


class KalmanResult(NamedTuple):
    betas: np.ndarray
    residuals: np.ndarray


def static_residuals(y, x, alpha: float, beta: float) -> np.ndarray:
    """Residual path y - (alpha + beta * x) with fixed coefficients."""
    return np.asarray(y, dtype=float) - (alpha + beta * np.asarray(x, dtype=float))


def run_kalman_hedge(y, x,
                     alpha: float,
                     beta_init: float,
                     q: float,
                     r: float,
                     p_init: float = 1.0) -> KalmanResult:
    """
    Scalar Kalman filter on the hedge ratio.

    State-space model:
        beta_t = beta_{t-1} + w_t,          w_t ~ N(0, q)   (state)
        y_t = alpha + beta_t * x_t + eps_t, eps_t ~ N(0, r) (observation)

    Alpha stays at the training OLS value; only beta is filtered.

    Args:
        y: Dependent log prices
        x: Independent log prices
        alpha: Fixed intercept
        beta_init: Starting beta (training OLS beta)
        q: Process noise variance
        r: Measurement noise variance
        p_init: Initial state variance

    Returns:
        KalmanResult with the filtered beta path and residuals
        y_t - (alpha + beta_t * x_t) after each update
    """
    for label, v in (("q", q), ("r", r)):
        if not np.isfinite(v) or v < 0:
            raise InvalidParameterError(f"Kalman {label} must be finite and >= 0, got {v}")

    y = np.asarray(y, dtype=float)
    x = np.asarray(x, dtype=float)
    if y.shape != x.shape:
        raise InvalidParameterError(f"Length mismatch: y has {y.size} obs, x has {x.size}")

    n = y.size
    betas = np.empty(n)
    residuals = np.empty(n)

    beta = float(beta_init)
    P = float(p_init)

    for t in range(n):
        xt = x[t]

        # Predict step
        P_pred = P + q

        # Update step
        innovation = y[t] - (alpha + beta * xt)
        S = max(S_FLOOR, xt * xt * P_pred + r)
        K = P_pred * xt / S

        beta = beta + K * innovation
        P = max(P_FLOOR, (1.0 - K * xt) * P_pred)

        betas[t] = beta
        residuals[t] = y[t] - (alpha + beta * xt)

    return KalmanResult(betas, residuals)


def hedge_residuals(y, x, alpha: float, beta: float, hedge: HedgeMode) -> np.ndarray:
    """
    Unified interface for residual construction.

    Args:
        y: Dependent log prices
        x: Independent log prices
        alpha: Training intercept
        beta: Training hedge ratio (Kalman starting point)
        hedge: StaticHedge or KalmanHedge

    Returns:
        Residual path over the given window
    """
    if isinstance(hedge, StaticHedge):
        return static_residuals(y, x, alpha, beta)
    elif isinstance(hedge, KalmanHedge):
        return run_kalman_hedge(y, x, alpha, beta, hedge.q, hedge.r).residuals
    else:
        raise InvalidParameterError(f"Unknown hedge mode: {hedge!r}")


def check_filter_divergence(residuals, sigma_train: float, max_ratio: float = 10.0) -> float:
    """
    Reject a residual path whose spread ran away from the training sigma.

    Returns:
        Population standard deviation of the residuals

    Raises:
        FilterDivergenceError: if the std is non-finite or exceeds max_ratio * sigma_train
    """
    r = np.asarray(residuals, dtype=float)
    std = float(np.std(r)) if r.size else math.nan
    if not np.isfinite(std) or std > max_ratio * sigma_train:
        raise FilterDivergenceError(
            f"Residual std {std:.6g} exceeds {max_ratio:g}x training sigma {sigma_train:.6g}"
        )
    return std
