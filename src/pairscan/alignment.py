"""
Alignment of raw price series into gap-free log-price and log-return matrices.
"""

import logging
from typing import Mapping, Optional, Union

import numpy as np
import pandas as pd

from .errors import InsufficientDataError

logger = logging.getLogger(__name__)

PriceInput = Union[pd.DataFrame, Mapping[str, pd.Series]]


def build_aligned_log_prices(prices: PriceInput,
                             start: Optional[pd.Timestamp] = None,
                             end: Optional[pd.Timestamp] = None) -> pd.DataFrame:
    """
    Align series on the intersection of their timestamps and take logs.

    Args:
        prices: Mapping of series id to price Series, or a wide DataFrame
        start: Optional inclusive window start
        end: Optional inclusive window end

    Returns:
        DataFrame of log prices (rows = sorted timestamps, columns = series ids)
    """
    if isinstance(prices, pd.DataFrame):
        frames = {col: prices[col] for col in prices.columns}
    else:
        frames = dict(prices)

    cleaned = {}
    for sid, s in frames.items():
        s = pd.Series(s, dtype=float).sort_index()
        if start is not None:
            s = s[s.index >= start]
        if end is not None:
            s = s[s.index <= end]

        # Logs need strictly positive, finite prices
        s = s[np.isfinite(s.values) & (s.values > 0)]
        s = s[~s.index.duplicated(keep='last')]
        if not s.empty:
            cleaned[str(sid)] = s

    if len(cleaned) < 2:
        raise InsufficientDataError(f"Need at least 2 series to align, got {len(cleaned)}")

    common = None
    for s in cleaned.values():
        common = s.index if common is None else common.intersection(s.index)
    common = common.sort_values()

    if len(common) == 0:
        raise InsufficientDataError("No common timestamps across series")

    columns = sorted(cleaned.keys(), key=str.lower)
    aligned = pd.DataFrame({sid: cleaned[sid].reindex(common) for sid in columns}, index=common)

    logger.debug(f"Aligned {len(columns)} series on {len(common)} timestamps")
    return np.log(aligned)


def build_log_return_matrix(log_prices: pd.DataFrame) -> pd.DataFrame:
    """
    Log returns r_t = log(P_t) - log(P_{t-1}) from aligned log prices.

    The first timestamp is dropped, so the result starts at the second row.
    """
    if len(log_prices) < 3:
        raise InsufficientDataError("Not enough aligned timestamps to compute returns")
    return log_prices.diff().iloc[1:]
