"""
Exception hierarchy for the pairs research engine.

Bad-input errors also derive from ValueError so callers that already catch
ValueError keep working.
"""


class PairScanError(Exception):
    """Base class for all pairscan errors."""


class InsufficientDataError(PairScanError, ValueError):
    """Fewer observations than a stage needs."""


class SingularRegressionError(PairScanError, ArithmeticError):
    """Normal equations or ADF design matrix cannot be inverted."""


class FilterDivergenceError(PairScanError, ArithmeticError):
    """Kalman residuals are non-finite or run away from the training sigma."""


class InvalidParameterError(PairScanError, ValueError):
    """Non-positive sigma, malformed grid values, or bad arguments."""
