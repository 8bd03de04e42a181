"""Exception and warning classes for robustreg.

Errors are raised at the boundary of the failing ``fit`` call. Each error kind
also derives from the builtin it refines, so callers that already catch
``ValueError`` or ``numpy.linalg.LinAlgError`` keep working.
"""

# robustreg/exceptions.py
from __future__ import annotations

import numpy as np

__all__ = [
    "BandwidthClampWarning",
    "ConvergenceWarning",
    "DimensionMismatchError",
    "InstrumentRankError",
    "InsufficientDataError",
    "RankDeficiencyError",
    "RobustRegError",
]


class RobustRegError(Exception):
    """Base class for all robustreg errors.

    >>> try:
    ...     OLS(y, X).fit()
    ... except RobustRegError as exc:
    ...     print(exc)  # doctest: +SKIP
    """


class DimensionMismatchError(RobustRegError, ValueError):
    """Input arrays have incompatible shapes.

    Raised before any computation happens, e.g. when ``y`` and ``X`` disagree
    on the number of observations or a weighting matrix is not q x q.
    """


class RankDeficiencyError(RobustRegError, np.linalg.LinAlgError):
    """A matrix that must be inverted is singular to working precision.

    Never silently regularized; callers who want a minimum-norm solution must
    request ``method="svd"`` explicitly.
    """


class InstrumentRankError(RankDeficiencyError):
    """Instruments cannot identify the coefficients (L < k or Z'Z singular)."""


class InsufficientDataError(RobustRegError, ValueError):
    """Too few observations (or clusters) for the requested computation."""


class ConvergenceWarning(RobustRegError, RuntimeWarning):
    """An iterative routine stopped at its iteration cap.

    The estimator still returns its last iterate, flagged ``converged=False``.
    """


class BandwidthClampWarning(UserWarning):
    """A HAC bandwidth larger than ``T - 1`` was clamped to ``T - 1``."""
