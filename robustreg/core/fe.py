"""Fixed-effects (within) transforms and missing-value neutralization for panels.

Panels are dense arrays: ``Y`` is T x N (periods by units) and ``X`` is
T x K x N. Row t denotes the same period for every unit, which is what lets
covariance estimators sum scores across units within a period.

Missing observations are handled by zeroing the whole (y, x) row of a cell
and carrying a T x N validity mask. Zero rows are inert in the normal
equations and add nothing to any score sum. Two entry points exist on purpose:
:func:`neutralize_missing` returns fresh arrays, while
:func:`neutralize_missing_inplace` overwrites the caller's arrays.
"""

# robustreg/core/fe.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

from robustreg.exceptions import DimensionMismatchError

if TYPE_CHECKING:
    from numpy.typing import NDArray

LOGGER = logging.getLogger(__name__)

__all__ = [
    "EFFECTS",
    "PanelTransformResult",
    "check_panel",
    "neutralize_missing",
    "neutralize_missing_inplace",
    "validity_mask",
    "within_transform",
]

EFFECTS = ("individual", "time", "both")


@dataclass(frozen=True)
class PanelTransformResult:
    """Container for panel transform results.

    Attributes
    ----------
    y : np.ndarray, shape (T, N)
        Transformed dependent variable.
    X : np.ndarray, shape (T, K, N)
        Transformed regressors.
    mask : np.ndarray, shape (T, N)
        True where the cell is a usable observation.
    effects : str | None
        Demeaning mode applied (``None`` for neutralization only).
    diagnostics : dict[str, Any]
        Iteration count and convergence flag of the alternating projections
        (two-way demeaning of an unbalanced panel only).
    """

    y: NDArray[np.float64]
    X: NDArray[np.float64]
    mask: NDArray[np.bool_]
    effects: str | None = None
    diagnostics: dict[str, Any] = field(default_factory=dict)

    @property
    def n_effective(self) -> int:
        """Number of valid cells."""
        return int(np.sum(self.mask))

    @property
    def n_per_period(self) -> NDArray[np.int64]:
        """Valid units in each period (length T)."""
        return self.mask.sum(axis=1).astype(np.int64)


def check_panel(Y: Any, X: Any) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Validate panel shapes and return float64 views ``(Y, X)``."""
    Ya = np.asarray(Y, dtype=np.float64)
    Xa = np.asarray(X, dtype=np.float64)
    if Ya.ndim != 2:
        raise DimensionMismatchError(f"Y must be T x N; got shape {Ya.shape}.")
    if Xa.ndim != 3:
        raise DimensionMismatchError(f"X must be T x K x N; got shape {Xa.shape}.")
    if Xa.shape[0] != Ya.shape[0] or Xa.shape[2] != Ya.shape[1]:
        raise DimensionMismatchError(
            f"X shape {Xa.shape} does not match Y shape {Ya.shape} (expected (T, K, N)).",
        )
    return Ya, Xa


def _check_mask(mask: Any, shape: tuple[int, int]) -> NDArray[np.bool_]:
    m = np.asarray(mask, dtype=bool)
    if m.shape != shape:
        raise DimensionMismatchError(f"mask must have shape {shape}; got {m.shape}.")
    return m


def validity_mask(Y: Any, X: Any) -> NDArray[np.bool_]:
    """True where Y and every regressor of the cell are finite."""
    Ya, Xa = check_panel(Y, X)
    return np.isfinite(Ya) & np.all(np.isfinite(Xa), axis=1)


def neutralize_missing(Y: Any, X: Any) -> PanelTransformResult:
    """Zero every incomplete (y, x) row of copies of ``Y`` and ``X``.

    The inputs are left untouched.

    Returns
    -------
    PanelTransformResult
        Zeroed copies plus the validity mask.
    """
    Ya, Xa = check_panel(Y, X)
    Yc = Ya.copy()
    Xc = Xa.copy()
    mask = neutralize_missing_inplace(Yc, Xc)
    return PanelTransformResult(y=Yc, X=Xc, mask=mask)


def neutralize_missing_inplace(Y: NDArray[np.float64], X: NDArray[np.float64]) -> NDArray[np.bool_]:
    """Zero every incomplete (y, x) row of ``Y`` and ``X`` in place.

    Both arrays must already be float ndarrays of panel shape; they are
    overwritten. Returns the validity mask.
    """
    if not isinstance(Y, np.ndarray) or not isinstance(X, np.ndarray):
        raise TypeError("in-place neutralization needs numpy arrays")
    if not (np.issubdtype(Y.dtype, np.floating) and np.issubdtype(X.dtype, np.floating)):
        raise TypeError("in-place neutralization needs floating-point arrays")
    mask = validity_mask(Y, X)
    bad = ~mask
    if bad.any():
        Y[bad] = 0.0
        t_idx, i_idx = np.nonzero(bad)
        X[t_idx, :, i_idx] = 0.0
        LOGGER.debug("neutralized %d incomplete panel cells", int(bad.sum()))
    return mask


def _masked_mean(a: NDArray[np.float64], w: NDArray[np.float64], axis: int) -> NDArray[np.float64]:
    num = np.sum(a * w, axis=axis, keepdims=True)
    den = np.sum(w, axis=axis, keepdims=True)
    return np.divide(num, den, out=np.zeros_like(num), where=den > 0)


def _demean_once(
    Ya: NDArray[np.float64],
    Xa: NDArray[np.float64],
    wy: NDArray[np.float64] | None,
    wx: NDArray[np.float64] | None,
    effect: str,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    # individual: average over periods (axis 0); time: over units (Y axis 1, X axis 2)
    y_axis, x_axis = (0, 0) if effect == "individual" else (1, 2)
    if wy is None:
        return (
            Ya - Ya.mean(axis=y_axis, keepdims=True),
            Xa - Xa.mean(axis=x_axis, keepdims=True),
        )
    Yd = (Ya - _masked_mean(Ya, wy, y_axis)) * wy
    Xd = (Xa - _masked_mean(Xa, wx, x_axis)) * wx
    return Yd, Xd


def within_transform(
    Y: Any,
    X: Any,
    effects: str = "individual",
    *,
    mask: Any = None,
    tol: float = 1e-10,
    max_iter: int = 1000,
) -> PanelTransformResult:
    """Demean a panel by unit, by period, or both.

    Parameters
    ----------
    Y : array-like, shape (T, N)
    X : array-like, shape (T, K, N)
    effects : {"individual", "time", "both"}
        ``"individual"`` subtracts each unit's mean over time, ``"time"`` each
        period's mean across units, ``"both"`` removes both.
    mask : array-like of bool, shape (T, N), optional
        Valid cells. Means are taken over valid cells only and invalid cells
        are returned as zero. Two-way demeaning of a masked panel runs
        alternating projections until the largest update is below ``tol``.
    tol, max_iter : float, int
        Convergence control of the alternating projections.

    Returns
    -------
    PanelTransformResult

    Notes
    -----
    Any column of ``X`` that is constant within the removed dimension (the
    intercept in particular) becomes zero. Restoring a level column (for
    example setting it back to 1.0) is left to the caller.

    Without a mask, NaN inputs propagate into every demeaned value of the
    affected unit/period.
    """
    if effects not in EFFECTS:
        raise ValueError(f"effects must be one of {EFFECTS}; got {effects!r}")
    Ya, Xa = check_panel(Y, X)
    T, N = Ya.shape

    if mask is None:
        m = np.ones((T, N), dtype=bool)
        wy = wx = None
    else:
        m = _check_mask(mask, (T, N))
        wy = m.astype(np.float64)
        wx = wy[:, None, :]
        Ya = np.where(m, Ya, 0.0)
        Xa = np.where(m[:, None, :], Xa, 0.0)

    if effects != "both":
        Yd, Xd = _demean_once(Ya, Xa, wy, wx, effects)
        return PanelTransformResult(y=Yd, X=Xd, mask=m, effects=effects)

    if wy is None:
        Yd = Ya - Ya.mean(axis=0, keepdims=True) - Ya.mean(axis=1, keepdims=True) + Ya.mean()
        Xd = (
            Xa
            - Xa.mean(axis=0, keepdims=True)
            - Xa.mean(axis=2, keepdims=True)
            + Xa.mean(axis=(0, 2), keepdims=True)
        )
        return PanelTransformResult(y=Yd, X=Xd, mask=m, effects=effects)

    Yd, Xd = Ya, Xa
    converged = False
    it = 0
    for it in range(1, int(max_iter) + 1):
        Yn, Xn = _demean_once(Yd, Xd, wy, wx, "individual")
        Yn, Xn = _demean_once(Yn, Xn, wy, wx, "time")
        delta = max(float(np.max(np.abs(Yn - Yd), initial=0.0)), float(np.max(np.abs(Xn - Xd), initial=0.0)))
        Yd, Xd = Yn, Xn
        if not np.isfinite(delta):
            break
        if delta < tol:
            converged = True
            break
    LOGGER.debug("two-way demeaning: %d sweeps, converged=%s", it, converged)
    return PanelTransformResult(
        y=Yd,
        X=Xd,
        mask=m,
        effects=effects,
        diagnostics={"iterations": it, "converged": converged},
    )
