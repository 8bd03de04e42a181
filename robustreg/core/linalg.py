"""Linear algebra routines for regression analysis.

Least squares goes through a column-pivoted QR factorization; the inverse of
X'X is assembled from the triangular factor instead of inverting the Gram
matrix. Rank deficiency is reported, never regularized, unless the caller
explicitly asks for the SVD minimum-norm solution.

Non-finite inputs are not an error here: they propagate to all-NaN outputs so
that an un-neutralized missing value is visible downstream.
"""

# robustreg/core/linalg.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
import scipy.linalg as sla

from robustreg.exceptions import DimensionMismatchError, RankDeficiencyError

if TYPE_CHECKING:
    from numpy.typing import NDArray
else:
    NDArray = np.ndarray  # type: ignore[misc,assignment]

LOGGER = logging.getLogger(__name__)

__all__ = [
    "LeastSquaresFit",
    "all_finite",
    "as_matrix",
    "crossprod",
    "group_sum",
    "inv",
    "inv_spd",
    "lstsq",
    "rank_from_diag",
    "readonly",
    "symmetrize",
]


@dataclass(frozen=True)
class LeastSquaresFit:
    """Output of :func:`lstsq`.

    Attributes
    ----------
    coef : ndarray, shape (k, m)
        Solution of ``X @ coef = Y`` in the least-squares sense.
    xtx_inv : ndarray, shape (k, k)
        ``(X'X)^{-1}`` built from the QR factor (or the pseudo-inverse when
        ``method="svd"`` was requested).
    rank : int
        Numerical rank of ``X``.
    finite : bool
        False when the inputs carried NaN/Inf and the outputs are all NaN.
    """

    coef: NDArray[np.float64]
    xtx_inv: NDArray[np.float64]
    rank: int
    finite: bool = True


def as_matrix(a: Any, name: str = "array") -> NDArray[np.float64]:
    """Return ``a`` as a float64 2-D array; 1-D input becomes a column."""
    arr = np.asarray(a, dtype=np.float64)
    if arr.ndim == 1:
        return arr.reshape(-1, 1)
    if arr.ndim != 2:
        raise DimensionMismatchError(f"{name} must be 1-D or 2-D; got ndim={arr.ndim}.")
    return arr


def all_finite(*arrays: Any) -> bool:
    """True when every supplied array is free of NaN/Inf (``None`` is skipped)."""
    return all(a is None or bool(np.all(np.isfinite(a))) for a in arrays)


def readonly(a: NDArray[Any]) -> NDArray[Any]:
    """Flag an array non-writeable and return it."""
    a.flags.writeable = False
    return a


def symmetrize(A: NDArray[np.float64]) -> NDArray[np.float64]:
    """Average ``A`` with its transpose to remove rounding asymmetry."""
    return 0.5 * (A + A.T)


def crossprod(X: NDArray[np.float64], Y: NDArray[np.float64] | None = None) -> NDArray[np.float64]:
    """Compute X'Y (X'X when ``Y`` is None)."""
    Y = X if Y is None else Y
    if Y.ndim == 1:
        Y = Y.reshape(-1, 1)
    return np.asarray(X.T @ Y, dtype=np.float64)


def rank_from_diag(diagR: NDArray[np.float64], nrows: int, ncols: int) -> int:
    """Numerical rank from the diagonal of a pivoted R factor.

    Uses the LAPACK ``rcond`` convention: ``eps * max(n, k) * max|R_ii|``.
    """
    d = np.abs(np.asarray(diagR, dtype=np.float64).reshape(-1))
    if d.size == 0 or d.max() == 0.0:
        return 0
    tol = np.finfo(np.float64).eps * max(int(nrows), int(ncols)) * float(d.max())
    return int(np.sum(d > tol))


def _nan_fit(k: int, m: int) -> LeastSquaresFit:
    return LeastSquaresFit(
        coef=np.full((k, m), np.nan),
        xtx_inv=np.full((k, k), np.nan),
        rank=0,
        finite=False,
    )


def lstsq(
    X: NDArray[np.float64],
    Y: NDArray[np.float64],
    *,
    method: str = "qr",
    what: str = "design matrix",
) -> LeastSquaresFit:
    """Solve ``min ||Y - X b||`` column by column.

    Parameters
    ----------
    X : ndarray, shape (T, k)
    Y : ndarray, shape (T,) or (T, m)
    method : {"qr", "svd"}
        ``"qr"`` (default) raises :class:`RankDeficiencyError` when ``X`` does
        not have full column rank. ``"svd"`` is the explicit opt-in
        minimum-norm solution with ``xtx_inv`` the Moore-Penrose inverse.
    what : str
        Label used in the rank-deficiency message.

    Returns
    -------
    LeastSquaresFit
    """
    X = as_matrix(X, "X")
    Y = as_matrix(Y, "Y")
    n, k = X.shape
    if Y.shape[0] != n:
        raise DimensionMismatchError(
            f"Y has {Y.shape[0]} rows but {what} has {n}.",
        )
    if method not in {"qr", "svd"}:
        raise ValueError("method must be 'qr' or 'svd'.")
    if not all_finite(X, Y):
        LOGGER.debug("lstsq: non-finite inputs, propagating NaN (%s)", what)
        return _nan_fit(k, Y.shape[1])

    if method == "svd":
        U, s, Vt = np.linalg.svd(X, full_matrices=False)
        tol = np.finfo(np.float64).eps * max(n, k) * (s.max() if s.size else 0.0)
        s_inv = np.where(s > tol, 1.0 / np.where(s > tol, s, 1.0), 0.0)
        coef = (Vt.T * s_inv) @ (U.T @ Y)
        xtx_inv = (Vt.T * s_inv**2) @ Vt
        return LeastSquaresFit(coef=coef, xtx_inv=xtx_inv, rank=int(np.sum(s > tol)))

    if n < k:
        raise RankDeficiencyError(f"{what} is rank-deficient")
    Q, R, P = sla.qr(X, mode="economic", pivoting=True, check_finite=False)
    r = rank_from_diag(np.diag(R), n, k)
    if r < k:
        raise RankDeficiencyError(f"{what} is rank-deficient")

    coef_piv = sla.solve_triangular(R, Q.T @ Y, lower=False, check_finite=False)
    Rinv = sla.solve_triangular(R, np.eye(k), lower=False, check_finite=False)
    invp = np.argsort(P)
    coef = coef_piv[invp, :]
    xtx_inv = (Rinv @ Rinv.T)[invp][:, invp]
    return LeastSquaresFit(coef=coef, xtx_inv=symmetrize(xtx_inv), rank=r)


def inv_spd(A: NDArray[np.float64], *, what: str = "matrix") -> NDArray[np.float64]:
    """Inverse of a symmetric positive-definite matrix via Cholesky.

    NaN entries propagate to an all-NaN inverse.
    """
    A = np.asarray(A, dtype=np.float64)
    if A.ndim != 2 or A.shape[0] != A.shape[1]:
        raise DimensionMismatchError(f"{what} must be square; got shape {A.shape}.")
    if not all_finite(A):
        return np.full(A.shape, np.nan)
    try:
        c, low = sla.cho_factor(symmetrize(A), lower=True, check_finite=False)
    except np.linalg.LinAlgError as exc:
        raise RankDeficiencyError(f"{what} is singular or not positive definite") from exc
    diag = np.abs(np.diag(c))
    if rank_from_diag(diag**2, A.shape[0], A.shape[1]) < A.shape[0]:
        raise RankDeficiencyError(f"{what} is singular or not positive definite")
    out = sla.cho_solve((c, low), np.eye(A.shape[0]), check_finite=False)
    return symmetrize(out)


def inv(A: NDArray[np.float64], *, what: str = "matrix") -> NDArray[np.float64]:
    """Inverse of a general square matrix, refusing near-singular inputs."""
    A = np.asarray(A, dtype=np.float64)
    if A.ndim != 2 or A.shape[0] != A.shape[1]:
        raise DimensionMismatchError(f"{what} must be square; got shape {A.shape}.")
    if not all_finite(A):
        return np.full(A.shape, np.nan)
    if np.linalg.cond(A) > 1.0 / np.finfo(np.float64).eps:
        raise RankDeficiencyError(f"{what} is singular")
    return np.linalg.solve(A, np.eye(A.shape[0]))


def group_sum(X: NDArray[np.float64], codes: Any) -> NDArray[np.float64]:
    """Sum rows of X within groups defined by a single codes vector.

    Parameters
    ----------
    X : (n x p) matrix
    codes : (n,) integer-like labels

    Returns
    -------
    (G x p) float64 array of sums over groups ordered by sorted unique label.
    """
    Xd = as_matrix(X, "X")
    codes_arr = np.asarray(codes).reshape(-1)
    if codes_arr.shape[0] != Xd.shape[0]:
        raise DimensionMismatchError("codes length must match number of rows in X")
    uniq, inv_idx = np.unique(codes_arr, return_inverse=True)
    out = np.zeros((uniq.shape[0], Xd.shape[1]), dtype=np.float64)
    np.add.at(out, inv_idx, Xd)
    return out
