"""Long-run covariance of score vectors.

This module is the single place where HAC kernels, bandwidths and cluster sums
are computed. Every estimator builds its coefficient covariance as a sandwich
``A S A'`` where ``S`` comes from :func:`newey_west` (White is bandwidth 0) or
from :func:`cluster_meat`.
"""

# robustreg/core/covariance.py
from __future__ import annotations

import logging
import numbers
import warnings
from typing import TYPE_CHECKING, Any

import numpy as np

from robustreg.exceptions import BandwidthClampWarning, InsufficientDataError

from . import linalg as la

if TYPE_CHECKING:
    from numpy.typing import NDArray

LOGGER = logging.getLogger(__name__)

__all__ = [
    "KERNELS",
    "bandwidth_nw94",
    "cluster_meat",
    "kernel_weights",
    "newey_west",
    "sandwich",
    "white",
]

KERNELS = frozenset({"bartlett", "parzen"})


def _hac_kernel(x: np.ndarray, kernel: str) -> np.ndarray:
    """Compute HAC kernel weights at ``x = s / (m + 1)``."""
    k = kernel.lower()
    z = np.abs(np.asarray(x, dtype=np.float64))
    if k in {"bartlett", "nw", "newey-west"}:
        return np.maximum(0.0, 1.0 - z)
    if k == "parzen":
        return np.where(
            z <= 0.5,
            1.0 - 6.0 * z**2 + 6.0 * z**3,
            np.where(z <= 1.0, 2.0 * (1.0 - z) ** 3, 0.0),
        )
    raise ValueError(f"unknown kernel: {kernel}")


def kernel_weights(bandwidth: int, kernel: str = "bartlett") -> NDArray[np.float64]:
    """Weights w_1..w_m applied to the lag-s autocovariances.

    For the Bartlett kernel ``w_s = 1 - s / (m + 1)``.
    """
    m = int(bandwidth)
    lags = np.arange(1, m + 1, dtype=np.float64)
    return _hac_kernel(lags / (m + 1.0), kernel)


def bandwidth_nw94(n_obs: int) -> int:
    """Newey-West (1994) rule-of-thumb bandwidth ``floor(4 (T/100)^(2/9))``.

    Offered as a helper only; estimators default to an explicit bandwidth of 0.
    """
    T = int(n_obs)
    if T <= 0:
        raise InsufficientDataError("n_obs must be positive")
    return int(np.floor(4.0 * (T / 100.0) ** (2.0 / 9.0)))


def _check_bandwidth(bandwidth: Any, n_obs: int, *, clamp: bool) -> int:
    if isinstance(bandwidth, bool) or not isinstance(bandwidth, numbers.Integral):
        raise ValueError(f"bandwidth must be a non-negative integer; got {bandwidth!r}")
    m = int(bandwidth)
    if m < 0:
        raise ValueError(f"bandwidth must be a non-negative integer; got {m}")
    if n_obs < 1:
        raise InsufficientDataError("insufficient observations for requested bandwidth")
    if m > n_obs - 1:
        if not clamp:
            raise InsufficientDataError(
                "insufficient observations for requested bandwidth",
            )
        warnings.warn(
            f"bandwidth {m} exceeds T - 1 = {n_obs - 1}; clamped to {n_obs - 1}.",
            BandwidthClampWarning,
            stacklevel=3,
        )
        LOGGER.debug("bandwidth clamped from %d to %d", m, n_obs - 1)
        m = n_obs - 1
    return m


def newey_west(
    g: Any,
    bandwidth: int = 0,
    *,
    demean: bool = True,
    normalize: bool = False,
    clamp: bool = True,
    kernel: str = "bartlett",
) -> NDArray[np.float64]:
    """Kernel-weighted long-run covariance of a T x q score matrix.

    Parameters
    ----------
    g : array-like, shape (T, q) or (T,)
        Row t holds the time-t contribution to q moment conditions.
    bandwidth : int, default 0
        Number of lags m. ``0`` gives the White (heteroskedasticity-only)
        estimator. Values above ``T - 1`` are clamped (see ``clamp``).
    demean : bool, default True
        Subtract the column mean of ``g`` first.
    normalize : bool, default False
        If False return the sum form
        ``S = L_0 + sum_s w_s (L_s + L_s')`` with ``L_s = sum_t g_t g_{t-s}'``,
        which is the meat of ``A S A'`` sandwiches. If True divide by T,
        giving the estimate of ``Var(sqrt(T) * mean(g))``.
    clamp : bool, default True
        Clamp ``bandwidth`` to ``T - 1`` with a :class:`BandwidthClampWarning`.
        When False an oversized bandwidth raises :class:`InsufficientDataError`.
    kernel : {"bartlett", "parzen"}
        Lag window. Both are positive semidefinite.

    Returns
    -------
    ndarray, shape (q, q)

    Notes
    -----
    Summation follows numpy's reduction order, so results are reproducible
    for a given input and BLAS build but can differ in the last bits across
    builds.
    """
    G = la.as_matrix(g, "g")
    T = G.shape[0]
    m = _check_bandwidth(bandwidth, T, clamp=clamp)
    if demean:
        G = G - G.mean(axis=0, keepdims=True)

    S = G.T @ G
    for s, w in enumerate(kernel_weights(m, kernel), start=1):
        lam = G[s:].T @ G[:-s]
        S = S + w * (lam + lam.T)
    if normalize:
        S = S / T
    return la.symmetrize(S)


def white(g: Any, *, demean: bool = True, normalize: bool = False) -> NDArray[np.float64]:
    """Heteroskedasticity-robust outer-product sum (``newey_west`` with m=0)."""
    return newey_west(g, 0, demean=demean, normalize=normalize)


def cluster_meat(scores: Any, clusters: Any) -> NDArray[np.float64]:
    """Sum of outer products of within-cluster score totals.

    Parameters
    ----------
    scores : (n, p) array
    clusters : (n,) labels

    Returns
    -------
    ndarray, shape (p, p)
        ``sum_g h_g h_g'`` with ``h_g`` the sum of the rows of ``scores`` in
        cluster g.
    """
    H = la.group_sum(scores, clusters)
    if H.shape[0] < 2:
        raise InsufficientDataError(
            f"cluster covariance requires at least 2 clusters; got {H.shape[0]}.",
        )
    return la.symmetrize(H.T @ H)


def sandwich(bread: NDArray[np.float64], meat: NDArray[np.float64]) -> NDArray[np.float64]:
    """Return ``bread @ meat @ bread'`` symmetrized."""
    return la.symmetrize(bread @ meat @ bread.T)
