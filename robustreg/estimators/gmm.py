"""Generalized Method of Moments (GMM) estimator.

This module implements one-step, iterated (efficient) and linear-combination
GMM for user-supplied moment functions ``g(theta, *args) -> (T, q)``.

- Exactly identified systems (q = k) are solved by root finding.
- Over-identified systems (q > k) minimize ``gbar' W gbar``.
- The long-run moment covariance S is the kernel estimator of
  ``Var(sqrt(T) gbar)``; the coefficient covariance is scaled by ``1 / T``.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np
from scipy import optimize, stats

from robustreg.core import covariance as cov_core
from robustreg.core import linalg as la
from robustreg.exceptions import ConvergenceWarning, DimensionMismatchError, InsufficientDataError

from .base import BaseEstimator, GMMConfig, GMMResult

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from numpy.typing import NDArray

LOGGER = logging.getLogger(__name__)

__all__ = ["GMM", "AnalyticJacobian", "FiniteDifferenceJacobian", "JacobianStrategy"]

ITERATION_FAILURE = "GMM iteration failed to converge within max iterations"

_GTOL_METHODS = frozenset({"BFGS", "CG", "L-BFGS-B"})
_PSD_TOL = 1e-10


class JacobianStrategy(Protocol):
    """Callable returning ``d gbar / d theta'`` (q x k) at ``params``."""

    def __call__(
        self,
        mean_moments: Callable[[NDArray[np.float64]], NDArray[np.float64]],
        params: NDArray[np.float64],
        args: tuple[Any, ...],
    ) -> NDArray[np.float64]: ...


class FiniteDifferenceJacobian:
    """Central finite differences of the mean moment vector.

    Parameters
    ----------
    step : float, optional
        Relative step; the step for parameter j is
        ``step * max(|theta_j|, 1)``. Defaults to ``eps ** (1/3)``.
    """

    def __init__(self, step: float | None = None) -> None:
        self.step = float(np.finfo(np.float64).eps ** (1.0 / 3.0)) if step is None else float(step)
        if not self.step > 0:
            raise ValueError("step must be positive")

    def __repr__(self) -> str:
        return f"FiniteDifferenceJacobian(step={self.step:g})"

    def __call__(
        self,
        mean_moments: Callable[[NDArray[np.float64]], NDArray[np.float64]],
        params: NDArray[np.float64],
        args: tuple[Any, ...],
    ) -> NDArray[np.float64]:
        theta = np.asarray(params, dtype=np.float64)
        cols = []
        for j in range(theta.shape[0]):
            h = self.step * max(abs(float(theta[j])), 1.0)
            up = theta.copy()
            dn = theta.copy()
            up[j] += h
            dn[j] -= h
            cols.append((mean_moments(up) - mean_moments(dn)) / (up[j] - dn[j]))
        return np.column_stack(cols)


class AnalyticJacobian:
    """User-supplied Jacobian ``fn(params, *args) -> (q, k)`` of the mean moments."""

    def __init__(self, fn: Callable[..., Any]) -> None:
        if not callable(fn):
            raise TypeError("fn must be callable")
        self.fn = fn

    def __repr__(self) -> str:
        return f"AnalyticJacobian({getattr(self.fn, '__name__', self.fn)!r})"

    def __call__(
        self,
        mean_moments: Callable[[NDArray[np.float64]], NDArray[np.float64]],
        params: NDArray[np.float64],
        args: tuple[Any, ...],
    ) -> NDArray[np.float64]:
        return np.atleast_2d(np.array(self.fn(params, *args), dtype=np.float64))


@dataclass
class _GMMIterationState:
    """Mutable state of the re-weighting loop."""

    params: NDArray[np.float64]
    weight: NDArray[np.float64]
    n_iter: int = 0
    delta: float = np.inf
    converged: bool = False
    message: str = ""

    def step(self, params: NDArray[np.float64], weight: NDArray[np.float64], message: str) -> None:
        self.delta = float(np.max(np.abs(params - self.params)))
        self.params = params
        self.weight = weight
        self.message = message
        self.n_iter += 1


class GMM(BaseEstimator):
    """Generalized Method of Moments for user-supplied moment conditions.

    Parameters
    ----------
    moments : callable
        ``moments(params, *args)`` returning a (T, q) array whose row t is
        the time-t contribution to the q moment conditions.
    jacobian : JacobianStrategy, optional
        How ``D = d gbar / d theta'`` is obtained. Defaults to
        :class:`FiniteDifferenceJacobian`; pass :class:`AnalyticJacobian`
        for a closed form.
    args : tuple
        Extra positional arguments for ``moments`` (and an analytic Jacobian).
    param_names : Sequence[str], optional
        Labels for the parameters.

    Examples
    --------
    Mean and variance of a sample:

    >>> import numpy as np
    >>> x = np.arange(1.0, 6.0)
    >>> def g(p, x):
    ...     return np.column_stack([x - p[0], (x - p[0]) ** 2 - p[1]])
    >>> res = GMM(g, args=(x,)).fit([0.0, 1.0])
    >>> np.round(res.params, 6)
    array([3., 2.])
    """

    def __init__(
        self,
        moments: Callable[..., Any],
        *,
        jacobian: JacobianStrategy | None = None,
        args: tuple[Any, ...] = (),
        param_names: Sequence[str] | None = None,
    ) -> None:
        super().__init__()
        if not callable(moments):
            raise TypeError("moments must be callable")
        self.moments = moments
        self.jacobian = FiniteDifferenceJacobian() if jacobian is None else jacobian
        self.args = tuple(args)
        self._param_names = None if param_names is None else tuple(str(n) for n in param_names)

    # ------------------------------------------------------------------
    # Moment helpers
    # ------------------------------------------------------------------
    def moment_matrix(self, params: Any) -> NDArray[np.float64]:
        """(T, q) moment contributions at ``params``."""
        theta = np.asarray(params, dtype=np.float64).reshape(-1)
        return la.as_matrix(self.moments(theta, *self.args), "moments")

    def mean_moments(self, params: Any) -> NDArray[np.float64]:
        """``gbar(params)``, shape (q,)."""
        return self.moment_matrix(params).mean(axis=0)

    def jacobian_at(self, params: Any) -> NDArray[np.float64]:
        """``D = d gbar / d theta'`` under the configured strategy, shape (q, k)."""
        theta = np.asarray(params, dtype=np.float64).reshape(-1)
        return self.jacobian(self.mean_moments, theta, self.args)

    def jacobian_discrepancy(self, params: Any, other: JacobianStrategy) -> float:
        """Largest absolute difference between this Jacobian and ``other``'s."""
        theta = np.asarray(params, dtype=np.float64).reshape(-1)
        mine = self.jacobian_at(theta)
        theirs = other(self.mean_moments, theta, self.args)
        if mine.shape != theirs.shape:
            raise DimensionMismatchError(
                f"Jacobian shapes differ: {mine.shape} vs {theirs.shape}.",
            )
        return float(np.max(np.abs(mine - theirs)))

    def long_run_covariance(self, params: Any, bandwidth: int = 0) -> NDArray[np.float64]:
        """``S``, the kernel estimate of ``Var(sqrt(T) gbar)`` at ``params``."""
        return cov_core.newey_west(self.moment_matrix(params), bandwidth, normalize=True)

    # ------------------------------------------------------------------
    # Solvers
    # ------------------------------------------------------------------
    def _root(
        self,
        start: NDArray[np.float64],
        cfg: GMMConfig,
        A: NDArray[np.float64] | None = None,
    ) -> tuple[NDArray[np.float64], bool, str]:
        if A is None:
            fun = self.mean_moments
            jac = self.jacobian_at
        else:

            def fun(p: NDArray[np.float64]) -> NDArray[np.float64]:
                return A @ self.mean_moments(p)

            def jac(p: NDArray[np.float64]) -> NDArray[np.float64]:
                return A @ self.jacobian_at(p)

        sol = optimize.root(fun, start, jac=jac, method="hybr", options={"maxfev": int(cfg.max_fev)})
        return np.asarray(sol.x, dtype=np.float64), bool(sol.success), str(sol.message)

    def _minimize(
        self,
        start: NDArray[np.float64],
        W: NDArray[np.float64],
        cfg: GMMConfig,
    ) -> tuple[NDArray[np.float64], bool, str]:
        def objective(p: NDArray[np.float64]) -> float:
            gbar = self.mean_moments(p)
            return float(gbar @ W @ gbar)

        def gradient(p: NDArray[np.float64]) -> NDArray[np.float64]:
            gbar = self.mean_moments(p)
            return 2.0 * self.jacobian_at(p).T @ (W @ gbar)

        options: dict[str, Any] = {"maxiter": int(cfg.optimizer_maxiter)}
        if cfg.optimizer.upper() in _GTOL_METHODS:
            options["gtol"] = float(cfg.gtol)
        res = optimize.minimize(objective, start, jac=gradient, method=cfg.optimizer, options=options)
        return np.asarray(res.x, dtype=np.float64), bool(res.success), str(res.message)

    def _check_weight(self, W: Any, q: int) -> NDArray[np.float64]:
        Wa = np.array(W, dtype=np.float64)
        if Wa.shape != (q, q):
            raise DimensionMismatchError(f"weight_matrix must be {q} x {q}; got {Wa.shape}.")
        if not np.allclose(Wa, Wa.T):
            raise ValueError("weight_matrix must be symmetric")
        eig = np.linalg.eigvalsh(la.symmetrize(Wa))
        if eig.min() < -_PSD_TOL * max(1.0, float(np.abs(eig).max())):
            raise ValueError("weight_matrix must be positive semidefinite")
        return Wa

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def fit(
        self,
        start: Any,
        *,
        weight_matrix: Any = None,
        bandwidth: int = 0,
        iterate: bool = False,
        config: GMMConfig | None = None,
    ) -> GMMResult:
        """Estimate the parameters.

        Parameters
        ----------
        start : array-like, shape (k,)
            Starting values.
        weight_matrix : array-like, shape (q, q), optional
            Symmetric positive semidefinite first-step weighting matrix
            (identity by default).
            Without one, exactly identified systems (q = k) are solved by root
            finding; with one, every system minimizes ``gbar' W gbar``.
        bandwidth : int, default 0
            Lags of the Bartlett kernel used for S.
        iterate : bool, default False
            Re-weight with ``W = S(theta)^{-1}`` until the parameters stop
            moving (at least one full re-weighting).
        config : GMMConfig, optional
            Iteration and optimizer controls.

        Returns
        -------
        GMMResult
            ``converged`` is False (and a :class:`ConvergenceWarning` is
            emitted) when the root finder, the minimizer or the re-weighting
            loop hit its cap.
        """
        cfg = GMMConfig() if config is None else config
        theta0 = np.asarray(start, dtype=np.float64).reshape(-1)
        k = theta0.shape[0]
        g0 = self.moment_matrix(theta0)
        T, q = g0.shape
        if T == 0:
            raise InsufficientDataError("no observations")
        if q < k:
            raise DimensionMismatchError(f"under-identified: {q} moments for {k} parameters.")
        LOGGER.debug("GMM fit: T=%d q=%d k=%d iterate=%s", T, q, k, iterate)

        if q == k and weight_matrix is None:
            theta, ok, message = self._root(theta0, cfg)
            if not ok:
                warnings.warn(message, ConvergenceWarning, stacklevel=2)
            D = self.jacobian_at(theta)
            S = self.long_run_covariance(theta, bandwidth)
            Dinv = la.inv(D, what="moment Jacobian")
            cov = cov_core.sandwich(Dinv, S) / T
            return self._finish(
                theta, cov, D, S, None, T,
                converged=ok, n_iter=0, message=message, efficient=False,
                mode="exactly-identified", bandwidth=bandwidth,
            )

        W = np.eye(q) if weight_matrix is None else self._check_weight(weight_matrix, q)
        theta, ok, message = self._minimize(theta0, W, cfg)

        if not iterate:
            if not ok:
                warnings.warn(message, ConvergenceWarning, stacklevel=2)
            D = self.jacobian_at(theta)
            S = self.long_run_covariance(theta, bandwidth)
            DWD_inv = la.inv(D.T @ W @ D, what="D'WD")
            cov = cov_core.sandwich(DWD_inv @ D.T @ W, S) / T
            return self._finish(
                theta, cov, D, S, W, T,
                converged=ok, n_iter=0, message=message, efficient=False,
                mode="one-step", bandwidth=bandwidth,
            )

        state = _GMMIterationState(params=theta, weight=W, message=message)
        while state.n_iter < int(cfg.max_iter):
            W_new = la.inv_spd(self.long_run_covariance(state.params, bandwidth), what="moment covariance S")
            theta_new, ok, message = self._minimize(state.params, W_new, cfg)
            if not ok:
                LOGGER.debug("GMM re-weighting step %d: %s", state.n_iter + 1, message)
            state.step(theta_new, W_new, message)
            LOGGER.debug("GMM iteration %d: max|dtheta|=%.3e", state.n_iter, state.delta)
            if state.delta < cfg.tol:
                state.converged = True
                break
        if not state.converged:
            state.message = ITERATION_FAILURE
            warnings.warn(ITERATION_FAILURE, ConvergenceWarning, stacklevel=2)

        theta = state.params
        D = self.jacobian_at(theta)
        S = self.long_run_covariance(theta, bandwidth)
        Sinv = la.inv_spd(S, what="moment covariance S")
        cov = la.inv_spd(D.T @ Sinv @ D, what="D'S^{-1}D") / T
        return self._finish(
            theta, cov, D, S, state.weight, T,
            converged=state.converged, n_iter=state.n_iter, message=state.message,
            efficient=True, mode="iterated", bandwidth=bandwidth, Sinv=Sinv,
        )

    def fit_combination(
        self,
        start: Any,
        A: Any,
        *,
        bandwidth: int = 0,
        config: GMMConfig | None = None,
    ) -> GMMResult:
        """Solve ``A gbar(theta) = 0`` for a fixed k x q selection matrix ``A``.

        ``V = (A D)^{-1} A S A' (A D)^{-T} / T``.
        """
        cfg = GMMConfig() if config is None else config
        theta0 = np.asarray(start, dtype=np.float64).reshape(-1)
        k = theta0.shape[0]
        T, q = self.moment_matrix(theta0).shape
        if T == 0:
            raise InsufficientDataError("no observations")
        Aa = np.atleast_2d(np.asarray(A, dtype=np.float64))
        if Aa.shape != (k, q):
            raise DimensionMismatchError(f"A must be {k} x {q}; got {Aa.shape}.")
        LOGGER.debug("GMM combination fit: T=%d q=%d k=%d", T, q, k)

        theta, ok, message = self._root(theta0, cfg, A=Aa)
        if not ok:
            warnings.warn(message, ConvergenceWarning, stacklevel=2)
        D = self.jacobian_at(theta)
        S = self.long_run_covariance(theta, bandwidth)
        AD_inv = la.inv(Aa @ D, what="A D")
        cov = cov_core.sandwich(AD_inv @ Aa, S) / T
        return self._finish(
            theta, cov, D, S, None, T,
            converged=ok, n_iter=0, message=message, efficient=False,
            mode="combination", bandwidth=bandwidth,
        )

    def _finish(
        self,
        theta: NDArray[np.float64],
        cov: NDArray[np.float64],
        D: NDArray[np.float64],
        S: NDArray[np.float64],
        W: NDArray[np.float64] | None,
        T: int,
        *,
        converged: bool,
        n_iter: int,
        message: str,
        efficient: bool,
        mode: str,
        bandwidth: int,
        Sinv: NDArray[np.float64] | None = None,
    ) -> GMMResult:
        q, k = D.shape
        gbar = self.mean_moments(theta)
        # J is only chi-squared under efficient weighting
        j_df = q - k
        if efficient and j_df > 0:
            Sinv = la.inv_spd(S, what="moment covariance S") if Sinv is None else Sinv
            j_stat = float(T * gbar @ Sinv @ gbar)
            j_pvalue = float(stats.chi2.sf(j_stat, j_df))
        else:
            j_stat = j_pvalue = np.nan
        self._results = GMMResult(
            params=theta,
            cov=la.symmetrize(cov),
            n_obs=T,
            cov_type="white" if int(bandwidth) == 0 else "newey-west",
            param_names=self._param_names,
            model_info={
                "estimator": "GMM",
                "mode": mode,
                "n_moments": q,
                "bandwidth": int(bandwidth),
                "jacobian": repr(self.jacobian),
            },
            moments_mean=gbar,
            jacobian=D,
            weight_matrix=W,
            S=S,
            converged=converged,
            n_iter=n_iter,
            message=message,
            j_stat=j_stat,
            j_pvalue=j_pvalue,
            j_df=j_df,
        )
        return self._results
