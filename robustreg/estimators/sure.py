"""Seemingly unrelated regressions with a common design matrix.

Every equation shares the regressors X, so the system estimator is
equation-by-equation OLS. What the system adds is the joint covariance of
all coefficients, which allows cross-equation Wald tests.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import numpy as np

from robustreg.core import covariance as cov_core
from robustreg.core import linalg as la
from robustreg.exceptions import DimensionMismatchError, InsufficientDataError

from .base import BaseEstimator, CovConfig, SUREResult
from .ols import r_squared, residual_variance

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

LOGGER = logging.getLogger(__name__)

__all__ = ["SURE", "system_scores"]


def system_scores(U: NDArray[np.float64], X: NDArray[np.float64]) -> NDArray[np.float64]:
    """Row t is ``kron(u_t, x_t)``, shape (T, n*k)."""
    T, n = U.shape
    return (U[:, :, None] * X[:, None, :]).reshape(T, n * X.shape[1])


class SURE(BaseEstimator):
    """Multi-equation OLS with a joint coefficient covariance.

    Parameters
    ----------
    Y : array-like, shape (T, n)
        One column per equation.
    X : array-like, shape (T, k)
        Regressors common to every equation.
    equation_names : Sequence[str], optional
        Labels for the columns of Y (DataFrame columns by default).
    var_names : Sequence[str], optional
        Labels for the columns of X.

    Notes
    -----
    Stacked parameters are equation-major: entries ``i*k`` to ``(i+1)*k - 1``
    belong to equation i. Restriction matrices passed to
    :meth:`SUREResult.wald_test` use that ordering.
    """

    def __init__(
        self,
        Y: Any,
        X: Any,
        *,
        equation_names: Sequence[str] | None = None,
        var_names: Sequence[str] | None = None,
    ) -> None:
        super().__init__()
        Y_arr, y_names = self._to_matrix(Y, "Y")
        X_arr, x_names = self._to_matrix(X, "X")
        if Y_arr.shape[0] != X_arr.shape[0]:
            raise DimensionMismatchError(
                f"Y has {Y_arr.shape[0]} rows but X has {X_arr.shape[0]}.",
            )
        self.Y = Y_arr
        self.X = X_arr
        self._equation_names = self._names(
            equation_names if equation_names is not None else y_names,
            Y_arr.shape[1],
            prefix="eq",
        )
        self._var_names = self._names(var_names if var_names is not None else x_names, X_arr.shape[1])

    @property
    def n_equations(self) -> int:
        return int(self.Y.shape[1])

    def fit(
        self,
        robust: bool | None = None,
        bandwidth: int | None = None,
        *,
        cov_config: CovConfig | None = None,
    ) -> SUREResult:
        """Fit every equation and the joint covariance.

        IID: ``V = Sigma_u kron (X'X)^{-1}``. Robust:
        ``V = (I kron (X'X)^{-1}) S (I kron (X'X)^{-1})`` with S the kernel
        estimator on the stacked scores ``u_t kron x_t``.
        """
        cfg = self._coerce_cov_config(cov_config, robust=robust, bandwidth=bandwidth)
        T, k = self.X.shape
        n = self.n_equations
        if T == 0:
            raise InsufficientDataError("no observations")
        LOGGER.debug("SURE fit: T=%d n=%d k=%d cov=%s", T, n, k, cfg.label)

        sol = la.lstsq(self.X, self.Y, what="design matrix")
        coef = sol.coef
        fitted = self.X @ coef
        resid = self.Y - fitted
        sigma = la.symmetrize(residual_variance(resid.T @ resid, T, k, cfg))

        if cfg.robust:
            bread = np.kron(np.eye(n), sol.xtx_inv)
            cov = cov_core.sandwich(bread, cfg.meat(system_scores(resid, self.X)))
        else:
            cov = la.symmetrize(np.kron(sigma, sol.xtx_inv))

        names = tuple(f"{eq}:{v}" for eq in self._equation_names for v in self._var_names)
        self._results = SUREResult(
            params=coef.T.reshape(-1),
            cov=cov,
            n_obs=T,
            cov_type=cfg.label,
            param_names=names,
            model_info={
                "estimator": "SURE",
                "n_equations": n,
                "bandwidth": int(cfg.bandwidth),
                "kernel": cfg.kernel,
                "debiased": cfg.debiased,
            },
            coef=coef,
            resid=resid,
            fitted=fitted,
            r2=np.atleast_1d(r_squared(resid, self.Y)),
            sigma=sigma,
        )
        return self._results
