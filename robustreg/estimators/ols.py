"""Ordinary Least Squares (OLS) estimator.

This module implements single-equation OLS with IID, White and Newey-West
coefficient covariances.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import numpy as np

from robustreg.core import covariance as cov_core
from robustreg.core import linalg as la
from robustreg.exceptions import DimensionMismatchError, InsufficientDataError

from .base import BaseEstimator, CovConfig, OLSResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

LOGGER = logging.getLogger(__name__)

__all__ = ["OLS", "r_squared"]


def r_squared(resid: NDArray[np.float64], y: NDArray[np.float64], axis: int = 0) -> Any:
    """``1 - Var(resid) / Var(y)`` with centered variances.

    Columns of ``y`` without variation give NaN.
    """
    var_u = np.var(resid, axis=axis)
    var_y = np.var(y, axis=axis)
    with np.errstate(divide="ignore", invalid="ignore"):
        r2 = np.where(var_y > 0, 1.0 - var_u / np.where(var_y > 0, var_y, 1.0), np.nan)
    return float(r2) if np.ndim(r2) == 0 else r2


def residual_variance(ssr: Any, n_obs: int, n_params: int, cfg: CovConfig) -> Any:
    """``ssr / T`` or, with ``debiased=True``, ``ssr / (T - k)``."""
    denom = cfg.residual_scale(n_obs, n_params)
    if denom <= 0:
        raise InsufficientDataError(
            f"debiased residual variance needs T > k; got T={n_obs}, k={n_params}.",
        )
    return ssr / denom


class OLS(BaseEstimator):
    """Ordinary Least Squares regression.

    Estimates y = X theta + u. The design matrix is used as given: an
    intercept must be supplied by the caller as a column of ones.

    Parameters
    ----------
    y : array-like, shape (T,) or (T, 1)
        Dependent variable.
    X : array-like, shape (T, k)
        Regressors. Can be a numpy array or pandas DataFrame.
    var_names : Sequence[str], optional
        Labels for the columns of X. If None and X is a DataFrame, uses
        ``X.columns``; otherwise ``['x0', 'x1', ...]``.

    Examples
    --------
    >>> import numpy as np
    >>> from robustreg.estimators.ols import OLS
    >>> X = np.column_stack([np.ones(4), np.arange(4.0)])
    >>> res = OLS([1.0, 2.0, 3.0, 4.0], X).fit()
    >>> np.round(res.params, 6)
    array([1., 1.])

    Newey-West standard errors with 4 lags:

    >>> res = OLS(y, X).fit(robust=True, bandwidth=4)  # doctest: +SKIP
    """

    def __init__(self, y: Any, X: Any, *, var_names: Sequence[str] | None = None) -> None:
        super().__init__()
        y_arr, _ = self._to_matrix(y, "y")
        X_arr, x_names = self._to_matrix(X, "X")
        if y_arr.shape[1] != 1:
            raise DimensionMismatchError(
                f"y must be a single column; got {y_arr.shape[1]} (use SURE for several equations).",
            )
        if y_arr.shape[0] != X_arr.shape[0]:
            raise DimensionMismatchError(
                f"y has {y_arr.shape[0]} rows but X has {X_arr.shape[0]}.",
            )
        self.y = y_arr[:, 0]
        self.X = X_arr
        self._var_names = self._names(var_names if var_names is not None else x_names, X_arr.shape[1])

    @property
    def n_obs(self) -> int:
        return int(self.X.shape[0])

    @property
    def n_features(self) -> int:
        return int(self.X.shape[1])

    def fit(
        self,
        robust: bool | None = None,
        bandwidth: int | None = None,
        *,
        cov_config: CovConfig | None = None,
        method: str = "qr",
    ) -> OLSResult:
        """Fit the model.

        Parameters
        ----------
        robust : bool, default False
            Use the kernel (White / Newey-West) covariance on ``u * X``.
        bandwidth : int, default 0
            Newey-West lag count; 0 is White.
        cov_config : CovConfig, optional
            Full covariance configuration; mutually exclusive with
            ``robust``/``bandwidth``.
        method : {"qr", "svd"}
            ``"svd"`` requests the minimum-norm solution for rank-deficient X.

        Returns
        -------
        OLSResult
        """
        cfg = self._coerce_cov_config(cov_config, robust=robust, bandwidth=bandwidth)
        T, k = self.X.shape
        if T == 0:
            raise InsufficientDataError("no observations")
        LOGGER.debug("OLS fit: T=%d k=%d cov=%s", T, k, cfg.label)

        sol = la.lstsq(self.X, self.y, method=method, what="design matrix")
        theta = sol.coef[:, 0]
        fitted = self.X @ theta
        resid = self.y - fitted
        sigma2 = float(residual_variance(resid @ resid, T, k, cfg))

        if cfg.robust:
            meat = cfg.meat(resid[:, None] * self.X)
            cov = cov_core.sandwich(sol.xtx_inv, meat)
        else:
            cov = la.symmetrize(sigma2 * sol.xtx_inv)

        self._results = OLSResult(
            params=theta,
            cov=cov,
            n_obs=T,
            cov_type=cfg.label,
            param_names=self._var_names,
            model_info={
                "estimator": "OLS",
                "bandwidth": int(cfg.bandwidth),
                "kernel": cfg.kernel,
                "method": method,
                "rank": sol.rank,
                "debiased": cfg.debiased,
            },
            resid=resid,
            fitted=fitted,
            r2=r_squared(resid, self.y),
            sigma2=sigma2,
        )
        return self._results
