"""Instrumental Variables (IV) estimator.

This module implements two-stage least squares (2SLS). Both stages are QR
least-squares fits; the second-stage covariance is the sandwich
``B S B'`` with ``B = (X'Z Szz^{-1} Z'X)^{-1} X'Z Szz^{-1}``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import numpy as np

from robustreg.core import covariance as cov_core
from robustreg.core import linalg as la
from robustreg.exceptions import (
    DimensionMismatchError,
    InstrumentRankError,
    InsufficientDataError,
    RankDeficiencyError,
)

from .base import BaseEstimator, CovConfig, FirstStageResult, IVResult
from .ols import r_squared, residual_variance

if TYPE_CHECKING:
    from collections.abc import Sequence

LOGGER = logging.getLogger(__name__)

__all__ = ["IV2SLS"]

_INSTRUMENT_MSG = "instrument matrix insufficient rank"


class IV2SLS(BaseEstimator):
    """Two-stage least squares.

    Parameters
    ----------
    y : array-like, shape (T,)
        Dependent variable.
    X : array-like, shape (T, k)
        Regressors, exogenous and endogenous alike (include the intercept).
    Z : array-like, shape (T, L)
        Instruments, L >= k. Exogenous regressors instrument themselves and
        must appear in Z as well.
    var_names : Sequence[str], optional
        Labels for the columns of X.

    Notes
    -----
    - First stage: each column of X is projected on Z, ``X_hat = Z delta``.
    - Second stage: y on ``X_hat``; residuals use the original X.
    - With ``Z = X`` the estimator reproduces OLS.
    """

    def __init__(
        self,
        y: Any,
        X: Any,
        Z: Any,
        *,
        var_names: Sequence[str] | None = None,
    ) -> None:
        super().__init__()
        y_arr, _ = self._to_matrix(y, "y")
        X_arr, x_names = self._to_matrix(X, "X")
        Z_arr, _ = self._to_matrix(Z, "Z")
        if y_arr.shape[1] != 1:
            raise DimensionMismatchError(f"y must be a single column; got {y_arr.shape[1]}.")
        T = y_arr.shape[0]
        if X_arr.shape[0] != T or Z_arr.shape[0] != T:
            raise DimensionMismatchError(
                f"row counts differ: y={T}, X={X_arr.shape[0]}, Z={Z_arr.shape[0]}.",
            )
        self.y = y_arr[:, 0]
        self.X = X_arr
        self.Z = Z_arr
        self._var_names = self._names(var_names if var_names is not None else x_names, X_arr.shape[1])

    def _first_stage(self, cfg: CovConfig) -> FirstStageResult:
        T, k = self.X.shape
        L = self.Z.shape[1]
        if L < k:
            raise InstrumentRankError(_INSTRUMENT_MSG)
        try:
            sol = la.lstsq(self.Z, self.X, what="instrument matrix")
        except RankDeficiencyError as exc:
            raise InstrumentRankError(_INSTRUMENT_MSG) from exc

        delta = sol.coef
        fitted = self.Z @ delta
        resid = self.X - fitted
        sigma2 = residual_variance(np.sum(resid**2, axis=0), T, L, cfg)
        covs = np.empty((k, L, L))
        for i in range(k):
            if cfg.robust:
                covs[i] = cov_core.sandwich(sol.xtx_inv, cfg.meat(resid[:, [i]] * self.Z))
            else:
                covs[i] = la.symmetrize(sigma2[i] * sol.xtx_inv)
        first = FirstStageResult(
            params=delta,
            fitted=fitted,
            resid=resid,
            r2=np.atleast_1d(r_squared(resid, self.X)),
            cov=covs,
        )
        return first

    def fit(
        self,
        robust: bool | None = None,
        bandwidth: int | None = None,
        *,
        cov_config: CovConfig | None = None,
    ) -> IVResult:
        """Estimate by 2SLS.

        Raises
        ------
        InstrumentRankError
            If ``L < k``, ``Z'Z`` is singular, or the projected regressors
            are collinear.
        """
        cfg = self._coerce_cov_config(cov_config, robust=robust, bandwidth=bandwidth)
        T, k = self.X.shape
        if T == 0:
            raise InsufficientDataError("no observations")
        LOGGER.debug("IV2SLS fit: T=%d k=%d L=%d cov=%s", T, k, self.Z.shape[1], cfg.label)

        first = self._first_stage(cfg)
        try:
            second = la.lstsq(first.fitted, self.y, what="projected design")
        except RankDeficiencyError as exc:
            raise InstrumentRankError(_INSTRUMENT_MSG) from exc

        theta = second.coef[:, 0]
        # (X'Z Szz^{-1} Z'X)^{-1} is (X_hat'X_hat)^{-1}; X'Z Szz^{-1} is delta'
        bread_inv = second.xtx_inv
        fitted = self.X @ theta
        resid = self.y - fitted
        sigma2 = float(residual_variance(resid @ resid, T, k, cfg))

        if cfg.robust:
            B = bread_inv @ first.params.T
            cov = cov_core.sandwich(B, cfg.meat(resid[:, None] * self.Z))
        else:
            cov = la.symmetrize(sigma2 * bread_inv)

        self._results = IVResult(
            params=theta,
            cov=cov,
            n_obs=T,
            cov_type=cfg.label,
            param_names=self._var_names,
            model_info={
                "estimator": "2SLS",
                "n_instruments": int(self.Z.shape[1]),
                "bandwidth": int(cfg.bandwidth),
                "kernel": cfg.kernel,
                "debiased": cfg.debiased,
            },
            resid=resid,
            fitted=fitted,
            r2=r_squared(resid, self.y),
            sigma2=sigma2,
            first_stage=first,
        )
        return self._results
