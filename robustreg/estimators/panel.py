"""Pooled panel regression with traditional, White, cluster and Driscoll-Kraay covariances.

The panel is stacked time-major (row ``t * N + i`` is unit i in period t) and
solved by QR least squares. Invalid cells are zeroed rows, so they add
nothing to the normal equations or to any score sum.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import numpy as np

from robustreg.core import covariance as cov_core
from robustreg.core import fe as fe_core
from robustreg.core import linalg as la
from robustreg.exceptions import DimensionMismatchError, InsufficientDataError

from .base import BaseEstimator, PanelResult
from .ols import r_squared

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

LOGGER = logging.getLogger(__name__)

__all__ = ["COV_TYPES", "PooledPanel"]

COV_TYPES = ("traditional", "white", "cluster", "driscoll-kraay")


class PooledPanel(BaseEstimator):
    """Pooled OLS on a T x N panel.

    Parameters
    ----------
    Y : array-like, shape (T, N)
        Dependent variable, periods by units.
    X : array-like, shape (T, K, N)
        Regressors; include a constant slice for an intercept.
    mask : array-like of bool, shape (T, N), optional
        Valid cells. Cells outside the mask are zeroed in the estimator's
        private copy. Defaults to every cell valid.
    cluster_ids : array-like, shape (N,), optional
        Cluster label of each unit. Defaults to one cluster per unit.
    var_names : Sequence[str], optional
        Labels for the K regressors.

    Notes
    -----
    NaN values inside the mask are not removed: they propagate and every
    output is NaN. Use :meth:`from_unbalanced` (or
    :func:`robustreg.core.fe.neutralize_missing`) to drop incomplete cells.
    """

    def __init__(
        self,
        Y: Any,
        X: Any,
        *,
        mask: Any = None,
        cluster_ids: Any = None,
        var_names: Sequence[str] | None = None,
    ) -> None:
        super().__init__()
        Ya, Xa = fe_core.check_panel(Y, X)
        self.Y = Ya.copy()
        self.X = Xa.copy()
        T, K, N = self.X.shape
        if mask is None:
            self.mask = np.ones((T, N), dtype=bool)
        else:
            self.mask = np.array(mask, dtype=bool)
            if self.mask.shape != (T, N):
                raise DimensionMismatchError(f"mask must have shape {(T, N)}; got {self.mask.shape}.")
            bad = ~self.mask
            self.Y[bad] = 0.0
            t_idx, i_idx = np.nonzero(bad)
            self.X[t_idx, :, i_idx] = 0.0
        if cluster_ids is None:
            self.cluster_ids = None
        else:
            self.cluster_ids = np.asarray(cluster_ids).reshape(-1).copy()
            if self.cluster_ids.shape[0] != N:
                raise DimensionMismatchError(
                    f"cluster_ids must have one entry per unit ({N}); got {self.cluster_ids.shape[0]}.",
                )
        self._var_names = self._names(var_names, K)

    @classmethod
    def from_unbalanced(
        cls,
        Y: Any,
        X: Any,
        *,
        cluster_ids: Any = None,
        var_names: Sequence[str] | None = None,
    ) -> PooledPanel:
        """Neutralize incomplete cells (on copies) and build the estimator."""
        prepared = fe_core.neutralize_missing(Y, X)
        return cls(
            prepared.y,
            prepared.X,
            mask=prepared.mask,
            cluster_ids=cluster_ids,
            var_names=var_names,
        )

    def _stacked(self) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        T, K, N = self.X.shape
        return self.Y.reshape(T * N), self.X.transpose(0, 2, 1).reshape(T * N, K)

    def fit(self, bandwidth: int = 0, cov_type: str = "driscoll-kraay") -> PanelResult:
        """Fit pooled OLS and every covariance variant.

        Parameters
        ----------
        bandwidth : int, default 0
            Lags of the Bartlett kernel for Driscoll-Kraay.
        cov_type : {"traditional", "white", "cluster", "driscoll-kraay"}
            Variant reported as ``result.cov``; all are kept in ``result.covs``.

        Notes
        -----
        Driscoll-Kraay sums scores across units within each period,
        ``h_t = sum_i e_ti x_ti``, and applies the kernel to ``h``. Periods
        with fewer valid units are not reweighted.
        """
        if cov_type not in COV_TYPES:
            raise ValueError(f"cov_type must be one of {COV_TYPES}; got {cov_type!r}")
        T, K, N = self.X.shape
        n_valid = int(self.mask.sum())
        if n_valid == 0:
            raise InsufficientDataError("panel has no valid cells")
        LOGGER.debug("PooledPanel fit: T=%d N=%d K=%d valid=%d", T, N, K, n_valid)

        y_s, X_s = self._stacked()
        sol = la.lstsq(X_s, y_s, what="design matrix")
        theta = sol.coef[:, 0]
        fitted_s = X_s @ theta
        resid_s = y_s - fitted_s
        scores = resid_s[:, None] * X_s
        bread = sol.xtx_inv

        covs: dict[str, NDArray[np.float64]] = {}
        sigma2 = float(resid_s @ resid_s) / n_valid
        covs["traditional"] = la.symmetrize(sigma2 * bread)
        covs["white"] = cov_core.sandwich(bread, cov_core.white(scores))

        if self.cluster_ids is not None:
            codes = np.tile(self.cluster_ids, T)
            covs["cluster"] = cov_core.sandwich(bread, cov_core.cluster_meat(scores, codes))
        elif N >= 2:
            codes = np.tile(np.arange(N), T)
            covs["cluster"] = cov_core.sandwich(bread, cov_core.cluster_meat(scores, codes))
        else:
            LOGGER.debug("single unit: cluster covariance omitted")

        h = scores.reshape(T, N, K).sum(axis=1)
        covs["driscoll-kraay"] = cov_core.sandwich(bread, cov_core.newey_west(h, bandwidth))

        if cov_type not in covs:
            raise InsufficientDataError(
                "cluster covariance requires at least 2 clusters; got 1.",
            )

        resid = resid_s.reshape(T, N)
        fitted = fitted_s.reshape(T, N)
        self._results = PanelResult(
            params=theta,
            cov=covs[cov_type],
            n_obs=n_valid,
            cov_type=cov_type,
            param_names=self._var_names,
            model_info={
                "estimator": "PooledPanel",
                "T": T,
                "N": N,
                "bandwidth": int(bandwidth),
            },
            resid=resid,
            fitted=fitted,
            mask=self.mask.copy(),
            n_per_period=self.mask.sum(axis=1).astype(np.int64),
            r2=r_squared(resid[self.mask], self.Y[self.mask]),
            covs=covs,
        )
        return self._results
