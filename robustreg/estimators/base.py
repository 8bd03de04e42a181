"""Base classes, configuration and result containers.

This module defines the abstract base estimator, the covariance and GMM
configuration data structures, and the per-estimator result records.
"""

# robustreg/estimators/base.py
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
from scipy import stats

from robustreg.core import covariance as cov_core
from robustreg.core import linalg as la
from robustreg.exceptions import DimensionMismatchError

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from numpy.typing import NDArray

__all__ = [
    "BaseEstimator",
    "CovConfig",
    "EstimationResult",
    "FirstStageResult",
    "GMMConfig",
    "GMMResult",
    "IVResult",
    "OLSResult",
    "PanelResult",
    "SUREResult",
    "WaldTestResult",
]


# ---------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class CovConfig:
    """Coefficient covariance configuration shared by estimators.

    Notes
    -----
    - ``robust=False`` selects the IID (Gauss-Markov) covariance; ``True``
      selects the kernel estimator on the scores, White at ``bandwidth=0``
      and Newey-West above.
    - ``bandwidth`` is an explicit default of 0, never a fallback.
    - ``clamp``: bandwidths above ``T - 1`` are clamped with a warning; set
      False to raise instead.
    - ``debiased`` divides residual variances by ``T - k`` instead of ``T``.
    """

    robust: bool = False
    bandwidth: int = 0
    kernel: str = "bartlett"
    demean: bool = True
    clamp: bool = True
    debiased: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.bandwidth, bool) or int(self.bandwidth) != self.bandwidth:
            raise ValueError("bandwidth must be a non-negative integer")
        if int(self.bandwidth) < 0:
            raise ValueError("bandwidth must be a non-negative integer")
        if self.kernel.lower() not in cov_core.KERNELS:
            raise ValueError(f"kernel must be one of {sorted(cov_core.KERNELS)}")

    @property
    def label(self) -> str:
        """Short name of the covariance variant."""
        if not self.robust:
            return "iid"
        return "white" if int(self.bandwidth) == 0 else "newey-west"

    def meat(self, g: Any, *, normalize: bool = False) -> NDArray[np.float64]:
        """Kernel estimator on the score matrix ``g`` under this configuration."""
        return cov_core.newey_west(
            g,
            int(self.bandwidth),
            demean=self.demean,
            normalize=normalize,
            clamp=self.clamp,
            kernel=self.kernel,
        )

    def residual_scale(self, n_obs: int, n_params: int) -> float:
        """Divisor applied to residual cross-products."""
        return float(n_obs - n_params) if self.debiased else float(n_obs)


@dataclass(frozen=True)
class GMMConfig:
    """Iteration control for GMM.

    Attributes
    ----------
    tol : float
        Stop the re-weighting loop once ``max|theta_new - theta_old| < tol``.
    max_iter : int
        Cap on re-weighting iterations.
    max_fev : int
        Cap on moment evaluations of the root finder (exactly identified).
    optimizer : str
        ``scipy.optimize.minimize`` method for the quadratic loss.
    optimizer_maxiter : int
        Cap on minimizer iterations.
    gtol : float
        Gradient tolerance passed to the minimizer.
    """

    tol: float = 1e-8
    max_iter: int = 100
    max_fev: int = 2000
    optimizer: str = "BFGS"
    optimizer_maxiter: int = 1000
    gtol: float = 1e-8

    def __post_init__(self) -> None:
        if not self.tol > 0:
            raise ValueError("tol must be positive")
        for name in ("max_iter", "max_fev", "optimizer_maxiter"):
            if int(getattr(self, name)) < 1:
                raise ValueError(f"{name} must be a positive integer")


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class WaldTestResult:
    """Wald test of ``R theta = r``."""

    stat: float
    df: int
    pvalue: float


@dataclass(frozen=True, kw_only=True)
class EstimationResult:
    """Container shared by every estimator.

    Attributes
    ----------
    params : ndarray, shape (p,)
        Coefficient vector. Its ordering is the contract for restriction
        matrices passed to :meth:`wald_test`.
    cov : ndarray, shape (p, p)
        Coefficient covariance under ``cov_type``.
    n_obs : int
        Observations used.
    cov_type : str
        Covariance variant, e.g. ``"iid"``, ``"white"``, ``"newey-west"``.
    param_names : tuple[str, ...] | None
        Optional labels for ``params``.
    model_info : Mapping
        Estimator name, bandwidth and similar bookkeeping.

    Arrays are flagged read-only and mappings are wrapped read-only at
    construction.
    """

    params: NDArray[np.float64]
    cov: NDArray[np.float64]
    n_obs: int
    cov_type: str
    param_names: tuple[str, ...] | None = None
    model_info: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, np.ndarray):
                la.readonly(value)
        object.__setattr__(self, "model_info", MappingProxyType(dict(self.model_info)))
        p = int(np.asarray(self.params).shape[0])
        if self.cov.shape != (p, p):
            raise DimensionMismatchError(
                f"cov has shape {self.cov.shape}; expected ({p}, {p}).",
            )
        if self.param_names is not None and len(self.param_names) != p:
            raise DimensionMismatchError("param_names length must match params")

    @property
    def se(self) -> NDArray[np.float64]:
        """Standard errors, sqrt(diag(cov))."""
        return np.sqrt(np.diag(self.cov))

    @property
    def tstats(self) -> NDArray[np.float64]:
        """``params / se``."""
        return self.params / self.se

    def names(self) -> list[str]:
        """Parameter labels, generated as x0, x1, ... when none were given."""
        if self.param_names is not None:
            return list(self.param_names)
        return [f"x{i}" for i in range(len(self.params))]

    def to_frame(self, names: Sequence[str] | None = None) -> pd.DataFrame:
        """Parameters, standard errors and t-statistics as a DataFrame."""
        labels = self.names() if names is None else [str(n) for n in names]
        if len(labels) != len(self.params):
            raise DimensionMismatchError("names length must match params")
        return pd.DataFrame(
            {"params": self.params, "std_err": self.se, "tstat": self.tstats},
            index=pd.Index(labels, name="parameter"),
        )

    def wald_test(self, R: Any, r: Any = None) -> WaldTestResult:
        """Wald test of the linear restrictions ``R theta = r``.

        ``W = (R theta - r)' (R V R')^{-1} (R theta - r)`` is compared with a
        chi-squared distribution with ``rows(R)`` degrees of freedom.
        """
        R = np.atleast_2d(np.asarray(R, dtype=np.float64))
        p = int(self.params.shape[0])
        if R.shape[1] != p:
            raise DimensionMismatchError(f"R has {R.shape[1]} columns but params has length {p}.")
        r_vec = np.zeros(R.shape[0]) if r is None else np.asarray(r, dtype=np.float64).reshape(-1)
        if r_vec.shape[0] != R.shape[0]:
            raise DimensionMismatchError("r must have one entry per row of R")
        diff = R @ self.params - r_vec
        middle = la.inv(R @ self.cov @ R.T, what="R V R'")
        stat = float(diff @ middle @ diff)
        df = int(R.shape[0])
        return WaldTestResult(stat=stat, df=df, pvalue=float(stats.chi2.sf(stat, df)))


@dataclass(frozen=True, kw_only=True)
class OLSResult(EstimationResult):
    """Single-equation OLS.

    Attributes
    ----------
    resid : ndarray, shape (T,)
    fitted : ndarray, shape (T,)
    r2 : float
        ``1 - Var(resid) / Var(y)``.
    sigma2 : float
        Residual variance used by the IID covariance.
    """

    resid: NDArray[np.float64]
    fitted: NDArray[np.float64]
    r2: float
    sigma2: float


@dataclass(frozen=True, kw_only=True)
class SUREResult(EstimationResult):
    """Multi-equation OLS with a joint covariance.

    ``params`` is stacked equation-major: entries ``i*k .. (i+1)*k - 1``
    belong to equation i.

    Attributes
    ----------
    coef : ndarray, shape (k, n)
        Column i holds the coefficients of equation i.
    resid, fitted : ndarray, shape (T, n)
    r2 : ndarray, shape (n,)
    sigma : ndarray, shape (n, n)
        Residual cross-product matrix ``u'u / T``.
    """

    coef: NDArray[np.float64]
    resid: NDArray[np.float64]
    fitted: NDArray[np.float64]
    r2: NDArray[np.float64]
    sigma: NDArray[np.float64]

    def equation(self, i: int) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Params and covariance block of equation ``i``."""
        k = self.coef.shape[0]
        sl = slice(i * k, (i + 1) * k)
        return self.params[sl], self.cov[sl, sl]


@dataclass(frozen=True)
class FirstStageResult:
    """First stage of 2SLS: each regressor column projected on the instruments.

    Attributes
    ----------
    params : ndarray, shape (L, k)
        Column i holds the projection coefficients of regressor i.
    fitted : ndarray, shape (T, k)
        ``X_hat = Z @ params``.
    resid : ndarray, shape (T, k)
    r2 : ndarray, shape (k,)
        R-squared of each column against its own fitted values (NaN for
        columns without variation, e.g. the intercept).
    cov : ndarray, shape (k, L, L)
        ``cov[i]`` is the covariance of ``params[:, i]``.
    """

    params: NDArray[np.float64]
    fitted: NDArray[np.float64]
    resid: NDArray[np.float64]
    r2: NDArray[np.float64]
    cov: NDArray[np.float64]

    def __post_init__(self) -> None:
        for f in fields(self):
            la.readonly(getattr(self, f.name))

    @property
    def se(self) -> NDArray[np.float64]:
        """Standard errors arranged like ``params`` (L x k)."""
        return np.sqrt(np.diagonal(self.cov, axis1=1, axis2=2)).T


@dataclass(frozen=True, kw_only=True)
class IVResult(EstimationResult):
    """Two-stage least squares.

    ``resid`` and ``fitted`` use the original regressors, not ``X_hat``.
    """

    resid: NDArray[np.float64]
    fitted: NDArray[np.float64]
    r2: float
    sigma2: float
    first_stage: FirstStageResult


@dataclass(frozen=True, kw_only=True)
class GMMResult(EstimationResult):
    """Generalized method of moments.

    Attributes
    ----------
    moments_mean : ndarray, shape (q,)
        Mean moment vector at the estimate.
    jacobian : ndarray, shape (q, k)
        ``d mean(g) / d theta'`` at the estimate.
    weight_matrix : ndarray, shape (q, q) | None
        Weighting matrix of the final minimization (None when solved by root
        finding).
    S : ndarray, shape (q, q)
        Long-run covariance of the moments, ``Var(sqrt(T) mean(g))``.
    converged : bool
    n_iter : int
        Re-weighting iterations performed (0 for one-step fits).
    message : str
    j_stat, j_pvalue : float
        Hansen J statistic and p-value (NaN when exactly identified).
    j_df : int
    """

    moments_mean: NDArray[np.float64]
    jacobian: NDArray[np.float64]
    weight_matrix: NDArray[np.float64] | None
    S: NDArray[np.float64]
    converged: bool
    n_iter: int
    message: str
    j_stat: float
    j_pvalue: float
    j_df: int


@dataclass(frozen=True, kw_only=True)
class PanelResult(EstimationResult):
    """Pooled panel regression.

    Attributes
    ----------
    resid, fitted : ndarray, shape (T, N)
        Zero at invalid cells.
    mask : ndarray, shape (T, N)
    n_per_period : ndarray, shape (T,)
        Valid units per period (Nb).
    r2 : float
        Pseudo R-squared over valid cells.
    covs : Mapping[str, ndarray]
        All covariance variants computed by the fit, keyed by name
        (``"traditional"``, ``"white"``, ``"cluster"``, ``"driscoll-kraay"``).
        ``cov`` is ``covs[cov_type]``.
    """

    resid: NDArray[np.float64]
    fitted: NDArray[np.float64]
    mask: NDArray[np.bool_]
    n_per_period: NDArray[np.int64]
    r2: float
    covs: Mapping[str, NDArray[np.float64]]

    def __post_init__(self) -> None:
        super().__post_init__()
        for value in self.covs.values():
            la.readonly(value)
        object.__setattr__(self, "covs", MappingProxyType(dict(self.covs)))

    def se_for(self, cov_type: str) -> NDArray[np.float64]:
        """Standard errors under another computed covariance variant."""
        if cov_type not in self.covs:
            raise KeyError(f"{cov_type!r} not computed; available: {sorted(self.covs)}")
        return np.sqrt(np.diag(self.covs[cov_type]))


# ---------------------------------------------------------------------
# Base estimator
# ---------------------------------------------------------------------
class BaseEstimator(ABC):
    """Abstract base class for all `robustreg` estimators.

    Principles
    ----------
    1) All linear algebra goes through `core.linalg`.
    2) Every score covariance goes through `core.covariance`.
    3) Panel transforms go through `core.fe`.
    4) Estimators hold private copies of their data; ``fit`` never mutates them.
    """

    def __init__(self) -> None:
        self._results: EstimationResult | None = None

    @property
    def results(self) -> EstimationResult | None:
        """Result of the most recent ``fit`` call (None before fitting)."""
        return self._results

    @abstractmethod
    def fit(self, *args: Any, **kwargs: Any) -> EstimationResult:
        """Estimate the model."""

    @staticmethod
    def _coerce_cov_config(
        cov_config: CovConfig | None,
        *,
        robust: bool | None,
        bandwidth: int | None,
    ) -> CovConfig:
        """Merge keyword covariance options with an optional :class:`CovConfig`.

        Specifying both a config and keyword options is rejected to avoid
        ambiguity.
        """
        if cov_config is not None:
            if robust is not None or bandwidth is not None:
                raise ValueError(
                    "Specify covariance options either via CovConfig or via keyword arguments, not both.",
                )
            return cov_config
        return CovConfig(
            robust=bool(robust) if robust is not None else False,
            bandwidth=0 if bandwidth is None else bandwidth,
        )

    @staticmethod
    def _to_matrix(a: Any, name: str) -> tuple[NDArray[np.float64], tuple[str, ...] | None]:
        """Private float64 2-D copy of ``a`` plus column labels when it is pandas."""
        labels: tuple[str, ...] | None = None
        if isinstance(a, pd.DataFrame):
            labels = tuple(str(c) for c in a.columns)
            a = a.to_numpy(dtype=np.float64)
        elif isinstance(a, pd.Series):
            labels = (str(a.name),) if a.name is not None else None
            a = a.to_numpy(dtype=np.float64)
        return la.as_matrix(a, name).copy(), labels

    @staticmethod
    def _names(names: Sequence[str] | None, k: int, prefix: str = "x") -> tuple[str, ...]:
        if names is None:
            return tuple(f"{prefix}{i}" for i in range(k))
        out = tuple(str(n) for n in names)
        if len(out) != k:
            raise DimensionMismatchError(f"expected {k} names; got {len(out)}.")
        return out
