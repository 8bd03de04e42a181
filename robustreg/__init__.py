"""robustreg: regression estimators with robust covariance matrices.

This package provides OLS, SURE, 2SLS, GMM and pooled panel estimators whose
coefficient covariances remain valid under heteroskedasticity,
autocorrelation (Newey-West) and cross-sectional dependence
(cluster, Driscoll-Kraay).
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "0.1.0"

__all__ = [
    "GMM",
    "IV2SLS",
    "OLS",
    "SURE",
    "AnalyticJacobian",
    "BaseEstimator",
    "CovConfig",
    "EstimationResult",
    "FiniteDifferenceJacobian",
    "GMMConfig",
    "PooledPanel",
    "newey_west",
    "neutralize_missing",
    "neutralize_missing_inplace",
    "within_transform",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseEstimator": ("robustreg.estimators.base", "BaseEstimator"),
    "CovConfig": ("robustreg.estimators.base", "CovConfig"),
    "GMMConfig": ("robustreg.estimators.base", "GMMConfig"),
    "EstimationResult": ("robustreg.estimators.base", "EstimationResult"),
    "OLS": ("robustreg.estimators.ols", "OLS"),
    "SURE": ("robustreg.estimators.sure", "SURE"),
    "IV2SLS": ("robustreg.estimators.iv", "IV2SLS"),
    "GMM": ("robustreg.estimators.gmm", "GMM"),
    "AnalyticJacobian": ("robustreg.estimators.gmm", "AnalyticJacobian"),
    "FiniteDifferenceJacobian": ("robustreg.estimators.gmm", "FiniteDifferenceJacobian"),
    "PooledPanel": ("robustreg.estimators.panel", "PooledPanel"),
    "newey_west": ("robustreg.core.covariance", "newey_west"),
    "neutralize_missing": ("robustreg.core.fe", "neutralize_missing"),
    "neutralize_missing_inplace": ("robustreg.core.fe", "neutralize_missing_inplace"),
    "within_transform": ("robustreg.core.fe", "within_transform"),
}


def __getattr__(name: str) -> Any:
    """Lazily import public estimators and utilities on first access."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'robustreg' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Ensure dir() exposes lazily imported names."""
    return sorted(set(globals()) | set(__all__))
