"""Estimator exports with lazy loading.

Public estimator classes and result containers.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "GMM",
    "IV2SLS",
    "OLS",
    "SURE",
    "BaseEstimator",
    "CovConfig",
    "EstimationResult",
    "GMMConfig",
    "PooledPanel",
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
    "PooledPanel": ("robustreg.estimators.panel", "PooledPanel"),
}


def __getattr__(name: str) -> Any:
    """Lazily import estimator classes and shared containers."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        attr = getattr(import_module(module_name), attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'robustreg.estimators' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Expose lazily loaded attributes to ``dir()``."""
    return sorted(set(globals()) | set(__all__))
