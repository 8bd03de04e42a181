from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest


def pytest_configure() -> None:
    """Ensure the repository root is on sys.path.

    Running ``pytest`` from inside the package directory would otherwise
    fail to import the top-level package ``robustreg`` when it is not
    installed.
    """

    repo_root = Path(__file__).resolve().parents[2]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def regression_data(rng):
    """Heteroskedastic, AR(1)-error regression with an intercept column."""
    T = 200
    x = rng.standard_normal((T, 2))
    X = np.column_stack([np.ones(T), x])
    e = rng.standard_normal(T) * (1.0 + 0.5 * np.abs(x[:, 0]))
    u = np.empty(T)
    u[0] = e[0]
    for t in range(1, T):
        u[t] = 0.5 * u[t - 1] + e[t]
    y = X @ np.array([1.0, 2.0, -0.5]) + u
    return y, X
