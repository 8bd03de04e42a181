import pytest
import numpy as np
import pandas as pd
from robustreg.estimators.ols import OLS
from robustreg.estimators.base import CovConfig
from robustreg.core import covariance as cov
from robustreg.exceptions import (
    BandwidthClampWarning,
    DimensionMismatchError,
    InsufficientDataError,
    RankDeficiencyError,
)

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def data_ols(rng):
    N = 200
    X = rng.standard_normal((N, 3))
    beta = np.array([1.0, -0.5, 0.2])
    u = rng.standard_normal(N)
    y = X @ beta + u
    return pd.DataFrame(X, columns=['x1', 'x2', 'x3']), pd.Series(y, name='y'), beta

# ---------------------------------------------------------------------
# Unit Tests: Estimates
# ---------------------------------------------------------------------

def test_ols_exact_fit():
    X = np.array([[1.0, 0.0], [1.0, 1.0], [1.0, 2.0], [1.0, 3.0]])
    y = np.array([1.0, 2.0, 3.0, 4.0])
    res = OLS(y, X).fit()
    assert np.allclose(res.params, [1.0, 1.0])
    assert res.r2 == pytest.approx(1.0)
    assert np.allclose(res.resid, 0.0, atol=1e-12)
    assert np.allclose(res.fitted, y)

def test_ols_estimates_match_numpy(data_ols):
    X_df, y_s, _ = data_ols
    res = OLS(y_s, X_df).fit()
    beta_np = np.linalg.lstsq(X_df.values, y_s.values, rcond=None)[0]
    assert np.allclose(res.params, beta_np)
    assert res.param_names == ('x1', 'x2', 'x3')
    assert res.n_obs == 200
    assert res.cov_type == "iid"
    assert res.model_info["estimator"] == "OLS"

def test_residuals_orthogonal_to_regressors(regression_data):
    y, X = regression_data
    res = OLS(y, X).fit()
    assert np.allclose(X.T @ res.resid, 0.0, atol=1e-9)

def test_r2_definition(regression_data):
    y, X = regression_data
    res = OLS(y, X).fit()
    assert res.r2 == pytest.approx(1.0 - np.var(res.resid) / np.var(y))

# ---------------------------------------------------------------------
# Unit Tests: Covariances
# ---------------------------------------------------------------------

def test_iid_covariance(regression_data):
    y, X = regression_data
    res = OLS(y, X).fit()
    T = len(y)
    sigma2 = res.resid @ res.resid / T
    assert res.sigma2 == pytest.approx(sigma2)
    assert np.allclose(res.cov, sigma2 * np.linalg.inv(X.T @ X))

def test_iid_covariance_debiased(regression_data):
    y, X = regression_data
    res = OLS(y, X).fit(cov_config=CovConfig(debiased=True))
    T, k = X.shape
    sigma2 = res.resid @ res.resid / (T - k)
    assert np.allclose(res.cov, sigma2 * np.linalg.inv(X.T @ X))

def test_white_covariance(regression_data):
    y, X = regression_data
    res = OLS(y, X).fit(robust=True)
    A = np.linalg.inv(X.T @ X)
    g = res.resid[:, None] * X
    expected = A @ (g.T @ g) @ A
    assert np.allclose(res.cov, expected)
    assert res.cov_type == "white"

def test_newey_west_covariance(regression_data):
    y, X = regression_data
    res = OLS(y, X).fit(robust=True, bandwidth=4)
    A = np.linalg.inv(X.T @ X)
    S = cov.newey_west(res.resid[:, None] * X, 4)
    assert np.allclose(res.cov, A @ S @ A)
    assert res.cov_type == "newey-west"
    assert res.model_info["bandwidth"] == 4

def test_newey_west_differs_from_white_under_autocorrelation(regression_data):
    y, X = regression_data
    white = OLS(y, X).fit(robust=True)
    nw = OLS(y, X).fit(robust=True, bandwidth=6)
    # positively autocorrelated errors and regressors inflate the intercept variance
    assert nw.se[0] > white.se[0]

def test_parzen_kernel_through_config(regression_data):
    y, X = regression_data
    res = OLS(y, X).fit(cov_config=CovConfig(robust=True, bandwidth=4, kernel="parzen"))
    A = np.linalg.inv(X.T @ X)
    S = cov.newey_west(res.resid[:, None] * X, 4, kernel="parzen")
    assert np.allclose(res.cov, A @ S @ A)

def test_bandwidth_clamp_through_fit(regression_data):
    y, X = regression_data
    y, X = y[:10], X[:10]
    with pytest.warns(BandwidthClampWarning):
        res = OLS(y, X).fit(robust=True, bandwidth=50)
    assert np.allclose(res.cov, OLS(y, X).fit(robust=True, bandwidth=9).cov)
    with pytest.raises(InsufficientDataError):
        OLS(y, X).fit(cov_config=CovConfig(robust=True, bandwidth=50, clamp=False))

# ---------------------------------------------------------------------
# Unit Tests: Failure modes
# ---------------------------------------------------------------------

def test_rank_deficient_design_raises(regression_data):
    y, X = regression_data
    X_bad = np.column_stack([X, X[:, 1] + X[:, 2]])
    with pytest.raises(RankDeficiencyError, match="design matrix is rank-deficient"):
        OLS(y, X_bad).fit()

def test_svd_opt_in_gives_minimum_norm(regression_data):
    y, X = regression_data
    X_bad = np.column_stack([X, X[:, 1] + X[:, 2]])
    res = OLS(y, X_bad).fit(method="svd")
    assert np.allclose(res.params, np.linalg.pinv(X_bad) @ y)
    assert res.model_info["rank"] == 3

def test_dimension_mismatch(regression_data):
    y, X = regression_data
    with pytest.raises(DimensionMismatchError):
        OLS(y[:-1], X)
    with pytest.raises(DimensionMismatchError):
        OLS(np.column_stack([y, y]), X)

def test_nan_propagates_to_outputs(regression_data):
    y, X = regression_data
    y = y.copy()
    y[7] = np.nan
    res = OLS(y, X).fit(robust=True, bandwidth=2)
    assert np.all(np.isnan(res.params))
    assert np.all(np.isnan(res.cov))
    assert np.isnan(res.r2)

def test_config_and_kwargs_are_exclusive(regression_data):
    y, X = regression_data
    with pytest.raises(ValueError, match="not both"):
        OLS(y, X).fit(robust=True, cov_config=CovConfig())

def test_fit_does_not_mutate_inputs(regression_data):
    y, X = regression_data
    y0, X0 = y.copy(), X.copy()
    model = OLS(y, X)
    model.fit(robust=True, bandwidth=3)
    assert np.array_equal(y, y0)
    assert np.array_equal(X, X0)
    assert model.results is not None

def test_result_arrays_are_read_only(regression_data):
    y, X = regression_data
    res = OLS(y, X).fit()
    with pytest.raises(ValueError):
        res.params[0] = 0.0
    with pytest.raises(ValueError):
        res.cov[0, 0] = 0.0
    with pytest.raises(ValueError):
        res.resid[0] = 0.0
