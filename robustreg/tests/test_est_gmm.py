import pytest
import numpy as np
from robustreg.estimators.gmm import (
    GMM,
    ITERATION_FAILURE,
    AnalyticJacobian,
    FiniteDifferenceJacobian,
)
from robustreg.estimators.base import GMMConfig
from robustreg.estimators.iv import IV2SLS
from robustreg.estimators.ols import OLS
from robustreg.core import covariance as cov
from robustreg.exceptions import ConvergenceWarning, DimensionMismatchError

# ---------------------------------------------------------------------
# Moment functions
# ---------------------------------------------------------------------

def mean_var_moments(p, x):
    return np.column_stack([x - p[0], (x - p[0]) ** 2 - p[1]])

def mean_var_jacobian(p, x):
    return np.array([[-1.0, 0.0], [-2.0 * np.mean(x - p[0]), -1.0]])

def ols_moments(p, y, X):
    return X * (y - X @ p)[:, None]

def ols_jacobian(p, y, X):
    return -(X.T @ X) / X.shape[0]

def iv_moments(p, y, X, Z):
    return Z * (y - X @ p)[:, None]

def iv_jacobian(p, y, X, Z):
    return -(Z.T @ X) / Z.shape[0]

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def iv_data(rng):
    """Over-identified IV design (3 instruments, 2 parameters) with heteroskedastic errors."""
    T = 1000
    z = rng.standard_normal((T, 2))
    v = rng.standard_normal(T)
    x = z @ np.array([1.0, 0.7]) + v
    u = (v + rng.standard_normal(T)) * (1.0 + np.abs(z[:, 0]))
    y = 0.5 + 1.5 * x + u
    X = np.column_stack([np.ones(T), x])
    Z = np.column_stack([np.ones(T), z])
    return y, X, Z

def _iv_model(y, X, Z):
    return GMM(iv_moments, jacobian=AnalyticJacobian(iv_jacobian), args=(y, X, Z))

# ---------------------------------------------------------------------
# Unit Tests: Exactly identified
# ---------------------------------------------------------------------

def test_mean_variance_on_one_to_five():
    x = np.arange(1.0, 6.0)
    res = GMM(mean_var_moments, args=(x,)).fit([0.0, 1.0])
    assert np.allclose(res.params, [3.0, 2.0])
    assert np.allclose(res.moments_mean, 0.0, atol=1e-9)
    assert res.converged
    assert res.n_iter == 0
    assert np.isnan(res.j_stat)
    assert res.weight_matrix is None

def test_mean_variance_closed_forms(rng):
    x = rng.gamma(2.0, 1.5, size=500)
    res = GMM(mean_var_moments, jacobian=AnalyticJacobian(mean_var_jacobian), args=(x,)).fit([1.0, 1.0])
    assert res.params[0] == pytest.approx(np.mean(x))
    assert res.params[1] == pytest.approx(np.var(x))
    # D = -I at the solution, so V = S / T
    S = cov.newey_west(mean_var_moments(res.params, x), 0, normalize=True)
    assert np.allclose(res.cov, S / len(x))
    assert np.allclose(res.S, S)

def test_ols_moments_reproduce_ols_robust(regression_data):
    y, X = regression_data
    model = GMM(ols_moments, jacobian=AnalyticJacobian(ols_jacobian), args=(y, X))
    for m in (0, 3):
        res = model.fit(np.zeros(3), bandwidth=m)
        ols = OLS(y, X).fit(robust=True, bandwidth=m)
        assert np.allclose(res.params, ols.params)
        assert np.allclose(res.cov, ols.cov, rtol=1e-5)

def test_jacobian_discrepancy():
    x = np.arange(1.0, 11.0) ** 1.3
    model = GMM(mean_var_moments, args=(x,))
    assert isinstance(model.jacobian, FiniteDifferenceJacobian)
    gap = model.jacobian_discrepancy([2.5, 1.5], AnalyticJacobian(mean_var_jacobian))
    assert gap < 1e-6

def test_root_finder_failure_warns():
    x = np.arange(1.0, 6.0)
    with pytest.warns(ConvergenceWarning):
        res = GMM(mean_var_moments, args=(x,)).fit([0.0, 1.0], config=GMMConfig(max_fev=2))
    assert not res.converged
    assert res.message

# ---------------------------------------------------------------------
# Unit Tests: Over-identified
# ---------------------------------------------------------------------

def test_one_step_with_2sls_weight_equals_2sls(iv_data):
    y, X, Z = iv_data
    T = len(y)
    W = np.linalg.inv(Z.T @ Z / T)
    res = _iv_model(y, X, Z).fit(np.zeros(2), weight_matrix=W)
    iv = IV2SLS(y, X, Z).fit(robust=True)
    assert np.allclose(res.params, iv.params, atol=1e-6)
    assert np.allclose(res.cov, iv.cov, rtol=1e-4)
    assert res.n_iter == 0
    assert np.isnan(res.j_stat)

def test_one_step_fixed_weight_covariance_formula(iv_data):
    y, X, Z = iv_data
    T = len(y)
    res = _iv_model(y, X, Z).fit(np.zeros(2))
    D = res.jacobian
    W = np.eye(3)
    bread = np.linalg.inv(D.T @ W @ D)
    expected = bread @ D.T @ W @ res.S @ W @ D @ bread / T
    assert np.allclose(res.cov, expected)
    assert np.allclose(res.weight_matrix, W)

def test_iterated_gmm_converges_to_optimal_weight(iv_data):
    y, X, Z = iv_data
    res = _iv_model(y, X, Z).fit(np.zeros(2), iterate=True)
    assert res.converged
    assert res.n_iter >= 1
    assert np.allclose(res.weight_matrix, np.linalg.inv(res.S), rtol=1e-4)
    D = res.jacobian
    expected = np.linalg.inv(D.T @ np.linalg.inv(res.S) @ D) / len(y)
    assert np.allclose(res.cov, expected)
    assert res.j_df == 1
    assert np.isfinite(res.j_stat)
    assert 0.0 <= res.j_pvalue <= 1.0

def test_iterated_gmm_invariant_to_starting_weight(iv_data):
    y, X, Z = iv_data
    T = len(y)
    a = _iv_model(y, X, Z).fit(np.zeros(2), iterate=True)
    b = _iv_model(y, X, Z).fit(np.zeros(2), weight_matrix=np.linalg.inv(Z.T @ Z / T), iterate=True)
    assert np.allclose(a.params, b.params, atol=1e-6)
    assert np.allclose(a.cov, b.cov, rtol=1e-4)

def test_iteration_cap_returns_last_iterate(iv_data):
    y, X, Z = iv_data
    with pytest.warns(ConvergenceWarning, match=ITERATION_FAILURE):
        res = _iv_model(y, X, Z).fit(np.zeros(2), iterate=True, config=GMMConfig(max_iter=1))
    assert not res.converged
    assert res.n_iter == 1
    assert res.message == "GMM iteration failed to converge within max iterations"
    assert np.all(np.isfinite(res.params))

def test_combination_selects_moments(iv_data):
    y, X, Z = iv_data
    A = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
    res = _iv_model(y, X, Z).fit_combination(np.zeros(2), A)
    iv = IV2SLS(y, X, Z[:, :2]).fit(robust=True)
    assert res.converged
    assert np.allclose(res.params, iv.params)
    assert np.allclose(res.cov, iv.cov, rtol=1e-5)
    assert res.model_info["mode"] == "combination"

# ---------------------------------------------------------------------
# Unit Tests: Failure modes
# ---------------------------------------------------------------------

def test_under_identified(iv_data):
    y, X, Z = iv_data
    model = GMM(iv_moments, args=(y, X, Z[:, :1]))
    with pytest.raises(DimensionMismatchError, match="under-identified"):
        model.fit(np.zeros(2))

def test_weight_matrix_validation(iv_data):
    y, X, Z = iv_data
    model = _iv_model(y, X, Z)
    with pytest.raises(DimensionMismatchError):
        model.fit(np.zeros(2), weight_matrix=np.eye(2))
    W = np.eye(3)
    W[0, 1] = 0.5
    with pytest.raises(ValueError, match="symmetric"):
        model.fit(np.zeros(2), weight_matrix=W)

def test_indefinite_weight_matrix_rejected(rng):
    x = rng.standard_normal((200, 3)) + 1.0
    model = GMM(lambda p, x: x - p[0], args=(x,))
    with pytest.raises(ValueError, match="positive semidefinite"):
        model.fit(np.zeros(1), weight_matrix=np.diag([1.0, -1.0, 1.0]))
    # singular but semidefinite weights are allowed
    res = model.fit(np.zeros(1), weight_matrix=np.diag([1.0, 0.0, 1.0]))
    assert np.all(np.isfinite(res.params))

def test_combination_matrix_shape(iv_data):
    y, X, Z = iv_data
    with pytest.raises(DimensionMismatchError):
        _iv_model(y, X, Z).fit_combination(np.zeros(2), np.eye(3))

def test_moments_must_be_callable():
    with pytest.raises(TypeError):
        GMM(np.zeros(3))
    with pytest.raises(TypeError):
        AnalyticJacobian("not a function")
    with pytest.raises(ValueError):
        FiniteDifferenceJacobian(step=0.0)

def test_caller_weight_matrix_stays_writeable(iv_data):
    y, X, Z = iv_data
    W = np.eye(3)
    _iv_model(y, X, Z).fit(np.zeros(2), weight_matrix=W)
    W[0, 0] = 2.0
