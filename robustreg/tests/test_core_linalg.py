
import pytest
import numpy as np
from robustreg.core import linalg as la
from robustreg.exceptions import DimensionMismatchError, RankDeficiencyError

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def data_dense(rng):
    X = rng.standard_normal((100, 5))
    y = X @ np.ones(5) + rng.standard_normal(100)
    return X, y

@pytest.fixture
def data_rank_deficient(rng):
    X = rng.standard_normal((100, 3))
    X = np.column_stack([X, X[:, 0] + X[:, 1]])  # 4th col is lin comb
    y = rng.standard_normal(100)
    return X, y

# ---------------------------------------------------------------------
# Unit Tests: Least squares
# ---------------------------------------------------------------------

def test_lstsq_matches_numpy(data_dense):
    X, y = data_dense
    fit = la.lstsq(X, y)
    beta_np = np.linalg.lstsq(X, y, rcond=None)[0]
    assert fit.coef.shape == (5, 1)
    assert np.allclose(fit.coef[:, 0], beta_np)
    assert np.allclose(fit.xtx_inv, np.linalg.inv(X.T @ X))
    assert fit.rank == 5
    assert fit.finite

def test_lstsq_multiple_columns(data_dense, rng):
    X, _ = data_dense
    Y = rng.standard_normal((100, 3))
    fit = la.lstsq(X, Y)
    assert fit.coef.shape == (5, 3)
    for j in range(3):
        assert np.allclose(fit.coef[:, j], np.linalg.lstsq(X, Y[:, j], rcond=None)[0])

def test_lstsq_rank_deficient_raises(data_rank_deficient):
    X, y = data_rank_deficient
    with pytest.raises(RankDeficiencyError, match="design matrix is rank-deficient"):
        la.lstsq(X, y)

def test_lstsq_more_columns_than_rows_raises(rng):
    X = rng.standard_normal((3, 5))
    with pytest.raises(RankDeficiencyError):
        la.lstsq(X, rng.standard_normal(3), what="instrument matrix")

def test_lstsq_svd_is_minimum_norm(data_rank_deficient):
    X, y = data_rank_deficient
    fit = la.lstsq(X, y, method="svd")
    assert fit.rank == 3
    assert np.allclose(fit.coef[:, 0], np.linalg.pinv(X) @ y)
    assert np.allclose(fit.xtx_inv, fit.xtx_inv.T)
    # Moore-Penrose identity A A+ A = A on the Gram matrix
    A = X.T @ X
    assert np.allclose(A @ fit.xtx_inv @ A, A)

def test_lstsq_nan_propagates(data_dense):
    X, y = data_dense
    y = y.copy()
    y[3] = np.nan
    fit = la.lstsq(X, y)
    assert not fit.finite
    assert np.all(np.isnan(fit.coef))
    assert np.all(np.isnan(fit.xtx_inv))

def test_lstsq_row_mismatch(data_dense):
    X, y = data_dense
    with pytest.raises(DimensionMismatchError):
        la.lstsq(X, y[:-1])

def test_lstsq_unknown_method(data_dense):
    X, y = data_dense
    with pytest.raises(ValueError):
        la.lstsq(X, y, method="cholesky")

def test_lstsq_pivoting_unpermutes(rng):
    # Scale columns very differently so the pivot order is not the identity
    X = rng.standard_normal((50, 3)) * np.array([1e-3, 1.0, 1e3])
    beta = np.array([5.0, -1.0, 0.01])
    y = X @ beta
    fit = la.lstsq(X, y)
    assert np.allclose(fit.coef[:, 0], beta)

# ---------------------------------------------------------------------
# Unit Tests: Inverses and helpers
# ---------------------------------------------------------------------

def test_inv_spd_matches_numpy(data_dense):
    X, _ = data_dense
    A = X.T @ X
    assert np.allclose(la.inv_spd(A), np.linalg.inv(A))

def test_inv_spd_singular_raises():
    with pytest.raises(RankDeficiencyError):
        la.inv_spd(np.array([[1.0, 1.0], [1.0, 1.0]]), what="Z'Z")

def test_inv_spd_nan():
    out = la.inv_spd(np.array([[1.0, np.nan], [np.nan, 1.0]]))
    assert np.all(np.isnan(out))

def test_inv_general_and_singular():
    A = np.array([[2.0, 1.0], [0.0, 3.0]])
    assert np.allclose(la.inv(A) @ A, np.eye(2))
    with pytest.raises(RankDeficiencyError):
        la.inv(np.array([[1.0, 2.0], [2.0, 4.0]]))
    with pytest.raises(DimensionMismatchError):
        la.inv(np.ones((2, 3)))

def test_rank_from_diag():
    assert la.rank_from_diag(np.array([3.0, 1.0, 1e-20]), 10, 3) == 2
    assert la.rank_from_diag(np.zeros(3), 10, 3) == 0

def test_as_matrix_shapes():
    assert la.as_matrix(np.arange(4.0)).shape == (4, 1)
    assert la.as_matrix(np.ones((4, 2))).shape == (4, 2)
    with pytest.raises(DimensionMismatchError):
        la.as_matrix(np.ones((2, 2, 2)))

def test_group_sum():
    X = np.array([[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]])
    codes = np.array([1, 0, 1])
    out = la.group_sum(X, codes)
    assert np.allclose(out, [[3.0, 4.0], [6.0, 8.0]])
    with pytest.raises(DimensionMismatchError):
        la.group_sum(X, codes[:2])

def test_readonly_and_symmetrize():
    A = np.array([[1.0, 2.0], [0.0, 1.0]])
    S = la.symmetrize(A)
    assert np.allclose(S, S.T)
    la.readonly(S)
    with pytest.raises(ValueError):
        S[0, 0] = 5.0

def test_all_finite():
    assert la.all_finite(np.ones(3), None)
    assert not la.all_finite(np.array([1.0, np.inf]))
