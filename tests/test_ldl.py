import numpy as np
import pytest
import scipy.sparse as sp

from linsys.aux.ordering import fill_reducing_ordering
from linsys.blocks.aux import FactorizationError
from linsys.blocks.ldl import LDLFactor, LDLSymbolic, QdldlFactor

from conftest import dense_kkt, make_problem


def _kkt_upper(seed=0, n=25, m=15):
    A, P, rho_x, rho_y = make_problem(n=n, m=m, seed=seed)
    K = dense_kkt(A, P, rho_x, rho_y)
    K_up = sp.triu(sp.csc_matrix(K), format="csc")
    K_up.sort_indices()
    return K, K_up


@pytest.mark.parametrize("ordering", ["rcm", "natural"])
def test_factor_solves_quasi_definite_system(ordering):
    K, K_up = _kkt_upper(seed=2)
    sym = LDLSymbolic.analyze(K_up, fill_reducing_ordering(K_up, ordering))
    fac = LDLFactor(sym, K_up.data, n_pos_expected=25)
    assert fac.inertia == (25, 15, 0)
    b = np.arange(40, dtype=float)
    x = fac.solve(b)
    np.testing.assert_allclose(K @ x, b, rtol=1e-9, atol=1e-9)


def test_refactor_uses_new_buffers():
    K, K_up = _kkt_upper(seed=5)
    sym = LDLSymbolic.analyze(K_up, fill_reducing_ordering(K_up, "rcm"))
    fac = LDLFactor(sym, K_up.data)
    D_before = fac.D.copy()

    data = K_up.data.copy()
    data *= 2.0
    fac2 = fac.refactor(data)
    assert fac2.symbolic is sym
    np.testing.assert_allclose(fac.D, D_before)
    b = np.ones(40)
    np.testing.assert_allclose(fac2.solve(b), 0.5 * fac.solve(b), rtol=1e-10)


def test_zero_pivot_raises():
    # no (0, 0) entry stored
    K_up = sp.csc_matrix(np.array([[0.0, 1.0], [0.0, 2.0]]))
    sym = LDLSymbolic.analyze(K_up, np.arange(2))
    with pytest.raises(FactorizationError):
        LDLFactor(sym, K_up.data)


def test_wrong_inertia_raises():
    # [[-4, 1], [1, -1]]: both pivots negative
    K_up = sp.csc_matrix(np.array([[-4.0, 1.0], [0.0, -1.0]]))
    sym = LDLSymbolic.analyze(K_up)
    with pytest.raises(FactorizationError):
        LDLFactor(sym, K_up.data, n_pos_expected=1)
    fac = LDLFactor(sym, K_up.data)
    assert fac.inertia == (0, 2, 0)


def test_bad_permutation_rejected():
    _, K_up = _kkt_upper()
    with pytest.raises(ValueError):
        LDLSymbolic.analyze(K_up, np.zeros(40, dtype=np.int64))


def test_qdldl_factor_matches_numba_factor():
    K, K_up = _kkt_upper(seed=7)
    b = np.cos(np.arange(40.0))
    qd = QdldlFactor(K_up)
    sym = LDLSymbolic.analyze(K_up, fill_reducing_ordering(K_up, "natural"))
    np.testing.assert_allclose(qd.solve(b), LDLFactor(sym, K_up.data).solve(b), rtol=1e-9, atol=1e-11)
    np.testing.assert_allclose(K @ qd.solve(b), b, rtol=1e-9, atol=1e-9)


def test_qdldl_refactor_updates_values_in_place():
    K, K_up = _kkt_upper(seed=8)
    qd = QdldlFactor(K_up)
    b = np.ones(40)
    x1 = qd.solve(b)
    assert qd.refactor(2.0 * K_up.data) is qd
    np.testing.assert_allclose(qd.solve(b), 0.5 * x1, rtol=1e-10)


def test_qdldl_zero_pivot_raises():
    # [[-1, 1], [1, -1]]
    K_up = sp.csc_matrix(np.array([[-1.0, 1.0], [0.0, -1.0]]))
    with pytest.raises(FactorizationError):
        QdldlFactor(K_up)
