import numpy as np
import pytest
import scipy.sparse as sp

import linsys.linsys as lifecycle
from linsys import (
    FactorizationError,
    LinearSystemSolver,
    LinSysConfig,
    LinSysStatus,
    SparseMatrix,
    free_lin_sys_work,
    get_lin_sys_method,
    get_lin_sys_summary,
    init_lin_sys_work,
    solve_lin_sys,
    update_lin_sys_rho_y_vec,
)

from conftest import dense_kkt, make_problem


def test_method_names():
    assert get_lin_sys_method() == "sparse-direct-amd-ldl"
    assert get_lin_sys_method("ldl") == "sparse-direct-amd-ldl"
    assert get_lin_sys_method({"method": "direct", "ordering": "rcm"}) == "sparse-direct-rcm-ldl"
    assert get_lin_sys_method(LinSysConfig(method="indirect")) == "sparse-indirect"
    assert get_lin_sys_method("pcg") == "sparse-indirect"
    assert get_lin_sys_method("no-such-solver") is None
    assert get_lin_sys_method({"method": "no-such-solver"}) is None


def test_update_then_solve_matches_fresh_workspace(method):
    A, P, rho_x, rho_y = make_problem(seed=6)
    new_rho_y = np.random.default_rng(6).uniform(0.1, 5.0, size=20)
    cfg = {"method": method}
    b0 = np.cos(np.arange(50.0))

    work = init_lin_sys_work(A, P, rho_y, rho_x, cfg)
    assert update_lin_sys_rho_y_vec(A, P, work, new_rho_y) == 0
    b_upd = b0.copy()
    assert solve_lin_sys(A, P, work, b_upd, tol=1e-12) == 0

    fresh = init_lin_sys_work(A, P, new_rho_y, rho_x, cfg)
    b_new = b0.copy()
    assert solve_lin_sys(A, P, fresh, b_new, tol=1e-12) == 0

    np.testing.assert_allclose(b_upd, b_new, rtol=1e-7, atol=1e-9)
    K = dense_kkt(A, P, rho_x, new_rho_y)
    np.testing.assert_allclose(K @ b_upd, b0, atol=1e-8)
    assert work.n_updates == 1


def test_dual_diagonal_length_mismatch_rejected(method, scalar_problem):
    A, P, rho_x, _ = scalar_problem
    with pytest.raises(ValueError):
        init_lin_sys_work(A, P, np.array([1.0, 1.0]), rho_x, {"method": method})
    work = init_lin_sys_work(A, P, np.array([1.0]), rho_x, {"method": method})
    with pytest.raises(ValueError):
        update_lin_sys_rho_y_vec(A, P, work, np.array([1.0, 2.0]))


@pytest.mark.parametrize("rho_x, rho_y", [(0.0, [1.0]), (-1.0, [1.0]), (1.0, [0.0]), (1.0, [-2.0])])
def test_non_positive_regularization_rejected(scalar_problem, rho_x, rho_y):
    A, P, _, _ = scalar_problem
    with pytest.raises(ValueError):
        init_lin_sys_work(A, P, np.array(rho_y), rho_x)


def test_shape_mismatch_rejected(problem):
    A, P, rho_x, rho_y = problem
    with pytest.raises(ValueError):
        init_lin_sys_work(A, sp.eye(5, format="csc"), rho_y, rho_x)
    work = init_lin_sys_work(A, P, rho_y, rho_x)
    other_A, _, _, _ = make_problem(n=30, m=21)
    with pytest.raises(ValueError):
        solve_lin_sys(other_A, P, work, np.ones(50))


def test_rhs_and_tolerance_checks(method, problem):
    A, P, rho_x, rho_y = problem
    work = init_lin_sys_work(A, P, rho_y, rho_x, {"method": method})
    with pytest.raises(ValueError):
        solve_lin_sys(A, P, work, np.ones(49))
    with pytest.raises(ValueError):
        solve_lin_sys(A, P, work, np.ones(50, dtype=np.float32))
    with pytest.raises(ValueError):
        solve_lin_sys(A, P, work, np.ones(50), tol=0.0)
    with pytest.raises(ValueError):
        solve_lin_sys(A, P, work, np.ones(50), s=np.ones(3))


def test_use_after_free(method, scalar_problem):
    A, P, rho_x, rho_y = scalar_problem
    work = init_lin_sys_work(A, P, rho_y, rho_x, {"method": method})
    free_lin_sys_work(work)
    assert work.released and not work.valid
    with pytest.raises(RuntimeError):
        solve_lin_sys(A, P, work, np.ones(2))
    with pytest.raises(RuntimeError):
        update_lin_sys_rho_y_vec(A, P, work, np.ones(1))
    with pytest.raises(RuntimeError):
        free_lin_sys_work(work)
    free_lin_sys_work(None)


def test_free_drops_derived_state(scalar_problem):
    A, P, rho_x, rho_y = scalar_problem
    direct = init_lin_sys_work(A, P, rho_y, rho_x)
    indirect = init_lin_sys_work(A, P, rho_y, rho_x, {"method": "indirect"})
    free_lin_sys_work(direct)
    free_lin_sys_work(indirect)
    assert direct.factor is None and direct.symbolic is None and direct.kkt is None
    assert indirect.m_inv is None and indirect.A is None and indirect.x_prev is None


def test_invalid_workspace_reports_failure(method, scalar_problem):
    A, P, rho_x, rho_y = scalar_problem
    work = init_lin_sys_work(A, P, rho_y, rho_x, {"method": method})
    work.valid = False
    b = np.array([2.0, 0.0])
    assert solve_lin_sys(A, P, work, b) == LinSysStatus.INVALID_WORKSPACE
    np.testing.assert_array_equal(b, [2.0, 0.0])
    assert update_lin_sys_rho_y_vec(A, P, work, np.ones(1)) == LinSysStatus.INVALID_WORKSPACE


def test_out_of_memory_update_invalidates_workspace(method, scalar_problem, monkeypatch):
    A, P, rho_x, rho_y = scalar_problem
    work = init_lin_sys_work(A, P, rho_y, rho_x, {"method": method})

    def _no_memory(*args, **kwargs):
        raise MemoryError

    monkeypatch.setattr(work.backend, "update", _no_memory)
    status = update_lin_sys_rho_y_vec(A, P, work, np.array([2.0]))
    assert status == LinSysStatus.INVALID_WORKSPACE
    assert not work.valid
    assert work.n_updates == 0
    for _ in range(2):
        b = np.array([2.0, 0.0])
        assert solve_lin_sys(A, P, work, b, tol=1e-12) == LinSysStatus.INVALID_WORKSPACE
        np.testing.assert_array_equal(b, [2.0, 0.0])
    free_lin_sys_work(work)


def test_init_matrices_are_not_rewrapped(method, problem, monkeypatch):
    A, P, rho_x, rho_y = problem
    work = init_lin_sys_work(A, P, rho_y, rho_x, {"method": method})

    def _rewrap(*args, **kwargs):
        raise AssertionError("init matrices wrapped again")

    monkeypatch.setattr(lifecycle, "_matrices", _rewrap)
    assert solve_lin_sys(A, P, work, np.ones(50), tol=1e-10) == 0
    assert update_lin_sys_rho_y_vec(A, P, work, 2.0 * rho_y) == 0
    assert solve_lin_sys(work.a_view, work.p_view, work, np.ones(50), tol=1e-10) == 0

    # other objects are wrapped and checked against the workspace
    monkeypatch.undo()
    assert solve_lin_sys(A.copy(), P.copy(), work, np.ones(50), tol=1e-10) == 0
    with pytest.raises(ValueError):
        solve_lin_sys(A[:, :-1], P, work, np.ones(50))


def test_missing_objective_matrix(method):
    A = sp.csc_matrix(np.array([[1.0]]))
    work = init_lin_sys_work(A, None, np.array([1.0]), 1.0, {"method": method})
    b = np.array([2.0, 0.0])
    assert solve_lin_sys(A, None, work, b, tol=1e-12) == 0
    np.testing.assert_allclose(b, [1.0, 1.0], atol=1e-12)


def test_solver_handle(method):
    A, P, rho_x, rho_y = make_problem(seed=12)
    K = dense_kkt(A, P, rho_x, rho_y)
    b0 = np.ones(50)
    with LinearSystemSolver(SparseMatrix.from_scipy(A), P, rho_x, rho_y, {"method": method}) as ls:
        assert ls.method == get_lin_sys_method({"method": method})
        assert (ls.n, ls.m) == (30, 20)
        b = b0.copy()
        assert ls.solve(b, tol=1e-11) == 0
        np.testing.assert_allclose(K @ b, b0, atol=1e-8)
        assert ls.summary().startswith(f"lin-sys: {ls.method}")
    assert ls.work is None
    with pytest.raises(RuntimeError):
        ls.solve(b0.copy())


def test_solver_handle_raises_on_failed_init():
    # K = [[-1, 1], [1, -1]] is singular
    A = sp.csc_matrix(np.array([[1.0]]))
    P = sp.csc_matrix(np.array([[-2.0]]))
    with pytest.raises(FactorizationError):
        LinearSystemSolver(A, P, 1.0, np.array([1.0]))


def test_summary_counts(scalar_problem):
    A, P, rho_x, rho_y = scalar_problem
    work = init_lin_sys_work(A, P, rho_y, rho_x, {"method": "indirect"})
    for _ in range(2):
        solve_lin_sys(A, P, work, np.array([2.0, 0.0]), tol=1e-12)
    text = get_lin_sys_summary(work)
    assert "sparse-indirect" in text
    assert "avg cg its: 1.00" in text
    assert work.n_solves == 2


def test_config_validation():
    with pytest.raises(ValueError):
        LinSysConfig.from_any({"metod": "direct"})
    with pytest.raises(TypeError):
        LinSysConfig.from_any(42)
    A = sp.csc_matrix(np.array([[1.0]]))
    with pytest.raises(ValueError):
        init_lin_sys_work(A, None, np.ones(1), 1.0, {"method": "cholesky"})
    assert LinSysConfig().cg_iteration_cap(3) == 100
    assert LinSysConfig(cg_max_iters=7).cg_iteration_cap(3) == 7
