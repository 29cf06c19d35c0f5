"""Shared problem generators for the linsys tests.
Run with:  pytest -q
"""
from __future__ import annotations

import numpy as np
import pytest
import scipy.sparse as sp


def make_problem(n=30, m=20, density=0.2, seed=0, p_upper=True, rho_x=0.1):
    """Random (A, P, rho_x, rho_y) with P symmetric PSD."""
    rng = np.random.default_rng(seed)
    A = sp.random(m, n, density=density, format="csc", random_state=seed)
    A = (A + sp.eye(m, n, format="csc")).tocsc()
    M = sp.random(n, n, density=density, format="csc", random_state=seed + 1)
    P = (M @ M.T).tocsc()
    P = sp.triu(P, format="csc") if p_upper else P
    rho_y = rng.uniform(0.5, 2.0, size=m)
    return A, P, rho_x, rho_y


def dense_kkt(A, P, rho_x, rho_y):
    A = A.toarray() if sp.issparse(A) else np.asarray(A, dtype=float)
    P = P.toarray() if sp.issparse(P) else np.asarray(P, dtype=float)
    if np.allclose(np.tril(P, -1), 0.0):
        P = P + np.triu(P, 1).T
    n = A.shape[1]
    return np.block([[rho_x * np.eye(n) + P, A.T], [A, -np.diag(rho_y)]])


def rel_residual(K, x, b):
    return np.linalg.norm(K @ x - b) / max(1.0, np.linalg.norm(b))


@pytest.fixture
def problem():
    return make_problem()


@pytest.fixture(params=["direct", "indirect"])
def method(request):
    return request.param


@pytest.fixture
def scalar_problem():
    # K = [[1, 1], [1, -1]]
    A = sp.csc_matrix(np.array([[1.0]]))
    P = sp.csc_matrix((1, 1))
    return A, P, 1.0, np.array([1.0])
