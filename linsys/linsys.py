# linsys.py
# Lifecycle of a KKT workspace: init -> {solve, update}* -> free.
#
# This is the only layer the outer splitting solver talks to. Contract
# violations (shapes, non-positive regularization, use after free) raise;
# numerical failures never do, they come back as a LinSysStatus code or as
# a None workspace from init.
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Union

import numpy as np

from .aux.kernels import as_f64
from .blocks.aux import (
    FactorizationError,
    LinSysConfig,
    LinSysStatus,
    LinSysWork,
    RegularizationState,
    check_rho_x,
    check_rho_y,
)
from .kkt import DEFAULT_BACKEND_REGISTRY, BackendRegistry
from .matrix import MatrixLike, SparseMatrix, as_sparse_matrix, validate_lin_sys

ConfigLike = Union[LinSysConfig, Dict[str, Any], None]


def _matrices(A: MatrixLike, P: Optional[MatrixLike], n: Optional[int] = None):
    A = as_sparse_matrix(A)
    P = as_sparse_matrix(P, shape=(A.n, A.n))
    if n is not None and A.n != n:
        raise ValueError(f"A has {A.n} columns, expected {n}")
    return A, P


def _workspace_matrices(work: LinSysWork, A, P):
    """Views for this call; skips the copy when the init matrices come back."""
    if (A is work.a_src or A is work.a_view) and (P is work.p_src or P is work.p_view):
        return work.a_view, work.p_view
    A, P = _matrices(A, P, work.n)
    work.check_matrices(A, P)
    return A, P


def _check_rhs(b, size: int) -> np.ndarray:
    if not isinstance(b, np.ndarray) or b.dtype != np.float64 or b.ndim != 1:
        raise ValueError("b must be a 1-D float64 numpy array (it is overwritten in place)")
    if b.size != size:
        raise ValueError(f"b has size {b.size}, expected n + m = {size}")
    if not b.flags.writeable:
        raise ValueError("b must be writeable")
    return b


# ---------------------- init ----------------------
def init_lin_sys_work(
    A: MatrixLike,
    P: Optional[MatrixLike],
    rho_y_vec,
    rho_x: float,
    config: ConfigLike = None,
    registry: BackendRegistry = DEFAULT_BACKEND_REGISTRY,
) -> Optional[LinSysWork]:
    """
    Build the workspace for ``K = [[ρ_x I + P, Aᵀ], [A, -diag(ρ_y)]]``.

    Returns None when the backend cannot build its state (factorization
    breakdown, non quasi-definite K, out of memory). Raises ValueError on
    inconsistent shapes or non-positive regularization.
    """
    cfg = LinSysConfig.from_any(config)
    backend = registry.get(cfg.method)
    a_src, p_src = A, P
    A, P = _matrices(A, P)
    validate_lin_sys(A, P)
    reg = RegularizationState(check_rho_x(rho_x), check_rho_y(rho_y_vec, A.m))

    t0 = time.perf_counter()
    try:
        work = backend.init_work(A, P, reg, cfg)
    except FactorizationError as e:
        logging.warning(f"[linsys] {backend.method_name(cfg)} init failed: {e}")
        return None
    except MemoryError:
        logging.warning(f"[linsys] {backend.method_name(cfg)} init ran out of memory")
        return None
    work.backend = backend
    work.a_src, work.p_src = a_src, p_src
    work.a_view, work.p_view = A, P
    work.setup_time = time.perf_counter() - t0
    logging.debug(
        f"[linsys] init {work.method}: n={work.n}, m={work.m}, "
        f"nnz(A)={A.nnz}, nnz(P)={P.nnz}, setup {work.setup_time:.3e}s"
    )
    return work


# ---------------------- solve ----------------------
def solve_lin_sys(
    A: MatrixLike,
    P: Optional[MatrixLike],
    work: LinSysWork,
    b: np.ndarray,
    s: Optional[np.ndarray] = None,
    tol: Optional[float] = None,
) -> int:
    """
    Solve K x = b; ``b`` is overwritten with x. ``s`` is an optional warm
    start (iterative backend only), ``tol`` the relative residual target.
    Returns 0 on success, a negative LinSysStatus otherwise.
    """
    work.check_alive()
    A, P = _workspace_matrices(work, A, P)
    _check_rhs(b, work.n + work.m)
    if s is not None:
        s = as_f64(s, work.n + work.m, "warm start")
    tol = work.config.default_tol if tol is None else float(tol)
    if not tol > 0.0:
        raise ValueError(f"tol must be positive, got {tol}")

    if not work.valid:
        work.last_status = int(LinSysStatus.INVALID_WORKSPACE)
        return work.last_status

    t0 = time.perf_counter()
    status = work.backend.solve(A, P, work, b, s, tol)
    work.solve_time += time.perf_counter() - t0
    work.n_solves += 1
    work.last_status = int(status)
    return work.last_status


# ---------------------- update ----------------------
def update_lin_sys_rho_y_vec(
    A: MatrixLike,
    P: Optional[MatrixLike],
    work: LinSysWork,
    rho_y_vec,
) -> int:
    """
    Swap in a new dual diagonal. Returns 0 on success; on failure the
    previous state stays in force and a negative LinSysStatus is returned.
    """
    work.check_alive()
    A, P = _workspace_matrices(work, A, P)
    rho_y = check_rho_y(rho_y_vec, work.m)
    if not work.valid:
        return int(LinSysStatus.INVALID_WORKSPACE)

    try:
        status = work.backend.update(A, P, work, rho_y)
    except MemoryError:
        logging.warning(f"[linsys] {work.method} update ran out of memory; workspace invalidated")
        work.valid = False
        return int(LinSysStatus.INVALID_WORKSPACE)
    if status == LinSysStatus.SUCCESS:
        work.n_updates += 1
    return int(status)


# ---------------------- free ----------------------
def free_lin_sys_work(work: Optional[LinSysWork]) -> None:
    if work is None:
        return
    work.check_alive()
    work.log_stats()
    work.backend.free(work)
    work.a_src = work.p_src = work.a_view = work.p_view = None
    work.valid = False
    work.released = True


# ---------------------- names / diagnostics ----------------------
def get_lin_sys_method(
    config: Union[ConfigLike, str, LinSysWork] = None,
    registry: BackendRegistry = DEFAULT_BACKEND_REGISTRY,
) -> Optional[str]:
    """Short identifier of the backend variant, None if there is none."""
    if isinstance(config, LinSysWork):
        return config.method
    if isinstance(config, str):
        if config.lower() not in registry:
            return None
        config = {"method": config}
    try:
        cfg = LinSysConfig.from_any(config)
        return registry.get(cfg.method).method_name(cfg)
    except (ValueError, TypeError):
        return None


def get_lin_sys_summary(work: LinSysWork) -> str:
    solves = max(work.n_solves, 1)
    parts = [
        f"lin-sys: {work.method}",
        f"solves: {work.n_solves}",
        f"avg solve time: {work.solve_time / solves:.2e}s",
    ]
    if work.tot_cg_its or work.method == "sparse-indirect":
        parts.append(f"avg cg its: {work.tot_cg_its / solves:.2f}")
    if work.n_factorizations:
        parts.append(f"factorizations: {work.n_factorizations}")
    return ", ".join(parts)


# ---------------------- owning handle ----------------------
class LinearSystemSolver:
    """
    Owns one workspace for one (A, P) pair.

        with LinearSystemSolver(A, P, rho_x, rho_y, {"method": "indirect"}) as ls:
            ls.solve(b, tol=1e-8)
            ls.update_rho_y(new_rho_y)
    """

    def __init__(
        self,
        A: MatrixLike,
        P: Optional[MatrixLike],
        rho_x: float,
        rho_y_vec,
        config: ConfigLike = None,
        registry: BackendRegistry = DEFAULT_BACKEND_REGISTRY,
    ):
        self.A, self.P = _matrices(A, P)
        work = init_lin_sys_work(self.A, self.P, rho_y_vec, rho_x, config, registry)
        if work is None:
            raise FactorizationError(
                f"could not initialize '{get_lin_sys_method(config, registry)}' workspace"
            )
        self.work: Optional[LinSysWork] = work

    @property
    def method(self) -> Optional[str]:
        return None if self.work is None else self.work.method

    @property
    def n(self) -> int:
        return self.A.n

    @property
    def m(self) -> int:
        return self.A.m

    def _live_work(self) -> LinSysWork:
        if self.work is None:
            raise RuntimeError("[linsys] solver already released")
        return self.work

    def solve(self, b: np.ndarray, s: Optional[np.ndarray] = None, tol: Optional[float] = None) -> int:
        return solve_lin_sys(self.A, self.P, self._live_work(), b, s, tol)

    def update_rho_y(self, rho_y_vec) -> int:
        return update_lin_sys_rho_y_vec(self.A, self.P, self._live_work(), rho_y_vec)

    def summary(self) -> str:
        return get_lin_sys_summary(self._live_work())

    def release(self) -> None:
        free_lin_sys_work(self._live_work())
        self.work = None

    def __enter__(self) -> "LinearSystemSolver":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.work is not None:
            self.release()
