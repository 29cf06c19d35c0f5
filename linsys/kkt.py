# --- kkt.py ---
"""
KKT backends for the regularized saddle-point system

    [ρ_x I + P    Aᵀ     ] [x]   [b_x]
    [A          -diag(ρ_y)] [y] = [b_y]

Two strategies share one interface:
  • DirectBackend   : quasi-definite LDLᵀ of the assembled upper triangle
                      (qdldl, or numba kernels for RCM/natural orderings),
                      symbolic analysis once, numeric refactor on ρ_y updates
  • IndirectBackend : y eliminated, PCG on ρ_x I + P + Aᵀ diag(ρ_y)⁻¹ A,
                      Jacobi preconditioner, warm starts

Backends are stateless; every derived array lives in the workspace they
return, so one backend object serves any number of workspaces.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Union

import numpy as np
import scipy.sparse as sp

from .aux.ordering import EXPLICIT_ORDERINGS, fill_reducing_ordering
from .aux.kernels import as_f64, csc_sym_upper_matvec_into
from .blocks.aux import (
    FactorizationError,
    LinSysConfig,
    LinSysStatus,
    LinSysWork,
    RegularizationState,
)
from .blocks.ldl import LDLFactor, LDLSymbolic, QdldlFactor
from .matrix import SparseMatrix
from .pcg import (
    PCG_BREAKDOWN,
    PCG_CONVERGED,
    jacobi_diagonal,
    pcg_reduced,
)


def _upper_kkt(A: SparseMatrix, P: SparseMatrix, reg: RegularizationState):
    """
    Upper triangle of K in CSC with every diagonal entry stored.
    Returns (K_up, diag_r_idxs) where diag_r_idxs[i] is the data position
    of the (n+i, n+i) entry.
    """
    n, m = A.n, A.m
    top = P.upper_triangle() + reg.rho_x * sp.eye(n, format="csc")
    if m:
        K = sp.bmat(
            [[top, A.to_scipy().T], [None, sp.diags(-reg.rho_y, format="csc")]],
            format="csc",
        )
    else:
        K = top
    K = sp.csc_matrix(K, dtype=np.float64)
    K.sum_duplicates()
    K.sort_indices()
    # the dual diagonal is the last stored entry of each dual column
    diag_r_idxs = (K.indptr[n + 1 : n + m + 1] - 1).astype(np.int64)
    if m and not np.array_equal(K.indices[diag_r_idxs], np.arange(n, n + m)):
        raise ValueError("KKT assembly lost a dual diagonal entry")
    return K, diag_r_idxs


# ---------------------- Workspaces ----------------------
@dataclass
class DirectWork(LinSysWork):
    kkt: Optional[sp.csc_matrix] = None
    diag_r_idxs: Optional[np.ndarray] = None
    symbolic: Optional[LDLSymbolic] = None
    factor: Optional[Union[LDLFactor, QdldlFactor]] = None


@dataclass
class IndirectWork(LinSysWork):
    A: Optional[SparseMatrix] = None
    P: Optional[SparseMatrix] = None
    p_upper: bool = True
    p_diag: Optional[np.ndarray] = None
    rho_y_inv: Optional[np.ndarray] = None
    m_inv: Optional[np.ndarray] = None
    x_prev: Optional[np.ndarray] = None
    max_iters: int = 0


# ---------------------- Abstract backend ----------------------
class KKTBackend:
    name: str

    def method_name(self, cfg: LinSysConfig) -> str:
        return self.name

    def init_work(
        self, A: SparseMatrix, P: SparseMatrix, reg: RegularizationState, cfg: LinSysConfig
    ) -> LinSysWork:
        """Build the workspace. Raises FactorizationError on numerical failure."""
        raise NotImplementedError

    def solve(
        self,
        A: SparseMatrix,
        P: SparseMatrix,
        work: LinSysWork,
        b: np.ndarray,
        s: Optional[np.ndarray],
        tol: float,
    ) -> int:
        raise NotImplementedError

    def update(self, A: SparseMatrix, P: SparseMatrix, work: LinSysWork, rho_y: np.ndarray) -> int:
        raise NotImplementedError

    def free(self, work: LinSysWork) -> None:
        raise NotImplementedError


# ---------------------- Direct: quasi-definite LDLᵀ ----------------------
class DirectBackend(KKTBackend):
    name = "direct"

    def method_name(self, cfg: LinSysConfig) -> str:
        return f"sparse-direct-{cfg.ordering.lower()}-ldl"

    @staticmethod
    def _expected_pos(work: DirectWork) -> Optional[int]:
        # pivot signs are only known to the numba engine
        return work.n if work.config.check_inertia else None

    def init_work(self, A, P, reg, cfg):
        ordering = cfg.ordering.lower()
        if ordering != "amd" and ordering not in EXPLICIT_ORDERINGS:
            raise ValueError(
                f"Unknown ordering '{cfg.ordering}' (expected 'amd', 'rcm' or 'natural')"
            )
        K, diag_r_idxs = _upper_kkt(A, P, reg)
        work = DirectWork(
            method=self.method_name(cfg),
            n=A.n,
            m=A.m,
            reg=reg,
            a_nnz=A.nnz,
            p_nnz=P.nnz,
            config=cfg,
            kkt=K,
            diag_r_idxs=diag_r_idxs,
        )
        if ordering == "amd":
            # qdldl orders and analyzes internally
            work.factor = QdldlFactor(K)
            nnz_L = "n/a"
        else:
            work.symbolic = LDLSymbolic.analyze(K, fill_reducing_ordering(K, ordering))
            work.factor = LDLFactor(work.symbolic, K.data, self._expected_pos(work))
            nnz_L = work.symbolic.nnz_L
        work.n_factorizations = 1
        if cfg.verbose:
            logging.info(f"[LDL] {work.method}: N={K.shape[0]}, nnz(K)={K.nnz}, nnz(L)={nnz_L}")
        return work

    def _kkt_matvec(self, work: DirectWork, x: np.ndarray) -> np.ndarray:
        K = work.kkt
        out = np.empty(K.shape[0], dtype=np.float64)
        csc_sym_upper_matvec_into(
            K.indptr.astype(np.int64), K.indices.astype(np.int64), K.data, x, out
        )
        return out

    def solve(self, A, P, work: DirectWork, b, s, tol):
        rhs = b.copy()
        x = work.factor.solve(rhs)
        for _ in range(max(int(work.config.refine_iters), 0)):
            r = rhs - self._kkt_matvec(work, x)
            x += work.factor.solve(r)
        if not np.all(np.isfinite(x)):
            logging.warning(f"[LDL] non-finite solution in {work.method}")
            return int(LinSysStatus.FACTORIZATION_FAILED)
        b[:] = x
        return int(LinSysStatus.SUCCESS)

    def update(self, A, P, work: DirectWork, rho_y):
        data = work.kkt.data.copy()
        data[work.diag_r_idxs] = -rho_y
        try:
            factor = work.factor.refactor(data, self._expected_pos(work))
        except FactorizationError as e:
            logging.warning(f"[LDL] refactorization failed, keeping previous factor: {e}")
            return int(LinSysStatus.FACTORIZATION_FAILED)
        work.kkt.data = data
        work.factor = factor
        work.reg = RegularizationState(work.reg.rho_x, rho_y)
        work.n_factorizations += 1
        return int(LinSysStatus.SUCCESS)

    def free(self, work: DirectWork):
        work.kkt = None
        work.diag_r_idxs = None
        work.symbolic = None
        work.factor = None


# ---------------------- Indirect: Schur-eliminated PCG ----------------------
class IndirectBackend(KKTBackend):
    name = "indirect"

    def method_name(self, cfg: LinSysConfig) -> str:
        return "sparse-indirect"

    @staticmethod
    def _set_preconditioner(work: IndirectWork) -> None:
        a_col_sq = work.A.col_sq_norms(work.rho_y_inv)
        work.m_inv = jacobi_diagonal(work.p_diag, a_col_sq, work.reg.rho_x)

    def init_work(self, A, P, reg, cfg):
        work = IndirectWork(
            method=self.method_name(cfg),
            n=A.n,
            m=A.m,
            reg=reg,
            a_nnz=A.nnz,
            p_nnz=P.nnz,
            config=cfg,
            A=A,
            P=P,
            p_upper=P.is_upper_triangular(),
            p_diag=P.diagonal(),
            rho_y_inv=1.0 / reg.rho_y,
            max_iters=cfg.cg_iteration_cap(A.n),
        )
        self._set_preconditioner(work)
        return work

    def solve(self, A, P, work: IndirectWork, b, s, tol):
        n = work.n
        cfg = work.config
        A, P = work.A, work.P

        b_norm = float(np.linalg.norm(b))
        if b_norm <= 1e-18:
            b[:] = 0.0
            work.last_cg_its = 0
            work.last_residual = 0.0
            return int(LinSysStatus.SUCCESS)

        bx, by = b[:n], b[n:]
        # b_x + Aᵀ R_y⁻¹ b_y
        rhs = bx + A.rmatvec(work.rho_y_inv * by)

        if s is not None:
            x = as_f64(s, n + work.m, "warm start")[:n].copy()
        elif cfg.warm_start_previous and work.x_prev is not None:
            x = work.x_prev.copy()
        else:
            x = np.zeros(n, dtype=np.float64)

        stop = max(float(tol), cfg.cg_best_tol) * max(1.0, b_norm)
        its, res, flag = pcg_reduced(
            A.indptr, A.indices, A.data,
            P.indptr, P.indices, P.data, work.p_upper,
            work.reg.rho_x, work.rho_y_inv, work.m_inv,
            rhs, x, stop, work.max_iters,
        )
        work.last_cg_its = int(its)
        work.tot_cg_its += int(its)
        work.last_residual = float(res)

        # y = R_y⁻¹ (A x - b_y)
        y = work.rho_y_inv * (A.matvec(x) - by)
        b[:n] = x
        b[n:] = y
        work.x_prev = x

        if flag == PCG_CONVERGED:
            requested = float(tol) * max(1.0, b_norm)
            if res > requested:
                # stopped at the cg_best_tol floor, short of the requested tolerance
                logging.warning(
                    f"[PCG] stopped at |r|={res:.3e} after {its} its, "
                    f"above the requested {requested:.3e}"
                )
                return int(LinSysStatus.MAX_ITERS)
            logging.debug(f"[PCG] converged in {its} its, |r|={res:.3e} (stop {stop:.3e})")
            return int(LinSysStatus.SUCCESS)
        if flag == PCG_BREAKDOWN:
            logging.warning(f"[PCG] breakdown after {its} its, |r|={res:.3e}")
            return int(LinSysStatus.BREAKDOWN)
        logging.warning(
            f"[PCG] no convergence in {its} its: |r|={res:.3e} > {stop:.3e}"
        )
        return int(LinSysStatus.MAX_ITERS)

    def update(self, A, P, work: IndirectWork, rho_y):
        work.reg = RegularizationState(work.reg.rho_x, rho_y)
        work.rho_y_inv = 1.0 / work.reg.rho_y
        self._set_preconditioner(work)
        return int(LinSysStatus.SUCCESS)

    def free(self, work: IndirectWork):
        work.A = None
        work.P = None
        work.p_diag = None
        work.rho_y_inv = None
        work.m_inv = None
        work.x_prev = None


# ---------------------- Registry ----------------------
class BackendRegistry:
    def __init__(self):
        self._map: Dict[str, KKTBackend] = {}

    def register(self, backend: KKTBackend, *aliases: str):
        self._map[backend.name] = backend
        for alias in aliases:
            self._map[alias] = backend

    def get(self, name: str) -> KKTBackend:
        key = str(name).lower()
        if key not in self._map:
            raise ValueError(f"Unknown linear system method '{name}'")
        return self._map[key]

    def __contains__(self, name) -> bool:
        return str(name).lower() in self._map


DEFAULT_BACKEND_REGISTRY = BackendRegistry()
DEFAULT_BACKEND_REGISTRY.register(DirectBackend(), "ldl", "sparse-direct")
DEFAULT_BACKEND_REGISTRY.register(IndirectBackend(), "pcg", "cg", "sparse-indirect")
