# aux.py
# Configuration, status codes, regularization state and the workspace base.

from __future__ import annotations

# =========================
# Standard library
# =========================
import logging
from dataclasses import dataclass, field, fields
from enum import IntEnum
from typing import Any, Dict, Optional, Union

# =========================
# Third-party
# =========================
import numpy as np


# ======================================
# Enums / errors
# ======================================
class LinSysStatus(IntEnum):
    """Solve/update outcome. More negative means more severe."""

    SUCCESS = 0
    MAX_ITERS = -1
    BREAKDOWN = -2
    FACTORIZATION_FAILED = -3
    INVALID_WORKSPACE = -4


class FactorizationError(RuntimeError):
    """Zero, non-finite or wrongly signed pivot in the quasi-definite LDLᵀ."""


# ======================================
# Global configuration
# ======================================
@dataclass
class LinSysConfig:
    """
    Configuration for the KKT linear-system backends.

    Notes
    -----
    • ``method`` picks the backend from the registry ("direct" | "indirect").
    • Fields that do not apply to the chosen backend are ignored.
    """

    # ---------------- Core toggles ----------------
    method: str = "direct"  # {"direct","indirect"}
    verbose: bool = False

    # ---------------- Direct (LDLᵀ) ----------------
    ordering: str = "amd"  # {"amd" (qdldl),"rcm","natural"}
    refine_iters: int = 0
    check_inertia: bool = True  # rcm/natural only; qdldl does not report pivot signs

    # ---------------- Indirect (PCG) ----------------
    cg_max_iters: Optional[int] = None  # None -> max(10 n, 100)
    cg_best_tol: float = 1e-12
    warm_start_previous: bool = False
    default_tol: float = 1e-9

    @classmethod
    def from_any(cls, cfg: Union["LinSysConfig", Dict[str, Any], None]) -> "LinSysConfig":
        if cfg is None:
            return cls()
        if isinstance(cfg, cls):
            return cfg
        if isinstance(cfg, dict):
            known = {f.name for f in fields(cls)}
            unknown = set(cfg) - known
            if unknown:
                raise ValueError(f"Unknown linsys config fields: {sorted(unknown)}")
            return cls(**cfg)
        raise TypeError(f"Cannot build LinSysConfig from {type(cfg).__name__}")

    def cg_iteration_cap(self, n: int) -> int:
        if self.cg_max_iters is not None:
            return max(int(self.cg_max_iters), 0)
        return max(10 * n, 100)


# ======================================
# Regularization
# ======================================
def check_rho_y(rho_y_vec, m: int) -> np.ndarray:
    rho_y = np.ascontiguousarray(np.asarray(rho_y_vec, dtype=np.float64).reshape(-1))
    if rho_y.size != m:
        raise ValueError(f"rho_y_vec has length {rho_y.size}, expected m = {m}")
    if not np.all(np.isfinite(rho_y)) or (m > 0 and float(rho_y.min()) <= 0.0):
        raise ValueError("rho_y_vec entries must be finite and strictly positive")
    return rho_y


def check_rho_x(rho_x) -> float:
    rho_x = float(rho_x)
    if not np.isfinite(rho_x) or rho_x <= 0.0:
        raise ValueError(f"rho_x must be finite and strictly positive, got {rho_x}")
    return rho_x


@dataclass
class RegularizationState:
    """Primal scalar ρ_x (fixed) and dual diagonal ρ_y (replaced by updates)."""

    rho_x: float
    rho_y: np.ndarray

    def __post_init__(self):
        self.rho_x = check_rho_x(self.rho_x)
        self.rho_y = check_rho_y(self.rho_y, np.asarray(self.rho_y).size)


# ======================================
# Workspace
# ======================================
@dataclass
class LinSysWork:
    """
    State owned by the caller between init and free.

    Backends subclass this and add their derived numerical state. Counters
    are diagnostics only; nothing reads them back on the solve path.
    """

    method: str
    n: int
    m: int
    reg: RegularizationState
    a_nnz: int = 0
    p_nnz: int = 0
    config: LinSysConfig = field(default_factory=LinSysConfig)
    backend: Any = field(default=None, repr=False)
    # matrices passed at init and their views; solve/update reuse the views
    # when handed the same objects back
    a_src: Any = field(default=None, repr=False)
    p_src: Any = field(default=None, repr=False)
    a_view: Any = field(default=None, repr=False)
    p_view: Any = field(default=None, repr=False)

    valid: bool = True
    released: bool = False

    # diagnostics
    n_solves: int = 0
    n_updates: int = 0
    n_factorizations: int = 0
    last_status: int = 0
    tot_cg_its: int = 0
    last_cg_its: int = 0
    last_residual: float = 0.0
    setup_time: float = 0.0
    solve_time: float = 0.0

    def check_matrices(self, A, P) -> None:
        if A.shape != (self.m, self.n) or A.nnz != self.a_nnz:
            raise ValueError(
                f"A (shape {A.shape}, nnz {A.nnz}) differs from the matrix this "
                f"workspace was built with (shape {(self.m, self.n)}, nnz {self.a_nnz})"
            )
        p_nnz = 0 if P is None else P.nnz
        if P is not None and P.shape != (self.n, self.n):
            raise ValueError(f"P has shape {P.shape}, expected ({self.n}, {self.n})")
        if p_nnz != self.p_nnz:
            raise ValueError(
                f"P nnz {p_nnz} differs from the {self.p_nnz} this workspace was built with"
            )

    def check_alive(self) -> None:
        if self.released:
            raise RuntimeError(f"[linsys] workspace '{self.method}' used after free")

    def log_stats(self) -> None:
        logging.debug(
            f"[linsys] {self.method}: solves={self.n_solves} updates={self.n_updates} "
            f"factorizations={self.n_factorizations} cg_its={self.tot_cg_its}"
        )
