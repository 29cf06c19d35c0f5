"""
linsys: linear-system backends for operator-splitting conic solvers.

Solves, once per outer iteration,

    [ρ_x I + P    Aᵀ     ] x = b
    [A          -diag(ρ_y)]

with either a quasi-definite sparse LDLᵀ ("direct") or a Jacobi
preconditioned CG on the dual-eliminated system ("indirect").
"""

from .blocks.aux import (
    FactorizationError,
    LinSysConfig,
    LinSysStatus,
    LinSysWork,
    RegularizationState,
)
from .kkt import (
    DEFAULT_BACKEND_REGISTRY,
    BackendRegistry,
    DirectBackend,
    IndirectBackend,
    KKTBackend,
)
from .linsys import (
    LinearSystemSolver,
    free_lin_sys_work,
    get_lin_sys_method,
    get_lin_sys_summary,
    init_lin_sys_work,
    solve_lin_sys,
    update_lin_sys_rho_y_vec,
)
from .matrix import SparseMatrix, as_sparse_matrix, validate_lin_sys

__all__ = [
    "BackendRegistry",
    "DEFAULT_BACKEND_REGISTRY",
    "DirectBackend",
    "FactorizationError",
    "IndirectBackend",
    "KKTBackend",
    "LinSysConfig",
    "LinSysStatus",
    "LinSysWork",
    "LinearSystemSolver",
    "RegularizationState",
    "SparseMatrix",
    "as_sparse_matrix",
    "free_lin_sys_work",
    "get_lin_sys_method",
    "get_lin_sys_summary",
    "init_lin_sys_work",
    "solve_lin_sys",
    "update_lin_sys_rho_y_vec",
    "validate_lin_sys",
]
