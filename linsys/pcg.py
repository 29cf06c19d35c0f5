# reduced_pcg_numba.py
# PCG on the dual-eliminated KKT operator  (ρ_x I + P + Aᵀ R_y⁻¹ A),
# applied matrix-free from the CSC arrays of A and P.
from typing import Tuple

import numpy as np
from numba import njit

from .aux.kernels import csc_matvec_into, csc_rmatvec_add, csc_sym_upper_matvec_into

# flags returned by pcg_reduced
PCG_CONVERGED = 0
PCG_MAX_ITERS = 1
PCG_BREAKDOWN = 2


# ---------- operator ----------
@njit(cache=True, fastmath=True)
def reduced_matvec_into(
    A_indptr, A_indices, A_data,
    P_indptr, P_indices, P_data, p_upper,
    rho_x, rho_y_inv, x, tmp_m, out,
):
    # out = ρ_x x + P x + Aᵀ (R_y⁻¹ (A x))
    n = out.size
    if p_upper:
        csc_sym_upper_matvec_into(P_indptr, P_indices, P_data, x, out)
    else:
        csc_matvec_into(P_indptr, P_indices, P_data, x, out)
    for i in range(n):
        out[i] += rho_x * x[i]
    csc_matvec_into(A_indptr, A_indices, A_data, x, tmp_m)
    for i in range(tmp_m.size):
        tmp_m[i] *= rho_y_inv[i]
    csc_rmatvec_add(A_indptr, A_indices, A_data, tmp_m, out)


@njit(cache=True)
def _dot(x, y):
    s = 0.0
    for i in range(x.size):
        s += x[i] * y[i]
    return s


# ---------- PCG ----------
@njit(cache=True)
def pcg_reduced(
    A_indptr, A_indices, A_data,
    P_indptr, P_indices, P_data, p_upper,
    rho_x, rho_y_inv, m_inv,
    rhs, x, stop, maxit,
) -> Tuple[int, float, int]:
    """
    Solve the reduced system in place in ``x`` (initial guess on entry).
    Preconditioner: M^{-1} = diag(m_inv).

    Returns (iterations, residual norm, flag). Unless the flag is
    PCG_CONVERGED, ``x`` holds the iterate with the smallest residual seen.
    """
    n = rhs.size
    m = rho_y_inv.size
    r = np.empty(n, dtype=np.float64)
    z = np.empty(n, dtype=np.float64)
    p = np.empty(n, dtype=np.float64)
    Kp = np.empty(n, dtype=np.float64)
    tmp = np.empty(m, dtype=np.float64)

    # r = b - K x
    reduced_matvec_into(
        A_indptr, A_indices, A_data, P_indptr, P_indices, P_data, p_upper,
        rho_x, rho_y_inv, x, tmp, Kp,
    )
    for i in range(n):
        r[i] = rhs[i] - Kp[i]
    nr = np.sqrt(_dot(r, r))
    if nr <= stop:
        return 0, nr, PCG_CONVERGED

    x_best = x.copy()
    best = nr

    # z = M^{-1} r
    for i in range(n):
        z[i] = m_inv[i] * r[i]
        p[i] = z[i]
    rz_old = _dot(r, z)

    for it in range(1, maxit + 1):
        reduced_matvec_into(
            A_indptr, A_indices, A_data, P_indptr, P_indices, P_data, p_upper,
            rho_x, rho_y_inv, p, tmp, Kp,
        )
        pKp = _dot(p, Kp)
        if not (pKp > 0.0) or not np.isfinite(pKp):
            # not SPD / numerical trouble
            for i in range(n):
                x[i] = x_best[i]
            return it - 1, best, PCG_BREAKDOWN
        alpha = rz_old / pKp

        for i in range(n):
            x[i] += alpha * p[i]
            r[i] -= alpha * Kp[i]
        nr = np.sqrt(_dot(r, r))
        if nr <= stop:
            return it, nr, PCG_CONVERGED
        if nr < best:
            best = nr
            for i in range(n):
                x_best[i] = x[i]

        for i in range(n):
            z[i] = m_inv[i] * r[i]
        rz_new = _dot(r, z)
        beta = rz_new / rz_old
        rz_old = rz_new
        for i in range(n):
            p[i] = z[i] + beta * p[i]

    for i in range(n):
        x[i] = x_best[i]
    return maxit, best, PCG_MAX_ITERS


def jacobi_diagonal(p_diag: np.ndarray, a_col_sq: np.ndarray, rho_x: float) -> np.ndarray:
    """M^{-1} for the reduced operator: 1 / (ρ_x + diag(P) + Σ_i A_ij² / ρ_y_i)."""
    d = rho_x + p_diag + a_col_sq
    return np.divide(1.0, d, out=np.ones_like(d), where=d > 0.0)
