# csc_kernels.py
# Numba CSC kernels shared by the sparse matrix view and both KKT backends.
from __future__ import annotations

import numpy as np
from numba import njit, prange


# ---------- CSC SpMV (Numba) ----------
@njit(cache=True, fastmath=True)
def csc_matvec_into(indptr, indices, data, x, out):
    # out = M x
    out[:] = 0.0
    ncol = indptr.size - 1
    for j in range(ncol):
        xj = x[j]
        if xj == 0.0:
            continue
        for k in range(indptr[j], indptr[j + 1]):
            out[indices[k]] += data[k] * xj


@njit(cache=True, fastmath=True)
def csc_rmatvec_add(indptr, indices, data, y, out):
    # out += Mᵀ y
    ncol = indptr.size - 1
    for j in range(ncol):
        s = 0.0
        for k in range(indptr[j], indptr[j + 1]):
            s += data[k] * y[indices[k]]
        out[j] += s


@njit(cache=True, parallel=True, fastmath=True)
def csc_rmatvec_into(indptr, indices, data, y, out):
    # out = Mᵀ y, one column per worker
    ncol = indptr.size - 1
    for j in prange(ncol):
        s = 0.0
        for k in range(indptr[j], indptr[j + 1]):
            s += data[k] * y[indices[k]]
        out[j] = s


@njit(cache=True, fastmath=True)
def csc_sym_upper_matvec_into(indptr, indices, data, x, out):
    """out = M x where M is symmetric and only its upper triangle is stored."""
    out[:] = 0.0
    ncol = indptr.size - 1
    for j in range(ncol):
        xj = x[j]
        s = 0.0
        for k in range(indptr[j], indptr[j + 1]):
            i = indices[k]
            v = data[k]
            out[i] += v * xj
            if i != j:
                s += v * x[i]
        out[j] += s


@njit(cache=True, parallel=True, fastmath=True)
def csc_col_sq_norms_into(indptr, indices, data, w, out):
    # out[j] = sum_i w[i] * M[i, j]^2
    ncol = indptr.size - 1
    for j in prange(ncol):
        s = 0.0
        for k in range(indptr[j], indptr[j + 1]):
            v = data[k]
            s += w[indices[k]] * v * v
        out[j] = s


@njit(cache=True)
def csc_diagonal_into(indptr, indices, data, out):
    # duplicates are summed
    out[:] = 0.0
    ncol = indptr.size - 1
    for j in range(ncol):
        for k in range(indptr[j], indptr[j + 1]):
            if indices[k] == j:
                out[j] += data[k]


@njit(cache=True)
def csc_has_lower_entries(indptr, indices):
    ncol = indptr.size - 1
    for j in range(ncol):
        for k in range(indptr[j], indptr[j + 1]):
            if indices[k] > j:
                return True
    return False


@njit(cache=True)
def csc_structure_ok(nrow, indptr, indices):
    """Column pointers monotone and row indices inside [0, nrow)."""
    ncol = indptr.size - 1
    if indptr[0] != 0:
        return False
    for j in range(ncol):
        if indptr[j + 1] < indptr[j]:
            return False
    if indptr[ncol] != indices.size:
        return False
    for k in range(indices.size):
        if indices[k] < 0 or indices[k] >= nrow:
            return False
    return True


def as_f64(x, size=None, name="vector") -> np.ndarray:
    v = np.ascontiguousarray(np.asarray(x, dtype=np.float64).reshape(-1))
    if size is not None and v.size != size:
        raise ValueError(f"{name} has size {v.size}, expected {size}")
    return v
