"""
ldl.py

Up-looking LDLᵀ for symmetric quasi-definite matrices, no pivoting.

The input is the upper triangle (incl. diagonal) of K in CSC form. The work
is split the usual way:
- symbolic: fill-reducing permutation, permuted upper pattern, elimination
  tree and nonzero counts per column of L. Depends on the pattern only.
- numeric : values of L and D for a given set of K values. Cheap to redo
  when only diagonal entries change.

A quasi-definite K (positive definite (1,1) block, negative definite (2,2)
block) has an LDLᵀ factorization for every symmetric permutation, so no
dynamic pivoting is needed; D then carries exactly n positive and m negative
entries, which is what ``check_inertia`` verifies.

Two engines share the ``solve`` / ``refactor`` interface:
- ``QdldlFactor``: the qdldl package (SuiteSparse AMD ordering + QDLDL),
  symbolic analysis reused by ``qdldl.Solver.update``. Default.
- ``LDLFactor``: the numba kernels below, for an explicit permutation
  (RCM or natural) and with the positive-pivot count available.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import qdldl
import scipy.sparse as sp
from numba import njit

from ..aux.ordering import inverse_permutation
from .aux import FactorizationError


# ---------------------- Numba kernels ----------------------
@njit(cache=True)
def _etree(n, Ap, Ai, etree, Lnz):
    """Elimination tree + column counts of L. Returns nnz(L), or -1 on a lower entry."""
    work = np.full(n, -1, dtype=np.int64)
    for i in range(n):
        etree[i] = -1
        Lnz[i] = 0
    for j in range(n):
        work[j] = j
        for p in range(Ap[j], Ap[j + 1]):
            i = Ai[p]
            if i > j:
                return -1
            while work[i] != j:
                if etree[i] == -1:
                    etree[i] = j
                Lnz[i] += 1
                work[i] = j
                i = etree[i]
    total = 0
    for i in range(n):
        total += Lnz[i]
    return total


@njit(cache=True)
def _ldl_numeric(n, Ap, Ai, Ax, Lp, Li, Lx, D, Dinv, etree):
    """Fill Li/Lx/D/Dinv. Returns the count of positive pivots, -1 on a bad pivot."""
    y_used = np.zeros(n, dtype=np.bool_)
    y_vals = np.zeros(n, dtype=np.float64)
    y_idx = np.empty(n, dtype=np.int64)
    elim = np.empty(n, dtype=np.int64)
    next_space = Lp[:n].copy()
    n_pos = 0

    for k in range(n):
        D[k] = 0.0
        nnz_y = 0
        # scatter column k of the upper triangle and find the reach in the etree
        for p in range(Ap[k], Ap[k + 1]):
            b = Ai[p]
            if b == k:
                D[k] = Ax[p]
                continue
            y_vals[b] = Ax[p]
            if not y_used[b]:
                y_used[b] = True
                elim[0] = b
                n_e = 1
                nxt = etree[b]
                while nxt != -1 and nxt < k:
                    if y_used[nxt]:
                        break
                    y_used[nxt] = True
                    elim[n_e] = nxt
                    n_e += 1
                    nxt = etree[nxt]
                while n_e > 0:
                    n_e -= 1
                    y_idx[nnz_y] = elim[n_e]
                    nnz_y += 1

        # sparse triangular solve for row k of L, in topological order
        for t in range(nnz_y - 1, -1, -1):
            c = y_idx[t]
            end = next_space[c]
            yc = y_vals[c]
            for q in range(Lp[c], end):
                y_vals[Li[q]] -= Lx[q] * yc
            Li[end] = k
            Lx[end] = yc * Dinv[c]
            D[k] -= yc * Lx[end]
            next_space[c] = end + 1
            y_vals[c] = 0.0
            y_used[c] = False

        dk = D[k]
        if dk == 0.0 or not np.isfinite(dk):
            return -1
        if dk > 0.0:
            n_pos += 1
        Dinv[k] = 1.0 / dk
    return n_pos


@njit(cache=True)
def _ldl_solve_inplace(n, Lp, Li, Lx, Dinv, x):
    # L z = x
    for i in range(n):
        xi = x[i]
        if xi != 0.0:
            for q in range(Lp[i], Lp[i + 1]):
                x[Li[q]] -= Lx[q] * xi
    # D w = z
    for i in range(n):
        x[i] *= Dinv[i]
    # Lᵀ x = w
    for i in range(n - 1, -1, -1):
        s = x[i]
        for q in range(Lp[i], Lp[i + 1]):
            s -= Lx[q] * x[Li[q]]
        x[i] = s


# ---------------------- Permuted pattern ----------------------
def _permute_upper(K_up: sp.csc_matrix, pinv: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Pattern of the upper triangle of P K Pᵀ and, for every stored entry of
    K_up, its position in the permuted data array.
    """
    N = K_up.shape[0]
    cols = np.repeat(np.arange(N, dtype=np.int64), np.diff(K_up.indptr))
    rows = K_up.indices.astype(np.int64)
    pr, pc = pinv[rows], pinv[cols]
    r2, c2 = np.minimum(pr, pc), np.maximum(pr, pc)
    order = np.lexsort((r2, c2))
    Ai = r2[order]
    Ap = np.zeros(N + 1, dtype=np.int64)
    np.cumsum(np.bincount(c2, minlength=N), out=Ap[1:])
    kkt_map = np.empty(order.size, dtype=np.int64)
    kkt_map[order] = np.arange(order.size, dtype=np.int64)
    return Ap, Ai, kkt_map


# ---------------------- Symbolic + numeric objects ----------------------
@dataclass
class LDLSymbolic:
    """Pattern-only analysis; computed once per workspace."""

    N: int
    perm: np.ndarray
    pinv: np.ndarray
    Ap: np.ndarray
    Ai: np.ndarray
    kkt_map: np.ndarray
    etree: np.ndarray
    Lnz: np.ndarray
    Lp: np.ndarray
    nnz_L: int

    @classmethod
    def analyze(cls, K_up: sp.csc_matrix, perm: Optional[np.ndarray] = None) -> "LDLSymbolic":
        N = int(K_up.shape[0])
        if perm is None:
            perm = np.arange(N, dtype=np.int64)
        perm = np.asarray(perm, dtype=np.int64)
        if perm.size != N or not np.array_equal(np.sort(perm), np.arange(N)):
            raise ValueError("Ordering is not a permutation of the KKT indices")
        pinv = inverse_permutation(perm)
        Ap, Ai, kkt_map = _permute_upper(K_up, pinv)

        etree = np.empty(N, dtype=np.int64)
        Lnz = np.empty(N, dtype=np.int64)
        nnz_L = _etree(N, Ap, Ai, etree, Lnz)
        if nnz_L < 0:
            raise ValueError("Permuted KKT pattern is not upper triangular")
        Lp = np.zeros(N + 1, dtype=np.int64)
        np.cumsum(Lnz, out=Lp[1:])
        logging.debug(f"[LDL] symbolic: N={N}, nnz(K_up)={K_up.nnz}, nnz(L)={nnz_L}")
        return cls(N, perm, pinv, Ap, Ai, kkt_map, etree, Lnz, Lp, int(nnz_L))

    def permuted_values(self, K_data: np.ndarray) -> np.ndarray:
        Ax = np.empty(self.kkt_map.size, dtype=np.float64)
        Ax[self.kkt_map] = K_data
        return Ax


class LDLFactor:
    """
    Numeric LDLᵀ of P K Pᵀ for a fixed ``LDLSymbolic``.

    ``refactor`` builds a new factor object on fresh buffers, so a failed
    refactorization leaves the current one untouched.
    """

    def __init__(self, symbolic: LDLSymbolic, K_data: np.ndarray, n_pos_expected: Optional[int] = None):
        self.symbolic = symbolic
        N = symbolic.N
        nnz_L = symbolic.nnz_L
        self.Li = np.empty(nnz_L, dtype=np.int64)
        self.Lx = np.empty(nnz_L, dtype=np.float64)
        self.D = np.empty(N, dtype=np.float64)
        self.Dinv = np.empty(N, dtype=np.float64)

        Ax = symbolic.permuted_values(np.asarray(K_data, dtype=np.float64))
        n_pos = _ldl_numeric(
            N, symbolic.Ap, symbolic.Ai, Ax, symbolic.Lp,
            self.Li, self.Lx, self.D, self.Dinv, symbolic.etree,
        )
        if n_pos < 0:
            raise FactorizationError("zero or non-finite pivot in LDLᵀ")
        self.n_pos = int(n_pos)
        if n_pos_expected is not None and self.n_pos != n_pos_expected:
            raise FactorizationError(
                f"KKT matrix is not quasi-definite: {self.n_pos} positive pivots, "
                f"expected {n_pos_expected} (of {N})"
            )

    @property
    def inertia(self) -> Tuple[int, int, int]:
        neg = int(np.sum(self.D < 0))
        return self.n_pos, neg, self.symbolic.N - self.n_pos - neg

    def refactor(self, K_data: np.ndarray, n_pos_expected: Optional[int] = None) -> "LDLFactor":
        return LDLFactor(self.symbolic, K_data, n_pos_expected)

    def solve(self, b: np.ndarray) -> np.ndarray:
        s = self.symbolic
        x = np.ascontiguousarray(np.asarray(b, dtype=np.float64)[s.perm])
        _ldl_solve_inplace(s.N, s.Lp, self.Li, self.Lx, self.Dinv, x)
        out = np.empty_like(x)
        out[s.perm] = x
        return out


class QdldlFactor:
    """
    ``qdldl.Solver`` on the upper triangle of K.

    The library keeps its AMD ordering and elimination tree across
    ``update`` calls, so only the numeric phase is redone. ``update`` works
    in place; on failure the previous values are factored again so the
    object always holds a usable factor.
    """

    def __init__(self, K_up: sp.csc_matrix):
        self.N = int(K_up.shape[0])
        self._K_up = K_up.copy()
        try:
            self.solver = qdldl.Solver(self._K_up)
        except (ValueError, RuntimeError) as e:
            raise FactorizationError(f"qdldl factorization failed: {e}") from e

    def refactor(self, K_data: np.ndarray, n_pos_expected: Optional[int] = None) -> "QdldlFactor":
        # qdldl does not report pivot signs; n_pos_expected is accepted for
        # interface parity with LDLFactor and not checked
        K_new = self._K_up.copy()
        K_new.data = np.asarray(K_data, dtype=np.float64).copy()
        try:
            self.solver.update(K_new)
        except (ValueError, RuntimeError) as e:
            self.solver.update(self._K_up)
            raise FactorizationError(f"qdldl refactorization failed: {e}") from e
        self._K_up = K_new
        return self

    def solve(self, b: np.ndarray) -> np.ndarray:
        return np.asarray(self.solver.solve(np.asarray(b, dtype=np.float64)), dtype=np.float64)
