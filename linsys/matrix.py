# matrix.py
# Read-only CSC view of the constraint matrix A and the objective matrix P.
from __future__ import annotations

from typing import Optional, Tuple, Union

import numpy as np
import scipy.sparse as sp

from .aux.kernels import (
    as_f64,
    csc_col_sq_norms_into,
    csc_diagonal_into,
    csc_has_lower_entries,
    csc_matvec_into,
    csc_rmatvec_into,
    csc_structure_ok,
    csc_sym_upper_matvec_into,
)


def _frozen(a, dtype) -> np.ndarray:
    arr = np.array(a, dtype=dtype, copy=True).reshape(-1)
    arr.flags.writeable = False
    return arr


class SparseMatrix:
    """
    Immutable column-compressed matrix.

    The three arrays are private read-only copies, so neither the caller nor
    a backend can change the matrix after construction. Symmetric matrices
    (the objective P) may be stored either in full or as their upper
    triangle; ``sym_matvec`` handles both.
    """

    __slots__ = ("m", "n", "indptr", "indices", "data", "_upper")

    def __init__(self, m: int, n: int, indptr, indices, data):
        self.m = int(m)
        self.n = int(n)
        if self.m < 0 or self.n < 0:
            raise ValueError(f"Invalid shape ({m}, {n})")
        self.indptr = _frozen(indptr, np.int64)
        self.indices = _frozen(indices, np.int64)
        self.data = _frozen(data, np.float64)
        if self.indptr.size != self.n + 1:
            raise ValueError(
                f"Column pointer array has size {self.indptr.size}, expected {self.n + 1}"
            )
        if self.indices.size != self.data.size:
            raise ValueError(
                f"Row index count {self.indices.size} != value count {self.data.size}"
            )
        if not csc_structure_ok(self.m, self.indptr, self.indices):
            raise ValueError("Malformed CSC structure (pointers or row indices)")
        self._upper: Optional[bool] = None

    # ---------------------- constructors ----------------------
    @classmethod
    def from_scipy(cls, M: sp.spmatrix) -> "SparseMatrix":
        M = sp.csc_matrix(M, dtype=np.float64, copy=True)
        M.sum_duplicates()
        M.sort_indices()
        return cls(M.shape[0], M.shape[1], M.indptr, M.indices, M.data)

    @classmethod
    def from_dense(cls, M) -> "SparseMatrix":
        return cls.from_scipy(sp.csc_matrix(np.atleast_2d(np.asarray(M, dtype=float))))

    @classmethod
    def zeros(cls, m: int, n: int) -> "SparseMatrix":
        return cls(m, n, np.zeros(n + 1, dtype=np.int64), [], [])

    def to_scipy(self) -> sp.csc_matrix:
        return sp.csc_matrix(
            (self.data.copy(), self.indices.copy(), self.indptr.copy()),
            shape=self.shape,
        )

    # ---------------------- properties ----------------------
    @property
    def shape(self) -> Tuple[int, int]:
        return (self.m, self.n)

    @property
    def nnz(self) -> int:
        return int(self.indices.size)

    def is_upper_triangular(self) -> bool:
        if self._upper is None:
            self._upper = not csc_has_lower_entries(self.indptr, self.indices)
        return self._upper

    def __repr__(self) -> str:
        return f"SparseMatrix(shape={self.shape}, nnz={self.nnz})"

    # ---------------------- products ----------------------
    def matvec(self, x: np.ndarray, out: Optional[np.ndarray] = None) -> np.ndarray:
        x = as_f64(x, self.n, "x")
        if out is None:
            out = np.empty(self.m, dtype=np.float64)
        csc_matvec_into(self.indptr, self.indices, self.data, x, out)
        return out

    def rmatvec(self, y: np.ndarray, out: Optional[np.ndarray] = None) -> np.ndarray:
        y = as_f64(y, self.m, "y")
        if out is None:
            out = np.empty(self.n, dtype=np.float64)
        csc_rmatvec_into(self.indptr, self.indices, self.data, y, out)
        return out

    def sym_matvec(self, x: np.ndarray, out: Optional[np.ndarray] = None) -> np.ndarray:
        """Product with the symmetric matrix this (square) view stores."""
        if self.m != self.n:
            raise ValueError(f"sym_matvec needs a square matrix, got {self.shape}")
        if not self.is_upper_triangular():
            return self.matvec(x, out)
        x = as_f64(x, self.n, "x")
        if out is None:
            out = np.empty(self.n, dtype=np.float64)
        csc_sym_upper_matvec_into(self.indptr, self.indices, self.data, x, out)
        return out

    def diagonal(self) -> np.ndarray:
        if self.m != self.n:
            raise ValueError(f"diagonal needs a square matrix, got {self.shape}")
        out = np.empty(self.n, dtype=np.float64)
        csc_diagonal_into(self.indptr, self.indices, self.data, out)
        return out

    def col_sq_norms(self, weights: Optional[np.ndarray] = None) -> np.ndarray:
        w = np.ones(self.m) if weights is None else as_f64(weights, self.m, "weights")
        out = np.empty(self.n, dtype=np.float64)
        csc_col_sq_norms_into(self.indptr, self.indices, self.data, w, out)
        return out

    def upper_triangle(self) -> sp.csc_matrix:
        """Upper triangle (incl. diagonal) of a symmetric matrix, as scipy CSC."""
        M = self.to_scipy()
        if self.is_upper_triangular():
            return M
        return sp.triu(M, k=0, format="csc")


MatrixLike = Union[SparseMatrix, sp.spmatrix, np.ndarray]


def as_sparse_matrix(M: Optional[MatrixLike], shape=None) -> SparseMatrix:
    """Wrap scipy/dense input; ``None`` becomes an all-zero matrix of ``shape``."""
    if M is None:
        if shape is None:
            raise ValueError("Cannot build an empty matrix without a shape")
        return SparseMatrix.zeros(*shape)
    if isinstance(M, SparseMatrix):
        out = M
    elif sp.issparse(M):
        out = SparseMatrix.from_scipy(M)
    else:
        out = SparseMatrix.from_dense(M)
    if shape is not None and out.shape != tuple(shape):
        raise ValueError(f"Matrix has shape {out.shape}, expected {tuple(shape)}")
    return out


def validate_lin_sys(A: SparseMatrix, P: Optional[SparseMatrix]) -> None:
    """Raise ValueError unless A is m×n and P is n×n, both with finite values."""
    if A.m < 0 or A.n <= 0:
        raise ValueError(f"A must have at least one column, got shape {A.shape}")
    if not np.all(np.isfinite(A.data)):
        raise ValueError("A contains non-finite values")
    if P is None:
        return
    if P.shape != (A.n, A.n):
        raise ValueError(f"P has shape {P.shape}, expected ({A.n}, {A.n})")
    if not np.all(np.isfinite(P.data)):
        raise ValueError("P contains non-finite values")
    if not P.is_upper_triangular():
        # full storage must actually be symmetric
        Ps = P.to_scipy()
        asym = abs(Ps - Ps.T)
        scale = max(1.0, float(np.max(np.abs(P.data))) if P.nnz else 1.0)
        if asym.nnz and float(asym.max()) > 1e-10 * scale:
            raise ValueError("P is stored in full but is not symmetric")
