import logging
from typing import Tuple

import numpy as np
import scipy.sparse as sp
from scipy.sparse.csgraph import reverse_cuthill_mckee

# orderings applied by blocks/ldl.py; "amd" is left to qdldl, which orders internally
EXPLICIT_ORDERINGS: Tuple[str, ...] = ("rcm", "natural")


def inverse_permutation(p: np.ndarray) -> np.ndarray:
    inv = np.empty_like(p)
    inv[p] = np.arange(p.size, dtype=p.dtype)
    return inv


def fill_reducing_ordering(K: sp.spmatrix, method: str = "rcm") -> np.ndarray:
    """Symmetric permutation of K (perm[new] = old) for the LDLᵀ factorization."""
    n = K.shape[0]
    method = method.lower()
    if method == "natural":
        return np.arange(n, dtype=np.int64)
    if method == "rcm":
        # symmetric pattern from the stored triangle
        pattern = sp.csr_matrix(K, copy=True)
        pattern = (pattern + pattern.T).tocsr()
        perm = np.asarray(reverse_cuthill_mckee(pattern, symmetric_mode=True), dtype=np.int64)
        logging.debug(f"[RCM] n={n}, nnz={pattern.nnz}")
        return perm
    raise ValueError(
        f"Unknown explicit ordering '{method}' (expected one of {EXPLICIT_ORDERINGS})"
    )
