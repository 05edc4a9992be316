"""
SciPy backend: direct BLAS/LAPACK calls for CPU dense algebra.

This is the vendor-optimized path. SciPy links an optimized BLAS/LAPACK
(OpenBLAS or MKL) and exposes the raw routines together with their status
codes, which are checked after every call.

Operations:
- multiply: dgemm (row-major handled by computing C^T = B^T A^T)
- symmetric_eigen: dsyev, lower triangle
- invert: dgetrf + dgetri
"""

import torch
import numpy as np
from torch import Tensor

from .base import DenseBackend
from ..errors import BackendFailure

try:
    from scipy.linalg import blas, lapack
    SCIPY_AVAILABLE = True
except ImportError:
    SCIPY_AVAILABLE = False


def is_scipy_available() -> bool:
    """Check if SciPy is available"""
    return SCIPY_AVAILABLE


def _as_numpy(x: Tensor) -> np.ndarray:
    """Share host memory of a CPU tensor with NumPy"""
    return x.detach().numpy()


class ScipyBackend(DenseBackend):
    """Vendor dense backend built on scipy.linalg.blas/lapack"""

    key = 'scipy'
    name = 'SciPy (BLAS/LAPACK)'
    eigenvectors_as_rows = False

    def __init__(self):
        if not SCIPY_AVAILABLE:
            raise ImportError("SciPy is required for the scipy dense backend")

    def multiply(self, alpha: float, a: Tensor, b: Tensor, beta: float, c: Tensor) -> None:
        a_np, b_np, c_np = _as_numpy(a), _as_numpy(b), _as_numpy(c)

        # A row-major matrix is its transpose in column-major order:
        # C^T = alpha*B^T A^T + beta*C^T needs no copies
        out = blas.dgemm(alpha, b_np.T, a_np.T, beta=beta, c=c_np.T, overwrite_c=1)

        if not np.shares_memory(out, c_np):
            c_np[...] = out.T

    def symmetric_eigen(self, a: Tensor, want_vectors: bool) -> Tensor:
        a_np = _as_numpy(a)
        w, v, info = lapack.dsyev(a_np, compute_v=int(want_vectors), lower=1)

        if info != 0:
            raise BackendFailure("dsyev()", info)

        if want_vectors:
            a_np[...] = v
        return torch.from_numpy(np.ascontiguousarray(w))

    def invert(self, a: Tensor) -> None:
        a_np = _as_numpy(a)

        lu, piv, info = lapack.dgetrf(a_np)
        if info != 0:
            raise BackendFailure("dgetrf()", info)

        inv, info = lapack.dgetri(lu, piv)
        if info != 0:
            raise BackendFailure("dgetri()", info)

        a_np[...] = inv
