"""
PyTorch-native reference backend (CPU).

Uses torch.matmul/addmm and torch.linalg on host tensors. This is the
reference implementation: when a factorization reports trouble it warns and
keeps the numerically produced result instead of aborting.

Operations:
- multiply: torch.addmm (GEMM)
- symmetric_eigen: torch.linalg.eigh, lower triangle
- invert: torch.linalg.lu_factor_ex + torch.linalg.lu_solve
"""

import torch
from torch import Tensor
import warnings

from .base import DenseBackend
from ..errors import BackendFailure


class PyTorchBackend(DenseBackend):
    """Reference dense backend built on torch.linalg"""

    key = 'pytorch'
    name = 'PyTorch (torch.linalg)'
    eigenvectors_as_rows = False

    def multiply(self, alpha: float, a: Tensor, b: Tensor, beta: float, c: Tensor) -> None:
        # addmm ignores c entirely when beta == 0, as GEMM does
        c.copy_(torch.addmm(c, a, b, beta=beta, alpha=alpha))

    def symmetric_eigen(self, a: Tensor, want_vectors: bool) -> Tensor:
        try:
            if not want_vectors:
                return torch.linalg.eigvalsh(a, UPLO='L')
            eigenvalues, eigenvectors = torch.linalg.eigh(a, UPLO='L')
        except torch.linalg.LinAlgError as e:
            raise BackendFailure("torch.linalg.eigh()", 1) from e

        # Column q of the storage holds the q-th eigenvector
        a.copy_(eigenvectors)
        return eigenvalues

    def invert(self, a: Tensor) -> None:
        LU, pivots, info = torch.linalg.lu_factor_ex(a)
        if info.item() != 0:
            warnings.warn(f"torch.linalg.lu_factor_ex() returned status {info.item()}, "
                          f"matrix is singular and the inverse is not finite")
        a.copy_(torch.linalg.lu_solve(LU, pivots, self._identity_like(a)))
