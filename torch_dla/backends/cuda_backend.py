"""
CUDA backend: GPU-accelerated dense algebra with host storage in pinned memory.

Every call moves its operands to the device, runs cuBLAS/cuSOLVER through
torch, and copies the result back into host storage. Eigenvectors come back
as rows of the storage (the transpose of the CPU backends' layout); readers
must check ``eigenvectors_as_rows``.

Operations:
- multiply: torch.addmm on device
- symmetric_eigen: torch.linalg.eigh on device, lower triangle
- invert: torch.linalg.lu_factor_ex + torch.linalg.lu_solve on device
"""

from typing import Optional, Union

import torch
from torch import Tensor

from .base import DenseBackend
from ..errors import BackendFailure


def is_cuda_available() -> bool:
    """Check if a CUDA device is available"""
    return torch.cuda.is_available()


class CudaBackend(DenseBackend):
    """GPU dense backend"""

    key = 'cuda'
    name = 'PyTorch CUDA (cuBLAS/cuSOLVER)'
    eigenvectors_as_rows = True
    pin_memory = True

    def __init__(self, device: Optional[Union[str, torch.device]] = None):
        if not is_cuda_available():
            raise RuntimeError("CUDA is not available")
        self.device = torch.device(device if device is not None else 'cuda')

    def setup(self) -> None:
        try:
            torch.cuda.init()
        except RuntimeError as e:
            raise BackendFailure("torch.cuda.init()", 1) from e

    def teardown(self) -> None:
        torch.cuda.synchronize(self.device)
        torch.cuda.empty_cache()

    def _to_device(self, x: Tensor) -> Tensor:
        return x.to(self.device, non_blocking=True)

    def multiply(self, alpha: float, a: Tensor, b: Tensor, beta: float, c: Tensor) -> None:
        a_gpu = self._to_device(a)
        b_gpu = self._to_device(b)

        if beta != 0.0:
            c_gpu = self._to_device(c)
            c_gpu = torch.addmm(c_gpu, a_gpu, b_gpu, beta=beta, alpha=alpha)
        else:
            c_gpu = torch.mm(a_gpu, b_gpu).mul_(alpha)

        c.copy_(c_gpu)

    def symmetric_eigen(self, a: Tensor, want_vectors: bool) -> Tensor:
        a_gpu = self._to_device(a)
        try:
            if not want_vectors:
                return torch.linalg.eigvalsh(a_gpu, UPLO='L').cpu()
            eigenvalues, eigenvectors = torch.linalg.eigh(a_gpu, UPLO='L')
        except torch.linalg.LinAlgError as e:
            raise BackendFailure("torch.linalg.eigh() [cuda]", 1) from e

        # Row q of the storage holds the q-th eigenvector
        a.copy_(eigenvectors.T)
        return eigenvalues.cpu()

    def invert(self, a: Tensor) -> None:
        a_gpu = self._to_device(a)

        LU, pivots, info = torch.linalg.lu_factor_ex(a_gpu)
        status = info.item()
        if status != 0:
            raise BackendFailure("torch.linalg.lu_factor_ex() [cuda]", status)

        a.copy_(torch.linalg.lu_solve(LU, pivots, self._identity_like(a_gpu)))
