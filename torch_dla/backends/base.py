"""
Capability interface shared by all dense backends.

A backend operates on 2-D row-major ``torch.float64`` views of a
``DenseMatrix`` storage and writes its results back into them in place.
"""

import torch
from torch import Tensor


class DenseBackend:
    """
    Dense linear algebra kernels: multiply, symmetric eigensolve, invert.

    Attributes
    ----------
    key : str
        Short name used for selection ('pytorch', 'scipy', 'cuda')
    name : str
        Human readable name of the linked library
    eigenvectors_as_rows : bool
        True when ``symmetric_eigen`` stores eigenvectors as rows instead
        of columns
    pin_memory : bool
        True when host storage should be allocated in pinned memory
    """

    key: str = ''
    name: str = ''
    eigenvectors_as_rows: bool = False
    pin_memory: bool = False

    def setup(self) -> None:
        """Acquire process-wide resources (called once by the process group)"""

    def teardown(self) -> None:
        """Release resources acquired by setup()"""

    def multiply(self, alpha: float, a: Tensor, b: Tensor, beta: float, c: Tensor) -> None:
        """c = alpha*a@b + beta*c"""
        raise NotImplementedError

    def symmetric_eigen(self, a: Tensor, want_vectors: bool) -> Tensor:
        """
        Eigenvalues (ascending) of the symmetric matrix ``a``, lower triangle used.

        When ``want_vectors`` is True, ``a`` is overwritten with the eigenvectors.
        """
        raise NotImplementedError

    def invert(self, a: Tensor) -> None:
        """Invert ``a`` in place"""
        raise NotImplementedError

    @staticmethod
    def _identity_like(a: Tensor) -> Tensor:
        return torch.eye(a.size(0), dtype=a.dtype, device=a.device)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
