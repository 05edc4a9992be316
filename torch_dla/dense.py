"""
Dense row-major matrix with backend-dispatched algebra.

DenseMatrix owns a flat ``torch.float64`` host storage of length rows*cols,
where element (p, q) lives at offset p*cols + q. Elementwise operations run
in torch; multiply, symmetric eigensolve and inversion go through the dense
backend selected for the process (see ``torch_dla.backends``).

Example
-------
>>> from torch_dla import DenseMatrix, multiply
>>>
>>> A = DenseMatrix.alloc(2, 2, zero_fill=True)
>>> A.set(0, 0, 2.0)
>>> A.set(1, 1, 3.0)
>>> eigenvalues = A.symmetric_eigen('v')   # tensor([2., 3.]), A now holds eigenvectors
>>>
>>> C = DenseMatrix.alloc(2, 2, zero_fill=True)
>>> multiply(1.0, A, A, 0.0, C)            # C = A @ A
"""

import os
import math
from contextlib import contextmanager
from typing import Optional, Tuple, Union, IO

import torch
from torch import Tensor

from .backends import DenseBackend, get_backend
from .errors import AllocationFailure, BoundsViolation

# Bound checking is fixed at import time
BOUND_CHECK = os.environ.get('TORCH_DLA_BOUND_CHECK', '0').strip().lower() not in ('', '0', 'false', 'no', 'off')

SIZEOF_SIZE_T = 8
SIZEOF_DOUBLE = 8


@contextmanager
def _intra_op_threads(parallel: bool):
    """Run the enclosed torch ops with one intra-op thread unless parallel"""
    num_threads = torch.get_num_threads()
    if parallel or num_threads == 1:
        yield
        return

    torch.set_num_threads(1)
    try:
        yield
    finally:
        torch.set_num_threads(num_threads)


def _allocate(length: int, zero_fill: bool, pin_memory: bool) -> Tensor:
    """Allocate flat float64 host storage, raising AllocationFailure on failure"""
    if length < 0:
        raise ValueError(f"Invalid storage length: {length}")

    try:
        if zero_fill:
            return torch.zeros(length, dtype=torch.float64, pin_memory=pin_memory)
        return torch.empty(length, dtype=torch.float64, pin_memory=pin_memory)
    except RuntimeError as e:
        raise AllocationFailure(f"unable to allocate {length} doubles: {e}") from e


class DenseMatrix:
    """
    Opaque dense matrix of doubles stored in row-major order.

    Attributes
    ----------
    rows : int
        Number of rows
    cols : int
        Number of columns
    backend : DenseBackend
        Backend used by multiply/symmetric_eigen/invert
    parallel : bool
        Whether elementwise operations may use several intra-op threads
    """

    def __init__(self, rows: int, cols: int, data: Tensor, backend: Optional[DenseBackend] = None):
        if data.dim() != 1 or data.numel() != rows * cols:
            raise ValueError(f"Storage of length {data.numel()} does not hold a {rows}x{cols} matrix")
        if data.dtype != torch.float64 or data.device.type != 'cpu':
            raise ValueError("Storage must be a float64 host tensor")

        self._rows = rows
        self._cols = cols
        self._data = data
        self._np = data.numpy()
        self.backend = backend if backend is not None else get_backend()
        self.parallel = False

    # =========================================================================
    # Allocation
    # =========================================================================

    @classmethod
    def alloc(
        cls,
        rows: int,
        cols: int,
        zero_fill: bool = False,
        backend: Optional[DenseBackend] = None
    ) -> "DenseMatrix":
        """
        Allocate a rows-by-cols matrix.

        Returns only if storage was allocated, so callers never need to
        check the result. Allocation failure raises AllocationFailure.
        """
        if rows < 0 or cols < 0:
            raise ValueError(f"Invalid shape: ({rows}, {cols})")

        backend = backend if backend is not None else get_backend()
        data = _allocate(rows * cols, zero_fill, backend.pin_memory)
        return cls(rows, cols, data, backend)

    @classmethod
    def alloc_as(cls, m: "DenseMatrix", zero_fill: bool = False) -> "DenseMatrix":
        """Allocate a matrix with the shape and backend of m"""
        return cls.alloc(m.rows, m.cols, zero_fill, m.backend)

    @classmethod
    def from_tensor(cls, x: Tensor, backend: Optional[DenseBackend] = None) -> "DenseMatrix":
        """Allocate a matrix holding a copy of a 2-D tensor"""
        if x.dim() != 2:
            raise ValueError(f"Expected a 2-D tensor, got {x.dim()}-D")

        m = cls.alloc(x.size(0), x.size(1), backend=backend)
        m.view().copy_(x)
        return m

    def free(self) -> None:
        """Release the storage; the matrix becomes 0x0"""
        self._data = torch.empty(0, dtype=torch.float64)
        self._np = self._data.numpy()
        self._rows = 0
        self._cols = 0

    # =========================================================================
    # Shape and raw storage
    # =========================================================================

    @property
    def rows(self) -> int:
        return self._rows

    @property
    def cols(self) -> int:
        return self._cols

    @property
    def shape(self) -> Tuple[int, int]:
        return (self._rows, self._cols)

    def view(self) -> Tensor:
        """2-D tensor view sharing the storage"""
        return self._data.view(self._rows, self._cols)

    def to_tensor(self) -> Tensor:
        """2-D tensor copy of the matrix"""
        return self.view().clone()

    def use_parallel(self, flag: bool) -> None:
        """
        Turn on/off multithreading of elementwise operations.

        When off, each elementwise call lowers the process-wide torch thread
        count to 1 for its duration (unless it is already 1) and restores it
        afterwards. Threads sharing the process see that change, so callers
        mixing threads with non-parallel matrices should run
        ``torch.set_num_threads(1)`` up front.
        """
        self.parallel = bool(flag)

    def is_square(self) -> bool:
        return self._rows == self._cols

    def sizeof(self) -> int:
        """Total size in bytes of the content held by the matrix"""
        return 3 * SIZEOF_SIZE_T + self._rows * self._cols * SIZEOF_DOUBLE

    def reshape(self, rows: int, cols: int) -> None:
        """Change the shape, keeping the leading elements of the storage"""
        if self.backend.pin_memory:
            raise RuntimeError("Pinned memory reallocation is not available "
                               f"with the {self.backend.key} backend")
        if rows < 0 or cols < 0:
            raise ValueError(f"Invalid shape: ({rows}, {cols})")

        data = _allocate(rows * cols, False, False)
        n = min(data.numel(), self._data.numel())
        data[:n] = self._data[:n]

        self._data = data
        self._np = data.numpy()
        self._rows = rows
        self._cols = cols

    def data_length(self) -> int:
        """Physical length of the storage, rows*cols"""
        return self._data.numel()

    def data_get(self, n: int) -> float:
        return float(self._np[n])

    def data_set(self, n: int, x: float) -> None:
        self._np[n] = x

    def data_raw(self) -> Tensor:
        """Copy of the whole flat storage"""
        with _intra_op_threads(self.parallel):
            return self._data.clone()

    # =========================================================================
    # Element access
    # =========================================================================

    def _check_row(self, p: int) -> None:
        if BOUND_CHECK and not 0 <= p < self._rows:
            raise BoundsViolation(f"row {p} out of range [0, {self._rows})")

    def _check_col(self, q: int) -> None:
        if BOUND_CHECK and not 0 <= q < self._cols:
            raise BoundsViolation(f"column {q} out of range [0, {self._cols})")

    def get(self, p: int, q: int) -> float:
        self._check_row(p)
        self._check_col(q)
        return float(self._np[p * self._cols + q])

    def set(self, p: int, q: int, x: float) -> None:
        self._check_row(p)
        self._check_col(q)
        self._np[p * self._cols + q] = x

    def set_symm(self, p: int, q: int, x: float) -> None:
        """Set both the pq and qp elements"""
        self.set(p, q, x)
        self.set(q, p, x)

    def set_diag(self, p: int, x: float) -> None:
        self.set(p, p, x)

    def incr(self, p: int, q: int, x: float) -> None:
        self.set(p, q, self.get(p, q) + x)

    def decr(self, p: int, q: int, x: float) -> None:
        self.set(p, q, self.get(p, q) - x)

    def scale(self, p: int, q: int, x: float) -> None:
        self.set(p, q, self.get(p, q) * x)

    def copy_element(self, p: int, q: int, b: "DenseMatrix", l: int, k: int) -> None:
        """Copy the lk-element of b into the pq-element of this matrix"""
        self.set(p, q, b.get(l, k))

    # =========================================================================
    # Whole-matrix, row and column updates
    # =========================================================================

    def set_all(self, x: float) -> None:
        with _intra_op_threads(self.parallel):
            self._data.fill_(x)

    def set_zero(self) -> None:
        with _intra_op_threads(self.parallel):
            self._data.zero_()

    def set_random(self, generator: Optional[torch.Generator] = None) -> None:
        """Fill with uniform random numbers in [0, 1)"""
        with _intra_op_threads(self.parallel):
            self._data.uniform_(0.0, 1.0, generator=generator)

    def set_row(self, p: int, x: float) -> None:
        self._check_row(p)
        with _intra_op_threads(self.parallel):
            self.view()[p].fill_(x)

    def set_col(self, q: int, x: float) -> None:
        self._check_col(q)
        with _intra_op_threads(self.parallel):
            self.view()[:, q].fill_(x)

    def set_block(self, row_min: int, row_max: int, col_min: int, col_max: int, x: float) -> None:
        """Set x to the block [row_min, row_max] x [col_min, col_max] (inclusive)"""
        if row_max < row_min or col_max < col_min:
            raise ValueError("Block bounds must satisfy row_max >= row_min and col_max >= col_min")
        self._check_row(row_max)
        self._check_col(col_max)
        self.view()[row_min:row_max + 1, col_min:col_max + 1].fill_(x)

    def incr_all(self, x: float) -> None:
        with _intra_op_threads(self.parallel):
            self._data.add_(x)

    def decr_all(self, x: float) -> None:
        with _intra_op_threads(self.parallel):
            self._data.sub_(x)

    def scale_all(self, x: float) -> None:
        with _intra_op_threads(self.parallel):
            self._data.mul_(x)

    def scale_row(self, p: int, x: float) -> None:
        self._check_row(p)
        with _intra_op_threads(self.parallel):
            self.view()[p].mul_(x)

    def scale_col(self, q: int, x: float) -> None:
        self._check_col(q)
        with _intra_op_threads(self.parallel):
            self.view()[:, q].mul_(x)

    def copy_from(self, b: "DenseMatrix", alpha: float = 1.0, beta: float = 0.0) -> None:
        """
        self = b*alpha + beta, elementwise over min(len(self), len(b)) elements.

        Matrices of different lengths are not an error: only the common
        leading part of the flat storages is touched.
        """
        n = min(self.data_length(), b.data_length())
        with _intra_op_threads(self.parallel):
            torch.add(b._data[:n] * alpha, beta, out=self._data[:n])

    def swap(self, b: "DenseMatrix") -> None:
        """Swap shape and storage with b"""
        self._rows, b._rows = b._rows, self._rows
        self._cols, b._cols = b._cols, self._cols
        self._data, b._data = b._data, self._data
        self._np, b._np = b._np, self._np

    # =========================================================================
    # Extraction
    # =========================================================================

    def get_row(self, p: int) -> "DenseMatrix":
        """p-th row as a 1-by-cols matrix"""
        self._check_row(p)
        row = DenseMatrix.alloc(1, self._cols, backend=self.backend)
        row.view().copy_(self.view()[p:p + 1])
        return row

    def get_col(self, q: int) -> "DenseMatrix":
        """q-th column as a rows-by-1 matrix"""
        self._check_col(q)
        col = DenseMatrix.alloc(self._rows, 1, backend=self.backend)
        col.view().copy_(self.view()[:, q:q + 1])
        return col

    def get_diag(self) -> "DenseMatrix":
        """Diagonal as a column matrix"""
        n = min(self._rows, self._cols)
        diag = DenseMatrix.alloc(n, 1, backend=self.backend)
        diag.view()[:, 0] = torch.diagonal(self.view())
        return diag

    def get_block(self, row_min: int, row_max: int, col_min: int, col_max: int) -> "DenseMatrix":
        """Copy of the block [row_min, row_max] x [col_min, col_max] (inclusive)"""
        if row_max < row_min or col_max < col_min:
            raise ValueError("Block bounds must satisfy row_max >= row_min and col_max >= col_min")
        self._check_row(row_max)
        self._check_col(col_max)
        block = self.view()[row_min:row_max + 1, col_min:col_max + 1]
        return DenseMatrix.from_tensor(block, backend=self.backend)

    def raw_row(self, p: int) -> Tensor:
        """p-th row as a 1-D tensor copy"""
        self._check_row(p)
        return self.view()[p].clone()

    def raw_col(self, q: int) -> Tensor:
        """q-th column as a 1-D tensor copy"""
        self._check_col(q)
        return self.view()[:, q].clone()

    # =========================================================================
    # Reductions and predicates
    # =========================================================================

    def trace(self) -> float:
        with _intra_op_threads(self.parallel):
            return float(torch.diagonal(self.view()).sum())

    def sum(self) -> float:
        with _intra_op_threads(self.parallel):
            return float(self._data.sum())

    def sum_row(self, p: int) -> float:
        self._check_row(p)
        return float(self.view()[p].sum())

    def sum_col(self, q: int) -> float:
        self._check_col(q)
        return float(self.view()[:, q].sum())

    def min(self) -> float:
        if self._data.numel() == 0:
            return math.inf
        return float(self._data.min())

    def max(self) -> float:
        if self._data.numel() == 0:
            return -math.inf
        return float(self._data.max())

    def is_null(self) -> bool:
        return bool((self._data == 0.0).all())

    def is_positive(self) -> bool:
        """True if no element is negative"""
        return bool((self._data >= 0.0).all())

    def is_negative(self) -> bool:
        return bool((self._data < 0.0).all())

    def has_nan(self) -> bool:
        return bool(torch.isnan(self._data).any())

    # =========================================================================
    # Backend-dispatched algebra
    # =========================================================================

    def symmetric_eigen(self, job: str = 'n') -> Tensor:
        """
        Eigenvalues of a symmetric matrix, in ascending order.

        Only the lower triangle is read.

        Parameters
        ----------
        job : {'n', 'v'}
            'v' also computes eigenvectors and overwrites the matrix with
            them: as columns on CPU backends, as rows on the CUDA backend
            (check ``self.backend.eigenvectors_as_rows``).

        Returns
        -------
        torch.Tensor
            Eigenvalues, shape [rows]
        """
        if job not in ('n', 'v'):
            raise ValueError(f"Unknown job '{job}', expected 'n' or 'v'")
        if not self.is_square():
            raise ValueError(f"Symmetric eigensolve needs a square matrix, got {self.shape}")

        return self.backend.symmetric_eigen(self.view(), job == 'v')

    def eigenvector(self, n: int) -> Tensor:
        """n-th eigenvector after symmetric_eigen('v'), honoring the backend layout"""
        if self.backend.eigenvectors_as_rows:
            return self.raw_row(n)
        return self.raw_col(n)

    def invert(self) -> None:
        """Invert the matrix in place"""
        if not self.is_square():
            raise ValueError(f"Only square matrices can be inverted, got {self.shape}")

        self.backend.invert(self.view())

    # =========================================================================
    # Persistence (I/O)
    # =========================================================================

    def save(self, file: Union[str, "os.PathLike", IO[bytes]]) -> None:
        """Write the matrix in binary format: rows, cols (size_t), then doubles"""
        from .io import save_matrix
        save_matrix(self, file)

    @classmethod
    def load(
        cls,
        file: Union[str, "os.PathLike", IO[bytes]],
        backend: Optional[DenseBackend] = None
    ) -> "DenseMatrix":
        """Read a matrix written by save()"""
        from .io import load_matrix
        return load_matrix(file, backend=backend)

    @classmethod
    def read_text(
        cls,
        source: Union[str, "os.PathLike", IO[str]],
        rows: int,
        cols: int,
        out: Optional["DenseMatrix"] = None
    ) -> "DenseMatrix":
        """Read rows lines of cols whitespace separated values"""
        from .io import read_matrix_text
        return read_matrix_text(source, rows, cols, out=out)

    def write_text(self, stream: IO[str], rows: Optional[int] = None, cols: Optional[int] = None) -> None:
        """Write up to rows lines of cols values, scientific notation"""
        from .io import write_matrix_text
        write_matrix_text(self, stream, rows, cols)

    def __repr__(self) -> str:
        return f"DenseMatrix(shape={self.shape}, backend={self.backend.key})"


def _elementwise(alpha: float, a: DenseMatrix, beta: float, b: DenseMatrix, c: DenseMatrix) -> None:
    n = min(a.data_length(), b.data_length(), c.data_length())
    with _intra_op_threads(c.parallel):
        torch.add(a._data[:n] * alpha, b._data[:n], alpha=beta, out=c._data[:n])


def multiply(alpha: float, a: DenseMatrix, b: DenseMatrix, beta: float, c: DenseMatrix) -> None:
    """
    c = alpha*a@b + beta*c through the backend of c.

    Shape compatibility is the caller's responsibility.
    """
    c.backend.multiply(alpha, a.view(), b.view(), beta, c.view())


def add(alpha: float, a: DenseMatrix, beta: float, b: DenseMatrix, c: DenseMatrix) -> None:
    """c = a*alpha + b*beta over the common leading part of the storages"""
    _elementwise(alpha, a, beta, b, c)


def sub(alpha: float, a: DenseMatrix, beta: float, b: DenseMatrix, c: DenseMatrix) -> None:
    """c = a*alpha - b*beta over the common leading part of the storages"""
    _elementwise(alpha, a, -beta, b, c)
