"""
Distributed matrices and vectors for sparse symmetric eigenproblems.

Two storage modes, chosen once per process (see ``torch_dla.backends``):

- 'partitioned': each process owns a contiguous range of rows, stored as a
  local CSR block; entries set for rows owned elsewhere are dropped, so
  every process may call set() for the whole matrix. Eigenpairs come from
  the Krylov-Schur solver in ``torch_dla.eigensolver``.
- 'replicated': every process holds a full DenseMatrix; eigenpairs come from
  a full dense symmetric eigensolve.

Both share one lifecycle: alloc -> set ... -> build -> use.

Example
-------
>>> with ProcessGroup() as group:
...     A = DistributedMatrix.alloc(group, 100, 100, non_zeros=(3, 2))
...     for p in range(100):
...         A.set(p, p, 2.0)
...         if p > 0:
...             A.set(p, p - 1, -1.0)
...         if p < 99:
...             A.set(p, p + 1, -1.0)
...     A.build()
...     nconv = A.sparse_eigen(count=4, max_iterations=200, tolerance=1e-10, upper=True)
...     value, vector = A.eigenpair(0)
"""

from typing import Optional, Tuple, TYPE_CHECKING

import torch
from torch import Tensor

from .backends import DenseBackend, get_distributed_mode, DISTRIBUTED_MODES
from .dense import DenseMatrix
from .eigensolver import KrylovSchur
from .errors import BoundsViolation
from .partition import ownership_range

if TYPE_CHECKING:
    from .runtime import ProcessGroup

# Lifecycle states
UNBUILT = 'unbuilt'
STAGED = 'staged'
BUILT = 'built'


def _resolve_mode(mode: Optional[str]) -> str:
    if mode is None:
        return get_distributed_mode()
    if mode not in DISTRIBUTED_MODES:
        raise ValueError(f"Unknown distributed mode: {mode}. Available: {', '.join(DISTRIBUTED_MODES)}")
    return mode


class DistributedVector:
    """
    Vector whose elements are split among processes (or replicated).

    Attributes
    ----------
    group : ProcessGroup
        Owning process group
    length : int
        Global length
    local : torch.Tensor
        Elements [first, last) held by this process
    """

    def __init__(self, group: "ProcessGroup", length: int, first: int, last: int, mode: str):
        self.group = group
        self.length = length
        self.first = first
        self.last = last
        self.mode = mode
        self.local = torch.zeros(last - first, dtype=torch.float64)
        self.state = UNBUILT

    @classmethod
    def alloc(cls, group: "ProcessGroup", length: int, mode: Optional[str] = None) -> "DistributedVector":
        """Allocate a zero vector of the given global length"""
        if length <= 0:
            raise ValueError(f"Vector length must be positive, got {length}")

        mode = _resolve_mode(mode)
        if mode == 'partitioned':
            first, last = ownership_range(length, group.size, group.rank)
        else:
            first, last = 0, length
        return cls(group, length, first, last, mode)

    @classmethod
    def from_local(
        cls,
        group: "ProcessGroup",
        length: int,
        first: int,
        local: Tensor,
        mode: str
    ) -> "DistributedVector":
        """Wrap already computed local elements as a built vector"""
        vector = cls(group, length, first, first + local.numel(), mode)
        vector.local.copy_(local.reshape(-1))
        vector.state = BUILT
        return vector

    @property
    def is_partitioned(self) -> bool:
        return self.mode == 'partitioned'

    @property
    def ownership_range(self) -> Tuple[int, int]:
        """Global range [first, last) held by this process"""
        return self.first, self.last

    def owns(self, p: int) -> bool:
        return self.first <= p < self.last

    def _check_index(self, p: int) -> None:
        if not 0 <= p < self.length:
            raise BoundsViolation(f"index {p} out of range [0, {self.length})")

    def set(self, p: int, x: float) -> None:
        """Set element p; ignored if p is owned by another process"""
        self._check_index(p)
        if self.owns(p):
            self.local[p - self.first] = x
        self.state = STAGED

    def get(self, p: int) -> float:
        """Element p, which must be held by this process"""
        self._check_index(p)
        if not self.owns(p):
            raise ValueError(f"Element {p} is owned by another process")
        return float(self.local[p - self.first])

    def build(self) -> None:
        """Finish assembly; collective"""
        self.group.barrier()
        self.state = BUILT

    def _require_built(self) -> None:
        if self.state != BUILT:
            raise RuntimeError("DistributedVector must be built first")

    def all_gather(self) -> Tensor:
        """Full vector on every process; collective"""
        self._require_built()
        if not self.is_partitioned:
            return self.local.clone()

        full = torch.zeros(self.length, dtype=torch.float64)
        full[self.first:self.last] = self.local
        return self.group.all_reduce(full)

    def gather(self, root: int = 0) -> Optional[Tensor]:
        """Full vector on root, None elsewhere; collective"""
        self._require_built()
        if not self.is_partitioned:
            return self.local.clone() if self.group.rank == root else None

        full = torch.zeros(self.length, dtype=torch.float64)
        full[self.first:self.last] = self.local
        self.group.reduce(full, root)
        return full if self.group.rank == root else None

    def free(self) -> None:
        self.local = torch.zeros(0, dtype=torch.float64)
        self.state = UNBUILT

    def __repr__(self) -> str:
        return (f"DistributedVector(length={self.length}, local=[{self.first}, {self.last}), "
                f"mode={self.mode}, state={self.state})")


class DistributedMatrix:
    """
    Row-distributed sparse matrix (or replicated dense matrix).

    Use DistributedMatrix.alloc() to create one.

    Attributes
    ----------
    group : ProcessGroup
        Owning process group
    rows, cols : int
        Global shape
    first, last : int
        Rows [first, last) held by this process
    mode : str
        'partitioned' or 'replicated'
    state : str
        'unbuilt', 'staged' or 'built'
    """

    def __init__(
        self,
        group: "ProcessGroup",
        rows: int,
        cols: int,
        first: int,
        last: int,
        mode: str,
        capacity: int,
        backend: Optional[DenseBackend] = None,
        verbose: bool = False,
    ):
        self.group = group
        self.rows = rows
        self.cols = cols
        self.first = first
        self.last = last
        self.mode = mode
        self.verbose = verbose
        self.state = UNBUILT

        # Partitioned: staged triplets, then local CSR block
        self._row_buf = torch.empty(capacity, dtype=torch.int64)
        self._col_buf = torch.empty(capacity, dtype=torch.int64)
        self._val_buf = torch.empty(capacity, dtype=torch.float64)
        self._staged = 0
        self.local_matrix: Optional[Tensor] = None

        # Replicated: full dense copy
        self.dense: Optional[DenseMatrix] = None
        if mode == 'replicated':
            self.dense = DenseMatrix.alloc(rows, cols, zero_fill=True, backend=backend)

        # Eigen results
        self._solver: Optional[KrylovSchur] = None
        self._eigenvalues: Optional[Tensor] = None
        self._converged = 0

    @classmethod
    def alloc(
        cls,
        group: "ProcessGroup",
        rows: int,
        cols: int,
        non_zeros: Tuple[int, int] = (1, 0),
        mode: Optional[str] = None,
        backend: Optional[DenseBackend] = None,
        verbose: bool = False,
    ) -> "DistributedMatrix":
        """
        Allocate a rows-by-cols distributed matrix.

        Parameters
        ----------
        group : ProcessGroup
            Initialized process group; every process must call alloc
        rows, cols : int
            Global shape
        non_zeros : (int, int)
            Estimated non-zeros per row in the diagonal block (columns owned
            by this process) and in the off-diagonal block. Only used to size
            the staging buffers; more entries are still accepted.
        mode : str, optional
            'partitioned' or 'replicated'. Default: process-wide mode.
        backend : DenseBackend, optional
            Dense backend of the replicated copy
        verbose : bool
            Print the ownership range of each process
        """
        if rows <= 0 or cols <= 0:
            raise ValueError(f"Invalid shape: ({rows}, {cols})")
        diagonal, off_diagonal = non_zeros
        if diagonal < 0 or off_diagonal < 0:
            raise ValueError(f"Invalid non-zero estimate: {non_zeros}")

        mode = _resolve_mode(mode)
        if mode == 'partitioned':
            first, last = ownership_range(rows, group.size, group.rank)
            capacity = max((last - first) * (diagonal + off_diagonal), 1)
        else:
            first, last = 0, rows
            capacity = 0

        matrix = cls(group, rows, cols, first, last, mode, capacity, backend, verbose)
        if verbose:
            print(f"[Rank {group.rank}/{group.size}] {rows}x{cols} matrix, "
                  f"rows [{first}, {last}), mode={mode}, non-zeros per row ~{non_zeros}")
        return matrix

    @property
    def is_partitioned(self) -> bool:
        return self.mode == 'partitioned'

    @property
    def ownership_range(self) -> Tuple[int, int]:
        """Global rows [first, last) held by this process"""
        return self.first, self.last

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.rows, self.cols)

    # =========================================================================
    # Assembly
    # =========================================================================

    def _grow(self) -> None:
        capacity = max(2 * self._row_buf.numel(), 1)
        for name in ('_row_buf', '_col_buf', '_val_buf'):
            old = getattr(self, name)
            new = torch.empty(capacity, dtype=old.dtype)
            new[:self._staged] = old[:self._staged]
            setattr(self, name, new)

    def set(self, p: int, q: int, value: float) -> None:
        """
        Stage A[p, q] = value (insert semantics: a later set wins).

        Rows owned by another process are silently ignored.
        """
        if not 0 <= p < self.rows:
            raise BoundsViolation(f"row {p} out of range [0, {self.rows})")
        if not 0 <= q < self.cols:
            raise BoundsViolation(f"column {q} out of range [0, {self.cols})")

        self.state = STAGED
        if self.dense is not None:
            self.dense.set(p, q, value)
            return

        if not self.first <= p < self.last:
            return

        if self._staged == self._row_buf.numel():
            self._grow()
        n = self._staged
        self._row_buf[n] = p - self.first
        self._col_buf[n] = q
        self._val_buf[n] = value
        self._staged += 1

    def build(self) -> None:
        """
        Assemble the staged entries; collective, every process must call it.
        """
        if self.is_partitioned:
            self._build_local()
        self.group.barrier()
        self.state = BUILT

    def _build_local(self) -> None:
        n_local = self.last - self.first
        n = self._staged
        rows = self._row_buf[:n]
        cols = self._col_buf[:n]
        values = self._val_buf[:n]

        # Keep the last value set for every (row, col)
        keys = rows * self.cols + cols
        sorted_keys, order = torch.sort(keys, stable=True)
        last_of_key = torch.ones(n, dtype=torch.bool)
        if n > 1:
            last_of_key[:-1] = sorted_keys[1:] != sorted_keys[:-1]
        order = order[last_of_key]

        indices = torch.stack([rows[order], cols[order]])
        coo = torch.sparse_coo_tensor(indices, values[order], (n_local, self.cols))
        self.local_matrix = coo.coalesce().to_sparse_csr()

    def _require_built(self) -> None:
        if self.state != BUILT:
            raise RuntimeError("DistributedMatrix must be built first (call build())")

    def get(self, p: int, q: int) -> float:
        """A[p, q] for a row held by this process (0.0 if never set)"""
        self._require_built()
        if self.dense is not None:
            return self.dense.get(p, q)
        if not self.first <= p < self.last:
            raise ValueError(f"Row {p} is owned by another process")

        row = p - self.first
        crow = self.local_matrix.crow_indices()
        start, end = int(crow[row]), int(crow[row + 1])
        columns = self.local_matrix.col_indices()[start:end]
        hits = (columns == q).nonzero()
        if hits.numel() == 0:
            return 0.0
        return float(self.local_matrix.values()[start + int(hits[0, 0])])

    # =========================================================================
    # Operations
    # =========================================================================

    def _gather_columns(self, X_local: Tensor) -> Tensor:
        """Full [cols, m] block from row-partitioned pieces; collective"""
        full = torch.zeros(self.cols, X_local.size(1), dtype=torch.float64)
        full[self.first:self.last] = X_local
        return self.group.all_reduce(full)

    def _apply_local(self, X_local: Tensor) -> Tensor:
        """Local rows of A @ X for a row-partitioned block X; collective"""
        X = self._gather_columns(X_local)
        if self.last == self.first:
            return torch.zeros(0, X.size(1), dtype=torch.float64)
        return self.local_matrix @ X

    def matvec(self, x: DistributedVector) -> DistributedVector:
        """
        y = A @ x; collective.

        x must be distributed like the rows of A (square matrices).
        """
        self._require_built()
        x._require_built()
        if x.length != self.cols:
            raise ValueError(f"Vector of length {x.length} cannot multiply a matrix of shape {self.shape}")

        if self.dense is not None:
            y = self.dense.view() @ x.local
            return DistributedVector.from_local(self.group, self.rows, 0, y, self.mode)

        if x.ownership_range != self.ownership_range:
            raise ValueError("Vector and matrix rows are distributed differently")
        y = self._apply_local(x.local.reshape(-1, 1))
        return DistributedVector.from_local(self.group, self.rows, self.first, y, self.mode)

    def gather(self, root: int = 0) -> Optional[DenseMatrix]:
        """Full dense copy on root, None elsewhere; collective"""
        self._require_built()
        if self.dense is not None:
            if self.group.rank != root:
                return None
            return DenseMatrix.from_tensor(self.dense.view(), backend=self.dense.backend)

        full = torch.zeros(self.rows, self.cols, dtype=torch.float64)
        if self.last > self.first:
            full[self.first:self.last] = self.local_matrix.to_dense()
        self.group.reduce(full, root)
        if self.group.rank != root:
            return None
        return DenseMatrix.from_tensor(full)

    def sparse_eigen(
        self,
        count: int,
        max_iterations: int = 100,
        tolerance: float = 1e-8,
        upper: bool = True
    ) -> int:
        """
        Compute extreme eigenpairs of a symmetric matrix; collective.

        Parameters
        ----------
        count : int
            Number of wanted eigenpairs
        max_iterations : int
            Maximum number of solver restarts
        tolerance : float
            Relative residual tolerance
        upper : bool
            Largest (True) or smallest (False) eigenvalues. Ignored in
            replicated mode, which computes the full spectrum in ascending
            order.

        Returns
        -------
        int
            Number of converged eigenpairs available through eigenpair()
        """
        self._require_built()
        if self.rows != self.cols:
            raise ValueError(f"Eigenproblems need a square matrix, got {self.shape}")
        if count <= 0:
            raise ValueError(f"Number of eigenpairs must be positive, got {count}")

        if self.dense is not None:
            # The dense copy is overwritten with the eigenvectors
            self._eigenvalues = self.dense.symmetric_eigen('v')
            self._converged = self.rows
            return self._converged

        solver = KrylovSchur(
            self._apply_local,
            self.group.all_reduce,
            n=self.rows,
            first=self.first,
            last=self.last,
            nev=count,
            max_iterations=max_iterations,
            tolerance=tolerance,
            largest=upper,
            verbose=self.verbose and self.group.rank == 0,
        )
        self._converged = solver.solve()
        self._solver = solver
        self._eigenvalues = solver.eigenvalues

        if self.verbose and self.group.rank == 0:
            print(f"Krylov-Schur: {self._converged} converged eigenpairs "
                  f"after {solver.iterations} iterations")
        return self._converged

    def eigenpair(self, index: int) -> Tuple[float, DistributedVector]:
        """
        Eigenvalue and eigenvector number index after sparse_eigen().

        Returns
        -------
        value : float
        vector : DistributedVector
            Built vector distributed like the rows of the matrix
        """
        if self._eigenvalues is None:
            raise RuntimeError("sparse_eigen() must be called first")
        if not 0 <= index < self._converged:
            raise IndexError(f"Eigenpair {index} not available, {self._converged} converged")

        value = float(self._eigenvalues[index])
        if self.dense is not None:
            vector = self.dense.eigenvector(index)
            return value, DistributedVector.from_local(self.group, self.rows, 0, vector, self.mode)

        vector = self._solver.eigenvectors[:, index]
        return value, DistributedVector.from_local(self.group, self.rows, self.first, vector, self.mode)

    def free(self) -> None:
        """Release storage and results"""
        if self.dense is not None:
            self.dense.free()
            self.dense = None
        self.local_matrix = None
        self._row_buf = self._col_buf = self._val_buf = torch.empty(0)
        self._staged = 0
        self._solver = None
        self._eigenvalues = None
        self._converged = 0
        self.state = UNBUILT

    def __repr__(self) -> str:
        return (f"DistributedMatrix(shape={self.shape}, rows=[{self.first}, {self.last}), "
                f"mode={self.mode}, state={self.state})")
