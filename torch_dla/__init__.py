"""
torch-dla: PyTorch Distributed Linear Algebra

Dense matrix algebra with pluggable backends, and distributed sparse
symmetric eigenproblems over torch.distributed.

Backends
--------
- CPU: PyTorch (torch.linalg), SciPy (BLAS/LAPACK)
- CUDA: cuBLAS/cuSOLVER through torch, pinned host memory

Features
--------
- DenseMatrix: row-major double matrix with elementwise and backend operations
- Binary and text persistence of dense matrices
- ProcessGroup runtime with ordered initialize/finalize
- Typed point-to-point messaging with non-blocking probe
- TaskPartition for splitting independent tasks among processes
- DistributedMatrix/DistributedVector with a Krylov-Schur eigensolver
- Rank-0 writer for distributed vectors

Usage
-----
>>> from torch_dla import DenseMatrix, ProcessGroup, DistributedMatrix, write_vector
>>>
>>> # Dense eigenproblem
>>> A = DenseMatrix.alloc(2, 2, zero_fill=True)
>>> A.set(0, 0, 2.0)
>>> A.set(1, 1, 3.0)
>>> A.symmetric_eigen('v')
tensor([2., 3.], dtype=torch.float64)
>>>
>>> # Distributed eigenproblem (run with torchrun)
>>> with ProcessGroup() as group:
...     M = DistributedMatrix.alloc(group, 100, 100, non_zeros=(3, 2))
...     ...                                   # M.set(p, q, x) for every entry
...     M.build()
...     M.sparse_eigen(count=2, max_iterations=100, tolerance=1e-10, upper=True)
...     value, vector = M.eigenpair(0)
...     if group.rank == 0:
...         with open("vector.bin", "wb") as f:
...             write_vector(vector, 0, 100, f)
...     else:
...         write_vector(vector, 0, 100)
"""

from .errors import (
    DLAError,
    AllocationFailure,
    BackendFailure,
    BoundsViolation,
    MalformedPersistedData,
    MessagingProtocolError,
)

from .backends import (
    DenseBackend,
    PyTorchBackend,
    ScipyBackend,
    CudaBackend,
    # Backend utilities
    get_available_backends,
    select_backend,
    create_backend,
    configure,
    get_backend,
    get_distributed_mode,
    is_partitioned,
    about,
    # Availability checks
    is_pytorch_available,
    is_scipy_available,
    is_cuda_available,
)

from .dense import (
    DenseMatrix,
    multiply,
    add,
    sub,
)

from .io import (
    save_matrix,
    load_matrix,
    read_matrix_text,
    write_matrix_text,
    write_vector,
)

from .runtime import (
    ProcessGroup,
    ThreadLevel,
)

from .messaging import (
    Messenger,
    ELEMENT_KINDS,
    HEADER_TAG,
    PAYLOAD_TAG,
)

from .partition import (
    TaskPartition,
    ownership_range,
)

from .distributed import (
    DistributedMatrix,
    DistributedVector,
)

from .eigensolver import KrylovSchur

__version__ = "0.1.0"

__all__ = [
    # Errors
    "DLAError",
    "AllocationFailure",
    "BackendFailure",
    "BoundsViolation",
    "MalformedPersistedData",
    "MessagingProtocolError",
    # Backends
    "DenseBackend",
    "PyTorchBackend",
    "ScipyBackend",
    "CudaBackend",
    "get_available_backends",
    "select_backend",
    "create_backend",
    "configure",
    "get_backend",
    "get_distributed_mode",
    "is_partitioned",
    "about",
    "is_pytorch_available",
    "is_scipy_available",
    "is_cuda_available",
    # Dense matrices
    "DenseMatrix",
    "multiply",
    "add",
    "sub",
    # I/O
    "save_matrix",
    "load_matrix",
    "read_matrix_text",
    "write_matrix_text",
    "write_vector",
    # Runtime
    "ProcessGroup",
    "ThreadLevel",
    "Messenger",
    "ELEMENT_KINDS",
    "HEADER_TAG",
    "PAYLOAD_TAG",
    "TaskPartition",
    "ownership_range",
    # Distributed algebra
    "DistributedMatrix",
    "DistributedVector",
    "KrylovSchur",
    "__version__",
]
