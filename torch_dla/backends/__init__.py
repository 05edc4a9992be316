"""
Backend management for torch-dla

Dense matrices dispatch multiply, symmetric eigensolve and inversion to
exactly one backend per process:

Backends:
- 'pytorch': PyTorch-native reference backend (CPU) - torch.linalg
- 'scipy': SciPy backend (CPU) - direct BLAS/LAPACK calls with status codes
- 'cuda': CUDA backend (GPU) - cuBLAS/cuSOLVER through torch, pinned host memory

Distributed modes:
- 'partitioned': rows of distributed matrices are split among processes and
  stored sparsely; extreme eigenpairs come from a Krylov-Schur solver
- 'replicated': every process keeps a full dense copy (fallback)

The choice is made once per process, from the TORCH_DLA_BACKEND and
TORCH_DLA_DISTRIBUTED environment variables or from configure() called
before the first use. It cannot be switched afterwards.

Usage:
    # Resolve from the environment (TORCH_DLA_BACKEND=auto by default)
    backend = get_backend()

    # Pin the choice before anything else runs
    configure(backend='scipy', distributed='replicated')
"""

import os
from typing import Optional, List, Dict, Literal

import torch

from .base import DenseBackend
from .pytorch_backend import PyTorchBackend
from .scipy_backend import ScipyBackend, is_scipy_available
from .cuda_backend import CudaBackend, is_cuda_available

# Type aliases
BackendType = Literal['pytorch', 'scipy', 'cuda', 'auto']
DistributedMode = Literal['partitioned', 'replicated']

# Backend -> linked library, as reported by about()
BACKEND_NAMES: Dict[str, str] = {
    'pytorch': PyTorchBackend.name,
    'scipy': ScipyBackend.name,
    'cuda': CudaBackend.name,
}

DISTRIBUTED_MODES: List[str] = ['partitioned', 'replicated']

BACKEND_ENV_VAR = 'TORCH_DLA_BACKEND'
DISTRIBUTED_ENV_VAR = 'TORCH_DLA_DISTRIBUTED'

# Requested values (configure) and resolved values (first use)
_requested_backend: Optional[str] = None
_requested_mode: Optional[str] = None
_active_backend: Optional[DenseBackend] = None
_active_mode: Optional[str] = None


def is_pytorch_available() -> bool:
    """Check if PyTorch-native backend is available (always True)"""
    return True


def get_available_backends() -> List[str]:
    """Get list of available dense backends"""
    backends = ['pytorch']  # Always available

    if is_scipy_available():
        backends.append('scipy')

    if is_cuda_available():
        backends.append('cuda')

    return backends


def select_backend(device: Optional[torch.device] = None) -> str:
    """
    Auto-select the dense backend.

    Parameters
    ----------
    device : torch.device, optional
        Preferred device. When omitted, CUDA is used if available.

    Returns
    -------
    str
        Backend name ('pytorch', 'scipy' or 'cuda')
    """
    if device is None:
        device = torch.device('cuda' if is_cuda_available() else 'cpu')

    if device.type == 'cuda':
        if is_cuda_available():
            return 'cuda'
        device = torch.device('cpu')

    if device.type == 'cpu':
        # CPU: scipy links an optimized LAPACK
        if is_scipy_available():
            return 'scipy'
        return 'pytorch'

    raise ValueError(f"Unsupported device type: {device.type}")


def create_backend(name: str) -> DenseBackend:
    """
    Instantiate a dense backend by name.

    This does not change the process-wide backend; it is meant for passing a
    backend explicitly to DenseMatrix operations.
    """
    if name == 'auto':
        name = select_backend()

    if name == 'pytorch':
        return PyTorchBackend()
    elif name == 'scipy':
        return ScipyBackend()
    elif name == 'cuda':
        return CudaBackend()

    raise ValueError(f"Unknown backend: {name}. Available: {', '.join(BACKEND_NAMES)}, auto")


def configure(backend: Optional[str] = None, distributed: Optional[str] = None) -> None:
    """
    Fix the dense backend and/or distributed mode for this process.

    Must be called before the first matrix operation. Requesting a different
    value after resolution raises RuntimeError.
    """
    global _requested_backend, _requested_mode

    if backend is not None:
        if backend != 'auto' and backend not in BACKEND_NAMES:
            raise ValueError(f"Unknown backend: {backend}")
        if _active_backend is not None and backend not in ('auto', _active_backend.key):
            raise RuntimeError(f"Dense backend already resolved to '{_active_backend.key}', "
                               f"it cannot be switched to '{backend}'")
        _requested_backend = backend

    if distributed is not None:
        if distributed not in DISTRIBUTED_MODES:
            raise ValueError(f"Unknown distributed mode: {distributed}. "
                             f"Available: {', '.join(DISTRIBUTED_MODES)}")
        if _active_mode is not None and distributed != _active_mode:
            raise RuntimeError(f"Distributed mode already resolved to '{_active_mode}', "
                               f"it cannot be switched to '{distributed}'")
        _requested_mode = distributed


def get_backend() -> DenseBackend:
    """Get the process-wide dense backend, resolving it on first use"""
    global _active_backend

    if _active_backend is None:
        name = _requested_backend or os.environ.get(BACKEND_ENV_VAR, 'auto')
        _active_backend = create_backend(name.strip().lower())

    return _active_backend


def get_distributed_mode() -> str:
    """Get the process-wide distributed mode, resolving it on first use"""
    global _active_mode

    if _active_mode is None:
        mode = _requested_mode or os.environ.get(DISTRIBUTED_ENV_VAR, 'partitioned')
        mode = mode.strip().lower()
        if mode not in DISTRIBUTED_MODES:
            raise ValueError(f"Unknown distributed mode in {DISTRIBUTED_ENV_VAR}: {mode}")
        _active_mode = mode

    return _active_mode


def is_partitioned() -> bool:
    """True when the distributed (partitioned) backend is active"""
    return get_distributed_mode() == 'partitioned'


def about() -> str:
    """Name of the linked dense backend"""
    return get_backend().name


__all__ = [
    "DenseBackend",
    "PyTorchBackend",
    "ScipyBackend",
    "CudaBackend",
    "BackendType",
    "DistributedMode",
    "BACKEND_NAMES",
    "DISTRIBUTED_MODES",
    "is_pytorch_available",
    "is_scipy_available",
    "is_cuda_available",
    "get_available_backends",
    "select_backend",
    "create_backend",
    "configure",
    "get_backend",
    "get_distributed_mode",
    "is_partitioned",
    "about",
]
