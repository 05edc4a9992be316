"""
Process group runtime: one initialize/finalize lifecycle per process.

ProcessGroup brings up, in order:

1. registered extensions (the dense backend first, then user extensions)
2. the torch.distributed messaging layer, rendezvous through a TCPStore

and takes them down in reverse order. Finalization is best effort: a failing
step is reported with ``warnings.warn`` and the remaining steps still run.
An initialization failure is raised immediately.

Rank and world size come from the constructor arguments or from the
environment variables set by torchrun (RANK, WORLD_SIZE, MASTER_ADDR,
MASTER_PORT). A group of size 1 never touches torch.distributed.

Example
-------
>>> from torch_dla import ProcessGroup
>>>
>>> with ProcessGroup(verbose=True) as group:
...     print(group.rank, group.size)
"""

import os
import sys
import warnings
from dataclasses import dataclass
from datetime import timedelta
from enum import IntEnum
from typing import Callable, List, Optional, IO

import torch
import torch.distributed as dist

from .backends import get_backend, get_distributed_mode
from .messaging import Messenger


class ThreadLevel(IntEnum):
    """Threading support granted by the messaging layer"""
    SINGLE = 0
    FUNNELED = 1
    SERIALIZED = 2
    MULTIPLE = 3


@dataclass
class Extension:
    """A layer initialized before messaging and finalized after it"""
    name: str
    initialize: Callable[[], None]
    finalize: Callable[[], None]


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return default if value is None or value == '' else int(value)


class ProcessGroup:
    """
    Lifecycle and identity of this process among its peers.

    Parameters
    ----------
    rank : int, optional
        Rank of this process. Default: $RANK or 0.
    world_size : int, optional
        Number of processes. Default: $WORLD_SIZE or 1.
    backend : str
        torch.distributed backend ('gloo' for CPU tensors)
    master_addr : str, optional
        Rendezvous host. Default: $MASTER_ADDR or 'localhost'.
    master_port : int, optional
        Rendezvous port. Default: $MASTER_PORT or 29500.
    timeout : timedelta
        Timeout of rendezvous and collectives
    verbose : bool
        Print lifecycle messages prefixed with the rank
    """

    # At most one initialized group per process
    _active: Optional["ProcessGroup"] = None

    def __init__(
        self,
        rank: Optional[int] = None,
        world_size: Optional[int] = None,
        backend: str = 'gloo',
        master_addr: Optional[str] = None,
        master_port: Optional[int] = None,
        timeout: timedelta = timedelta(minutes=30),
        verbose: bool = False,
    ):
        self._requested_rank = rank
        self._requested_size = world_size
        self.backend = backend
        self.master_addr = master_addr
        self.master_port = master_port
        self.timeout = timeout
        self.verbose = verbose

        self._extensions: List[Extension] = []
        self._started: List[Extension] = []
        self._initialized = False
        self._finalized = False
        self._distributed = False
        self._rank = 0
        self._size = 1
        self._thread_level = ThreadLevel.SINGLE
        self._messenger: Optional[Messenger] = None
        self.store: Optional[dist.Store] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def register_extension(self, name: str, initialize: Callable[[], None], finalize: Callable[[], None]) -> None:
        """Add a layer to bring up before messaging (and take down after it)"""
        if self._initialized or self._finalized:
            raise RuntimeError("Extensions must be registered before init()")
        self._extensions.append(Extension(name, initialize, finalize))

    def _builtin_extensions(self) -> List[Extension]:
        backend = get_backend()
        return [Extension(f"dense backend ({backend.key})", backend.setup, backend.teardown)]

    def init(self) -> "ProcessGroup":
        """
        Initialize extensions, then messaging.

        Must be called exactly once, before any other use of the group.
        """
        if self._initialized or self._finalized:
            raise RuntimeError("ProcessGroup.init() may only be called once")
        if ProcessGroup._active is not None:
            raise RuntimeError("Another ProcessGroup is already initialized in this process")

        rank = self._requested_rank if self._requested_rank is not None else _env_int('RANK', 0)
        size = self._requested_size if self._requested_size is not None else _env_int('WORLD_SIZE', 1)
        if size <= 0 or not 0 <= rank < size:
            raise ValueError(f"Invalid rank {rank} for world size {size}")
        self._rank, self._size = rank, size

        # Distributed-algebra layers come up before messaging
        for extension in self._builtin_extensions() + self._extensions:
            extension.initialize()
            self._started.append(extension)

        if size > 1:
            self._init_messaging()

        self._initialized = True
        ProcessGroup._active = self
        self._log(f"initialized ({self.describe()})")
        return self

    def _init_messaging(self) -> None:
        addr = self.master_addr or os.environ.get('MASTER_ADDR', 'localhost')
        port = self.master_port if self.master_port is not None else _env_int('MASTER_PORT', 29500)

        self.store = dist.TCPStore(
            addr, port,
            world_size=self._size,
            is_master=(self._rank == 0),
            timeout=self.timeout,
        )
        dist.init_process_group(
            self.backend,
            store=self.store,
            rank=self._rank,
            world_size=self._size,
            timeout=self.timeout,
        )
        self._distributed = True
        self._thread_level = ThreadLevel.SERIALIZED

    def finalize(self) -> None:
        """
        Finalize messaging, then extensions in reverse order.

        Every step runs even if an earlier one fails; failures become warnings.
        """
        self._require_init()

        steps = []
        if self._distributed:
            steps.append(("barrier", dist.barrier))
            steps.append(("destroy_process_group", dist.destroy_process_group))
        for extension in reversed(self._started):
            steps.append((extension.name, extension.finalize))

        for name, step in steps:
            try:
                step()
            except Exception as e:
                warnings.warn(f"rank {self._rank}, {name} failed during finalize: {e}")

        self._log("finalized")
        self._started = []
        self._distributed = False
        self._messenger = None
        self.store = None
        self._initialized = False
        self._finalized = True
        ProcessGroup._active = None

    def __enter__(self) -> "ProcessGroup":
        if not self._initialized:
            self.init()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._initialized:
            self.finalize()

    @classmethod
    def active(cls) -> "ProcessGroup":
        """The initialized group of this process"""
        if cls._active is None:
            raise RuntimeError("No ProcessGroup is initialized")
        return cls._active

    # =========================================================================
    # Identity
    # =========================================================================

    def _require_init(self) -> None:
        if not self._initialized:
            raise RuntimeError("ProcessGroup is not initialized, call init() first")

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def rank(self) -> int:
        self._require_init()
        return self._rank

    @property
    def size(self) -> int:
        self._require_init()
        return self._size

    @property
    def thread_level(self) -> ThreadLevel:
        """Threading support actually granted (SERIALIZED when distributed)"""
        self._require_init()
        return self._thread_level

    @property
    def is_distributed(self) -> bool:
        """True if torch.distributed is up, i.e. size > 1"""
        return self._initialized and self._distributed

    @property
    def messenger(self) -> Messenger:
        """Shared point-to-point Messenger of this group"""
        self._require_init()
        if self._messenger is None:
            self._messenger = Messenger(self)
        return self._messenger

    # =========================================================================
    # Collectives
    # =========================================================================

    def barrier(self) -> None:
        """Block until every process reaches the barrier (no-op for one process)"""
        self._require_init()
        if self._distributed:
            dist.barrier()

    def all_reduce(self, tensor: torch.Tensor) -> torch.Tensor:
        """In-place global sum across processes"""
        self._require_init()
        if self._distributed:
            dist.all_reduce(tensor, op=dist.ReduceOp.SUM)
        return tensor

    def reduce(self, tensor: torch.Tensor, root: int = 0) -> torch.Tensor:
        """In-place global sum into root; other ranks' tensors are unspecified"""
        self._require_init()
        if self._distributed:
            dist.reduce(tensor, dst=root, op=dist.ReduceOp.SUM)
        return tensor

    # =========================================================================
    # Reporting
    # =========================================================================

    def describe(self) -> str:
        return (f"size={self._size}, messaging={self.backend if self._distributed else 'none'}, "
                f"dense={get_backend().key}, mode={get_distributed_mode()}")

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[Rank {self._rank}/{self._size}] {message}")

    def about(self, file: Optional[IO[str]] = None) -> None:
        """Print the linked dense backend and distributed configuration"""
        file = file if file is not None else sys.stdout
        print(f"# dense backend = {get_backend().name}", file=file)
        print("# data layout   = row-major", file=file)
        print(f"# distributed   = {get_distributed_mode()}", file=file)
        if self._initialized:
            print(f"# processes     = {self._size} (thread level {self._thread_level.name})", file=file)

    def __repr__(self) -> str:
        state = "initialized" if self._initialized else ("finalized" if self._finalized else "new")
        return f"ProcessGroup(rank={self._rank}, size={self._size}, {state})"
