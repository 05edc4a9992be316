"""
Error taxonomy for torch-dla.

Every error raised here is fatal for the calling layer: there are no retries
and no partial recovery. Recoverable numerical trouble is reported with
``warnings.warn`` instead.
"""


class DLAError(Exception):
    """Base class of all torch-dla errors"""


class AllocationFailure(DLAError, MemoryError):
    """Storage for a matrix or vector could not be allocated"""


class BackendFailure(DLAError, RuntimeError):
    """A numerical backend kernel returned a non-zero status"""

    def __init__(self, operation: str, status: int, rank: int = 0):
        self.operation = operation
        self.status = int(status)
        self.rank = rank
        super().__init__(f"rank {rank}, {operation} failed with error code {self.status}")


class BoundsViolation(DLAError, IndexError):
    """Element access outside the matrix shape (only when bound checking is on)"""


class MalformedPersistedData(DLAError, ValueError):
    """A persisted matrix is truncated or otherwise unreadable"""


class MessagingProtocolError(DLAError, TypeError):
    """Unsupported element kind, or a buffer that does not match it"""
