"""
Point-to-point messaging between the processes of a group.

A message is a typed buffer of count elements sent to one destination rank.
It travels as two torch.distributed transfers: a header carrying the count
and element kind (tag HEADER_TAG), then the payload (tag PAYLOAD_TAG). The
receiver learns the actual count from the header and copies at most
max_count elements into its buffer.

torch.distributed has no probe, so every process group keeps one counter
per (source, destination) channel in its TCPStore. The sender increments the
counter before posting the message; probe() compares it with the number of
messages already received on that channel. All calls on one Messenger are
serialized by a lock.

Element kinds
-------------
'int32', 'int8', 'float32', 'float64' (or the matching torch dtypes)
"""

import threading
from typing import Dict, Union, TYPE_CHECKING

import torch
import torch.distributed as dist
from torch import Tensor

from .errors import MessagingProtocolError

if TYPE_CHECKING:
    from .runtime import ProcessGroup

HEADER_TAG = 666
PAYLOAD_TAG = 667

ELEMENT_KINDS: Dict[str, torch.dtype] = {
    'int32': torch.int32,
    'int8': torch.int8,
    'float32': torch.float32,
    'float64': torch.float64,
}

# One-byte code of each kind, carried in the header
_KIND_CODES: Dict[torch.dtype, int] = {
    torch.int32: ord('i'),
    torch.int8: ord('c'),
    torch.float32: ord('f'),
    torch.float64: ord('d'),
}
_CODE_KINDS: Dict[int, torch.dtype] = {code: dtype for dtype, code in _KIND_CODES.items()}

ElementKind = Union[str, torch.dtype]


def resolve_kind(kind: ElementKind) -> torch.dtype:
    """Map an element kind to its torch dtype, rejecting unsupported kinds"""
    if isinstance(kind, torch.dtype):
        if kind in _KIND_CODES:
            return kind
    elif isinstance(kind, str) and kind in ELEMENT_KINDS:
        return ELEMENT_KINDS[kind]

    raise MessagingProtocolError(f"Invalid element kind {kind!r}, "
                                 f"supported: {', '.join(ELEMENT_KINDS)}")


class Messenger:
    """
    Typed point-to-point messages over an initialized ProcessGroup.

    Use ``group.messenger`` rather than building one directly, so that all
    callers in a process share the same lock and receive counters.
    """

    def __init__(self, group: "ProcessGroup"):
        self.group = group
        self._lock = threading.Lock()
        self._received: Dict[int, int] = {}

    def _channel(self, source: int, dest: int) -> str:
        return f"torch_dla/messages/{source}->{dest}"

    def _check_rank(self, rank: int) -> None:
        if not 0 <= rank < self.group.size:
            raise ValueError(f"Rank {rank} out of range [0, {self.group.size})")

    def _check_buffer(self, buffer: Tensor, dtype: torch.dtype, count: int) -> None:
        if buffer.dtype != dtype:
            raise MessagingProtocolError(f"Buffer of dtype {buffer.dtype} does not match element kind {dtype}")
        if buffer.device.type != 'cpu' or not buffer.is_contiguous():
            raise ValueError("Message buffers must be contiguous host tensors")
        if count > buffer.numel():
            raise ValueError(f"Buffer holds {buffer.numel()} elements, {count} requested")

    def _require_peers(self) -> None:
        if not self.group.is_distributed:
            raise RuntimeError("Messaging needs a process group with more than one process")

    def probe(self, source: int) -> bool:
        """
        True if a message from source is pending for this rank.

        Never blocks. Always False in a single-process group.
        """
        self._check_rank(source)
        if not self.group.is_distributed:
            return False

        with self._lock:
            posted = self.group.store.add(self._channel(source, self.group.rank), 0)
            return posted > self._received.get(source, 0)

    def send(self, dest: int, count: int, kind: ElementKind, buffer: Tensor) -> None:
        """
        Send the first count elements of buffer to dest.

        Blocks until the transfer is handed to the transport.
        """
        dtype = resolve_kind(kind)
        if count <= 0:
            raise ValueError(f"Message count must be positive, got {count}")
        self._check_buffer(buffer, dtype, count)
        self._check_rank(dest)
        self._require_peers()

        header = torch.tensor([count, _KIND_CODES[dtype]], dtype=torch.int64)
        with self._lock:
            self.group.store.add(self._channel(self.group.rank, dest), 1)
            dist.send(header, dst=dest, tag=HEADER_TAG)
            dist.send(buffer.view(-1)[:count], dst=dest, tag=PAYLOAD_TAG)

    def receive(self, source: int, max_count: int, kind: ElementKind, buffer: Tensor) -> int:
        """
        Blocking receive of one message from source.

        Parameters
        ----------
        source : int
            Sending rank
        max_count : int
            Capacity of buffer in elements
        kind : str or torch.dtype
            Element kind, must match the sender's
        buffer : torch.Tensor
            Contiguous host tensor of the matching dtype

        Returns
        -------
        int
            Number of elements stored, min(sent count, max_count). Elements
            beyond max_count are dropped.
        """
        dtype = resolve_kind(kind)
        if max_count < 0:
            raise ValueError(f"max_count must be non-negative, got {max_count}")
        self._check_buffer(buffer, dtype, max_count)
        self._check_rank(source)
        self._require_peers()

        header = torch.zeros(2, dtype=torch.int64)
        with self._lock:
            dist.recv(header, src=source, tag=HEADER_TAG)
            sent, code = int(header[0]), int(header[1])
            sent_dtype = _CODE_KINDS.get(code)
            if sent_dtype is None:
                raise MessagingProtocolError(f"Unknown element kind code {code} from rank {source}")

            payload = torch.empty(sent, dtype=sent_dtype)
            dist.recv(payload, src=source, tag=PAYLOAD_TAG)
            self._received[source] = self._received.get(source, 0) + 1

        if sent_dtype != dtype:
            raise MessagingProtocolError(f"Rank {source} sent {sent_dtype} elements, {dtype} expected")

        received = min(sent, max_count)
        buffer.view(-1)[:received].copy_(payload[:received])
        return received
