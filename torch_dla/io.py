"""
I/O for dense matrices and distributed vectors.

Binary format (matrices)
------------------------
- rows, cols as two native unsigned size_t
- rows*cols native doubles in row-major order

Text format (matrices)
----------------------
One line per row, values separated by spaces or tabs. Empty lines and lines
starting with '#' are skipped; a line holding only spaces or tabs is a row
without values. Values are written as ``% -8e`` followed by a
tab.

Distributed vectors
-------------------
write_vector() writes a range of a distributed vector as raw native doubles,
in global index order, with rank 0 as the only writer.

Example
-------
>>> from torch_dla import DenseMatrix
>>> A.save("matrix.bin")
>>> B = DenseMatrix.load("matrix.bin")
>>> with open("matrix.txt", "w") as f:
...     A.write_text(f)
"""

import os
import re
import struct
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Union, IO, TYPE_CHECKING

import numpy as np
import torch

from .dense import DenseMatrix
from .errors import MalformedPersistedData
from .backends import DenseBackend

if TYPE_CHECKING:
    from .distributed import DistributedVector

PathLike = Union[str, os.PathLike, Path]

# Native byte order and sizes, no padding
_HEADER = struct.Struct('@NN')
_DOUBLE = np.dtype('=f8')

# Longest numeric prefix of a token, as atof() reads it
_FLOAT_PREFIX = re.compile(
    r'[+-]?(?:inf(?:inity)?|nan|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)',
    re.IGNORECASE,
)
_SEPARATORS = re.compile(r'[ \t]+')


@contextmanager
def _open(file, mode: str):
    """Yield an open file object; paths are opened and closed, streams are borrowed"""
    if hasattr(file, 'read') or hasattr(file, 'write'):
        yield file
    else:
        with open(file, mode) as f:
            yield f


def _read_exactly(f, size: int, what: str) -> bytes:
    data = f.read(size)
    if data is None or len(data) != size:
        got = 0 if data is None else len(data)
        raise MalformedPersistedData(f"truncated matrix file: expected {size} bytes of {what}, got {got}")
    return data


def _remaining_bytes(f) -> Optional[int]:
    """Bytes between the current position and the end, None for unseekable streams"""
    if not (hasattr(f, 'seekable') and f.seekable()):
        return None
    position = f.tell()
    end = f.seek(0, os.SEEK_END)
    f.seek(position)
    return end - position


def _parse_float(token: str) -> float:
    """Parse the leading number of a token; 0.0 when there is none"""
    match = _FLOAT_PREFIX.match(token.lstrip())
    if match is None:
        return 0.0
    return float(match.group(0))


# =============================================================================
# Dense matrices
# =============================================================================

def save_matrix(m: DenseMatrix, file: Union[PathLike, IO[bytes]]) -> None:
    """
    Save a matrix in binary format.

    Parameters
    ----------
    m : DenseMatrix
        Matrix to save
    file : str, Path or binary file object
        Destination; a path is created or truncated
    """
    with _open(file, 'wb') as f:
        f.write(_HEADER.pack(m.rows, m.cols))
        f.write(m.view().numpy().astype(_DOUBLE, copy=False).tobytes())


def load_matrix(
    file: Union[PathLike, IO[bytes]],
    backend: Optional[DenseBackend] = None
) -> DenseMatrix:
    """
    Load a matrix saved by save_matrix.

    Raises
    ------
    MalformedPersistedData
        If the header or the element data is short
    """
    with _open(file, 'rb') as f:
        rows, cols = _HEADER.unpack(_read_exactly(f, _HEADER.size, "header"))
        count = rows * cols
        size = count * _DOUBLE.itemsize
        remaining = _remaining_bytes(f)
        if remaining is not None and remaining < size:
            raise MalformedPersistedData(f"truncated matrix file: header declares {rows}x{cols}, "
                                         f"expected {size} bytes of elements, got {remaining}")
        data = _read_exactly(f, size, "elements")

    m = DenseMatrix.alloc(rows, cols, backend=backend)
    m.view().numpy().reshape(-1)[:] = np.frombuffer(data, dtype=_DOUBLE, count=count)
    return m


def read_matrix_text(
    source: Union[PathLike, IO[str]],
    rows: int,
    cols: int,
    out: Optional[DenseMatrix] = None
) -> DenseMatrix:
    """
    Read a rows-by-cols matrix from a text file.

    Reading starts from the beginning of the stream. Empty lines and lines
    starting with '#' are skipped. Rows with fewer than
    cols tokens leave the remaining cells unchanged (zero for a new matrix);
    extra tokens are ignored. A token that is not a number reads as 0.0.

    Parameters
    ----------
    source : str, Path or text file object
        Input
    rows, cols : int
        Number of data rows and values per row to read
    out : DenseMatrix, optional
        Matrix to fill; allocated zero-filled when omitted

    Returns
    -------
    DenseMatrix
        out, or the new matrix
    """
    if out is None:
        out = DenseMatrix.alloc(rows, cols, zero_fill=True)
    if out.rows < rows or out.cols < cols:
        raise ValueError(f"Matrix of shape {out.shape} cannot hold {rows}x{cols} values")

    with _open(source, 'r') as f:
        if hasattr(f, 'seekable') and f.seekable():
            f.seek(0)

        p = 0
        for line in f:
            if p >= rows:
                break
            # Whitespace-only lines are data rows without tokens
            if line[:1] in ('#', '\n', '\r', ''):
                continue

            tokens = [t for t in _SEPARATORS.split(line.rstrip('\r\n')) if t]
            for q, token in enumerate(tokens[:cols]):
                out.set(p, q, _parse_float(token))
            p += 1

    return out


def write_matrix_text(
    m: DenseMatrix,
    stream: IO[str],
    rows: Optional[int] = None,
    cols: Optional[int] = None
) -> None:
    """Write min(rows, m.rows) lines of min(cols, m.cols) values"""
    rows = m.rows if rows is None else min(rows, m.rows)
    cols = m.cols if cols is None else min(cols, m.cols)

    values = m.view()
    for p in range(rows):
        stream.write(''.join(format(float(x), '< 8e') + '\t' for x in values[p, :cols].tolist()))
        stream.write('\n')


# =============================================================================
# Distributed vectors
# =============================================================================

def write_vector(
    vector: "DistributedVector",
    start: int,
    end: int,
    stream: Optional[IO[bytes]] = None
) -> None:
    """
    Write elements [start, end) of a distributed vector as raw doubles.

    All processes of the vector's group must call this. Rank 0 writes its
    own part, then collects the other ranks' parts in ascending rank order.
    Each non-zero rank first sends rank 0 the number of elements it holds in
    the range (possibly zero), then the elements one at a time, so the file
    is complete and in global index order.

    With a replicated vector, the caller writes the range directly.

    Parameters
    ----------
    vector : DistributedVector
        Built vector
    start, end : int
        Range to write, 0 <= start < end <= vector.length
    stream : binary file object, optional
        Destination; required on rank 0 in partitioned mode. Ignored on
        other ranks.
    """
    if not 0 <= start < end <= vector.length:
        raise ValueError(f"Invalid range [{start}, {end}) for a vector of length {vector.length}")

    local = vector.local
    if not vector.is_partitioned:
        if stream is not None:
            stream.write(local[start:end].numpy().astype(_DOUBLE, copy=False).tobytes())
        return

    group = vector.group
    if group.rank == 0 and stream is None:
        raise ValueError("Rank 0 needs an output stream")

    messenger = group.messenger
    group.barrier()

    first, last = vector.ownership_range
    lo, hi = max(start, first), min(end, last)

    if group.rank == 0:
        if lo < hi:
            stream.write(local[lo - first:hi - first].numpy().astype(_DOUBLE, copy=False).tobytes())

        count = torch.zeros(1, dtype=torch.int32)
        value = torch.zeros(1, dtype=torch.float64)
        for source in range(1, group.size):
            messenger.receive(source, 1, 'int32', count)
            for _ in range(int(count[0])):
                messenger.receive(source, 1, 'float64', value)
                stream.write(value.numpy().tobytes())
    else:
        count = torch.tensor([max(hi - lo, 0)], dtype=torch.int32)
        messenger.send(0, 1, 'int32', count)
        for n in range(lo, hi):
            messenger.send(0, 1, 'float64', local[n - first:n - first + 1])
