"""
Deterministic work partitioning among the processes of a group.

Two schemes are provided:

- TaskPartition: N independent tasks split in equal chunks, with the
  remainder handed out one per rank starting from rank 0
- ownership_range: contiguous row ranges for distributed matrices and
  vectors, with the remainder spread over the lowest ranks

Example
-------
>>> tasks = TaskPartition(group)
>>> tasks.set(10)            # 3 processes: chunk = 3
>>> tasks.first(), tasks.last(), tasks.extra()
(0, 2, 9)                    # on rank 0
"""

from typing import List, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from .runtime import ProcessGroup


def ownership_range(n: int, num_parts: int, part: int) -> Tuple[int, int]:
    """
    Contiguous range [first, last) of n items owned by a part.

    The first n % num_parts parts get one item more than the others, so
    sizes differ by at most one.
    """
    if num_parts <= 0:
        raise ValueError(f"num_parts must be positive, got {num_parts}")
    if not 0 <= part < num_parts:
        raise ValueError(f"part {part} out of range [0, {num_parts})")

    base, remainder = divmod(n, num_parts)
    first = part * base + min(part, remainder)
    last = first + base + (1 if part < remainder else 0)
    return first, last


class TaskPartition:
    """
    Split a number of tasks among the processes of a group.

    Each rank owns the inclusive range [first(), last()] of the regular grid
    of size*chunk tasks, where chunk = total // size. If total is not
    divisible by size, the remaining tasks are given one each to ranks
    0, 1, ... and reported by extra().
    """

    def __init__(self, group: "ProcessGroup"):
        self.group = group
        self.total: Optional[int] = None
        self.chunk = 0
        self._last_grid_index = -1
        self._extra_tasks = 0

    def set(self, total: int) -> None:
        """Divide total tasks (total > 0) among all processes"""
        if total <= 0:
            raise ValueError(f"Number of tasks must be positive, got {total}")

        size = self.group.size
        self.total = total
        self.chunk = total // size
        self._last_grid_index = (size - 1) * self.chunk + (self.chunk - 1)
        self._extra_tasks = (total - 1) - self._last_grid_index

    def _require_set(self) -> None:
        if self.total is None:
            raise RuntimeError("TaskPartition.set() must be called first")

    def first(self) -> int:
        """Index of the first task of this rank (0 on rank 0)"""
        self._require_set()
        return self.group.rank * self.chunk

    def last(self) -> int:
        """Index of the last task of this rank, inclusive (less than first() if chunk is 0)"""
        self._require_set()
        return self.group.rank * self.chunk + (self.chunk - 1)

    def extra(self) -> Optional[int]:
        """
        Index of the extra task of this rank, or None if it has none.

        Extra tasks follow the regular grid and go to the lowest ranks.
        """
        self._require_set()
        if self._extra_tasks <= 0:
            return None

        index = self._last_grid_index + self.group.rank + 1
        return index if index < self.total else None

    def tasks(self) -> List[int]:
        """All task indices of this rank: the regular range, then the extra task"""
        indices = list(range(self.first(), self.last() + 1))
        extra = self.extra()
        if extra is not None:
            indices.append(extra)
        return indices

    def __repr__(self) -> str:
        return f"TaskPartition(total={self.total}, chunk={self.chunk}, size={self.group.size})"
