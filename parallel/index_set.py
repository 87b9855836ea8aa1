"""
Global index sets stored as sorted, disjoint half-open ranges.

An IndexSet describes which global indices out of a universe [0, size) a rank
holds. Ownership of matrix rows/columns is always one contiguous range, but
the type supports general sets so that non-contiguous input can be detected
and rejected.
"""

from __future__ import annotations

from typing import Iterable, Iterator, List, Optional, Tuple

import numpy as np

from parallel.mpi_bootstrap import get_mpi_comm, get_petsc


class IndexSet:
    """Subset of the universe [0, size), kept as merged half-open ranges."""

    __slots__ = ("_size", "_ranges")

    def __init__(self, size: int = 0) -> None:
        size = int(size)
        if size < 0:
            raise ValueError(f"IndexSet size must be non-negative, got {size}.")
        self._size = size
        self._ranges: List[Tuple[int, int]] = []

    @classmethod
    def from_range(cls, size: int, begin: int, end: int) -> "IndexSet":
        iset = cls(size)
        iset.add_range(begin, end)
        return iset

    @classmethod
    def from_indices(cls, size: int, indices: Iterable[int]) -> "IndexSet":
        iset = cls(size)
        iset.add_indices(indices)
        return iset

    @classmethod
    def from_petsc(cls, is_, size: Optional[int] = None) -> "IndexSet":
        """Build from a PETSc.IS (local indices); size defaults to the IS global size."""
        idx = np.asarray(is_.getIndices(), dtype=np.int64)
        if size is None:
            size = int(is_.getSize())
            if idx.size:
                size = max(size, int(idx.max()) + 1)
        return cls.from_indices(size, idx)

    # ------------------------------------------------------------------
    # construction
    # ------------------------------------------------------------------
    def add_range(self, begin: int, end: int) -> None:
        begin = int(begin)
        end = int(end)
        if begin < 0 or end > self._size or begin > end:
            raise ValueError(
                f"Range [{begin}, {end}) is not inside the index space [0, {self._size})."
            )
        if begin == end:
            return
        self._ranges.append((begin, end))
        self._merge()

    def add_index(self, index: int) -> None:
        index = int(index)
        self.add_range(index, index + 1)

    def add_indices(self, indices: Iterable[int]) -> None:
        idx = np.unique(np.asarray(list(indices), dtype=np.int64))
        if idx.size == 0:
            return
        if idx[0] < 0 or idx[-1] >= self._size:
            raise ValueError(f"Indices outside the index space [0, {self._size}).")
        breaks = np.nonzero(np.diff(idx) != 1)[0]
        starts = np.concatenate([idx[:1], idx[breaks + 1]])
        ends = np.concatenate([idx[breaks], idx[-1:]]) + 1
        self._ranges.extend((int(b), int(e)) for b, e in zip(starts, ends))
        self._merge()

    def _merge(self) -> None:
        if len(self._ranges) < 2:
            return
        merged: List[Tuple[int, int]] = []
        for b, e in sorted(self._ranges):
            if merged and b <= merged[-1][1]:
                if e > merged[-1][1]:
                    merged[-1] = (merged[-1][0], e)
            else:
                merged.append((b, e))
        self._ranges = merged

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def size(self) -> int:
        """Size of the universe, not the number of elements."""
        return self._size

    def n_elements(self) -> int:
        return sum(e - b for b, e in self._ranges)

    def ranges(self) -> List[Tuple[int, int]]:
        return list(self._ranges)

    def is_empty(self) -> bool:
        return not self._ranges

    def is_contiguous(self) -> bool:
        # The empty set is contiguous.
        return len(self._ranges) <= 1

    def is_element(self, index: int) -> bool:
        index = int(index)
        for b, e in self._ranges:
            if index < b:
                return False
            if index < e:
                return True
        return False

    def __contains__(self, index: int) -> bool:
        return self.is_element(index)

    def nth_index_in_set(self, n: int) -> int:
        n = int(n)
        if n < 0 or n >= self.n_elements():
            raise IndexError(f"Element {n} requested from a set with {self.n_elements()} elements.")
        for b, e in self._ranges:
            if n < e - b:
                return b + n
            n -= e - b
        raise IndexError(n)  # pragma: no cover

    def index_within_set(self, index: int) -> int:
        index = int(index)
        offset = 0
        for b, e in self._ranges:
            if b <= index < e:
                return offset + index - b
            offset += e - b
        raise KeyError(f"Index {index} is not an element of this set.")

    def first(self) -> int:
        return self.nth_index_in_set(0)

    def get_index_vector(self) -> np.ndarray:
        if not self._ranges:
            return np.empty(0, dtype=np.int64)
        return np.concatenate([np.arange(b, e, dtype=np.int64) for b, e in self._ranges])

    def __iter__(self) -> Iterator[int]:
        for b, e in self._ranges:
            yield from range(b, e)

    def __len__(self) -> int:
        return self.n_elements()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, IndexSet):
            return NotImplemented
        return self._size == other._size and self._ranges == other._ranges

    def __repr__(self) -> str:
        body = ", ".join(f"[{b}, {e})" for b, e in self._ranges)
        return f"IndexSet(size={self._size}, {{{body}}})"

    # ------------------------------------------------------------------
    # collective checks / conversion
    # ------------------------------------------------------------------
    def is_ascending_and_one_to_one(self, comm) -> bool:
        """
        Collective: True if the sets of all ranks, concatenated in rank order,
        are strictly ascending and each index appears exactly once.

        Every rank must call this, even with an empty set.
        """
        mpicomm = get_mpi_comm(comm)
        local = self.ranges()
        all_ranges = [local] if mpicomm is None else mpicomm.allgather(local)
        last = -1
        for rank_ranges in all_ranges:
            for b, e in rank_ranges:
                if b <= last:
                    return False
                last = e - 1
        return True

    def to_petsc(self, comm=None):
        """PETSc.IS with this set's indices (stride IS when contiguous)."""
        PETSc = get_petsc()
        if comm is None:
            comm = PETSc.COMM_SELF
        if self.is_contiguous():
            first = self._ranges[0][0] if self._ranges else 0
            return PETSc.IS().createStride(self.n_elements(), first=first, step=1, comm=comm)
        idx = self.get_index_vector().astype(PETSc.IntType, copy=False)
        return PETSc.IS().createGeneral(idx, comm=comm)
