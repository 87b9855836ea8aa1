# -*- coding: utf-8 -*-
"""
Row/column ownership of a distributed matrix.

Features:
- Boundary arrays (length size+1) from per-rank counts or from index sets;
- Owner lookup for a global index;
- OwnershipDescriptor: this rank's contiguous [start, end) rows/columns,
  validated to tile the global range exactly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from core.errors import PartitionError
from parallel.index_set import IndexSet
from parallel.mpi_bootstrap import any_rank, comm_rank_size, get_mpi_comm

logger = logging.getLogger(__name__)


def get_ownership_range_from_mat_or_vec(obj) -> Tuple[int, int]:
    """
    Read the local ownership range [rstart, rend) from a PETSc Vec or Mat.
    """
    if hasattr(obj, "getOwnershipRange"):
        rstart, rend = obj.getOwnershipRange()
        return int(rstart), int(rend)
    raise TypeError(f"Object {type(obj)} does not support getOwnershipRange().")


def get_global_ownership_ranges(obj, *, columns: bool = False) -> np.ndarray:
    """
    Read global ownership boundaries from a PETSc Vec or Mat.

    Returns a shape=(size+1,) int array where ranges[p] <= j < ranges[p+1]
    is owned by rank p. With columns=True the Mat column layout is used.
    """
    name = "getOwnershipRangesColumn" if columns else "getOwnershipRanges"
    if not hasattr(obj, name):
        raise TypeError(f"Object {type(obj)} does not support {name}().")
    arr = np.asarray(getattr(obj, name)(), dtype=np.int64)
    if arr.ndim == 2 and arr.shape[1] == 2:
        arr = np.concatenate([arr[:1, 0], arr[:, 1]])
    elif arr.ndim != 1:
        arr = arr.ravel()
    return arr


def ranges_from_counts(counts: Sequence[int]) -> np.ndarray:
    """Exclusive prefix sum: [0, c0, c0+c1, ...]."""
    arr = np.asarray(list(counts), dtype=np.int64)
    if arr.ndim != 1:
        raise PartitionError(f"Per-process counts must be one-dimensional, got shape {arr.shape}.")
    if np.any(arr < 0):
        raise PartitionError(f"Per-process counts must be non-negative, got {arr.tolist()}.")
    return np.concatenate([np.zeros(1, dtype=np.int64), np.cumsum(arr)])


@dataclass
class OwnerMap:
    """
    Owner map built from ownership ranges.

    ranges: 1D array of length size+1 with non-decreasing entries.
    """

    ranges: np.ndarray

    def __post_init__(self) -> None:
        self.ranges = np.asarray(self.ranges, dtype=np.int64)
        if self.ranges.ndim != 1:
            self.ranges = self.ranges.ravel()
        if self.ranges.size < 2:
            raise PartitionError("Ownership ranges must have length >= 2.")
        if int(self.ranges[0]) != 0:
            raise PartitionError(f"Ownership ranges must start at 0, got {int(self.ranges[0])}.")
        if not np.all(self.ranges[1:] >= self.ranges[:-1]):
            raise PartitionError(f"Ownership ranges must be non-decreasing, got {self.ranges.tolist()}.")

    @property
    def size(self) -> int:
        return int(self.ranges.size - 1)

    @property
    def total(self) -> int:
        return int(self.ranges[-1])

    def range_of(self, rank: int) -> Tuple[int, int]:
        rank = int(rank)
        if rank < 0 or rank >= self.size:
            raise PartitionError(f"Rank {rank} outside [0, {self.size}).")
        return int(self.ranges[rank]), int(self.ranges[rank + 1])

    def owner_of(self, j: int) -> int:
        """
        Return the owner rank for global index j.

        Ranks owning nothing share a boundary with their neighbour; searching
        from the right picks the rank that actually holds j.
        """
        j = int(j)
        if j < 0 or j >= self.total:
            raise PartitionError(f"Global index {j} outside ownership ranges [0, {self.total}).")
        return int(np.searchsorted(self.ranges, j, side="right")) - 1

    def owners_of(self, indices: Sequence[int]) -> np.ndarray:
        idx = np.asarray(indices, dtype=np.int64).ravel()
        if idx.size and (idx.min() < 0 or idx.max() >= self.total):
            raise PartitionError(f"Global indices outside ownership ranges [0, {self.total}).")
        return np.searchsorted(self.ranges, idx, side="right") - 1


@dataclass(frozen=True)
class OwnershipDescriptor:
    """
    Contiguous block of rows and columns owned by one rank.

    row_map/col_map hold the boundaries of every rank, so row_range and
    col_range are always consistent with a gap-free tiling of the global
    index space.
    """

    n_rows: int
    n_cols: int
    rank: int
    row_map: OwnerMap
    col_map: OwnerMap

    @property
    def size(self) -> int:
        return self.row_map.size

    @property
    def row_ranges(self) -> np.ndarray:
        return self.row_map.ranges

    @property
    def col_ranges(self) -> np.ndarray:
        return self.col_map.ranges

    @property
    def row_range(self) -> Tuple[int, int]:
        return self.row_map.range_of(self.rank)

    @property
    def col_range(self) -> Tuple[int, int]:
        return self.col_map.range_of(self.rank)

    @property
    def n_local_rows(self) -> int:
        start, end = self.row_range
        return end - start

    @property
    def n_local_cols(self) -> int:
        start, end = self.col_range
        return end - start

    def owner_of_row(self, i: int) -> int:
        return self.row_map.owner_of(i)

    def owner_of_col(self, j: int) -> int:
        return self.col_map.owner_of(j)

    def row_index_set(self) -> IndexSet:
        return IndexSet.from_range(self.n_rows, *self.row_range)

    def col_index_set(self) -> IndexSet:
        return IndexSet.from_range(self.n_cols, *self.col_range)

    # ------------------------------------------------------------------
    # builders
    # ------------------------------------------------------------------
    @classmethod
    def from_counts(
        cls,
        rows_per_process: Sequence[int],
        cols_per_process: Sequence[int],
        this_process: int,
        *,
        n_rows: Optional[int] = None,
        n_cols: Optional[int] = None,
    ) -> "OwnershipDescriptor":
        """
        Derive ownership from per-rank row/column counts.

        This rank's start is the sum of the counts of all lower ranks. When
        n_rows/n_cols are given the counts must sum to them.
        """
        rows = list(rows_per_process)
        cols = list(cols_per_process)
        if len(rows) != len(cols):
            raise PartitionError(
                f"rows_per_process has {len(rows)} entries but cols_per_process has {len(cols)}."
            )
        if not rows:
            raise PartitionError("Per-process counts must not be empty.")
        this_process = int(this_process)
        if this_process < 0 or this_process >= len(rows):
            raise PartitionError(f"this_process={this_process} outside [0, {len(rows)}).")

        row_map = OwnerMap(ranges_from_counts(rows))
        col_map = OwnerMap(ranges_from_counts(cols))
        if n_rows is not None and row_map.total != int(n_rows):
            raise PartitionError(
                f"Row counts sum to {row_map.total} but the sparsity pattern has {int(n_rows)} rows."
            )
        if n_cols is not None and col_map.total != int(n_cols):
            raise PartitionError(
                f"Column counts sum to {col_map.total} but the sparsity pattern has {int(n_cols)} columns."
            )
        return cls(
            n_rows=row_map.total,
            n_cols=col_map.total,
            rank=this_process,
            row_map=row_map,
            col_map=col_map,
        )

    @classmethod
    def from_index_sets(
        cls,
        local_rows: IndexSet,
        local_cols: IndexSet,
        n_rows: int,
        n_cols: int,
        comm,
        *,
        check: bool = False,
    ) -> "OwnershipDescriptor":
        """
        Collective: derive ownership from this rank's row/column index sets.

        Every rank reaches the same verdict: local problems (sizes,
        contiguity) are OR-reduced before the boundaries are gathered, and the
        gathered counts and column starts are checked for all ranks at once. The
        counts must always sum to n_rows/n_cols; check=True only adds the
        diagnostic wording of that failure.
        """
        n_rows = int(n_rows)
        n_cols = int(n_cols)
        problem = None
        if local_rows.size() != n_rows:
            problem = (
                "SparsityPattern and IndexSet have different number of rows "
                f"({n_rows} vs {local_rows.size()})."
            )
        elif local_cols.size() != n_cols:
            problem = (
                "SparsityPattern and IndexSet have different number of columns "
                f"({n_cols} vs {local_cols.size()})."
            )
        elif not (local_rows.is_contiguous() and local_cols.is_contiguous()):
            problem = "PETSc only supports contiguous row/column ranges."

        rank, _size = comm_rank_size(comm)
        mpicomm = get_mpi_comm(comm)
        if any_rank(mpicomm, problem is not None):
            raise PartitionError(problem or "Index sets were rejected on another rank.")

        if not local_rows.is_ascending_and_one_to_one(comm):
            raise PartitionError("Row index sets are not ascending and one-to-one across the communicator.")

        local = (
            local_rows.n_elements(),
            local_cols.n_elements(),
            local_cols.first() if not local_cols.is_empty() else -1,
        )
        gathered = [local] if mpicomm is None else mpicomm.allgather(local)
        row_counts = [int(g[0]) for g in gathered]
        col_counts = [int(g[1]) for g in gathered]

        if sum(row_counts) != n_rows:
            if check:
                raise PartitionError(
                    f"Each row has to be owned by exactly one owner (n_rows()={n_rows} "
                    f"but sum(local_rows.n_elements())={sum(row_counts)})"
                )
            raise PartitionError(f"Row index sets cover {sum(row_counts)} of {n_rows} rows.")
        if sum(col_counts) != n_cols:
            if check:
                raise PartitionError(
                    f"Each column has to be owned by exactly one owner (n_cols()={n_cols} "
                    f"but sum(local_columns.n_elements())={sum(col_counts)})"
                )
            raise PartitionError(f"Column index sets cover {sum(col_counts)} of {n_cols} columns.")

        row_map = OwnerMap(ranges_from_counts(row_counts))
        col_map = OwnerMap(ranges_from_counts(col_counts))
        # Rows already tile [0, n_rows) here; column sets are not ordered yet.
        for p, g in enumerate(gathered):
            if g[1] and int(g[2]) != int(col_map.ranges[p]):
                raise PartitionError(
                    f"Column set of rank {p} starts at {int(g[2])} but lower ranks own "
                    f"{int(col_map.ranges[p])} columns; the column partition is not ascending."
                )

        descriptor = cls(
            n_rows=n_rows,
            n_cols=n_cols,
            rank=rank,
            row_map=row_map,
            col_map=col_map,
        )
        logger.debug(
            "ownership from index sets: rank=%d rows=%s cols=%s",
            rank,
            descriptor.row_range,
            descriptor.col_range,
        )
        return descriptor


def even_counts(n: int, size: int) -> list[int]:
    """Balanced split of n items over size ranks, remainder to the lowest ranks."""
    n = int(n)
    size = int(size)
    if size <= 0:
        raise PartitionError(f"Communicator size must be positive, got {size}.")
    base, rem = divmod(n, size)
    return [base + (1 if r < rem else 0) for r in range(size)]
