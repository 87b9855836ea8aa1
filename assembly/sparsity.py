"""
Sparsity patterns consumed by the matrix construction layer.

Two concrete shapes share one read interface (SparsityPatternLike):

- SparsityPattern: fixed CSR structure. For square patterns the diagonal
  entry is always stored and comes first in its row; the remaining columns
  follow in ascending order. This is the pattern's native column order.
- DynamicSparsityPattern: per-row column sets, built incrementally. Columns
  iterate in ascending order. Passing a row IndexSet restricts storage to
  those rows (the distributed flavour: each rank keeps only the rows it
  will hand to the construction protocol).
"""

from __future__ import annotations

from typing import Iterable, Iterator, List, Optional, Protocol, Set, Tuple, runtime_checkable

import numpy as np

from core.errors import PartitionError
from parallel.index_set import IndexSet


@runtime_checkable
class SparsityPatternLike(Protocol):
    """Minimal read-only view used by the construction protocol."""

    @property
    def n_rows(self) -> int: ...

    @property
    def n_cols(self) -> int: ...

    def row_length(self, row: int) -> int: ...

    def iter_row(self, row: int) -> Iterator[int]: ...


def _check_row(row: int, n_rows: int) -> int:
    row = int(row)
    if row < 0 or row >= n_rows:
        raise IndexError(f"Row {row} outside [0, {n_rows}).")
    return row


class DynamicSparsityPattern:
    """Incrementally built pattern with one column set per stored row."""

    def __init__(self, n_rows: int, n_cols: int, row_index_set: Optional[IndexSet] = None) -> None:
        self._n_rows = int(n_rows)
        self._n_cols = int(n_cols)
        if self._n_rows < 0 or self._n_cols < 0:
            raise ValueError(f"Invalid pattern shape ({n_rows}, {n_cols}).")
        if row_index_set is not None and row_index_set.size() != self._n_rows:
            raise PartitionError(
                f"row_index_set has size {row_index_set.size()} but the pattern has {self._n_rows} rows."
            )
        self._rowset = row_index_set
        n_stored = self._n_rows if row_index_set is None else row_index_set.n_elements()
        self._rows: List[Set[int]] = [set() for _ in range(n_stored)]

    @property
    def n_rows(self) -> int:
        return self._n_rows

    @property
    def n_cols(self) -> int:
        return self._n_cols

    @property
    def shape(self) -> Tuple[int, int]:
        return self._n_rows, self._n_cols

    @property
    def row_index_set(self) -> Optional[IndexSet]:
        return self._rowset

    def stores_row(self, row: int) -> bool:
        row = _check_row(row, self._n_rows)
        return self._rowset is None or self._rowset.is_element(row)

    def _slot(self, row: int) -> Optional[Set[int]]:
        row = _check_row(row, self._n_rows)
        if self._rowset is None:
            return self._rows[row]
        if not self._rowset.is_element(row):
            return None
        return self._rows[self._rowset.index_within_set(row)]

    def _stored(self, row: int) -> Set[int]:
        slot = self._slot(row)
        if slot is None:
            raise PartitionError(f"Row {row} is not stored in this distributed sparsity pattern.")
        return slot

    def add(self, row: int, col: int) -> None:
        """Add (row, col); entries for rows this pattern does not store are dropped."""
        col = int(col)
        if col < 0 or col >= self._n_cols:
            raise IndexError(f"Column {col} outside [0, {self._n_cols}).")
        slot = self._slot(row)
        if slot is not None:
            slot.add(col)

    def add_entries(self, row: int, cols: Iterable[int]) -> None:
        cols = [int(c) for c in cols]
        for c in cols:
            if c < 0 or c >= self._n_cols:
                raise IndexError(f"Column {c} outside [0, {self._n_cols}).")
        slot = self._slot(row)
        if slot is not None:
            slot.update(cols)

    def exists(self, row: int, col: int) -> bool:
        return int(col) in self._stored(row)

    def row_length(self, row: int) -> int:
        return len(self._stored(row))

    def iter_row(self, row: int) -> Iterator[int]:
        return iter(sorted(self._stored(row)))

    def n_nonzero_elements(self) -> int:
        return sum(len(s) for s in self._rows)

    def max_entries_per_row(self) -> int:
        return max((len(s) for s in self._rows), default=0)

    def compress(self) -> None:
        """Kept for interface parity with the fixed pattern; row sets need no compression."""


class SparsityPattern:
    """Fixed CSR sparsity pattern (square patterns store their diagonal first)."""

    def __init__(self, n_rows: int, n_cols: int, indptr, indices) -> None:
        self._n_rows = int(n_rows)
        self._n_cols = int(n_cols)
        self.indptr = np.asarray(indptr, dtype=np.int64)
        self.indices = np.asarray(indices, dtype=np.int64)

        if self.indptr.shape != (self._n_rows + 1,):
            raise ValueError(
                f"indptr length mismatch: len(indptr)={self.indptr.shape[0]}, expected {self._n_rows + 1}."
            )
        if self.indptr[0] != 0 or np.any(np.diff(self.indptr) < 0):
            raise ValueError("indptr must start at 0 and be non-decreasing.")
        if int(self.indptr[-1]) != int(self.indices.size):
            raise ValueError(
                f"nnz mismatch: indptr[-1]={int(self.indptr[-1])}, len(indices)={int(self.indices.size)}."
            )
        if self.indices.size and (self.indices.min() < 0 or self.indices.max() >= self._n_cols):
            raise ValueError(f"Column indices outside [0, {self._n_cols}).")

    @classmethod
    def from_row_lists(
        cls,
        n_rows: int,
        n_cols: int,
        rows: Iterable[Iterable[int]],
        *,
        diagonal_first: Optional[bool] = None,
    ) -> "SparsityPattern":
        """
        Build from one column iterable per row.

        diagonal_first defaults to True for square patterns: the diagonal is
        inserted if missing and stored first; other columns are sorted.
        """
        n_rows = int(n_rows)
        n_cols = int(n_cols)
        if diagonal_first is None:
            diagonal_first = n_rows == n_cols
        indptr = np.zeros(n_rows + 1, dtype=np.int64)
        indices_list: List[int] = []
        row_count = 0
        for i, cols in enumerate(rows):
            if i >= n_rows:
                raise ValueError(f"Got more than {n_rows} rows.")
            cols_set = {int(c) for c in cols}
            if diagonal_first:
                cols_set.discard(i)
                indices_list.append(i)
            indices_list.extend(sorted(cols_set))
            indptr[i + 1] = len(indices_list)
            row_count = i + 1
        if row_count != n_rows:
            if not diagonal_first:
                raise ValueError(f"Expected {n_rows} rows, got {row_count}.")
            for i in range(row_count, n_rows):
                indices_list.append(i)
                indptr[i + 1] = len(indices_list)
        return cls(n_rows, n_cols, indptr, np.asarray(indices_list, dtype=np.int64))

    @classmethod
    def from_dynamic(cls, dsp: DynamicSparsityPattern) -> "SparsityPattern":
        """Copy a DynamicSparsityPattern that stores every row."""
        if dsp.row_index_set is not None and dsp.row_index_set.n_elements() != dsp.n_rows:
            raise PartitionError("Cannot build a fixed pattern from a distributed DynamicSparsityPattern.")
        return cls.from_row_lists(dsp.n_rows, dsp.n_cols, (dsp.iter_row(i) for i in range(dsp.n_rows)))

    @classmethod
    def from_scipy(cls, mat) -> "SparsityPattern":
        """Structure of a scipy.sparse matrix (stored entries, explicit zeros included)."""
        import scipy.sparse as sp

        csr = sp.csr_matrix(mat)
        csr.sort_indices()
        n_rows, n_cols = csr.shape
        indptr = csr.indptr
        return cls.from_row_lists(
            n_rows,
            n_cols,
            (csr.indices[indptr[i]:indptr[i + 1]] for i in range(n_rows)),
        )

    @property
    def n_rows(self) -> int:
        return self._n_rows

    @property
    def n_cols(self) -> int:
        return self._n_cols

    @property
    def shape(self) -> Tuple[int, int]:
        return self._n_rows, self._n_cols

    def row_length(self, row: int) -> int:
        row = _check_row(row, self._n_rows)
        return int(self.indptr[row + 1] - self.indptr[row])

    def row(self, row: int) -> np.ndarray:
        row = _check_row(row, self._n_rows)
        return self.indices[self.indptr[row]:self.indptr[row + 1]]

    def iter_row(self, row: int) -> Iterator[int]:
        return (int(c) for c in self.row(row))

    def exists(self, row: int, col: int) -> bool:
        return bool(np.any(self.row(row) == int(col)))

    def n_nonzero_elements(self) -> int:
        return int(self.indices.size)

    def max_entries_per_row(self) -> int:
        return int(np.diff(self.indptr).max()) if self._n_rows else 0

    def to_scipy(self, dtype=np.float64):
        """CSR matrix with ones at every stored location (columns in native order)."""
        import scipy.sparse as sp

        data = np.ones(self.indices.size, dtype=dtype)
        return sp.csr_matrix((data, self.indices, self.indptr), shape=self.shape)
