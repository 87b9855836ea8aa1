# -*- coding: utf-8 -*-
"""
Per-rank CSR window of a sparsity pattern.

- Only rows in this rank's ownership range are visited, in increasing order;
- Columns stay in global index space and in the pattern's native order,
  suitable for MPIAIJ CSR preallocation;
- No PETSc dependency (the row range is provided by the caller).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

import numpy as np

from assembly.sparsity import SparsityPatternLike
from core.errors import PartitionError

SENTINEL = -1


@dataclass(slots=True)
class LocalSparsityWindow:
    """
    Local (per-rank) sparsity window in CSR form.

    Contract:
    - indptr has n_local_rows + 1 entries, starts at 0, is non-decreasing.
    - Row k (global row row_start + k) owns indices[indptr[k]:indptr[k+1]].
    - indices carries one trailing SENTINEL after the last column, so a
      reader that runs one past the end never leaves the buffer. Use
      ``columns`` for the exact-length view.
    - A rank owning no rows has indptr == [0] and indices == [SENTINEL].
    """

    row_start: int
    indptr: np.ndarray
    indices: np.ndarray
    shape: Tuple[int, int]
    meta: Dict[str, float]

    @property
    def n_local_rows(self) -> int:
        return int(self.indptr.size - 1)

    @property
    def row_end(self) -> int:
        return self.row_start + self.n_local_rows

    @property
    def nnz(self) -> int:
        return int(self.indptr[-1])

    @property
    def columns(self) -> np.ndarray:
        """Column indices without the trailing sentinel (a view)."""
        return self.indices[: self.nnz]

    def row(self, k: int) -> np.ndarray:
        k = int(k)
        if k < 0 or k >= self.n_local_rows:
            raise IndexError(f"Local row {k} outside [0, {self.n_local_rows}).")
        return self.indices[self.indptr[k]:self.indptr[k + 1]]

    def row_lengths(self) -> np.ndarray:
        return np.diff(self.indptr)


def _window_meta(indptr: np.ndarray) -> Dict[str, float]:
    nloc = int(indptr.size - 1)
    nnz = int(indptr[-1])
    max_row = int(np.diff(indptr).max()) if nloc > 0 else 0
    return {
        "nnz_total": float(nnz),
        "nnz_avg": float(nnz) / float(nloc) if nloc > 0 else 0.0,
        "nnz_max_row": float(max_row),
        "n_local_rows": float(nloc),
    }


def extract_window(row_range: Tuple[int, int], pattern: SparsityPatternLike) -> LocalSparsityWindow:
    """
    Copy rows [rstart, rend) of pattern into a LocalSparsityWindow.

    Read-only on the pattern. An empty range yields the degenerate window,
    which must still be handed to preallocation on this rank.
    """
    rstart, rend = row_range
    rstart = int(rstart)
    rend = int(rend)
    n_rows = int(pattern.n_rows)
    n_cols = int(pattern.n_cols)
    if rstart < 0 or rend < 0 or rstart > rend:
        raise PartitionError(f"Invalid row range ({rstart}, {rend}).")
    if rend > n_rows:
        raise PartitionError(f"Row range end {rend} exceeds the pattern's {n_rows} rows.")

    nloc = rend - rstart
    indptr = np.zeros(nloc + 1, dtype=np.int64)
    for i in range(rstart, rend):
        indptr[i + 1 - rstart] = indptr[i - rstart] + int(pattern.row_length(i))

    nnz = int(indptr[-1])
    indices = np.full(nnz + 1, SENTINEL, dtype=np.int64)
    for i in range(rstart, rend):
        begin = int(indptr[i - rstart])
        end = int(indptr[i + 1 - rstart])
        row_cols = [int(c) for c in pattern.iter_row(i)]
        if len(row_cols) != end - begin:
            raise PartitionError(
                f"Row {i}: row_length()={end - begin} but {len(row_cols)} columns were iterated."
            )
        indices[begin:end] = row_cols

    cols = indices[:nnz]
    if cols.size and (cols.min() < 0 or cols.max() >= n_cols):
        raise PartitionError(f"Sparsity pattern column indices outside [0, {n_cols}).")

    return LocalSparsityWindow(
        row_start=rstart,
        indptr=indptr,
        indices=indices,
        shape=(n_rows, n_cols),
        meta=_window_meta(indptr),
    )


def count_diag_off_nnz(window: LocalSparsityWindow, col_range: Tuple[int, int]) -> Tuple[np.ndarray, np.ndarray]:
    """
    Split each local row's columns into the diagonal block (columns this rank
    owns) and the off-diagonal block, and count both.

    Returns arrays of length n_local_rows, aligned with local row indices.
    """
    cstart, cend = int(col_range[0]), int(col_range[1])
    if cstart < 0 or cstart > cend:
        raise PartitionError(f"Invalid column range ({cstart}, {cend}).")
    nloc = window.n_local_rows
    if nloc == 0:
        empty = np.zeros(0, dtype=np.int64)
        return empty, empty.copy()

    cols = window.columns
    row_of = np.repeat(np.arange(nloc, dtype=np.int64), window.row_lengths())
    in_diag = (cols >= cstart) & (cols < cend)
    d_nz = np.bincount(row_of[in_diag], minlength=nloc).astype(np.int64)
    o_nz = window.row_lengths().astype(np.int64) - d_nz
    return d_nz, o_nz
