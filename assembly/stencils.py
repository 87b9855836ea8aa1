"""
Stencil sparsity patterns for the driver, smoke scripts and tests.
"""

from __future__ import annotations

from typing import Optional, Union

from assembly.sparsity import DynamicSparsityPattern, SparsityPattern
from core.types import PatternSpec
from parallel.index_set import IndexSet

Pattern = Union[SparsityPattern, DynamicSparsityPattern]


def _finish(dsp: DynamicSparsityPattern, fixed: bool) -> Pattern:
    if fixed:
        return SparsityPattern.from_dynamic(dsp)
    return dsp


def laplace1d_pattern(n: int, *, row_index_set: Optional[IndexSet] = None, fixed: bool = False) -> Pattern:
    """Three-point stencil on n unknowns."""
    N = int(n)
    dsp = DynamicSparsityPattern(N, N, row_index_set)

    def add_coupling(i: int, j: int) -> None:
        if 0 <= i < N and 0 <= j < N:
            dsp.add(i, j)

    for i in range(N):
        add_coupling(i, i - 1)
        add_coupling(i, i)
        add_coupling(i, i + 1)
    return _finish(dsp, fixed)


def laplace2d_pattern(n: int, *, row_index_set: Optional[IndexSet] = None, fixed: bool = False) -> Pattern:
    """Five-point stencil on an n x n grid, lexicographic numbering."""
    n = int(n)
    N = n * n
    dsp = DynamicSparsityPattern(N, N, row_index_set)

    for I in range(N):
        i, j = divmod(I, n)
        cols = [I]
        if i > 0:
            cols.append(I - n)
        if i < n - 1:
            cols.append(I + n)
        if j > 0:
            cols.append(I - 1)
        if j < n - 1:
            cols.append(I + 1)
        dsp.add_entries(I, cols)
    return _finish(dsp, fixed)


def tridiag_block_pattern(
    n: int,
    block_size: int,
    *,
    row_index_set: Optional[IndexSet] = None,
    fixed: bool = False,
) -> Pattern:
    """
    n cells with block_size unknowns each: dense coupling inside a cell,
    per-component coupling to the neighbouring cells.
    """
    n = int(n)
    bs = int(block_size)
    N = n * bs
    dsp = DynamicSparsityPattern(N, N, row_index_set)

    for cell in range(n):
        cell_start = cell * bs
        cell_end = cell_start + bs
        for j in range(cell_start, cell_end):
            dsp.add_entries(j, range(cell_start, cell_end))
            if cell > 0:
                dsp.add(j, j - bs)
            if cell < n - 1:
                dsp.add(j, j + bs)
    return _finish(dsp, fixed)


def pattern_from_spec(spec: PatternSpec, *, row_index_set: Optional[IndexSet] = None, fixed: bool = False) -> Pattern:
    if spec.kind == "laplace1d":
        return laplace1d_pattern(spec.n, row_index_set=row_index_set, fixed=fixed)
    if spec.kind == "laplace2d":
        return laplace2d_pattern(spec.n, row_index_set=row_index_set, fixed=fixed)
    return tridiag_block_pattern(spec.n, spec.block_size, row_index_set=row_index_set, fixed=fixed)
