from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from assembly.stencils import laplace1d_pattern  # noqa: E402
from core.errors import PartitionError, StructureMismatchError  # noqa: E402
from core.types import AssemblyOptions  # noqa: E402
from parallel.index_set import IndexSet  # noqa: E402
from parallel.ownership import even_counts, get_global_ownership_ranges, ranges_from_counts  # noqa: E402


def _import_petsc_or_skip():
    from parallel.mpi_bootstrap import bootstrap_mpi_before_petsc

    bootstrap_mpi_before_petsc()
    pytest.importorskip("petsc4py")
    from petsc4py import PETSc
    return PETSc


def _import_mpi4py_or_skip():
    pytest.importorskip("mpi4py")


def _comm_or_skip():
    _import_mpi4py_or_skip()
    PETSc = _import_petsc_or_skip()
    comm = PETSc.COMM_WORLD
    if comm.getSize() < 2:
        pytest.skip("MPI test: run with mpiexec -n 2/4 ...")
    return comm


def _fill_laplace(A) -> None:
    rstart, rend = A.local_range()
    N = A.m()
    for i in range(rstart, rend):
        A.set([i], [i], [[2.0]])
        for j in (i - 1, i + 1):
            if 0 <= j < N:
                A.set([i], [j], [[-1.0]])
    A.compress()


def _check_tiling(comm, A, counts):
    mpicomm = comm.tompi4py()
    rank = comm.getRank()
    rstart, rend = A.local_range()
    assert rend - rstart == counts[rank]
    assert rstart == sum(counts[:rank])
    total = mpicomm.allreduce(rend - rstart)
    assert total == A.m()
    expected = ranges_from_counts(counts).tolist()
    assert get_global_ownership_ranges(A.petsc_mat()).tolist() == expected
    ranges = mpicomm.allgather((rstart, rend))
    for (s0, e0), (s1, _e1) in zip(ranges[:-1], ranges[1:]):
        assert e0 == s1


@pytest.mark.parametrize("layout", ["even", "root", "last_empty"])
def test_partitions_tile_rows_and_columns(layout):
    comm = _comm_or_skip()
    from assembly.mpi_sparse_matrix import MPISparseMatrix

    size = comm.getSize()
    rank = comm.getRank()
    N = 4 * size + 1
    if layout == "even":
        counts = even_counts(N, size)
    elif layout == "root":
        counts = [N] + [0] * (size - 1)
    else:
        counts = even_counts(N, size - 1) + [0]

    pattern = laplace1d_pattern(N, fixed=True)
    A = MPISparseMatrix(comm, pattern, counts, counts, rank, True)
    with A:
        _check_tiling(comm, A, counts)
        assert A.local_domain_range() == A.local_range()
        assert A.n_nonzero_elements() == pattern.n_nonzero_elements()
        rows = A.locally_owned_range_indices()
        assert rows.n_elements() == counts[rank]
        assert rows.is_empty() == (counts[rank] == 0)
        for i in rows:
            assert A.row_length(i) == pattern.row_length(i)

        _fill_laplace(A)
        ones, _ = A.create_vectors()
        ones.set(1.0)
        assert A.matrix_norm_square(ones) == pytest.approx(2.0)
        ones.destroy()
        _.destroy()


def test_different_row_and_column_partitions():
    comm = _comm_or_skip()
    from assembly.mpi_sparse_matrix import MPISparseMatrix
    from assembly.sparsity import SparsityPattern

    size = comm.getSize()
    rank = comm.getRank()
    n_rows, n_cols = 3 * size, 2 * size
    rows = [3] * size
    cols = [2] * size
    pattern = SparsityPattern.from_row_lists(n_rows, n_cols, [[i % n_cols] for i in range(n_rows)])
    A = MPISparseMatrix(comm, pattern, rows, cols, rank)
    with A:
        assert A.shape() == (n_rows, n_cols)
        assert A.local_range() == (3 * rank, 3 * rank + 3)
        assert A.local_domain_range() == (2 * rank, 2 * rank + 2)
        report = A.last_report
        assert report.meta["nnz_diag_block"] + report.meta["nnz_offdiag_block"] == 3


def test_distributed_pattern_with_index_sets():
    comm = _comm_or_skip()
    from assembly.mpi_sparse_matrix import MPISparseMatrix

    size = comm.getSize()
    rank = comm.getRank()
    N = 5 * size
    counts = even_counts(N, size)
    start = sum(counts[:rank])
    owned = IndexSet.from_range(N, start, start + counts[rank])
    pattern = laplace1d_pattern(N, row_index_set=owned)
    A = MPISparseMatrix.from_index_sets(
        owned, owned, pattern, comm, options=AssemblyOptions(check_partition=True)
    )
    with A:
        _check_tiling(comm, A, counts)
        assert A.locally_owned_range_indices() == owned
        assert A.n_nonzero_elements() == 3 * N - 2


@pytest.mark.parametrize("check", [True, False])
def test_index_sets_with_gap_fail_on_every_rank(check):
    comm = _comm_or_skip()
    from assembly.mpi_sparse_matrix import MPISparseMatrix

    size = comm.getSize()
    rank = comm.getRank()
    N = 4 * size
    # the last rank leaves its final row unowned
    end = 4 * rank + (3 if rank == size - 1 else 4)
    owned = IndexSet.from_range(N, 4 * rank, end)
    pattern = laplace1d_pattern(N, fixed=True)
    with pytest.raises(PartitionError, match="exactly one owner" if check else "cover"):
        MPISparseMatrix.from_index_sets(
            owned, owned, pattern, comm, options=AssemblyOptions(check_partition=check)
        )


def test_copy_between_partitions_is_rejected_collectively():
    comm = _comm_or_skip()
    from assembly.mpi_sparse_matrix import MPISparseMatrix

    size = comm.getSize()
    rank = comm.getRank()
    N = 4 * size
    pattern = laplace1d_pattern(N, fixed=True)
    even = even_counts(N, size)
    root = [N] + [0] * (size - 1)
    A = MPISparseMatrix(comm, pattern, even, even, rank)
    B = MPISparseMatrix(comm, pattern, root, root, rank)
    C = MPISparseMatrix()
    with A, B, C:
        _fill_laplace(A)
        with pytest.raises(StructureMismatchError):
            B.copy_from(A)

        C.reinit_from(A)
        C.copy_from(A)
        x, y = A.create_vectors()
        x.setArray(np.arange(*A.local_domain_range(), dtype=float))
        assert C.matrix_norm_square(x) == pytest.approx(A.matrix_norm_square(x))
        x.destroy()
        y.destroy()


def test_copy_with_same_nnz_but_other_layout_fails_on_every_rank():
    comm = _comm_or_skip()
    from assembly.mpi_sparse_matrix import MPISparseMatrix
    from assembly.sparsity import SparsityPattern

    size = comm.getSize()
    rank = comm.getRank()
    N = 2 * size
    counts = [2] * size
    # row 0 couples to column 1 (rank 0) in one matrix and column 2 (rank 1)
    # in the other: equal global nonzero counts, different blocks on rank 0
    local = [[1]] + [[] for _ in range(N - 1)]
    remote = [[2]] + [[] for _ in range(N - 1)]
    A = MPISparseMatrix(comm, SparsityPattern.from_row_lists(N, N, local), counts, counts, rank)
    B = MPISparseMatrix(comm, SparsityPattern.from_row_lists(N, N, remote), counts, counts, rank)
    with A, B:
        assert A.n_nonzero_elements() == B.n_nonzero_elements()
        with pytest.raises(StructureMismatchError, match="nonzero patterns"):
            B.copy_from(A)
