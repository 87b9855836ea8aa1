# -*- coding: utf-8 -*-
"""
Smoke test for distributed matrix construction (assembly.mpi_sparse_matrix).

Purpose:
- Build the same 1D Laplacian pattern with three partitions: balanced,
  everything on rank 0, and a partition where the last rank owns nothing;
- Check that every rank reports the requested local sizes and that the
  row ranges tile [0, N);
- Duplicate the structure and copy values back (reinit_from + copy_from).

Usage:
    mpiexec -n 1 python scripts/smoke_mpiaij_construction.py
    mpiexec -n 3 python scripts/smoke_mpiaij_construction.py
"""

from __future__ import annotations

import logging

from parallel.mpi_bootstrap import bootstrap_mpi_before_petsc


def main() -> None:
    bootstrap_mpi_before_petsc()

    from petsc4py import PETSc  # type: ignore

    from assembly.mpi_sparse_matrix import MPISparseMatrix
    from assembly.stencils import laplace1d_pattern
    from core.logging_utils import setup_logging
    from parallel.ownership import even_counts

    comm = PETSc.COMM_WORLD
    size = comm.getSize()
    rank = comm.getRank()
    setup_logging(rank, level=logging.INFO)
    logger = logging.getLogger(__name__)

    N = 8 * size
    pattern = laplace1d_pattern(N, fixed=True)

    partitions = {
        "even": even_counts(N, size),
        "root": [N] + [0] * (size - 1),
        "last_empty": even_counts(N, size - 1) + [0] if size > 1 else [N],
    }

    failures = 0
    for name, counts in partitions.items():
        A = MPISparseMatrix(comm, pattern, counts, counts, rank, True)
        rows = A.locally_owned_range_indices()
        ok = rows.n_elements() == counts[rank] and A.shape() == (N, N)
        all_rows = comm.tompi4py().allgather(rows.ranges())
        covered = sum(e - b for r in all_rows for b, e in r)
        ok = ok and covered == N

        for i in rows:
            A.set([i], [i], [[2.0]])
        A.compress()
        B = MPISparseMatrix()
        B.reinit_from(A)
        B.copy_from(A)
        ok = ok and abs(B.frobenius_norm() - A.frobenius_norm()) < 1.0e-14

        logger.info("partition %-10s rank %d rows %s ok=%s", name, rank, rows.ranges(), ok)
        failures += int(not ok)
        B.destroy()
        A.destroy()

    failures = comm.tompi4py().allreduce(failures)
    comm.Barrier()
    if rank == 0:
        logger.info("=== smoke_mpiaij_construction: %s ===", "ok" if failures == 0 else f"{failures} failures")
    if failures:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
