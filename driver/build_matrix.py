"""
Build a distributed stencil matrix from a case YAML and report its layout.

Responsibilities:
- Load MatrixCase from YAML (before PETSc is initialised).
- Split rows/columns over the ranks of COMM_WORLD.
- Build a distributed sparsity pattern holding only locally owned rows.
- Construct the MPIAIJ matrix (per-process counts or index sets).
- Fill stencil values with zero row sums and check v.(A v) == 0 for v = 1.

Usage:
    mpiexec -n 4 python -m driver.build_matrix case.yaml [--index-sets]
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional, Sequence, Tuple

from core.config import load_case
from core.errors import AssemblyError, ConfigError
from core.logging_utils import get_log_level_from_env, setup_logging
from core.types import MatrixCase, PartitionSpec
from parallel.ownership import even_counts

logger = logging.getLogger(__name__)


def partition_counts(spec: PartitionSpec, n: int, size: int) -> List[int]:
    """Per-rank counts for n rows/columns according to the partition block."""
    if spec.mode == "even":
        return even_counts(n, size)
    if spec.mode == "root":
        return [n] + [0] * (size - 1)
    if len(spec.counts) != size:
        raise ConfigError(
            f"partition.counts has {len(spec.counts)} entries but the communicator has {size} ranks."
        )
    if sum(spec.counts) != n:
        raise ConfigError(f"partition.counts sum to {sum(spec.counts)} but the pattern has {n} rows.")
    return list(spec.counts)


def fill_zero_row_sum(matrix) -> None:
    """Stencil values: -1 off the diagonal, the diagonal balances each row."""
    mat = matrix.petsc_mat()
    rstart, rend = matrix.local_range()
    # getRow() needs an assembled matrix, so read the structure before writing.
    rows = {i: [int(c) for c in mat.getRow(i)[0] if int(c) != i] for i in range(rstart, rend)}
    for i, off in rows.items():
        if off:
            matrix.set([i], off, [[-1.0] * len(off)])
        matrix.set([i], [i], [[float(len(off))]])
    matrix.compress()


def build_case_matrix(case: MatrixCase, comm, *, use_index_sets: bool = False):
    """Collective: build and fill the case's matrix on comm."""
    from assembly.mpi_sparse_matrix import MPISparseMatrix
    from assembly.stencils import pattern_from_spec
    from parallel.index_set import IndexSet

    rank = int(comm.getRank())
    size = int(comm.getSize())
    n = case.pattern.n_unknowns()
    counts = partition_counts(case.partition, n, size)
    rstart = sum(counts[:rank])
    owned = IndexSet.from_range(n, rstart, rstart + counts[rank])
    pattern = pattern_from_spec(case.pattern, row_index_set=owned)

    if use_index_sets:
        matrix = MPISparseMatrix.from_index_sets(owned, owned, pattern, comm, options=case.assembly)
    else:
        matrix = MPISparseMatrix(comm, pattern, counts, counts, rank, True, options=case.assembly)
    fill_zero_row_sum(matrix)
    return matrix


def run_case(cfg_path: str, *, use_index_sets: bool = False, dry_run: bool = False) -> int:
    case = load_case(cfg_path)

    from parallel.mpi_bootstrap import get_petsc

    PETSc = get_petsc()
    comm = PETSc.COMM_WORLD
    rank = int(comm.getRank())
    setup_logging(rank, level=get_log_level_from_env())
    logger.info("case '%s': %s n=%d on %d ranks", case.case.id, case.pattern.kind, case.pattern.n, comm.getSize())
    if dry_run:
        logger.info("dry run: configuration loaded, skipping construction.")
        return 0

    try:
        matrix = build_case_matrix(case, comm, use_index_sets=use_index_sets)
    except AssemblyError:
        logger.exception("rank %d: matrix construction failed.", rank)
        return 2

    with matrix:
        rows = matrix.locally_owned_range_indices()
        cols = matrix.locally_owned_domain_indices()
        report = matrix.last_report
        logger.info(
            "rank %d: rows %s cols %s nnz_local=%d (diag %d / off %d)",
            rank,
            rows.ranges(),
            cols.ranges(),
            report.nnz_local,
            report.meta.get("nnz_diag_block", 0),
            report.meta.get("nnz_offdiag_block", 0),
        )
        ones, _ = matrix.create_vectors()
        ones.set(1.0)
        quad = matrix.matrix_norm_square(ones)
        fro = matrix.frobenius_norm()
        nnz = matrix.n_nonzero_elements()
        ones.destroy()
    logger.info("global nnz=%d ||A||_F=%.6e  1.(A 1)=%.3e", nnz, fro, abs(quad))
    if abs(quad) > 1.0e-10 * max(fro, 1.0):
        logger.error("row sums are not zero: 1.(A 1)=%.3e", abs(quad))
        return 1
    return 0


def _parse_args(argv: Optional[Sequence[str]] = None) -> Tuple[argparse.Namespace, list[str]]:
    parser = argparse.ArgumentParser(description="Build a distributed stencil matrix from a case YAML.")
    parser.add_argument("case_yaml", help="Path to case YAML file.")
    parser.add_argument(
        "--index-sets",
        action="store_true",
        help="Construct from row/column index sets instead of per-process counts.",
    )
    parser.add_argument(
        "--dry_run",
        action="store_true",
        help="Load config only; skip matrix construction.",
    )
    args, unknown = parser.parse_known_args(argv)
    return args, list(unknown)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args, petsc_args = _parse_args(argv)
    # Prevent PETSc from parsing driver-specific CLI flags.
    sys.argv = [sys.argv[0]] + list(petsc_args)
    return run_case(args.case_yaml, use_index_sets=args.index_sets, dry_run=args.dry_run)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
