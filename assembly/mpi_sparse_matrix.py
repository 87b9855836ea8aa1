"""
Distributed sparse matrix (PETSc MPIAIJ) with precomputed nonzero structure.

Rows and columns are split into one contiguous block per rank. Each rank
hands only its own rows of the sparsity pattern to PETSc, which preallocates
exactly those locations so later value insertion never reallocates.

All constructors and reinit variants are collective over the communicator.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from assembly.construction import ConstructionProtocol, ConstructionReport
from assembly.matrix_base import MatrixBase
from assembly.sparsity import SparsityPatternLike
from core.errors import PartitionError
from core.types import AssemblyOptions
from parallel.index_set import IndexSet
from parallel.ownership import OwnershipDescriptor

from petsc4py import PETSc

logger = logging.getLogger(__name__)


class MPISparseMatrix(MatrixBase):
    """
    Parallel sparse matrix whose structure is fixed at construction.

    MPISparseMatrix() is an empty 0 x 0 matrix on COMM_SELF. Passing a
    pattern builds the matrix immediately (see reinit()).
    """

    def __init__(
        self,
        comm=None,
        pattern: Optional[SparsityPatternLike] = None,
        rows_per_process: Optional[Sequence[int]] = None,
        cols_per_process: Optional[Sequence[int]] = None,
        this_process: Optional[int] = None,
        preset_nonzero_locations: bool = True,
        *,
        options: Optional[AssemblyOptions] = None,
    ) -> None:
        super().__init__(PETSc.COMM_SELF)
        self.options = options if options is not None else AssemblyOptions()
        self.last_report: Optional[ConstructionReport] = None
        self._create_empty()
        if pattern is not None:
            if rows_per_process is None or cols_per_process is None or this_process is None:
                raise PartitionError(
                    "rows_per_process, cols_per_process and this_process are required with a pattern."
                )
            self.reinit(
                comm,
                pattern,
                rows_per_process,
                cols_per_process,
                this_process,
                preset_nonzero_locations,
            )

    @classmethod
    def from_index_sets(
        cls,
        local_rows: IndexSet,
        local_cols: IndexSet,
        pattern: SparsityPatternLike,
        comm,
        *,
        options: Optional[AssemblyOptions] = None,
    ) -> "MPISparseMatrix":
        matrix = cls(options=options)
        matrix.reinit_index_sets(local_rows, local_cols, pattern, comm)
        return matrix

    # ------------------------------------------------------------------
    # construction
    # ------------------------------------------------------------------
    def reinit(
        self,
        comm,
        pattern: SparsityPatternLike,
        rows_per_process: Sequence[int],
        cols_per_process: Sequence[int],
        this_process: int,
        preset_nonzero_locations: bool = True,
    ) -> ConstructionReport:
        """
        Collective: rebuild from per-process row/column counts.

        This rank owns rows [sum(rows_per_process[:this_process]),
        that + rows_per_process[this_process]) and likewise for columns.
        """
        self.assert_is_compressed()
        ownership = OwnershipDescriptor.from_counts(
            rows_per_process,
            cols_per_process,
            this_process,
            n_rows=pattern.n_rows,
            n_cols=pattern.n_cols,
        )
        return self._do_reinit(comm, ownership, pattern, preset_nonzero_locations)

    def reinit_index_sets(
        self,
        local_rows: IndexSet,
        local_cols: IndexSet,
        pattern: SparsityPatternLike,
        comm,
    ) -> ConstructionReport:
        """
        Collective: rebuild from this rank's contiguous row/column index sets.
        Nonzero locations are always preset.
        """
        self.assert_is_compressed()
        ownership = OwnershipDescriptor.from_index_sets(
            local_rows,
            local_cols,
            pattern.n_rows,
            pattern.n_cols,
            comm,
            check=self.options.partition_checks_enabled(),
        )
        return self._do_reinit(comm, ownership, pattern, True)

    def _do_reinit(
        self,
        comm,
        ownership: OwnershipDescriptor,
        pattern: SparsityPatternLike,
        preset_nonzero_locations: bool,
    ) -> ConstructionReport:
        protocol = ConstructionProtocol(comm, ownership, pattern, self.options)
        self.comm = comm
        self.destroy()
        mat, report = protocol.run(preset_nonzero_locations=preset_nonzero_locations)
        self.mat = mat
        self.last_report = report
        return report

    # ------------------------------------------------------------------
    # ownership queries
    # ------------------------------------------------------------------
    def locally_owned_range_indices(self) -> IndexSet:
        """Rows owned by this rank, as an IndexSet over [0, m())."""
        mat = self._require_mat()
        n_rows, _n_cols = mat.getSize()
        n_loc_rows, _n_loc_cols = mat.getLocalSize()
        rmin, rmax = mat.getOwnershipRange()
        if n_loc_rows != rmax - rmin:
            raise PartitionError("PETSc is requiring non contiguous memory allocation.")
        return IndexSet.from_range(n_rows, rmin, rmax)

    def locally_owned_domain_indices(self) -> IndexSet:
        """Columns owned by this rank, as an IndexSet over [0, n())."""
        mat = self._require_mat()
        _n_rows, n_cols = mat.getSize()
        _n_loc_rows, n_loc_cols = mat.getLocalSize()
        cmin, cmax = mat.getOwnershipRangeColumn()
        if n_loc_cols != cmax - cmin:
            raise PartitionError("PETSc is requiring non contiguous memory allocation.")
        return IndexSet.from_range(n_cols, cmin, cmax)

    # ------------------------------------------------------------------
    # matrix-matrix
    # ------------------------------------------------------------------
    def mmult(self, C: "MPISparseMatrix", B: "MPISparseMatrix", V: Optional[PETSc.Vec] = None) -> None:
        """C = A diag(V) B (V optional)."""
        self._mmult(C, B, V)

    def Tmmult(self, C: "MPISparseMatrix", B: "MPISparseMatrix", V: Optional[PETSc.Vec] = None) -> None:
        """C = A^T diag(V) B (V optional)."""
        self._Tmmult(C, B, V)
