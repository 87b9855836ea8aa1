"""
Collective construction protocol for distributed AIJ matrices.

Every rank runs the same fixed sequence of PETSc calls:

    CREATE -> SET_SIZES -> SET_TYPE -> PREALLOCATE -> COMPRESS -> CLOSE

The steps are private; ConstructionProtocol.run() is the only entry point, so
no caller can skip or reorder a collective call on a subset of ranks. A rank
that owns no rows still takes part in every step with an empty window.

All read-only preparation (window extraction, size checks) happens in
__init__, before any collective call is issued.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from assembly.matrix_base import petsc_call
from assembly.sparsity import SparsityPatternLike
from assembly.sparsity_window import LocalSparsityWindow, count_diag_off_nnz, extract_window
from core.errors import AssemblyError, PartitionError
from core.types import AssemblyOptions
from parallel.ownership import OwnershipDescriptor
from parallel.mpi_bootstrap import bootstrap_mpi_before_petsc, comm_rank_size

bootstrap_mpi_before_petsc()

from petsc4py import PETSc

logger = logging.getLogger(__name__)


class ConstructionStep(str, Enum):
    CREATE = "create"
    SET_SIZES = "set_sizes"
    SET_TYPE = "set_type"
    PREALLOCATE = "preallocate"
    COMPRESS = "compress"
    CLOSE = "close"


# preset_nonzero_locations=False stops after preallocation and leaves the
# matrix open for inserting new locations within the per-row budgets.
PRESET_STEPS: Tuple[ConstructionStep, ...] = (
    ConstructionStep.CREATE,
    ConstructionStep.SET_SIZES,
    ConstructionStep.SET_TYPE,
    ConstructionStep.PREALLOCATE,
    ConstructionStep.COMPRESS,
    ConstructionStep.CLOSE,
)
OPEN_STEPS: Tuple[ConstructionStep, ...] = PRESET_STEPS[:4]


@dataclass(slots=True)
class ConstructionReport:
    """Outcome of one successful protocol run on this rank."""

    rank: int
    steps: List[str]
    preset_nonzero_locations: bool
    global_size: Tuple[int, int]
    local_size: Tuple[int, int]
    row_range: Tuple[int, int]
    col_range: Tuple[int, int]
    nnz_local: int
    meta: Dict[str, Any] = field(default_factory=dict)


class ConstructionProtocol:
    """
    One-shot builder of a PETSc AIJ matrix from an ownership descriptor and a
    sparsity pattern.
    """

    def __init__(
        self,
        comm,
        ownership: OwnershipDescriptor,
        pattern: SparsityPatternLike,
        options: Optional[AssemblyOptions] = None,
    ) -> None:
        if int(pattern.n_rows) != ownership.n_rows or int(pattern.n_cols) != ownership.n_cols:
            raise PartitionError(
                f"Sparsity pattern is {pattern.n_rows} x {pattern.n_cols} but the ownership "
                f"partition covers {ownership.n_rows} x {ownership.n_cols}."
            )
        if comm is None:
            # PETSc would fall back to COMM_WORLD while the ownership assumes one rank.
            raise PartitionError("A communicator is required to build a matrix from a pattern.")
        rank, size = comm_rank_size(comm)
        if ownership.size != size:
            raise PartitionError(
                f"Ownership describes {ownership.size} processes but the communicator has {size}."
            )
        if ownership.rank != rank:
            raise PartitionError(f"this_process={ownership.rank} but the communicator rank is {rank}.")

        self.comm = comm
        self.ownership = ownership
        self.options = options if options is not None else AssemblyOptions()
        self.window: LocalSparsityWindow = extract_window(ownership.row_range, pattern)
        self._mat: Optional[PETSc.Mat] = None
        self._done = False
        self._steps_run: List[str] = []

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------
    def run(self, *, preset_nonzero_locations: bool = True) -> Tuple[PETSc.Mat, ConstructionReport]:
        """
        Collective: execute all steps and return the new Mat (owned by the
        caller) plus a report. On failure the partial Mat is destroyed and
        PETScCallError propagates.
        """
        if self._done:
            raise AssemblyError("ConstructionProtocol.run() may only be called once.")
        self._done = True

        steps = PRESET_STEPS if preset_nonzero_locations else OPEN_STEPS
        handlers = {
            ConstructionStep.CREATE: self._create,
            ConstructionStep.SET_SIZES: self._set_sizes,
            ConstructionStep.SET_TYPE: self._set_type,
            ConstructionStep.PREALLOCATE: (
                self._preallocate_csr if preset_nonzero_locations else self._preallocate_counts
            ),
            ConstructionStep.COMPRESS: self._compress,
            ConstructionStep.CLOSE: self._close,
        }
        try:
            for step in steps:
                logger.debug("rank %d: construction step %s", self.ownership.rank, step.value)
                handlers[step]()
                self._steps_run.append(step.value)
        except Exception:
            if self._mat is not None:
                self._mat.destroy()
                self._mat = None
            raise

        mat = self._mat
        self._mat = None
        report = self._report(mat, preset_nonzero_locations)
        logger.info(
            "rank %d: built %s matrix %dx%d, local rows %s, local nnz %d",
            report.rank,
            self.options.mat_type,
            report.global_size[0],
            report.global_size[1],
            report.row_range,
            report.nnz_local,
        )
        return mat, report

    # ------------------------------------------------------------------
    # steps
    # ------------------------------------------------------------------
    def _create(self) -> None:
        self._mat = petsc_call(ConstructionStep.CREATE.value, PETSc.Mat().create, comm=self.comm)

    def _set_sizes(self) -> None:
        own = self.ownership
        petsc_call(
            ConstructionStep.SET_SIZES.value,
            self._mat.setSizes,
            ((own.n_local_rows, own.n_rows), (own.n_local_cols, own.n_cols)),
        )

    def _set_type(self) -> None:
        petsc_call(ConstructionStep.SET_TYPE.value, self._mat.setType, self.options.mat_type)
        if self.options.set_from_options:
            if self.options.options_prefix:
                self._mat.setOptionsPrefix(self.options.options_prefix)
            petsc_call(ConstructionStep.SET_TYPE.value, self._mat.setFromOptions)

    def _preallocate_csr(self) -> None:
        """
        CSR preallocation of exactly the window's locations. With no local
        rows the degenerate window ([0], []) is still passed.
        """
        itype = PETSc.IntType
        indptr = self.window.indptr.astype(itype, copy=False)
        cols = self.window.columns.astype(itype, copy=False)
        petsc_call(ConstructionStep.PREALLOCATE.value, self._mat.setPreallocationCSR, (indptr, cols))

    def _preallocate_counts(self) -> None:
        """Per-row diagonal/off-diagonal budgets only; no locations are preset."""
        itype = PETSc.IntType
        d_nz, o_nz = count_diag_off_nnz(self.window, self.ownership.col_range)
        petsc_call(
            ConstructionStep.PREALLOCATE.value,
            self._mat.setPreallocationNNZ,
            (d_nz.astype(itype, copy=False), o_nz.astype(itype, copy=False)),
        )
        petsc_call(ConstructionStep.PREALLOCATE.value, self._mat.setUp)
        petsc_call(
            ConstructionStep.PREALLOCATE.value,
            self._mat.setOption,
            PETSc.Mat.Option.NEW_NONZERO_ALLOCATION_ERR,
            True,
        )

    def _compress(self) -> None:
        petsc_call(ConstructionStep.COMPRESS.value, self._mat.assemble)

    def _close(self) -> None:
        mat = self._mat
        option = PETSc.Mat.Option
        if self.options.close_structure:
            petsc_call(ConstructionStep.CLOSE.value, mat.setOption, option.NEW_NONZERO_LOCATION_ERR, True)
        if self.options.keep_zero_rows:
            petsc_call(ConstructionStep.CLOSE.value, mat.setOption, option.KEEP_NONZERO_PATTERN, True)
            petsc_call(ConstructionStep.CLOSE.value, mat.setOption, option.IGNORE_ZERO_ENTRIES, False)

    # ------------------------------------------------------------------
    def _report(self, mat: PETSc.Mat, preset: bool) -> ConstructionReport:
        n_rows, n_cols = mat.getSize()
        nloc_rows, nloc_cols = mat.getLocalSize()
        d_nz, o_nz = count_diag_off_nnz(self.window, self.ownership.col_range)
        meta: Dict[str, Any] = dict(self.window.meta)
        meta["nnz_diag_block"] = int(np.sum(d_nz))
        meta["nnz_offdiag_block"] = int(np.sum(o_nz))
        return ConstructionReport(
            rank=self.ownership.rank,
            steps=list(self._steps_run),
            preset_nonzero_locations=bool(preset),
            global_size=(int(n_rows), int(n_cols)),
            local_size=(int(nloc_rows), int(nloc_cols)),
            row_range=self.ownership.row_range,
            col_range=self.ownership.col_range,
            nnz_local=self.window.nnz,
            meta=meta,
        )
