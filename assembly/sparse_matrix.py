"""
Sequential sparse matrix (PETSc SEQAIJ on COMM_SELF).

Built through the same construction protocol as MPISparseMatrix, with a
single-process ownership partition.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Optional

from assembly.construction import ConstructionProtocol, ConstructionReport
from assembly.matrix_base import MatrixBase
from assembly.sparsity import SparsityPatternLike
from core.types import AssemblyOptions
from parallel.ownership import OwnershipDescriptor

from petsc4py import PETSc


class SparseMatrix(MatrixBase):
    def __init__(
        self,
        pattern: Optional[SparsityPatternLike] = None,
        preset_nonzero_locations: bool = True,
        *,
        options: Optional[AssemblyOptions] = None,
    ) -> None:
        super().__init__(PETSc.COMM_SELF)
        base = options if options is not None else AssemblyOptions()
        self.options = replace(base, mat_type="seqaij")
        self.last_report: Optional[ConstructionReport] = None
        self._create_empty()
        if pattern is not None:
            self.reinit(pattern, preset_nonzero_locations)

    def reinit(self, pattern: SparsityPatternLike, preset_nonzero_locations: bool = True) -> ConstructionReport:
        self.assert_is_compressed()
        ownership = OwnershipDescriptor.from_counts([pattern.n_rows], [pattern.n_cols], 0)
        protocol = ConstructionProtocol(PETSc.COMM_SELF, ownership, pattern, self.options)
        self.destroy()
        mat, report = protocol.run(preset_nonzero_locations=preset_nonzero_locations)
        self.comm = PETSc.COMM_SELF
        self.mat = mat
        self.last_report = report
        return report

    def mmult(self, C: "SparseMatrix", B: "SparseMatrix", V: Optional[PETSc.Vec] = None) -> None:
        self._mmult(C, B, V)

    def Tmmult(self, C: "SparseMatrix", B: "SparseMatrix", V: Optional[PETSc.Vec] = None) -> None:
        self._Tmmult(C, B, V)
