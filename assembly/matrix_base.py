"""
Shared base for the PETSc-backed sparse matrices.

MatrixBase exclusively owns one PETSc.Mat. Replacing the handle (reinit,
duplicate, product results) always destroys the previous one first, and
destroy() is idempotent, so each Mat is released exactly once.

Value writes follow the PETSc insert/add discipline: after set() only set()
may follow until compress(), and likewise for add().
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Optional, Sequence, Tuple

import numpy as np

from core.errors import AssemblyError, CompressStateError, PartitionError, PETScCallError, StructureMismatchError
from parallel.mpi_bootstrap import any_rank, bootstrap_mpi_before_petsc
from parallel.ownership import get_ownership_range_from_mat_or_vec

bootstrap_mpi_before_petsc()

from petsc4py import PETSc

logger = logging.getLogger(__name__)


class VectorOperation(str, Enum):
    UNKNOWN = "unknown"
    INSERT = "insert"
    ADD = "add"


def petsc_call(step: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
    """Run one PETSc call; PETSc.Error becomes PETScCallError(step, ierr)."""
    try:
        return fn(*args, **kwargs)
    except PETSc.Error as exc:
        raise PETScCallError(step, getattr(exc, "ierr", None), str(exc)) from exc


def _as_index_array(idx) -> np.ndarray:
    return np.atleast_1d(np.asarray(idx, dtype=PETSc.IntType))


def _same_local_structure(a: PETSc.Mat, b: PETSc.Mat) -> bool:
    """True if the locally owned rows of a and b store the same columns."""
    ai, aj, _av = a.getValuesCSR()
    bi, bj, _bv = b.getValuesCSR()
    return np.array_equal(ai, bi) and np.array_equal(aj, bj)


class MatrixBase:
    """Handle lifecycle, value access and arithmetic shared by all variants."""

    def __init__(self, comm=None) -> None:
        self.comm = PETSc.COMM_SELF if comm is None else comm
        self.mat: Optional[PETSc.Mat] = None
        self._last_action = VectorOperation.UNKNOWN

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def _create_empty(self) -> None:
        """0 x 0 sequential AIJ matrix on COMM_SELF."""
        self.destroy()
        mat = petsc_call("create", PETSc.Mat().createAIJ, [0, 0], nnz=0, comm=PETSc.COMM_SELF)
        petsc_call("compress", mat.assemble)
        self.comm = PETSc.COMM_SELF
        self.mat = mat

    def _adopt(self, mat: PETSc.Mat, comm=None) -> None:
        """Take exclusive ownership of mat, destroying the current handle."""
        if mat is self.mat:
            return
        self.destroy()
        self.mat = mat
        if comm is not None:
            self.comm = comm
        self._last_action = VectorOperation.UNKNOWN

    def destroy(self) -> None:
        if self.mat is not None:
            petsc_call("destroy", self.mat.destroy)
            self.mat = None
        self._last_action = VectorOperation.UNKNOWN

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.destroy()

    def petsc_mat(self) -> PETSc.Mat:
        return self._require_mat()

    def _require_mat(self) -> PETSc.Mat:
        if self.mat is None:
            raise AssemblyError(
                "Matrix has no PETSc handle (construction failed or it was destroyed); reinit it first."
            )
        return self.mat

    # ------------------------------------------------------------------
    # compress bookkeeping
    # ------------------------------------------------------------------
    @property
    def last_action(self) -> VectorOperation:
        return self._last_action

    def _prepare_action(self, action: VectorOperation) -> None:
        if self._last_action not in (VectorOperation.UNKNOWN, action):
            raise CompressStateError(
                f"Cannot {action.value} values after {self._last_action.value} without calling compress() in between."
            )
        self._last_action = action

    def assert_is_compressed(self) -> None:
        if self._last_action != VectorOperation.UNKNOWN:
            raise CompressStateError(
                f"Matrix has pending '{self._last_action.value}' operations; call compress() first."
            )

    def compress(self, operation: Optional[VectorOperation] = None) -> None:
        """Collective: finish assembly. operation, if given, must match the pending writes."""
        mat = self._require_mat()
        if operation is not None:
            operation = VectorOperation(operation)
            if self._last_action not in (VectorOperation.UNKNOWN, operation):
                raise CompressStateError(
                    f"compress({operation.value}) called but pending writes are '{self._last_action.value}'."
                )
        petsc_call("compress", mat.assemble)
        self._last_action = VectorOperation.UNKNOWN

    # ------------------------------------------------------------------
    # sizes / ownership
    # ------------------------------------------------------------------
    def m(self) -> int:
        return int(self._require_mat().getSize()[0])

    def n(self) -> int:
        return int(self._require_mat().getSize()[1])

    def shape(self) -> Tuple[int, int]:
        return self.m(), self.n()

    def local_size(self) -> int:
        return int(self._require_mat().getLocalSize()[0])

    def local_range(self) -> Tuple[int, int]:
        return get_ownership_range_from_mat_or_vec(self._require_mat())

    def local_domain_range(self) -> Tuple[int, int]:
        cstart, cend = self._require_mat().getOwnershipRangeColumn()
        return int(cstart), int(cend)

    def in_local_range(self, index: int) -> bool:
        rstart, rend = self.local_range()
        return rstart <= int(index) < rend

    def n_nonzero_elements(self) -> int:
        """Collective: number of stored entries over all ranks."""
        info = self._require_mat().getInfo(PETSc.Mat.InfoType.GLOBAL_SUM)
        return int(info["nz_used"])

    def row_length(self, row: int) -> int:
        """Stored entries in a locally owned row."""
        row = int(row)
        if not self.in_local_range(row):
            raise PartitionError(f"Row {row} is not owned by this rank (range {self.local_range()}).")
        self.assert_is_compressed()
        cols, _vals = self._require_mat().getRow(row)
        return int(len(cols))

    # ------------------------------------------------------------------
    # values
    # ------------------------------------------------------------------
    def set(self, rows, cols, values) -> None:
        """Insert values (scalar or len(rows) x len(cols) block)."""
        mat = self._require_mat()
        self._prepare_action(VectorOperation.INSERT)
        petsc_call(
            "set_values",
            mat.setValues,
            _as_index_array(rows),
            _as_index_array(cols),
            np.asarray(values, dtype=PETSc.ScalarType),
            addv=PETSc.InsertMode.INSERT_VALUES,
        )

    def add(self, rows, cols, values) -> None:
        mat = self._require_mat()
        self._prepare_action(VectorOperation.ADD)
        petsc_call(
            "add_values",
            mat.setValues,
            _as_index_array(rows),
            _as_index_array(cols),
            np.asarray(values, dtype=PETSc.ScalarType),
            addv=PETSc.InsertMode.ADD_VALUES,
        )

    def el(self, row: int, col: int) -> float:
        """Entry (row, col) of a locally owned row; 0 if not stored."""
        row = int(row)
        if not self.in_local_range(row):
            raise PartitionError(f"Row {row} is not owned by this rank (range {self.local_range()}).")
        self.assert_is_compressed()
        return self._require_mat().getValue(row, int(col))

    def diag_element(self, i: int) -> float:
        if self.m() != self.n():
            raise AssemblyError("diag_element() requires a square matrix.")
        return self.el(i, i)

    def assign(self, value: float) -> None:
        """Only zero is accepted: set every stored entry to 0, keeping the structure."""
        if value != 0:
            raise ValueError("Scalar assignment is only allowed for the value zero.")
        self.assert_is_compressed()
        petsc_call("zero_entries", self._require_mat().zeroEntries)

    def clear_rows(self, rows: Sequence[int], new_diag_value: float = 0.0) -> None:
        """
        Collective: zero the given locally owned rows and put new_diag_value
        on their diagonal. The rows stay in the nonzero structure.
        """
        self.assert_is_compressed()
        idx = np.asarray(list(rows), dtype=PETSc.IntType)
        petsc_call("clear_rows", self._require_mat().zeroRows, idx, diag=new_diag_value)

    def scale(self, factor: float) -> None:
        self.assert_is_compressed()
        petsc_call("scale", self._require_mat().scale, factor)

    def __imul__(self, factor: float):
        self.scale(factor)
        return self

    def __itruediv__(self, factor: float):
        if factor == 0:
            raise ZeroDivisionError("Cannot divide a matrix by zero.")
        self.scale(1.0 / factor)
        return self

    # ------------------------------------------------------------------
    # norms
    # ------------------------------------------------------------------
    def l1_norm(self) -> float:
        return float(self._require_mat().norm(PETSc.NormType.NORM_1))

    def linfty_norm(self) -> float:
        return float(self._require_mat().norm(PETSc.NormType.NORM_INFINITY))

    def frobenius_norm(self) -> float:
        return float(self._require_mat().norm(PETSc.NormType.NORM_FROBENIUS))

    def trace(self):
        mat = self._require_mat()
        if self.m() != self.n():
            raise AssemblyError("trace() requires a square matrix.")
        diag = mat.createVecLeft()
        try:
            mat.getDiagonal(diag)
            return diag.sum()
        finally:
            diag.destroy()

    def is_symmetric(self, tol: float = 0.0) -> bool:
        return bool(self._require_mat().isSymmetric(tol))

    # ------------------------------------------------------------------
    # matrix-vector
    # ------------------------------------------------------------------
    def create_vectors(self) -> Tuple[PETSc.Vec, PETSc.Vec]:
        """(domain vector, range vector) laid out like this matrix's columns/rows."""
        right, left = self._require_mat().createVecs()
        return right, left

    def vmult(self, dst: PETSc.Vec, src: PETSc.Vec) -> None:
        """dst = A src"""
        petsc_call("vmult", self._require_mat().mult, src, dst)

    def Tvmult(self, dst: PETSc.Vec, src: PETSc.Vec) -> None:
        """dst = A^T src"""
        petsc_call("Tvmult", self._require_mat().multTranspose, src, dst)

    def vmult_add(self, dst: PETSc.Vec, src: PETSc.Vec) -> None:
        """dst += A src"""
        petsc_call("vmult_add", self._require_mat().multAdd, src, dst, dst)

    def matrix_norm_square(self, v: PETSc.Vec):
        """v . (A v); collective."""
        tmp = v.duplicate()
        try:
            self.vmult(tmp, v)
            # Vec.dot(y) is y^H x, so this conjugates v.
            return tmp.dot(v)
        finally:
            tmp.destroy()

    def matrix_scalar_product(self, u: PETSc.Vec, v: PETSc.Vec):
        """u . (A v); collective."""
        tmp = v.duplicate()
        try:
            self.vmult(tmp, v)
            return tmp.dot(u)
        finally:
            tmp.destroy()

    # ------------------------------------------------------------------
    # structure duplication / value copy
    # ------------------------------------------------------------------
    def reinit_from(self, other: "MatrixBase") -> None:
        """
        Collective: become a structural duplicate of other (same sizes, layout
        and nonzero pattern; values are not copied).
        """
        if other is self:
            return
        src = other._require_mat()
        other.assert_is_compressed()
        self.comm = other.comm
        self.destroy()
        self.mat = petsc_call("duplicate", src.duplicate, copy=False)
        self._last_action = VectorOperation.UNKNOWN
        logger.debug("duplicated structure: global=%s local=%s", self.mat.getSize(), self.mat.getLocalSize())

    def copy_from(self, other: "MatrixBase") -> None:
        """
        Collective: copy values from other, which must share this matrix's
        nonzero pattern.

        The sizes and the local row structure of both matrices are compared
        on every rank and the verdict is OR-reduced, so a mismatch on any rank
        raises StructureMismatchError on all of them.
        """
        if other is self:
            return
        dst = self._require_mat()
        src = other._require_mat()
        self.assert_is_compressed()
        other.assert_is_compressed()

        mismatch = (
            tuple(src.getLocalSize()) != tuple(dst.getLocalSize())
            or tuple(src.getSize()) != tuple(dst.getSize())
        )
        if any_rank(self.comm, mismatch):
            raise StructureMismatchError(
                f"copy_from: sizes differ (source {src.getSize()} local {src.getLocalSize()}, "
                f"destination {dst.getSize()} local {dst.getLocalSize()})."
            )
        if any_rank(self.comm, not _same_local_structure(src, dst)):
            raise StructureMismatchError("copy_from: source and destination have different nonzero patterns.")

        error = None
        try:
            src.copy(dst, structure=PETSc.Mat.Structure.SAME_NONZERO_PATTERN)
        except PETSc.Error as exc:
            error = exc
        if any_rank(self.comm, error is not None):
            ierr = getattr(error, "ierr", None) if error is not None else None
            raise StructureMismatchError(
                f"copy_from: PETSc rejected SAME_NONZERO_PATTERN copy (ierr={ierr})."
            ) from error
        self.comm = other.comm

    # ------------------------------------------------------------------
    # matrix-matrix
    # ------------------------------------------------------------------
    def _scaled_operand(self, B: "MatrixBase", V: Optional[PETSc.Vec]) -> Tuple[PETSc.Mat, bool]:
        b = B._require_mat()
        if V is None or V.getSize() == 0:
            return b, False
        if V.getSize() != B.m():
            raise PartitionError(f"Scaling vector has size {V.getSize()}, expected {B.m()}.")
        tmp = petsc_call("duplicate", b.duplicate, copy=True)
        petsc_call("diagonal_scale", tmp.diagonalScale, V, None)
        return tmp, True

    def _mmult(self, C: "MatrixBase", B: "MatrixBase", V: Optional[PETSc.Vec] = None) -> None:
        """C = A diag(V) B, or C = A B without V. C's previous handle is destroyed."""
        if self.n() != B.m():
            raise PartitionError(f"mmult: A has {self.n()} columns but B has {B.m()} rows.")
        self.assert_is_compressed()
        B.assert_is_compressed()
        operand, owned = self._scaled_operand(B, V)
        try:
            result = petsc_call("mmult", self._require_mat().matMult, operand)
        finally:
            if owned:
                operand.destroy()
        C._adopt(result, self.comm)

    def _Tmmult(self, C: "MatrixBase", B: "MatrixBase", V: Optional[PETSc.Vec] = None) -> None:
        """C = A^T diag(V) B, or C = A^T B without V."""
        if self.m() != B.m():
            raise PartitionError(f"Tmmult: A has {self.m()} rows but B has {B.m()} rows.")
        self.assert_is_compressed()
        B.assert_is_compressed()
        operand, owned = self._scaled_operand(B, V)
        try:
            result = petsc_call("Tmmult", self._require_mat().transposeMatMult, operand)
        finally:
            if owned:
                operand.destroy()
        C._adopt(result, self.comm)
