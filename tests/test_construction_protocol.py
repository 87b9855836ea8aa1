from __future__ import annotations

import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from assembly.stencils import laplace1d_pattern  # noqa: E402
from core.errors import AssemblyError, PartitionError, PETScCallError  # noqa: E402
from core.types import AssemblyOptions  # noqa: E402
from parallel.ownership import OwnershipDescriptor  # noqa: E402


def _import_petsc_or_skip():
    from parallel.mpi_bootstrap import bootstrap_mpi_before_petsc

    bootstrap_mpi_before_petsc()
    pytest.importorskip("petsc4py")
    from petsc4py import PETSc

    if PETSc.COMM_WORLD.getSize() != 1:
        pytest.skip("Serial test: run with COMM_WORLD size == 1.")
    return PETSc


def test_preconditions_checked_before_any_petsc_call():
    _import_petsc_or_skip()
    from assembly.construction import ConstructionProtocol

    pattern = laplace1d_pattern(4, fixed=True)
    two_ranks = SimpleNamespace(rank=0, size=2)

    own = OwnershipDescriptor.from_counts([2, 2], [2, 2], 1)
    with pytest.raises(PartitionError, match="communicator rank"):
        ConstructionProtocol(two_ranks, own, pattern)

    own = OwnershipDescriptor.from_counts([4], [4], 0)
    with pytest.raises(PartitionError, match="processes"):
        ConstructionProtocol(two_ranks, own, pattern)

    own = OwnershipDescriptor.from_counts([3, 2], [3, 2], 0)
    with pytest.raises(PartitionError, match="covers"):
        ConstructionProtocol(two_ranks, own, pattern)


def test_window_extracted_for_owned_rows():
    _import_petsc_or_skip()
    from assembly.construction import ConstructionProtocol

    pattern = laplace1d_pattern(6, fixed=True)
    own = OwnershipDescriptor.from_counts([2, 4], [3, 3], 1)
    proto = ConstructionProtocol(SimpleNamespace(rank=1, size=2), own, pattern)
    assert proto.window.row_start == 2
    assert proto.window.n_local_rows == 4
    assert proto.window.nnz == 3 + 3 + 3 + 2


def test_run_is_one_shot():
    PETSc = _import_petsc_or_skip()
    from assembly.construction import PRESET_STEPS, ConstructionProtocol

    pattern = laplace1d_pattern(3, fixed=True)
    own = OwnershipDescriptor.from_counts([3], [3], 0)
    proto = ConstructionProtocol(PETSc.COMM_WORLD, own, pattern, AssemblyOptions(mat_type="aij"))
    mat, report = proto.run()
    try:
        assert report.steps == [s.value for s in PRESET_STEPS]
        assert report.row_range == (0, 3)
        assert mat.getSize() == (3, 3)
        with pytest.raises(AssemblyError):
            proto.run()
    finally:
        mat.destroy()


def test_failed_step_reports_step_name():
    PETSc = _import_petsc_or_skip()
    from assembly.construction import ConstructionProtocol

    pattern = laplace1d_pattern(3, fixed=True)
    own = OwnershipDescriptor.from_counts([3], [3], 0)
    options = AssemblyOptions(options_prefix="bad", set_from_options=True)
    proto = ConstructionProtocol(PETSc.COMM_WORLD, own, pattern, options)
    opts = PETSc.Options()
    opts.setValue("bad_mat_type", "no_such_type")
    try:
        with pytest.raises(PETScCallError) as info:
            proto.run()
        assert info.value.step == "set_type"
    finally:
        opts.delValue("bad_mat_type")
