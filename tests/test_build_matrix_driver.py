from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.errors import ConfigError  # noqa: E402
from core.types import PartitionSpec  # noqa: E402
from driver.build_matrix import _parse_args, partition_counts  # noqa: E402


def _import_petsc_or_skip():
    from parallel.mpi_bootstrap import bootstrap_mpi_before_petsc

    bootstrap_mpi_before_petsc()
    pytest.importorskip("petsc4py")
    from petsc4py import PETSc

    if PETSc.COMM_WORLD.getSize() != 1:
        pytest.skip("Serial test: run with COMM_WORLD size == 1.")
    return PETSc


def test_partition_counts_modes():
    assert partition_counts(PartitionSpec(mode="even"), 10, 3) == [4, 3, 3]
    assert partition_counts(PartitionSpec(mode="root"), 10, 3) == [10, 0, 0]
    assert partition_counts(PartitionSpec(mode="counts", counts=[2, 8]), 10, 2) == [2, 8]
    with pytest.raises(ConfigError, match="ranks"):
        partition_counts(PartitionSpec(mode="counts", counts=[2, 8]), 10, 3)
    with pytest.raises(ConfigError, match="sum"):
        partition_counts(PartitionSpec(mode="counts", counts=[2, 7]), 10, 2)


def test_parse_args_keeps_petsc_flags():
    args, rest = _parse_args(["case.yaml", "--index-sets", "-mat_view"])
    assert args.case_yaml == "case.yaml"
    assert args.index_sets
    assert not args.dry_run
    assert rest == ["-mat_view"]


def test_dry_run(tmp_path):
    _import_petsc_or_skip()
    from driver.build_matrix import run_case

    path = tmp_path / "dry.yaml"
    path.write_text("pattern: {kind: laplace1d, n: 4}\n", encoding="utf-8")
    assert run_case(str(path), dry_run=True) == 0


@pytest.mark.parametrize("use_index_sets", [False, True])
def test_example_case_serial(use_index_sets):
    _import_petsc_or_skip()
    from driver.build_matrix import run_case

    assert run_case(str(ROOT / "cases" / "laplace2d_even.yaml"), use_index_sets=use_index_sets) == 0
