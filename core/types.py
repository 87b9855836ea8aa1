"""
Typed containers for assembly options and YAML-driven matrix cases.

Conventions:
- Global indices are 0-based; every ownership range is half-open [start, end).
- rows_per_process / cols_per_process are ordered by communicator rank.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from core.errors import ConfigError
from core.logging_utils import is_truthy

MAT_TYPES = ("mpiaij", "aij", "seqaij")
PATTERN_KINDS = ("laplace1d", "laplace2d", "tridiag_block")
PARTITION_MODES = ("even", "counts", "root")


@dataclass(slots=True)
class AssemblyOptions:
    """Knobs for the construction protocol (YAML ``assembly`` block)."""

    mat_type: str = "mpiaij"
    # None -> MPIAIJ_CHECK_PARTITION env decides.
    check_partition: Optional[bool] = None
    keep_zero_rows: bool = True
    close_structure: bool = True
    options_prefix: str = ""
    set_from_options: bool = False

    def __post_init__(self) -> None:
        self.mat_type = str(self.mat_type).strip().lower()
        if self.mat_type not in MAT_TYPES:
            raise ConfigError(f"assembly.mat_type must be one of {MAT_TYPES}, got {self.mat_type!r}.")
        prefix = str(self.options_prefix or "").strip()
        if prefix and not prefix.endswith("_"):
            prefix = f"{prefix}_"
        self.options_prefix = prefix

    def partition_checks_enabled(self) -> bool:
        if self.check_partition is not None:
            return bool(self.check_partition)
        return is_truthy(os.environ.get("MPIAIJ_CHECK_PARTITION"))


@dataclass(slots=True)
class CaseMeta:
    """Metadata for the case block."""

    id: str
    title: str = ""
    notes: Optional[str] = None


@dataclass(slots=True)
class PatternSpec:
    """Stencil used to build the global sparsity pattern."""

    kind: str
    n: int
    block_size: int = 1

    def __post_init__(self) -> None:
        if self.kind not in PATTERN_KINDS:
            raise ConfigError(f"pattern.kind must be one of {PATTERN_KINDS}, got {self.kind!r}.")
        if int(self.n) <= 0:
            raise ConfigError(f"pattern.n must be positive, got {self.n}.")
        if int(self.block_size) <= 0:
            raise ConfigError(f"pattern.block_size must be positive, got {self.block_size}.")
        self.n = int(self.n)
        self.block_size = int(self.block_size)

    def n_unknowns(self) -> int:
        if self.kind == "laplace2d":
            return self.n * self.n
        return self.n * self.block_size


@dataclass(slots=True)
class PartitionSpec:
    """
    How rows/columns are split over ranks.

    mode:
      even   -> balanced split, remainder to the lowest ranks
      counts -> explicit per-rank counts (len == communicator size)
      root   -> rank 0 owns everything
    """

    mode: str = "even"
    counts: List[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.mode not in PARTITION_MODES:
            raise ConfigError(f"partition.mode must be one of {PARTITION_MODES}, got {self.mode!r}.")
        if self.mode == "counts" and not self.counts:
            raise ConfigError("partition.mode='counts' requires a non-empty partition.counts list.")
        self.counts = [int(c) for c in self.counts]
        if any(c < 0 for c in self.counts):
            raise ConfigError(f"partition.counts must be non-negative, got {self.counts}.")


@dataclass(slots=True)
class MatrixCase:
    """Top-level container built from a case YAML."""

    case: CaseMeta
    pattern: PatternSpec
    partition: PartitionSpec = field(default_factory=PartitionSpec)
    assembly: AssemblyOptions = field(default_factory=AssemblyOptions)
