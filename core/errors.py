"""
Exception types raised by the matrix construction layer.

All of them are fail-fast: a raised error means the current matrix handle
(or the partition it was built from) is unusable and must be rebuilt from
scratch on every rank.
"""

from __future__ import annotations

from typing import Optional


class AssemblyError(RuntimeError):
    """Base class for construction/assembly failures."""


class PartitionError(AssemblyError, ValueError):
    """
    Inconsistent ownership partition or sparsity/index-set sizes.

    Raised before any collective PETSc call is issued.
    """


class PETScCallError(AssemblyError):
    """
    A PETSc call failed during a construction step.

    Other ranks may be left inside a collective call, so callers should abort
    rather than retry.
    """

    def __init__(self, step: str, ierr: Optional[int] = None, message: str = "") -> None:
        self.step = str(step)
        self.ierr = ierr
        text = f"PETSc call failed in step '{self.step}'"
        if ierr is not None:
            text += f" (ierr={ierr})"
        if message:
            text += f": {message}"
        super().__init__(text)


class StructureMismatchError(AssemblyError):
    """Value copy between matrices that do not share a nonzero pattern."""


class CompressStateError(AssemblyError):
    """Insert/add modes mixed without an intermediate compress()."""


class ConfigError(ValueError):
    """Invalid case YAML or assembly options."""
