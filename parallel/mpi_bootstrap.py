"""
MPI/PETSc start-up and communicator helpers for the matrix layer.

mpi4py must own MPI_Init so that the communicators handed to the matrices
and the mpi4py views used for collective partition checks agree. Modules that
touch PETSc call bootstrap_mpi_before_petsc() before importing petsc4py.PETSc.
"""

from __future__ import annotations

_BOOTSTRAPPED = False
_PETSC_BOOTSTRAPPED = False


def bootstrap_mpi() -> None:
    """Import mpi4py once so MPI is initialized before PETSc sees it."""
    global _BOOTSTRAPPED
    if _BOOTSTRAPPED:
        return
    _BOOTSTRAPPED = True

    try:
        from mpi4py import MPI  # noqa: F401
    except ImportError:
        return


def bootstrap_mpi_before_petsc() -> None:
    """
    Start MPI, then petsc4py with the command line as PETSc options.

    The driver relies on this to pass -mat_* flags through. Under pytest argv
    is not forwarded so that pytest flags never reach the PETSc options
    database.
    """
    bootstrap_mpi()

    global _PETSC_BOOTSTRAPPED
    if _PETSC_BOOTSTRAPPED:
        return
    _PETSC_BOOTSTRAPPED = True

    try:
        import os
        import sys
        import petsc4py
    except ImportError:
        return

    argv = [] if os.environ.get("PYTEST_CURRENT_TEST") else sys.argv
    try:
        petsc4py.init(argv)
    except Exception:
        # PETSc may already be initialized by an earlier import.
        pass


def get_petsc():
    """
    Import petsc4py.PETSc after the MPI bootstrap.

    Modules that only need PETSc for a few calls go through here instead of
    importing petsc4py at import time.
    """
    try:
        bootstrap_mpi_before_petsc()
        from petsc4py import PETSc
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("petsc4py is required for distributed matrix construction.") from exc
    return PETSc


def get_mpi_comm(comm):
    """
    Return an mpi4py communicator for a PETSc.Comm or mpi4py comm.

    Objects that already expose ``allgather``/``allreduce`` are returned as-is,
    so tests may pass lightweight stand-ins. Returns None for a single-process
    PETSc communicator when mpi4py is unavailable.
    """
    if comm is None:
        return None
    if hasattr(comm, "allgather") and hasattr(comm, "allreduce"):
        return comm
    try:
        bootstrap_mpi()
        from mpi4py import MPI  # noqa: F401

        return comm.tompi4py()
    except ImportError as exc:
        if int(comm.getSize()) > 1:
            raise RuntimeError("mpi4py is required for collective checks in MPI mode.") from exc
        return None


def comm_rank_size(comm) -> tuple[int, int]:
    """(rank, size) for a PETSc.Comm, an mpi4py comm, or None (serial)."""
    if comm is None:
        return 0, 1
    if hasattr(comm, "getRank"):
        return int(comm.getRank()), int(comm.getSize())
    if hasattr(comm, "Get_rank"):
        return int(comm.Get_rank()), int(comm.Get_size())
    return int(comm.rank), int(comm.size)


def any_rank(comm, flag: bool) -> bool:
    """
    Collective OR of a per-rank flag.

    Every rank of comm must call this; it is how a failure detected on one
    rank is turned into an error raised on all of them.
    """
    mpicomm = get_mpi_comm(comm)
    if mpicomm is None:
        return bool(flag)
    return int(mpicomm.allreduce(int(bool(flag)))) > 0
