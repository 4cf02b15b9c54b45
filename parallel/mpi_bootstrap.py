from __future__ import annotations

from typing import Any, Tuple

_BOOTSTRAPPED = False
_PETSC_BOOTSTRAPPED = False


def bootstrap_mpi() -> None:
    """
    Ensure mpi4py initializes before petsc4py.
    """
    global _BOOTSTRAPPED
    if _BOOTSTRAPPED:
        return
    _BOOTSTRAPPED = True

    try:
        from mpi4py import MPI  # noqa: F401
    except Exception:
        return


def bootstrap_mpi_before_petsc() -> None:
    """
    Ensure mpi4py initializes before petsc4py, and pass argv to PETSc.
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
    except Exception:
        return

    argv = [] if os.environ.get("PYTEST_CURRENT_TEST") else sys.argv
    try:
        petsc4py.init(argv)
    except Exception:
        # PETSc may already be initialized.
        pass


def get_petsc():
    """
    Import petsc4py.PETSc after the MPI bootstrap.

    petsc4py is not imported at module import time so the scipy back end
    works in environments without PETSc.
    """
    try:
        bootstrap_mpi_before_petsc()
        from petsc4py import PETSc
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("petsc4py is required for the PETSc assembly back end.") from exc
    return PETSc


def comm_rank_size(comm: Any = None) -> Tuple[int, int]:
    """
    Rank and size of `comm` (mpi4py or PETSc communicator).

    With comm=None, MPI.COMM_WORLD is used when mpi4py is importable;
    otherwise the run is treated as serial (0, 1).
    """
    if comm is not None:
        if hasattr(comm, "Get_rank"):
            return int(comm.Get_rank()), int(comm.Get_size())
        if hasattr(comm, "getRank"):
            return int(comm.getRank()), int(comm.getSize())
        raise TypeError(f"Unsupported communicator type {type(comm).__name__}.")

    try:
        bootstrap_mpi()
        from mpi4py import MPI

        return int(MPI.COMM_WORLD.Get_rank()), int(MPI.COMM_WORLD.Get_size())
    except Exception:
        return 0, 1


def to_mpi4py(comm: Any = None):
    """
    mpi4py view of `comm`, or None for a serial run without mpi4py.
    """
    if comm is not None:
        if hasattr(comm, "tompi4py"):
            return comm.tompi4py()
        if hasattr(comm, "Get_rank"):
            return comm
        raise TypeError(f"Unsupported communicator type {type(comm).__name__}.")
    try:
        bootstrap_mpi()
        from mpi4py import MPI
    except Exception:
        return None
    return MPI.COMM_WORLD
