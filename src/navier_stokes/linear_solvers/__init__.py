"""Outer Krylov solvers for the block system.

The PETSc backend is imported lazily so petsc4py stays optional.
"""

from .krylov import krylov_solver


def get_solver(backend="numpy"):
    """Return the solve function of ``backend`` ("numpy" or "petsc")."""
    if backend == "numpy":
        return krylov_solver
    if backend == "petsc":
        from .petsc_solver import petsc_solver

        return petsc_solver
    raise ValueError(f"Unknown Krylov backend '{backend}'")


__all__ = ["krylov_solver", "get_solver"]
