"""PETSc FGMRES backend with the block preconditioner as a Python shell PC."""

import logging

import numpy as np
from petsc4py import PETSc

from ..datastructures import SolverInfo

log = logging.getLogger(__name__)


class _ShellPreconditioner:
    """PETSc python-context wrapper around ``BlockPreconditioner.apply``."""

    def __init__(self, preconditioner):
        self.preconditioner = preconditioner

    def apply(self, pc, x, y):
        y.setArray(self.preconditioner.apply(x.getArray(readonly=True)))


def petsc_solver(
    matrix,
    rhs,
    preconditioner=None,
    x0=None,
    tolerance=1e-4,
    max_iterations=1000,
    restart=50,
):
    """Solve A x = b with PETSc FGMRES; same contract as ``krylov_solver``.

    Parameters
    ----------
    matrix : BlockSparseMatrix or csr_matrix
        System matrix.
    rhs : np.ndarray
        Right-hand side vector.
    preconditioner : BlockPreconditioner, optional
        Applied on the right through a PETSc shell PC; none if None.
    x0 : np.ndarray, optional
        Initial guess.
    tolerance : float, optional
        Relative residual tolerance (default: 1e-4).
    max_iterations : int, optional
        Maximum number of iterations (default: 1000).
    restart : int, optional
        GMRES restart length (default: 50).

    Returns
    -------
    x_np : np.ndarray
        Solution vector.
    info : SolverInfo
    """
    A_csr = matrix.csr if hasattr(matrix, "csr") else matrix
    b_np = np.asarray(rhs, dtype=np.float64)
    n = A_csr.shape[0]
    b_norm = float(np.linalg.norm(b_np))
    if b_norm == 0.0:
        return np.zeros(n), SolverInfo(iterations=0, residual=0.0, converged=True, rhs_norm=0.0)

    A_petsc = PETSc.Mat().createAIJ(
        size=A_csr.shape, csr=(A_csr.indptr, A_csr.indices, A_csr.data)
    )
    A_petsc.assemble()

    b_petsc = PETSc.Vec().createWithArray(b_np.copy())
    x_petsc = PETSc.Vec().createSeq(n)
    if x0 is not None:
        x_petsc.setArray(np.asarray(x0, dtype=np.float64))

    ksp = PETSc.KSP().create()
    ksp.setOperators(A_petsc)
    ksp.setType(PETSc.KSP.Type.FGMRES)
    ksp.setGMRESRestart(restart)
    ksp.setTolerances(rtol=float(tolerance), atol=0.0, max_it=max_iterations)
    ksp.setInitialGuessNonzero(x0 is not None)
    ksp.setNormType(PETSc.KSP.NormType.UNPRECONDITIONED)

    pc = ksp.getPC()
    if preconditioner is None:
        pc.setType(PETSc.PC.Type.NONE)
    else:
        pc.setType(PETSc.PC.Type.PYTHON)
        pc.setPythonContext(_ShellPreconditioner(preconditioner))

    ksp.solve(b_petsc, x_petsc)

    reason = ksp.getConvergedReason()
    iterations = ksp.getIterationNumber()
    x_np = x_petsc.getArray().copy()
    residual = float(np.linalg.norm(b_np - A_csr @ x_np))
    if reason <= 0:
        log.debug(f"PETSc FGMRES stopped with reason {reason} after {iterations} iterations")

    ksp.destroy()
    A_petsc.destroy()
    b_petsc.destroy()
    x_petsc.destroy()

    return x_np, SolverInfo(
        iterations=iterations, residual=residual, converged=reason > 0, rhs_norm=b_norm
    )
