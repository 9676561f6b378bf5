"""Restarted flexible GMRES (pyamg) for the block saddle-point system."""

import logging
import math

import numpy as np
from pyamg.krylov import fgmres
from scipy.sparse.linalg import LinearOperator

from ..datastructures import SolverInfo
from ..errors import ConvergenceError

log = logging.getLogger(__name__)


def krylov_solver(
    matrix,
    rhs,
    preconditioner=None,
    x0=None,
    tolerance=1e-4,
    max_iterations=1000,
    restart=50,
):
    """Solve A x = b with pyamg's right-preconditioned flexible GMRES.

    The block preconditioners run inner Krylov solves, so they change from
    one application to the next; fgmres stores every preconditioned
    direction and tolerates that.

    Parameters
    ----------
    matrix : BlockSparseMatrix or scipy sparse matrix
        System matrix.
    rhs : np.ndarray
        Right-hand side.
    preconditioner : BlockPreconditioner, optional
        Applied through ``aslinearoperator()``; identity if None.
    x0 : np.ndarray, optional
        Initial guess (zero if None).
    tolerance : float, optional
        Stop when ||b - A x|| < tolerance * ||b|| (default: 1e-4).
    max_iterations : int, optional
        Cap on the total number of Arnoldi steps, rounded up to whole
        restart cycles (default: 1000).
    restart : int, optional
        Krylov subspace size before restarting (default: 50).

    Returns
    -------
    x : np.ndarray
        Approximate solution.
    info : SolverInfo
        Arnoldi steps, true final residual ``||b - A x||`` and convergence flag.
    """
    A = matrix.csr if hasattr(matrix, "csr") else matrix
    b = np.asarray(rhs, dtype=np.float64)
    n = b.size
    b_norm = float(np.linalg.norm(b))
    if b_norm == 0.0:
        return np.zeros(n), SolverInfo(iterations=0, residual=0.0, converged=True, rhs_norm=0.0)

    # One preconditioner application per Arnoldi step
    M = preconditioner.aslinearoperator() if preconditioner is not None else None
    iterations = 0

    def precondition(v):
        nonlocal iterations
        iterations += 1
        return np.array(v, copy=True) if M is None else M.matvec(v)

    counted = LinearOperator(A.shape, matvec=precondition, dtype=np.float64)

    restart = max(1, min(restart, max_iterations, n))
    cycles = math.ceil(max_iterations / restart)
    x_init = np.zeros(n) if x0 is None else np.array(x0, dtype=np.float64)

    try:
        x, info = fgmres(A, b, x0=x_init, tol=tolerance, restart=restart, maxiter=cycles, M=counted)
    except np.linalg.LinAlgError as exc:
        raise ConvergenceError(
            f"FGMRES breakdown after {iterations} iterations (singular Hessenberg system): {exc}"
        ) from exc

    x = np.ravel(x)
    residual = float(np.linalg.norm(b - A @ x))
    converged = residual < tolerance * b_norm
    if info < 0:
        log.warning(f"FGMRES stagnated after {iterations} iterations, residual = {residual:.3e}")
    log.debug(f"FGMRES done: iterations = {iterations}, residual = {residual:.3e}, info = {info}")

    return x, SolverInfo(iterations=iterations, residual=residual, converged=converged, rhs_norm=b_norm)
