"""Schur-complement block preconditioners for the saddle-point system [[F, Bt], [B, 0]].

Every preconditioner maps a global block vector ``src`` (velocity block
followed by pressure block) to an approximation of ``A^{-1} src``. They are
rebuilt once per time step from the freshly assembled ``SystemState`` and
used only inside the outer (flexible) GMRES iteration.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum

import numpy as np
import pyamg
import scipy.sparse as sp
from scipy.sparse.linalg import LinearOperator, cg, gmres, spilu

from .errors import PreconditionerError

log = logging.getLogger(__name__)

# Relative tolerance of the inner Krylov solves and their iteration cap
INNER_TOLERANCE = 1e-2
INNER_MAX_ITERATIONS = 1000

# Diagonal entries of F below this (relative to its largest entry) are treated as zero pivots
PIVOT_TOLERANCE = 1e-14


class PreconditionerType(str, Enum):
    IDENTITY = "identity"
    BLOCK_DIAGONAL = "block_diagonal"
    BLOCK_TRIANGULAR = "block_triangular"
    SIMPLE = "simple"
    ASIMPLE = "asimple"


# =============================================================================
# Inner (sub-block) preconditioners and solves
# =============================================================================


def inner_preconditioner(A, kind="ilu", drop_tol=1e-4, fill_factor=10.0):
    """Approximate inverse of a sub-block as a LinearOperator.

    Parameters
    ----------
    A : sparse matrix
    kind : {"ilu", "amg"}
        Incomplete LU (scipy) or smoothed-aggregation AMG (pyamg).
    """
    A = sp.csr_matrix(A)
    if kind == "ilu":
        try:
            ilu = spilu(A.tocsc(), drop_tol=drop_tol, fill_factor=fill_factor)
        except RuntimeError as exc:
            raise PreconditionerError(f"Incomplete LU factorization failed: {exc}") from exc
        return LinearOperator(A.shape, matvec=ilu.solve, dtype=np.float64)
    if kind == "amg":
        ml = pyamg.smoothed_aggregation_solver(A, max_coarse=10)
        return ml.aspreconditioner()
    raise ValueError(f"Unknown inner preconditioner '{kind}'")


def inner_solve(method, A, b, M, tolerance=INNER_TOLERANCE, max_iterations=INNER_MAX_ITERATIONS):
    """Approximate solve of a sub-block system; non-convergence is accepted."""
    solver = cg if method == "cg" else gmres
    x, info = solver(A, b, M=M, rtol=tolerance, atol=0.0, maxiter=max_iterations)
    if info < 0:
        raise PreconditionerError(f"Inner {method} solve broke down (info={info})")
    if info > 0:
        log.debug(f"Inner {method} solve stopped after {info} iterations without converging")
    return x


def checked_diagonal(F):
    """Diagonal of F; PreconditionerError on a (near-)zero pivot."""
    diag = np.asarray(F.diagonal(), dtype=np.float64)
    scale = float(np.max(np.abs(diag))) if diag.size else 0.0
    small = np.abs(diag) <= PIVOT_TOLERANCE * max(scale, 1.0)
    if np.any(small):
        first = int(np.flatnonzero(small)[0])
        raise PreconditionerError(f"Zero pivot in diag(F) at velocity DoF {first}")
    return diag


# =============================================================================
# Preconditioners
# =============================================================================


class BlockPreconditioner(ABC):
    """Interface: ``apply(src) -> dst`` on global block vectors."""

    def __init__(self, n_u, n_p):
        self.n_u = n_u
        self.n_p = n_p

    @property
    def shape(self):
        n = self.n_u + self.n_p
        return (n, n)

    def split(self, src):
        src = np.asarray(src, dtype=np.float64)
        if src.shape != (self.n_u + self.n_p,):
            raise ValueError(f"Expected a block vector of length {self.n_u + self.n_p}, got {src.shape}")
        return src[: self.n_u], src[self.n_u :]

    @abstractmethod
    def apply(self, src):
        pass

    def aslinearoperator(self):
        return LinearOperator(self.shape, matvec=self.apply, dtype=np.float64)


class IdentityPreconditioner(BlockPreconditioner):
    def apply(self, src):
        src0, src1 = self.split(src)
        return np.concatenate([src0, src1])


class BlockDiagonalPreconditioner(BlockPreconditioner):
    """diag(F, M_p): independent CG solves on both blocks."""

    def __init__(self, F, Mp, inner="ilu", **ilu_settings):
        super().__init__(F.shape[0], Mp.shape[0])
        self.F = F
        self.Mp = Mp
        self.M_F = inner_preconditioner(F, inner, **ilu_settings)
        self.M_p = inner_preconditioner(Mp, inner, **ilu_settings)

    def apply(self, src):
        src0, src1 = self.split(src)
        dst0 = inner_solve("cg", self.F, src0, self.M_F)
        dst1 = inner_solve("cg", self.Mp, src1, self.M_p)
        return np.concatenate([dst0, dst1])


class BlockTriangularPreconditioner(BlockPreconditioner):
    """Lower block-triangular: velocity first, then pressure mass against src1 - B x."""

    def __init__(self, F, Mp, B, inner="ilu", **ilu_settings):
        super().__init__(F.shape[0], Mp.shape[0])
        self.F = F
        self.Mp = Mp
        self.B = B
        self.M_F = inner_preconditioner(F, inner, **ilu_settings)
        self.M_p = inner_preconditioner(Mp, inner, **ilu_settings)

    def apply(self, src):
        src0, src1 = self.split(src)
        dst0 = inner_solve("cg", self.F, src0, self.M_F)
        dst1 = inner_solve("cg", self.Mp, src1 - self.B @ dst0, self.M_p)
        return np.concatenate([dst0, dst1])


class SIMPLEPreconditioner(BlockPreconditioner):
    """SIMPLE with pressure relaxation ``alpha``.

    D^-1 = 1 / diag(F), S = B D^-1 Bt.
    """

    alpha = 0.5
    tolerance = INNER_TOLERANCE

    def __init__(self, F, B, Bt, inner="ilu", alpha=None, **ilu_settings):
        super().__init__(F.shape[0], B.shape[0])
        if alpha is not None:
            self.alpha = float(alpha)
        self.F = F
        self.B = B
        self.Bt = Bt
        self.D_inv = 1.0 / checked_diagonal(F)
        self.S = sp.csr_matrix(B @ sp.diags(self.D_inv) @ Bt)
        self.M_F = inner_preconditioner(F, inner, **ilu_settings)
        self.M_S = inner_preconditioner(self.S, inner, **ilu_settings)

    def apply(self, src):
        src0, src1 = self.split(src)
        y_u = inner_solve("gmres", self.F, src0, self.M_F, self.tolerance)
        t = self.B @ y_u - src1
        y_p = inner_solve("cg", self.S, t, self.M_S, self.tolerance)
        dst1 = y_p / self.alpha
        dst0 = -(self.D_inv * (self.Bt @ dst1) - y_u)
        return np.concatenate([dst0, dst1])


class ASIMPLEPreconditioner(BlockPreconditioner):
    """Algebraic SIMPLE: keeps D = diag(F) itself and solves both blocks with GMRES."""

    alpha = 1.0
    tolerance = 1e-6

    def __init__(self, F, B, Bt, inner="ilu", alpha=None, **ilu_settings):
        super().__init__(F.shape[0], B.shape[0])
        if alpha is not None:
            self.alpha = float(alpha)
        self.F = F
        self.B = B
        self.Bt = Bt
        self.D = checked_diagonal(F)
        self.D_inv = 1.0 / self.D
        self.S = sp.csr_matrix(B @ sp.diags(self.D_inv) @ Bt)
        self.M_F = inner_preconditioner(F, inner, **ilu_settings)
        self.M_S = inner_preconditioner(self.S, inner, **ilu_settings)

    def apply(self, src):
        src0, src1 = self.split(src)
        y_u = inner_solve("gmres", self.F, src0, self.M_F, self.tolerance)
        y_p = src1 - self.B @ y_u
        dst1 = inner_solve("gmres", self.S, y_p, self.M_S, self.tolerance)
        w = self.D * y_u
        dst1 *= -1.0 / self.alpha
        w -= self.Bt @ dst1
        dst0 = self.D_inv * w
        return np.concatenate([dst0, dst1])


def create_preconditioner(kind, state, inner="ilu", drop_tol=1e-4, fill_factor=10.0):
    """Build the preconditioner ``kind`` for the system in ``state``.

    Parameters
    ----------
    kind : str or PreconditionerType
    state : SystemState
    inner : {"ilu", "amg"}
        Approximate inverse used inside the sub-block solves.
    """
    kind = PreconditionerType(kind)
    n_u, n_p = state.block_sizes
    settings = {"drop_tol": drop_tol, "fill_factor": fill_factor} if inner == "ilu" else {}

    if kind is PreconditionerType.IDENTITY:
        return IdentityPreconditioner(n_u, n_p)
    if kind is PreconditionerType.BLOCK_DIAGONAL:
        return BlockDiagonalPreconditioner(state.F, state.Mp, inner, **settings)
    if kind is PreconditionerType.BLOCK_TRIANGULAR:
        return BlockTriangularPreconditioner(state.F, state.Mp, state.B, inner, **settings)
    if kind is PreconditionerType.SIMPLE:
        return SIMPLEPreconditioner(state.F, state.B, state.Bt, inner, **settings)
    return ASIMPLEPreconditioner(state.F, state.B, state.Bt, inner, **settings)
