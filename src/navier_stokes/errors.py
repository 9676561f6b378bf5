"""Exception hierarchy for the Navier-Stokes solver.

Setup, assembly and preconditioner errors are fatal for the whole run and are
never caught inside the package. Krylov non-convergence is only reported
unless the caller opts into ``ConvergenceError``.
"""


class NavierStokesError(RuntimeError):
    """Base class for all solver errors."""


class SetupError(NavierStokesError):
    """Malformed mesh, missing partition information or inconsistent DoF layout."""


class AssemblyError(NavierStokesError):
    """Contribution outside the fixed sparsity pattern or unknown boundary tag."""


class PreconditionerError(NavierStokesError):
    """Zero pivot in the diagonal of F or a failed incomplete factorization."""


class ConvergenceError(NavierStokesError):
    """Outer GMRES hit its iteration cap and stagnation was declared fatal."""
