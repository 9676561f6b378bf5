"""Tests for the Schur-complement preconditioner family and the outer FGMRES.

Run with: pytest tests/test_preconditioners.py -v
"""

import numpy as np
import pytest
import scipy.sparse as sp
from scipy.sparse.linalg import splu

from navier_stokes import preconditioners
from navier_stokes.errors import ConvergenceError, PreconditionerError
from navier_stokes.linear_solvers import get_solver, krylov_solver
from navier_stokes.preconditioners import (
    ASIMPLEPreconditioner,
    BlockDiagonalPreconditioner,
    BlockPreconditioner,
    BlockTriangularPreconditioner,
    IdentityPreconditioner,
    PreconditionerType,
    SIMPLEPreconditioner,
    create_preconditioner,
)

ALL_TYPES = [t.value for t in PreconditionerType]


def laplacian_1d(n):
    return sp.diags([-1.0, 2.0, -1.0], [-1, 0, 1], shape=(n, n), format="csr")


# =============================================================================
# Test 1: Construction and Interface
# =============================================================================


class TestConstruction:
    @pytest.mark.parametrize("kind", ALL_TYPES)
    def test_factory(self, system, kind):
        prec = create_preconditioner(kind, system)
        n_u, n_p = system.block_sizes
        assert prec.shape == (n_u + n_p, n_u + n_p)
        dst = prec.apply(np.ones(n_u + n_p))
        assert dst.shape == (n_u + n_p,)
        assert np.all(np.isfinite(dst))

    def test_factory_classes(self, system):
        assert isinstance(create_preconditioner("identity", system), IdentityPreconditioner)
        assert isinstance(create_preconditioner("block_diagonal", system), BlockDiagonalPreconditioner)
        assert isinstance(create_preconditioner("block_triangular", system), BlockTriangularPreconditioner)
        assert isinstance(create_preconditioner("simple", system), SIMPLEPreconditioner)
        assert isinstance(create_preconditioner("asimple", system), ASIMPLEPreconditioner)

    def test_unknown_kind(self, system):
        with pytest.raises(ValueError):
            create_preconditioner("jacobi", system)

    def test_wrong_vector_length(self, system):
        prec = create_preconditioner("identity", system)
        with pytest.raises(ValueError):
            prec.apply(np.ones(3))

    def test_relaxation_factors(self, system):
        assert create_preconditioner("simple", system).alpha == 0.5
        assert create_preconditioner("asimple", system).alpha == 1.0

    def test_amg_inner_preconditioner(self, system):
        prec = create_preconditioner("simple", system, inner="amg")
        dst = prec.apply(np.ones(sum(system.block_sizes)))
        assert np.all(np.isfinite(dst))


# =============================================================================
# Test 2: Algebraic Properties
# =============================================================================


class TestApply:
    def test_identity(self, system):
        prec = create_preconditioner("identity", system)
        src = np.arange(sum(system.block_sizes), dtype=float)
        dst = prec.apply(src)
        assert np.array_equal(dst, src)
        assert dst is not src

    @pytest.mark.parametrize("kind", ["block_diagonal", "block_triangular"])
    def test_zero_in_zero_out(self, system, kind):
        prec = create_preconditioner(kind, system)
        n = sum(system.block_sizes)
        assert np.array_equal(prec.apply(np.zeros(n)), np.zeros(n))

    def test_block_diagonal_ignores_coupling(self, system):
        # Velocity-only input leaves the pressure block untouched
        prec = create_preconditioner("block_diagonal", system)
        n_u, n_p = system.block_sizes
        src = np.concatenate([np.ones(n_u), np.zeros(n_p)])
        assert np.array_equal(prec.apply(src)[n_u:], np.zeros(n_p))

    def test_block_triangular_couples_pressure(self, system):
        prec = create_preconditioner("block_triangular", system)
        n_u, n_p = system.block_sizes
        src = np.concatenate([np.ones(n_u), np.zeros(n_p)])
        assert np.linalg.norm(prec.apply(src)[n_u:]) > 0.0

    def test_simple_on_exact_blocks(self):
        # Diagonal F and alpha = 1: both variants are exact inverses
        F = sp.diags([2.0, 4.0, 8.0], format="csr")
        B = sp.csr_matrix([[1.0, 1.0, 0.0], [0.0, 1.0, 1.0]])
        A = sp.bmat([[F, B.T], [B, None]], format="csr")
        prec = SIMPLEPreconditioner(F, B, sp.csr_matrix(B.T), alpha=1.0)
        prec.tolerance = 1e-12
        b = np.array([1.0, -2.0, 3.0, 0.5, -1.0])
        assert np.allclose(A @ prec.apply(b), b, atol=1e-8)

    def test_asimple_on_exact_blocks(self):
        F = sp.diags([2.0, 4.0, 8.0], format="csr")
        B = sp.csr_matrix([[1.0, 1.0, 0.0], [0.0, 1.0, 1.0]])
        A = sp.bmat([[F, B.T], [B, None]], format="csr")
        prec = ASIMPLEPreconditioner(F, B, sp.csr_matrix(B.T))
        prec.tolerance = 1e-12
        b = np.array([1.0, -2.0, 3.0, 0.5, -1.0])
        assert np.allclose(A @ prec.apply(b), b, atol=1e-8)

    def test_zero_pivot_raises(self):
        F = sp.diags([1.0, 0.0, 2.0], format="csr")
        B = sp.csr_matrix([[1.0, 1.0, 1.0]])
        with pytest.raises(PreconditionerError):
            SIMPLEPreconditioner(F, B, sp.csr_matrix(B.T))
        with pytest.raises(PreconditionerError):
            ASIMPLEPreconditioner(F, B, sp.csr_matrix(B.T))

    @pytest.mark.parametrize("kind", ["block_diagonal", "simple", "asimple"])
    def test_failed_ilu_raises(self, system, monkeypatch, kind):
        def singular(*args, **kwargs):
            raise RuntimeError("Factor is exactly singular")

        monkeypatch.setattr(preconditioners, "spilu", singular)
        with pytest.raises(PreconditionerError, match="Incomplete LU"):
            create_preconditioner(kind, system)

    def test_unknown_inner_preconditioner(self):
        with pytest.raises(ValueError):
            preconditioners.inner_preconditioner(sp.eye(3, format="csr"), kind="jacobi")


# =============================================================================
# Test 3: Outer FGMRES
# =============================================================================


class TestKrylovSolver:
    def test_zero_rhs(self):
        x, info = krylov_solver(laplacian_1d(10), np.zeros(10))
        assert np.array_equal(x, np.zeros(10))
        assert info.iterations == 0
        assert info.converged

    def test_converges_to_tolerance(self):
        A = laplacian_1d(30)
        b = np.ones(30)
        x, info = krylov_solver(A, b, tolerance=1e-10, max_iterations=200, restart=40)
        assert info.converged
        assert np.linalg.norm(b - A @ x) <= 1e-10 * np.linalg.norm(b)
        assert np.isclose(info.residual, np.linalg.norm(b - A @ x))

    def test_iteration_cap_is_reported(self):
        A = laplacian_1d(100)
        x, info = krylov_solver(A, np.ones(100), tolerance=1e-12, max_iterations=4, restart=2)
        assert not info.converged
        assert info.iterations == 4
        assert np.all(np.isfinite(x))

    def test_exact_initial_guess(self):
        A = laplacian_1d(20)
        x_exact = np.linspace(0.0, 1.0, 20)
        x, info = krylov_solver(A, A @ x_exact, x0=x_exact)
        assert info.iterations == 0
        assert np.array_equal(x, x_exact)

    def test_exact_preconditioner_needs_one_iteration(self):
        A = laplacian_1d(25).tocsc()
        lu = splu(A)

        class Exact(BlockPreconditioner):
            def apply(self, src):
                return lu.solve(src)

        _, info = krylov_solver(A, np.ones(25), Exact(25, 0), tolerance=1e-10)
        assert info.converged
        assert info.iterations == 1

    def test_zero_preconditioned_direction_raises(self):
        # A vanishing direction makes the Hessenberg system singular
        class Zero(BlockPreconditioner):
            def apply(self, src):
                return np.zeros_like(src)

        with pytest.raises(ConvergenceError):
            krylov_solver(laplacian_1d(10), np.ones(10), Zero(10, 0))

    def test_uses_block_preconditioner(self, system):
        prec = create_preconditioner("simple", system)
        calls = []
        apply = prec.apply
        prec.apply = lambda src: calls.append(1) or apply(src)

        _, info = krylov_solver(system.matrix, system.rhs.values, prec, tolerance=1e-6)
        assert info.converged
        assert len(calls) == info.iterations

    def test_get_solver(self):
        assert get_solver("numpy") is krylov_solver
        with pytest.raises(ValueError):
            get_solver("cuda")


class TestPreconditionedIterations:
    """Block preconditioners against plain GMRES on the assembled system."""

    @pytest.fixture
    def iterations(self, system):
        def run(kind):
            prec = create_preconditioner(kind, system)
            _, info = krylov_solver(
                system.matrix, system.rhs.values, prec, tolerance=1e-6, max_iterations=2000, restart=50
            )
            return info

        return run

    @pytest.mark.parametrize("kind", ["simple", "asimple"])
    def test_simple_family_beats_identity(self, iterations, kind):
        baseline = iterations("identity")
        info = iterations(kind)
        assert info.converged
        assert info.iterations <= baseline.iterations

    def test_solution_satisfies_system(self, system):
        prec = create_preconditioner("simple", system)
        x, info = krylov_solver(system.matrix, system.rhs.values, prec, tolerance=1e-8, max_iterations=500)
        b = system.rhs.values
        assert info.converged
        assert np.linalg.norm(b - system.matrix @ x) <= 1e-8 * np.linalg.norm(b)


class TestPetscBackend:
    def test_matches_numpy_backend(self, system):
        pytest.importorskip("petsc4py")
        petsc_solver = get_solver("petsc")
        prec = create_preconditioner("simple", system)
        x_np, _ = krylov_solver(system.matrix, system.rhs.values, prec, tolerance=1e-10, max_iterations=500)
        x_petsc, info = petsc_solver(system.matrix, system.rhs.values, prec, tolerance=1e-10, max_iterations=500)
        assert info.converged
        assert np.allclose(x_petsc, x_np, atol=1e-6)
