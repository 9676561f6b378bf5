"""Tests for the block system assembler.

Run with: pytest tests/test_assembly.py -v
"""

import numpy as np
import pytest

from navier_stokes.assembly import Assembler
from navier_stokes.errors import AssemblyError
from navier_stokes.fe import TaylorHoodSpace
from navier_stokes.linalg import BlockVector, GhostedBlockVector
from navier_stokes.meshing import create_rectangle_mesh
from navier_stokes.partition import DofPartition
from navier_stokes.problems import InletCavityProblem, ManufacturedStokesProblem


def node_index(space, x, y):
    return int(np.flatnonzero(np.all(np.isclose(space.node_coords, [x, y]), axis=1))[0])


def assemble_on(n_partitions, problem=None, convection=True, nu=1e-3, deltat=0.1, seed=None):
    """Assemble one step on a 4x4 mesh; optionally from a random previous solution."""
    mesh = create_rectangle_mesh(4, 4, n_partitions=n_partitions)
    space = TaylorHoodSpace(mesh)
    partition = DofPartition.build(mesh, space)
    problem = problem if problem is not None else InletCavityProblem()
    assembler = Assembler(space, partition, problem, nu=nu, deltat=deltat, convection=convection)

    values = np.zeros(space.n_dofs)
    if seed is not None:
        # Same field regardless of numbering: random values per (node, component)
        rng = np.random.default_rng(seed)
        nodal = rng.standard_normal((space.n_nodes, 2))
        values[space.velocity_dofs] = nodal
    owned = BlockVector(partition.block_sizes, values)
    ghosted = GhostedBlockVector(partition)
    ghosted.sync(owned)
    return space, assembler, assembler.assemble(ghosted, 0.1)


def global_order(space):
    """Permutation mapping (node, component) / vertex order to the space's numbering."""
    return np.concatenate([space.velocity_dofs.T.ravel(), space.pressure_dofs])


# =============================================================================
# Test 1: Structure
# =============================================================================


class TestStructure:
    """Block structure of the system and pressure mass matrices."""

    def test_pressure_pressure_block_is_structurally_zero(self, system):
        assert system.matrix.block(1, 1).nnz == 0

    def test_pressure_mass_only_in_pressure_block(self, system):
        Mp = system.pressure_mass
        assert Mp.block(0, 0).nnz == 0
        assert Mp.block(0, 1).nnz == 0
        assert Mp.block(1, 0).nnz == 0
        assert Mp.block(1, 1).nnz > 0
        assert np.all(Mp.block(1, 1).diagonal() > 0)

    def test_pressure_mass_integrates_one_over_nu(self, system):
        # Sum of P1 mass entries = area of the domain
        assert np.isclose(system.Mp.sum(), 1.0 / 1e-3)

    def test_coupling_blocks_are_transposes(self, system):
        B = system.B.toarray()
        Bt = system.Bt.toarray()
        assert np.allclose(B, Bt.T)

    def test_pattern_reused_between_assemblies(self, assembler, zero_solution, system):
        again = assembler.assemble(zero_solution, 0.2)
        assert again.matrix.pattern is system.matrix.pattern
        assert np.array_equal(again.matrix.csr.indices, system.matrix.csr.indices)


# =============================================================================
# Test 2: Values
# =============================================================================


class TestValues:
    def test_reassembly_is_reproducible(self):
        _, _, first = assemble_on(2, seed=3)
        _, _, second = assemble_on(2, seed=3)
        assert np.array_equal(first.matrix.data, second.matrix.data)
        assert np.array_equal(first.rhs.values, second.rhs.values)
        assert np.array_equal(first.pressure_mass.data, second.pressure_mass.data)

    def test_independent_of_partitioning(self):
        # Cross-partition contributions are summed, so only the numbering changes
        space1, _, one = assemble_on(1, seed=5)
        space3, _, three = assemble_on(3, seed=5)
        p1, p3 = global_order(space1), global_order(space3)
        A1 = one.matrix.csr.toarray()[np.ix_(p1, p1)]
        A3 = three.matrix.csr.toarray()[np.ix_(p3, p3)]
        assert np.allclose(A1, A3, rtol=1e-12, atol=1e-12)
        assert np.allclose(one.rhs.values[p1], three.rhs.values[p3], rtol=1e-12, atol=1e-12)

    def test_stokes_operator_is_symmetric(self):
        _, _, state = assemble_on(2, convection=False, seed=1)
        A = state.matrix.csr
        assert abs(A - A.T).max() < 1e-10

    def test_convection_breaks_symmetry(self):
        _, _, state = assemble_on(2, convection=True, seed=1)
        F = state.F
        assert abs(F - F.T).max() > 1e-8

    def test_forcing_enters_rhs(self):
        problem = InletCavityProblem(g=9.81)
        space, assembler, state = assemble_on(1, problem=problem)
        free = np.setdiff1d(space.velocity_dofs[:, 1], state.constrained_dofs)
        # f = (0, -g) tested against a partition of unity
        assert state.rhs.values[free].sum() < 0.0


# =============================================================================
# Test 3: Boundary Conditions
# =============================================================================


class TestBoundaryValues:
    """Dirichlet interpolation order and elimination."""

    def test_inlet_values(self, space, assembler):
        dofs, values = assembler.interpolate_boundary_values(0.1)
        node = node_index(space, 0.0, 0.5)
        ux, uy = space.velocity_dofs[node]
        assert values[np.searchsorted(dofs, ux)] == 1.0
        assert values[np.searchsorted(dofs, uy)] == 0.0

    @pytest.mark.parametrize("corner", [(0.0, 0.0), (0.0, 1.0)])
    def test_walls_overwrite_inlet_at_corners(self, space, assembler, corner):
        dofs, values = assembler.interpolate_boundary_values(0.1)
        ux = space.velocity_dofs[node_index(space, *corner), 0]
        assert ux in dofs
        assert values[np.searchsorted(dofs, ux)] == 0.0

    def test_outlet_is_free(self, space, assembler):
        dofs, _ = assembler.interpolate_boundary_values(0.1)
        node = node_index(space, 1.0, 0.5)
        assert not np.any(np.isin(space.velocity_dofs[node], dofs))

    def test_pressure_is_never_constrained(self, space, assembler):
        dofs, _ = assembler.interpolate_boundary_values(0.1)
        assert dofs.max() < space.n_u

    def test_elimination(self, system):
        A = system.matrix.csr.toarray()
        dofs = system.constrained_dofs
        free = np.setdiff1d(np.arange(A.shape[0]), dofs)
        assert np.all(A[np.ix_(dofs, free)] == 0.0)
        assert np.all(A[np.ix_(free, dofs)] == 0.0)
        d = np.diag(A)[dofs]
        assert np.all(d != 0.0)
        # rhs_i = d_i g_i, so the solution of the constrained rows is g
        g = system.rhs.values[dofs] / d
        assert np.all(np.isin(np.round(g, 12), [0.0, 1.0]))

    def test_wall_tags(self, assembler):
        assert assembler.inlet_tags == (1,)
        assert assembler.neumann_tags == (3,)
        assert assembler.wall_tags == (2, 4)


class TestAssemblyErrors:
    def test_unknown_tag_raises(self, space, partition):
        class BadProblem(InletCavityProblem):
            inlet_tags = (7,)

        with pytest.raises(AssemblyError):
            Assembler(space, partition, BadProblem(), nu=1e-3, deltat=0.1)

    def test_tag_both_inlet_and_neumann_raises(self, space, partition):
        class BadProblem(InletCavityProblem):
            neumann_tags = (1,)

        with pytest.raises(AssemblyError):
            Assembler(space, partition, BadProblem(), nu=1e-3, deltat=0.1)

    def test_manufactured_problem_tags(self, space, partition):
        assembler = Assembler(space, partition, ManufacturedStokesProblem(), nu=1.0, deltat=1e10)
        assert assembler.wall_tags == (2, 4)
