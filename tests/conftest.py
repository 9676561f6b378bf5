"""Pytest configuration and fixtures for the Navier-Stokes solver tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


@pytest.fixture
def small_params():
    """Parameters of the 2-step inlet cavity run on a small 4x4 mesh."""
    return {
        "nx": 4,
        "ny": 4,
        "n_partitions": 2,
        "nu": 1e-3,
        "T": 0.2,
        "deltat": 0.1,
        "preconditioner": "simple",
        "tolerance": 1e-4,
        "max_iterations": 1000,
    }


@pytest.fixture
def mesh():
    """4x4 unit square mesh split into 2 partitions."""
    from navier_stokes.meshing import create_rectangle_mesh

    return create_rectangle_mesh(4, 4, n_partitions=2)


@pytest.fixture
def space(mesh):
    from navier_stokes.fe import TaylorHoodSpace

    return TaylorHoodSpace(mesh)


@pytest.fixture
def partition(mesh, space):
    from navier_stokes.partition import DofPartition

    return DofPartition.build(mesh, space)


@pytest.fixture
def assembler(space, partition):
    """Assembler of the inlet cavity problem (nu = 1e-3, dt = 0.1, convection on)."""
    from navier_stokes.assembly import Assembler
    from navier_stokes.problems import InletCavityProblem

    return Assembler(space, partition, InletCavityProblem(), nu=1e-3, deltat=0.1, convection=True)


@pytest.fixture
def zero_solution(partition):
    """Synced ghosted zero vector."""
    from navier_stokes.linalg import BlockVector, GhostedBlockVector

    ghosted = GhostedBlockVector(partition)
    ghosted.sync(BlockVector(partition.block_sizes))
    return ghosted


@pytest.fixture
def system(assembler, zero_solution):
    """SystemState of the first time step from a zero initial condition."""
    return assembler.assemble(zero_solution, 0.1)
