"""Tests for block vectors, ghosted vectors and the fixed-pattern block matrix.

Run with: pytest tests/test_linalg.py -v
"""

import numpy as np
import pytest

from navier_stokes.errors import AssemblyError
from navier_stokes.linalg import BlockSparseMatrix, BlockVector, GhostedBlockVector, SparsityPattern


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def pattern():
    """3x3 pattern: dense 2x2 velocity block and a lone pressure diagonal."""
    return SparsityPattern(rows=[0, 0, 1, 1, 2], cols=[0, 1, 0, 1, 2], n_rows=3)


# =============================================================================
# Test 1: BlockVector
# =============================================================================


class TestBlockVector:
    def test_blocks_are_views(self):
        v = BlockVector((3, 2))
        v.block(1)[:] = [1.0, 2.0]
        assert np.array_equal(v.values, [0, 0, 0, 1, 2])
        assert v.block_range(1) == (3, 5)

    def test_add_sums_duplicates(self):
        v = BlockVector((2, 1))
        v.add([[0, 1], [1, 2]], [[1.0, 2.0], [3.0, 4.0]])
        assert np.array_equal(v.values, [1.0, 5.0, 4.0])

    def test_l2_norm_and_copy(self):
        v = BlockVector((1, 1), [3.0, 4.0])
        w = v.copy()
        w.values[0] = 0.0
        assert v.l2_norm() == 5.0

    def test_wrong_length(self):
        with pytest.raises(ValueError):
            BlockVector((2, 2), np.zeros(3))


# =============================================================================
# Test 2: GhostedBlockVector
# =============================================================================


class TestGhostedBlockVector:
    """Ghost entries follow sync(), never the owned vector directly."""

    def test_read_before_sync_raises(self, partition):
        ghosted = GhostedBlockVector(partition)
        with pytest.raises(RuntimeError):
            ghosted.gather(0, partition.locally_owned_dofs(0).indices[:3])

    def test_ghosts_refresh_only_on_sync(self, partition):
        owned = BlockVector(partition.block_sizes, np.arange(partition.n_dofs, dtype=float))
        ghosted = GhostedBlockVector(partition)
        ghosted.sync(owned)

        ghosts = partition.ghost_dofs(1).indices
        assert np.array_equal(ghosted.gather(1, ghosts), ghosts.astype(float))

        owned.values[:] = -1.0
        assert np.array_equal(ghosted.gather(1, ghosts), ghosts.astype(float))

        ghosted.sync(owned)
        assert np.all(ghosted.gather(1, ghosts) == -1.0)

    def test_read_outside_relevant_set_raises(self, partition):
        ghosted = GhostedBlockVector(partition)
        ghosted.sync(BlockVector(partition.block_sizes))
        relevant = partition.locally_relevant_dofs(1).indices
        outside = np.setdiff1d(np.arange(partition.n_dofs), relevant)
        assert outside.size > 0
        with pytest.raises(IndexError):
            ghosted.gather(1, outside[:1])

    def test_to_block_vector_round_trip(self, partition):
        rng = np.random.default_rng(0)
        owned = BlockVector(partition.block_sizes, rng.standard_normal(partition.n_dofs))
        ghosted = GhostedBlockVector(partition)
        ghosted.sync(owned)
        assert np.array_equal(ghosted.to_block_vector().values, owned.values)


# =============================================================================
# Test 3: BlockSparseMatrix
# =============================================================================


class TestBlockSparseMatrix:
    def test_compress_sums_contributions(self, pattern):
        A = BlockSparseMatrix(pattern, (2, 1))
        local = np.array([[[1.0, 2.0], [3.0, 4.0]]])
        A.add([[0, 1]], local)
        A.add([[0, 1]], local)
        A.compress()
        assert np.array_equal(A.csr.toarray()[:2, :2], [[2.0, 4.0], [6.0, 8.0]])

    def test_contribution_order_does_not_matter(self, pattern):
        rng = np.random.default_rng(1)
        locals_ = rng.standard_normal((6, 2, 2))
        A = BlockSparseMatrix(pattern, (2, 1))
        B = BlockSparseMatrix(pattern, (2, 1))
        for m in locals_:
            A.add([[0, 1]], m[None])
        for m in locals_[::-1]:
            B.add([[0, 1]], m[None])
        A.compress()
        B.compress()
        assert np.allclose(A.data, B.data, rtol=0, atol=1e-14)

    def test_entry_outside_pattern_raises(self, pattern):
        A = BlockSparseMatrix(pattern, (2, 1))
        A.add([[0, 2]], [[[1.0, 1.0], [0.0, 1.0]]])
        with pytest.raises(AssemblyError):
            A.compress()

    def test_zero_entries_are_skipped(self, pattern):
        A = BlockSparseMatrix(pattern, (2, 1))
        A.add([[0, 2]], [[[1.0, 0.0], [0.0, 5.0]]])
        A.compress()
        assert A.csr[2, 2] == 5.0

    def test_pattern_is_fixed(self, pattern):
        A = BlockSparseMatrix(pattern, (2, 1))
        A.compress()
        assert A.csr.nnz == pattern.nnz  # explicit zeros are stored
        A.set_zero()
        assert A.frobenius_norm() == 0.0

    def test_blocks_and_apply(self, pattern):
        A = BlockSparseMatrix(pattern, (2, 1))
        A.add([[0, 1]], [[[1.0, 2.0], [3.0, 4.0]]])
        A.add([[2]], [[[7.0]]])
        A.compress()
        assert A.block(0, 0).shape == (2, 2)
        assert A.block(1, 0).nnz == 0
        assert np.array_equal(A @ np.ones(3), [3.0, 7.0, 7.0])
        assert np.array_equal(A.diagonal(), [1.0, 4.0, 7.0])

    def test_from_cell_dofs(self):
        coupling = np.array([[True, True], [True, False]])
        pattern = SparsityPattern.from_cell_dofs(np.array([[0, 2], [1, 2]]), coupling, 3)
        # pairs: (0,0) (0,2) (2,0) (1,1) (1,2) (2,1); no (2,2)
        assert pattern.nnz == 6
        with pytest.raises(AssemblyError):
            pattern.positions(np.array([2]), np.array([2]))
