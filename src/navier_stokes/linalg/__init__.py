"""Block linear algebra on a fixed sparsity pattern."""

from .block import BlockSparseMatrix, BlockVector, GhostedBlockVector, SparsityPattern

__all__ = [
    "BlockSparseMatrix",
    "BlockVector",
    "GhostedBlockVector",
    "SparsityPattern",
]
