"""Block vectors, ghosted vectors and block sparse matrices with a fixed sparsity pattern.

The global index space is split into consecutive blocks (velocity, pressure).
Matrices are stored as one scipy CSR matrix whose structure is frozen at
construction; assembly only changes values.
"""

import numpy as np
from scipy.sparse import csr_matrix

from ..errors import AssemblyError


class BlockVector:
    """Vector over the owned (authoritative) entries of the global block index space."""

    def __init__(self, block_sizes, values=None):
        self.block_sizes = tuple(int(s) for s in block_sizes)
        n = sum(self.block_sizes)
        if values is None:
            self.values = np.zeros(n)
        else:
            self.values = np.array(values, dtype=np.float64)
            if self.values.shape != (n,):
                raise ValueError(f"Expected {n} values, got shape {self.values.shape}")

    @property
    def size(self):
        return self.values.size

    @property
    def n_blocks(self):
        return len(self.block_sizes)

    def block_range(self, i):
        lo = sum(self.block_sizes[:i])
        return lo, lo + self.block_sizes[i]

    def block(self, i):
        """Writable view of block ``i``."""
        lo, hi = self.block_range(i)
        return self.values[lo:hi]

    def l2_norm(self):
        return float(np.linalg.norm(self.values))

    def copy(self):
        return BlockVector(self.block_sizes, self.values)

    def set_zero(self):
        self.values[:] = 0.0

    def add(self, indices, local_values):
        """Sum local contributions into the entries ``indices`` (duplicates are summed)."""
        np.add.at(self.values, np.asarray(indices).ravel(), np.asarray(local_values).ravel())

    def __repr__(self):
        return f"BlockVector(block_sizes={self.block_sizes}, norm={self.l2_norm():.6e})"


class GhostedBlockVector:
    """Per-rank read-only copies of the locally relevant (owned + ghost) entries.

    Ghost entries are only refreshed by :meth:`sync`; every read of ghost data
    must happen after the ``sync`` that follows the last write to the owned
    vector. Reading before the first ``sync`` raises ``RuntimeError``.
    """

    def __init__(self, partition):
        self.partition = partition
        self.block_sizes = partition.block_sizes
        self.n_partitions = partition.n_partitions
        self._indices = [partition.locally_relevant_dofs(r).indices for r in range(self.n_partitions)]
        self._values = [np.zeros(idx.size) for idx in self._indices]
        self._synced = False

    def sync(self, owned):
        """Refresh every rank's relevant copy from the owned vector."""
        if owned.block_sizes != tuple(self.block_sizes):
            raise ValueError(f"Block sizes differ: {owned.block_sizes} vs {self.block_sizes}")
        for rank, idx in enumerate(self._indices):
            self._values[rank] = owned.values[idx].copy()
        self._synced = True

    def gather(self, rank, dofs):
        """Values of global ``dofs`` as seen by ``rank`` (must be relevant on that rank)."""
        if not self._synced:
            raise RuntimeError("Ghosted vector read before the first sync")
        dofs = np.asarray(dofs)
        idx = self._indices[rank]
        pos = np.searchsorted(idx, dofs)
        pos_clipped = np.minimum(pos, idx.size - 1)
        if np.any(idx[pos_clipped] != dofs):
            raise IndexError(f"Rank {rank} reads DoFs outside its relevant set")
        return self._values[rank][pos_clipped]

    def to_block_vector(self):
        """Collect the owned entries of every rank into one BlockVector."""
        if not self._synced:
            raise RuntimeError("Ghosted vector read before the first sync")
        out = BlockVector(self.block_sizes)
        for rank in range(self.n_partitions):
            owned = self.partition.locally_owned_dofs(rank).indices
            out.values[owned] = self.gather(rank, owned)
        return out


class SparsityPattern:
    """Frozen CSR structure built from (row, col) pairs."""

    def __init__(self, rows, cols, n_rows, n_cols=None):
        self.n_rows = int(n_rows)
        self.n_cols = int(n_rows if n_cols is None else n_cols)
        keys = np.unique(np.asarray(rows, dtype=np.int64) * self.n_cols + np.asarray(cols, dtype=np.int64))
        self.keys = keys
        row_of = keys // self.n_cols
        self.indices = keys % self.n_cols
        self.indptr = np.zeros(self.n_rows + 1, dtype=np.int64)
        np.cumsum(np.bincount(row_of, minlength=self.n_rows), out=self.indptr[1:])

    @classmethod
    def from_cell_dofs(cls, cell_dofs, coupling, n_dofs):
        """Pattern of all (i, j) pairs of cell DoFs whose local coupling is True.

        Parameters
        ----------
        cell_dofs : ndarray (n_cells, k)
        coupling : ndarray (k, k) of bool
        n_dofs : int
        """
        ii, jj = np.nonzero(coupling)
        rows = cell_dofs[:, ii].ravel()
        cols = cell_dofs[:, jj].ravel()
        return cls(rows, cols, n_dofs)

    @property
    def nnz(self):
        return self.keys.size

    def positions(self, rows, cols):
        """Position in the data array of each (row, col); AssemblyError if absent."""
        keys = np.asarray(rows, dtype=np.int64) * self.n_cols + np.asarray(cols, dtype=np.int64)
        pos = np.searchsorted(self.keys, keys)
        pos = np.minimum(pos, self.keys.size - 1)
        bad = self.keys[pos] != keys
        if np.any(bad):
            first = int(np.flatnonzero(bad)[0])
            raise AssemblyError(
                f"Entry ({int(rows[first])}, {int(cols[first])}) is outside the sparsity pattern"
            )
        return pos


class BlockSparseMatrix:
    """Square block sparse matrix on a fixed sparsity pattern.

    ``add`` buffers local contributions; ``compress`` sums them into the
    stored values, which makes assembly independent of the order in which
    cells or ranks contribute.
    """

    def __init__(self, pattern, block_sizes):
        self.pattern = pattern
        self.block_sizes = tuple(int(s) for s in block_sizes)
        if sum(self.block_sizes) != pattern.n_rows:
            raise ValueError("Block sizes do not match the pattern dimension")
        self.csr = csr_matrix(
            (np.zeros(pattern.nnz), pattern.indices.copy(), pattern.indptr.copy()),
            shape=(pattern.n_rows, pattern.n_cols),
        )
        self._pending = []

    @property
    def shape(self):
        return self.csr.shape

    @property
    def data(self):
        return self.csr.data

    def block_range(self, i):
        lo = sum(self.block_sizes[:i])
        return lo, lo + self.block_sizes[i]

    def set_zero(self):
        self.csr.data[:] = 0.0
        self._pending = []

    def add(self, indices, local):
        """Queue cell contributions.

        Parameters
        ----------
        indices : ndarray (n_cells, k)
            Global DoFs of each cell.
        local : ndarray (n_cells, k, k)
            Local matrices; exact zeros are skipped.
        """
        indices = np.asarray(indices)
        local = np.asarray(local)
        rows = np.broadcast_to(indices[:, :, None], local.shape)
        cols = np.broadcast_to(indices[:, None, :], local.shape)
        mask = local != 0.0
        self._pending.append((rows[mask], cols[mask], local[mask]))

    def compress(self):
        """Sum all queued contributions into the stored values."""
        if not self._pending:
            return
        rows = np.concatenate([p[0] for p in self._pending])
        cols = np.concatenate([p[1] for p in self._pending])
        vals = np.concatenate([p[2] for p in self._pending])
        self._pending = []
        pos = self.pattern.positions(rows, cols)
        self.csr.data += np.bincount(pos, weights=vals, minlength=self.pattern.nnz)

    def copy(self):
        out = BlockSparseMatrix(self.pattern, self.block_sizes)
        out.csr.data[:] = self.csr.data
        return out

    def block(self, i, j):
        """Block (i, j) as a new CSR matrix (structure included)."""
        r0, r1 = self.block_range(i)
        c0, c1 = self.block_range(j)
        return self.csr[r0:r1, c0:c1].tocsr()

    def diagonal(self):
        return self.csr.diagonal()

    def apply(self, x):
        return self.csr @ np.asarray(x)

    def __matmul__(self, x):
        return self.apply(x)

    def frobenius_norm(self):
        return float(np.linalg.norm(self.csr.data))

    def __repr__(self):
        return f"BlockSparseMatrix(shape={self.shape}, nnz={self.pattern.nnz}, blocks={self.block_sizes})"
