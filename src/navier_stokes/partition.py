"""DoF partition manager: ownership, component-wise renumbering and index sets.

Global layout after :meth:`DofPartition.build`::

    [ u (rank 0: x then y) | u (rank 1: x then y) | ... | p (rank 0) | p (rank 1) | ... ]

so block 0 (velocity) occupies ``[0, n_u)`` and block 1 (pressure) ``[n_u, n_u + n_p)``
on every rank. A DoF is owned by the lowest partition index among the cells
that touch it; a rank's relevant DoFs are all DoFs of its owned cells.
"""

import logging

import numpy as np

from .errors import SetupError

log = logging.getLogger(__name__)


class IndexSet:
    """Sorted set of global indices inside ``[0, size)``."""

    def __init__(self, indices, size):
        self.indices = np.unique(np.asarray(indices, dtype=np.int64))
        self.size = int(size)
        if self.indices.size and (self.indices[0] < 0 or self.indices[-1] >= self.size):
            raise SetupError(f"Index set exceeds its range [0, {self.size})")

    def __len__(self):
        return self.indices.size

    def __contains__(self, index):
        pos = np.searchsorted(self.indices, index)
        return bool(pos < self.indices.size and self.indices[pos] == index)

    def __eq__(self, other):
        return (
            isinstance(other, IndexSet)
            and self.size == other.size
            and np.array_equal(self.indices, other.indices)
        )

    def __repr__(self):
        return f"IndexSet(n_elements={len(self)}, size={self.size})"

    @property
    def n_elements(self):
        return self.indices.size

    def get_view(self, begin, end):
        """Elements inside ``[begin, end)``, shifted to start at zero."""
        lo, hi = np.searchsorted(self.indices, [begin, end])
        return IndexSet(self.indices[lo:hi] - begin, end - begin)

    def is_subset_of(self, other):
        return bool(np.all(np.isin(self.indices, other.indices, assume_unique=True)))

    def difference(self, other):
        return IndexSet(np.setdiff1d(self.indices, other.indices, assume_unique=True), self.size)


class DofPartition:
    """Owned / relevant / ghost index sets of a Taylor-Hood space on a partitioned mesh.

    Use :meth:`build`; it renumbers ``space`` in place.
    """

    def __init__(self, mesh, space, node_owner, vertex_owner):
        self.mesh = mesh
        self.space = space
        self.n_partitions = mesh.n_partitions
        self.node_owner = node_owner
        self.vertex_owner = vertex_owner
        self.n_u, self.n_p = space.block_sizes
        self.n_dofs = self.n_u + self.n_p

        self._owned = []
        self._relevant = []
        self._owned_cells = []
        for rank in range(self.n_partitions):
            cells = mesh.owned_cells(rank)
            owned = np.concatenate([
                space.velocity_dofs[node_owner == rank].ravel(),
                space.pressure_dofs[vertex_owner == rank],
            ])
            relevant = np.concatenate([owned, space.cell_dofs[cells].ravel()])
            self._owned_cells.append(cells)
            self._owned.append(IndexSet(owned, self.n_dofs))
            self._relevant.append(IndexSet(relevant, self.n_dofs))

        self._check_consistency()

    @classmethod
    def build(cls, mesh, space):
        """Derive ownership, renumber ``space`` component-wise and build the index sets."""
        if mesh.cell_partition is None or mesh.n_partitions < 1:
            raise SetupError("Mesh has no partition information")
        if space.mesh is not mesh or space.cell_nodes.shape[0] != mesh.n_cells:
            raise SetupError("Finite element space is not attached to this mesh")

        n_parts = mesh.n_partitions
        part = mesh.cell_partition

        # Lowest partition touching a node owns it
        node_owner = np.full(space.n_nodes, n_parts, dtype=np.int64)
        np.minimum.at(node_owner, space.cell_nodes.ravel(), np.repeat(part, space.cell_nodes.shape[1]))
        vertex_owner = node_owner[: space.n_vertices].copy()
        if np.any(node_owner == n_parts):
            raise SetupError("Mesh contains nodes that belong to no cell")

        velocity_dofs = np.empty((space.n_nodes, 2), dtype=np.int64)
        pressure_dofs = np.empty(space.n_vertices, dtype=np.int64)

        # Velocity block: rank-contiguous, component-wise inside each rank
        offset = 0
        for rank in range(n_parts):
            nodes = np.flatnonzero(node_owner == rank)
            for comp in range(2):
                velocity_dofs[nodes, comp] = offset + np.arange(nodes.size)
                offset += nodes.size
        n_u = offset

        # Pressure block follows the whole velocity block
        for rank in range(n_parts):
            verts = np.flatnonzero(vertex_owner == rank)
            pressure_dofs[verts] = offset + np.arange(verts.size)
            offset += verts.size

        space.renumber(velocity_dofs, pressure_dofs)
        partition = cls(mesh, space, node_owner, vertex_owner)

        log.info(
            f"Number of DoFs: velocity = {n_u}, pressure = {space.n_p}, total = {space.n_dofs} "
            f"on {n_parts} partition(s)"
        )
        return partition

    def _check_consistency(self):
        counts = np.zeros(self.n_dofs, dtype=np.int64)
        for rank in range(self.n_partitions):
            counts[self._owned[rank].indices] += 1
            if not self._owned[rank].is_subset_of(self._relevant[rank]):
                raise SetupError(f"Rank {rank}: owned DoFs are not a subset of relevant DoFs")
        if np.any(counts != 1):
            raise SetupError("Owned DoF sets do not partition the global index space")
        # Each rank owns one contiguous range per block, ranks in order
        for block, (lo, hi) in enumerate(self.block_ranges):
            expected = 0
            for rank in range(self.n_partitions):
                view = self._owned[rank].get_view(lo, hi).indices
                if view.size and not np.array_equal(view, expected + np.arange(view.size)):
                    raise SetupError(f"Block {block} offsets of rank {rank} are inconsistent")
                expected += view.size
            if expected != hi - lo:
                raise SetupError(f"Block {block} is not covered by the owned DoFs")

    @property
    def block_sizes(self):
        return (self.n_u, self.n_p)

    @property
    def block_ranges(self):
        return ((0, self.n_u), (self.n_u, self.n_dofs))

    def owned_cells(self, rank):
        return self._owned_cells[rank]

    def locally_owned_dofs(self, rank):
        return self._owned[rank]

    def locally_relevant_dofs(self, rank):
        return self._relevant[rank]

    def ghost_dofs(self, rank):
        return self._relevant[rank].difference(self._owned[rank])

    def block_owned_dofs(self, rank):
        """[velocity, pressure] owned sets, indices local to each block."""
        return [self._owned[rank].get_view(lo, hi) for lo, hi in self.block_ranges]

    def block_relevant_dofs(self, rank):
        """[velocity, pressure] relevant sets, indices local to each block."""
        return [self._relevant[rank].get_view(lo, hi) for lo, hi in self.block_ranges]

    def dof_owner(self):
        """Owning rank of every global DoF."""
        owner = np.empty(self.n_dofs, dtype=np.int64)
        for rank in range(self.n_partitions):
            owner[self._owned[rank].indices] = rank
        return owner
