"""
TriangleMesh: Core data layout for the partitioned P2-P1 finite element solver (2D).

This class holds static geometry, connectivity, boundary tagging and the
cell-to-partition map consumed by the DoF partition manager.

Indexing Conventions:
- Cell-based arrays (cells, cell_edges, cell_partition) use cell indexing (0 to n_cells-1).
- Edge-based arrays (edges) use edge indexing (0 to n_edges-1).
- Boundary arrays (boundary_edges, boundary_tags, boundary_cells, boundary_local_edges)
  use boundary-edge indexing (0 to n_boundary_edges-1).

Local Numbering (per cell, counter-clockwise):
- Vertices 0, 1, 2.
- Local edges: e0 = (0, 1), e1 = (1, 2), e2 = (2, 0).

Boundary Metadata:
- boundary_tags[b] = integer tag of boundary edge b (e.g. 1 = inlet, 3 = outlet).
- boundary_local_edges[b] = local edge index of boundary edge b inside boundary_cells[b].
"""

import numpy as np

from ..errors import SetupError

LOCAL_EDGES = np.array([[0, 1], [1, 2], [2, 0]], dtype=np.int64)


class TriangleMesh:
    def __init__(self, vertices, cells, boundary_edges, boundary_tags, cell_partition=None):
        vertices = np.asarray(vertices, dtype=np.float64)
        cells = np.array(cells, dtype=np.int64)

        if vertices.ndim != 2 or vertices.shape[1] != 2:
            raise SetupError(f"Expected (n_vertices, 2) coordinates, got {vertices.shape}")
        if cells.ndim != 2 or cells.shape[1] != 3 or cells.shape[0] == 0:
            raise SetupError(f"Expected non-empty (n_cells, 3) connectivity, got {cells.shape}")
        if cells.min() < 0 or cells.max() >= vertices.shape[0]:
            raise SetupError("Cell connectivity references unknown vertices")

        # --- Orientation: enforce counter-clockwise cells ---
        area2 = _signed_double_area(vertices, cells)
        if np.any(np.abs(area2) < 1e-14):
            raise SetupError("Mesh contains degenerate (zero-area) cells")
        flip = area2 < 0
        cells[flip] = cells[flip][:, [0, 2, 1]]

        # --- Geometry ---
        self.vertices = vertices
        self.cells = cells

        # --- Connectivity ---
        self.edges, self.cell_edges = _build_edges(cells)

        # --- Boundary ---
        self.boundary_tags = np.asarray(boundary_tags, dtype=np.int64)
        (
            self.boundary_edges,
            self.boundary_cells,
            self.boundary_local_edges,
        ) = self._locate_boundary_edges(np.asarray(boundary_edges, dtype=np.int64))

        # --- Partitioning ---
        self.cell_partition = None
        self.n_partitions = 0
        if cell_partition is not None:
            self.set_partition(cell_partition)

    @property
    def n_vertices(self):
        return self.vertices.shape[0]

    @property
    def n_cells(self):
        return self.cells.shape[0]

    @property
    def n_edges(self):
        return self.edges.shape[0]

    @property
    def cell_centroids(self):
        return self.vertices[self.cells].mean(axis=1)

    @property
    def tags(self):
        """Sorted unique boundary tags present on the mesh."""
        return np.unique(self.boundary_tags)

    def set_partition(self, cell_partition):
        """Attach a cell-to-partition map; partitions must be numbered 0..n-1 without gaps."""
        cell_partition = np.asarray(cell_partition, dtype=np.int64)
        if cell_partition.shape != (self.n_cells,):
            raise SetupError(
                f"Partition map has shape {cell_partition.shape}, expected ({self.n_cells},)"
            )
        present = np.unique(cell_partition)
        if present[0] != 0 or not np.array_equal(present, np.arange(present.size)):
            raise SetupError(f"Partition ids must be contiguous from 0, got {present}")
        self.cell_partition = cell_partition
        self.n_partitions = int(present.size)

    def owned_cells(self, rank):
        """Cells owned by partition ``rank``."""
        if self.cell_partition is None:
            raise SetupError("Mesh has no partition information")
        return np.flatnonzero(self.cell_partition == rank)

    def _locate_boundary_edges(self, boundary_vertices):
        """Map boundary edges given as vertex pairs to (edge id, cell, local edge)."""
        if boundary_vertices.shape[0] != self.boundary_tags.shape[0]:
            raise SetupError("Boundary edges and boundary tags differ in length")

        n_v = self.n_vertices
        edge_keys = self.edges[:, 0] * n_v + self.edges[:, 1]
        b_sorted = np.sort(boundary_vertices, axis=1)
        b_keys = b_sorted[:, 0] * n_v + b_sorted[:, 1]

        order = np.argsort(edge_keys)
        pos = np.searchsorted(edge_keys[order], b_keys)
        pos = np.minimum(pos, order.size - 1)
        edge_ids = order[pos]
        if not np.array_equal(edge_keys[edge_ids], b_keys):
            raise SetupError("Boundary edge list contains edges that are not mesh edges")

        cell_ids, local_ids = _adjacent_cells(self.cell_edges, edge_ids)
        return edge_ids, cell_ids, local_ids


def _adjacent_cells(cell_edges, edge_ids):
    """Return (cell, local edge) of the unique cell adjacent to each boundary edge."""
    n_edges = int(cell_edges.max()) + 1
    counts = np.bincount(cell_edges.ravel(), minlength=n_edges)
    if np.any(counts[edge_ids] != 1):
        raise SetupError("Tagged boundary edge is shared by more than one cell")

    owner = np.full(n_edges, -1, dtype=np.int64)
    local = np.full(n_edges, -1, dtype=np.int64)
    cells = np.repeat(np.arange(cell_edges.shape[0]), 3)
    owner[cell_edges.ravel()] = cells
    local[cell_edges.ravel()] = np.tile(np.arange(3), cell_edges.shape[0])
    return owner[edge_ids], local[edge_ids]


def _signed_double_area(vertices, cells):
    p0 = vertices[cells[:, 0]]
    p1 = vertices[cells[:, 1]]
    p2 = vertices[cells[:, 2]]
    return (p1[:, 0] - p0[:, 0]) * (p2[:, 1] - p0[:, 1]) - (p2[:, 0] - p0[:, 0]) * (p1[:, 1] - p0[:, 1])


def _build_edges(cells):
    """Unique edges (sorted vertex pairs) and the (n_cells, 3) cell-to-edge map."""
    local = cells[:, LOCAL_EDGES]  # (n_cells, 3, 2)
    pairs = np.sort(local.reshape(-1, 2), axis=1)
    edges, inverse = np.unique(pairs, axis=0, return_inverse=True)
    return edges, inverse.reshape(cells.shape[0], 3)
