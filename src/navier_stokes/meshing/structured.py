"""Structured triangulations of rectangles and recursive coordinate bisection."""

import logging

import numpy as np

from ..errors import SetupError
from .mesh_data import TriangleMesh

log = logging.getLogger(__name__)

# Boundary tags of the rectangle sides
LEFT, BOTTOM, RIGHT, TOP = 1, 2, 3, 4


def create_rectangle_mesh(nx, ny, Lx=1.0, Ly=1.0, n_partitions=1):
    """Triangulate [0, Lx] x [0, Ly] with nx * ny squares split along the diagonal.

    Boundary tags: 1 = left (x = 0), 2 = bottom (y = 0), 3 = right (x = Lx), 4 = top (y = Ly).

    Parameters
    ----------
    nx, ny : int
        Number of squares in x and y.
    Lx, Ly : float
        Domain size.
    n_partitions : int
        Number of partitions; cells are distributed by coordinate bisection.

    Returns
    -------
    TriangleMesh
    """
    if nx < 1 or ny < 1:
        raise SetupError(f"Need at least one cell per direction, got nx={nx}, ny={ny}")

    xs = np.linspace(0.0, Lx, nx + 1)
    ys = np.linspace(0.0, Ly, ny + 1)
    X, Y = np.meshgrid(xs, ys, indexing="ij")
    vertices = np.column_stack([X.ravel(), Y.ravel()])

    def vid(i, j):
        return i * (ny + 1) + j

    I, J = np.meshgrid(np.arange(nx), np.arange(ny), indexing="ij")
    I, J = I.ravel(), J.ravel()
    v00, v10 = vid(I, J), vid(I + 1, J)
    v01, v11 = vid(I, J + 1), vid(I + 1, J + 1)
    lower = np.column_stack([v00, v10, v11])
    upper = np.column_stack([v00, v11, v01])
    cells = np.empty((2 * I.size, 3), dtype=np.int64)
    cells[0::2] = lower
    cells[1::2] = upper

    i = np.arange(nx)
    j = np.arange(ny)
    sides = [
        (np.column_stack([vid(0, j), vid(0, j + 1)]), LEFT),
        (np.column_stack([vid(i, 0), vid(i + 1, 0)]), BOTTOM),
        (np.column_stack([vid(nx, j), vid(nx, j + 1)]), RIGHT),
        (np.column_stack([vid(i, ny), vid(i + 1, ny)]), TOP),
    ]
    boundary_edges = np.vstack([s for s, _ in sides])
    boundary_tags = np.concatenate([np.full(s.shape[0], tag) for s, tag in sides])

    mesh = TriangleMesh(vertices, cells, boundary_edges, boundary_tags)
    mesh.set_partition(partition_cells(mesh.cell_centroids, n_partitions))

    log.info(f"Created {nx}x{ny} rectangle mesh: {mesh.n_cells} cells, {n_partitions} partition(s)")
    return mesh


def partition_cells(centroids, n_partitions):
    """Recursive coordinate bisection of cell centroids into balanced partitions.

    Each split is taken along the longer extent of the current cell set, and
    the cell count is divided in proportion to the partitions on each side.
    """
    n_cells = centroids.shape[0]
    if n_partitions < 1:
        raise SetupError(f"n_partitions must be positive, got {n_partitions}")
    if n_partitions > n_cells:
        raise SetupError(f"Cannot split {n_cells} cells into {n_partitions} partitions")

    parts = np.zeros(n_cells, dtype=np.int64)

    def bisect(ids, first, count):
        if count == 1:
            parts[ids] = first
            return
        pts = centroids[ids]
        axis = int(np.argmax(pts.max(axis=0) - pts.min(axis=0)))
        # Stable sort keeps the split reproducible for ties
        order = ids[np.argsort(pts[:, axis], kind="stable")]
        left_count = count // 2
        cut = (ids.size * left_count) // count
        bisect(order[:cut], first, left_count)
        bisect(order[cut:], first + left_count, count - left_count)

    bisect(np.arange(n_cells), 0, n_partitions)
    return parts
