"""Precomputed basis values, physical gradients and JxW on cells and boundary edges."""

import numpy as np

from ..errors import SetupError
from .basis import (
    REFERENCE_VERTICES,
    line_quadrature,
    p1_values,
    p2_gradients,
    p2_values,
    triangle_quadrature,
)
from ..meshing.mesh_data import LOCAL_EDGES


class CellValues:
    """Per-cell quadrature data for every cell of the space's mesh.

    Attributes
    ----------
    phi : ndarray (n_q, 6)
        P2 values at the quadrature points.
    psi : ndarray (n_q, 3)
        P1 values at the quadrature points.
    grads : ndarray (n_cells, n_q, 6, 2)
        Physical P2 gradients.
    JxW : ndarray (n_cells, n_q)
        Jacobian-weighted quadrature weights.
    points : ndarray (n_cells, n_q, 2)
        Physical quadrature points.
    """

    def __init__(self, space):
        mesh = space.mesh
        ref_points, weights = triangle_quadrature()
        self.n_q = weights.size
        self.phi = p2_values(ref_points)
        self.psi = p1_values(ref_points)

        coords = mesh.vertices[mesh.cells]  # (n_cells, 3, 2)
        J = np.empty((mesh.n_cells, 2, 2))
        J[:, :, 0] = coords[:, 1] - coords[:, 0]
        J[:, :, 1] = coords[:, 2] - coords[:, 0]
        detJ = np.linalg.det(J)
        if np.any(detJ <= 0.0):
            raise SetupError("Cell with non-positive Jacobian determinant")
        invJ = np.linalg.inv(J)

        # grad = J^{-T} grad_ref
        self.grads = np.einsum("cji,qaj->cqai", invJ, p2_gradients(ref_points))
        self.JxW = detJ[:, None] * weights[None, :]
        self.points = coords[:, None, 0, :] + np.einsum("cij,qj->cqi", J, ref_points)


class FaceValues:
    """Quadrature data on the tagged boundary edges of the mesh.

    Attributes
    ----------
    cells : ndarray (n_faces,)
        Cell adjacent to each boundary edge.
    tags : ndarray (n_faces,)
        Boundary tag of each edge.
    phi : ndarray (n_faces, n_q, 6)
        P2 values of the adjacent cell at the edge quadrature points.
    JxW : ndarray (n_faces, n_q)
    points : ndarray (n_faces, n_q, 2)
    normals : ndarray (n_faces, 2)
        Outward unit normals.
    """

    def __init__(self, space, n_points=3):
        mesh = space.mesh
        s, w = line_quadrature(n_points)
        self.n_q = w.size
        self.cells = mesh.boundary_cells
        self.tags = mesh.boundary_tags

        local = LOCAL_EDGES[mesh.boundary_local_edges]  # (n_faces, 2)
        ref_a = REFERENCE_VERTICES[local[:, 0]]
        ref_b = REFERENCE_VERTICES[local[:, 1]]
        ref_points = ref_a[:, None, :] + s[None, :, None] * (ref_b - ref_a)[:, None, :]
        n_faces = self.cells.size
        self.phi = p2_values(ref_points.reshape(-1, 2)).reshape(n_faces, self.n_q, 6)

        cell_vertices = mesh.cells[self.cells]
        xa = mesh.vertices[np.take_along_axis(cell_vertices, local[:, :1], axis=1)[:, 0]]
        xb = mesh.vertices[np.take_along_axis(cell_vertices, local[:, 1:], axis=1)[:, 0]]
        tangent = xb - xa
        length = np.linalg.norm(tangent, axis=1)

        self.JxW = length[:, None] * w[None, :]
        self.points = xa[:, None, :] + s[None, :, None] * tangent[:, None, :]
        # Counter-clockwise cells: rotating the tangent clockwise points outward
        self.normals = np.column_stack([tangent[:, 1], -tangent[:, 0]]) / length[:, None]
