"""Taylor-Hood P2-P1 finite element space on a TriangleMesh."""

import numpy as np

from ..errors import SetupError

# Local cell dof layout: [u_x on 6 P2 nodes, u_y on 6 P2 nodes, p on 3 vertices]
N_VELOCITY_NODES = 6
N_PRESSURE_NODES = 3
DOFS_PER_CELL = 2 * N_VELOCITY_NODES + N_PRESSURE_NODES


class TaylorHoodSpace:
    """Vector P2 velocity and scalar P1 pressure.

    P2 nodes are the mesh vertices followed by the edge midpoints, so node
    ``n_vertices + e`` lives on edge ``e``. The global numbering is set by
    :meth:`renumber`; until then velocity dofs are numbered component-wise
    followed by the pressure dofs.

    Parameters
    ----------
    mesh : TriangleMesh
        Mesh the space is attached to.
    degree_velocity, degree_pressure : int
        Polynomial degrees; only the (2, 1) pair is available.
    """

    dim = 2

    def __init__(self, mesh, degree_velocity=2, degree_pressure=1):
        if (degree_velocity, degree_pressure) != (2, 1):
            raise ValueError(
                f"Only Taylor-Hood P2-P1 is available, got P{degree_velocity}-P{degree_pressure}"
            )
        self.mesh = mesh
        self.degree_velocity = degree_velocity
        self.degree_pressure = degree_pressure

        self.n_vertices = mesh.n_vertices
        self.n_nodes = mesh.n_vertices + mesh.n_edges
        midpoints = mesh.vertices[mesh.edges].mean(axis=1)
        self.node_coords = np.vstack([mesh.vertices, midpoints])
        self.cell_nodes = np.hstack([mesh.cells, self.n_vertices + mesh.cell_edges])

        n = self.n_nodes
        self.renumber(
            velocity_dofs=np.arange(2 * n).reshape(2, n).T,
            pressure_dofs=2 * n + np.arange(self.n_vertices),
        )

    @property
    def n_dofs(self):
        return self.n_u + self.n_p

    @property
    def block_sizes(self):
        return (self.n_u, self.n_p)

    def renumber(self, velocity_dofs, pressure_dofs):
        """Install a global numbering.

        Parameters
        ----------
        velocity_dofs : ndarray, shape (n_nodes, 2)
            Global index of each (P2 node, component) pair.
        pressure_dofs : ndarray, shape (n_vertices,)
            Global index of each pressure (vertex) dof.
        """
        velocity_dofs = np.asarray(velocity_dofs, dtype=np.int64)
        pressure_dofs = np.asarray(pressure_dofs, dtype=np.int64)
        if velocity_dofs.shape != (self.n_nodes, 2) or pressure_dofs.shape != (self.n_vertices,):
            raise SetupError("DoF numbering does not match the finite element space")

        all_dofs = np.concatenate([velocity_dofs.ravel(), pressure_dofs])
        if not np.array_equal(np.sort(all_dofs), np.arange(all_dofs.size)):
            raise SetupError("DoF numbering is not a permutation of 0..n_dofs-1")

        self.velocity_dofs = velocity_dofs
        self.pressure_dofs = pressure_dofs
        self.n_u = velocity_dofs.size
        self.n_p = pressure_dofs.size

        # (n_cells, 6, 2) -> component-major (n_cells, 12)
        u_cell = velocity_dofs[self.cell_nodes].transpose(0, 2, 1).reshape(-1, 2 * N_VELOCITY_NODES)
        p_cell = pressure_dofs[self.mesh.cells]
        self.cell_dofs = np.hstack([u_cell, p_cell])

    def boundary_nodes(self, tags):
        """P2 nodes lying on boundary edges carrying one of ``tags``."""
        mesh = self.mesh
        mask = np.isin(mesh.boundary_tags, list(tags))
        edge_ids = mesh.boundary_edges[mask]
        nodes = np.concatenate([mesh.edges[edge_ids].ravel(), self.n_vertices + edge_ids])
        return np.unique(nodes)

    def interpolate(self, velocity, pressure=None, t=0.0):
        """Nodal interpolation into a global coefficient vector.

        Parameters
        ----------
        velocity : callable
            ``velocity(x, y, t) -> (..., 2)`` array.
        pressure : callable, optional
            ``pressure(x, y, t) -> (...)`` array. Zero if omitted.
        """
        values = np.zeros(self.n_dofs)
        x, y = self.node_coords[:, 0], self.node_coords[:, 1]
        u = np.asarray(velocity(x, y, t), dtype=np.float64)
        values[self.velocity_dofs[:, 0]] = u[:, 0]
        values[self.velocity_dofs[:, 1]] = u[:, 1]
        if pressure is not None:
            xv, yv = x[: self.n_vertices], y[: self.n_vertices]
            values[self.pressure_dofs] = pressure(xv, yv, t)
        return values

    def nodal_velocity(self, values):
        """Velocity at every P2 node, shape (n_nodes, 2)."""
        return values[self.velocity_dofs]

    def nodal_pressure(self, values):
        """Pressure at every P2 node (linear interpolation on edge midpoints)."""
        p_vertex = values[self.pressure_dofs]
        p_mid = p_vertex[self.mesh.edges].mean(axis=1)
        return np.concatenate([p_vertex, p_mid])
