"""Block system assembly for the linearised, implicit-Euler Navier-Stokes step.

Weak form per time step (u_prev frozen in the convection term)::

    nu (grad u, grad v) + (u, v)/dt + ((u_prev . grad) u, v) - (p, div v) - (q, div u)
        = (f, v) + (u_prev, v)/dt + <h, v>_Neumann

The companion pressure mass matrix ``(p, q)/nu`` is assembled for the
Schur-complement preconditioners only.
"""

import logging

import numpy as np

from .datastructures import SystemState
from .errors import AssemblyError
from .fe import CellValues, FaceValues, DOFS_PER_CELL
from .fe.space import N_VELOCITY_NODES
from .linalg import BlockSparseMatrix, BlockVector, SparsityPattern

log = logging.getLogger(__name__)

N_U_LOCAL = 2 * N_VELOCITY_NODES


def system_coupling():
    """Local coupling table of the system matrix: everything except pressure-pressure."""
    coupling = np.ones((DOFS_PER_CELL, DOFS_PER_CELL), dtype=bool)
    coupling[N_U_LOCAL:, N_U_LOCAL:] = False
    return coupling


def pressure_mass_coupling():
    """Local coupling table of the pressure mass matrix: pressure-pressure only."""
    coupling = np.zeros((DOFS_PER_CELL, DOFS_PER_CELL), dtype=bool)
    coupling[N_U_LOCAL:, N_U_LOCAL:] = True
    return coupling


class Assembler:
    """Assembles ``SystemState`` objects on a fixed pair of sparsity patterns.

    Parameters
    ----------
    space : TaylorHoodSpace
        Space renumbered by ``partition``.
    partition : DofPartition
    problem : Problem
        Source of boundary tags and data functions.
    nu, deltat : float
        Viscosity and time step.
    convection : bool
        Include the linearised convection term.
    """

    def __init__(self, space, partition, problem, nu, deltat, convection=True):
        self.space = space
        self.partition = partition
        self.problem = problem
        self.nu = float(nu)
        self.deltat = float(deltat)
        self.convection = bool(convection)

        mesh = space.mesh
        present = set(mesh.tags.tolist())
        self.inlet_tags = tuple(problem.inlet_tags)
        self.neumann_tags = tuple(problem.neumann_tags)
        for tag in self.inlet_tags + self.neumann_tags:
            if tag not in present:
                raise AssemblyError(f"Boundary tag {tag} does not exist on the mesh (tags: {sorted(present)})")
        if set(self.inlet_tags) & set(self.neumann_tags):
            raise AssemblyError("A boundary tag cannot be both inlet and Neumann")
        self.wall_tags = tuple(sorted(present - set(self.inlet_tags) - set(self.neumann_tags)))

        self.cell_values = CellValues(space)
        self.face_values = FaceValues(space)

        n = space.n_dofs
        self.system_pattern = SparsityPattern.from_cell_dofs(space.cell_dofs, system_coupling(), n)
        self.pressure_pattern = SparsityPattern.from_cell_dofs(space.cell_dofs, pressure_mass_coupling(), n)

        log.info(
            f"Sparsity patterns: system nnz = {self.system_pattern.nnz}, "
            f"pressure mass nnz = {self.pressure_pattern.nnz}; "
            f"inlet tags {self.inlet_tags}, Neumann tags {self.neumann_tags}, wall tags {self.wall_tags}"
        )

    @property
    def block_sizes(self):
        return self.space.block_sizes

    # =========================================================================
    # Assembly
    # =========================================================================

    def assemble(self, solution, time):
        """Assemble matrix, rhs and pressure mass matrix at ``time``.

        Parameters
        ----------
        solution : GhostedBlockVector
            Previous solution, synced; each rank reads only its relevant DoFs.
        time : float

        Returns
        -------
        SystemState
        """
        matrix = BlockSparseMatrix(self.system_pattern, self.block_sizes)
        pressure_mass = BlockSparseMatrix(self.pressure_pattern, self.block_sizes)
        rhs = BlockVector(self.block_sizes)

        part = self.space.mesh.cell_partition
        for rank in range(self.partition.n_partitions):
            cells = self.partition.owned_cells(rank)
            if cells.size == 0:
                continue
            dofs = self.space.cell_dofs[cells]
            u_prev = solution.gather(rank, dofs[:, :N_U_LOCAL]).reshape(-1, 2, N_VELOCITY_NODES)

            local_matrix, local_rhs, local_mass = self._cell_terms(cells, u_prev, time)
            matrix.add(dofs, local_matrix)
            pressure_mass.add(dofs[:, N_U_LOCAL:], local_mass)
            rhs.add(dofs, local_rhs)

            faces = np.flatnonzero(
                np.isin(self.face_values.tags, self.neumann_tags) & (part[self.face_values.cells] == rank)
            )
            if faces.size:
                face_dofs = self.space.cell_dofs[self.face_values.cells[faces], :N_U_LOCAL]
                rhs.add(face_dofs, self._neumann_terms(faces, time))

        matrix.compress()
        pressure_mass.compress()

        dofs, values = self.interpolate_boundary_values(time)
        self.apply_boundary_values(dofs, values, matrix, rhs)

        return SystemState(
            matrix=matrix, rhs=rhs, pressure_mass=pressure_mass, time=time, constrained_dofs=dofs
        )

    def _cell_terms(self, cells, u_prev, time):
        cv = self.cell_values
        W = cv.JxW[cells]
        G = cv.grads[cells]
        phi, psi = cv.phi, cv.psi
        nc = cells.size

        # Velocity at quadrature points, (nc, nq, 2)
        uq = np.einsum("ckb,qb->cqk", u_prev, phi)

        scalar = self.nu * np.einsum("cq,cqad,cqbd->cab", W, G, G)
        scalar += np.einsum("cq,qa,qb->cab", W, phi, phi) / self.deltat
        if self.convection:
            # ((u_prev . grad) phi_b) phi_a
            scalar += np.einsum("cq,cqk,cqbk,qa->cab", W, uq, G, phi)

        local = np.zeros((nc, DOFS_PER_CELL, DOFS_PER_CELL))
        n6 = N_VELOCITY_NODES
        for k in range(2):
            local[:, k * n6:(k + 1) * n6, k * n6:(k + 1) * n6] = scalar
            # -(q_i, d phi_b / d x_k)
            div = -np.einsum("cq,qi,cqb->cib", W, psi, G[..., k])
            local[:, N_U_LOCAL:, k * n6:(k + 1) * n6] = div
            local[:, k * n6:(k + 1) * n6, N_U_LOCAL:] = div.transpose(0, 2, 1)

        mass = np.einsum("cq,qi,qj->cij", W, psi, psi) / self.nu

        points = cv.points[cells]
        f = np.asarray(self.problem.forcing(points[..., 0], points[..., 1], time))
        load = f + uq / self.deltat
        local_rhs = np.zeros((nc, DOFS_PER_CELL))
        local_rhs[:, :N_U_LOCAL] = np.einsum("cq,cqk,qa->cka", W, load, phi).reshape(nc, N_U_LOCAL)
        return local, local_rhs, mass

    def _neumann_terms(self, faces, time):
        fv = self.face_values
        points = fv.points[faces]
        normals = fv.normals[faces][:, None, :]
        h = np.asarray(self.problem.neumann(points[..., 0], points[..., 1], time, normals))
        h = np.broadcast_to(h, points.shape)
        return np.einsum("fq,fqk,fqa->fka", fv.JxW[faces], h, fv.phi[faces]).reshape(faces.size, N_U_LOCAL)

    # =========================================================================
    # Dirichlet data
    # =========================================================================

    def interpolate_boundary_values(self, time):
        """Velocity DoFs on Dirichlet boundaries and their values.

        Inlet tags are interpolated first, wall tags second; on DoFs shared by
        both (corner nodes) the wall value overwrites the inlet value.

        Returns
        -------
        dofs : ndarray
            Sorted constrained global DoFs.
        values : ndarray
            Prescribed value of each constrained DoF.
        """
        space = self.space
        values = np.zeros(space.n_dofs)
        constrained = np.zeros(space.n_dofs, dtype=bool)
        for tags, func in (
            (self.inlet_tags, self.problem.inlet_velocity),
            (self.wall_tags, self.problem.wall_velocity),
        ):
            if not tags:
                continue
            nodes = space.boundary_nodes(tags)
            x, y = space.node_coords[nodes, 0], space.node_coords[nodes, 1]
            u = np.asarray(func(x, y, time))
            for k in range(2):
                dofs = space.velocity_dofs[nodes, k]
                values[dofs] = u[:, k]
                constrained[dofs] = True
        dofs = np.flatnonzero(constrained)
        return dofs, values[dofs]

    def apply_boundary_values(self, dofs, values, matrix, rhs):
        """Eliminate constrained DoFs from ``matrix`` and ``rhs`` in place.

        Rows and columns of constrained DoFs are zeroed without touching the
        sparsity pattern; the diagonal keeps its value (or the mean absolute
        diagonal if it is zero) and the rhs carries ``d_i g_i``.
        """
        if dofs.size == 0:
            return
        A = matrix.csr
        n = A.shape[0]

        g = np.zeros(n)
        g[dofs] = values
        rhs.values -= A @ g

        diag = A.diagonal()
        nonzero = np.abs(diag[diag != 0.0])
        fallback = float(nonzero.mean()) if nonzero.size else 1.0
        d = diag[dofs]
        d = np.where(d == 0.0, fallback, d)

        constrained = np.zeros(n, dtype=bool)
        constrained[dofs] = True
        rows = np.repeat(np.arange(n), np.diff(A.indptr))
        A.data[constrained[rows] | constrained[A.indices]] = 0.0
        A.data[matrix.pattern.positions(dofs, dofs)] = d

        rhs.values[dofs] = d * values
