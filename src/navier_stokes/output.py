"""Output sinks: ``write(step, fields)`` for every emitted time step.

``fields`` is the dict returned by ``NavierStokesSolver.fields()``:
``points`` (n_nodes, 2), ``cells`` (n_cells, 6) quadratic triangles,
``velocity`` (n_nodes, 2), ``pressure`` (n_nodes,), ``partitioning`` (n_cells,).
"""

import logging
from pathlib import Path

import numpy as np
import pyvista as pv

log = logging.getLogger(__name__)


class MemoryWriter:
    """Keeps copies of every written snapshot, keyed by step."""

    def __init__(self):
        self.snapshots = {}

    def write(self, step, fields):
        self.snapshots[step] = {k: np.array(v, copy=True) for k, v in fields.items()}

    @property
    def steps(self):
        return sorted(self.snapshots)

    def __getitem__(self, step):
        return self.snapshots[step]


class VTKWriter:
    """One ``.vtu`` file per step with quadratic triangle cells.

    Parameters
    ----------
    directory : str or Path
        Output directory (created on demand).
    basename : str
        File name prefix; files are ``{basename}_{step:04d}.vtu``.
    """

    def __init__(self, directory=".", basename="output-navier-stokes"):
        self.directory = Path(directory)
        self.basename = basename
        self.files = []

    def write(self, step, fields):
        self.directory.mkdir(parents=True, exist_ok=True)
        grid = self.to_grid(fields)
        path = self.directory / f"{self.basename}_{step:04d}.vtu"
        grid.save(str(path))
        self.files.append(path)
        log.info(f"Output written to {path}")
        return path

    @staticmethod
    def to_grid(fields):
        points2d = np.asarray(fields["points"])
        points = np.column_stack([points2d, np.zeros(points2d.shape[0])])
        cells = np.asarray(fields["cells"], dtype=np.int64)
        # VTK quadratic triangle: 3 corners, then midpoints of (0,1), (1,2), (2,0)
        connectivity = np.hstack([np.full((cells.shape[0], 1), 6, dtype=np.int64), cells]).ravel()
        cell_types = np.full(cells.shape[0], pv.CellType.QUADRATIC_TRIANGLE, dtype=np.uint8)
        grid = pv.UnstructuredGrid(connectivity, cell_types, points)

        velocity = np.asarray(fields["velocity"])
        grid.point_data["velocity"] = np.column_stack([velocity, np.zeros(velocity.shape[0])])
        grid.point_data["pressure"] = np.asarray(fields["pressure"])
        grid.cell_data["partitioning"] = np.asarray(fields["partitioning"])
        return grid
