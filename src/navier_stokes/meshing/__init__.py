"""Triangular meshes with boundary tags and partition maps."""

from .mesh_data import TriangleMesh, LOCAL_EDGES
from .structured import create_rectangle_mesh, partition_cells, LEFT, BOTTOM, RIGHT, TOP

__all__ = [
    "TriangleMesh",
    "LOCAL_EDGES",
    "create_rectangle_mesh",
    "partition_cells",
    "LEFT",
    "BOTTOM",
    "RIGHT",
    "TOP",
]
