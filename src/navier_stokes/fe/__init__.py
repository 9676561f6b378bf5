"""Finite element machinery: Taylor-Hood space, quadrature and basis evaluation."""

from .space import TaylorHoodSpace, DOFS_PER_CELL
from .values import CellValues, FaceValues

__all__ = ["TaylorHoodSpace", "CellValues", "FaceValues", "DOFS_PER_CELL"]
