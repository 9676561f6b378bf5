"""Partitioned Taylor-Hood P2-P1 Navier-Stokes solver with Schur-complement block preconditioners."""

from .datastructures import Metrics, Parameters, SolverInfo, SystemState, TimeSeries
from .errors import (
    AssemblyError,
    ConvergenceError,
    NavierStokesError,
    PreconditionerError,
    SetupError,
)
from .output import MemoryWriter, VTKWriter
from .problems import InletCavityProblem, ManufacturedStokesProblem, Problem
from .solver import NavierStokesSolver, SolverState

__all__ = [
    "NavierStokesSolver",
    "SolverState",
    "Parameters",
    "Metrics",
    "TimeSeries",
    "SystemState",
    "SolverInfo",
    "Problem",
    "InletCavityProblem",
    "ManufacturedStokesProblem",
    "MemoryWriter",
    "VTKWriter",
    "NavierStokesError",
    "SetupError",
    "AssemblyError",
    "PreconditionerError",
    "ConvergenceError",
]
