"""Time-stepping controller for the partitioned Taylor-Hood Navier-Stokes solver."""

import logging
import time as _time
from enum import Enum
from pathlib import Path

import mlflow
import numpy as np

from .assembly import Assembler
from .datastructures import Metrics, Parameters, TimeSeries
from .errors import ConvergenceError
from .fe import CellValues, TaylorHoodSpace
from .linalg import BlockVector, GhostedBlockVector
from .linear_solvers import get_solver
from .meshing import create_rectangle_mesh
from .partition import DofPartition
from .preconditioners import create_preconditioner
from .problems import InletCavityProblem

log = logging.getLogger(__name__)


class SolverState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    STEPPING = "stepping"
    FINISHED = "finished"


class NavierStokesSolver:
    """Implicit-Euler Navier-Stokes solver with block-preconditioned GMRES.

    Handles:
    - Setup of mesh, Taylor-Hood space, DoF partition and assembler
    - The time loop (initialize -> step ... -> finished)
    - Per-step history and final metrics
    - Live MLflow logging when a run is active

    Parameters
    ----------
    params : Parameters, optional
        Parameters object. If not provided, kwargs are used to create params.
    problem : Problem, optional
        Boundary-value problem; ``InletCavityProblem()`` if omitted.
    mesh : TriangleMesh, optional
        Partitioned mesh; a structured rectangle mesh is built from params if omitted.
    writer : object, optional
        Output sink with ``write(step, fields)``.
    **kwargs
        Configuration parameters passed to Parameters if params is None.
    """

    Parameters = Parameters

    def __init__(self, params=None, problem=None, mesh=None, writer=None, **kwargs):
        if params is None:
            params = self.Parameters(**kwargs)
        self.params = params
        self.problem = problem if problem is not None else InletCavityProblem()
        if self.problem.nu is not None and not np.isclose(self.problem.nu, params.nu):
            raise ValueError(
                f"Problem data was derived for nu={self.problem.nu}, solver uses nu={params.nu}"
            )
        self.writer = writer

        # --- Setup ---
        if mesh is None:
            mesh = create_rectangle_mesh(
                params.nx, params.ny, params.Lx, params.Ly, n_partitions=params.n_partitions
            )
        self.mesh = mesh
        self.space = TaylorHoodSpace(mesh, params.degree_velocity, params.degree_pressure)
        self.partition = DofPartition.build(mesh, self.space)
        self.assembler = Assembler(
            self.space,
            self.partition,
            self.problem,
            nu=params.nu,
            deltat=params.deltat,
            convection=params.convection,
        )
        self._krylov = get_solver(params.krylov_backend)

        # --- Solution vectors ---
        self.solution_owned = BlockVector(self.partition.block_sizes)
        self.solution = GhostedBlockVector(self.partition)

        self.state = SolverState.UNINITIALIZED
        self.timestep_number = 0
        self.time = params.initial_time
        self.metrics = Metrics()
        self.time_series = None
        self._history = TimeSeries(wall_time=[])
        self._wall_time = 0.0
        self._mlflow_time = 0.0

    # =========================================================================
    # Time loop
    # =========================================================================

    def initialize(self, initial_solution=None):
        """Set the initial condition and emit step 0.

        Parameters
        ----------
        initial_solution : BlockVector or np.ndarray, optional
            Global coefficient vector in this solver's numbering; the
            problem's initial condition is interpolated if omitted.
        """
        if self.state is not SolverState.UNINITIALIZED:
            raise RuntimeError(f"initialize() called in state {self.state.value}")

        if initial_solution is None:
            values = self.space.interpolate(
                self.problem.initial_velocity, self.problem.initial_pressure, t=self.params.initial_time
            )
        else:
            values = getattr(initial_solution, "values", initial_solution)
            values = np.asarray(values, dtype=np.float64)
            if values.shape != (self.space.n_dofs,):
                raise ValueError(
                    f"Initial solution has shape {values.shape}, expected ({self.space.n_dofs},)"
                )

        self.solution_owned.values[:] = values
        self.solution.sync(self.solution_owned)
        self.time = self.params.initial_time
        self.timestep_number = 0
        self._output(0)
        self.state = SolverState.INITIALIZED
        log.info(f"Initialized at t = {self.time:.3f}")

    def step(self):
        """Advance one time step.

        Returns
        -------
        SolverInfo
            Outcome of the outer Krylov solve of this step.
        """
        if self.state is SolverState.UNINITIALIZED:
            raise RuntimeError("step() called before initialize()")
        if self.state is SolverState.FINISHED:
            raise RuntimeError("step() called after the time loop finished")

        p = self.params
        t_start = _time.time()
        self.timestep_number += 1
        self.time = p.initial_time + self.timestep_number * p.deltat
        log.info(f"n = {self.timestep_number:3d}, t = {self.time:.3f}")

        system = self.assembler.assemble(self.solution, self.time)
        preconditioner = create_preconditioner(
            p.preconditioner,
            system,
            inner=p.inner_preconditioner,
            drop_tol=p.ilu_drop_tol,
            fill_factor=p.ilu_fill_factor,
        )
        x, info = self._krylov(
            system.matrix,
            system.rhs.values,
            preconditioner,
            x0=self.solution_owned.values,
            tolerance=p.tolerance,
            max_iterations=p.max_iterations,
            restart=p.restart,
        )

        if not info.converged:
            message = (
                f"GMRES did not converge at step {self.timestep_number}: "
                f"{info.iterations} iterations, residual = {info.residual:.3e}"
            )
            if p.fail_on_stagnation:
                raise ConvergenceError(message)
            log.warning(message)
        log.info(f"  {info.iterations} GMRES iterations, residual = {info.residual:.3e}")

        self.solution_owned.values[:] = x
        self.solution.sync(self.solution_owned)
        self._output(self.timestep_number)
        self.state = SolverState.STEPPING

        velocity_norm = np.linalg.norm(self.solution_owned.block(0))
        wall = _time.time() - t_start
        self._history.time.append(self.time)
        self._history.iterations.append(info.iterations)
        self._history.residual.append(info.residual)
        self._history.converged.append(info.converged)
        self._history.velocity_norm.append(float(velocity_norm))
        self._history.wall_time.append(wall)
        self._wall_time += wall

        if mlflow.active_run():
            t_log_start = _time.time()
            mlflow.log_metrics(
                {
                    "gmres_iterations": info.iterations,
                    "gmres_residual": info.residual,
                    "velocity_norm": float(velocity_norm),
                },
                step=self.timestep_number,
            )
            self._mlflow_time += _time.time() - t_log_start

        return info

    @property
    def is_finished(self):
        return self.state is SolverState.FINISHED

    def _time_remaining(self):
        # Round-off allowance so that t0 + n dt == T ends the loop
        return self.time < self.params.T - 1e-9 * self.params.deltat

    def solve(self):
        """Run the time loop until ``T``.

        Stores results in solver attributes:
        - self.time_series : TimeSeries with one entry per step
        - self.metrics : Metrics of the whole run
        """
        if self.state is SolverState.FINISHED:
            raise RuntimeError("solve() called after the time loop finished")
        if self.state is SolverState.UNINITIALIZED:
            self.initialize()

        while self._time_remaining():
            self.step()

        self.state = SolverState.FINISHED
        self._store_results()
        log.info(
            f"Solver finished {self.metrics.n_steps} step(s) in {self._wall_time:.2f} seconds "
            f"(excl. {self._mlflow_time:.2f}s logging)."
        )

    def _store_results(self):
        h = self._history
        self.time_series = TimeSeries(
            time=list(h.time),
            iterations=list(h.iterations),
            residual=list(h.residual),
            converged=list(h.converged),
            velocity_norm=list(h.velocity_norm),
            wall_time=list(h.wall_time),
        )
        n_steps = len(h.iterations)
        self.metrics = Metrics(
            n_steps=n_steps,
            final_time=self.time,
            total_iterations=int(sum(h.iterations)),
            max_step_iterations=int(max(h.iterations)) if n_steps else 0,
            mean_step_iterations=float(np.mean(h.iterations)) if n_steps else 0.0,
            final_residual=h.residual[-1] if n_steps else 0.0,
            converged=all(h.converged),
            wall_time_seconds=self._wall_time,
            velocity_norm=float(np.linalg.norm(self.solution_owned.block(0))),
            pressure_norm=float(np.linalg.norm(self.solution_owned.block(1))),
        )

    # =========================================================================
    # Fields and output
    # =========================================================================

    def fields(self):
        """Nodal fields of the current solution on the quadratic mesh."""
        values = self.solution_owned.values
        return {
            "points": self.space.node_coords,
            "cells": self.space.cell_nodes,
            "velocity": self.space.nodal_velocity(values),
            "pressure": self.space.nodal_pressure(values),
            "partitioning": self.mesh.cell_partition,
        }

    def _output(self, step):
        if self.writer is not None:
            self.writer.write(step, self.fields())

    def velocity_error(self, exact, t=None):
        """L2 norm of ``u_h - exact`` over the domain.

        Parameters
        ----------
        exact : callable
            ``exact(x, y, t) -> (..., 2)``.
        t : float, optional
            Evaluation time (current time if omitted).
        """
        t = self.time if t is None else t
        cv = CellValues(self.space)
        nodal = self.space.nodal_velocity(self.solution_owned.values)[self.space.cell_nodes]
        uh = np.einsum("cak,qa->cqk", nodal, cv.phi)
        u = np.asarray(exact(cv.points[..., 0], cv.points[..., 1], t))
        return float(np.sqrt(np.sum(cv.JxW * np.sum((uh - u) ** 2, axis=-1))))

    def save(self, filepath):
        """Save params, metrics, time series and nodal fields to an HDF5 file.

        Parameters
        ----------
        filepath : str or Path
            Output file path (use .h5 extension).
        """
        import pandas as pd

        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        f = self.fields()
        fields = pd.DataFrame({
            "x": f["points"][:, 0],
            "y": f["points"][:, 1],
            "u": f["velocity"][:, 0],
            "v": f["velocity"][:, 1],
            "p": f["pressure"],
        })
        with pd.HDFStore(filepath, mode="w", complevel=5) as store:
            store["params"] = self.params.to_dataframe()
            store["metrics"] = self.metrics.to_dataframe()
            if self.time_series is not None:
                store["time_series"] = self.time_series.to_dataframe()
            store["fields"] = fields
