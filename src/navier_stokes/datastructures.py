"""Data structures for solver configuration and results.

Structure:
- Parameters: Input configuration (logged to MLflow at start)
- Metrics: Output results (logged to MLflow at end)
- TimeSeries: Per-step history of the time loop
- SystemState: Matrix, rhs and pressure mass matrix of one time step
- SolverInfo: Outcome of one outer Krylov solve
"""

from dataclasses import dataclass, asdict, field
from typing import List, Optional

import pandas as pd

PRECONDITIONERS = ("identity", "block_diagonal", "block_triangular", "simple", "asimple")
INNER_PRECONDITIONERS = ("ilu", "amg")
KRYLOV_BACKENDS = ("numpy", "petsc")


# ========================================================
# Parameters (Input Configuration)
# ========================================================


@dataclass
class Parameters:
    """Solver parameters - input configuration."""

    # Mesh
    nx: int = 16
    ny: int = 16
    Lx: float = 1.0
    Ly: float = 1.0
    n_partitions: int = 1
    degree_velocity: int = 2
    degree_pressure: int = 1

    # Physics and time stepping
    nu: float = 1e-3
    T: float = 0.2
    deltat: float = 0.1
    initial_time: float = 0.0
    convection: bool = True

    # Linear solver
    preconditioner: str = "simple"
    inner_preconditioner: str = "ilu"
    ilu_drop_tol: float = 1e-4
    ilu_fill_factor: float = 10.0
    tolerance: float = 1e-4
    max_iterations: int = 1000
    restart: int = 50
    krylov_backend: str = "numpy"
    fail_on_stagnation: bool = False

    method: str = "TaylorHood-P2P1"

    def __post_init__(self):
        if self.nu <= 0:
            raise ValueError(f"Viscosity must be positive, got nu={self.nu}")
        if self.deltat <= 0:
            raise ValueError(f"Time step must be positive, got deltat={self.deltat}")
        if self.T <= 0:
            raise ValueError(f"Final time must be positive, got T={self.T}")
        if self.n_partitions < 1:
            raise ValueError(f"n_partitions must be at least 1, got {self.n_partitions}")
        if self.tolerance <= 0 or self.max_iterations < 1 or self.restart < 1:
            raise ValueError("Krylov tolerance, max_iterations and restart must be positive")
        self.preconditioner = str(self.preconditioner).lower()
        if self.preconditioner not in PRECONDITIONERS:
            raise ValueError(
                f"Unknown preconditioner '{self.preconditioner}', choose from {PRECONDITIONERS}"
            )
        if self.inner_preconditioner not in INNER_PRECONDITIONERS:
            raise ValueError(
                f"Unknown inner preconditioner '{self.inner_preconditioner}', "
                f"choose from {INNER_PRECONDITIONERS}"
            )
        if self.krylov_backend not in KRYLOV_BACKENDS:
            raise ValueError(
                f"Unknown Krylov backend '{self.krylov_backend}', choose from {KRYLOV_BACKENDS}"
            )

    @property
    def n_steps(self):
        """Number of time steps between initial_time and T."""
        steps = 0
        while self.initial_time + steps * self.deltat < self.T - 1e-9 * self.deltat:
            steps += 1
        return steps

    def to_dataframe(self):
        return pd.DataFrame([asdict(self)])

    def to_mlflow(self):
        return asdict(self)


# ========================================================
# Metrics (Output Results)
# ========================================================


@dataclass
class Metrics:
    """Solver metrics - output results computed during/after the time loop."""

    n_steps: int = 0
    final_time: float = 0.0
    total_iterations: int = 0
    max_step_iterations: int = 0
    mean_step_iterations: float = 0.0
    final_residual: float = float("inf")
    converged: bool = False
    wall_time_seconds: float = 0.0
    velocity_norm: float = 0.0
    pressure_norm: float = 0.0

    def to_dataframe(self):
        return pd.DataFrame([asdict(self)])

    def to_mlflow(self):
        return {k: float(v) for k, v in asdict(self).items()}


# ========================================================
# Time Series (Per-Step History)
# ========================================================


@dataclass
class TimeSeries:
    """History of the time loop (one value per time step)."""

    time: List[float] = field(default_factory=list)
    iterations: List[int] = field(default_factory=list)
    residual: List[float] = field(default_factory=list)
    converged: List[bool] = field(default_factory=list)
    velocity_norm: List[float] = field(default_factory=list)
    wall_time: Optional[List[float]] = None

    def to_dataframe(self) -> pd.DataFrame:
        """Convert to DataFrame with one row per time step."""
        return pd.DataFrame({k: v for k, v in asdict(self).items() if v is not None})

    def to_mlflow_batch(self):
        """Metric entities for ``MlflowClient.log_batch`` (step = time step number)."""
        import time as _time

        from mlflow.entities import Metric

        timestamp = int(_time.time() * 1000)
        metrics = []
        for key, values in asdict(self).items():
            if not values:
                continue
            for step, value in enumerate(values, start=1):
                metrics.append(Metric(key=key, value=float(value), timestamp=timestamp, step=step))
        return metrics


# ========================================================
# Per-Step Linear System
# ========================================================


@dataclass
class SystemState:
    """Assembled linear system of one time step.

    Handed from the assembler to the preconditioner builder and the Krylov
    solver; nothing else keeps a reference to it.
    """

    matrix: object
    rhs: object
    pressure_mass: object
    time: float
    constrained_dofs: object = None

    @property
    def block_sizes(self):
        return self.matrix.block_sizes

    @property
    def F(self):
        return self.matrix.block(0, 0)

    @property
    def B(self):
        return self.matrix.block(1, 0)

    @property
    def Bt(self):
        return self.matrix.block(0, 1)

    @property
    def Mp(self):
        return self.pressure_mass.block(1, 1)


@dataclass
class SolverInfo:
    """Outcome of one outer Krylov solve."""

    iterations: int
    residual: float
    converged: bool
    rhs_norm: float = 0.0
