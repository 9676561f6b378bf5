"""
Navier-Stokes Solver Runner - Hydra + MLflow integration.

Single runs:
    uv run python run_solver.py
    uv run python run_solver.py nx=32 ny=32 preconditioner=asimple
    uv run python run_solver.py problem=manufactured_stokes nu=1.0 convection=false deltat=1e10 T=1e10

Parameter sweeps (multirun mode):
    uv run python run_solver.py -m +experiment=preconditioner_sweep
    uv run python run_solver.py -m preconditioner=simple,asimple n_partitions=1,4

MLflow modes:
    files   - file-based ./mlruns (default)
    remote  - tracking server from MLFLOW_TRACKING_URI (put credentials in .env)

Setup for remote MLflow:
    cp .env.template .env
    # Edit .env with your credentials
"""

import logging
import os
import sys
import tempfile
from pathlib import Path

import hydra
import mlflow
from dotenv import load_dotenv
from hydra.utils import instantiate
from mlflow.tracking import MlflowClient
from omegaconf import DictConfig, OmegaConf

# Load .env file (for MLflow credentials)
load_dotenv()

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent / "src"))

log = logging.getLogger(__name__)


# =============================================================================
# Solver Factory
# =============================================================================


def create_solver(cfg: DictConfig, writer=None):
    """Instantiate problem and solver from their config subtrees.

    Common parameters from the root config are passed to the solver constructor.
    """
    problem = instantiate(cfg.problem)
    return instantiate(
        cfg.solver,
        problem=problem,
        writer=writer,
        nx=cfg.nx,
        ny=cfg.ny,
        Lx=cfg.Lx,
        Ly=cfg.Ly,
        n_partitions=cfg.n_partitions,
        nu=cfg.nu,
        T=cfg.T,
        deltat=cfg.deltat,
        convection=cfg.convection,
        preconditioner=cfg.preconditioner,
        tolerance=cfg.tolerance,
        max_iterations=cfg.max_iterations,
        _convert_="partial",
    )


# =============================================================================
# MLflow Logging
# =============================================================================


def setup_mlflow(cfg: DictConfig) -> str:
    """Setup MLflow tracking and return experiment name."""
    mode = str(cfg.mlflow.get("mode", "files")).lower()
    if mode in ("files", "local"):
        tracking_uri = cfg.mlflow.get("tracking_uri", "./mlruns")
        os.environ["MLFLOW_TRACKING_URI"] = str(tracking_uri)
    else:
        tracking_uri = os.environ.get("MLFLOW_TRACKING_URI", cfg.mlflow.get("tracking_uri", "./mlruns"))
    mlflow.set_tracking_uri(tracking_uri)

    # Build experiment name with optional project prefix
    experiment_name = cfg.experiment_name
    project_prefix = cfg.mlflow.get("project_prefix", "")
    if project_prefix and not experiment_name.startswith("/"):
        experiment_name = f"{project_prefix}/{experiment_name}"

    mlflow.set_experiment(experiment_name)
    return experiment_name


def log_params(solver):
    """Log solver params to MLflow using dataclass to_mlflow method."""
    mlflow.log_params(solver.params.to_mlflow())
    mlflow.log_param("problem", solver.problem.name)


def log_metrics_and_timeseries(solver, run_id: str):
    """Log final metrics and per-step history to MLflow."""
    mlflow.log_metrics(solver.metrics.to_mlflow())

    if solver.time_series is not None:
        batch_metrics = solver.time_series.to_mlflow_batch()
        if batch_metrics:
            MlflowClient().log_batch(run_id=run_id, metrics=batch_metrics)


def log_fields(solver):
    """Save final nodal fields as zarr arrays to MLflow artifacts."""
    import zarr

    fields = solver.fields()
    arrays = {
        "x": fields["points"][:, 0],
        "y": fields["points"][:, 1],
        "u": fields["velocity"][:, 0],
        "v": fields["velocity"][:, 1],
        "p": fields["pressure"],
        "partitioning": fields["partitioning"],
    }

    with tempfile.TemporaryDirectory() as tmpdir:
        for name, arr in arrays.items():
            zarr_path = Path(tmpdir) / f"{name}.zarr"
            zarr.save(str(zarr_path), arr)
            mlflow.log_artifact(str(zarr_path), artifact_path="fields")

    log.info(f"Logged fields: {', '.join(arrays)} (zarr)")


# =============================================================================
# Main Entry Point
# =============================================================================


@hydra.main(config_path="conf", config_name="config", version_base=None)
def main(cfg: DictConfig) -> None:
    """Hydra entry point - runs solver with MLflow tracking."""
    from navier_stokes import VTKWriter

    experiment_name = setup_mlflow(cfg)
    log.info(f"MLflow experiment: {experiment_name}")

    output_dir = Path(hydra.core.hydra_config.HydraConfig.get().runtime.output_dir)
    writer = VTKWriter(output_dir / "vtk", basename=cfg.output_basename) if cfg.write_vtk else None
    solver = create_solver(cfg, writer=writer)
    problem_name = solver.problem.name
    log.info(
        f"Problem: {problem_name}, {cfg.nx}x{cfg.ny} cells, "
        f"{cfg.n_partitions} partition(s), preconditioner={cfg.preconditioner}"
    )

    run_name = f"{problem_name}_{cfg.preconditioner}_N{cfg.nx}_P{cfg.n_partitions}"

    run_tags = {"problem": problem_name, "preconditioner": cfg.preconditioner}
    with mlflow.start_run(run_name=run_name, tags=run_tags) as run:
        log_params(solver)

        # Log Hydra config as artifact
        mlflow.log_dict(OmegaConf.to_container(cfg), "config.yaml")

        log.info("Starting solver...")
        solver.solve()

        log_metrics_and_timeseries(solver, run.info.run_id)
        log_fields(solver)

        h5_path = output_dir / f"{run_name}.h5"
        solver.save(h5_path)
        mlflow.log_artifact(str(h5_path))
        if writer is not None:
            mlflow.log_artifacts(str(writer.directory), artifact_path="vtk")

        log.info(
            f"Done: {solver.metrics.n_steps} steps, "
            f"{solver.metrics.total_iterations} GMRES iterations, "
            f"converged={solver.metrics.converged}, "
            f"time={solver.metrics.wall_time_seconds:.2f}s"
        )


if __name__ == "__main__":
    main()
