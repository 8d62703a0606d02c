"""K-fold cross-validation of the calibration / reconstruction pair.

Each fold calibrates on the training rows, reconstructs the held-out rows and
attaches the known SWLI as True. Folds fan out through the same backend
strategy as replicas; the replicas inside a fold always run sequentially so
the two levels never nest process pools.
"""

from dataclasses import asdict, dataclass, replace
from pathlib import Path

import numpy as np
import polars as pl

from marshbtf.calibration import elevation_values, run_calibration
from marshbtf.config import (
    ELEVATION_COL,
    TRUE_COL,
    CalibrationConfig,
    ReconstructionConfig,
    ValidationConfig,
)
from marshbtf.engine import PyMCEngine, SamplingEngine
from marshbtf.errors import AggregationError, ReplicaExecutionError
from marshbtf.handoff import LocalHandoffStore
from marshbtf.orchestrator import select_backend
from marshbtf.reconstruction import run_reconstruction
from marshbtf.run_context import RunContext, print_header


@dataclass(frozen=True)
class FoldContext:
    """Read-only inputs shared by every fold worker."""

    counts: pl.DataFrame
    elevation: np.ndarray
    config: ValidationConfig
    engine: SamplingEngine
    handoff_root: Path | None = None


@dataclass(frozen=True, eq=False)
class ValidationResult:
    """Held-out predictions for every fold plus the summary scores.

    table columns: fold, Depth, SWLI, sigma, lower, upper, True.
    """

    table: pl.DataFrame
    summary: pl.DataFrame
    n_folds: int
    backend: str
    unconverged_folds: tuple[int, ...]


def _fold_configs(config: ValidationConfig) -> tuple[CalibrationConfig, ReconstructionConfig]:
    calibration = CalibrationConfig(
        scale_x=config.scale_x,
        dx=config.dx,
        sampling=replace(config.calibration_sampling, parallel=False),
        pooling=config.pooling,
        pooling_seed=config.pooling_seed,
    )
    reconstruction = ReconstructionConfig(
        use_uniform_prior=config.use_uniform_prior,
        sampling=replace(config.reconstruction_sampling, parallel=False),
        pooling=config.pooling,
        pooling_seed=config.pooling_seed,
    )
    return calibration, reconstruction


def _run_fold(context: FoldContext, fold: int) -> pl.DataFrame:
    """Worker body: calibrate without the fold, then predict it."""
    cal_config, rec_config = _fold_configs(context.config)
    cal_store = rec_store = None
    if context.handoff_root is not None:
        fold_root = context.handoff_root / f"fold_{fold:02d}"
        cal_store = LocalHandoffStore(fold_root / "calibration")
        rec_store = LocalHandoffStore(fold_root / "reconstruction")

    calibration = run_calibration(
        context.counts,
        context.elevation,
        cal_config,
        fold=fold,
        store=cal_store,
        engine=context.engine,
    )
    reconstruction = run_reconstruction(
        calibration,
        calibration.y_test.to_frame(),
        rec_config,
        store=rec_store,
        engine=context.engine,
        validation=True,
    )
    true_swli = calibration.covariate_scale.to_swli(calibration.x_test)
    converged = calibration.converged and reconstruction.converged
    return reconstruction.table.with_columns(
        pl.Series(TRUE_COL, true_swli),
        pl.lit(fold).alias("fold"),
        pl.lit(converged).alias("converged"),
    )


def summarize_validation(table: pl.DataFrame) -> pl.DataFrame:
    """Coverage (% of True strictly inside lower..upper) and RMSE, rounded to 2."""
    return table.select(
        (
            ((pl.col("lower") < pl.col(TRUE_COL)) & (pl.col(TRUE_COL) < pl.col("upper"))).mean()
            * 100
        )
        .round(2)
        .alias("coverage"),
        ((pl.col(TRUE_COL) - pl.col(ELEVATION_COL)) ** 2).mean().sqrt().round(2).alias("RMSE"),
    )


def run_validation(
    counts: pl.DataFrame,
    elevation,
    config: ValidationConfig = ValidationConfig(),
    *,
    engine: SamplingEngine | None = None,
    ctx: RunContext | None = None,
) -> ValidationResult:
    """Run folds 1..n_folds and score the held-out predictions.

    Raises:
        AggregationError: After the barrier, if any fold failed.
    """
    print_header("CROSS-VALIDATION")
    engine = engine if engine is not None else PyMCEngine(config.calibration_sampling.sampler)
    context = FoldContext(
        counts=counts,
        elevation=elevation_values(elevation),
        config=config,
        engine=engine,
        handoff_root=ctx.handoff_dir if ctx is not None else None,
    )
    folds = {f: f for f in range(1, config.n_folds + 1)}
    backend = select_backend(config.parallel, len(folds), config.n_cores, tuple(engine.modules))
    n_workers = getattr(backend, "n_workers", 1)
    print(f"  Running {len(folds)} folds ({backend.name} backend, {n_workers} workers)")

    outcomes = backend.run(_run_fold, context, folds)
    errors = [o for o in outcomes.values() if isinstance(o, ReplicaExecutionError)]
    if errors:
        causes = "; ".join(f"fold {e.replica_id}: {e.cause}" for e in errors)
        msg = f"{len(errors)} of {len(folds)} folds failed: {causes}"
        raise AggregationError(msg)

    table = pl.concat([outcomes[f] for f in sorted(outcomes)]).select(
        "fold", pl.exclude("fold", "converged"), "converged"
    )
    unconverged = tuple(
        sorted(set(table.filter(~pl.col("converged"))["fold"].to_list()))
    )
    table = table.drop("converged")
    summary = summarize_validation(table)

    print_header("VALIDATION SUMMARY")
    print(f"  Coverage: {summary['coverage'][0]:.2f}%  RMSE: {summary['RMSE'][0]:.2f}")
    if unconverged:
        print(f"  WARNING: folds {list(unconverged)} did not pass the R-hat gate")

    if ctx is not None:
        table.write_parquet(ctx.data_dir / "validation.parquet")
        summary.write_parquet(ctx.data_dir / "validation_summary.parquet")
        ctx.params.setdefault("validation", asdict(config))
        print("  Saved: validation.parquet, validation_summary.parquet")

    return ValidationResult(
        table=table,
        summary=summary,
        n_folds=config.n_folds,
        backend=backend.name,
        unconverged_folds=unconverged,
    )
