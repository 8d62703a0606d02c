"""Reconstruction stage: estimate the covariate for unlabeled compositions.

The calibration spline is frozen (beta0_j, delta0_hj, tau_z0 enter as data) and
each core sample gets a latent x0. The basis is evaluated inside the graph from
the exported knots, D and Deltacomb, so every draw of x0 sees the same spline
the calibration stage fitted.
"""

from dataclasses import asdict, dataclass

import numpy as np
import polars as pl

from marshbtf.aggregate import CanonicalSampleArray
from marshbtf.calibration import CalibrationResult, collect_samples, resolve_store
from marshbtf.config import DEPTH_COL, ELEVATION_COL, ReconstructionConfig
from marshbtf.data import sort_core
from marshbtf.diagnostics import ConvergenceReport, check_convergence
from marshbtf.engine import PyMCEngine, SamplingEngine, make_replica_specs
from marshbtf.errors import ConfigurationError
from marshbtf.handoff import HandoffStore
from marshbtf.model_spec import RECONSTRUCTION_VARS, reconstruction_spec
from marshbtf.orchestrator import OrchestrationResult, run_replicas
from marshbtf.run_context import RunContext, print_header
from marshbtf.summarize import parameter_draws, summarize_draws

PRIOR_BOUND_COLUMNS = ("prior_lwr", "prior_upr")


@dataclass(frozen=True, eq=False)
class ReconstructionResult:
    """Reconstructed SWLI per core sample.

    table columns: Depth, SWLI, sigma, lower, upper (SWLI units; lower and
    upper are SWLI -/+ 2 sigma).
    """

    table: pl.DataFrame
    samples: CanonicalSampleArray
    convergence: ConvergenceReport
    orchestration: OrchestrationResult
    model_version: str
    emin: np.ndarray
    emax: np.ndarray

    @property
    def converged(self) -> bool:
        return self.convergence.passed


def prior_bounds(
    calibration: CalibrationResult,
    n: int,
    prior_elevation: pl.DataFrame | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Per-sample support for x0 on the model scale.

    Defaults to the calibration range. External SWLI bounds are scaled like
    the covariate and intersected with that range.
    """
    emin = np.full(n, calibration.elevation_min)
    emax = np.full(n, calibration.elevation_max)
    if prior_elevation is None:
        return emin, emax

    missing = [c for c in PRIOR_BOUND_COLUMNS if c not in prior_elevation.columns]
    if missing:
        msg = f"Prior elevation table is missing columns {missing}"
        raise ConfigurationError(msg)
    if prior_elevation.height != n:
        msg = f"Prior elevation table has {prior_elevation.height} rows for {n} core samples"
        raise ConfigurationError(msg)

    scale = calibration.covariate_scale
    lwr = scale.to_model(prior_elevation["prior_lwr"].to_numpy())
    upr = scale.to_model(prior_elevation["prior_upr"].to_numpy())
    emin = np.maximum(emin, lwr)
    emax = np.minimum(emax, upr)
    empty = np.flatnonzero(~(emin < emax))
    if empty.size:
        msg = (
            f"Prior elevation bounds do not overlap the calibration range for "
            f"core rows {(empty + 1).tolist()}"
        )
        raise ConfigurationError(msg)
    print("  Running with informative elevation bounds")
    return emin, emax


def run_reconstruction(
    calibration: CalibrationResult,
    core_counts: pl.DataFrame,
    config: ReconstructionConfig = ReconstructionConfig(),
    *,
    prior_elevation: pl.DataFrame | None = None,
    store: HandoffStore | None = None,
    engine: SamplingEngine | None = None,
    ctx: RunContext | None = None,
    validation: bool = False,
) -> ReconstructionResult:
    """Estimate SWLI for each core sample.

    Args:
        calibration: Result of run_calibration; its priors are held fixed.
        core_counts: Category count columns plus an optional Depth column.
        prior_elevation: Optional (prior_lwr, prior_upr) per core row, SWLI units.
        validation: Number rows 1..n instead of reading Depth.

    Raises:
        ConfigurationError: Unknown categories or invalid bounds, before dispatch.
        AggregationError: A replica failed or outputs disagree.
    """
    print_header("RECONSTRUCTION")
    depth, table = sort_core(core_counts, calibration.table, validation=validation)
    emin, emax = prior_bounds(calibration, table.n, prior_elevation)
    priors = calibration.priors
    basis = calibration.basis
    print(f"  {table.n} core samples, {table.m} categories")

    payload = {
        "y": table.counts,
        "N_count": table.row_totals,
        "n": table.n,
        "m": table.m,
        "begin0": table.begin0,
        "knots": basis.knots,
        "D": basis.D,
        "deltacomb": basis.deltacomb,
        "deg": basis.deg,
        "beta0_j": priors.beta0_j,
        "delta0_hj": priors.delta0_hj,
        "tau_z0": priors.tau_z0,
        "emin": emin,
        "emax": emax,
        "el_mean": calibration.el_mean,
    }
    model_spec = reconstruction_spec(config.use_uniform_prior)

    engine = engine if engine is not None else PyMCEngine(config.sampling.sampler)
    slot = "reconstruction"
    if calibration.fold is not None:
        slot = f"reconstruction_fold_{calibration.fold:02d}"
    store = resolve_store(store, ctx, slot)
    sampling = config.sampling

    print_header("SAMPLING")
    print(f"  Model: {model_spec.describe()}")
    orchestration = run_replicas(
        make_replica_specs(sampling),
        payload,
        model_spec,
        RECONSTRUCTION_VARS,
        engine,
        store,
        parallel=sampling.parallel,
        n_cores=sampling.n_cores,
    )
    samples = collect_samples(orchestration, store, sampling.replica_ids)

    print_header("CONVERGENCE")
    convergence = check_convergence(samples, RECONSTRUCTION_VARS)

    print_header("EXTRACTING RESULTS")
    rng = np.random.default_rng(config.pooling_seed)
    x0 = summarize_draws(parameter_draws(samples, "x0", config.pooling, rng), shape="sd")
    scale = calibration.covariate_scale
    swli = scale.to_swli(x0.mean)
    sigma = scale.sd_to_swli(x0.sd)
    out = pl.DataFrame(
        {
            DEPTH_COL: depth,
            ELEVATION_COL: swli,
            "sigma": sigma,
            "lower": swli - 2 * sigma,
            "upper": swli + 2 * sigma,
        }
    )
    print(
        f"  {ELEVATION_COL} range: [{swli.min():.2f}, {swli.max():.2f}], "
        f"mean sigma {sigma.mean():.2f}"
    )

    if ctx is not None:
        out.write_parquet(ctx.data_dir / "reconstruction.parquet")
        ctx.params.setdefault("reconstruction", asdict(config))
        print("  Saved: reconstruction.parquet")

    return ReconstructionResult(
        table=out,
        samples=samples,
        convergence=convergence,
        orchestration=orchestration,
        model_version=model_spec.version,
        emin=emin,
        emax=emax,
    )
