"""Calibration stage: learn per-category response curves on a known covariate.

Pipeline:
  1. Sort categories by abundance and locate begin0
  2. Scale the covariate (standardize, or SWLI / 100) and fix the basis range
  3. Build the basis design matrix and the sigma_z prior vectors
  4. Fan out replicas, aggregate, gate on beta_j and sigma_z
  5. Reduce draws to the fixed priors the reconstruction stage consumes
  6. Predictive response curves over a grid, plus empirical proportions

With a fold number the stage runs in validation mode: the fold's rows are held
out and carried on the result for the reconstruction stage to predict.
"""

from dataclasses import asdict, dataclass

import numpy as np
import polars as pl

from marshbtf.aggregate import CanonicalSampleArray, aggregate_replicas
from marshbtf.basis import SplineBasis
from marshbtf.config import (
    ELEVATION_COL,
    SIGMA_Z_DEFAULT_SCALE,
    SIGMA_Z_UNMATCHED_SCALE,
    CalibrationConfig,
)
from marshbtf.data import (
    CompositionTable,
    CovariateScale,
    assign_folds,
    elevation_bounds,
    empirical_proportions,
    fit_covariate_scale,
    fold_split,
    sort_modern,
)
from marshbtf.diagnostics import ConvergenceReport, check_convergence
from marshbtf.engine import PyMCEngine, SamplingEngine, make_replica_specs
from marshbtf.errors import AggregationError, ConfigurationError
from marshbtf.handoff import HandoffStore, LocalHandoffStore
from marshbtf.model_spec import CALIBRATION_MODEL, CALIBRATION_VARS, CalibrationModelSpec
from marshbtf.orchestrator import OrchestrationResult, run_replicas
from marshbtf.run_context import RunContext, print_header
from marshbtf.summarize import (
    parameter_draws,
    response_curve_draws,
    response_curve_table,
    summarize_draws,
    summary_table,
)

CALIBRATION_GATE = ("beta_j", "sigma_z")
SIGMA_Z_PRIOR_COLUMNS = ("category", "mean_sigma_overall", "sd_sigma_overall")


@dataclass(frozen=True, eq=False)
class CalibrationPriors:
    """Calibration point estimates fixed as priors for reconstruction.

    Shapes use J = begin0 informative categories and H basis columns.
    """

    delta0_hj: np.ndarray  # (H, J) posterior means of delta_hj
    delta0_sd: np.ndarray  # (J,) median over h of sd(delta_hj)
    beta0_j: np.ndarray  # (J,)
    beta0_sd: float  # median over j of sd(beta_j)
    sig0_z: np.ndarray  # (J,) posterior means of sigma_z

    @property
    def sigma_z0(self) -> np.ndarray:
        return self.delta0_sd + self.sig0_z

    @property
    def tau_z0(self) -> np.ndarray:
        return 1.0 / self.sigma_z0**2


@dataclass(frozen=True, eq=False)
class CalibrationResult:
    table: CompositionTable
    x: np.ndarray
    covariate_scale: CovariateScale
    elevation_min: float
    elevation_max: float
    basis: SplineBasis
    priors: CalibrationPriors
    samples: CanonicalSampleArray
    convergence: ConvergenceReport
    response_curves: pl.DataFrame
    empirical: pl.DataFrame
    orchestration: OrchestrationResult
    model_version: str
    config: CalibrationConfig
    fold: int | None = None
    y_test: CompositionTable | None = None
    x_test: np.ndarray | None = None

    @property
    def converged(self) -> bool:
        return self.convergence.passed

    @property
    def category_names(self) -> tuple[str, ...]:
        return self.table.category_names

    @property
    def begin0(self) -> int:
        return self.table.begin0

    @property
    def el_mean(self) -> float:
        """Mean training covariate; location of the informative x0 prior."""
        return float(np.mean(self.x))


def elevation_values(elevation) -> np.ndarray:
    """SWLI column of a DataFrame, or any 1-D array-like."""
    if isinstance(elevation, pl.DataFrame):
        if ELEVATION_COL not in elevation.columns:
            msg = f"Elevation table needs a {ELEVATION_COL!r} column, got {elevation.columns}"
            raise ConfigurationError(msg)
        elevation = elevation[ELEVATION_COL].to_numpy()
    return np.asarray(elevation, dtype=np.float64).ravel()


def sigma_z_prior_arrays(
    category_names: tuple[str, ...],
    priors: pl.DataFrame | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Location and scale of the truncated Cauchy prior on sigma_z per category.

    Without a table every category gets location 0 and scale 1. With one, the
    default scale widens to 2 and categories named in the table take its values.
    """
    m = len(category_names)
    mean = np.zeros(m)
    if priors is None:
        return mean, np.full(m, SIGMA_Z_DEFAULT_SCALE)

    missing = [c for c in SIGMA_Z_PRIOR_COLUMNS if c not in priors.columns]
    if missing:
        msg = f"sigma_z prior table is missing columns {missing}"
        raise ConfigurationError(msg)

    sd = np.full(m, SIGMA_Z_UNMATCHED_SCALE)
    position = {name: j for j, name in enumerate(category_names)}
    matched = 0
    for row in priors.select(SIGMA_Z_PRIOR_COLUMNS).iter_rows(named=True):
        j = position.get(row["category"])
        if j is None:
            continue
        mean[j] = row["mean_sigma_overall"]
        sd[j] = row["sd_sigma_overall"]
        matched += 1
    if np.any(sd <= 0):
        raise ConfigurationError("sigma_z prior scales must be positive")
    print(f"  sigma_z priors: {matched} of {m} categories matched from table")
    return mean, sd


def derive_priors(
    samples: CanonicalSampleArray,
    pooling: str = "pooled",
    rng: np.random.Generator | None = None,
) -> CalibrationPriors:
    delta = summarize_draws(parameter_draws(samples, "delta_hj", pooling, rng))
    beta = summarize_draws(parameter_draws(samples, "beta_j", pooling, rng))
    sigma_z = summarize_draws(parameter_draws(samples, "sigma_z", pooling, rng))
    return CalibrationPriors(
        delta0_hj=delta.mean,
        delta0_sd=np.median(delta.sd, axis=0),
        beta0_j=beta.mean,
        beta0_sd=float(np.median(beta.sd)),
        sig0_z=sigma_z.mean,
    )


def resolve_store(
    store: HandoffStore | None, ctx: RunContext | None, name: str
) -> HandoffStore:
    if store is not None:
        return store
    if ctx is not None:
        return LocalHandoffStore(ctx.handoff_dir / name)
    return LocalHandoffStore()


def collect_samples(
    orchestration: OrchestrationResult,
    store: HandoffStore,
    expected_ids: tuple[int, ...],
) -> CanonicalSampleArray:
    """Aggregate after the barrier; any failed replica fails the stage."""
    if orchestration.errors:
        causes = "; ".join(str(e) for _, e in sorted(orchestration.errors.items()))
        msg = f"{len(orchestration.errors)} of {len(expected_ids)} replicas failed: {causes}"
        raise AggregationError(msg)
    return aggregate_replicas(orchestration.handoffs, store, expected_ids)


def run_calibration(
    counts: pl.DataFrame,
    elevation,
    config: CalibrationConfig = CalibrationConfig(),
    *,
    sigma_z_priors: pl.DataFrame | None = None,
    fold: int | None = None,
    model_spec: CalibrationModelSpec = CALIBRATION_MODEL,
    store: HandoffStore | None = None,
    engine: SamplingEngine | None = None,
    ctx: RunContext | None = None,
) -> CalibrationResult:
    """Fit the calibration model and derive reconstruction priors.

    Args:
        counts: One column per category, one row per sample.
        elevation: SWLI per sample (DataFrame with a SWLI column, or an array).
        config: Basis spacing, scaling, sampling schedule and pooling policy.
        sigma_z_priors: Optional (category, mean_sigma_overall, sd_sigma_overall).
        fold: Hold out this cross-validation fold (1..10).

    Raises:
        ConfigurationError: Invalid inputs, before any replica is dispatched.
        AggregationError: A replica failed or outputs disagree.
    """
    print_header("CALIBRATION")
    table = sort_modern(counts)
    swli = elevation_values(elevation)
    if swli.size != table.n:
        msg = f"{table.n} count rows but {swli.size} {ELEVATION_COL} values"
        raise ConfigurationError(msg)
    print(f"  {table.n} samples, {table.m} categories, begin0={table.begin0}")

    scale = fit_covariate_scale(swli, config.scale_x)
    x_all = scale.to_model(swli)
    elevation_min, elevation_max = elevation_bounds(x_all)

    y_test = x_test = None
    train_table, x = table, x_all
    if fold is not None:
        train, test = fold_split(assign_folds(table.n), fold)
        train_table, x = table.subset(train), x_all[train]
        y_test, x_test = table.subset(test), x_all[test]
        print(f"  Fold {fold}: {train.size} training rows, {test.size} held out")

    basis = SplineBasis.build(elevation_min, elevation_max, config.dx)
    Z = basis.design_matrix(x)
    print(
        f"  Basis: [{elevation_min:g}, {elevation_max:g}], dx={config.dx}, "
        f"{basis.n_knots} knots, H={basis.H}"
    )
    mean_sigma_z, sd_sigma_z = sigma_z_prior_arrays(table.category_names, sigma_z_priors)

    payload = {
        "y": train_table.counts,
        "N_count": train_table.row_totals,
        "n": train_table.n,
        "m": train_table.m,
        "begin0": train_table.begin0,
        "Z": Z,
        "H": basis.H,
        "mean_sigma_z": mean_sigma_z,
        "sd_sigma_z": sd_sigma_z,
    }

    engine = engine if engine is not None else PyMCEngine(config.sampling.sampler)
    slot = "calibration" if fold is None else f"calibration_fold_{fold:02d}"
    store = resolve_store(store, ctx, slot)
    sampling = config.sampling

    print_header("SAMPLING")
    print(f"  Model: {model_spec.describe()}")
    orchestration = run_replicas(
        make_replica_specs(sampling),
        payload,
        model_spec,
        CALIBRATION_VARS,
        engine,
        store,
        parallel=sampling.parallel,
        n_cores=sampling.n_cores,
    )
    samples = collect_samples(orchestration, store, sampling.replica_ids)

    print_header("CONVERGENCE")
    convergence = check_convergence(samples, CALIBRATION_GATE)

    print_header("EXTRACTING RESULTS")
    rng = np.random.default_rng(config.pooling_seed)
    priors = derive_priors(samples, config.pooling, rng)
    print(
        f"  beta0_sd={priors.beta0_sd:.4f}, sigma_z0 range "
        f"[{priors.sigma_z0.min():.4f}, {priors.sigma_z0.max():.4f}]"
    )

    grid = basis.grid(config.grid_size)
    p_draws = response_curve_draws(
        parameter_draws(samples, "beta_j", config.pooling, rng),
        parameter_draws(samples, "delta_hj", config.pooling, rng),
        basis.design_matrix(grid),
        table.m,
    )
    curves = response_curve_table(p_draws, scale.to_swli(grid), table.category_names)
    empirical = empirical_proportions(train_table, scale.to_swli(x))

    if ctx is not None:
        curves.write_parquet(ctx.data_dir / "response_curves.parquet")
        empirical.write_parquet(ctx.data_dir / "empirical_proportions.parquet")
        monitored = samples.names_for("beta_j") + samples.names_for("sigma_z")
        summary_table(samples, monitored).write_parquet(ctx.data_dir / "parameter_summary.parquet")
        ctx.params.setdefault("calibration", asdict(config))
        print("  Saved: response_curves.parquet, empirical_proportions.parquet, parameter_summary.parquet")

    return CalibrationResult(
        table=train_table,
        x=x,
        covariate_scale=scale,
        elevation_min=elevation_min,
        elevation_max=elevation_max,
        basis=basis,
        priors=priors,
        samples=samples,
        convergence=convergence,
        response_curves=curves,
        empirical=empirical,
        orchestration=orchestration,
        model_version=model_spec.version,
        config=config,
        fold=fold,
        y_test=y_test,
        x_test=x_test,
    )
