"""
End-to-end tests for the calibration, reconstruction and validation stages.

The scripted engine stands in for MCMC, so these tests exercise everything
around the sampler: sorting, scaling, basis, payload, fan-out, handoff,
aggregation, the convergence gate, prior derivation and the output tables.

Run: uv run pytest tests/test_stages.py -v
"""

from dataclasses import replace

import numpy as np
import polars as pl
import pytest
from fake_engine import ScriptedEngine
from polars.testing import assert_frame_equal

import marshbtf
from marshbtf.calibration import (
    CALIBRATION_GATE,
    derive_priors,
    elevation_values,
    run_calibration,
    sigma_z_prior_arrays,
)
from marshbtf.config import CalibrationConfig, ReconstructionConfig, ValidationConfig
from marshbtf.errors import AggregationError, ConfigurationError, ConvergenceWarning
from marshbtf.handoff import MemoryHandoffStore
from marshbtf.reconstruction import run_reconstruction
from marshbtf.run_context import RunContext
from marshbtf.validation import _fold_configs, run_validation, summarize_validation


@pytest.fixture
def calibration(modern_counts, modern_elevation, fast_sampling):
    return run_calibration(
        modern_counts,
        modern_elevation,
        CalibrationConfig(sampling=fast_sampling),
        engine=ScriptedEngine(),
    )


# ── Calibration ──────────────────────────────────────────────────────────────


class TestCalibration:
    """Scripted draws through the full calibration stage."""

    def test_result_geometry(self, calibration):
        assert calibration.category_names == ("dominant", "middle", "minor", "trace", "rare")
        assert calibration.begin0 == 4
        assert (calibration.elevation_min, calibration.elevation_max) == (0.0, 2.0)
        assert calibration.basis.H == 22
        assert calibration.samples.shape[:2] == (200, 3)

    def test_priors_shapes(self, calibration):
        priors = calibration.priors
        assert priors.delta0_hj.shape == (22, 4)
        assert priors.delta0_sd.shape == (4,)
        assert priors.beta0_j.shape == (4,)
        assert priors.sig0_z.shape == (4,)
        np.testing.assert_allclose(priors.tau_z0, 1.0 / (priors.delta0_sd + priors.sig0_z) ** 2)

    def test_priors_match_pooled_draws(self, calibration):
        beta = calibration.samples.parameter("beta_j")
        pooled = np.swapaxes(beta, 0, 1).reshape(-1, 4)
        np.testing.assert_allclose(calibration.priors.beta0_j, pooled.mean(axis=0))

    def test_converged(self, calibration):
        assert calibration.converged
        gated = {name.split("[")[0] for name in calibration.convergence.rhat}
        assert gated == set(CALIBRATION_GATE)

    def test_response_curves(self, calibration):
        curves = calibration.response_curves
        assert curves.height == 50 * 5
        assert curves["SWLI"].min() == pytest.approx(0.0)
        assert curves["SWLI"].max() == pytest.approx(200.0)
        sums = curves.group_by("SWLI").agg(pl.col("proportion").sum())["proportion"]
        np.testing.assert_allclose(sums.to_numpy(), 1.0, atol=1e-6)

    def test_empirical(self, calibration):
        assert calibration.empirical.height == 30 * 5
        assert calibration.empirical["SWLI"].min() == pytest.approx(85.0)

    def test_deterministic(self, modern_counts, modern_elevation, fast_sampling, calibration):
        again = run_calibration(
            modern_counts,
            modern_elevation,
            CalibrationConfig(sampling=fast_sampling),
            engine=ScriptedEngine(),
            store=MemoryHandoffStore(),
        )
        np.testing.assert_array_equal(again.samples.values, calibration.samples.values)

    def test_standardized_covariate(self, modern_counts, modern_elevation, fast_sampling):
        result = run_calibration(
            modern_counts,
            modern_elevation,
            CalibrationConfig(scale_x=True, sampling=fast_sampling),
            engine=ScriptedEngine(),
        )
        assert result.covariate_scale.standardized
        assert result.elevation_min == -2.0
        assert result.elevation_max == 2.0
        assert result.el_mean == pytest.approx(0.0, abs=1e-12)

    def test_fold_holds_out_rows(self, modern_counts, modern_elevation, fast_sampling):
        result = run_calibration(
            modern_counts,
            modern_elevation,
            CalibrationConfig(dx=0.2, sampling=fast_sampling),
            fold=1,
            engine=ScriptedEngine(),
        )
        assert result.table.n == 27
        assert result.y_test.n == 3
        assert len(result.x_test) == 3

    def test_failed_replica_fails_stage(self, modern_counts, modern_elevation, fast_sampling):
        with pytest.raises(AggregationError, match="1 of 3 replicas failed"):
            run_calibration(
                modern_counts,
                modern_elevation,
                CalibrationConfig(sampling=fast_sampling),
                engine=ScriptedEngine(fail_ids=frozenset({2})),
            )

    def test_row_count_mismatch(self, modern_counts, fast_sampling):
        with pytest.raises(ConfigurationError, match="SWLI"):
            run_calibration(
                modern_counts,
                np.linspace(80, 120, 10),
                CalibrationConfig(sampling=fast_sampling),
                engine=ScriptedEngine(),
            )

    def test_unconverged_still_returns(self, modern_counts, modern_elevation, fast_sampling):
        engine = ScriptedEngine(shift={3: 4.0})
        with pytest.warns(ConvergenceWarning):
            result = run_calibration(
                modern_counts,
                modern_elevation,
                CalibrationConfig(sampling=fast_sampling),
                engine=engine,
            )
        assert not result.converged
        assert result.response_curves.height == 250

    def test_writes_outputs(self, modern_counts, modern_elevation, fast_sampling, tmp_path):
        with RunContext("calibration", results_root=tmp_path) as ctx:
            run_calibration(
                modern_counts,
                modern_elevation,
                CalibrationConfig(sampling=fast_sampling),
                engine=ScriptedEngine(),
                ctx=ctx,
            )
        for name in ("response_curves", "empirical_proportions", "parameter_summary"):
            assert (ctx.data_dir / f"{name}.parquet").exists()
        assert sorted(p.name for p in (ctx.handoff_dir / "calibration").iterdir()) == [
            "replica_001.nc",
            "replica_002.nc",
            "replica_003.nc",
        ]
        assert "calibration" in ctx.params


class TestCalibrationHelpers:
    def test_elevation_values(self):
        np.testing.assert_array_equal(
            elevation_values(pl.DataFrame({"SWLI": [1.0, 2.0]})), [1.0, 2.0]
        )
        with pytest.raises(ConfigurationError):
            elevation_values(pl.DataFrame({"elev": [1.0]}))

    def test_sigma_z_defaults(self):
        mean, sd = sigma_z_prior_arrays(("a", "b"))
        np.testing.assert_array_equal(mean, [0.0, 0.0])
        np.testing.assert_array_equal(sd, [1.0, 1.0])

    def test_sigma_z_from_table(self):
        priors = pl.DataFrame(
            {
                "category": ["b", "zzz"],
                "mean_sigma_overall": [0.3, 9.0],
                "sd_sigma_overall": [0.1, 9.0],
            }
        )
        mean, sd = sigma_z_prior_arrays(("a", "b", "c"), priors)
        np.testing.assert_array_equal(mean, [0.0, 0.3, 0.0])
        np.testing.assert_array_equal(sd, [2.0, 0.1, 2.0])

    def test_sigma_z_table_columns(self):
        with pytest.raises(ConfigurationError, match="missing columns"):
            sigma_z_prior_arrays(("a",), pl.DataFrame({"category": ["a"]}))

    def test_derive_priors_random_replica(self, calibration):
        a = derive_priors(calibration.samples, "random_replica", np.random.default_rng(1))
        b = derive_priors(calibration.samples, "random_replica", np.random.default_rng(1))
        np.testing.assert_array_equal(a.delta0_hj, b.delta0_hj)
        assert a.delta0_hj.shape == (22, 4)


# ── Reconstruction ───────────────────────────────────────────────────────────


class TestReconstruction:
    def test_table(self, calibration, core_counts, fast_sampling):
        result = run_reconstruction(
            calibration,
            core_counts,
            ReconstructionConfig(sampling=fast_sampling),
            engine=ScriptedEngine(),
        )
        table = result.table
        assert table.columns == ["Depth", "SWLI", "sigma", "lower", "upper"]
        assert table["Depth"].to_list() == [10, 20, 30, 40]
        np.testing.assert_allclose(table["lower"], table["SWLI"] - 2 * table["sigma"])
        np.testing.assert_allclose(table["upper"], table["SWLI"] + 2 * table["sigma"])
        assert result.converged
        assert result.model_version == "reconstruction-informative-v1"

    def test_swli_units(self, calibration, core_counts, fast_sampling):
        """Scripted x0 centres on the training mean, so SWLI is near 110."""
        result = run_reconstruction(
            calibration,
            core_counts,
            ReconstructionConfig(sampling=fast_sampling),
            engine=ScriptedEngine(),
        )
        assert result.table["SWLI"].mean() == pytest.approx(calibration.el_mean * 100, abs=2.0)
        assert result.table["sigma"].mean() == pytest.approx(10.0, rel=0.2)

    def test_uniform_prior_version(self, calibration, core_counts, fast_sampling):
        result = run_reconstruction(
            calibration,
            core_counts,
            ReconstructionConfig(use_uniform_prior=True, sampling=fast_sampling),
            engine=ScriptedEngine(),
        )
        assert result.model_version == "reconstruction-uniform-v1"

    def test_prior_bounds_intersected(self, calibration, core_counts, fast_sampling):
        bounds = pl.DataFrame({"prior_lwr": [90.0] * 4, "prior_upr": [300.0] * 4})
        result = run_reconstruction(
            calibration,
            core_counts,
            ReconstructionConfig(sampling=fast_sampling),
            prior_elevation=bounds,
            engine=ScriptedEngine(),
        )
        np.testing.assert_allclose(result.emin, 0.9)
        np.testing.assert_allclose(result.emax, 2.0)

    def test_prior_bounds_row_mismatch(self, calibration, core_counts):
        bounds = pl.DataFrame({"prior_lwr": [90.0], "prior_upr": [120.0]})
        with pytest.raises(ConfigurationError, match="rows"):
            run_reconstruction(
                calibration, core_counts, prior_elevation=bounds, engine=ScriptedEngine()
            )

    def test_prior_bounds_disjoint(self, calibration, core_counts):
        bounds = pl.DataFrame({"prior_lwr": [250.0] * 4, "prior_upr": [300.0] * 4})
        with pytest.raises(ConfigurationError, match="do not overlap"):
            run_reconstruction(
                calibration, core_counts, prior_elevation=bounds, engine=ScriptedEngine()
            )

    def test_unknown_core_category(self, calibration, core_counts):
        core = core_counts.with_columns(pl.lit(1).alias("exotic"))
        with pytest.raises(ConfigurationError, match="exotic"):
            run_reconstruction(calibration, core, engine=ScriptedEngine())

    def test_writes_output(self, calibration, core_counts, fast_sampling, tmp_path):
        with RunContext("reconstruction", results_root=tmp_path) as ctx:
            run_reconstruction(
                calibration,
                core_counts,
                ReconstructionConfig(sampling=fast_sampling),
                engine=ScriptedEngine(),
                ctx=ctx,
            )
        assert (ctx.data_dir / "reconstruction.parquet").exists()
        assert (ctx.handoff_dir / "reconstruction" / "replica_001.nc").exists()


# ── Validation ───────────────────────────────────────────────────────────────


class TestValidation:
    @pytest.fixture
    def config(self, fast_sampling):
        return ValidationConfig(
            n_folds=2,
            calibration_sampling=fast_sampling,
            reconstruction_sampling=fast_sampling,
            parallel=False,
        )

    def test_folds_and_columns(self, modern_counts, modern_elevation, config):
        result = run_validation(modern_counts, modern_elevation, config, engine=ScriptedEngine())
        assert result.table.columns == [
            "fold", "Depth", "SWLI", "sigma", "lower", "upper", "True"
        ]
        assert result.table["fold"].unique().sort().to_list() == [1, 2]
        assert result.table.height == 6
        assert result.backend == "sequential"
        assert result.unconverged_folds == ()
        assert result.summary.columns == ["coverage", "RMSE"]

    def test_true_values_are_held_out_swli(self, modern_counts, modern_elevation, config):
        result = run_validation(modern_counts, modern_elevation, config, engine=ScriptedEngine())
        swli = set(np.round(modern_elevation["SWLI"].to_numpy(), 8))
        assert set(np.round(result.table["True"].to_numpy(), 8)) <= swli

    def test_fold_failure_raises(self, modern_counts, modern_elevation, config):
        with pytest.raises(AggregationError, match="folds failed"):
            run_validation(
                modern_counts,
                modern_elevation,
                config,
                engine=ScriptedEngine(fail_ids=frozenset({2})),
            )

    def test_writes_outputs(self, modern_counts, modern_elevation, config, tmp_path):
        with RunContext("validation", results_root=tmp_path) as ctx:
            run_validation(
                modern_counts, modern_elevation, config, engine=ScriptedEngine(), ctx=ctx
            )
        assert (ctx.data_dir / "validation.parquet").exists()
        assert (ctx.data_dir / "validation_summary.parquet").exists()
        assert (ctx.handoff_dir / "fold_01" / "calibration" / "replica_001.nc").exists()
        run_subdirs = {p.name for p in ctx.run_dir.iterdir() if p.is_dir()}
        assert run_subdirs == {"data", "handoff"}

    def test_process_backend_matches_sequential(
        self, modern_counts, modern_elevation, config
    ):
        parallel = replace(config, parallel=True, n_cores=2)
        result = run_validation(
            modern_counts, modern_elevation, parallel, engine=ScriptedEngine()
        )
        assert result.backend in ("fork", "spawn")
        sequential = run_validation(
            modern_counts, modern_elevation, config, engine=ScriptedEngine()
        )
        assert_frame_equal(result.table, sequential.table)

    def test_pooling_seed_reaches_both_stages(self, config):
        cal, rec = _fold_configs(replace(config, pooling="random_replica", pooling_seed=7))
        assert (cal.pooling, cal.pooling_seed) == ("random_replica", 7)
        assert (rec.pooling, rec.pooling_seed) == ("random_replica", 7)

    def test_random_replica_pooling_reproducible(self, modern_counts, modern_elevation, config):
        seeded = replace(config, pooling="random_replica", pooling_seed=11)
        first = run_validation(modern_counts, modern_elevation, seeded, engine=ScriptedEngine())
        again = run_validation(modern_counts, modern_elevation, seeded, engine=ScriptedEngine())
        assert_frame_equal(first.table, again.table)


class TestSummarizeValidation:
    def test_coverage_and_rmse(self):
        table = pl.DataFrame(
            {
                "SWLI": [101.0, 107.0],
                "lower": [95.0, 100.0],
                "upper": [105.0, 109.0],
                "True": [100.0, 110.0],
            }
        )
        summary = summarize_validation(table)
        assert summary["coverage"][0] == 50.0
        assert summary["RMSE"][0] == 2.24

    def test_boundary_is_outside(self):
        """Coverage uses strict inequalities."""
        table = pl.DataFrame(
            {"SWLI": [100.0], "lower": [100.0], "upper": [110.0], "True": [100.0]}
        )
        assert summarize_validation(table)["coverage"][0] == 0.0


def test_public_api():
    assert marshbtf.run_calibration is run_calibration
    assert marshbtf.run_validation is run_validation
    assert marshbtf.CalibrationConfig is CalibrationConfig
