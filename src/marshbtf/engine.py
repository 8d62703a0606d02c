"""Sampling engine boundary: one replica in, one single-chain InferenceData out.

The orchestrator never sees PyMC or nutpie directly. It calls
``engine.sample(model_spec, payload, var_names, replica)`` and persists what
comes back, so tests can swap in a deterministic engine and a spawned worker
only needs to import the modules named in ``engine.modules``.
"""

import time
from dataclasses import dataclass
from typing import Any, Protocol

import arviz as az

from marshbtf.config import SAMPLERS, SEED_MULTIPLIER, SamplingConfig
from marshbtf.errors import ConfigurationError


@dataclass(frozen=True)
class ReplicaSpec:
    """Frozen per-replica schedule. The seed is fixed here, before dispatch."""

    replica_id: int
    seed: int
    n_iter: int
    n_burnin: int
    n_thin: int

    @property
    def tune(self) -> int:
        return self.n_burnin

    @property
    def draws(self) -> int:
        """Post-warmup draws requested from the sampler, before thinning."""
        return self.n_iter - self.n_burnin

    @property
    def n_keep(self) -> int:
        return -(-self.draws // self.n_thin)


def make_replica_specs(sampling: SamplingConfig) -> list[ReplicaSpec]:
    """One ReplicaSpec per configured id, seed = id * SEED_MULTIPLIER."""
    return [
        ReplicaSpec(
            replica_id=rid,
            seed=rid * SEED_MULTIPLIER,
            n_iter=sampling.n_iter,
            n_burnin=sampling.n_burnin,
            n_thin=sampling.n_thin,
        )
        for rid in sampling.replica_ids
    ]


class SamplingEngine(Protocol):
    """Anything that turns (model spec, payload, replica) into one chain of draws."""

    modules: tuple[str, ...]

    def sample(
        self,
        model_spec: Any,
        payload: dict[str, Any],
        var_names: tuple[str, ...],
        replica: ReplicaSpec,
    ) -> az.InferenceData: ...


def thin_posterior(
    idata: az.InferenceData, var_names: tuple[str, ...], n_thin: int
) -> az.InferenceData:
    """Keep tracked variables only and every n_thin-th draw."""
    missing = [v for v in var_names if v not in idata.posterior]
    if missing:
        msg = f"Sampler output lacks tracked variables: {missing}"
        raise KeyError(msg)
    posterior = idata.posterior[list(var_names)].isel(draw=slice(None, None, n_thin))
    return az.InferenceData(posterior=posterior)


@dataclass(frozen=True)
class PyMCEngine:
    """Build the PyMC graph from the model spec and sample one chain.

    sampler="nutpie" compiles with nutpie's Rust NUTS; sampler="pymc" uses
    pm.sample with a single chain on a single core, since parallelism lives at
    the replica level.
    """

    sampler: str = "nutpie"
    progress_bar: bool = False

    def __post_init__(self) -> None:
        if self.sampler not in SAMPLERS:
            msg = f"Unknown sampler {self.sampler!r}. Supported: {', '.join(SAMPLERS)}"
            raise ConfigurationError(msg)

    @property
    def modules(self) -> tuple[str, ...]:
        if self.sampler == "nutpie":
            return ("pymc", "pytensor", "nutpie")
        return ("pymc", "pytensor")

    def sample(
        self,
        model_spec: Any,
        payload: dict[str, Any],
        var_names: tuple[str, ...],
        replica: ReplicaSpec,
    ) -> az.InferenceData:
        model = model_spec.build(payload)

        print(
            f"  replica {replica.replica_id}: {replica.draws} draws, {replica.tune} tune, "
            f"thin {replica.n_thin}, seed={replica.seed}, sampler={self.sampler}"
        )
        t0 = time.time()
        if self.sampler == "nutpie":
            import nutpie

            compiled = nutpie.compile_pymc_model(model)
            idata = nutpie.sample(
                compiled,
                draws=replica.draws,
                tune=replica.tune,
                chains=1,
                seed=replica.seed,
                progress_bar=self.progress_bar,
            )
        else:
            import pymc as pm

            with model:
                idata = pm.sample(
                    draws=replica.draws,
                    tune=replica.tune,
                    chains=1,
                    cores=1,
                    random_seed=replica.seed,
                    progressbar=self.progress_bar,
                    compute_convergence_checks=False,
                )
        print(f"  replica {replica.replica_id}: sampled in {time.time() - t0:.1f}s")

        return thin_posterior(idata, var_names, replica.n_thin)
