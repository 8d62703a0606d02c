"""Replica fan-out across worker processes.

Each replica is an independent single-chain sampler run. The orchestrator picks
a backend, installs the read-only run context in every worker once (through the
pool initializer, not per task), dispatches one task per replica and waits on a
static barrier. Completions arrive in any order and are slotted by replica id.

Backends:
  SequentialBackend  in the calling process (parallel=False or one replica)
  ForkPoolBackend    fork start method; workers inherit the context copy-on-write
  SpawnPoolBackend   fresh interpreters; the context is pickled into each worker
                     and the engine's modules are imported by the initializer

Failures never propagate out of a worker. They come back as
ReplicaExecutionError values tagged with the replica id, and the caller decides
what a partial result means. There is no retry.
"""

import importlib
import multiprocessing as mp
import os
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from concurrent.futures import ProcessPoolExecutor, wait
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass
from typing import Any

import numpy as np

from marshbtf.engine import ReplicaSpec, SamplingEngine
from marshbtf.errors import ConfigurationError, ReplicaExecutionError
from marshbtf.handoff import HandoffStore

# Per-process slot filled by the pool initializer.
_WORKER_STATE: dict[str, Any] = {}


def _install_context(context: Any, preload: tuple[str, ...] = ()) -> None:
    for name in preload:
        importlib.import_module(name)
    _WORKER_STATE["context"] = context


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def _run_task(worker: Callable[[Any, Any], Any], task_id: int, task: Any) -> Any:
    """Pool entry point: run one task against the installed context."""
    try:
        return worker(_WORKER_STATE["context"], task)
    except Exception as exc:
        return ReplicaExecutionError(task_id, _describe(exc))


# ── Backends ─────────────────────────────────────────────────────────────────


class ConcurrencyBackend(ABC):
    """Runs worker(context, task) once per task id and returns every outcome."""

    name: str = "abstract"
    uses_processes: bool = False

    @abstractmethod
    def run(
        self,
        worker: Callable[[Any, Any], Any],
        context: Any,
        tasks: Mapping[int, Any],
    ) -> dict[int, Any]:
        """Return {task_id: result or ReplicaExecutionError}."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class SequentialBackend(ConcurrencyBackend):
    name = "sequential"

    def run(self, worker, context, tasks):
        results: dict[int, Any] = {}
        for task_id, task in tasks.items():
            try:
                results[task_id] = worker(context, task)
            except Exception as exc:
                results[task_id] = ReplicaExecutionError(task_id, _describe(exc))
        return results


class _PoolBackend(ConcurrencyBackend):
    uses_processes = True
    start_method = "spawn"

    def __init__(self, n_workers: int, preload_modules: tuple[str, ...] = ()) -> None:
        if n_workers < 1:
            msg = f"n_workers must be >= 1, got {n_workers}"
            raise ConfigurationError(msg)
        self.n_workers = n_workers
        self.preload_modules = tuple(preload_modules)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(n_workers={self.n_workers})"

    def _initargs(self, context: Any) -> tuple:
        return (context, self.preload_modules)

    def run(self, worker, context, tasks):
        results: dict[int, Any] = {}
        with ProcessPoolExecutor(
            max_workers=self.n_workers,
            mp_context=mp.get_context(self.start_method),
            initializer=_install_context,
            initargs=self._initargs(context),
        ) as executor:
            futures = {
                executor.submit(_run_task, worker, task_id, task): task_id
                for task_id, task in tasks.items()
            }
            wait(futures)

        for future, task_id in futures.items():
            try:
                results[task_id] = future.result()
            except BrokenProcessPool as exc:
                cause = f"worker process died ({exc})"
                results[task_id] = ReplicaExecutionError(task_id, cause)
            except Exception as exc:
                results[task_id] = ReplicaExecutionError(task_id, _describe(exc))
        return {task_id: results[task_id] for task_id in tasks}


class ForkPoolBackend(_PoolBackend):
    """Workers forked from the parent; the context is shared copy-on-write."""

    name = "fork"
    start_method = "fork"

    def _initargs(self, context: Any) -> tuple:
        # Forked children already have every module the parent imported.
        return (context, ())


class SpawnPoolBackend(_PoolBackend):
    """Fresh interpreters; context exported and engine modules imported per worker."""

    name = "spawn"
    start_method = "spawn"


def fork_supported() -> bool:
    return "fork" in mp.get_all_start_methods()


def available_cpus() -> int:
    if hasattr(os, "sched_getaffinity"):
        return len(os.sched_getaffinity(0))
    return os.cpu_count() or 1


def resolve_workers(n_cores: int | None, n_tasks: int) -> int:
    """min(n_cores or max(1, cpus - 1), n_tasks)."""
    if n_cores is None:
        n_cores = max(1, available_cpus() - 1)
    return max(1, min(n_cores, n_tasks))


def select_backend(
    parallel: bool,
    n_tasks: int,
    n_cores: int | None = None,
    preload_modules: tuple[str, ...] = (),
) -> ConcurrencyBackend:
    """Sequential for one task or parallel=False, else fork if the platform has it."""
    if not parallel or n_tasks <= 1:
        return SequentialBackend()
    n_workers = resolve_workers(n_cores, n_tasks)
    if fork_supported():
        return ForkPoolBackend(n_workers)
    return SpawnPoolBackend(n_workers, preload_modules)


# ── Replica dispatch ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ReplicaContext:
    """Everything a worker needs besides its ReplicaSpec. Read-only."""

    payload: dict[str, Any]
    model_spec: Any
    var_names: tuple[str, ...]
    engine: SamplingEngine
    store: HandoffStore


@dataclass(frozen=True)
class OrchestrationResult:
    handoffs: dict[int, str]
    errors: dict[int, ReplicaExecutionError]
    backend: str

    @property
    def complete(self) -> bool:
        return not self.errors

    @property
    def failed_ids(self) -> list[int]:
        return sorted(self.errors)


def freeze_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Copy the payload with every array marked read-only."""
    frozen: dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, np.ndarray):
            value = value.copy()
            value.setflags(write=False)
        frozen[key] = value
    return frozen


def _sample_replica(context: ReplicaContext, replica: ReplicaSpec) -> str:
    """Worker body: sample one replica and write its handoff record."""
    print(f"  Start replica {replica.replica_id} (pid {os.getpid()})")
    idata = context.engine.sample(
        context.model_spec, context.payload, context.var_names, replica
    )
    n_chains = idata.posterior.sizes["chain"]
    if n_chains != 1:
        msg = f"engine returned {n_chains} chains, expected 1"
        raise ValueError(msg)
    location = context.store.write(replica.replica_id, idata)
    print(f"  Finished replica {replica.replica_id}")
    return location


def run_replicas(
    replicas: list[ReplicaSpec],
    payload: Mapping[str, Any],
    model_spec: Any,
    var_names: tuple[str, ...],
    engine: SamplingEngine,
    store: HandoffStore,
    *,
    parallel: bool = True,
    n_cores: int | None = None,
    backend: ConcurrencyBackend | None = None,
) -> OrchestrationResult:
    """Dispatch every replica and collect handoff locations after the barrier.

    Raises:
        ConfigurationError: Before dispatch, for an empty or duplicated replica
            list, or a process backend paired with an in-process store.
    """
    if not replicas:
        raise ConfigurationError("No replicas to run")
    ids = [r.replica_id for r in replicas]
    if len(set(ids)) != len(ids):
        msg = f"Replica ids must be unique, got {ids}"
        raise ConfigurationError(msg)

    if backend is None:
        backend = select_backend(parallel, len(replicas), n_cores, tuple(engine.modules))
    if backend.uses_processes and not store.process_safe:
        msg = (
            f"{type(store).__name__} cannot receive records from worker processes; "
            f"use LocalHandoffStore with the {backend.name} backend"
        )
        raise ConfigurationError(msg)

    context = ReplicaContext(
        payload=freeze_payload(payload),
        model_spec=model_spec,
        var_names=tuple(var_names),
        engine=engine,
        store=store,
    )
    n_workers = getattr(backend, "n_workers", 1)
    print(f"  Running {len(replicas)} replicas ({backend.name} backend, {n_workers} workers)")

    t0 = time.time()
    outcomes = backend.run(_sample_replica, context, {r.replica_id: r for r in replicas})
    handoffs = {rid: loc for rid, loc in outcomes.items() if isinstance(loc, str)}
    errors = {
        rid: err for rid, err in outcomes.items() if isinstance(err, ReplicaExecutionError)
    }
    for rid in sorted(errors):
        print(f"  WARNING: {errors[rid]}")
    print(
        f"  Replicas done in {time.time() - t0:.1f}s: "
        f"{len(handoffs)} ok, {len(errors)} failed"
    )
    return OrchestrationResult(handoffs=handoffs, errors=errors, backend=backend.name)
