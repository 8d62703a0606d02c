"""Error taxonomy for the sampling pipeline.

Callers distinguish "result unusable" (exceptions) from "result usable but
unverified" (ConvergenceWarning, issued through the warnings module).
"""


class PipelineError(Exception):
    """Base class for all fatal pipeline errors."""


class ConfigurationError(PipelineError, ValueError):
    """Invalid basis geometry, sampling settings or category sets.

    Always raised before any replica is dispatched.
    """


class ReplicaExecutionError(PipelineError):
    """The sampling engine failed for one replica.

    Collected per replica by the orchestrator and surfaced after the fan-out
    barrier. Never raised from inside a worker.
    """

    def __init__(self, replica_id: int, cause: str) -> None:
        self.replica_id = replica_id
        self.cause = cause
        super().__init__(f"replica {replica_id} failed: {cause}")

    def __reduce__(self):
        return (type(self), (self.replica_id, self.cause))


class AggregationError(PipelineError):
    """Replica outputs cannot be merged into one canonical sample array."""


class HandoffError(AggregationError):
    """A handoff record is missing, unreadable, or already written."""


class ConvergenceWarning(UserWarning):
    """R-hat exceeded the threshold for at least one monitored parameter."""
