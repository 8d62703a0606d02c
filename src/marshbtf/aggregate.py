"""Merge replica handoff records into one canonical sample array.

Every replica contributes a single chain. After flattening, each parameter
coordinate gets a structured name with 1-based indices (delta_hj[2,3], x0[7],
sigma_delta), and the array is laid out [draw][replica][parameter]. Any
disagreement between replicas (draw counts or parameter sets) is fatal: there
is no partial array.
"""

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

import arviz as az
import numpy as np
import xarray as xr

from marshbtf.errors import AggregationError
from marshbtf.handoff import HandoffStore

_PARAM_RE = re.compile(r"^(?P<base>[A-Za-z_][A-Za-z0-9_.]*)(?:\[(?P<idx>\d+(?:,\d+)*)\])?$")


def format_param_name(base: str, index: tuple[int, ...] = ()) -> str:
    """("delta_hj", (1, 2)) -> "delta_hj[1,2]". Indices are 1-based."""
    if not index:
        return base
    return f"{base}[{','.join(str(i) for i in index)}]"


def parse_param_name(name: str) -> tuple[str, tuple[int, ...]]:
    """"delta_hj[2,3]" -> ("delta_hj", (2, 3)); "sigma_delta" -> ("sigma_delta", ())."""
    m = _PARAM_RE.match(name)
    if m is None:
        msg = f"Malformed parameter name: {name!r}"
        raise AggregationError(msg)
    idx = m.group("idx")
    index = tuple(int(i) for i in idx.split(",")) if idx else ()
    if any(i < 1 for i in index):
        msg = f"Parameter indices are 1-based, got {name!r}"
        raise AggregationError(msg)
    return m.group("base"), index


def flatten_posterior(idata: az.InferenceData) -> tuple[list[str], np.ndarray]:
    """Single-chain posterior -> (names, values[draw, param]).

    Variables are taken in dataset order; indexed coordinates are laid out in
    C order (last index fastest).
    """
    posterior = idata.posterior
    n_chains = posterior.sizes.get("chain", 0)
    if n_chains != 1:
        msg = f"Handoff record must hold exactly one chain, found {n_chains}"
        raise AggregationError(msg)

    names: list[str] = []
    columns: list[np.ndarray] = []
    for var in posterior.data_vars:
        da = posterior[var].isel(chain=0)
        other = [d for d in da.dims if d != "draw"]
        values = np.asarray(da.transpose("draw", *other).values, dtype=np.float64)
        n_draws = values.shape[0]
        shape = values.shape[1:]
        values = values.reshape(n_draws, -1)
        for k, index in enumerate(np.ndindex(*shape)):
            names.append(format_param_name(str(var), tuple(i + 1 for i in index)))
            columns.append(values[:, k])
    if not columns:
        raise AggregationError("Handoff record has no posterior variables")
    return names, np.column_stack(columns)


@dataclass(frozen=True, eq=False)
class CanonicalSampleArray:
    """Draws from every replica, [draw][replica][parameter].

    Attributes:
        values: (n_draws, n_replicas, n_params) float64.
        replica_ids: Replica id for each position on axis 1, ascending.
        param_names: Structured name for each position on axis 2.
    """

    values: np.ndarray
    replica_ids: tuple[int, ...]
    param_names: tuple[str, ...]

    def __post_init__(self) -> None:
        lookup = {name: k for k, name in enumerate(self.param_names)}
        if len(lookup) != len(self.param_names):
            raise AggregationError("Duplicate parameter names in sample array")
        object.__setattr__(self, "_lookup", lookup)

    @property
    def shape(self) -> tuple[int, int, int]:
        return self.values.shape

    @property
    def n_draws(self) -> int:
        return self.values.shape[0]

    @property
    def n_replicas(self) -> int:
        return self.values.shape[1]

    def index(self, name: str) -> int:
        try:
            return self._lookup[name]
        except KeyError:
            msg = f"Unknown parameter {name!r}"
            raise KeyError(msg) from None

    def draws(self, name: str) -> np.ndarray:
        """(n_draws, n_replicas) draws for one structured name."""
        return self.values[:, :, self.index(name)]

    def names_for(self, base: str) -> list[str]:
        return [n for n in self.param_names if parse_param_name(n)[0] == base]

    def parameter(self, base: str) -> np.ndarray:
        """Reassemble a parameter as (draw, replica, *dims)."""
        parsed = [(name, parse_param_name(name)[1]) for name in self.names_for(base)]
        if not parsed:
            msg = f"No parameter named {base!r}"
            raise KeyError(msg)
        if parsed[0][1] == ():
            return self.draws(base)
        dims = tuple(max(idx[d] for _, idx in parsed) for d in range(len(parsed[0][1])))
        out = np.full((self.n_draws, self.n_replicas, *dims), np.nan)
        for name, idx in parsed:
            out[(slice(None), slice(None), *(i - 1 for i in idx))] = self.draws(name)
        return out

    def to_inference_data(self, names: Iterable[str] | None = None) -> az.InferenceData:
        """Replicas become chains; each structured name becomes one variable."""
        selected = list(names) if names is not None else list(self.param_names)
        data_vars = {
            name: (("chain", "draw"), self.draws(name).T) for name in selected
        }
        posterior = xr.Dataset(
            data_vars,
            coords={"chain": list(self.replica_ids), "draw": np.arange(self.n_draws)},
        )
        return az.InferenceData(posterior=posterior)


def aggregate_replicas(
    handoffs: Mapping[int, str],
    store: HandoffStore,
    expected_ids: Iterable[int],
) -> CanonicalSampleArray:
    """Read every expected replica and stack them into one array.

    Raises:
        AggregationError: On a missing replica, an unreadable or multi-chain
            record, a draw-count mismatch or a parameter-set mismatch.
    """
    expected = sorted(expected_ids)
    missing = [rid for rid in expected if rid not in handoffs]
    if missing:
        msg = f"Missing handoff records for replicas {missing}"
        raise AggregationError(msg)
    if not expected:
        raise AggregationError("No replicas to aggregate")

    blocks: list[np.ndarray] = []
    ref_names: list[str] | None = None
    for rid in expected:
        names, values = flatten_posterior(store.read(handoffs[rid]))
        if ref_names is None:
            ref_names = names
        else:
            if set(names) != set(ref_names):
                extra = sorted(set(names) - set(ref_names))
                lacking = sorted(set(ref_names) - set(names))
                msg = (
                    f"Replica {rid} parameter set differs from replica {expected[0]}: "
                    f"extra={extra[:5]}, missing={lacking[:5]}"
                )
                raise AggregationError(msg)
            if values.shape[0] != blocks[0].shape[0]:
                msg = (
                    f"Replica {rid} has {values.shape[0]} draws, "
                    f"replica {expected[0]} has {blocks[0].shape[0]}"
                )
                raise AggregationError(msg)
            position = {n: k for k, n in enumerate(names)}
            order = [position[n] for n in ref_names]
            values = values[:, order]
        blocks.append(values)

    stacked = np.stack(blocks, axis=1)
    stacked.setflags(write=False)
    print(
        f"  Aggregated {len(expected)} replicas: {stacked.shape[0]} draws x "
        f"{stacked.shape[2]} parameters"
    )
    return CanonicalSampleArray(
        values=stacked, replica_ids=tuple(expected), param_names=tuple(ref_names)
    )
