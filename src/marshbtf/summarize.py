"""Reduce canonical draws to point estimates, intervals and tidy tables.

Two choices shape every summary:

  pooling   "pooled" concatenates all replica draws per coordinate;
            "random_replica" picks one replica uniformly at random per
            coordinate (independently for each coordinate).
  shape     "quantile" reports the 2.5 / 97.5 percentiles;
            "sd" reports mean -/+ 2 sd.
"""

from dataclasses import dataclass

import numpy as np
import polars as pl

from marshbtf.aggregate import CanonicalSampleArray
from marshbtf.config import ELEVATION_COL, POOLING_POLICIES
from marshbtf.errors import ConfigurationError

INTERVAL_SHAPES = ("quantile", "sd")


@dataclass(frozen=True, eq=False)
class PosteriorSummary:
    """mean, sd, lower, upper; scalars or arrays of matching shape."""

    mean: np.ndarray
    sd: np.ndarray
    lower: np.ndarray
    upper: np.ndarray

    @property
    def half_width(self) -> np.ndarray:
        return (self.upper - self.lower) / 2


def summarize_draws(draws: np.ndarray, shape: str = "quantile") -> PosteriorSummary:
    """Summarize along axis 0 (draws).

    sd uses ddof=1 and is 0 when fewer than two draws exist.
    """
    if shape not in INTERVAL_SHAPES:
        msg = f"Unknown interval shape {shape!r}. Supported: {', '.join(INTERVAL_SHAPES)}"
        raise ConfigurationError(msg)
    draws = np.asarray(draws, dtype=np.float64)
    if draws.shape[0] == 0:
        raise ConfigurationError("Cannot summarize an empty set of draws")

    mean = draws.mean(axis=0)
    if draws.shape[0] < 2:
        sd = np.zeros_like(mean)
    else:
        sd = draws.std(axis=0, ddof=1)

    # Constant coordinates summarize exactly, free of float accumulation error.
    constant = np.ptp(draws, axis=0) == 0
    mean = np.where(constant, draws[0], mean)[()]
    sd = np.where(constant, 0.0, sd)[()]

    if shape == "sd":
        lower, upper = mean - 2 * sd, mean + 2 * sd
    else:
        lower, upper = np.percentile(draws, [2.5, 97.5], axis=0)
    return PosteriorSummary(mean=mean, sd=sd, lower=lower, upper=upper)


def _check_pooling(pooling: str) -> None:
    if pooling not in POOLING_POLICIES:
        msg = f"Unknown pooling policy {pooling!r}. Supported: {', '.join(POOLING_POLICIES)}"
        raise ConfigurationError(msg)


def select_draws(
    arr: np.ndarray,
    pooling: str = "pooled",
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """(draw, replica, *dims) -> (n, *dims) under a pooling policy.

    Pooled output is replica-major: all draws of the first replica, then the
    next.
    """
    _check_pooling(pooling)
    n_draws, n_rep = arr.shape[:2]
    dims = arr.shape[2:]
    if pooling == "pooled":
        return np.swapaxes(arr, 0, 1).reshape(n_rep * n_draws, *dims)

    rng = rng if rng is not None else np.random.default_rng()
    choice = np.asarray(rng.integers(n_rep, size=dims))
    picked = np.take_along_axis(arr, np.expand_dims(choice, axis=(0, 1)), axis=1)
    return picked[:, 0]


def parameter_draws(
    samples: CanonicalSampleArray,
    base: str,
    pooling: str = "pooled",
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """Draws of one parameter as (n, *dims)."""
    return select_draws(samples.parameter(base), pooling, rng)


def summarize_parameters(
    samples: CanonicalSampleArray,
    bases: list[str],
    shape: str = "quantile",
    pooling: str = "pooled",
    rng: np.random.Generator | None = None,
) -> dict[str, PosteriorSummary]:
    return {
        base: summarize_draws(parameter_draws(samples, base, pooling, rng), shape)
        for base in bases
    }


def summary_table(
    samples: CanonicalSampleArray,
    names: list[str] | None = None,
    shape: str = "quantile",
    pooling: str = "pooled",
    rng: np.random.Generator | None = None,
) -> pl.DataFrame:
    """One row per structured name: parameter, mean, sd, lower, upper."""
    names = names if names is not None else list(samples.param_names)
    cols = np.stack([samples.draws(n) for n in names], axis=-1)
    s = summarize_draws(select_draws(cols, pooling, rng), shape)
    return pl.DataFrame(
        {
            "parameter": names,
            "mean": s.mean,
            "sd": s.sd,
            "lower": s.lower,
            "upper": s.upper,
        }
    )


# ── Response curves ──────────────────────────────────────────────────────────


def response_curve_draws(
    beta: np.ndarray,
    delta: np.ndarray,
    Z_grid: np.ndarray,
    m: int,
) -> np.ndarray:
    """Per-draw category proportions on a grid.

    Args:
        beta: (S, J) intercepts of the informative categories.
        delta: (S, H, J) spline coefficients.
        Z_grid: (G, H) design matrix at the grid points.
        m: Total number of categories; the last m - J have lambda = 1.

    Returns:
        (S, G, m) proportions; each row sums to 1.
    """
    n_draws, J = beta.shape
    spline = beta[:, None, :] + np.einsum("gh,shj->sgj", Z_grid, delta)
    lam = np.concatenate(
        [np.exp(spline), np.ones((n_draws, Z_grid.shape[0], m - J))], axis=2
    )
    return lam / lam.sum(axis=2, keepdims=True)


def response_curve_table(
    p_draws: np.ndarray,
    swli_grid: np.ndarray,
    category_names: tuple[str, ...],
) -> pl.DataFrame:
    """Long table: SWLI, category, proportion, proportion_lwr, proportion_upr."""
    s = summarize_draws(p_draws, shape="quantile")
    G, m = s.mean.shape
    return pl.DataFrame(
        {
            ELEVATION_COL: np.repeat(np.asarray(swli_grid, dtype=np.float64), m),
            "category": list(category_names) * G,
            "proportion": s.mean.ravel(),
            "proportion_lwr": s.lower.ravel(),
            "proportion_upr": s.upper.ravel(),
        }
    )
