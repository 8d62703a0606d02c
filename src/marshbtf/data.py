"""Composition tables, covariate scaling and cross-validation folds.

Category order is fixed once at calibration (total abundance, most to least,
stable on ties) and reused verbatim at reconstruction, so every category
index in the payload means the same thing in both stages.
"""

import math
from dataclasses import dataclass

import numpy as np
import polars as pl

from marshbtf.config import CV_K, CV_SEED, DEPTH_COL, ELEVATION_COL, SWLI_UNSCALED_FACTOR
from marshbtf.errors import ConfigurationError


@dataclass(frozen=True, eq=False)
class CompositionTable:
    """n x m non-negative integer counts in calibration category order.

    Attributes:
        counts: (n, m) int64 array; every row sums to a positive total.
        category_names: Column names in abundance order.
        begin0: 0-based index of the first uninformative category. Categories
            [0, begin0) get response curves; [begin0, m) are held at lambda = 1.
    """

    counts: np.ndarray
    category_names: tuple[str, ...]
    begin0: int

    @property
    def n(self) -> int:
        return self.counts.shape[0]

    @property
    def m(self) -> int:
        return self.counts.shape[1]

    @property
    def row_totals(self) -> np.ndarray:
        return self.counts.sum(axis=1)

    def subset(self, rows: np.ndarray) -> "CompositionTable":
        """Rows selected by index or mask; category order and begin0 are kept."""
        return CompositionTable(
            counts=self.counts[rows],
            category_names=self.category_names,
            begin0=self.begin0,
        )

    def to_frame(self) -> pl.DataFrame:
        return pl.DataFrame(
            {name: self.counts[:, j] for j, name in enumerate(self.category_names)}
        )


def _count_matrix(df: pl.DataFrame) -> np.ndarray:
    """Validate and convert category columns to an int64 matrix."""
    non_numeric = [c for c, dt in df.schema.items() if not dt.is_numeric()]
    if non_numeric:
        msg = f"Count columns must be numeric, got non-numeric columns: {non_numeric}"
        raise ConfigurationError(msg)
    if df.height == 0:
        raise ConfigurationError("Composition table has no rows")

    raw = df.to_numpy().astype(np.float64)
    if not np.all(np.isfinite(raw)):
        raise ConfigurationError("Counts must be finite (no nulls or NaN)")
    if np.any(raw < 0):
        raise ConfigurationError("Counts must be non-negative")
    if not np.all(raw == np.round(raw)):
        raise ConfigurationError("Counts must be whole numbers")

    counts = raw.astype(np.int64)
    empty_rows = np.flatnonzero(counts.sum(axis=1) == 0)
    if empty_rows.size:
        msg = f"Every observation needs a positive total count; empty rows: {empty_rows.tolist()}"
        raise ConfigurationError(msg)
    return counts


def find_begin0(column_totals: np.ndarray) -> int:
    """First all-zero category, or the last category when none is empty."""
    zero = np.flatnonzero(column_totals == 0)
    return int(zero[0]) if zero.size else len(column_totals) - 1


def sort_modern(counts: pl.DataFrame) -> CompositionTable:
    """Order calibration categories by total abundance and find begin0.

    Args:
        counts: One numeric column per category, one row per sample.

    Raises:
        ConfigurationError: On invalid counts, or when fewer than one
            informative category remains (begin0 < 1).
    """
    matrix = _count_matrix(counts)
    totals = matrix.sum(axis=0)
    order = np.argsort(-totals, kind="stable")
    names = tuple(counts.columns[j] for j in order)
    sorted_counts = matrix[:, order]

    begin0 = find_begin0(totals[order])
    if begin0 < 1:
        msg = (
            f"Need at least one informative category before the reference; "
            f"got begin0={begin0} for {len(names)} categories"
        )
        raise ConfigurationError(msg)

    sorted_counts.setflags(write=False)
    return CompositionTable(counts=sorted_counts, category_names=names, begin0=begin0)


def sort_core(
    core: pl.DataFrame,
    calibration: CompositionTable,
    *,
    validation: bool = False,
) -> tuple[np.ndarray, CompositionTable]:
    """Re-index core counts to the calibration category order.

    Categories present at calibration but absent from the core table become
    zero columns. Categories the calibration never saw cannot be placed on a
    response curve, so they are rejected.

    Returns:
        (depth, table): observation ids (the Depth column, or 1..n when absent
        or in validation mode) and the re-indexed counts.
    """
    if DEPTH_COL in core.columns and not validation:
        depth = core[DEPTH_COL].to_numpy()
    else:
        depth = np.arange(1, core.height + 1)
    categories = core.drop(DEPTH_COL) if DEPTH_COL in core.columns else core

    unknown = sorted(set(categories.columns) - set(calibration.category_names))
    if unknown:
        msg = f"Core categories not present in calibration: {unknown}"
        raise ConfigurationError(msg)

    missing = [c for c in calibration.category_names if c not in categories.columns]
    if missing:
        print(f"  Filling {len(missing)} calibration categories absent from core with zeros")
        categories = categories.with_columns(
            [pl.lit(0, dtype=pl.Int64).alias(c) for c in missing]
        )

    matrix = _count_matrix(categories.select(list(calibration.category_names)))
    matrix.setflags(write=False)
    table = CompositionTable(
        counts=matrix,
        category_names=calibration.category_names,
        begin0=calibration.begin0,
    )
    return depth, table


def empirical_proportions(table: CompositionTable, swli: np.ndarray) -> pl.DataFrame:
    """Observed proportions in long format: SWLI, category, proportion."""
    props = table.counts / table.row_totals[:, np.newaxis]
    n, m = props.shape
    return pl.DataFrame(
        {
            ELEVATION_COL: np.repeat(np.asarray(swli, dtype=np.float64), m),
            "category": list(table.category_names) * n,
            "proportion": props.ravel(),
        }
    )


# ── Covariate scaling ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CovariateScale:
    """Affine map between SWLI units and the model covariate x.

    x = (SWLI - center) / scale. Unscaled runs use center 0 and scale 100.
    """

    center: float
    scale: float
    standardized: bool

    def to_model(self, swli) -> np.ndarray:
        return (np.asarray(swli, dtype=np.float64) - self.center) / self.scale

    def to_swli(self, x) -> np.ndarray:
        return np.asarray(x, dtype=np.float64) * self.scale + self.center

    def sd_to_swli(self, sd) -> np.ndarray:
        return np.asarray(sd, dtype=np.float64) * self.scale


def fit_covariate_scale(swli: np.ndarray, standardize: bool) -> CovariateScale:
    """Standardize with the sample sd, or divide by 100."""
    swli = np.asarray(swli, dtype=np.float64)
    if swli.size == 0 or not np.all(np.isfinite(swli)):
        raise ConfigurationError(f"{ELEVATION_COL} values must be finite and non-empty")
    if not standardize:
        return CovariateScale(center=0.0, scale=SWLI_UNSCALED_FACTOR, standardized=False)
    if swli.size < 2:
        raise ConfigurationError(f"Standardizing {ELEVATION_COL} needs at least two values")
    sd = float(np.std(swli, ddof=1))
    if sd == 0:
        raise ConfigurationError(f"Cannot standardize a constant {ELEVATION_COL} column")
    return CovariateScale(center=float(swli.mean()), scale=sd, standardized=True)


def elevation_bounds(x: np.ndarray) -> tuple[float, float]:
    """Integer bounds of the covariate: (floor(min), ceil(max))."""
    lo = float(math.floor(float(np.min(x))))
    hi = float(math.ceil(float(np.max(x))))
    if hi <= lo:
        hi = lo + 1.0
    return lo, hi


# ── Cross-validation ─────────────────────────────────────────────────────────


def assign_folds(n: int, k: int = CV_K, seed: int = CV_SEED) -> np.ndarray:
    """Fold label (1..k) for each of n observations.

    Labels cycle 1..k and are then shuffled, so fold sizes differ by at most one.
    """
    if n < 1 or k < 1:
        msg = f"assign_folds needs n >= 1 and k >= 1, got n={n}, k={k}"
        raise ConfigurationError(msg)
    labels = np.tile(np.arange(1, k + 1), math.ceil(n / k))[:n]
    rng = np.random.default_rng(seed)
    return labels[rng.permutation(n)]


def fold_split(folds: np.ndarray, fold: int) -> tuple[np.ndarray, np.ndarray]:
    """(train_idx, test_idx) for one fold label."""
    test = np.flatnonzero(folds == fold)
    if test.size == 0:
        msg = f"Fold {fold} has no observations"
        raise ConfigurationError(msg)
    train = np.flatnonzero(folds != fold)
    return train, test
