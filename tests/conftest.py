"""Shared fixtures for marshbtf tests.

Provides a small synthetic calibration set (counts + SWLI), a matching core
table, and a fast sampling schedule for the scripted engine.
"""

import numpy as np
import polars as pl
import pytest

from marshbtf.config import SamplingConfig

# ── Composition fixtures ─────────────────────────────────────────────────────


@pytest.fixture
def modern_counts() -> pl.DataFrame:
    """30 samples, 5 categories; 'rare' is all zero so begin0 lands on it.

    Column order is deliberately not abundance order.
    """
    rng = np.random.default_rng(11)
    n = 30
    return pl.DataFrame(
        {
            "minor": rng.integers(1, 10, n),
            "dominant": rng.integers(50, 100, n),
            "rare": np.zeros(n, dtype=np.int64),
            "middle": rng.integers(20, 40, n),
            "trace": rng.integers(0, 3, n),
        }
    )


@pytest.fixture
def modern_elevation() -> pl.DataFrame:
    return pl.DataFrame({"SWLI": np.linspace(85.0, 135.0, 30)})


@pytest.fixture
def core_counts() -> pl.DataFrame:
    """Core table with a Depth column and no 'trace' or 'rare' column."""
    return pl.DataFrame(
        {
            "Depth": [10, 20, 30, 40],
            "middle": [25, 30, 22, 28],
            "dominant": [70, 60, 80, 75],
            "minor": [5, 3, 8, 2],
        }
    )


@pytest.fixture
def fast_sampling() -> SamplingConfig:
    """200 kept draws per replica, sequential."""
    return SamplingConfig(n_iter=300, n_burnin=100, n_thin=1, parallel=False)
