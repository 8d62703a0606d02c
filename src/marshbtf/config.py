"""Configuration constants and frozen run configurations.

Every stage takes a frozen dataclass with production defaults. Callers override
only what they vary; dataclasses.asdict() of a config lands in run_info.json for
reproducibility.
"""

import math
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version

from marshbtf.errors import ConfigurationError

try:
    VERSION = _pkg_version("marshbtf")
except PackageNotFoundError:
    VERSION = "dev"

# ── Basis geometry ───────────────────────────────────────────────────────────

SPLINE_DEGREE = 3  # cubic truncated power basis
DIFFERENCE_ORDER = 1  # penalty order of the reparameterization
DEFAULT_DX = 0.1  # knot spacing for calibration
VALIDATION_DX = 0.2  # coarser knot spacing used by cross-validation

# ── Sampling ─────────────────────────────────────────────────────────────────

SEED_MULTIPLIER = 209846  # replica seed = replica_id * SEED_MULTIPLIER
DEFAULT_REPLICA_IDS = (1, 2, 3)
RHAT_THRESHOLD = 1.1

# Per-replica NUTS schedule; n_iter includes burn-in.
CALIBRATION_N_ITER = 3000
CALIBRATION_N_BURNIN = 1000
CALIBRATION_N_THIN = 1
RECONSTRUCTION_N_ITER = 3000
RECONSTRUCTION_N_BURNIN = 1000
RECONSTRUCTION_N_THIN = 1

SAMPLERS = ("nutpie", "pymc")
POOLING_POLICIES = ("pooled", "random_replica")

# ── Priors ───────────────────────────────────────────────────────────────────

SIGMA_Z_DEFAULT_SCALE = 1.0  # sigma_z prior scale with no external priors
SIGMA_Z_UNMATCHED_SCALE = 2.0  # scale for categories missing from a prior table
COVARIATE_SD = 0.1  # spread of x0 around its informative location

# ── Summaries ────────────────────────────────────────────────────────────────

GRID_SIZE = 50  # response curve evaluation points
SWLI_UNSCALED_FACTOR = 100.0  # SWLI / 100 when scale_x is off

# ── Cross-validation ─────────────────────────────────────────────────────────

CV_K = 10
CV_SEED = 3847

# ── Table columns ────────────────────────────────────────────────────────────

ELEVATION_COL = "SWLI"
DEPTH_COL = "Depth"
TRUE_COL = "True"


@dataclass(frozen=True)
class SamplingConfig:
    """Per-replica sampling schedule plus fan-out settings.

    n_iter counts burn-in, so each replica keeps
    ceil((n_iter - n_burnin) / n_thin) draws.
    """

    n_iter: int = CALIBRATION_N_ITER
    n_burnin: int = CALIBRATION_N_BURNIN
    n_thin: int = CALIBRATION_N_THIN
    replica_ids: tuple[int, ...] = DEFAULT_REPLICA_IDS
    parallel: bool = True
    n_cores: int | None = None
    sampler: str = "nutpie"

    def __post_init__(self) -> None:
        if self.n_burnin < 0:
            msg = f"n_burnin must be non-negative, got {self.n_burnin}"
            raise ConfigurationError(msg)
        if self.n_iter <= self.n_burnin:
            msg = f"n_iter ({self.n_iter}) must exceed n_burnin ({self.n_burnin})"
            raise ConfigurationError(msg)
        if self.n_thin < 1:
            msg = f"n_thin must be >= 1, got {self.n_thin}"
            raise ConfigurationError(msg)
        if not self.replica_ids:
            raise ConfigurationError("At least one replica id is required")
        if len(set(self.replica_ids)) != len(self.replica_ids):
            msg = f"Replica ids must be unique, got {self.replica_ids}"
            raise ConfigurationError(msg)
        if any(r < 1 for r in self.replica_ids):
            msg = f"Replica ids start at 1, got {self.replica_ids}"
            raise ConfigurationError(msg)
        if self.n_cores is not None and self.n_cores < 1:
            msg = f"n_cores must be >= 1 when given, got {self.n_cores}"
            raise ConfigurationError(msg)
        if self.sampler not in SAMPLERS:
            msg = f"Unknown sampler {self.sampler!r}. Supported: {', '.join(SAMPLERS)}"
            raise ConfigurationError(msg)

    @property
    def n_keep(self) -> int:
        """Draws retained per replica after burn-in and thinning."""
        return math.ceil((self.n_iter - self.n_burnin) / self.n_thin)


def _check_pooling(pooling: str) -> None:
    if pooling not in POOLING_POLICIES:
        msg = f"Unknown pooling policy {pooling!r}. Supported: {', '.join(POOLING_POLICIES)}"
        raise ConfigurationError(msg)


@dataclass(frozen=True)
class CalibrationConfig:
    """Settings for the calibration (modern) stage."""

    scale_x: bool = False
    dx: float = DEFAULT_DX
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    pooling: str = "pooled"
    grid_size: int = GRID_SIZE
    pooling_seed: int | None = None

    def __post_init__(self) -> None:
        if not self.dx > 0:
            msg = f"dx must be positive, got {self.dx}"
            raise ConfigurationError(msg)
        if self.grid_size < 2:
            msg = f"grid_size must be >= 2, got {self.grid_size}"
            raise ConfigurationError(msg)
        _check_pooling(self.pooling)


@dataclass(frozen=True)
class ReconstructionConfig:
    """Settings for the reconstruction (core) stage."""

    use_uniform_prior: bool = False
    sampling: SamplingConfig = field(
        default_factory=lambda: SamplingConfig(
            n_iter=RECONSTRUCTION_N_ITER,
            n_burnin=RECONSTRUCTION_N_BURNIN,
            n_thin=RECONSTRUCTION_N_THIN,
        )
    )
    pooling: str = "pooled"
    pooling_seed: int | None = None

    def __post_init__(self) -> None:
        _check_pooling(self.pooling)


@dataclass(frozen=True)
class ValidationConfig:
    """Settings for k-fold cross-validation.

    Folds fan out across processes; the chains inside each fold always run
    sequentially, whatever the nested sampling configs say.
    """

    n_folds: int = 1
    use_uniform_prior: bool = False
    dx: float = VALIDATION_DX
    scale_x: bool = False
    calibration_sampling: SamplingConfig = field(default_factory=SamplingConfig)
    reconstruction_sampling: SamplingConfig = field(
        default_factory=lambda: SamplingConfig(
            n_iter=RECONSTRUCTION_N_ITER,
            n_burnin=RECONSTRUCTION_N_BURNIN,
            n_thin=RECONSTRUCTION_N_THIN,
        )
    )
    parallel: bool = True
    n_cores: int | None = None
    pooling: str = "pooled"
    pooling_seed: int | None = None

    def __post_init__(self) -> None:
        if not 1 <= self.n_folds <= CV_K:
            msg = f"n_folds must be between 1 and {CV_K}, got {self.n_folds}"
            raise ConfigurationError(msg)
        if not self.dx > 0:
            msg = f"dx must be positive, got {self.dx}"
            raise ConfigurationError(msg)
        if self.n_cores is not None and self.n_cores < 1:
            msg = f"n_cores must be >= 1 when given, got {self.n_cores}"
            raise ConfigurationError(msg)
        _check_pooling(self.pooling)
