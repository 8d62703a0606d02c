"""Penalized regression-spline basis over a uniform covariate grid.

Raw cubic B-splines are built as differences of truncated power functions
(Eilers & Marx), then reparameterized with a first-order difference penalty so
the spline coefficients become an ordinary, identifiable regression design:

    P[i, k]   = (x_i - t_k)^deg * [x_i >= t_k]
    D         = diff(I, deg + 1) / (deg! * dx^deg)
    B         = (-1)^(deg + 1) * P @ D.T                 (n x K)
    Delta     = diff(I_K, 1)                             ((K - 1) x K)
    Deltacomb = Delta.T @ inv(Delta @ Delta.T)           (K x H)
    Z         = B @ Deltacomb                            (n x H), H = K - 1

The reconstruction model evaluates the same mapping inside PyMC with latent
covariates, so the knots, D and Deltacomb arrays are exported as payload.
"""

import math
from dataclasses import dataclass

import numpy as np

from marshbtf.config import DIFFERENCE_ORDER, SPLINE_DEGREE
from marshbtf.errors import ConfigurationError

# Tolerance for knot arithmetic; (xr - xl) / dx is rounded before ceil so that
# 2.0 / 0.1 counts as 20 intervals, not 21.
_INTERVAL_DECIMALS = 9
_RANGE_TOL = 1e-9


def make_knots(xl: float, xr: float, dx: float, deg: int = SPLINE_DEGREE) -> np.ndarray:
    """Uniform knots spanning [xl - deg*dx, xr + deg*dx].

    Knot count is ceil((xr - xl) / dx) + 2*deg + 1.

    Raises:
        ConfigurationError: For non-finite bounds, xr <= xl, dx <= 0, or fewer
            than one interval between xl and xr.
    """
    if not all(math.isfinite(v) for v in (xl, xr, dx)):
        msg = f"Basis bounds must be finite, got xl={xl}, xr={xr}, dx={dx}"
        raise ConfigurationError(msg)
    if dx <= 0:
        msg = f"Knot spacing dx must be positive, got {dx}"
        raise ConfigurationError(msg)
    if xr <= xl:
        msg = f"Basis range is empty: xl={xl} must be below xr={xr}"
        raise ConfigurationError(msg)
    if deg < 1:
        msg = f"Spline degree must be >= 1, got {deg}"
        raise ConfigurationError(msg)

    n_intervals = math.ceil(round((xr - xl) / dx, _INTERVAL_DECIMALS))
    n_knots = n_intervals + 2 * deg + 1
    return xl - deg * dx + dx * np.arange(n_knots, dtype=np.float64)


def truncated_power(x: np.ndarray, knots: np.ndarray, deg: int) -> np.ndarray:
    """(x - t)^deg where x >= t, else 0. Returns an (n x n_knots) matrix."""
    diff = np.asarray(x, dtype=np.float64)[:, np.newaxis] - knots[np.newaxis, :]
    return np.where(diff >= 0, diff, 0.0) ** deg


def difference_matrix(size: int, order: int) -> np.ndarray:
    """Row differences of the identity: ((size - order) x size)."""
    return np.diff(np.eye(size), n=order, axis=0)


@dataclass(frozen=True, eq=False)
class SplineBasis:
    """Basis geometry for one stage; immutable once built.

    Attributes:
        xl, xr: Covariate bounds covered by the basis.
        dx: Knot spacing.
        deg: Spline degree (3 = cubic).
        knots: Knot positions (n_knots,).
        D: Scaled (deg+1)-th difference operator (K x n_knots).
        deltacomb: Reparameterization matrix (K x H).
    """

    xl: float
    xr: float
    dx: float
    deg: int
    knots: np.ndarray
    D: np.ndarray
    deltacomb: np.ndarray

    @classmethod
    def build(
        cls,
        xl: float,
        xr: float,
        dx: float,
        deg: int = SPLINE_DEGREE,
    ) -> "SplineBasis":
        knots = make_knots(xl, xr, dx, deg)
        n_knots = len(knots)
        D = difference_matrix(n_knots, deg + 1) / (math.factorial(deg) * dx**deg)
        K = D.shape[0]
        if K < deg + 2:
            msg = (
                f"Degenerate knot spacing: dx={dx} leaves only {K} B-splines "
                f"over [{xl}, {xr}] for degree {deg}"
            )
            raise ConfigurationError(msg)
        delta = difference_matrix(K, DIFFERENCE_ORDER)
        deltacomb = delta.T @ np.linalg.inv(delta @ delta.T)
        for arr in (knots, D, deltacomb):
            arr.setflags(write=False)
        return cls(
            xl=float(xl),
            xr=float(xr),
            dx=float(dx),
            deg=deg,
            knots=knots,
            D=D,
            deltacomb=deltacomb,
        )

    @property
    def n_knots(self) -> int:
        return len(self.knots)

    @property
    def K(self) -> int:
        """Raw B-spline basis size."""
        return self.D.shape[0]

    @property
    def H(self) -> int:
        """Reparameterized basis size (K - 1 for first-order differencing)."""
        return self.deltacomb.shape[1]

    def _check_range(self, x: np.ndarray) -> None:
        if x.size == 0:
            return
        if not np.all(np.isfinite(x)):
            raise ConfigurationError("Covariate values must be finite")
        lo, hi = float(x.min()), float(x.max())
        if lo < self.xl - _RANGE_TOL or hi > self.xr + _RANGE_TOL:
            msg = (
                f"Covariate range [{lo:.4f}, {hi:.4f}] falls outside the basis "
                f"range [{self.xl}, {self.xr}]"
            )
            raise ConfigurationError(msg)

    def bspline_matrix(self, x: np.ndarray) -> np.ndarray:
        """Raw B-spline basis B (n x K)."""
        x = np.asarray(x, dtype=np.float64).ravel()
        self._check_range(x)
        P = truncated_power(x, self.knots, self.deg)
        return (-1) ** (self.deg + 1) * P @ self.D.T

    def design_matrix(self, x: np.ndarray) -> np.ndarray:
        """Reparameterized design matrix Z (n x H)."""
        return self.bspline_matrix(x) @ self.deltacomb

    def grid(self, size: int) -> np.ndarray:
        """Evenly spaced evaluation points across [xl, xr]."""
        return np.linspace(self.xl, self.xr, size)


def bbase(
    x: np.ndarray,
    xl: float,
    xr: float,
    dx: float,
    deg: int = SPLINE_DEGREE,
) -> tuple[np.ndarray, int]:
    """Build Z for observations x in one call. Returns (Z, H)."""
    basis = SplineBasis.build(xl, xr, dx, deg)
    Z = basis.design_matrix(x)
    return Z, basis.H
