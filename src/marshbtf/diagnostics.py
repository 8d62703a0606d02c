"""Convergence gate across replicas.

Each replica is one chain, so R-hat compares replicas. A failed gate is not an
error: summaries are still produced, flagged unverified, and the caller gets a
ConvergenceWarning. ESS and MCSE are only worth computing once the chains
agree, so they run only when the gate passes.
"""

import math
import warnings
from collections.abc import Iterable
from dataclasses import dataclass

import arviz as az

from marshbtf.aggregate import CanonicalSampleArray, parse_param_name
from marshbtf.config import RHAT_THRESHOLD
from marshbtf.errors import ConvergenceWarning


@dataclass(frozen=True)
class ConvergenceReport:
    """Per-name diagnostics. ess and mcse are None when the gate failed."""

    passed: bool
    rhat: dict[str, float]
    threshold: float
    ess: dict[str, float] | None = None
    mcse: dict[str, float] | None = None

    @property
    def max_rhat(self) -> float:
        return max(self.rhat.values(), default=float("nan"))

    @property
    def failing(self) -> list[str]:
        """Names whose R-hat is above threshold or not finite."""
        return [
            name
            for name, value in self.rhat.items()
            if not math.isfinite(value) or value > self.threshold
        ]


def _expand(samples: CanonicalSampleArray, pars_check: Iterable[str]) -> list[str]:
    """Accept structured names ("x0[3]") or base names ("beta_j")."""
    names: list[str] = []
    for par in pars_check:
        if par in samples.param_names:
            names.append(par)
            continue
        base, index = parse_param_name(par)
        expanded = samples.names_for(base) if not index else []
        if not expanded:
            msg = f"Monitored parameter {par!r} not in sample array"
            raise KeyError(msg)
        names.extend(expanded)
    return names


def _per_name(ds, names: list[str]) -> dict[str, float]:
    return {name: float(ds[name].values) for name in names}


def check_convergence(
    samples: CanonicalSampleArray,
    pars_check: Iterable[str],
    threshold: float = RHAT_THRESHOLD,
) -> ConvergenceReport:
    """R-hat gate over the monitored parameters.

    Returns:
        ConvergenceReport with passed=False if any R-hat exceeds threshold or is
        not finite (for example a single replica).
    """
    names = _expand(samples, pars_check)
    idata = samples.to_inference_data(names)

    rhat = _per_name(az.rhat(idata), names)
    report = ConvergenceReport(passed=False, rhat=rhat, threshold=threshold)
    failing = report.failing
    passed = not failing
    status = "OK" if passed else "WARNING"
    print(f"  R-hat: max = {report.max_rhat:.4f} over {len(names)} parameters  {status}")

    if not passed:
        shown = ", ".join(failing[:5]) + (" ..." if len(failing) > 5 else "")
        print(f"  CONVERGENCE: {len(failing)} parameters above {threshold}: {shown}")
        warnings.warn(
            f"R-hat above {threshold} (or undefined) for {len(failing)} of "
            f"{len(names)} monitored parameters; summaries are unverified",
            ConvergenceWarning,
            stacklevel=2,
        )
        return report

    ess = _per_name(az.ess(idata), names)
    mcse = _per_name(az.mcse(idata), names)
    print(f"  ESS: min = {min(ess.values()):.0f}")
    print(f"  MCSE: max = {max(mcse.values()):.4g}")
    print("  CONVERGENCE: ALL CHECKS PASSED")
    return ConvergenceReport(passed=True, rhat=rhat, threshold=threshold, ess=ess, mcse=mcse)
