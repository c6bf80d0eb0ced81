"""Complexity analyzer: fit timing samples to asymptotic growth models.

Each candidate class is fitted by ordinary least squares (``np.polyfit``)
of duration against a transformed input size (``1``, ``ln n``, ``n``,
``n ln n``, ``n^2``) and scored by its coefficient of determination (R²).
The best-scoring class is the observed one; ties go to the cheaper class.

A mismatch is only reported when all of the following hold:

- at least ``min_samples`` samples were collected;
- the best-fitting model explains the data (R² >= ``min_r_squared``);
- the observed class grows faster than the declared one;
- the declared model's unexplained variance (1 - R²) exceeds the best
  model's by more than ``tolerance`` (relative).

A faster-than-declared observation is never a mismatch: declaring O(n²)
for an O(n) routine is pessimistic, not wrong.

The analyzer holds only its configuration, so one instance can be shared
by any number of concurrent runs.
"""

from __future__ import annotations

import logging
import statistics
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np

from playbook.engine.driver import substitute_arguments
from playbook.model.machine import ComplexityClass

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

    from playbook.engine.driver import TargetDriver
    from playbook.model.machine import Transition

__all__ = [
    "ComplexityAnalyzer",
    "ComplexityReport",
    "ComplexitySample",
    "ModelFit",
    "collect_samples",
]

log = logging.getLogger(__name__)

# R² values closer than this are treated as a tie.
_TIE_EPSILON = 1e-9


@dataclass(frozen=True, slots=True)
class ComplexitySample:
    """One (input size, duration in seconds) measurement."""

    size: int
    duration: float


@dataclass(frozen=True, slots=True)
class ModelFit:
    """Least-squares fit of one growth model.

    ``duration ≈ slope * f(n) + intercept``; the constant model has
    ``slope == 0`` and ``intercept`` equal to the mean duration.
    """

    complexity: ComplexityClass
    r_squared: float
    slope: float
    intercept: float


@dataclass(frozen=True, slots=True)
class ComplexityReport:
    """Outcome of analyzing one sample set against a declared class."""

    declared: ComplexityClass | None
    observed: ComplexityClass
    fits: tuple[ModelFit, ...]
    samples: tuple[ComplexitySample, ...]
    mismatch: bool

    @property
    def matches(self) -> bool:
        return not self.mismatch

    @property
    def sample_count(self) -> int:
        return len(self.samples)

    @property
    def confidence(self) -> float:
        """R² of the observed model."""
        return self.fit_for(self.observed).r_squared

    def fit_for(self, complexity: ComplexityClass) -> ModelFit:
        for fit in self.fits:
            if fit.complexity is complexity:
                return fit
        raise KeyError(complexity)


_TRANSFORMS: dict[ComplexityClass, Callable[[np.ndarray], np.ndarray]] = {
    ComplexityClass.LOGARITHMIC: np.log,
    ComplexityClass.LINEAR: lambda n: n,
    ComplexityClass.LINEARITHMIC: lambda n: n * np.log(n),
    ComplexityClass.QUADRATIC: lambda n: n * n,
}


def _least_squares(xs: np.ndarray, ys: np.ndarray) -> tuple[float, float]:
    if np.ptp(xs) == 0.0:
        return 0.0, float(np.mean(ys))
    slope, intercept = np.polyfit(xs, ys, 1)
    return float(slope), float(intercept)


def _r_squared(ys: np.ndarray, predicted: np.ndarray) -> float:
    mean_y = float(np.mean(ys))
    ss_tot = float(np.sum((ys - mean_y) ** 2))
    ss_res = float(np.sum((ys - predicted) ** 2))
    scale = max(abs(mean_y), 1e-300)
    if ss_tot <= (scale * 1e-12) ** 2 * len(ys):
        # Flat data: every model explains it perfectly.
        return 1.0
    return max(0.0, 1.0 - ss_res / ss_tot)


class ComplexityAnalyzer:
    """Fit duration samples to the five supported growth classes.

    Parameters
    ----------
    tolerance : float
        Relative slack on the declared model's unexplained variance.
    min_samples : int
        Sample sets smaller than this never produce a mismatch.
    min_r_squared : float
        The best model must reach this R² before it is trusted.
    """

    __slots__ = ("min_r_squared", "min_samples", "tolerance")

    def __init__(
        self,
        tolerance: float = 0.2,
        min_samples: int = 3,
        min_r_squared: float = 0.8,
    ) -> None:
        self.tolerance = tolerance
        self.min_samples = min_samples
        self.min_r_squared = min_r_squared

    def fit(self, samples: Sequence[ComplexitySample]) -> tuple[ModelFit, ...]:
        """Fit every growth model, cheapest class first."""
        if not samples:
            raise ValueError("cannot fit an empty sample set")
        ns = np.array([max(s.size, 1) for s in samples], dtype=float)
        ys = np.array([s.duration for s in samples], dtype=float)
        mean_y = float(np.mean(ys))
        fits = [
            ModelFit(
                ComplexityClass.CONSTANT,
                _r_squared(ys, np.full_like(ys, mean_y)),
                0.0,
                mean_y,
            )
        ]
        for complexity, transform in _TRANSFORMS.items():
            xs = transform(ns)
            slope, intercept = _least_squares(xs, ys)
            r2 = _r_squared(ys, slope * xs + intercept)
            fits.append(ModelFit(complexity, r2, slope, intercept))
        return tuple(fits)

    @staticmethod
    def best_fit(fits: Sequence[ModelFit]) -> ModelFit:
        best = fits[0]
        for candidate in fits[1:]:
            if candidate.r_squared > best.r_squared + _TIE_EPSILON:
                best = candidate
        return best

    def analyze(
        self,
        samples: Sequence[ComplexitySample],
        declared: ComplexityClass | None = None,
    ) -> ComplexityReport:
        """Determine the observed class and compare it with *declared*."""
        fits = self.fit(samples)
        best = self.best_fit(fits)
        mismatch = False
        if (
            declared is not None
            and len(samples) >= self.min_samples
            and best.r_squared >= self.min_r_squared
            and best.complexity.order > declared.order
        ):
            declared_fit = next(f for f in fits if f.complexity is declared)
            unexplained_declared = 1.0 - declared_fit.r_squared
            unexplained_best = 1.0 - best.r_squared
            mismatch = (
                unexplained_declared
                > unexplained_best * (1.0 + self.tolerance) + _TIE_EPSILON
            )
        log.debug(
            "Complexity fit over %d samples: observed %s (R²=%.4f), declared %s%s",
            len(samples),
            best.complexity.value,
            best.r_squared,
            declared.value if declared else "-",
            " MISMATCH" if mismatch else "",
        )
        return ComplexityReport(
            declared=declared,
            observed=best.complexity,
            fits=fits,
            samples=tuple(samples),
            mismatch=mismatch,
        )


async def collect_samples(
    driver: TargetDriver,
    transition: Transition,
    variables: Mapping[str, Any],
    *,
    samples_per_size: int = 1,
) -> tuple[ComplexitySample, ...]:
    """Measure *transition*'s entry point at each declared sample size.

    The variable ``n`` is bound to the size before argument substitution.
    With ``samples_per_size > 1`` the median duration per size is kept.
    Driver exceptions propagate to the caller.
    """
    samples: list[ComplexitySample] = []
    for size in transition.budget.sample_sizes:
        env = {**variables, "n": size}
        args = substitute_arguments(transition.action.args, env)
        durations: list[float] = []
        for _ in range(samples_per_size):
            start = time.perf_counter()
            result = await driver.invoke(transition.action.entry_point, args)
            elapsed = time.perf_counter() - start
            durations.append(result.duration if result.duration is not None else elapsed)
        duration = statistics.median(durations)
        log.debug(
            "Sampled %s at n=%d: %.6fs", transition.id, size, duration
        )
        samples.append(ComplexitySample(size=size, duration=duration))
    return tuple(samples)
