"""Post-run assertions over a completed ``Run``.

Three kinds are supported:

- ``PathAssertion``: the run's state path equals an expected sequence;
- ``OutputAssertion``: a captured variable is non-empty, matches a regular
  expression, is within numeric bounds, or equals a value;
- ``ComplexityAssertion``: the timing samples a run collected for one
  transition do not grow faster than an expected class.

Checks are pure and return one ``AssertionCheckResult`` per assertion.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from playbook.engine.complexity import ComplexityAnalyzer
from playbook.model.machine import UNSET

if TYPE_CHECKING:
    from playbook.engine.executor import Run
    from playbook.model.machine import ComplexityClass

__all__ = [
    "AssertionCheckResult",
    "ComplexityAssertion",
    "OutputAssertion",
    "PathAssertion",
    "RunAssertions",
    "check_complexity",
    "check_output",
    "check_path",
    "check_run_assertions",
]


@dataclass(frozen=True, slots=True)
class PathAssertion:
    """Expected sequence of visited state ids, initial state included."""

    expected: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class OutputAssertion:
    """Conditions on one captured variable; every given condition must hold."""

    variable: str
    not_empty: bool = False
    matches: str | None = None
    less_than: float | None = None
    greater_than: float | None = None
    equals: Any = UNSET


@dataclass(frozen=True, slots=True)
class ComplexityAssertion:
    """The samples collected for ``transition`` fit no worse than ``expected``.

    Samples come from the transition's budget (``complexity`` and
    ``sample_sizes``); a run that collected none fails the assertion.
    """

    transition: str
    expected: ComplexityClass
    tolerance: float = 0.2


@dataclass(frozen=True, slots=True)
class RunAssertions:
    path: PathAssertion | None = None
    outputs: tuple[OutputAssertion, ...] = ()
    complexity: tuple[ComplexityAssertion, ...] = ()

    def __bool__(self) -> bool:
        return self.path is not None or bool(self.outputs) or bool(self.complexity)



@dataclass(frozen=True, slots=True)
class AssertionCheckResult:
    description: str
    passed: bool
    error: str | None = None


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    try:
        return len(value) == 0
    except TypeError:
        return False


def check_path(run: Run, assertion: PathAssertion) -> AssertionCheckResult:
    description = f"path is {list(assertion.expected)}"
    if tuple(run.path) == tuple(assertion.expected):
        return AssertionCheckResult(description, True)
    return AssertionCheckResult(
        description,
        False,
        f"expected path {list(assertion.expected)}, got {list(run.path)}",
    )


def check_output(run: Run, assertion: OutputAssertion) -> AssertionCheckResult:
    name = assertion.variable
    value = run.variables.get(name)
    description = f"output {name!r}"

    def failed(error: str) -> AssertionCheckResult:
        return AssertionCheckResult(description, False, error)

    if assertion.not_empty and _is_empty(value):
        return failed(f"variable {name!r} is empty or undefined")
    if assertion.matches is not None:
        text = "" if value is None else str(value)
        if re.search(assertion.matches, text) is None:
            return failed(f"variable {name!r}={text!r} does not match /{assertion.matches}/")
    for bound, holds, label in (
        (assertion.less_than, lambda v, b: v < b, "less than"),
        (assertion.greater_than, lambda v, b: v > b, "greater than"),
    ):
        if bound is None:
            continue
        try:
            ok = holds(float(value), bound)
        except (TypeError, ValueError):
            return failed(f"variable {name!r}={value!r} is not numeric")
        if not ok:
            return failed(f"variable {name!r}={value!r} is not {label} {bound}")
    if assertion.equals is not UNSET and value != assertion.equals:
        return failed(f"variable {name!r}={value!r}, expected {assertion.equals!r}")
    return AssertionCheckResult(description, True)


def check_complexity(run: Run, assertion: ComplexityAssertion) -> AssertionCheckResult:
    description = f"{assertion.transition!r} is {assertion.expected.value}"
    report = run.complexity.get(assertion.transition)
    if report is None:
        return AssertionCheckResult(
            description,
            False,
            f"no complexity samples for transition {assertion.transition!r}",
        )
    analyzer = ComplexityAnalyzer(tolerance=assertion.tolerance)
    refit = analyzer.analyze(report.samples, assertion.expected)
    if refit.mismatch:
        return AssertionCheckResult(
            description,
            False,
            f"transition {assertion.transition!r} behaves as {refit.observed.value} "
            f"over {refit.sample_count} samples",
        )
    return AssertionCheckResult(description, True)


def check_run_assertions(
    run: Run, assertions: RunAssertions
) -> tuple[AssertionCheckResult, ...]:
    """Check every assertion against *run*: path, then outputs, then complexity."""
    results: list[AssertionCheckResult] = []
    if assertions.path is not None:
        results.append(check_path(run, assertions.path))
    results.extend(check_output(run, output) for output in assertions.outputs)
    results.extend(check_complexity(run, c) for c in assertions.complexity)
    return tuple(results)
