"""Invariant & budget checker and the runtime violation value types.

The checks here are pure functions of their inputs: the executor hands them
a state and a variable snapshot, or a transition's measurements and budget.
They never touch the target and never raise for a failing condition; they
return structured violation values so that callers (notably the
falsification harness) can match on ``kind`` rather than on message text.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, ClassVar

from playbook.model.expressions import evaluate
from playbook.model.machine import InvariantSeverity

if TYPE_CHECKING:
    from collections.abc import Mapping

    from playbook.model.machine import Budget, ComplexityClass, State

__all__ = [
    "CheckPhase",
    "ComplexityMismatch",
    "DriverError",
    "ForbiddenTransitionViolation",
    "InvariantViolation",
    "LifecycleFailure",
    "MemoryBudgetExceeded",
    "NoEligibleTransition",
    "RunTimeout",
    "StepTimeout",
    "TimeBudgetExceeded",
    "TransitionTimeout",
    "UnexpectedResult",
    "Violation",
    "ViolationKind",
    "check_budget",
    "check_invariants",
]


class ViolationKind(StrEnum):
    """Runtime failure classes detected while executing a run."""

    TRANSITION_TIMEOUT = "TransitionTimeout"
    TIME_BUDGET_EXCEEDED = "TimeBudgetExceeded"
    MEMORY_BUDGET_EXCEEDED = "MemoryBudgetExceeded"
    INVARIANT_VIOLATION = "InvariantViolation"
    FORBIDDEN_TRANSITION = "ForbiddenTransitionViolation"
    COMPLEXITY_MISMATCH = "ComplexityMismatch"
    UNEXPECTED_RESULT = "UnexpectedResult"
    DRIVER_ERROR = "DriverError"
    NO_ELIGIBLE_TRANSITION = "NoEligibleTransition"
    RUN_TIMEOUT = "RunTimeout"
    STEP_TIMEOUT = "StepTimeout"
    LIFECYCLE_FAILURE = "LifecycleFailure"


class CheckPhase(StrEnum):
    """When an invariant was evaluated relative to the state."""

    ENTRY = "entry"
    EXIT = "exit"


@dataclass(frozen=True, slots=True)
class Violation(ABC):
    """Base class for runtime violations.

    Every subclass exposes ``kind`` and the offending identifier as
    ``subject``.
    """

    kind: ClassVar[ViolationKind]

    @property
    @abstractmethod
    def subject(self) -> str:
        """Offending state or transition identifier."""

    @property
    def blocking(self) -> bool:
        """Whether this violation ends the run."""
        return True

    @property
    def message(self) -> str:
        return f"{self.kind.value} on {self.subject!r}"


@dataclass(frozen=True, slots=True)
class InvariantViolation(Violation):
    kind: ClassVar[ViolationKind] = ViolationKind.INVARIANT_VIOLATION

    state: str
    expression: str
    phase: CheckPhase
    description: str = ""
    severity: InvariantSeverity = InvariantSeverity.ERROR

    @property
    def subject(self) -> str:
        return self.state

    @property
    def blocking(self) -> bool:
        return self.severity is not InvariantSeverity.WARNING

    @property
    def message(self) -> str:
        return (
            f"invariant {self.expression!r} of state {self.state!r} "
            f"does not hold on {self.phase.value}"
        )


@dataclass(frozen=True, slots=True)
class TimeBudgetExceeded(Violation):
    kind: ClassVar[ViolationKind] = ViolationKind.TIME_BUDGET_EXCEEDED

    transition: str
    limit: float
    actual: float

    @property
    def subject(self) -> str:
        return self.transition

    @property
    def message(self) -> str:
        return (
            f"transition {self.transition!r} took {self.actual * 1000:.3f}ms, "
            f"budget {self.limit * 1000:.3f}ms"
        )


@dataclass(frozen=True, slots=True)
class MemoryBudgetExceeded(Violation):
    kind: ClassVar[ViolationKind] = ViolationKind.MEMORY_BUDGET_EXCEEDED

    transition: str
    limit: int
    actual: int

    @property
    def subject(self) -> str:
        return self.transition

    @property
    def message(self) -> str:
        return (
            f"transition {self.transition!r} allocated {self.actual:,} bytes, "
            f"budget {self.limit:,} bytes"
        )


@dataclass(frozen=True, slots=True)
class TransitionTimeout(Violation):
    kind: ClassVar[ViolationKind] = ViolationKind.TRANSITION_TIMEOUT

    transition: str
    timeout: float
    last_error: str | None = None

    @property
    def subject(self) -> str:
        return self.transition

    @property
    def message(self) -> str:
        msg = f"transition {self.transition!r} timed out after {self.timeout}s"
        if self.last_error:
            msg += f" (last poll error: {self.last_error})"
        return msg


@dataclass(frozen=True, slots=True)
class ForbiddenTransitionViolation(Violation):
    kind: ClassVar[ViolationKind] = ViolationKind.FORBIDDEN_TRANSITION

    transition: str
    source: str
    target: str
    reason: str = ""

    @property
    def subject(self) -> str:
        return self.transition

    @property
    def message(self) -> str:
        return (
            f"transition {self.transition!r} attempted forbidden edge "
            f"{self.source!r} -> {self.target!r}: {self.reason or 'no reason given'}"
        )


@dataclass(frozen=True, slots=True)
class ComplexityMismatch(Violation):
    kind: ClassVar[ViolationKind] = ViolationKind.COMPLEXITY_MISMATCH

    transition: str
    declared: ComplexityClass
    observed: ComplexityClass

    @property
    def subject(self) -> str:
        return self.transition

    @property
    def message(self) -> str:
        return (
            f"transition {self.transition!r} declared {self.declared.value} "
            f"but behaves as {self.observed.value}"
        )


@dataclass(frozen=True, slots=True)
class UnexpectedResult(Violation):
    kind: ClassVar[ViolationKind] = ViolationKind.UNEXPECTED_RESULT

    transition: str
    expected: Any
    actual: Any

    @property
    def subject(self) -> str:
        return self.transition

    @property
    def message(self) -> str:
        return (
            f"transition {self.transition!r} expected {self.expected!r}, "
            f"got {self.actual!r}"
        )


@dataclass(frozen=True, slots=True)
class DriverError(Violation):
    kind: ClassVar[ViolationKind] = ViolationKind.DRIVER_ERROR

    transition: str
    entry_point: str
    error: str

    @property
    def subject(self) -> str:
        return self.transition

    @property
    def message(self) -> str:
        return (
            f"entry point {self.entry_point!r} of transition "
            f"{self.transition!r} failed: {self.error}"
        )


@dataclass(frozen=True, slots=True)
class NoEligibleTransition(Violation):
    kind: ClassVar[ViolationKind] = ViolationKind.NO_ELIGIBLE_TRANSITION

    state: str
    event: str | None = None
    transition: str | None = None

    @property
    def subject(self) -> str:
        return self.state

    @property
    def message(self) -> str:
        if self.transition is not None:
            return f"step transition {self.transition!r} is not eligible from {self.state!r}"
        if self.event is not None:
            return f"no eligible transition from {self.state!r} on event {self.event!r}"
        return f"non-terminal state {self.state!r} has no eligible transition"


@dataclass(frozen=True, slots=True)
class RunTimeout(Violation):
    kind: ClassVar[ViolationKind] = ViolationKind.RUN_TIMEOUT

    state: str
    limit: float

    @property
    def subject(self) -> str:
        return self.state

    @property
    def message(self) -> str:
        return f"run exceeded {self.limit}s while in state {self.state!r}"


@dataclass(frozen=True, slots=True)
class StepTimeout(Violation):
    kind: ClassVar[ViolationKind] = ViolationKind.STEP_TIMEOUT

    step: str
    state: str
    timeout: float

    @property
    def subject(self) -> str:
        return self.step

    @property
    def message(self) -> str:
        return f"step {self.step!r} timed out after {self.timeout}s in state {self.state!r}"


@dataclass(frozen=True, slots=True)
class LifecycleFailure(Violation):
    """A setup or teardown action failed."""

    kind: ClassVar[ViolationKind] = ViolationKind.LIFECYCLE_FAILURE

    phase: str
    entry_point: str
    error: str

    @property
    def subject(self) -> str:
        return self.entry_point

    @property
    def message(self) -> str:
        return f"{self.phase} action {self.entry_point!r} failed: {self.error}"


# ---------------------------------------------------------------------------
# Pure checks
# ---------------------------------------------------------------------------


def check_invariants(
    state: State,
    variables: Mapping[str, Any],
    phase: CheckPhase = CheckPhase.ENTRY,
) -> list[InvariantViolation]:
    """Evaluate every invariant of *state* against a variable snapshot.

    A state without invariants imposes no constraint.  Violations of every
    severity are returned; callers use ``Violation.blocking`` to decide
    whether the run ends.
    """
    return [
        InvariantViolation(
            state=state.id,
            expression=inv.source,
            phase=phase,
            description=inv.description,
            severity=inv.severity,
        )
        for inv in state.invariants
        if not evaluate(inv.expression, variables)
    ]


def check_budget(
    transition_id: str,
    budget: Budget,
    duration: float,
    memory_delta: int | None,
) -> list[Violation]:
    """Compare one transition's measurements with its declared budget.

    An unmeasured memory delta (``None``) never violates a memory budget.
    """
    violations: list[Violation] = []
    if budget.max_duration is not None and duration > budget.max_duration:
        violations.append(
            TimeBudgetExceeded(
                transition=transition_id,
                limit=budget.max_duration,
                actual=duration,
            )
        )
    if (
        budget.max_memory is not None
        and memory_delta is not None
        and memory_delta > budget.max_memory
    ):
        violations.append(
            MemoryBudgetExceeded(
                transition=transition_id,
                limit=budget.max_memory,
                actual=memory_delta,
            )
        )
    return violations
