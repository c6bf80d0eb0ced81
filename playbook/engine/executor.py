"""Transition executor: drive a target through a validated machine.

Provides:
- RunStatus / TransitionRecord / Run: the immutable outcome of one run
- RunCoverage: states and transitions exercised by a run
- StepResult: outcome of one lifecycle step
- TransitionExecutor: the sequential, cancellable run loop

A run is strictly sequential.  Each step selects the single eligible
transition from the current state, performs its action against the
``TargetDriver``, checks the edge against the forbidden set *before*
committing, then checks budgets, complexity and the new state's
invariants.  The first blocking violation ends the run; the partial
transition log up to that point is kept on the ``Run``.

A run may be wrapped in a ``Lifecycle``: setup actions before the initial
state is entered, named steps taken ahead of the automatic loop, and
teardown actions that run however the run ends.

Concurrency: every await point (``invoke``, ``poll``, the sleep between
polls) is a cancellation point, so per-transition and per-run timeouts
implemented with ``asyncio.wait_for`` cancel only the run they belong to.
"""

from __future__ import annotations

import asyncio
import logging
import time
import tracemalloc
from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from playbook.config import DEFAULT_SETTINGS, PollFailurePolicy
from playbook.engine.checker import (
    CheckPhase,
    ComplexityMismatch,
    DriverError,
    ForbiddenTransitionViolation,
    LifecycleFailure,
    NoEligibleTransition,
    RunTimeout,
    StepTimeout,
    TransitionTimeout,
    UnexpectedResult,
    Violation,
    ViolationKind,
    check_budget,
    check_invariants,
)
from playbook.engine.complexity import (
    ComplexityAnalyzer,
    ComplexityReport,
    collect_samples,
)
from playbook.engine.driver import substitute_arguments
from playbook.exceptions import AmbiguousTransitionError, UnvalidatedMachineError
from playbook.model.expressions import evaluate, value_of
from playbook.model.lifecycle import Lifecycle
from playbook.model.machine import ActivationMode
from playbook.validation.validator import validate_machine

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from playbook.config import EngineSettings
    from playbook.engine.driver import TargetDriver
    from playbook.model.lifecycle import LifecycleAction, Step
    from playbook.model.machine import Action, Machine, State, Transition

__all__ = [
    "Run",
    "RunCoverage",
    "RunStatus",
    "StepResult",
    "TransitionExecutor",
    "TransitionRecord",
]

log = logging.getLogger(__name__)


class RunStatus(StrEnum):
    """Lifecycle of a run."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class TransitionRecord:
    """One attempted transition.

    Attributes
    ----------
    transition : str
        Transition identifier.
    source, target : str
        Edge endpoints.
    started_at, finished_at : float
        Wall-clock timestamps (``time.time()``).
    duration : float
        Seconds attributed to the action (driver-reported when available).
    memory_delta : int | None
        Bytes allocated by the action, if measured.
    value : Any
        Return value (``trigger``) or final polled value (``wait``).
    captured : Mapping[str, Any]
        Variables captured by this transition.
    committed : bool
        Whether the state change was committed.  Attempts rejected before
        commit (driver failure, forbidden edge, exit invariant) are logged
        with ``committed=False``.
    event : str
        Event name the transition fired on.
    """

    transition: str
    source: str
    target: str
    started_at: float
    finished_at: float
    duration: float
    memory_delta: int | None = None
    value: Any = None
    captured: Mapping[str, Any] = field(default_factory=dict)
    committed: bool = True
    event: str = ""


@dataclass(frozen=True, slots=True)
class StepResult:
    """Outcome of one lifecycle step."""

    name: str
    passed: bool
    duration: float
    captured: Mapping[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass(frozen=True, slots=True)
class Run:
    """Immutable outcome of executing a machine against a target."""

    machine_id: str
    status: RunStatus
    current_state: str
    path: tuple[str, ...]
    records: tuple[TransitionRecord, ...]
    variables: Mapping[str, Any]
    violation: Violation | None = None
    warnings: tuple[Violation, ...] = ()
    complexity: Mapping[str, ComplexityReport] = field(
        default_factory=lambda: MappingProxyType({})
    )
    steps: tuple[StepResult, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status is RunStatus.FAILED

    @property
    def violation_kind(self) -> ViolationKind | None:
        return self.violation.kind if self.violation is not None else None

    @property
    def taken(self) -> tuple[str, ...]:
        """Identifiers of committed transitions, in order."""
        return tuple(r.transition for r in self.records if r.committed)

    @property
    def total_duration(self) -> float:
        return sum(r.duration for r in self.records)


@dataclass(frozen=True, slots=True)
class RunCoverage:
    """What a (baseline) run exercised.

    ``exit_events`` maps each state the run left to the event of the first
    committed transition out of it.
    """

    visited_states: frozenset[str] = frozenset()
    taken_transitions: frozenset[str] = frozenset()
    complexity: Mapping[str, ComplexityReport] = field(
        default_factory=lambda: MappingProxyType({})
    )
    exit_events: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @classmethod
    def from_run(cls, run: Run) -> RunCoverage:
        exit_events: dict[str, str] = {}
        for record in run.records:
            if record.committed:
                exit_events.setdefault(record.source, record.event)
        return cls(
            visited_states=frozenset(run.path),
            taken_transitions=frozenset(run.taken),
            complexity=run.complexity,
            exit_events=MappingProxyType(exit_events),
        )


# ---------------------------------------------------------------------------
# Internal mutable run state
# ---------------------------------------------------------------------------


class _RunBuilder:
    """Mutable run state owned by a single executor invocation."""

    __slots__ = (
        "complexity",
        "machine_id",
        "path",
        "records",
        "state",
        "status",
        "steps",
        "variables",
        "violation",
        "warnings",
    )

    def __init__(
        self, machine_id: str, initial: str, variables: Mapping[str, Any]
    ) -> None:
        self.machine_id = machine_id
        self.state = initial
        self.status = RunStatus.RUNNING
        self.path: list[str] = [initial]
        self.records: list[TransitionRecord] = []
        self.variables: dict[str, Any] = dict(variables)
        self.violation: Violation | None = None
        self.warnings: list[Violation] = []
        self.complexity: dict[str, ComplexityReport] = {}
        self.steps: list[StepResult] = []

    def fail(self, violation: Violation) -> None:
        self.status = RunStatus.FAILED
        self.violation = violation
        log.info(
            "Run of %s failed in state %r: %s",
            self.machine_id,
            self.state,
            violation.message,
        )

    def commit(self, record: TransitionRecord, variables: dict[str, Any]) -> None:
        self.records.append(record)
        self.variables = variables
        self.state = record.target
        self.path.append(record.target)

    def freeze(self, status: RunStatus | None = None) -> Run:
        return Run(
            machine_id=self.machine_id,
            status=status or self.status,
            current_state=self.state,
            path=tuple(self.path),
            records=tuple(self.records),
            variables=MappingProxyType(dict(self.variables)),
            violation=self.violation,
            warnings=tuple(self.warnings),
            complexity=MappingProxyType(dict(self.complexity)),
            steps=tuple(self.steps),
        )


@dataclass(slots=True)
class _Outcome:
    value: Any = None
    duration: float = 0.0
    memory_delta: int | None = None
    violation: Violation | None = None


@dataclass(slots=True)
class _PollProgress:
    polls: int = 0
    last_error: str | None = None


class _PollFailed(Exception):
    """Raised inside the poll loop when a poll error ends the wait."""

    def __init__(self, cause: BaseException) -> None:
        super().__init__(str(cause))
        self.cause = cause


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


# Runs sharing tracemalloc; it is stopped only if this module started it.
_trace_users = 0
_trace_owned = False


def _begin_tracing() -> None:
    global _trace_users, _trace_owned
    if _trace_users == 0:
        _trace_owned = not tracemalloc.is_tracing()
        if _trace_owned:
            tracemalloc.start()
    _trace_users += 1


def _end_tracing() -> None:
    global _trace_users, _trace_owned
    _trace_users -= 1
    if _trace_users == 0 and _trace_owned:
        tracemalloc.stop()
        _trace_owned = False


def _traced_bytes() -> int | None:
    if tracemalloc.is_tracing():
        return tracemalloc.get_traced_memory()[0]
    return None


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class TransitionExecutor:
    """Drive a ``TargetDriver`` through a validated ``Machine``.

    The executor holds only configuration, so one instance can run any
    number of machines concurrently.

    Parameters
    ----------
    settings : EngineSettings | None
        Timeouts, poll policy and complexity tolerance.
    analyzer : ComplexityAnalyzer | None
        Override the analyzer built from *settings*.
    """

    __slots__ = ("analyzer", "settings")

    def __init__(
        self,
        settings: EngineSettings | None = None,
        analyzer: ComplexityAnalyzer | None = None,
    ) -> None:
        self.settings = settings or DEFAULT_SETTINGS
        self.analyzer = analyzer or ComplexityAnalyzer(
            tolerance=self.settings.complexity_tolerance,
            min_samples=self.settings.min_complexity_samples,
        )

    async def run(
        self,
        machine: Machine,
        driver: TargetDriver,
        variables: Mapping[str, Any] | None = None,
        *,
        events: Iterable[str] | None = None,
        lifecycle: Lifecycle | None = None,
    ) -> Run:
        """Execute *machine* from its initial state.

        Parameters
        ----------
        machine : Machine
            Must validate with zero defects.
        driver : TargetDriver
            Capability surface of the system under test.
        variables : Mapping | None
            Initial variable environment.
        events : Iterable[str] | None
            Restrict each step to transitions with the next event name.
            Without events the executor follows whichever transition is
            eligible.
        lifecycle : Lifecycle | None
            Setup actions run before the initial state is entered, steps
            taken before the automatic run loop, and teardown actions run
            however the run ends (timeouts and engine defects included).

        Returns
        -------
        Run
            The completed (succeeded or failed) run.

        Raises
        ------
        UnvalidatedMachineError
            If the static validator reports any defect.
        AmbiguousTransitionError
            If more than one transition is eligible at a step.
        ValueError
            If both *events* and lifecycle steps are given.
        """
        report = validate_machine(machine)
        if not report.ok:
            raise UnvalidatedMachineError(machine.id, report.defects)
        lifecycle = lifecycle or Lifecycle()
        if lifecycle.steps and events is not None:
            raise ValueError("a run follows either lifecycle steps or an event script")

        track_memory = self.settings.track_memory
        if track_memory:
            _begin_tracing()

        builder = _RunBuilder(machine.id, machine.initial, variables or {})
        script = deque(events) if events is not None else None
        log.info("Starting run of %s at %r", machine.id, machine.initial)

        run_timeout = self.settings.run_timeout
        try:
            if run_timeout is None:
                await self._execute(machine, driver, builder, script, lifecycle)
            else:
                await asyncio.wait_for(
                    self._execute(machine, driver, builder, script, lifecycle),
                    timeout=run_timeout,
                )
        except TimeoutError:
            builder.fail(RunTimeout(state=builder.state, limit=run_timeout))
        finally:
            try:
                await self._teardown(driver, lifecycle.teardown, builder)
            finally:
                if track_memory:
                    _end_tracing()

        run = builder.freeze()
        log.info(
            "Run of %s finished %s at %r after %d transitions",
            machine.id,
            run.status.value,
            run.current_state,
            len(run.taken),
        )
        return run

    # -- lifecycle ---------------------------------------------------------

    async def _execute(
        self,
        machine: Machine,
        driver: TargetDriver,
        builder: _RunBuilder,
        script: deque[str] | None,
        lifecycle: Lifecycle,
    ) -> None:
        for item in lifecycle.setup:
            error = await self._run_action(driver, item, builder.variables)
            if error is None:
                continue
            if item.ignore_errors:
                log.warning("Ignoring failed setup action %r: %s", item.entry_point, error)
                continue
            builder.fail(LifecycleFailure("setup", item.entry_point, error))
            return
        await self._drive(machine, driver, builder, script, lifecycle.steps)

    async def _teardown(
        self,
        driver: TargetDriver,
        teardown: Iterable[LifecycleAction],
        builder: _RunBuilder,
    ) -> None:
        for item in teardown:
            error = await self._run_action(driver, item, builder.variables)
            if error is None:
                continue
            if item.ignore_errors:
                log.warning("Ignoring failed teardown action %r: %s", item.entry_point, error)
                continue
            failure = LifecycleFailure("teardown", item.entry_point, error)
            if builder.status is RunStatus.FAILED:
                # the run keeps its first violation
                log.warning("Run of %s: %s", builder.machine_id, failure.message)
            else:
                builder.fail(failure)
            return

    async def _run_action(
        self,
        driver: TargetDriver,
        item: LifecycleAction,
        variables: Mapping[str, Any],
    ) -> str | None:
        """Invoke a setup or teardown action; return an error description."""
        action = item.action
        args = substitute_arguments(action.args, variables)
        log.debug("Lifecycle action %r %s", item.entry_point, item.description)
        try:
            result = await driver.invoke(action.entry_point, args)
        except Exception as exc:
            return _describe(exc)
        if action.has_expectation and result.value != action.expected:
            return f"expected {action.expected!r}, got {result.value!r}"
        return None

    async def _run_step(
        self,
        machine: Machine,
        driver: TargetDriver,
        step: Step,
        builder: _RunBuilder,
    ) -> bool:
        """Take every transition of *step*, then evaluate its captures."""
        log.debug("Step %r from %r", step.name, builder.state)
        start = time.perf_counter()
        try:
            if step.timeout is None:
                passed = await self._take_step(machine, driver, step, builder)
            else:
                passed = await asyncio.wait_for(
                    self._take_step(machine, driver, step, builder),
                    timeout=step.timeout,
                )
        except TimeoutError:
            builder.fail(
                StepTimeout(step=step.name, state=builder.state, timeout=step.timeout)
            )
            passed = False

        captured: dict[str, Any] = {}
        if passed:
            for capture in step.captures:
                captured[capture.variable] = value_of(capture.expression, builder.variables)
            builder.variables.update(captured)
        builder.steps.append(
            StepResult(
                name=step.name,
                passed=passed,
                duration=time.perf_counter() - start,
                captured=MappingProxyType(captured),
                error=None if passed or builder.violation is None else builder.violation.message,
            )
        )
        return passed

    async def _take_step(
        self,
        machine: Machine,
        driver: TargetDriver,
        step: Step,
        builder: _RunBuilder,
    ) -> bool:
        for transition_id in step.transitions:
            transition = machine.get_transition(transition_id)
            if (
                transition is None
                or transition.source != builder.state
                or not evaluate(transition.guard, builder.variables)
            ):
                builder.fail(
                    NoEligibleTransition(state=builder.state, transition=transition_id)
                )
                return False
            if not await self._step(machine, driver, transition, builder):
                return False
            await asyncio.sleep(0)
        return True

    # -- run loop ----------------------------------------------------------

    async def _drive(
        self,
        machine: Machine,
        driver: TargetDriver,
        builder: _RunBuilder,
        script: deque[str] | None,
        steps: Iterable[Step] = (),
    ) -> None:
        initial = machine.get_state(machine.initial)
        if not self._check_state(initial, builder.variables, CheckPhase.ENTRY, builder):
            return

        for step in steps:
            if not await self._run_step(machine, driver, step, builder):
                return

        while True:
            state = machine.get_state(builder.state)
            if state.terminal:
                builder.status = RunStatus.SUCCEEDED
                return

            event: str | None = None
            if script is not None:
                if not script:
                    builder.fail(NoEligibleTransition(state=state.id))
                    return
                event = script.popleft()

            eligible = [
                t
                for t in machine.transitions_from(state.id)
                if (event is None or t.event == event)
                and evaluate(t.guard, builder.variables)
            ]
            if not eligible:
                builder.fail(NoEligibleTransition(state=state.id, event=event))
                return
            if len(eligible) > 1:
                ids = [t.id for t in eligible]
                log.error(
                    "Internal defect: %d transitions eligible from %r: %s",
                    len(ids),
                    state.id,
                    ids,
                )
                raise AmbiguousTransitionError(
                    state.id, ids, run=builder.freeze(RunStatus.FAILED)
                )

            if not await self._step(machine, driver, eligible[0], builder):
                return
            # Yield so enclosing timeouts can fire even if the driver never suspends.
            await asyncio.sleep(0)

    async def _step(
        self,
        machine: Machine,
        driver: TargetDriver,
        transition: Transition,
        builder: _RunBuilder,
    ) -> bool:
        """Take one transition; return ``False`` when the run has ended."""
        log.debug("Taking %s (%s -> %s)", transition.id, transition.source, transition.target)
        args = substitute_arguments(transition.action.args, builder.variables)
        started_at = time.time()
        outcome = await self._perform(driver, transition, args, builder.variables)
        finished_at = time.time()

        tentative = dict(builder.variables)
        captured: dict[str, Any] = {}
        if transition.capture and outcome.violation is None:
            captured[transition.capture] = outcome.value
            tentative.update(captured)

        def record(committed: bool) -> TransitionRecord:
            return TransitionRecord(
                transition=transition.id,
                source=transition.source,
                target=transition.target,
                started_at=started_at,
                finished_at=finished_at,
                duration=outcome.duration,
                memory_delta=outcome.memory_delta,
                value=outcome.value,
                captured=MappingProxyType(captured),
                committed=committed,
                event=transition.event,
            )

        if outcome.violation is not None:
            builder.records.append(record(committed=False))
            builder.fail(outcome.violation)
            return False

        forbidden = machine.forbidden_edge(transition.source, transition.target)
        if forbidden is not None:
            builder.records.append(record(committed=False))
            builder.fail(
                ForbiddenTransitionViolation(
                    transition=transition.id,
                    source=forbidden.source,
                    target=forbidden.target,
                    reason=forbidden.reason,
                )
            )
            return False

        source = machine.get_state(transition.source)
        if not self._check_state(source, tentative, CheckPhase.EXIT, builder):
            builder.records.append(record(committed=False))
            return False

        builder.commit(record(committed=True), tentative)

        for violation in check_budget(
            transition.id, transition.budget, outcome.duration, outcome.memory_delta
        ):
            builder.fail(violation)
            return False

        if not await self._check_complexity(driver, transition, builder):
            return False

        target = machine.get_state(transition.target)
        return self._check_state(target, builder.variables, CheckPhase.ENTRY, builder)

    # -- actions -----------------------------------------------------------

    async def _perform(
        self,
        driver: TargetDriver,
        transition: Transition,
        args: Mapping[str, Any],
        variables: Mapping[str, Any],
    ) -> _Outcome:
        if transition.mode is ActivationMode.WAIT:
            return await self._wait(driver, transition, args, variables)
        return await self._trigger(driver, transition, args)

    async def _trigger(
        self,
        driver: TargetDriver,
        transition: Transition,
        args: Mapping[str, Any],
    ) -> _Outcome:
        action = transition.action
        timeout = transition.timeout or self.settings.default_trigger_timeout
        mem_before = _traced_bytes() if self.settings.track_memory else None
        start = time.perf_counter()
        try:
            if timeout is None:
                result = await driver.invoke(action.entry_point, args)
            else:
                result = await asyncio.wait_for(
                    driver.invoke(action.entry_point, args), timeout=timeout
                )
        except TimeoutError as exc:
            elapsed = time.perf_counter() - start
            if timeout is None:
                violation: Violation = DriverError(
                    transition.id, action.entry_point, _describe(exc)
                )
            else:
                violation = TransitionTimeout(transition=transition.id, timeout=timeout)
            return _Outcome(duration=elapsed, violation=violation)
        except Exception as exc:
            return _Outcome(
                duration=time.perf_counter() - start,
                violation=DriverError(transition.id, action.entry_point, _describe(exc)),
            )
        elapsed = time.perf_counter() - start

        memory_delta = result.memory_delta
        if memory_delta is None and mem_before is not None:
            mem_after = _traced_bytes()
            if mem_after is not None:
                memory_delta = mem_after - mem_before

        outcome = _Outcome(
            value=result.value,
            duration=result.duration if result.duration is not None else elapsed,
            memory_delta=memory_delta,
        )
        if action.has_expectation and result.value != action.expected:
            outcome.violation = UnexpectedResult(
                transition=transition.id,
                expected=action.expected,
                actual=result.value,
            )
        return outcome

    async def _wait(
        self,
        driver: TargetDriver,
        transition: Transition,
        args: Mapping[str, Any],
        variables: Mapping[str, Any],
    ) -> _Outcome:
        timeout = transition.timeout or self.settings.default_wait_timeout
        progress = _PollProgress()
        start = time.perf_counter()
        try:
            value = await asyncio.wait_for(
                self._poll_until(driver, transition, args, variables, progress),
                timeout=timeout,
            )
        except TimeoutError:
            return _Outcome(
                duration=time.perf_counter() - start,
                violation=TransitionTimeout(
                    transition=transition.id,
                    timeout=timeout,
                    last_error=progress.last_error,
                ),
            )
        except _PollFailed as exc:
            return _Outcome(
                duration=time.perf_counter() - start,
                violation=DriverError(
                    transition.id, transition.action.entry_point, _describe(exc.cause)
                ),
            )
        return _Outcome(value=value, duration=time.perf_counter() - start)

    async def _poll_until(
        self,
        driver: TargetDriver,
        transition: Transition,
        args: Mapping[str, Any],
        variables: Mapping[str, Any],
        progress: _PollProgress,
    ) -> Any:
        action = transition.action
        interval = transition.poll_interval or self.settings.default_poll_interval
        while True:
            progress.polls += 1
            try:
                value = await driver.poll(action.entry_point, args)
            except Exception as exc:
                if self.settings.poll_failure_policy is PollFailurePolicy.FAIL_FAST:
                    raise _PollFailed(exc) from exc
                progress.last_error = _describe(exc)
                log.debug(
                    "Poll %d of %s failed, retrying: %s",
                    progress.polls,
                    transition.id,
                    progress.last_error,
                )
            else:
                if _wait_satisfied(action, value, variables):
                    log.debug("%s satisfied after %d polls", transition.id, progress.polls)
                    return value
            await asyncio.sleep(interval)

    # -- checks ------------------------------------------------------------

    def _check_state(
        self,
        state: State,
        variables: Mapping[str, Any],
        phase: CheckPhase,
        builder: _RunBuilder,
    ) -> bool:
        for violation in check_invariants(state, variables, phase):
            if violation.blocking:
                builder.fail(violation)
                return False
            log.warning("Run of %s: %s", builder.machine_id, violation.message)
            builder.warnings.append(violation)
        return True

    async def _check_complexity(
        self,
        driver: TargetDriver,
        transition: Transition,
        builder: _RunBuilder,
    ) -> bool:
        budget = transition.budget
        if (
            budget.complexity is None
            or not budget.sample_sizes
            or transition.id in builder.complexity
        ):
            return True
        try:
            samples = await collect_samples(
                driver,
                transition,
                builder.variables,
                samples_per_size=self.settings.samples_per_size,
            )
        except Exception as exc:
            builder.fail(
                DriverError(transition.id, transition.action.entry_point, _describe(exc))
            )
            return False
        report = self.analyzer.analyze(samples, budget.complexity)
        builder.complexity[transition.id] = report
        if report.mismatch:
            builder.fail(
                ComplexityMismatch(
                    transition=transition.id,
                    declared=budget.complexity,
                    observed=report.observed,
                )
            )
            return False
        return True


def _wait_satisfied(action: Action, value: Any, variables: Mapping[str, Any]) -> bool:
    if action.has_expectation:
        return value == action.expected
    if action.condition is not None:
        return evaluate(action.condition, {**variables, "result": value})
    return bool(value)
