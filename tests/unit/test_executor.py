"""Unit tests for playbook.engine.executor.

The pipeline machine from conftest covers the happy path; small ad-hoc
machines driven through ``ObjectDriver`` cover each failure class.
"""

from __future__ import annotations

import asyncio
import time
import tracemalloc
from typing import Any

import pytest

from playbook.config import EngineSettings, PollFailurePolicy
from playbook.engine.checker import (
    CheckPhase,
    ComplexityMismatch,
    DriverError,
    ForbiddenTransitionViolation,
    InvariantViolation,
    MemoryBudgetExceeded,
    NoEligibleTransition,
    RunTimeout,
    TimeBudgetExceeded,
    TransitionTimeout,
    UnexpectedResult,
    ViolationKind,
)
from playbook.engine.driver import InvocationResult, ObjectDriver
from playbook.engine.executor import RunCoverage, RunStatus, TransitionExecutor
from playbook.exceptions import AmbiguousTransitionError, UnvalidatedMachineError
from playbook.model.expressions import parse_expression
from playbook.model.machine import (
    Action,
    ActivationMode,
    Budget,
    ComplexityClass,
    Invariant,
    InvariantSeverity,
    Machine,
    State,
    Transition,
)
from playbook.validation.validator import DefectKind

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Target:
    """Async entry points with controllable behaviour."""

    def __init__(self, *, poll_failures: int = 0) -> None:
        self.poll_failures = poll_failures
        self.poll_calls = 0

    async def quick(self) -> str:
        return "ok"

    async def slow(self, seconds: float = 0.05) -> str:
        await asyncio.sleep(seconds)
        return "ok"

    async def broken(self) -> None:
        raise RuntimeError("target exploded")

    async def two(self) -> int:
        return 2

    async def never(self) -> bool:
        return False

    async def flaky(self) -> bool:
        self.poll_calls += 1
        if self.poll_calls <= self.poll_failures:
            raise ConnectionError("target unavailable")
        return True

    async def status(self) -> str:
        return "ok"


def _two_state(transition: Transition, *, a: State | None = None, b: State | None = None) -> Machine:
    return Machine(
        id="two",
        initial="a",
        states=(a or State("a"), b or State("b", terminal=True)),
        transitions=(transition,),
    )


async def _run(machine: Machine, target: Any | None = None, settings: EngineSettings | None = None, **kwargs):
    executor = TransitionExecutor(settings or EngineSettings(default_poll_interval=0.001))
    return await executor.run(machine, ObjectDriver(target or _Target()), **kwargs)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestPipelineRun:
    @pytest.mark.asyncio
    async def test_auto_driven_run_succeeds(
        self, pipeline_machine, pipeline_driver_cls, pipeline_path, fast_settings
    ) -> None:
        driver = pipeline_driver_cls()
        run = await TransitionExecutor(fast_settings).run(pipeline_machine, driver)
        assert run.status is RunStatus.SUCCEEDED
        assert run.succeeded and not run.failed
        assert list(run.path) == pipeline_path
        assert run.taken == ("init", "load", "process", "finish")
        assert run.current_state == "completed"
        assert run.variables["loaded"] is True
        assert run.variables["status"] == "done"
        assert run.violation is None
        assert run.violation_kind is None

    @pytest.mark.asyncio
    async def test_event_driven_run_succeeds(
        self, pipeline_machine, pipeline_driver_cls, pipeline_path, pipeline_events, fast_settings
    ) -> None:
        run = await TransitionExecutor(fast_settings).run(
            pipeline_machine, pipeline_driver_cls(), events=pipeline_events
        )
        assert run.succeeded
        assert list(run.path) == pipeline_path

    @pytest.mark.asyncio
    async def test_records_and_complexity(
        self, pipeline_machine, pipeline_driver_cls, fast_settings
    ) -> None:
        driver = pipeline_driver_cls()
        run = await TransitionExecutor(fast_settings).run(pipeline_machine, driver)
        assert all(r.committed for r in run.records)
        load = run.records[1]
        assert load.captured == {"loaded": True}
        assert load.finished_at >= load.started_at
        assert driver.polls.count("is_loaded") == 2
        report = run.complexity["process"]
        assert report.observed is ComplexityClass.LINEAR
        assert report.matches
        process_calls = [args for name, args in driver.calls if name == "process"]
        assert [c["n"] for c in process_calls[1:]] == [10, 50, 100, 200, 400]
        assert run.total_duration > 0

    @pytest.mark.asyncio
    async def test_coverage(
        self, pipeline_machine, pipeline_driver_cls, pipeline_path, fast_settings
    ) -> None:
        run = await TransitionExecutor(fast_settings).run(pipeline_machine, pipeline_driver_cls())
        coverage = RunCoverage.from_run(run)
        assert coverage.visited_states == frozenset(pipeline_path)
        assert coverage.taken_transitions == frozenset({"init", "load", "process", "finish"})
        assert "process" in coverage.complexity
        assert dict(coverage.exit_events) == {
            "uninitialized": "init",
            "loading": "load",
            "ready": "process",
            "processing": "finish",
        }
        assert run.records[0].event == "init"

    @pytest.mark.asyncio
    async def test_run_is_immutable(
        self, pipeline_machine, pipeline_driver_cls, fast_settings
    ) -> None:
        run = await TransitionExecutor(fast_settings).run(pipeline_machine, pipeline_driver_cls())
        with pytest.raises(TypeError):
            run.variables["loaded"] = False  # type: ignore[index]


# ---------------------------------------------------------------------------
# Contract errors
# ---------------------------------------------------------------------------


class TestContractErrors:
    @pytest.mark.asyncio
    async def test_unvalidated_machine_is_refused(self, pipeline_machine, pipeline_driver_cls) -> None:
        broken = pipeline_machine.replace(initial="nowhere")
        driver = pipeline_driver_cls()
        with pytest.raises(UnvalidatedMachineError) as exc_info:
            await TransitionExecutor().run(broken, driver)
        assert exc_info.value.machine_id == "pipeline"
        assert driver.calls == []

    @pytest.mark.asyncio
    async def test_unguarded_fork_is_refused_before_running(self) -> None:
        fork = Machine(
            id="fork",
            initial="a",
            states=(State("a"), State("b", terminal=True), State("c", terminal=True)),
            transitions=(
                Transition("go", "a", "b", Action("quick")),
                Transition("stop", "a", "c", Action("quick")),
            ),
        )
        with pytest.raises(UnvalidatedMachineError) as exc_info:
            await _run(fork)
        (defect,) = exc_info.value.defects
        assert defect.kind is DefectKind.NON_DETERMINISTIC_TRANSITION
        assert defect.subject == "a"

    @pytest.mark.asyncio
    async def test_ambiguous_transition(
        self, pipeline_machine, pipeline_driver_cls, fast_settings
    ) -> None:
        with pytest.raises(AmbiguousTransitionError) as exc_info:
            await TransitionExecutor(fast_settings).run(
                pipeline_machine, pipeline_driver_cls(), {"failed": True}
            )
        err = exc_info.value
        assert err.state_id == "uninitialized"
        assert set(err.candidates) == {"init", "fail@uninitialized"}
        assert err.run.status is RunStatus.FAILED
        assert err.run.path == ("uninitialized",)


# ---------------------------------------------------------------------------
# Violations
# ---------------------------------------------------------------------------


class TestViolations:
    @pytest.mark.asyncio
    async def test_forbidden_edge_is_not_committed(
        self, pipeline_machine, pipeline_driver_cls, fast_settings
    ) -> None:
        run = await TransitionExecutor(fast_settings).run(
            pipeline_machine,
            pipeline_driver_cls(),
            {"failed": True},
            events=["init", "load", "fail"],
        )
        assert run.failed
        assert isinstance(run.violation, ForbiddenTransitionViolation)
        assert run.violation.subject == "fail@ready"
        assert run.current_state == "ready"
        assert run.path[-1] == "ready"
        assert run.records[-1].transition == "fail@ready"
        assert run.records[-1].committed is False
        assert "fail@ready" not in run.taken

    @pytest.mark.asyncio
    async def test_time_budget_exceeded(self) -> None:
        m = _two_state(
            Transition(
                "t", "a", "b", Action("slow", args={"seconds": 0.05}),
                budget=Budget(max_duration=0.001),
            )
        )
        run = await _run(m)
        assert isinstance(run.violation, TimeBudgetExceeded)
        assert run.violation.limit == 0.001
        assert run.violation.actual >= 0.04
        # budgets are checked after commit
        assert run.current_state == "b"

    @pytest.mark.asyncio
    async def test_memory_budget_exceeded(self) -> None:
        class Allocating:
            async def invoke(self, entry_point, args):
                return InvocationResult(value=None, memory_delta=10_000)

            async def poll(self, entry_point, args):
                return None

        m = _two_state(Transition("t", "a", "b", Action("alloc"), budget=Budget(max_memory=100)))
        run = await TransitionExecutor().run(m, Allocating())
        assert isinstance(run.violation, MemoryBudgetExceeded)
        assert run.violation.actual == 10_000

    @pytest.mark.asyncio
    async def test_unexpected_result(self) -> None:
        m = _two_state(Transition("t", "a", "b", Action("quick", expected="fine")))
        run = await _run(m)
        assert isinstance(run.violation, UnexpectedResult)
        assert run.violation.actual == "ok"
        assert run.current_state == "a"

    @pytest.mark.asyncio
    async def test_driver_error(self) -> None:
        m = _two_state(Transition("t", "a", "b", Action("broken")))
        run = await _run(m)
        assert isinstance(run.violation, DriverError)
        assert "RuntimeError" in run.violation.error
        assert run.records[-1].committed is False

    @pytest.mark.asyncio
    async def test_trigger_timeout(self) -> None:
        m = _two_state(
            Transition("t", "a", "b", Action("slow", args={"seconds": 5}), timeout=0.05)
        )
        start = time.perf_counter()
        run = await _run(m)
        assert isinstance(run.violation, TransitionTimeout)
        assert time.perf_counter() - start < 2

    @pytest.mark.asyncio
    async def test_wait_timeout(self) -> None:
        m = _two_state(
            Transition(
                "t", "a", "b", Action("never"),
                mode=ActivationMode.WAIT, timeout=0.05, poll_interval=0.005,
            )
        )
        run = await _run(m)
        assert run.violation_kind is ViolationKind.TRANSITION_TIMEOUT
        assert run.violation.last_error is None
        assert run.current_state == "a"

    @pytest.mark.asyncio
    async def test_run_timeout(self) -> None:
        m = _two_state(Transition("t", "a", "b", Action("slow", args={"seconds": 5})))
        run = await _run(m, settings=EngineSettings(run_timeout=0.05))
        assert isinstance(run.violation, RunTimeout)
        assert run.violation.subject == "a"

    @pytest.mark.asyncio
    async def test_entry_invariant(self) -> None:
        b = State(
            "b",
            invariants=(Invariant(parse_expression("x == 1"), "x is one"),),
            terminal=True,
        )
        m = _two_state(Transition("t", "a", "b", Action("two"), capture="x"), b=b)
        run = await _run(m)
        assert isinstance(run.violation, InvariantViolation)
        assert run.violation.phase is CheckPhase.ENTRY
        assert run.current_state == "b"

    @pytest.mark.asyncio
    async def test_exit_invariant_blocks_commit(self) -> None:
        a = State("a", invariants=(Invariant(parse_expression("x != 2")),))
        m = _two_state(Transition("t", "a", "b", Action("two"), capture="x"), a=a)
        run = await _run(m)
        assert isinstance(run.violation, InvariantViolation)
        assert run.violation.phase is CheckPhase.EXIT
        assert run.current_state == "a"
        assert "x" not in run.variables

    @pytest.mark.asyncio
    async def test_warning_invariant_does_not_fail(self) -> None:
        b = State(
            "b",
            invariants=(
                Invariant(parse_expression("x == 1"), severity=InvariantSeverity.WARNING),
            ),
            terminal=True,
        )
        m = _two_state(Transition("t", "a", "b", Action("two"), capture="x"), b=b)
        run = await _run(m)
        assert run.succeeded
        assert len(run.warnings) == 1
        assert run.warnings[0].kind is ViolationKind.INVARIANT_VIOLATION

    @pytest.mark.asyncio
    async def test_complexity_mismatch(
        self, pipeline_machine, pipeline_driver_cls, fast_settings
    ) -> None:
        run = await TransitionExecutor(fast_settings).run(
            pipeline_machine, pipeline_driver_cls(per_item=1e-7, quadratic=True)
        )
        assert isinstance(run.violation, ComplexityMismatch)
        assert run.violation.declared is ComplexityClass.LINEAR
        assert run.violation.observed is ComplexityClass.QUADRATIC
        assert run.current_state == "processing"
        assert run.complexity["process"].mismatch


class TestEvents:
    @pytest.mark.asyncio
    async def test_unmatched_event(
        self, pipeline_machine, pipeline_driver_cls, fast_settings
    ) -> None:
        run = await TransitionExecutor(fast_settings).run(
            pipeline_machine, pipeline_driver_cls(), events=["load"]
        )
        assert run.violation == NoEligibleTransition("uninitialized", "load")

    @pytest.mark.asyncio
    async def test_exhausted_events(
        self, pipeline_machine, pipeline_driver_cls, fast_settings
    ) -> None:
        run = await TransitionExecutor(fast_settings).run(
            pipeline_machine, pipeline_driver_cls(), events=["init"]
        )
        assert run.violation == NoEligibleTransition("loading")
        assert run.taken == ("init",)


class TestMemoryTracing:
    def _machine(self) -> Machine:
        return _two_state(
            Transition(
                "t", "a", "b", Action("slow", args={"seconds": 0.01}),
                budget=Budget(max_memory=10**9),
            )
        )

    @pytest.mark.asyncio
    async def test_tracing_stops_after_concurrent_runs(self) -> None:
        if tracemalloc.is_tracing():
            pytest.skip("tracemalloc already active in this process")
        settings = EngineSettings(track_memory=True)
        runs = await asyncio.gather(
            _run(self._machine(), settings=settings),
            _run(self._machine(), settings=settings),
        )
        assert all(r.succeeded for r in runs)
        assert all(r.records[0].memory_delta is not None for r in runs)
        assert not tracemalloc.is_tracing()

    @pytest.mark.asyncio
    async def test_existing_tracing_is_left_running(self) -> None:
        was_tracing = tracemalloc.is_tracing()
        tracemalloc.start()
        try:
            run = await _run(self._machine(), settings=EngineSettings(track_memory=True))
            assert run.succeeded
            assert tracemalloc.is_tracing()
        finally:
            if not was_tracing:
                tracemalloc.stop()


class TestWaitTransitions:
    def _flaky_machine(self) -> Machine:
        return _two_state(
            Transition(
                "t", "a", "b", Action("flaky"),
                mode=ActivationMode.WAIT, timeout=0.2, poll_interval=0.005,
            )
        )

    @pytest.mark.asyncio
    async def test_fail_fast_policy(self) -> None:
        target = _Target(poll_failures=2)
        run = await _run(self._flaky_machine(), target)
        assert isinstance(run.violation, DriverError)
        assert "ConnectionError" in run.violation.error
        assert target.poll_calls == 1

    @pytest.mark.asyncio
    async def test_retry_policy_recovers(self) -> None:
        target = _Target(poll_failures=2)
        settings = EngineSettings(poll_failure_policy=PollFailurePolicy.RETRY)
        run = await _run(self._flaky_machine(), target, settings)
        assert run.succeeded
        assert target.poll_calls == 3

    @pytest.mark.asyncio
    async def test_retry_policy_reports_last_error(self) -> None:
        target = _Target(poll_failures=10**6)
        settings = EngineSettings(poll_failure_policy=PollFailurePolicy.RETRY)
        run = await _run(self._flaky_machine(), target, settings)
        assert isinstance(run.violation, TransitionTimeout)
        assert "ConnectionError" in run.violation.last_error

    @pytest.mark.asyncio
    async def test_condition_binds_result(self) -> None:
        m = _two_state(
            Transition(
                "t", "a", "b",
                Action("status", condition=parse_expression('result == "ok"')),
                mode=ActivationMode.WAIT, timeout=1.0, poll_interval=0.005, capture="s",
            )
        )
        run = await _run(m)
        assert run.succeeded
        assert run.variables["s"] == "ok"
