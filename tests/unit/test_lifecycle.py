"""Unit tests for run lifecycles: setup, steps and teardown around a run."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from playbook.config import EngineSettings
from playbook.engine.checker import (
    DriverError,
    LifecycleFailure,
    NoEligibleTransition,
    RunTimeout,
    StepTimeout,
    ViolationKind,
)
from playbook.engine.driver import ObjectDriver
from playbook.engine.executor import TransitionExecutor
from playbook.model.expressions import parse_expression
from playbook.model.lifecycle import Capture, Lifecycle, LifecycleAction, Step
from playbook.model.machine import Action, Machine, State, Transition

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Target:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.closed_with: Any = None

    async def reset(self) -> bool:
        self.calls.append("reset")
        return True

    async def close(self, status: Any = None) -> bool:
        self.calls.append("close")
        self.closed_with = status
        return True

    async def broken(self) -> None:
        self.calls.append("broken")
        raise RuntimeError("cleanup failed")

    async def start(self) -> int:
        self.calls.append("start")
        return 3

    async def finish(self) -> str:
        self.calls.append("finish")
        return "done"

    async def explode(self) -> None:
        self.calls.append("explode")
        raise RuntimeError("target exploded")

    async def slow(self, seconds: float = 5.0) -> str:
        await asyncio.sleep(seconds)
        return "ok"


def _chain(first: Action | None = None) -> Machine:
    """a -> b -> c, capturing ``count`` and ``status``."""
    return Machine(
        id="chain",
        initial="a",
        states=(State("a"), State("b"), State("c", terminal=True)),
        transitions=(
            Transition("go", "a", "b", first or Action("start"), capture="count"),
            Transition("end", "b", "c", Action("finish"), capture="status"),
        ),
    )


def _do(entry_point: str, *, ignore_errors: bool = False, **args: Any) -> LifecycleAction:
    return LifecycleAction(Action(entry_point, args=args), ignore_errors=ignore_errors)


async def _run(
    machine: Machine,
    lifecycle: Lifecycle,
    target: _Target,
    settings: EngineSettings | None = None,
    **kwargs: Any,
):
    executor = TransitionExecutor(settings or EngineSettings(default_poll_interval=0.001))
    return await executor.run(
        machine, ObjectDriver(target), lifecycle=lifecycle, **kwargs
    )


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


class TestSetup:
    @pytest.mark.asyncio
    async def test_runs_before_first_transition(self) -> None:
        target = _Target()
        run = await _run(_chain(), Lifecycle(setup=(_do("reset"),)), target)
        assert run.succeeded
        assert target.calls == ["reset", "start", "finish"]

    @pytest.mark.asyncio
    async def test_failure_ends_run_before_any_transition(self) -> None:
        target = _Target()
        lifecycle = Lifecycle(setup=(_do("broken"), _do("reset")), teardown=(_do("close"),))
        run = await _run(_chain(), lifecycle, target)
        assert run.failed
        assert isinstance(run.violation, LifecycleFailure)
        assert run.violation.phase == "setup"
        assert run.violation.subject == "broken"
        assert "cleanup failed" in run.violation.message
        assert run.records == ()
        assert run.path == ("a",)
        assert target.calls == ["broken", "close"]

    @pytest.mark.asyncio
    async def test_ignored_failure_continues(self) -> None:
        target = _Target()
        lifecycle = Lifecycle(setup=(_do("broken", ignore_errors=True), _do("reset")))
        run = await _run(_chain(), lifecycle, target)
        assert run.succeeded
        assert target.calls[:2] == ["broken", "reset"]

    @pytest.mark.asyncio
    async def test_unexpected_return_value_fails(self) -> None:
        action = LifecycleAction(Action("reset", expected=False))
        run = await _run(_chain(), Lifecycle(setup=(action,)), _Target())
        assert run.violation_kind is ViolationKind.LIFECYCLE_FAILURE
        assert "expected False, got True" in run.violation.message


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


class TestSteps:
    @pytest.mark.asyncio
    async def test_steps_take_transitions_and_capture(self) -> None:
        lifecycle = Lifecycle(
            steps=(
                Step(
                    "start up",
                    ("go",),
                    timeout=1.0,
                    captures=(Capture("busy", parse_expression("count > 2")),),
                ),
                Step("wind down", ("end",)),
            )
        )
        run = await _run(_chain(), lifecycle, _Target())
        assert run.succeeded
        assert run.taken == ("go", "end")
        assert [s.name for s in run.steps] == ["start up", "wind down"]
        assert all(s.passed and s.error is None for s in run.steps)
        assert dict(run.steps[0].captured) == {"busy": True}
        assert run.variables["busy"] is True
        assert run.steps[0].duration >= 0.0

    @pytest.mark.asyncio
    async def test_run_finishes_after_last_step(self) -> None:
        run = await _run(_chain(), Lifecycle(steps=(Step("first", ("go",)),)), _Target())
        assert run.succeeded
        assert run.taken == ("go", "end")
        assert len(run.steps) == 1

    @pytest.mark.asyncio
    async def test_transition_from_another_state(self) -> None:
        target = _Target()
        lifecycle = Lifecycle(
            steps=(
                Step(
                    "skip ahead",
                    ("end",),
                    captures=(Capture("never", parse_expression("true")),),
                ),
            )
        )
        run = await _run(_chain(), lifecycle, target)
        assert isinstance(run.violation, NoEligibleTransition)
        assert run.violation.transition == "end"
        assert run.violation.subject == "a"
        assert "'end'" in run.violation.message
        assert target.calls == []
        [step] = run.steps
        assert not step.passed
        assert step.error == run.violation.message
        assert dict(step.captured) == {}
        assert "never" not in run.variables

    @pytest.mark.asyncio
    async def test_unknown_transition(self) -> None:
        run = await _run(_chain(), Lifecycle(steps=(Step("typo", ("og",)),)), _Target())
        assert run.violation_kind is ViolationKind.NO_ELIGIBLE_TRANSITION
        assert run.violation.transition == "og"

    @pytest.mark.asyncio
    async def test_guard_must_hold(self) -> None:
        machine = _chain().replace(
            transitions=(
                Transition(
                    "go", "a", "b", Action("start"), guard=parse_expression("armed == true")
                ),
                Transition("end", "b", "c", Action("finish")),
            )
        )
        run = await _run(machine, Lifecycle(steps=(Step("go", ("go",)),)), _Target())
        assert run.violation_kind is ViolationKind.NO_ELIGIBLE_TRANSITION

    @pytest.mark.asyncio
    async def test_step_timeout(self) -> None:
        lifecycle = Lifecycle(steps=(Step("stall", ("go",), timeout=0.05),))
        run = await _run(
            _chain(Action("slow", args={"seconds": 5})), lifecycle, _Target()
        )
        assert isinstance(run.violation, StepTimeout)
        assert run.violation.subject == "stall"
        assert run.violation.state == "a"
        assert not run.steps[0].passed

    @pytest.mark.asyncio
    async def test_steps_and_events_are_exclusive(self) -> None:
        with pytest.raises(ValueError, match="either"):
            await _run(
                _chain(), Lifecycle(steps=(Step("s", ("go",)),)), _Target(), events=["start"]
            )


# ---------------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------------


class TestTeardown:
    @pytest.mark.asyncio
    async def test_runs_after_failed_run(self) -> None:
        target = _Target()
        run = await _run(
            _chain(Action("explode")), Lifecycle(teardown=(_do("close"),)), target
        )
        assert run.failed
        assert isinstance(run.violation, DriverError)
        assert target.calls == ["explode", "close"]

    @pytest.mark.asyncio
    async def test_runs_after_run_timeout(self) -> None:
        target = _Target()
        run = await _run(
            _chain(Action("slow", args={"seconds": 5})),
            Lifecycle(teardown=(_do("close"),)),
            target,
            settings=EngineSettings(run_timeout=0.05),
        )
        assert isinstance(run.violation, RunTimeout)
        assert target.calls == ["close"]

    @pytest.mark.asyncio
    async def test_sees_run_variables(self) -> None:
        target = _Target()
        lifecycle = Lifecycle(teardown=(_do("close", status="${status}"),))
        run = await _run(_chain(), lifecycle, target)
        assert run.succeeded
        assert target.closed_with == "done"

    @pytest.mark.asyncio
    async def test_failure_fails_successful_run(self) -> None:
        target = _Target()
        lifecycle = Lifecycle(teardown=(_do("broken"), _do("close")))
        run = await _run(_chain(), lifecycle, target)
        assert run.failed
        assert run.current_state == "c"
        assert isinstance(run.violation, LifecycleFailure)
        assert run.violation.phase == "teardown"
        assert "close" not in target.calls

    @pytest.mark.asyncio
    async def test_ignored_failure_continues(self) -> None:
        target = _Target()
        lifecycle = Lifecycle(teardown=(_do("broken", ignore_errors=True), _do("close")))
        run = await _run(_chain(), lifecycle, target)
        assert run.succeeded
        assert target.calls[-2:] == ["broken", "close"]

    @pytest.mark.asyncio
    async def test_failure_keeps_first_violation(self) -> None:
        target = _Target()
        run = await _run(
            _chain(Action("explode")), Lifecycle(teardown=(_do("broken"),)), target
        )
        assert run.violation_kind is ViolationKind.DRIVER_ERROR
        assert target.calls == ["explode", "broken"]


class TestLifecycleValue:
    def test_truthiness(self) -> None:
        assert not Lifecycle()
        assert Lifecycle(teardown=(_do("close"),))

    def test_fixtures_drop_steps(self) -> None:
        lifecycle = Lifecycle(
            setup=(_do("reset"),), steps=(Step("s", ("go",)),), teardown=(_do("close"),)
        )
        fixtures = lifecycle.fixtures()
        assert fixtures.steps == ()
        assert fixtures.setup == lifecycle.setup
        assert fixtures.teardown == lifecycle.teardown

    def test_capture_source(self) -> None:
        assert Capture("x", parse_expression("count > 2")).source == "count > 2"
