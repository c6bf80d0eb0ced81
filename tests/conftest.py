"""Shared test fixtures: the sample pipeline machine and its scripted target."""

from __future__ import annotations

from typing import Any

import pytest

from playbook.config import EngineSettings
from playbook.engine.driver import InvocationResult
from playbook.model.expressions import parse_expression
from playbook.model.machine import (
    WILDCARD,
    Action,
    ActivationMode,
    Budget,
    ComplexityClass,
    ForbiddenEdge,
    Invariant,
    Machine,
    State,
    TransitionDecl,
)

PIPELINE_PATH = ["uninitialized", "loading", "ready", "processing", "completed"]
PIPELINE_EVENTS = ["init", "load", "process", "finish"]
SAMPLE_SIZES = (10, 50, 100, 200, 400)


def build_pipeline_machine() -> Machine:
    """uninitialized -> loading -> ready -> processing -> completed, plus
    a wildcard ``fail`` into ``error`` and a forbidden ``ready -> error``."""
    states = [
        State("uninitialized", "Nothing loaded yet"),
        State("loading", "Loading input"),
        State(
            "ready",
            "Input loaded",
            invariants=(Invariant(parse_expression("loaded == true"), "input is loaded"),),
        ),
        State("processing", "Processing input"),
        State(
            "completed",
            "Done",
            invariants=(Invariant(parse_expression('status == "done"')),),
            terminal=True,
        ),
        State("error", "Failed", terminal=True),
    ]
    transitions = [
        TransitionDecl(
            "init",
            ("uninitialized",),
            "loading",
            Action("init", expected=True),
            event="init",
            budget=Budget(max_duration=1.0),
        ),
        TransitionDecl(
            "load",
            ("loading",),
            "ready",
            Action("is_loaded"),
            event="load",
            mode=ActivationMode.WAIT,
            timeout=2.0,
            poll_interval=0.001,
            capture="loaded",
        ),
        TransitionDecl(
            "process",
            ("ready",),
            "processing",
            Action("process", args={"n": "${n}"}, expected=True),
            event="process",
            budget=Budget(
                max_duration=1.0,
                complexity=ComplexityClass.LINEAR,
                sample_sizes=SAMPLE_SIZES,
            ),
        ),
        TransitionDecl(
            "finish",
            ("processing",),
            "completed",
            Action("is_done", expected="done"),
            event="finish",
            mode=ActivationMode.WAIT,
            timeout=2.0,
            poll_interval=0.001,
            capture="status",
        ),
        TransitionDecl(
            "fail",
            (WILDCARD,),
            "error",
            Action("fail"),
            guard=parse_expression("failed == true"),
        ),
    ]
    return Machine.build(
        "pipeline",
        "uninitialized",
        states,
        transitions,
        forbidden=[ForbiddenEdge("ready", "error", "ready input must be processed")],
    )


class PipelineDriver:
    """Scripted target for the pipeline machine.

    ``process`` reports a duration of ``per_item * n`` (or ``n**2`` with
    ``quadratic=True``) so complexity sampling is deterministic.
    """

    def __init__(
        self,
        *,
        per_item: float = 1e-5,
        quadratic: bool = False,
        polls_until_loaded: int = 2,
    ) -> None:
        self.per_item = per_item
        self.quadratic = quadratic
        self.polls_until_loaded = polls_until_loaded
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.polls: list[str] = []

    async def invoke(self, entry_point: str, args: Any) -> InvocationResult:
        self.calls.append((entry_point, dict(args)))
        if entry_point == "init":
            return InvocationResult(value=True)
        if entry_point == "process":
            n = args.get("n") or 1
            work = n * n if self.quadratic else n
            return InvocationResult(value=True, duration=self.per_item * work)
        if entry_point == "fail":
            return InvocationResult(value="failed")
        raise LookupError(f"unknown entry point {entry_point!r}")

    async def poll(self, entry_point: str, args: Any) -> Any:
        self.polls.append(entry_point)
        if entry_point == "is_loaded":
            return self.polls.count("is_loaded") >= self.polls_until_loaded
        if entry_point == "is_done":
            return "done"
        raise LookupError(f"unknown entry point {entry_point!r}")


@pytest.fixture
def pipeline_machine() -> Machine:
    return build_pipeline_machine()


@pytest.fixture
def pipeline_driver_cls() -> type[PipelineDriver]:
    return PipelineDriver


@pytest.fixture
def pipeline_path() -> list[str]:
    return list(PIPELINE_PATH)


@pytest.fixture
def pipeline_events() -> list[str]:
    return list(PIPELINE_EVENTS)


@pytest.fixture
def fast_settings() -> EngineSettings:
    return EngineSettings(
        default_poll_interval=0.001,
        default_wait_timeout=2.0,
        entry_timeout=20.0,
        max_workers=4,
    )
