"""Unit tests for playbook.safety.falsification.

The pipeline machine must reach a 100% falsification score with a
generated catalog; hand-written catalogs cover every other outcome,
including a hung entry that must not hold up its siblings.
"""

from __future__ import annotations

import time

import pytest

from playbook.config import EngineSettings
from playbook.engine.checker import ViolationKind
from playbook.engine.driver import ObjectDriver
from playbook.model.expressions import parse_expression
from playbook.model.machine import (
    Action,
    ActivationMode,
    ForbiddenEdge,
    Machine,
    State,
    Transition,
)
from playbook.safety.falsification import (
    EntryOutcome,
    FalsificationHarness,
    check_structural_properties,
)
from playbook.safety.mutations import (
    CatalogEntry,
    ExpectedSignature,
    Mutation,
    MutationKind,
    default_signature,
)
from playbook.validation.validator import DefectKind

# ---------------------------------------------------------------------------
# Detour machine
# ---------------------------------------------------------------------------
#
#   a --start--> b --finish--> c
#   a --detour--> h --hang (waits forever)--> c
#                 h --resume--> b


class _DetourTarget:
    async def quick(self) -> bool:
        return True

    async def never(self) -> bool:
        return False


def _detour_machine() -> Machine:
    return Machine(
        id="detour",
        initial="a",
        states=(State("a"), State("b"), State("h"), State("c", terminal=True)),
        transitions=(
            Transition("start", "a", "b", Action("quick"), event="start"),
            Transition("finish", "b", "c", Action("quick"), event="finish"),
            Transition(
                "detour", "a", "h", Action("quick"), event="detour",
                guard=parse_expression("detour == true"),
            ),
            Transition(
                "hang", "h", "c", Action("never"), event="hang",
                mode=ActivationMode.WAIT, timeout=3600, poll_interval=0.01,
            ),
            Transition(
                "resume", "h", "b", Action("quick"), event="resume",
                guard=parse_expression("resume == true"),
            ),
        ),
    )


def _entry(machine: Machine, kind: MutationKind, target: str, argument: str | None = None) -> CatalogEntry:
    mutation = Mutation(kind, target, argument)
    return CatalogEntry(mutation, default_signature(machine, mutation))


def _detour_harness(**overrides) -> FalsificationHarness:
    settings = EngineSettings(
        default_poll_interval=0.01,
        entry_timeout=overrides.pop("entry_timeout", 5.0),
        max_workers=4,
        **overrides,
    )
    return FalsificationHarness(lambda: ObjectDriver(_DetourTarget()), settings)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestPipelineFalsification:
    @pytest.mark.asyncio
    async def test_generated_catalog_is_fully_caught(
        self, pipeline_machine, pipeline_driver_cls, fast_settings
    ) -> None:
        harness = FalsificationHarness(pipeline_driver_cls, fast_settings)
        report = await harness.run(pipeline_machine)
        assert report.baseline.succeeded
        assert report.total > 20
        assert report.failures == (), [
            (f.entry.label, f.outcome, f.detail) for f in report.failures
        ]
        assert report.score == 1.0
        assert report.all_caught
        assert report.properties.ok
        assert report.passed
        assert set(report.score_by_kind().values()) == {1.0}

    @pytest.mark.asyncio
    async def test_event_driven_catalog(
        self, pipeline_machine, pipeline_driver_cls, pipeline_events, fast_settings
    ) -> None:
        catalog = (
            _entry(pipeline_machine, MutationKind.TIGHTEN_BUDGET, "process"),
            _entry(pipeline_machine, MutationKind.NEGATE_INVARIANT, "ready"),
        )
        harness = FalsificationHarness(pipeline_driver_cls, fast_settings)
        report = await harness.run(pipeline_machine, catalog, events=pipeline_events)
        assert [r.outcome for r in report.results] == [EntryOutcome.CAUGHT] * 2
        assert report.results[0].observed_kind == "TimeBudgetExceeded"
        assert report.results[0].observed_subject == "process"

    @pytest.mark.asyncio
    async def test_generated_catalog_under_event_script(
        self, pipeline_machine, pipeline_driver_cls, pipeline_events, fast_settings
    ) -> None:
        harness = FalsificationHarness(pipeline_driver_cls, fast_settings)
        report = await harness.run(pipeline_machine, events=pipeline_events)
        assert report.baseline.succeeded
        assert report.failures == (), [
            (f.entry.label, f.outcome, f.detail) for f in report.failures
        ]
        assert report.all_caught
        (forced,) = [
            r for r in report.results
            if r.entry.mutation.kind is MutationKind.FORCE_FORBIDDEN_EDGE
        ]
        assert forced.entry.mutation.event == "process"
        assert forced.observed_kind == ViolationKind.FORBIDDEN_TRANSITION.value
        assert forced.observed_subject == "fail@ready"

    @pytest.mark.asyncio
    async def test_reuses_supplied_baseline(
        self, pipeline_machine, pipeline_driver_cls, fast_settings
    ) -> None:
        harness = FalsificationHarness(pipeline_driver_cls, fast_settings)
        first = await harness.run(pipeline_machine, catalog=())
        second = await harness.run(pipeline_machine, catalog=(), baseline=first.baseline)
        assert second.baseline is first.baseline
        assert second.total == 0
        assert second.score == 1.0


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_missed(self) -> None:
        machine = _detour_machine()
        entry = CatalogEntry(
            Mutation(MutationKind.RETARGET_TRANSITION, "finish", "c"),
            ExpectedSignature.runtime(ViolationKind.NO_ELIGIBLE_TRANSITION),
        )
        report = await _detour_harness().run(machine, [entry])
        (result,) = report.results
        assert result.outcome is EntryOutcome.MISSED
        assert report.score == 0.0
        assert not report.passed

    @pytest.mark.asyncio
    async def test_wrong_runtime_kind(self) -> None:
        machine = _detour_machine()
        entry = CatalogEntry(
            Mutation(MutationKind.TIGHTEN_BUDGET, "start"),
            ExpectedSignature.runtime(ViolationKind.INVARIANT_VIOLATION, "b"),
        )
        (result,) = (await _detour_harness().run(machine, [entry])).results
        assert result.outcome is EntryOutcome.WRONG_KIND
        assert result.observed_kind == "TimeBudgetExceeded"
        assert result.observed_subject == "start"

    @pytest.mark.asyncio
    async def test_wrong_subject(self) -> None:
        machine = _detour_machine()
        entry = CatalogEntry(
            Mutation(MutationKind.TIGHTEN_BUDGET, "start"),
            ExpectedSignature.runtime(ViolationKind.TIME_BUDGET_EXCEEDED, "finish"),
        )
        (result,) = (await _detour_harness().run(machine, [entry])).results
        assert result.outcome is EntryOutcome.WRONG_KIND

    @pytest.mark.asyncio
    async def test_runtime_expectation_rejected_statically(self) -> None:
        machine = _detour_machine()
        entry = CatalogEntry(
            Mutation(MutationKind.DANGLING_TARGET, "start"),
            ExpectedSignature.runtime(ViolationKind.DRIVER_ERROR),
        )
        (result,) = (await _detour_harness().run(machine, [entry])).results
        assert result.outcome is EntryOutcome.WRONG_KIND
        assert result.observed_kind == DefectKind.DANGLING_REFERENCE.value

    @pytest.mark.asyncio
    async def test_static_wrong_kind(self) -> None:
        machine = _detour_machine()
        entry = CatalogEntry(
            Mutation(MutationKind.DANGLING_TARGET, "start"),
            ExpectedSignature.static(DefectKind.UNREACHABLE_STATE, "b"),
        )
        (result,) = (await _detour_harness().run(machine, [entry])).results
        assert result.outcome is EntryOutcome.WRONG_KIND

    @pytest.mark.asyncio
    async def test_ambiguity_is_reported_as_error(self) -> None:
        machine = _detour_machine()
        entry = CatalogEntry(
            Mutation(MutationKind.NEGATE_GUARD, "detour"),
            ExpectedSignature.runtime(ViolationKind.TRANSITION_TIMEOUT, "hang"),
        )
        (result,) = (await _detour_harness().run(machine, [entry])).results
        assert result.outcome is EntryOutcome.ERROR
        assert "Ambiguous" in result.detail

    @pytest.mark.asyncio
    async def test_inapplicable_mutation_is_reported_as_error(self) -> None:
        machine = _detour_machine()
        entry = CatalogEntry(
            Mutation(MutationKind.NEGATE_INVARIANT, "a"),
            ExpectedSignature.runtime(ViolationKind.INVARIANT_VIOLATION, "a"),
        )
        (result,) = (await _detour_harness().run(machine, [entry])).results
        assert result.outcome is EntryOutcome.ERROR


class TestTimeoutIsolation:
    @pytest.mark.asyncio
    async def test_hung_entry_does_not_block_siblings(self) -> None:
        machine = _detour_machine()
        catalog = [
            CatalogEntry(
                Mutation(MutationKind.RETARGET_TRANSITION, "start", "h"),
                ExpectedSignature.runtime(ViolationKind.TRANSITION_TIMEOUT, "hang"),
            ),
            _entry(machine, MutationKind.TIGHTEN_BUDGET, "start"),
            _entry(machine, MutationKind.TIGHTEN_BUDGET, "finish"),
            _entry(machine, MutationKind.MARK_TERMINAL, "b"),
        ]
        start = time.perf_counter()
        report = await _detour_harness(entry_timeout=0.5).run(machine, catalog)
        elapsed = time.perf_counter() - start

        hung, *rest = report.results
        assert hung.outcome is EntryOutcome.TIMED_OUT
        assert hung.elapsed >= 0.45
        assert all(r.outcome is EntryOutcome.CAUGHT for r in rest)
        assert all(r.elapsed < 0.5 for r in rest)
        assert elapsed < 3.0
        assert report.caught == 3


class TestStructuralProperties:
    def test_pipeline_is_clean(self, pipeline_machine) -> None:
        props = check_structural_properties(pipeline_machine)
        assert props.ok
        assert props.terminates

    def test_detects_each_property(self) -> None:
        machine = Machine(
            id="bad",
            initial="a",
            states=(State("a"), State("x"), State("c", terminal=True), State("island")),
            transitions=(
                Transition("go", "a", "c", Action("go")),
                Transition("stray", "a", "x", Action("go"), mode=ActivationMode.WAIT),
                Transition(
                    "spin", "x", "x", Action("spin"), guard=parse_expression("never")
                ),
            ),
        )
        props = check_structural_properties(machine)
        assert props.non_terminating == ("x",)
        assert props.unreachable == ("island",)
        assert props.nondeterministic == (("a", "go"),)
        assert not props.terminates
        assert not props.ok

    def test_forbidden_target_counts_as_exit(self) -> None:
        machine = Machine(
            id="exit",
            initial="a",
            states=(State("a"), State("b")),
            transitions=(Transition("ab", "a", "b", Action("ab")),),
            forbidden=(ForbiddenEdge("a", "b"),),
        )
        assert check_structural_properties(machine).terminates
