"""Verification gate: validate, run, assert and falsify one machine.

The gate runs four stages in order:

1. ``validation``: the static validator reports zero defects;
2. ``baseline``: a run against a fresh driver reaches a terminal state
   without violations;
3. ``assertions``: every path, output and complexity assertion holds on
   that run;
4. ``falsification``: every catalog entry is caught and the structural
   properties hold.

A validation failure skips the remaining stages, since a machine with
defects is never executed.  The exit code is 0 only when every stage
passes; otherwise it identifies the first failing stage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from playbook.config import DEFAULT_SETTINGS
from playbook.engine.assertions import RunAssertions, check_run_assertions
from playbook.engine.executor import TransitionExecutor
from playbook.safety.falsification import FalsificationHarness
from playbook.validation.validator import validate_machine

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping, Sequence

    from playbook.config import EngineSettings
    from playbook.engine.assertions import AssertionCheckResult
    from playbook.engine.driver import TargetDriver
    from playbook.engine.executor import Run
    from playbook.model.document import LoadedDocument
    from playbook.model.lifecycle import Lifecycle
    from playbook.model.machine import Machine
    from playbook.safety.falsification import FalsificationReport
    from playbook.safety.mutations import CatalogEntry
    from playbook.validation.validator import ValidationReport

log = logging.getLogger(__name__)

__all__ = [
    "GateItem",
    "GateReport",
    "GateStage",
    "GateVerdict",
    "verify",
    "verify_document",
]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class GateVerdict(str, Enum):
    """Per-stage verdict."""

    PASS = "PASS"
    FAIL = "FAIL"
    SKIP = "SKIP"


class GateStage(str, Enum):
    """Gate stages, in execution order, with their failure exit codes."""

    VALIDATION = "validation"
    BASELINE = "baseline"
    ASSERTIONS = "assertions"
    FALSIFICATION = "falsification"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    GateStage.VALIDATION: 2,
    GateStage.BASELINE: 3,
    GateStage.ASSERTIONS: 4,
    GateStage.FALSIFICATION: 5,
}


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class GateItem:
    """Verdict of one stage."""

    stage: GateStage
    verdict: GateVerdict
    evidence: str = ""


@dataclass(frozen=True, slots=True)
class GateReport:
    """Structured outcome of ``verify``; no formatting is baked in
    except for the convenience ``summarize`` and ``report_table``."""

    machine_id: str
    items: tuple[GateItem, ...]
    validation: ValidationReport
    run: Run | None = None
    assertion_results: tuple[AssertionCheckResult, ...] = ()
    falsification: FalsificationReport | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def verdict(self) -> GateVerdict:
        if all(i.verdict is GateVerdict.PASS for i in self.items):
            return GateVerdict.PASS
        return GateVerdict.FAIL

    @property
    def failing_stage(self) -> GateStage | None:
        for item in self.items:
            if item.verdict is not GateVerdict.PASS:
                return item.stage
        return None

    @property
    def exit_code(self) -> int:
        stage = self.failing_stage
        return 0 if stage is None else stage.exit_code

    def summarize(self) -> str:
        passed = sum(1 for i in self.items if i.verdict is GateVerdict.PASS)
        failed = sum(1 for i in self.items if i.verdict is GateVerdict.FAIL)
        skipped = sum(1 for i in self.items if i.verdict is GateVerdict.SKIP)
        return f"{passed} passed, {failed} failed, {skipped} skipped"

    def report_table(self) -> str:
        lines = [
            "| Stage | Verdict | Evidence |",
            "|-------|---------|----------|",
        ]
        for item in self.items:
            mark = "✓" if item.verdict is GateVerdict.PASS else "✗"
            lines.append(
                f"| {item.stage.value} | {mark} {item.verdict.value} | {item.evidence} |"
            )
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Gate Evaluation
# ---------------------------------------------------------------------------


def _skipped(*stages: GateStage) -> list[GateItem]:
    return [GateItem(s, GateVerdict.SKIP, "machine did not validate") for s in stages]


async def verify(
    machine: Machine,
    driver_factory: Callable[[], TargetDriver],
    *,
    catalog: Sequence[CatalogEntry] | None = None,
    assertions: RunAssertions | None = None,
    variables: Mapping[str, Any] | None = None,
    events: Iterable[str] | None = None,
    lifecycle: Lifecycle | None = None,
    settings: EngineSettings | None = None,
) -> GateReport:
    """Run every gate stage against *machine*.

    Args:
        machine: Machine under verification.
        driver_factory: Returns a fresh driver for each run.
        catalog: Falsification catalog; generated from the baseline run
            when omitted.
        assertions: Post-run path, output and complexity assertions.
        variables: Initial variable environment for every run.
        events: Event script for every run.
        lifecycle: Setup, steps and teardown of the baseline run; mutated
            runs keep only its setup and teardown.
        settings: Engine settings.

    Returns:
        GateReport whose ``exit_code`` is 0 only if every stage passed.
    """
    settings = settings or DEFAULT_SETTINGS
    assertions = assertions or RunAssertions()
    script = tuple(events) if events is not None else None

    validation = validate_machine(machine)
    for advisory in validation.advisories:
        log.warning("%s: %s", advisory.kind.value, advisory.detail)
    if not validation.ok:
        items = [
            GateItem(
                GateStage.VALIDATION,
                GateVerdict.FAIL,
                "; ".join(d.detail for d in validation.defects),
            ),
            *_skipped(GateStage.BASELINE, GateStage.ASSERTIONS, GateStage.FALSIFICATION),
        ]
        log.info("Gate for %s: FAIL at validation", machine.id)
        return GateReport(machine.id, tuple(items), validation)

    items = [GateItem(GateStage.VALIDATION, GateVerdict.PASS, "no structural defects")]

    executor = TransitionExecutor(settings)
    run = await executor.run(
        machine, driver_factory(), variables, events=script, lifecycle=lifecycle
    )
    if run.succeeded:
        items.append(
            GateItem(
                GateStage.BASELINE,
                GateVerdict.PASS,
                f"reached {run.current_state!r} via {len(run.taken)} transitions",
            )
        )
    else:
        detail = run.violation.message if run.violation else "run did not finish"
        items.append(GateItem(GateStage.BASELINE, GateVerdict.FAIL, detail))

    results = check_run_assertions(run, assertions)
    failed = [r for r in results if not r.passed]
    items.append(
        GateItem(
            GateStage.ASSERTIONS,
            GateVerdict.FAIL if failed else GateVerdict.PASS,
            "; ".join(r.error or r.description for r in failed)
            or f"{len(results)} assertions hold",
        )
    )

    harness = FalsificationHarness(driver_factory, settings, executor)
    falsification = await harness.run(
        machine,
        catalog,
        variables,
        events=script,
        baseline=run,
        lifecycle=lifecycle,
    )
    evidence = f"{falsification.caught}/{falsification.total} entries caught"
    if not falsification.properties.ok:
        evidence += "; structural properties violated"
    items.append(
        GateItem(
            GateStage.FALSIFICATION,
            GateVerdict.PASS
            if falsification.all_caught and falsification.properties.ok
            else GateVerdict.FAIL,
            evidence,
        )
    )

    report = GateReport(
        machine_id=machine.id,
        items=tuple(items),
        validation=validation,
        run=run,
        assertion_results=results,
        falsification=falsification,
    )
    log.info(
        "Gate for %s: %s (%s)", machine.id, report.verdict.value, report.summarize()
    )
    return report


async def verify_document(
    document: LoadedDocument,
    driver_factory: Callable[[], TargetDriver],
    **kwargs: Any,
) -> GateReport:
    """``verify`` a loaded document with its own catalog, assertions and lifecycle."""
    return await verify(
        document.machine,
        driver_factory,
        catalog=document.catalog,
        assertions=document.assertions,
        lifecycle=document.lifecycle,
        **kwargs,
    )
