"""Falsification harness: prove the engine detects injected defects.

For each catalog entry the harness applies the mutation to the baseline
machine, validates the result and, unless the entry expects a static
defect, runs it against a fresh driver.  The observed failure must match
the entry's ``ExpectedSignature`` exactly.  An entry that fails silently,
or fails the wrong way, is a blind spot and is reported as such.

Entries are embarrassingly parallel: machines are immutable, each entry
gets its own driver from ``driver_factory``, and concurrency is bounded by
an ``asyncio.Semaphore`` sized from ``EngineSettings.worker_count``.  Each
entry runs under ``asyncio.wait_for(entry_timeout)`` so one hung entry is
reported ``timed_out`` without delaying its siblings.

The harness also checks three structural properties directly over the
graph, without running anything: termination, reachability and
(state, event) determinism.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter, defaultdict
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from playbook.config import DEFAULT_SETTINGS
from playbook.engine.executor import RunCoverage, TransitionExecutor
from playbook.exceptions import EngineDefectError, MutationError
from playbook.safety.mutations import (
    DetectionStage,
    apply_mutation,
    generate_catalog,
)
from playbook.validation.validator import (
    DefectKind,
    reachable_from,
    states_reaching,
    validate_machine,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping, Sequence

    from playbook.config import EngineSettings
    from playbook.engine.driver import TargetDriver
    from playbook.engine.executor import Run
    from playbook.model.lifecycle import Lifecycle
    from playbook.model.machine import Machine
    from playbook.safety.mutations import CatalogEntry

__all__ = [
    "EntryOutcome",
    "EntryResult",
    "FalsificationHarness",
    "FalsificationReport",
    "StructuralProperties",
    "check_structural_properties",
]

log = logging.getLogger(__name__)


class EntryOutcome(StrEnum):
    CAUGHT = "caught"
    MISSED = "missed"
    WRONG_KIND = "wrong_kind"
    TIMED_OUT = "timed_out"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class EntryResult:
    """Outcome of one catalog entry.

    Attributes:
        entry: The catalog entry.
        outcome: Whether the expected failure was observed.
        observed_kind: Defect or violation kind actually produced, if any.
        observed_subject: Identifier attached to that failure.
        detail: Human-readable explanation.
        elapsed: Seconds spent on the entry.
    """

    entry: CatalogEntry
    outcome: EntryOutcome
    observed_kind: str | None = None
    observed_subject: str | None = None
    detail: str = ""
    elapsed: float = 0.0

    @property
    def caught(self) -> bool:
        return self.outcome is EntryOutcome.CAUGHT


@dataclass(frozen=True, slots=True)
class StructuralProperties:
    """Graph properties checked without execution.

    Attributes:
        non_terminating: Reachable states from which no terminal state (or
            forbidden-edge target) can be reached.
        unreachable: States not reachable from the initial state.
        nondeterministic: ``(state, event)`` pairs leading to more than one
            distinct target.
    """

    non_terminating: tuple[str, ...] = ()
    unreachable: tuple[str, ...] = ()
    nondeterministic: tuple[tuple[str, str], ...] = ()

    @property
    def terminates(self) -> bool:
        return not self.non_terminating

    @property
    def ok(self) -> bool:
        return not (self.non_terminating or self.unreachable or self.nondeterministic)


@dataclass(frozen=True, slots=True)
class FalsificationReport:
    """Per-entry pass/fail matrix plus structural properties."""

    machine_id: str
    baseline: Run
    results: tuple[EntryResult, ...]
    properties: StructuralProperties

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def caught(self) -> int:
        return sum(1 for r in self.results if r.caught)

    @property
    def score(self) -> float:
        """Fraction of entries caught; 1.0 for an empty catalog."""
        return self.caught / self.total if self.results else 1.0

    @property
    def all_caught(self) -> bool:
        return self.caught == self.total

    @property
    def failures(self) -> tuple[EntryResult, ...]:
        return tuple(r for r in self.results if not r.caught)

    def score_by_kind(self) -> dict[str, float]:
        totals: Counter[str] = Counter()
        killed: Counter[str] = Counter()
        for r in self.results:
            kind = r.entry.mutation.kind.value
            totals[kind] += 1
            if r.caught:
                killed[kind] += 1
        return {kind: killed[kind] / totals[kind] for kind in totals}

    @property
    def passed(self) -> bool:
        return self.baseline.succeeded and self.all_caught and self.properties.ok


# ---------------------------------------------------------------------------
# Structural properties
# ---------------------------------------------------------------------------


def check_structural_properties(machine: Machine) -> StructuralProperties:
    """Check termination, reachability and determinism over the graph."""
    reachable = reachable_from(machine, machine.initial)
    exits = set(machine.terminal_state_ids) | {e.target for e in machine.forbidden}
    can_exit = states_reaching(machine, exits)
    non_terminating = tuple(
        sid for sid in dict.fromkeys(machine.state_ids) if sid in reachable and sid not in can_exit
    )
    unreachable = tuple(
        sid for sid in dict.fromkeys(machine.state_ids) if sid not in reachable
    )
    targets: dict[tuple[str, str], set[str]] = defaultdict(set)
    for t in machine.transitions:
        targets[(t.source, t.event)].add(t.target)
    nondeterministic = tuple(pair for pair, dests in targets.items() if len(dests) > 1)
    return StructuralProperties(non_terminating, unreachable, nondeterministic)


# ---------------------------------------------------------------------------
# Harness
# ---------------------------------------------------------------------------


class FalsificationHarness:
    """Run a falsification catalog against a machine.

    Parameters
    ----------
    driver_factory : Callable[[], TargetDriver]
        Returns a fresh driver for each run (baseline and every entry).
    settings : EngineSettings | None
        Worker bound, entry timeout and executor settings.
    executor : TransitionExecutor | None
        Override the executor built from *settings*.
    """

    def __init__(
        self,
        driver_factory: Callable[[], TargetDriver],
        settings: EngineSettings | None = None,
        executor: TransitionExecutor | None = None,
    ) -> None:
        self.driver_factory = driver_factory
        self.settings = settings or DEFAULT_SETTINGS
        self.executor = executor or TransitionExecutor(self.settings)

    async def run(
        self,
        machine: Machine,
        catalog: Sequence[CatalogEntry] | None = None,
        variables: Mapping[str, Any] | None = None,
        *,
        events: Iterable[str] | None = None,
        baseline: Run | None = None,
        lifecycle: Lifecycle | None = None,
    ) -> FalsificationReport:
        """Run the baseline, then every catalog entry concurrently.

        Without an explicit *catalog* one is generated from the machine
        and the baseline run's coverage.  A *baseline* already produced by
        the caller is reused instead of running the machine again.
        Mutated machines run with the *lifecycle*'s setup and teardown
        but not its steps, since steps name transitions a mutation may
        rename or remove.

        Raises
        ------
        UnvalidatedMachineError
            If the baseline machine itself does not validate.
        """
        script = tuple(events) if events is not None else None
        if baseline is None:
            baseline = await self.executor.run(
                machine,
                self.driver_factory(),
                variables,
                events=script,
                lifecycle=lifecycle,
            )
        fixtures = lifecycle.fixtures() if lifecycle is not None else None
        if catalog is None:
            catalog = generate_catalog(
                machine, RunCoverage.from_run(baseline), self.executor.analyzer
            )
        properties = check_structural_properties(machine)

        log.info(
            "Falsifying %s: %d catalog entries, %d workers",
            machine.id,
            len(catalog),
            self.settings.worker_count,
        )
        semaphore = asyncio.Semaphore(self.settings.worker_count)

        async def bounded(entry: CatalogEntry) -> EntryResult:
            async with semaphore:
                return await self.run_entry(
                    machine, entry, variables, events=script, lifecycle=fixtures
                )

        results = await asyncio.gather(*(bounded(entry) for entry in catalog))
        report = FalsificationReport(
            machine_id=machine.id,
            baseline=baseline,
            results=tuple(results),
            properties=properties,
        )
        log.info(
            "Falsification of %s: %d/%d caught (%.0f%%)",
            machine.id,
            report.caught,
            report.total,
            report.score * 100,
        )
        for failure in report.failures:
            log.warning(
                "Blind spot: %s -> %s (%s)",
                failure.entry.label,
                failure.outcome.value,
                failure.detail,
            )
        return report

    async def run_entry(
        self,
        machine: Machine,
        entry: CatalogEntry,
        variables: Mapping[str, Any] | None = None,
        *,
        events: Iterable[str] | None = None,
        lifecycle: Lifecycle | None = None,
    ) -> EntryResult:
        """Evaluate one entry under the per-entry timeout."""
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self._evaluate(machine, entry, variables, events, lifecycle),
                timeout=self.settings.entry_timeout,
            )
        except TimeoutError:
            result = EntryResult(
                entry,
                EntryOutcome.TIMED_OUT,
                detail=f"no verdict within {self.settings.entry_timeout}s",
            )
        except (EngineDefectError, MutationError) as exc:
            log.error("Entry %s raised: %s", entry.label, exc)
            result = EntryResult(entry, EntryOutcome.ERROR, detail=str(exc))
        elapsed = time.perf_counter() - start
        log.debug("Entry %s: %s in %.3fs", entry.label, result.outcome.value, elapsed)
        return EntryResult(
            result.entry,
            result.outcome,
            result.observed_kind,
            result.observed_subject,
            result.detail,
            elapsed,
        )

    async def _evaluate(
        self,
        machine: Machine,
        entry: CatalogEntry,
        variables: Mapping[str, Any] | None,
        events: Iterable[str] | None,
        lifecycle: Lifecycle | None = None,
    ) -> EntryResult:
        expected = entry.expected
        mutated = apply_mutation(machine, entry.mutation)
        report = validate_machine(mutated)

        if expected.stage is DetectionStage.STATIC:
            if report.has_defect(DefectKind(expected.kind), expected.subject):
                return EntryResult(
                    entry, EntryOutcome.CAUGHT, expected.kind, expected.subject
                )
            if report.defects:
                first = report.defects[0]
                return EntryResult(
                    entry,
                    EntryOutcome.WRONG_KIND,
                    first.kind.value,
                    first.subject,
                    f"expected {expected.kind} on {expected.subject!r}, "
                    f"validator reported {[d.kind.value for d in report.defects]}",
                )
            return EntryResult(
                entry, EntryOutcome.MISSED, detail="mutated machine validated cleanly"
            )

        if not report.ok:
            first = report.defects[0]
            return EntryResult(
                entry,
                EntryOutcome.WRONG_KIND,
                first.kind.value,
                first.subject,
                f"expected runtime {expected.kind}, rejected statically",
            )

        run = await self.executor.run(
            mutated,
            self.driver_factory(),
            variables,
            events=events,
            lifecycle=lifecycle,
        )
        violation = run.violation
        if violation is None:
            return EntryResult(
                entry, EntryOutcome.MISSED, detail="mutated machine ran cleanly"
            )
        if violation.kind.value == expected.kind and (
            expected.subject is None or violation.subject == expected.subject
        ):
            return EntryResult(
                entry, EntryOutcome.CAUGHT, violation.kind.value, violation.subject
            )
        return EntryResult(
            entry,
            EntryOutcome.WRONG_KIND,
            violation.kind.value,
            violation.subject,
            f"expected {expected.kind} on {expected.subject!r}, got {violation.message}",
        )
