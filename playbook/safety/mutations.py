"""Falsification mutations: descriptors, application and catalog generation.

A ``Mutation`` is plain data (kind, target, optional argument).  Applying
it is a pure ``Machine -> Machine`` function looked up by kind; the input
machine is never touched.  A ``CatalogEntry`` pairs a mutation with the
``ExpectedSignature`` the engine must produce when the mutated machine is
validated and run.

``generate_catalog`` derives entries whose expected outcome is
determinable from the machine's structure and from what a baseline run
exercised (``RunCoverage``).  Mutations whose outcome depends on guard
values at runtime (``negate_guard``, ``retarget_transition``,
``swap_events``) are only used in author-written catalogs.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from playbook.engine.checker import ViolationKind
from playbook.exceptions import MutationError
from playbook.model.expressions import FALSE, TRUE, negate
from playbook.model.machine import ComplexityClass, Transition
from playbook.validation.validator import DefectKind, reachable_from

if TYPE_CHECKING:
    from playbook.engine.complexity import ComplexityAnalyzer
    from playbook.engine.executor import RunCoverage
    from playbook.model.machine import Machine, State

__all__ = [
    "DANGLING_STATE",
    "MISSING_INITIAL",
    "CatalogEntry",
    "DetectionStage",
    "ExpectedSignature",
    "Mutation",
    "MutationKind",
    "apply_mutation",
    "default_signature",
    "generate_catalog",
]

#: State id used by mutations that introduce an undeclared reference.
DANGLING_STATE = "__dangling__"
MISSING_INITIAL = "__missing_initial__"


class MutationKind(StrEnum):
    REMOVE_STATE = "remove_state"
    REMOVE_TRANSITION = "remove_transition"
    NEGATE_INVARIANT = "negate_invariant"
    TIGHTEN_BUDGET = "tighten_budget"
    DEGRADE_COMPLEXITY = "degrade_complexity"
    FORCE_FORBIDDEN_EDGE = "force_forbidden_edge"
    DUPLICATE_STATE = "duplicate_state"
    DUPLICATE_TRANSITION = "duplicate_transition"
    DANGLING_TARGET = "dangling_target"
    INVALID_INITIAL = "invalid_initial"
    MARK_TERMINAL = "mark_terminal"
    INJECT_NONDETERMINISM = "inject_nondeterminism"
    NEGATE_GUARD = "negate_guard"
    RETARGET_TRANSITION = "retarget_transition"
    SWAP_EVENTS = "swap_events"


class DetectionStage(StrEnum):
    """Where a mutation is expected to be caught."""

    STATIC = "static"
    RUNTIME = "runtime"
    COMPLEXITY = "complexity"


@dataclass(frozen=True, slots=True)
class ExpectedSignature:
    """The failure a mutated machine must produce.

    ``kind`` is a ``DefectKind`` value for the static stage and a
    ``ViolationKind`` value otherwise.  ``subject`` narrows the match to one
    offending identifier; ``None`` matches any.
    """

    stage: DetectionStage
    kind: str
    subject: str | None = None

    @classmethod
    def static(cls, kind: DefectKind, subject: str | None = None) -> ExpectedSignature:
        return cls(DetectionStage.STATIC, kind.value, subject)

    @classmethod
    def runtime(
        cls, kind: ViolationKind, subject: str | None = None
    ) -> ExpectedSignature:
        stage = (
            DetectionStage.COMPLEXITY
            if kind is ViolationKind.COMPLEXITY_MISMATCH
            else DetectionStage.RUNTIME
        )
        return cls(stage, kind.value, subject)


@dataclass(frozen=True, slots=True)
class Mutation:
    """Serializable mutation descriptor.

    Attributes:
        kind: Which transformation to apply.
        target: Primary identifier (state or transition id, or the
            forbidden edge's source for ``force_forbidden_edge``).
        argument: Secondary identifier where the kind needs one: the
            forbidden edge's target, the new target state for
            ``retarget_transition``, the other transition for
            ``swap_events``.
        event: For ``force_forbidden_edge``, the event the forced
            transition fires on, so an event-scripted run still takes it.
    """

    kind: MutationKind
    target: str
    argument: str | None = None
    event: str | None = None

    @property
    def label(self) -> str:
        if self.argument is None:
            label = f"{self.kind.value}({self.target})"
        else:
            label = f"{self.kind.value}({self.target}, {self.argument})"
        return label if self.event is None else f"{label} on {self.event!r}"


@dataclass(frozen=True, slots=True)
class CatalogEntry:
    mutation: Mutation
    expected: ExpectedSignature

    @property
    def label(self) -> str:
        return self.mutation.label


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def _require_state(machine: Machine, mutation: Mutation, state_id: str) -> State:
    state = machine.get_state(state_id)
    if state is None:
        raise MutationError(mutation.kind, state_id, "no such state")
    return state


def _require_transition(
    machine: Machine, mutation: Mutation, transition_id: str
) -> Transition:
    transition = machine.get_transition(transition_id)
    if transition is None:
        raise MutationError(mutation.kind, transition_id, "no such transition")
    return transition


def _replace_state(machine: Machine, new: State) -> Machine:
    return machine.replace(
        states=tuple(new if s.id == new.id else s for s in machine.states)
    )


def _replace_transitions(
    machine: Machine, changes: dict[str, Transition]
) -> Machine:
    return machine.replace(
        transitions=tuple(changes.get(t.id, t) for t in machine.transitions)
    )


def _remove_state(machine: Machine, m: Mutation) -> Machine:
    # Transitions referencing the state are kept so they dangle.
    _require_state(machine, m, m.target)
    return machine.replace(states=tuple(s for s in machine.states if s.id != m.target))


def _remove_transition(machine: Machine, m: Mutation) -> Machine:
    _require_transition(machine, m, m.target)
    return machine.replace(
        transitions=tuple(t for t in machine.transitions if t.id != m.target)
    )


def _negate_invariant(machine: Machine, m: Mutation) -> Machine:
    state = _require_state(machine, m, m.target)
    if not any(inv.is_blocking for inv in state.invariants):
        raise MutationError(m.kind, m.target, "state has no blocking invariant")
    invariants = tuple(
        dataclasses.replace(inv, expression=negate(inv.expression))
        if inv.is_blocking
        else inv
        for inv in state.invariants
    )
    return _replace_state(machine, dataclasses.replace(state, invariants=invariants))


def _tighten_budget(machine: Machine, m: Mutation) -> Machine:
    t = _require_transition(machine, m, m.target)
    budget = dataclasses.replace(t.budget, max_duration=0.0)
    return _replace_transitions(machine, {t.id: dataclasses.replace(t, budget=budget)})


def _degrade_complexity(machine: Machine, m: Mutation) -> Machine:
    t = _require_transition(machine, m, m.target)
    declared = t.budget.complexity
    if declared is None or declared is ComplexityClass.CONSTANT or not t.budget.sample_sizes:
        raise MutationError(
            m.kind, m.target, "transition declares no sampled complexity above O(1)"
        )
    budget = dataclasses.replace(t.budget, complexity=ComplexityClass.CONSTANT)
    return _replace_transitions(machine, {t.id: dataclasses.replace(t, budget=budget)})


def _forced_transition_id(source: str, target: str) -> str:
    return f"forced_{source}_{target}"


def _force_forbidden_edge(machine: Machine, m: Mutation) -> Machine:
    source, target = m.target, m.argument
    if target is None:
        raise MutationError(m.kind, source, "forbidden edge target is required")
    _require_state(machine, m, source)
    _require_state(machine, m, target)
    outgoing = machine.transitions_from(source)
    direct = next((t for t in outgoing if t.target == target), None)
    changes: dict[str, Transition] = {}
    for t in outgoing:
        blocked = dataclasses.replace(t, guard=FALSE)
        if m.event is not None and t.event == m.event:
            # free the event for the forced transition
            blocked = dataclasses.replace(blocked, event=f"{t.id}__blocked")
        changes[t.id] = blocked
    if direct is not None:
        changes[direct.id] = dataclasses.replace(
            direct, guard=TRUE, event=m.event or direct.event
        )
        return _replace_transitions(machine, changes)
    if not outgoing:
        raise MutationError(m.kind, source, "state has no action to reuse")
    template = next((t for t in outgoing if t.origin is None), outgoing[0])
    forced_id = _forced_transition_id(source, target)
    forced = dataclasses.replace(
        template,
        id=forced_id,
        target=target,
        event=m.event or forced_id,
        guard=TRUE,
        budget=dataclasses.replace(template.budget, complexity=None, sample_sizes=()),
        capture=None,
        origin=None,
    )
    mutated = _replace_transitions(machine, changes)
    return mutated.replace(transitions=(*mutated.transitions, forced))


def _duplicate_state(machine: Machine, m: Mutation) -> Machine:
    state = _require_state(machine, m, m.target)
    return machine.replace(states=(*machine.states, state))


def _duplicate_transition(machine: Machine, m: Mutation) -> Machine:
    t = _require_transition(machine, m, m.target)
    return machine.replace(transitions=(*machine.transitions, t))


def _dangling_target(machine: Machine, m: Mutation) -> Machine:
    t = _require_transition(machine, m, m.target)
    return _replace_transitions(
        machine, {t.id: dataclasses.replace(t, target=DANGLING_STATE)}
    )


def _invalid_initial(machine: Machine, m: Mutation) -> Machine:
    return machine.replace(initial=MISSING_INITIAL)


def _mark_terminal(machine: Machine, m: Mutation) -> Machine:
    state = _require_state(machine, m, m.target)
    return _replace_state(machine, dataclasses.replace(state, terminal=True))


def _inject_nondeterminism(machine: Machine, m: Mutation) -> Machine:
    t = _require_transition(machine, m, m.target)
    clone = dataclasses.replace(t, id=f"{t.id}__clone", guard=None, origin=None)
    return machine.replace(transitions=(*machine.transitions, clone))


def _negate_guard(machine: Machine, m: Mutation) -> Machine:
    t = _require_transition(machine, m, m.target)
    guard = FALSE if t.guard is None else negate(t.guard)
    return _replace_transitions(machine, {t.id: dataclasses.replace(t, guard=guard)})


def _retarget_transition(machine: Machine, m: Mutation) -> Machine:
    t = _require_transition(machine, m, m.target)
    if m.argument is None:
        raise MutationError(m.kind, m.target, "new target state is required")
    return _replace_transitions(
        machine, {t.id: dataclasses.replace(t, target=m.argument)}
    )


def _swap_events(machine: Machine, m: Mutation) -> Machine:
    first = _require_transition(machine, m, m.target)
    if m.argument is None:
        raise MutationError(m.kind, m.target, "second transition is required")
    second = _require_transition(machine, m, m.argument)
    return _replace_transitions(
        machine,
        {
            first.id: dataclasses.replace(first, event=second.event),
            second.id: dataclasses.replace(second, event=first.event),
        },
    )


_APPLY: dict[MutationKind, Callable[[Machine, Mutation], Machine]] = {
    MutationKind.REMOVE_STATE: _remove_state,
    MutationKind.REMOVE_TRANSITION: _remove_transition,
    MutationKind.NEGATE_INVARIANT: _negate_invariant,
    MutationKind.TIGHTEN_BUDGET: _tighten_budget,
    MutationKind.DEGRADE_COMPLEXITY: _degrade_complexity,
    MutationKind.FORCE_FORBIDDEN_EDGE: _force_forbidden_edge,
    MutationKind.DUPLICATE_STATE: _duplicate_state,
    MutationKind.DUPLICATE_TRANSITION: _duplicate_transition,
    MutationKind.DANGLING_TARGET: _dangling_target,
    MutationKind.INVALID_INITIAL: _invalid_initial,
    MutationKind.MARK_TERMINAL: _mark_terminal,
    MutationKind.INJECT_NONDETERMINISM: _inject_nondeterminism,
    MutationKind.NEGATE_GUARD: _negate_guard,
    MutationKind.RETARGET_TRANSITION: _retarget_transition,
    MutationKind.SWAP_EVENTS: _swap_events,
}


def apply_mutation(machine: Machine, mutation: Mutation) -> Machine:
    """Return a new machine with *mutation* applied.

    Raises:
        MutationError: If the mutation's target does not exist or the kind
            does not apply to it.
    """
    return _APPLY[mutation.kind](machine, mutation)


# ---------------------------------------------------------------------------
# Expected signatures and catalog generation
# ---------------------------------------------------------------------------


def _newly_unreachable(machine: Machine, mutated: Machine) -> list[str]:
    before = reachable_from(machine, machine.initial)
    after = reachable_from(mutated, mutated.initial)
    return [sid for sid in machine.state_ids if sid in before and sid not in after]


def default_signature(machine: Machine, mutation: Mutation) -> ExpectedSignature | None:
    """Derive the expected signature for *mutation* from structure alone.

    Returns ``None`` for kinds whose outcome depends on runtime values.
    """
    kind = mutation.kind
    target = mutation.target
    if kind is MutationKind.REMOVE_STATE:
        if target == machine.initial:
            return ExpectedSignature.static(DefectKind.INVALID_INITIAL_STATE, target)
        return ExpectedSignature.static(DefectKind.DANGLING_REFERENCE, target)
    if kind is MutationKind.REMOVE_TRANSITION:
        lost = _newly_unreachable(machine, apply_mutation(machine, mutation))
        if not lost:
            return None
        return ExpectedSignature.static(DefectKind.UNREACHABLE_STATE, lost[0])
    if kind is MutationKind.NEGATE_INVARIANT:
        return ExpectedSignature.runtime(ViolationKind.INVARIANT_VIOLATION, target)
    if kind is MutationKind.TIGHTEN_BUDGET:
        return ExpectedSignature.runtime(ViolationKind.TIME_BUDGET_EXCEEDED, target)
    if kind is MutationKind.DEGRADE_COMPLEXITY:
        return ExpectedSignature.runtime(ViolationKind.COMPLEXITY_MISMATCH, target)
    if kind is MutationKind.FORCE_FORBIDDEN_EDGE:
        source, dest = target, mutation.argument or ""
        direct = next(
            (t for t in machine.transitions_from(source) if t.target == dest), None
        )
        transition_id = direct.id if direct else _forced_transition_id(source, dest)
        return ExpectedSignature.runtime(ViolationKind.FORBIDDEN_TRANSITION, transition_id)
    if kind in (MutationKind.DUPLICATE_STATE, MutationKind.DUPLICATE_TRANSITION):
        return ExpectedSignature.static(DefectKind.DUPLICATE_IDENTIFIER, target)
    if kind is MutationKind.DANGLING_TARGET:
        return ExpectedSignature.static(DefectKind.DANGLING_REFERENCE, DANGLING_STATE)
    if kind is MutationKind.INVALID_INITIAL:
        return ExpectedSignature.static(DefectKind.INVALID_INITIAL_STATE, MISSING_INITIAL)
    if kind is MutationKind.MARK_TERMINAL:
        return ExpectedSignature.static(DefectKind.OUTGOING_FROM_TERMINAL, target)
    if kind is MutationKind.INJECT_NONDETERMINISM:
        source = machine.get_transition(target)
        return ExpectedSignature.static(
            DefectKind.NON_DETERMINISTIC_TRANSITION,
            source.source if source is not None else None,
        )
    return None


def _entry(machine: Machine, mutation: Mutation) -> CatalogEntry:
    expected = default_signature(machine, mutation)
    if expected is None:
        raise MutationError(mutation.kind, mutation.target, "outcome is not determinable")
    return CatalogEntry(mutation, expected)


def generate_catalog(
    machine: Machine,
    coverage: RunCoverage,
    analyzer: ComplexityAnalyzer | None = None,
) -> tuple[CatalogEntry, ...]:
    """Build a catalog whose expected signatures are determinable.

    Static entries are derived from the structure alone.  Runtime entries
    are only generated for states and transitions the baseline run
    exercised, so that the mutated run is guaranteed to reach the mutated
    element.

    Args:
        machine: A machine that validated cleanly.
        coverage: What the baseline run visited.
        analyzer: Used to confirm that a sampled transition would mismatch
            once its declaration is degraded to O(1).

    Returns:
        Catalog entries in deterministic order.
    """
    entries: list[CatalogEntry] = []
    terminal = machine.terminal_state_ids

    # Structural.
    for state in machine.states:
        if state.id != machine.initial:
            entries.append(_entry(machine, Mutation(MutationKind.REMOVE_STATE, state.id)))
    for t in machine.transitions:
        mutation = Mutation(MutationKind.REMOVE_TRANSITION, t.id)
        expected = default_signature(machine, mutation)
        if expected is not None:
            entries.append(CatalogEntry(mutation, expected))
    for state in machine.states:
        if state.id not in terminal and machine.transitions_from(state.id):
            entries.append(_entry(machine, Mutation(MutationKind.MARK_TERMINAL, state.id)))
    entries.append(_entry(machine, Mutation(MutationKind.DUPLICATE_STATE, machine.initial)))
    entries.append(_entry(machine, Mutation(MutationKind.INVALID_INITIAL, machine.initial)))
    if machine.transitions:
        first = machine.transitions[0]
        for kind in (
            MutationKind.DUPLICATE_TRANSITION,
            MutationKind.DANGLING_TARGET,
            MutationKind.INJECT_NONDETERMINISM,
        ):
            entries.append(_entry(machine, Mutation(kind, first.id)))

    # Runtime, restricted to what the baseline exercised.
    for state in machine.states:
        if state.id in coverage.visited_states and any(
            inv.is_blocking for inv in state.invariants
        ):
            entries.append(
                _entry(machine, Mutation(MutationKind.NEGATE_INVARIANT, state.id))
            )
    for t in machine.transitions:
        if t.id in coverage.taken_transitions:
            entries.append(_entry(machine, Mutation(MutationKind.TIGHTEN_BUDGET, t.id)))
    for transition_id, report in coverage.complexity.items():
        t = machine.get_transition(transition_id)
        if t is None or t.budget.complexity in (None, ComplexityClass.CONSTANT):
            continue
        if analyzer is not None and not analyzer.analyze(
            report.samples, ComplexityClass.CONSTANT
        ).mismatch:
            continue
        entries.append(
            _entry(machine, Mutation(MutationKind.DEGRADE_COMPLEXITY, transition_id))
        )
    for edge in machine.forbidden:
        if edge.source in coverage.visited_states and edge.source not in terminal:
            entries.append(
                _entry(
                    machine,
                    Mutation(
                        MutationKind.FORCE_FORBIDDEN_EDGE,
                        edge.source,
                        edge.target,
                        coverage.exit_events.get(edge.source),
                    ),
                )
            )
    return tuple(entries)
