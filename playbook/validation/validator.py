"""Static validator: structural soundness of a Machine before execution.

Provides:
- DefectKind / Defect: structural defects that gate execution
- AdvisoryKind / Advisory: findings reported as warnings only
- ValidationReport: immutable result of one validation pass
- successor_map / reachable_from / states_reaching: pure graph helpers
- validate_machine(): primary entry point

Validation is pure and total: it terminates on any finite Machine, never
touches the target system, and returns identical reports for identical
machines.  A machine whose report has zero defects is the only kind the
executor is permitted to run.
"""
from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from playbook.model.machine import Machine, Transition

__all__ = [
    "Advisory",
    "AdvisoryKind",
    "Defect",
    "DefectKind",
    "ValidationReport",
    "reachable_from",
    "states_reaching",
    "successor_map",
    "validate_machine",
]


class DefectKind(StrEnum):
    """Structural defects; any one of these blocks execution."""

    UNREACHABLE_STATE = "UnreachableState"
    NON_DETERMINISTIC_TRANSITION = "NonDeterministicTransition"
    DANGLING_REFERENCE = "DanglingReference"
    OUTGOING_FROM_TERMINAL = "OutgoingFromTerminal"
    DUPLICATE_IDENTIFIER = "DuplicateIdentifier"
    INVALID_INITIAL_STATE = "InvalidInitialState"


class AdvisoryKind(StrEnum):
    """Non-blocking findings."""

    DEAD_END_STATE = "DeadEndState"
    NO_PATH_TO_TERMINAL = "NoPathToTerminal"
    UNGUARDED_SELF_LOOP = "UnguardedSelfLoop"


@dataclass(frozen=True, slots=True)
class Defect:
    """A structural defect.

    Attributes:
        kind: Defect classification.
        subject: Offending identifier (state, transition or missing state id).
        detail: Human-readable explanation.
    """

    kind: DefectKind
    subject: str
    detail: str


@dataclass(frozen=True, slots=True)
class Advisory:
    """A non-blocking structural finding."""

    kind: AdvisoryKind
    subject: str
    detail: str


@dataclass(frozen=True, slots=True)
class ValidationReport:
    """Result of validating one machine.

    Attributes:
        machine_id: Identifier of the validated machine.
        defects: Blocking defects, in deterministic order.
        advisories: Warnings that do not gate execution.
        reachable: States reachable from the initial state.
    """

    machine_id: str
    defects: tuple[Defect, ...] = ()
    advisories: tuple[Advisory, ...] = ()
    reachable: frozenset[str] = frozenset()

    @property
    def ok(self) -> bool:
        return not self.defects

    @property
    def defect_kinds(self) -> frozenset[DefectKind]:
        return frozenset(d.kind for d in self.defects)

    def has_defect(self, kind: DefectKind, subject: str | None = None) -> bool:
        """Check whether a defect of *kind* (and *subject*, if given) exists."""
        return any(
            d.kind is kind and (subject is None or d.subject == subject)
            for d in self.defects
        )


# ---------------------------------------------------------------------------
# Graph helpers
# ---------------------------------------------------------------------------


def successor_map(machine: Machine) -> dict[str, list[str]]:
    """Map each declared state to its successors, following declared edges only.

    Edges whose source or target is not a declared state are ignored.
    """
    declared = set(machine.state_ids)
    succ: dict[str, list[str]] = {sid: [] for sid in machine.state_ids}
    for t in machine.transitions:
        if t.source in declared and t.target in declared and t.target not in succ[t.source]:
            succ[t.source].append(t.target)
    return succ


def reachable_from(machine: Machine, start: str) -> frozenset[str]:
    """Breadth-first reachability from *start* over declared edges."""
    succ = successor_map(machine)
    if start not in succ:
        return frozenset()
    seen = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for nxt in succ[current]:
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return frozenset(seen)


def states_reaching(machine: Machine, targets: Iterable[str]) -> frozenset[str]:
    """Return every declared state with a path to any state in *targets*."""
    succ = successor_map(machine)
    pred: dict[str, list[str]] = {sid: [] for sid in succ}
    for src, nexts in succ.items():
        for nxt in nexts:
            pred[nxt].append(src)
    seen = {t for t in targets if t in pred}
    queue = deque(seen)
    while queue:
        current = queue.popleft()
        for prev in pred[current]:
            if prev not in seen:
                seen.add(prev)
                queue.append(prev)
    return frozenset(seen)


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


def _check_duplicates(machine: Machine) -> list[Defect]:
    defects: list[Defect] = []
    for label, ids in (
        ("state", [s.id for s in machine.states]),
        ("transition", [t.id for t in machine.transitions]),
    ):
        counts = Counter(ids)
        for ident in dict.fromkeys(ids):
            if counts[ident] > 1:
                defects.append(
                    Defect(
                        DefectKind.DUPLICATE_IDENTIFIER,
                        ident,
                        f"{label} id {ident!r} is declared {counts[ident]} times",
                    )
                )
    return defects


def _check_initial(machine: Machine) -> list[Defect]:
    if machine.initial in machine.state_ids:
        return []
    return [
        Defect(
            DefectKind.INVALID_INITIAL_STATE,
            machine.initial,
            f"initial state {machine.initial!r} is not a declared state",
        )
    ]


def _check_references(machine: Machine) -> list[Defect]:
    declared = set(machine.state_ids)
    defects: list[Defect] = []
    for t in machine.transitions:
        for role, ref in (("source", t.source), ("target", t.target)):
            if ref not in declared:
                defects.append(
                    Defect(
                        DefectKind.DANGLING_REFERENCE,
                        ref,
                        f"transition {t.id!r} {role} references undeclared state {ref!r}",
                    )
                )
    for edge in machine.forbidden:
        for role, ref in (("source", edge.source), ("target", edge.target)):
            if ref not in declared:
                defects.append(
                    Defect(
                        DefectKind.DANGLING_REFERENCE,
                        ref,
                        f"forbidden edge {edge.source!r} -> {edge.target!r} "
                        f"{role} references undeclared state {ref!r}",
                    )
                )
    return defects


def _check_terminal_outgoing(machine: Machine) -> list[Defect]:
    terminal = machine.terminal_state_ids
    return [
        Defect(
            DefectKind.OUTGOING_FROM_TERMINAL,
            t.source,
            f"terminal state {t.source!r} has outgoing transition {t.id!r}",
        )
        for t in machine.transitions
        if t.source in terminal
    ]


def _check_determinism(machine: Machine) -> list[Defect]:
    groups: dict[tuple[str, str, str], list[str]] = {}
    unguarded: dict[str, list[Transition]] = {}
    for t in machine.transitions:
        groups.setdefault(t.signature, []).append(t.id)
        if t.guard is None:
            unguarded.setdefault(t.source, []).append(t)
    defects = [
        Defect(
            DefectKind.NON_DETERMINISTIC_TRANSITION,
            source,
            f"state {source!r} has {len(ids)} {mode.value} transitions on "
            f"event {event!r}: {ids}",
        )
        for (source, mode, event), ids in groups.items()
        if len(ids) > 1
    ]
    # Without an event script every unguarded transition is eligible at once;
    # groups sharing one key were reported above.
    for source, ts in unguarded.items():
        if len({t.signature for t in ts}) > 1:
            defects.append(
                Defect(
                    DefectKind.NON_DETERMINISTIC_TRANSITION,
                    source,
                    f"state {source!r} has {len(ts)} unguarded transitions: "
                    f"{[t.id for t in ts]}",
                )
            )
    return defects


def _check_reachability(
    machine: Machine, reachable: frozenset[str]
) -> list[Defect]:
    return [
        Defect(
            DefectKind.UNREACHABLE_STATE,
            sid,
            f"state {sid!r} is not reachable from initial state {machine.initial!r}",
        )
        for sid in dict.fromkeys(machine.state_ids)
        if sid not in reachable
    ]


def _advisories(machine: Machine, reachable: frozenset[str]) -> list[Advisory]:
    advisories: list[Advisory] = []
    succ = successor_map(machine)
    terminal = machine.terminal_state_ids
    for sid in dict.fromkeys(machine.state_ids):
        if sid in reachable and sid not in terminal and not succ.get(sid):
            advisories.append(
                Advisory(
                    AdvisoryKind.DEAD_END_STATE,
                    sid,
                    f"non-terminal state {sid!r} has no outgoing transitions",
                )
            )
    if terminal & reachable:
        can_finish = states_reaching(machine, terminal)
        for sid in dict.fromkeys(machine.state_ids):
            if sid in reachable and sid not in can_finish:
                advisories.append(
                    Advisory(
                        AdvisoryKind.NO_PATH_TO_TERMINAL,
                        sid,
                        f"no terminal state is reachable from {sid!r}",
                    )
                )
    for t in machine.transitions:
        if t.source == t.target and t.guard is None:
            advisories.append(
                Advisory(
                    AdvisoryKind.UNGUARDED_SELF_LOOP,
                    t.id,
                    f"transition {t.id!r} loops on {t.source!r} without a guard",
                )
            )
    return advisories


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def validate_machine(machine: Machine) -> ValidationReport:
    """Validate the structure of *machine*.

    Reachability and advisories are only computed when the initial state
    resolves; otherwise every state would trivially be unreachable and the
    single root cause would be buried.

    Args:
        machine: Machine to validate.

    Returns:
        ValidationReport listing every defect and advisory.
    """
    defects: list[Defect] = []
    defects.extend(_check_duplicates(machine))
    initial_defects = _check_initial(machine)
    defects.extend(initial_defects)
    defects.extend(_check_references(machine))
    defects.extend(_check_terminal_outgoing(machine))
    defects.extend(_check_determinism(machine))

    reachable: frozenset[str] = frozenset()
    advisories: list[Advisory] = []
    if not initial_defects:
        reachable = reachable_from(machine, machine.initial)
        defects.extend(_check_reachability(machine, reachable))
        advisories = _advisories(machine, reachable)

    return ValidationReport(
        machine_id=machine.id,
        defects=tuple(defects),
        advisories=tuple(advisories),
        reachable=reachable,
    )
