"""Specification model: states, transitions, budgets and forbidden edges.

Pure data, no I/O.  Every type is a frozen dataclass; a ``Machine`` is
constructed once and never mutated.  Validation and falsification steps
produce new ``Machine`` values via ``dataclasses.replace``.

A ``Machine`` deliberately does *not* check its own structure on
construction: mutated machines with dangling references or duplicate
identifiers must be representable so that the static validator can reject
them.  See ``playbook.validation.validator``.

Wildcard sources (``"*"``) are expanded once, at construction time, into one
concrete ``Transition`` per non-terminal state (``expand_transitions``), so
the validator and executor only ever see single-source transitions.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from playbook.model.expressions import Expression, render

__all__ = [
    "UNSET",
    "WILDCARD",
    "Action",
    "ActivationMode",
    "Budget",
    "ComplexityClass",
    "ForbiddenEdge",
    "Invariant",
    "InvariantSeverity",
    "Machine",
    "State",
    "Transition",
    "TransitionDecl",
    "expand_transitions",
]

#: Source marker meaning "any non-terminal state".
WILDCARD = "*"


class _Unset:
    """Sentinel type for "no expected value declared"."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ActivationMode(StrEnum):
    """How a transition is activated against the target."""

    TRIGGER = "trigger"
    """Invoke an entry point once and check its return value."""

    WAIT = "wait"
    """Poll an entry point at a fixed interval until a condition holds."""


class InvariantSeverity(StrEnum):
    """Severity of an invariant violation."""

    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ComplexityClass(StrEnum):
    """Asymptotic growth classes, ordered from cheapest to most expensive."""

    CONSTANT = "O(1)"
    LOGARITHMIC = "O(log n)"
    LINEAR = "O(n)"
    LINEARITHMIC = "O(n log n)"
    QUADRATIC = "O(n^2)"

    @property
    def order(self) -> int:
        return _COMPLEXITY_ORDER.index(self)

    @classmethod
    def parse(cls, text: str) -> ComplexityClass:
        """Parse a class label, accepting ``n²`` and whitespace variants."""
        normalized = " ".join(text.replace("²", "^2").split())
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(f"Unknown complexity class: {text!r}")


_COMPLEXITY_ORDER: tuple[ComplexityClass, ...] = (
    ComplexityClass.CONSTANT,
    ComplexityClass.LOGARITHMIC,
    ComplexityClass.LINEAR,
    ComplexityClass.LINEARITHMIC,
    ComplexityClass.QUADRATIC,
)


# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Invariant:
    """Boolean condition that must hold on entry to and exit from a state.

    Attributes
    ----------
    expression : Expression
        Condition over the run's captured variables.
    description : str
        Human-readable statement of the condition.
    severity : InvariantSeverity
        ``warning`` violations are recorded but do not fail the run.
    """

    expression: Expression
    description: str = ""
    severity: InvariantSeverity = InvariantSeverity.ERROR

    @property
    def source(self) -> str:
        return render(self.expression)

    @property
    def is_blocking(self) -> bool:
        return self.severity is not InvariantSeverity.WARNING


@dataclass(frozen=True, slots=True)
class State:
    """A declared state of the machine."""

    id: str
    description: str = ""
    invariants: tuple[Invariant, ...] = ()
    terminal: bool = False


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Budget:
    """Performance budget of one transition.

    Durations are in seconds and memory in bytes; literals have already
    been normalized by whoever produced the machine document.
    """

    max_duration: float | None = None
    max_memory: int | None = None
    complexity: ComplexityClass | None = None
    sample_sizes: tuple[int, ...] = ()


@dataclass(frozen=True, slots=True)
class Action:
    """Call made against the target when a transition fires.

    ``args`` values may reference run variables with ``${name}``.  For a
    ``trigger`` transition ``expected`` is compared with the return value;
    for a ``wait`` transition the poll succeeds when the polled value equals
    ``expected``, else when ``condition`` holds (with the polled value bound
    to ``result``), else when the polled value is truthy.
    """

    entry_point: str
    args: Mapping[str, Any] = field(default_factory=dict)
    expected: Any = UNSET
    condition: Expression | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", MappingProxyType(dict(self.args)))

    @property
    def has_expectation(self) -> bool:
        return self.expected is not UNSET


@dataclass(frozen=True, slots=True)
class Transition:
    """A concrete, single-source transition.

    Attributes
    ----------
    id : str
        Unique identifier.  Wildcard or multi-source declarations expand to
        ``"<declared id>@<source>"``.
    source, target : str
        State identifiers.
    action : Action
        Entry point invoked (``trigger``) or polled (``wait``).
    event : str
        Activation name; defaults to the action's entry point.
    mode : ActivationMode
        ``trigger`` or ``wait``.
    guard : Expression | None
        Eligibility condition over the run's variables.
    budget : Budget
        Time/memory/complexity budget.
    timeout : float | None
        Per-transition timeout in seconds (wait timeout for ``wait``).
    poll_interval : float | None
        Seconds between polls for ``wait`` transitions.
    capture : str | None
        Variable receiving the return value or final polled value.
    origin : str | None
        Declared identifier this transition was expanded from, if any.
    """

    id: str
    source: str
    target: str
    action: Action
    event: str = ""
    mode: ActivationMode = ActivationMode.TRIGGER
    guard: Expression | None = None
    budget: Budget = Budget()
    timeout: float | None = None
    poll_interval: float | None = None
    capture: str | None = None
    origin: str | None = None

    def __post_init__(self) -> None:
        if not self.event:
            object.__setattr__(self, "event", self.action.entry_point)

    @property
    def edge(self) -> tuple[str, str]:
        return (self.source, self.target)

    @property
    def signature(self) -> tuple[str, ActivationMode, str]:
        """Determinism key: (source, activation mode, event)."""
        return (self.source, self.mode, self.event)


@dataclass(frozen=True, slots=True)
class TransitionDecl:
    """A declared transition with one or more sources, or the wildcard."""

    id: str
    sources: tuple[str, ...]
    target: str
    action: Action
    event: str = ""
    mode: ActivationMode = ActivationMode.TRIGGER
    guard: Expression | None = None
    budget: Budget = Budget()
    timeout: float | None = None
    poll_interval: float | None = None
    capture: str | None = None

    @property
    def is_wildcard(self) -> bool:
        return WILDCARD in self.sources


def expand_transitions(
    declarations: Iterable[Transition | TransitionDecl],
    states: Iterable[State],
) -> tuple[Transition, ...]:
    """Materialize declared transitions into concrete single-source ones.

    A wildcard source expands to every non-terminal state, in declaration
    order.  Concrete ``Transition`` values pass through unchanged.
    """
    non_terminal = [s.id for s in states if not s.terminal]
    expanded: list[Transition] = []
    for decl in declarations:
        if isinstance(decl, Transition):
            expanded.append(decl)
            continue
        sources = non_terminal if decl.is_wildcard else list(decl.sources)
        single = len(sources) == 1 and not decl.is_wildcard
        for source in sources:
            expanded.append(
                Transition(
                    id=decl.id if single else f"{decl.id}@{source}",
                    source=source,
                    target=decl.target,
                    action=decl.action,
                    event=decl.event,
                    mode=decl.mode,
                    guard=decl.guard,
                    budget=decl.budget,
                    timeout=decl.timeout,
                    poll_interval=decl.poll_interval,
                    capture=decl.capture,
                    origin=None if single else decl.id,
                )
            )
    return tuple(expanded)


# ---------------------------------------------------------------------------
# Forbidden edges and the machine
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ForbiddenEdge:
    """A (source, target) pair that must never be taken."""

    source: str
    target: str
    reason: str = ""

    @property
    def edge(self) -> tuple[str, str]:
        return (self.source, self.target)


@dataclass(frozen=True, slots=True)
class Machine:
    """The formally specified state/transition graph under verification."""

    id: str
    initial: str
    states: tuple[State, ...]
    transitions: tuple[Transition, ...]
    forbidden: tuple[ForbiddenEdge, ...] = ()
    description: str = ""

    @classmethod
    def build(
        cls,
        id: str,  # noqa: A002
        initial: str,
        states: Iterable[State],
        transitions: Iterable[Transition | TransitionDecl],
        forbidden: Iterable[ForbiddenEdge] = (),
        description: str = "",
    ) -> Machine:
        """Construct a machine, expanding wildcard and multi-source transitions."""
        state_tuple = tuple(states)
        return cls(
            id=id,
            initial=initial,
            states=state_tuple,
            transitions=expand_transitions(transitions, state_tuple),
            forbidden=tuple(forbidden),
            description=description,
        )

    @property
    def state_ids(self) -> tuple[str, ...]:
        return tuple(s.id for s in self.states)

    @property
    def terminal_state_ids(self) -> frozenset[str]:
        return frozenset(s.id for s in self.states if s.terminal)

    def get_state(self, state_id: str) -> State | None:
        """Return the first state declared with *state_id*, if any."""
        for state in self.states:
            if state.id == state_id:
                return state
        return None

    def get_transition(self, transition_id: str) -> Transition | None:
        for transition in self.transitions:
            if transition.id == transition_id:
                return transition
        return None

    def transitions_from(self, state_id: str) -> tuple[Transition, ...]:
        return tuple(t for t in self.transitions if t.source == state_id)

    def forbidden_edge(self, source: str, target: str) -> ForbiddenEdge | None:
        """Return the forbidden edge matching ``source -> target``, if any."""
        for edge in self.forbidden:
            if edge.source == source and edge.target == target:
                return edge
        return None

    def replace(self, **changes: Any) -> Machine:
        """Return a copy of this machine with *changes* applied."""
        return dataclasses.replace(self, **changes)
