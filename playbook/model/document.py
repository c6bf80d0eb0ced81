"""Pydantic v2 schema for machine documents.

A machine document is an already-parsed typed tree (typically YAML) holding
one machine, an optional run lifecycle, an optional falsification catalog
and optional post-run assertions.  Durations are seconds and memory is
bytes; no unit parsing happens here.

    version: "1.0"
    machine:
      id: pipeline
      initial: idle
      states:
        - id: idle
        - id: done
          terminal: true
      transitions:
        - id: start
          from: idle            # a state, a list of states, or "*"
          to: done
          action: {call: start, args: {size: "${n}"}, expect: true}
          budget: {max_time: 0.5, complexity: "O(n)", sample_sizes: [10, 100]}
      forbidden:
        - {from: done, to: idle, reason: "no restarts"}
    lifecycle:
      setup: [{action: {call: reset}}]
      steps:
        - {name: run, transitions: [start], timeout: 5, capture: [{var: ok, from: "n > 0"}]}
      teardown: [{action: {call: close}, ignore_errors: true}]
    falsification:
      - mutation: {kind: tighten_budget, target: start}
    assertions:
      path: [idle, done]
      complexity: [{transition: start, expected: "O(n)"}]

``load_machine_document`` validates a mapping; ``load_machine_file`` reads
YAML from disk first.  Both raise ``DocumentError`` on any problem.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from playbook.engine.assertions import (
    ComplexityAssertion,
    OutputAssertion,
    PathAssertion,
    RunAssertions,
)
from playbook.engine.checker import ViolationKind
from playbook.exceptions import DocumentError, PlaybookError
from playbook.model.expressions import parse_expression
from playbook.model.lifecycle import Capture, Lifecycle, LifecycleAction, Step
from playbook.model.machine import (
    UNSET,
    WILDCARD,
    Action,
    ActivationMode,
    Budget,
    ComplexityClass,
    ForbiddenEdge,
    Invariant,
    InvariantSeverity,
    Machine,
    State,
    TransitionDecl,
)
from playbook.safety.mutations import (
    CatalogEntry,
    DetectionStage,
    ExpectedSignature,
    Mutation,
    MutationKind,
    default_signature,
)
from playbook.validation.validator import DefectKind

__all__ = [
    "LoadedDocument",
    "MachineDocument",
    "load_machine_document",
    "load_machine_file",
]


class _Schema(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


# ── States ───────────────────────────────────────────


class InvariantDoc(_Schema):
    """One invariant; a bare string is accepted as shorthand."""
    expression: str = Field(alias="condition", description="Boolean expression over run variables")
    description: str = Field(default="")
    severity: InvariantSeverity = Field(default=InvariantSeverity.ERROR)


class StateDoc(_Schema):
    id: str
    description: str = Field(default="")
    terminal: bool = Field(default=False, alias="final")
    invariant: str | None = Field(default=None, description="Single-invariant shorthand")
    invariants: list[str | InvariantDoc] = Field(default_factory=list)


# ── Transitions ──────────────────────────────────────


class ActionDoc(_Schema):
    call: str = Field(description="Entry point invoked or polled on the target")
    args: dict[str, Any] = Field(default_factory=dict)
    expect: Any = Field(default=None, description="Expected return or polled value")
    condition: str | None = Field(default=None, description="Wait condition; polled value is `result`")


class BudgetDoc(_Schema):
    max_time: float | None = Field(default=None, gt=0.0, description="Seconds")
    max_memory: int | None = Field(default=None, ge=0, description="Bytes")
    complexity: ComplexityClass | None = None
    sample_sizes: list[int] = Field(default_factory=list)

    @field_validator("complexity", mode="before")
    @classmethod
    def _parse_complexity(cls, value: Any) -> Any:
        if isinstance(value, str):
            return ComplexityClass.parse(value)
        return value

    @field_validator("sample_sizes")
    @classmethod
    def _positive_sizes(cls, value: list[int]) -> list[int]:
        if any(size < 1 for size in value):
            raise ValueError("sample sizes must be positive")
        return value


class TransitionDoc(_Schema):
    id: str
    source: str | list[str] = Field(alias="from")
    target: str = Field(alias="to")
    action: ActionDoc
    event: str = Field(default="")
    mode: ActivationMode = Field(default=ActivationMode.TRIGGER)
    guard: str | None = None
    budget: BudgetDoc = Field(default_factory=BudgetDoc)
    timeout: float | None = Field(default=None, gt=0.0)
    poll_interval: float | None = Field(default=None, gt=0.0)
    capture: str | None = None


class ForbiddenDoc(_Schema):
    source: str = Field(alias="from")
    target: str = Field(alias="to")
    reason: str = Field(default="")


class MachineDoc(_Schema):
    id: str
    initial: str
    description: str = Field(default="")
    states: list[StateDoc] = Field(min_length=1)
    transitions: list[TransitionDoc] = Field(min_length=1)
    forbidden: list[ForbiddenDoc] = Field(default_factory=list)


# ── Falsification catalog and assertions ─────────────


class MutationDoc(_Schema):
    kind: MutationKind
    target: str
    argument: str | None = None
    event: str | None = Field(default=None, description="Event the forced transition fires on")


class SignatureDoc(_Schema):
    stage: DetectionStage
    kind: str
    subject: str | None = None

    @model_validator(mode="after")
    def _kind_matches_stage(self) -> SignatureDoc:
        # static expectations name a defect, the others a runtime violation
        kinds = DefectKind if self.stage is DetectionStage.STATIC else ViolationKind
        if self.kind not in {k.value for k in kinds}:
            raise ValueError(
                f"{self.kind!r} is not a {self.stage.value} failure kind"
            )
        return self


class CatalogEntryDoc(_Schema):
    mutation: MutationDoc
    expect: SignatureDoc | None = Field(
        default=None, description="Omit to derive the signature from the machine"
    )


class OutputAssertionDoc(_Schema):
    var: str
    not_empty: bool = False
    matches: str | None = None
    less_than: float | None = None
    greater_than: float | None = None
    equals: Any = None


class ComplexityAssertionDoc(_Schema):
    transition: str
    expected: ComplexityClass
    tolerance: float = Field(default=0.2, ge=0.0)

    @field_validator("expected", mode="before")
    @classmethod
    def _parse_expected(cls, value: Any) -> Any:
        if isinstance(value, str):
            return ComplexityClass.parse(value)
        return value


class AssertionsDoc(_Schema):
    path: list[str] | None = None
    output: list[OutputAssertionDoc] = Field(default_factory=list)
    complexity: list[ComplexityAssertionDoc] = Field(default_factory=list)


# ── Lifecycle ────────────────────────────────────────


class LifecycleActionDoc(_Schema):
    action: ActionDoc
    description: str = Field(default="")
    ignore_errors: bool = Field(default=False)


class CaptureDoc(_Schema):
    var: str
    source: str = Field(alias="from", description="Expression over run variables")


class StepDoc(_Schema):
    name: str
    transitions: list[str] = Field(default_factory=list)
    timeout: float | None = Field(default=None, gt=0.0)
    capture: list[CaptureDoc] = Field(default_factory=list)


class LifecycleDoc(_Schema):
    setup: list[LifecycleActionDoc] = Field(default_factory=list)
    steps: list[StepDoc] = Field(default_factory=list)
    teardown: list[LifecycleActionDoc] = Field(default_factory=list)


class MachineDocument(_Schema):
    """Top-level document."""
    version: Literal["1.0"] = "1.0"
    machine: MachineDoc
    lifecycle: LifecycleDoc | None = None
    falsification: list[CatalogEntryDoc] | None = None
    assertions: AssertionsDoc | None = None


# ── Conversion ───────────────────────────────────────


@dataclass(frozen=True, slots=True)
class LoadedDocument:
    """Result of loading a document.

    ``catalog`` is ``None`` when the document declares none, in which case
    the harness generates one from the baseline run.
    """

    machine: Machine
    catalog: tuple[CatalogEntry, ...] | None
    assertions: RunAssertions
    lifecycle: Lifecycle = Lifecycle()


def _invariants(doc: StateDoc) -> tuple[Invariant, ...]:
    items: list[str | InvariantDoc] = list(doc.invariants)
    if doc.invariant is not None:
        items.insert(0, doc.invariant)
    result = []
    for item in items:
        if isinstance(item, str):
            result.append(Invariant(parse_expression(item)))
        else:
            result.append(
                Invariant(
                    parse_expression(item.expression),
                    description=item.description,
                    severity=item.severity,
                )
            )
    return tuple(result)


def _action(doc: ActionDoc) -> Action:
    return Action(
        entry_point=doc.call,
        args=doc.args,
        expected=doc.expect if "expect" in doc.model_fields_set else UNSET,
        condition=parse_expression(doc.condition) if doc.condition else None,
    )


def _transition(doc: TransitionDoc) -> TransitionDecl:
    sources = (doc.source,) if isinstance(doc.source, str) else tuple(doc.source)
    if WILDCARD in sources and len(sources) > 1:
        raise DocumentError(f"transition {doc.id!r}: wildcard source cannot be combined")
    return TransitionDecl(
        id=doc.id,
        sources=sources,
        target=doc.target,
        action=_action(doc.action),
        event=doc.event,
        mode=doc.mode,
        guard=parse_expression(doc.guard) if doc.guard else None,
        budget=Budget(
            max_duration=doc.budget.max_time,
            max_memory=doc.budget.max_memory,
            complexity=doc.budget.complexity,
            sample_sizes=tuple(doc.budget.sample_sizes),
        ),
        timeout=doc.timeout,
        poll_interval=doc.poll_interval,
        capture=doc.capture,
    )


def _catalog_entry(machine: Machine, doc: CatalogEntryDoc) -> CatalogEntry:
    mutation = Mutation(
        doc.mutation.kind, doc.mutation.target, doc.mutation.argument, doc.mutation.event
    )
    if doc.expect is None:
        expected = default_signature(machine, mutation)
        if expected is None:
            raise DocumentError(
                f"catalog entry {mutation.label} needs an explicit 'expect'"
            )
        return CatalogEntry(mutation, expected)
    return CatalogEntry(
        mutation,
        ExpectedSignature(doc.expect.stage, doc.expect.kind, doc.expect.subject),
    )


def _assertions(doc: AssertionsDoc | None) -> RunAssertions:
    if doc is None:
        return RunAssertions()
    return RunAssertions(
        path=PathAssertion(tuple(doc.path)) if doc.path is not None else None,
        outputs=tuple(
            OutputAssertion(
                variable=o.var,
                not_empty=o.not_empty,
                matches=o.matches,
                less_than=o.less_than,
                greater_than=o.greater_than,
                equals=o.equals if "equals" in o.model_fields_set else UNSET,
            )
            for o in doc.output
        ),
        complexity=tuple(
            ComplexityAssertion(c.transition, c.expected, c.tolerance)
            for c in doc.complexity
        ),
    )


def _lifecycle(doc: LifecycleDoc | None) -> Lifecycle:
    if doc is None:
        return Lifecycle()

    def actions(items: list[LifecycleActionDoc]) -> tuple[LifecycleAction, ...]:
        return tuple(
            LifecycleAction(_action(a.action), a.description, a.ignore_errors)
            for a in items
        )

    return Lifecycle(
        setup=actions(doc.setup),
        steps=tuple(
            Step(
                name=s.name,
                transitions=tuple(s.transitions),
                timeout=s.timeout,
                captures=tuple(
                    Capture(c.var, parse_expression(c.source)) for c in s.capture
                ),
            )
            for s in doc.steps
        ),
        teardown=actions(doc.teardown),
    )


def build_document(doc: MachineDocument) -> LoadedDocument:
    """Convert a validated document into engine values.

    Raises:
        DocumentError: If an expression fails to parse or a catalog entry
            cannot be given an expected signature.
    """
    m = doc.machine
    try:
        machine = Machine.build(
            id=m.id,
            initial=m.initial,
            states=[
                State(
                    id=s.id,
                    description=s.description,
                    invariants=_invariants(s),
                    terminal=s.terminal,
                )
                for s in m.states
            ],
            transitions=[_transition(t) for t in m.transitions],
            forbidden=[ForbiddenEdge(f.source, f.target, f.reason) for f in m.forbidden],
            description=m.description,
        )
        catalog = (
            tuple(_catalog_entry(machine, e) for e in doc.falsification)
            if doc.falsification is not None
            else None
        )
        lifecycle = _lifecycle(doc.lifecycle)
    except DocumentError:
        raise
    except PlaybookError as exc:
        raise DocumentError(str(exc)) from exc
    return LoadedDocument(machine, catalog, _assertions(doc.assertions), lifecycle)


def load_machine_document(data: Any) -> LoadedDocument:
    """Validate an already-parsed mapping and build the machine.

    The machine is *not* structurally validated here; run it through
    ``validate_machine`` (the executor does so itself).
    """
    if not isinstance(data, dict):
        raise DocumentError(f"expected a mapping at top level, got {type(data).__name__}")
    try:
        doc = MachineDocument.model_validate(data)
    except ValidationError as exc:
        raise DocumentError(str(exc)) from exc
    return build_document(doc)


def load_machine_file(path: Path | str) -> LoadedDocument:
    """Read a YAML machine document from *path*."""
    path = Path(path)
    if not path.exists():
        raise DocumentError(f"document not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise DocumentError(f"{path}: {exc}") from exc
    return load_machine_document(data)
