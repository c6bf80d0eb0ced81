"""Specification model: expressions, states, transitions, machines and lifecycles.

``playbook.model.document`` (pydantic document loading) is imported
separately since it depends on the engine and safety packages.
"""

from __future__ import annotations

from .expressions import (
    FALSE,
    TRUE,
    Expression,
    evaluate,
    negate,
    parse_expression,
    referenced_variables,
    render,
)
from .lifecycle import Capture, Lifecycle, LifecycleAction, Step
from .machine import (
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
    Transition,
    TransitionDecl,
    expand_transitions,
)

__all__ = [
    "FALSE",
    "TRUE",
    "UNSET",
    "WILDCARD",
    "Action",
    "ActivationMode",
    "Budget",
    "Capture",
    "ComplexityClass",
    "Expression",
    "ForbiddenEdge",
    "Invariant",
    "InvariantSeverity",
    "Lifecycle",
    "LifecycleAction",
    "Machine",
    "State",
    "Step",
    "Transition",
    "TransitionDecl",
    "evaluate",
    "expand_transitions",
    "negate",
    "parse_expression",
    "referenced_variables",
    "render",
]
