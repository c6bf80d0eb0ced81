"""Engine package: drive a target through a machine and check the contract.

``playbook.engine.gate`` is imported separately since it depends on the
falsification harness in ``playbook.safety``.
"""

from __future__ import annotations

from .assertions import (
    AssertionCheckResult,
    ComplexityAssertion,
    OutputAssertion,
    PathAssertion,
    RunAssertions,
    check_run_assertions,
)
from .checker import (
    CheckPhase,
    Violation,
    ViolationKind,
    check_budget,
    check_invariants,
)
from .complexity import (
    ComplexityAnalyzer,
    ComplexityReport,
    ComplexitySample,
    collect_samples,
)
from .driver import (
    InvocationResult,
    ObjectDriver,
    TargetDriver,
    substitute_arguments,
)
from .executor import (
    Run,
    RunCoverage,
    RunStatus,
    StepResult,
    TransitionExecutor,
    TransitionRecord,
)

__all__ = [
    "AssertionCheckResult",
    "CheckPhase",
    "ComplexityAnalyzer",
    "ComplexityAssertion",
    "ComplexityReport",
    "ComplexitySample",
    "InvocationResult",
    "ObjectDriver",
    "OutputAssertion",
    "PathAssertion",
    "Run",
    "RunAssertions",
    "RunCoverage",
    "RunStatus",
    "StepResult",
    "TargetDriver",
    "TransitionExecutor",
    "TransitionRecord",
    "Violation",
    "ViolationKind",
    "check_budget",
    "check_invariants",
    "check_run_assertions",
    "collect_samples",
    "substitute_arguments",
]
