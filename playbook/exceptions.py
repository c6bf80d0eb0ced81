"""Exception hierarchy for the playbook verification engine.

Specification defects and runtime violations are *values*
(``playbook.validation.validator.Defect``, ``playbook.engine.checker.Violation``)
so that the falsification harness can match on their kind.  The exceptions
below are reserved for contract errors: malformed input, attempting to run a
machine that did not validate, and internal engine defects.

All exceptions inherit from ``PlaybookError`` to enable blanket
``except PlaybookError`` handling at the outer surface.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence


class PlaybookError(Exception):
    """Base exception for all playbook engine failures."""

    __slots__ = ()


class ExpressionSyntaxError(PlaybookError):
    """Raised when an invariant or guard expression cannot be parsed.

    Attributes
    ----------
    source : str
        The expression text that failed to parse.
    position : int
        Zero-based character offset at which parsing stopped.
    """

    __slots__ = ("position", "source")

    def __init__(self, source: str, position: int, detail: str) -> None:
        super().__init__(
            f"Invalid expression {source!r} at offset {position}: {detail}"
        )
        self.source = source
        self.position = position


class DocumentError(PlaybookError):
    """Raised when a machine document fails schema validation."""

    __slots__ = ("detail",)

    def __init__(self, detail: str) -> None:
        super().__init__(f"Machine document is invalid: {detail}")
        self.detail = detail


class SettingsError(PlaybookError):
    """Raised when engine settings cannot be loaded or validated."""

    __slots__ = ("detail",)

    def __init__(self, detail: str) -> None:
        super().__init__(f"Engine settings are invalid: {detail}")
        self.detail = detail


class UnvalidatedMachineError(PlaybookError):
    """Raised when the executor is handed a machine with structural defects.

    The static validator gates execution: a machine that fails validation
    is never run.

    Attributes
    ----------
    machine_id : str
        Identifier of the rejected machine.
    defects : tuple
        The defects reported by the validator.
    """

    __slots__ = ("defects", "machine_id")

    def __init__(self, machine_id: str, defects: Sequence[Any]) -> None:
        n = len(defects)
        super().__init__(
            f"Machine {machine_id!r} has {n} structural "
            f"defect{'s' if n != 1 else ''} and cannot be executed"
        )
        self.machine_id = machine_id
        self.defects = tuple(defects)


class MutationError(PlaybookError):
    """Raised when a mutation descriptor cannot be applied to a machine."""

    __slots__ = ("mutation_kind", "target")

    def __init__(self, mutation_kind: str, target: str, detail: str) -> None:
        super().__init__(
            f"Mutation {mutation_kind!r} cannot target {target!r}: {detail}"
        )
        self.mutation_kind = mutation_kind
        self.target = target


# ── Internal engine defects ──────────────────────────────────────


class EngineDefectError(PlaybookError):
    """Raised when the engine itself behaves inconsistently.

    These indicate a mismatch between the static validator and the
    executor, not a mistake by the machine's author.

    Attributes
    ----------
    run : Any
        The partial ``Run`` recorded up to the failure point, if any.
    """

    __slots__ = ("run",)

    def __init__(self, message: str, *, run: Any = None) -> None:
        super().__init__(message)
        self.run = run


class AmbiguousTransitionError(EngineDefectError):
    """Raised when more than one transition is eligible from a state.

    Attributes
    ----------
    state_id : str
        The state the executor was in.
    candidates : tuple[str, ...]
        Identifiers of every eligible transition.
    """

    __slots__ = ("candidates", "state_id")

    def __init__(
        self,
        state_id: str,
        candidates: Sequence[str],
        *,
        run: Any = None,
    ) -> None:
        super().__init__(
            f"Ambiguous transition from state {state_id!r}: "
            f"{sorted(candidates)} are all eligible",
            run=run,
        )
        self.state_id = state_id
        self.candidates = tuple(candidates)
