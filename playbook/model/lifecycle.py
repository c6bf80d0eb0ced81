"""Run lifecycle: setup actions, named steps and teardown actions.

A ``Lifecycle`` wraps a run of a machine:

- ``setup`` actions are invoked on the target before the first state is
  entered; the first failing one ends the run before any transition;
- ``steps`` drive the machine through named groups of transitions, each
  group under its own timeout, and capture variables once it completes;
- ``teardown`` actions are invoked after the run however it ended.  A
  failing teardown action is skipped past when ``ignore_errors`` is set
  and stops the teardown otherwise.

Pure data, like ``playbook.model.machine``.
"""

from __future__ import annotations

from dataclasses import dataclass

from playbook.model.expressions import Expression, render
from playbook.model.machine import Action

__all__ = [
    "Capture",
    "Lifecycle",
    "LifecycleAction",
    "Step",
]


@dataclass(frozen=True, slots=True)
class LifecycleAction:
    """A setup or teardown call against the target.

    An ``expected`` value on the action is compared with the return value;
    a mismatch counts as a failure of the action.
    """

    action: Action
    description: str = ""
    ignore_errors: bool = False

    @property
    def entry_point(self) -> str:
        return self.action.entry_point


@dataclass(frozen=True, slots=True)
class Capture:
    """Bind ``variable`` to the value of ``expression`` after a step."""

    variable: str
    expression: Expression

    @property
    def source(self) -> str:
        return render(self.expression)


@dataclass(frozen=True, slots=True)
class Step:
    """A named group of transitions taken in order.

    Attributes
    ----------
    name : str
        Label used in step results and violations.
    transitions : tuple[str, ...]
        Transition identifiers; each must leave the state the run is in
        when its turn comes, with its guard holding.
    timeout : float | None
        Seconds allowed for the whole step.
    captures : tuple[Capture, ...]
        Evaluated in order once every transition of the step committed.
    """

    name: str
    transitions: tuple[str, ...] = ()
    timeout: float | None = None
    captures: tuple[Capture, ...] = ()


@dataclass(frozen=True, slots=True)
class Lifecycle:
    setup: tuple[LifecycleAction, ...] = ()
    steps: tuple[Step, ...] = ()
    teardown: tuple[LifecycleAction, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.setup or self.steps or self.teardown)

    def fixtures(self) -> Lifecycle:
        """The same setup and teardown, without steps."""
        return Lifecycle(setup=self.setup, teardown=self.teardown)
