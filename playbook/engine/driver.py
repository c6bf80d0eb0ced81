"""Target-driver capability consumed by the transition executor.

The engine never talks to the system under test directly.  It is handed a
``TargetDriver`` exposing two coroutines:

- ``invoke(entry_point, args) -> InvocationResult`` fires an entry point once
  and reports its value, and optionally its own duration and memory delta;
- ``poll(entry_point, args) -> value`` performs a single-shot check that the
  executor calls repeatedly for ``wait`` transitions.

``ObjectDriver`` adapts any Python object whose attributes are the entry
points (plain functions, bound methods or coroutine functions).
Synchronous callables run in a worker thread so that a blocking target
never stalls other runs sharing the event loop.
"""

from __future__ import annotations

import asyncio
import inspect
import re
import time
import tracemalloc
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Protocol, runtime_checkable

from playbook.model.expressions import Variable, value_of

__all__ = [
    "InvocationResult",
    "ObjectDriver",
    "TargetDriver",
    "substitute_arguments",
]


@dataclass(frozen=True, slots=True)
class InvocationResult:
    """Outcome of one ``invoke`` call.

    Attributes
    ----------
    value : Any
        Return value of the entry point.
    duration : float | None
        Seconds the driver measured for the call; ``None`` lets the
        executor use its own wall-clock measurement.
    memory_delta : int | None
        Bytes allocated during the call, if the driver can tell.
    """

    value: Any = None
    duration: float | None = None
    memory_delta: int | None = None


@runtime_checkable
class TargetDriver(Protocol):
    """Protocol for the collaborator that drives the system under test."""

    async def invoke(
        self, entry_point: str, args: Mapping[str, Any]
    ) -> InvocationResult:
        """Fire *entry_point* once with keyword *args*.

        Raises
        ------
        Exception
            Any failure of the target; the executor records it as a
            driver error and ends the run.
        """
        ...

    async def poll(self, entry_point: str, args: Mapping[str, Any]) -> Any:
        """Check *entry_point* once and return its current value."""
        ...


# ---------------------------------------------------------------------------
# Argument substitution
# ---------------------------------------------------------------------------

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)\}")


def _lookup(name: str, env: Mapping[str, Any]) -> Any:
    return value_of(Variable(tuple(name.split("."))), env)


def _substitute(value: Any, env: Mapping[str, Any]) -> Any:
    if isinstance(value, str):
        whole = _PLACEHOLDER.fullmatch(value)
        if whole is not None:
            return _lookup(whole.group(1), env)
        return _PLACEHOLDER.sub(lambda m: str(_lookup(m.group(1), env)), value)
    if isinstance(value, Mapping):
        return {k: _substitute(v, env) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(_substitute(v, env) for v in value)
    return value


def substitute_arguments(
    args: Mapping[str, Any], env: Mapping[str, Any]
) -> dict[str, Any]:
    """Resolve ``${name}`` placeholders in *args* against *env*.

    An argument that is exactly ``"${name}"`` receives the raw variable
    value; placeholders embedded in longer strings are interpolated as text.
    Unknown variables resolve to ``None``.
    """
    return {key: _substitute(value, env) for key, value in args.items()}


# ---------------------------------------------------------------------------
# Object adapter
# ---------------------------------------------------------------------------


class ObjectDriver:
    """Drive any object whose attributes are callable entry points.

    Parameters
    ----------
    target : Any
        The object under test.  ``entry_point`` names are attribute names.
    track_memory : bool
        Report ``tracemalloc`` deltas when tracing is active.
    offload_sync : bool
        Run synchronous callables via ``asyncio.to_thread``.
    """

    __slots__ = ("_offload_sync", "_target", "_track_memory")

    def __init__(
        self,
        target: Any,
        *,
        track_memory: bool = False,
        offload_sync: bool = True,
    ) -> None:
        self._target = target
        self._track_memory = track_memory
        self._offload_sync = offload_sync

    def _resolve(self, entry_point: str) -> Callable[..., Any]:
        fn = getattr(self._target, entry_point, None)
        if fn is None or not callable(fn):
            raise LookupError(
                f"target {type(self._target).__name__} has no callable "
                f"entry point {entry_point!r}"
            )
        return fn

    async def _call(self, entry_point: str, args: Mapping[str, Any]) -> Any:
        fn = self._resolve(entry_point)
        if inspect.iscoroutinefunction(fn) or not self._offload_sync:
            result = fn(**args)
        else:
            result = await asyncio.to_thread(fn, **args)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _traced_bytes(self) -> int | None:
        if self._track_memory and tracemalloc.is_tracing():
            return tracemalloc.get_traced_memory()[0]
        return None

    async def invoke(
        self, entry_point: str, args: Mapping[str, Any]
    ) -> InvocationResult:
        before = self._traced_bytes()
        start = time.perf_counter()
        value = await self._call(entry_point, args)
        duration = time.perf_counter() - start
        after = self._traced_bytes()
        delta = after - before if before is not None and after is not None else None
        return InvocationResult(value=value, duration=duration, memory_delta=delta)

    async def poll(self, entry_point: str, args: Mapping[str, Any]) -> Any:
        return await self._call(entry_point, args)

    def __repr__(self) -> str:
        return f"ObjectDriver(target={type(self._target).__name__})"
