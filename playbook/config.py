"""Engine settings.

``EngineSettings`` is a frozen pydantic model; every engine component takes
one as an optional argument and falls back to ``DEFAULT_SETTINGS``.
Settings can be loaded from a YAML file with ``load_settings``.
"""

from __future__ import annotations

import os
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from playbook.exceptions import SettingsError

__all__ = [
    "DEFAULT_SETTINGS",
    "EngineSettings",
    "PollFailurePolicy",
    "load_settings",
]


class PollFailurePolicy(StrEnum):
    """What a ``wait`` transition does when the target raises during a poll."""

    FAIL_FAST = "fail_fast"
    """End the run with a driver-error violation."""

    RETRY = "retry"
    """Keep polling until the wait timeout; report a timeout with the last error."""


class EngineSettings(BaseModel):
    """Tunable parameters of the verification engine."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    complexity_tolerance: float = Field(
        default=0.2,
        ge=0.0,
        description="Relative slack allowed between the declared and best-fit model",
    )
    min_complexity_samples: int = Field(
        default=3,
        ge=2,
        description="Fewer samples than this never produce a mismatch",
    )
    samples_per_size: int = Field(
        default=1,
        ge=1,
        description="Invocations per input size; the median duration is kept",
    )
    default_poll_interval: float = Field(default=0.05, gt=0.0)
    default_wait_timeout: float = Field(default=30.0, gt=0.0)
    default_trigger_timeout: float | None = Field(default=None, gt=0.0)
    poll_failure_policy: PollFailurePolicy = PollFailurePolicy.FAIL_FAST
    run_timeout: float | None = Field(
        default=None,
        gt=0.0,
        description="Wall-clock limit for a whole run",
    )
    max_workers: int | None = Field(
        default=None,
        ge=1,
        description="Concurrent falsification entries; None means os.cpu_count()",
    )
    entry_timeout: float = Field(
        default=60.0,
        gt=0.0,
        description="Wall-clock limit for one falsification entry",
    )
    track_memory: bool = Field(
        default=False,
        description="Measure memory deltas with tracemalloc when the driver reports none",
    )

    @property
    def worker_count(self) -> int:
        return self.max_workers or os.cpu_count() or 1


DEFAULT_SETTINGS = EngineSettings()


def load_settings(source: Path | str | dict[str, Any] | None = None) -> EngineSettings:
    """Load settings from a YAML file path or an already-parsed mapping.

    Raises
    ------
    SettingsError
        If the file is missing, is not a mapping, or fails validation.
    """
    if source is None:
        return DEFAULT_SETTINGS
    if isinstance(source, dict):
        data: Any = source
    else:
        path = Path(source)
        if not path.exists():
            raise SettingsError(f"settings file not found: {path}")
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise SettingsError(f"{path}: {exc}") from exc
        if data is None:
            return DEFAULT_SETTINGS
    if not isinstance(data, dict):
        raise SettingsError(
            f"expected a mapping at top level, got {type(data).__name__}"
        )
    try:
        return EngineSettings.model_validate(data)
    except ValidationError as exc:
        raise SettingsError(str(exc)) from exc
