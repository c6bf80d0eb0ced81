"""Static validation of machine structure."""
from __future__ import annotations

from playbook.validation.validator import (
    Advisory,
    AdvisoryKind,
    Defect,
    DefectKind,
    ValidationReport,
    validate_machine,
)

__all__ = [
    "Advisory",
    "AdvisoryKind",
    "Defect",
    "DefectKind",
    "ValidationReport",
    "validate_machine",
]
