"""Falsification: mutation catalog and harness."""
from __future__ import annotations

from playbook.safety.falsification import (
    EntryOutcome,
    EntryResult,
    FalsificationHarness,
    FalsificationReport,
    StructuralProperties,
    check_structural_properties,
)
from playbook.safety.mutations import (
    CatalogEntry,
    DetectionStage,
    ExpectedSignature,
    Mutation,
    MutationKind,
    apply_mutation,
    default_signature,
    generate_catalog,
)

__all__ = [
    "CatalogEntry",
    "DetectionStage",
    "EntryOutcome",
    "EntryResult",
    "ExpectedSignature",
    "FalsificationHarness",
    "FalsificationReport",
    "Mutation",
    "MutationKind",
    "StructuralProperties",
    "apply_mutation",
    "check_structural_properties",
    "default_signature",
    "generate_catalog",
]
