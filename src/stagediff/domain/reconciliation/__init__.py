"""Cross-stage reconciliation: keyed diffs under field tolerance rules."""

from __future__ import annotations

from .contracts import (
    DiffResult,
    FieldDiff,
    MismatchEntry,
    PairFailure,
    PairOutcome,
    ReconciliationError,
    StagePair,
)
from .engine import reconcile, reconcile_pairs
from .tolerance import CasePolicy, FieldRule, FieldTolerance, ToleranceConfig

__all__ = [
    "CasePolicy",
    "DiffResult",
    "FieldDiff",
    "FieldRule",
    "FieldTolerance",
    "MismatchEntry",
    "PairFailure",
    "PairOutcome",
    "ReconciliationError",
    "StagePair",
    "ToleranceConfig",
    "reconcile",
    "reconcile_pairs",
]
