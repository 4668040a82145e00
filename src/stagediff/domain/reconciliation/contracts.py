"""Result types produced by stage-pair reconciliation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stagediff.domain.types import FetchStatus, FieldValue, RecordKey, StageId


class ReconciliationError(RuntimeError):
    """Raised when a snapshot violates an invariant the engine relies on."""


@dataclass(slots=True, frozen=True)
class StagePair:
    """Ordered pair of stages: records flow from ``reference`` to ``target``."""

    reference: StageId
    target: StageId

    def __str__(self) -> str:
        return f"{self.reference}->{self.target}"


@dataclass(slots=True, frozen=True)
class FieldDiff:
    name: str
    reference_value: FieldValue
    target_value: FieldValue


@dataclass(slots=True, frozen=True)
class MismatchEntry:
    """A key present in both stages with every field that differs beyond tolerance."""

    key: RecordKey
    fields: tuple[FieldDiff, ...]


@dataclass(slots=True, frozen=True, kw_only=True)
class DiffResult:
    """Keyed comparison of one reference snapshot against one target snapshot.

    ``missing``, ``mismatched`` and ``matched`` partition the reference keys;
    all collections ascend by key. Fetch statuses are copied from the input
    snapshots so degraded inputs stay visible downstream.
    """

    reference: StageId
    target: StageId
    reference_status: FetchStatus
    target_status: FetchStatus
    reference_count: int
    target_count: int
    missing: tuple[RecordKey, ...] = ()
    extra: tuple[RecordKey, ...] = ()
    mismatched: tuple[MismatchEntry, ...] = ()
    matched: int = 0

    @property
    def pair(self) -> StagePair:
        return StagePair(self.reference, self.target)

    @property
    def compared(self) -> int:
        return self.matched + len(self.mismatched)


@dataclass(slots=True, frozen=True)
class PairFailure:
    """A stage pair that could not be reconciled; other pairs are unaffected."""

    reference: StageId
    target: StageId
    reason: str

    @property
    def pair(self) -> StagePair:
        return StagePair(self.reference, self.target)


type PairOutcome = DiffResult | PairFailure
