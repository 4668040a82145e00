"""Core record and snapshot types shared across the reconciliation core."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

type StageId = str
type RecordKey = tuple[str, ...]
type FieldValue = str | Decimal | datetime | None


class FetchStatus(StrEnum):
    """How completely a stage snapshot covers its fetch window."""

    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"


class RunState(StrEnum):
    """Lifecycle of one validation run; ``reported`` and ``failed`` are terminal."""

    PENDING = "pending"
    FETCHING = "fetching"
    RECONCILING = "reconciling"
    REPORTED = "reported"
    FAILED = "failed"


class FieldType(StrEnum):
    STRING = "string"
    NUMERIC = "numeric"
    DATE = "date"


class WarningKind(StrEnum):
    MISSING_KEY_FIELD = "missing_key_field"
    INVALID_FIELD = "invalid_field"
    DUPLICATE_KEY = "duplicate_key"


@dataclass(slots=True, frozen=True)
class NormalizationWarning:
    """A raw record that was dropped while building a snapshot."""

    kind: WarningKind
    message: str
    key: RecordKey | None = None
    field_name: str | None = None


@dataclass(slots=True, frozen=True)
class FetchWindow:
    """Resolved UTC bounds a snapshot was fetched for; ``None`` means unbounded."""

    start: datetime | None = None
    end: datetime | None = None

    def contains(self, value: datetime) -> bool:
        if self.start is not None and value < self.start:
            return False
        return not (self.end is not None and value > self.end)


@dataclass(slots=True, frozen=True)
class CanonicalRecord:
    key: RecordKey
    fields: Mapping[str, FieldValue]
    stage: StageId
    observed_at: datetime


@dataclass(slots=True, frozen=True)
class StageSnapshot:
    """Canonical records fetched from one stage within one fetch window."""

    stage: StageId
    records: Mapping[RecordKey, CanonicalRecord]
    fetch_status: FetchStatus
    fetch_window: FetchWindow = field(default_factory=FetchWindow)
    field_names: frozenset[str] = frozenset()
    warnings: tuple[NormalizationWarning, ...] = ()
    pages_fetched: int = 0
    error: str | None = None

    def __post_init__(self) -> None:
        if self.fetch_status is FetchStatus.FAILED and self.records:
            raise ValueError(f"Failed snapshot for stage {self.stage!r} must not carry records")

    @property
    def is_degraded(self) -> bool:
        return self.fetch_status is not FetchStatus.COMPLETE

    @property
    def has_usable_data(self) -> bool:
        """A complete fetch counts even when empty; a partial one needs records."""
        return self.fetch_status is FetchStatus.COMPLETE or bool(self.records)

    def sorted_keys(self) -> list[RecordKey]:
        return sorted(self.records)


__all__ = [
    "CanonicalRecord",
    "FetchStatus",
    "FetchWindow",
    "FieldType",
    "FieldValue",
    "NormalizationWarning",
    "RecordKey",
    "RunState",
    "StageId",
    "StageSnapshot",
    "WarningKind",
]
