"""Field comparison rules used when two stages hold the same key."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import TYPE_CHECKING

from stagediff.domain.normalization import key_component

if TYPE_CHECKING:
    from stagediff.domain.types import FieldValue


class CasePolicy(StrEnum):
    EXACT = "exact"
    CASE_INSENSITIVE = "case_insensitive"


@dataclass(slots=True, frozen=True)
class FieldTolerance:
    """Per-field overrides; ``None`` inherits the run-wide setting."""

    case_policy: CasePolicy | None = None
    abs_epsilon: Decimal | None = None
    rel_epsilon: Decimal | None = None
    date_tolerance: timedelta | None = None
    late_arrival: timedelta | None = None


@dataclass(slots=True, frozen=True)
class FieldRule:
    case_policy: CasePolicy
    abs_epsilon: Decimal
    rel_epsilon: Decimal
    date_tolerance: timedelta
    late_arrival: timedelta

    def equal(self, reference: FieldValue, target: FieldValue) -> bool:
        if reference is None or target is None:
            return reference is None and target is None
        if isinstance(reference, Decimal) and isinstance(target, Decimal):
            return self._numbers_equal(reference, target)
        if isinstance(reference, datetime) and isinstance(target, datetime):
            delta = target - reference
            return -self.date_tolerance <= delta <= self.date_tolerance + self.late_arrival
        return self._text(reference) == self._text(target)

    def _numbers_equal(self, reference: Decimal, target: Decimal) -> bool:
        difference = abs(target - reference)
        if difference <= self.abs_epsilon:
            return True
        return difference <= self.rel_epsilon * max(abs(reference), abs(target))

    def _text(self, value: FieldValue) -> str:
        text = key_component(value)
        return text.casefold() if self.case_policy is CasePolicy.CASE_INSENSITIVE else text


@dataclass(slots=True, frozen=True)
class ToleranceConfig:
    """Run-wide tolerance with optional per-field overrides.

    Dates match when ``target - reference`` lies within
    ``[-date_tolerance, date_tolerance + late_arrival]``; ``late_arrival`` is
    slack for downstream stages that record an event later than upstream.
    """

    case_policy: CasePolicy = CasePolicy.EXACT
    abs_epsilon: Decimal = Decimal(0)
    rel_epsilon: Decimal = Decimal(0)
    date_tolerance: timedelta = timedelta(0)
    late_arrival: timedelta = timedelta(0)
    ignore_fields: frozenset[str] = frozenset()
    fields: Mapping[str, FieldTolerance] = field(default_factory=dict[str, FieldTolerance])

    def __post_init__(self) -> None:
        if self.abs_epsilon < 0 or self.rel_epsilon < 0:
            raise ValueError("Numeric epsilons must be non-negative")
        if self.date_tolerance < timedelta(0) or self.late_arrival < timedelta(0):
            raise ValueError("Date tolerances must be non-negative")

    def rule_for(self, name: str) -> FieldRule:
        override = self.fields.get(name) or FieldTolerance()
        return FieldRule(
            case_policy=override.case_policy or self.case_policy,
            abs_epsilon=_pick(override.abs_epsilon, self.abs_epsilon),
            rel_epsilon=_pick(override.rel_epsilon, self.rel_epsilon),
            date_tolerance=_pick(override.date_tolerance, self.date_tolerance),
            late_arrival=_pick(override.late_arrival, self.late_arrival),
        )


def _pick[T](override: T | None, default: T) -> T:
    return default if override is None else override
