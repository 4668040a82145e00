"""Schema-driven normalization of raw payloads into canonical records."""

from __future__ import annotations

import unicodedata
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from logging import getLogger
from typing import TYPE_CHECKING

from stagediff.domain.types import (
    CanonicalRecord,
    FetchStatus,
    FetchWindow,
    FieldType,
    FieldValue,
    NormalizationWarning,
    RecordKey,
    StageId,
    StageSnapshot,
    WarningKind,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from stagediff.domain.schema import FieldSpec, StageSchema

log = getLogger(__name__)

_MISSING = object()


class NormalizationError(ValueError):
    """Raised when a raw record cannot be mapped onto its stage schema."""

    kind: WarningKind

    def __init__(self, message: str, *, field_name: str) -> None:
        super().__init__(message)
        self.field_name = field_name


class MissingKeyFieldError(NormalizationError):
    kind = WarningKind.MISSING_KEY_FIELD


class InvalidFieldError(NormalizationError):
    kind = WarningKind.INVALID_FIELD


def normalize(
    raw: Mapping[str, object],
    schema: StageSchema,
    *,
    stage: StageId,
    observed_at: datetime | None = None,
) -> CanonicalRecord:
    """Map ``raw`` onto ``schema`` or raise ``NormalizationError``."""

    values = extract_values(raw, schema)
    return build_record(values, schema, stage=stage, observed_at=observed_at)


def extract_values(raw: Mapping[str, object], schema: StageSchema) -> dict[str, FieldValue]:
    """Return typed values for every schema field, keys included."""

    values: dict[str, FieldValue] = {}
    for spec in schema.fields:
        value = _coerce(spec, _lookup(raw, spec.source_path), schema)
        if value is None and spec.name in schema.key_fields:
            raise MissingKeyFieldError(
                f"Key field {spec.name!r} is absent or empty",
                field_name=spec.name,
            )
        values[spec.name] = value
    return values


def build_record(
    values: Mapping[str, FieldValue],
    schema: StageSchema,
    *,
    stage: StageId,
    observed_at: datetime | None = None,
) -> CanonicalRecord:
    key = tuple(key_component(values[name]) for name in schema.key_fields)
    fields = {spec.name: values[spec.name] for spec in schema.value_specs}
    return CanonicalRecord(
        key=key,
        fields=fields,
        stage=stage,
        observed_at=observed_at or datetime.now(UTC),
    )


def key_component(value: FieldValue) -> str:
    """Render one key value as canonical text so keys sort and compare stably."""

    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return decimal_text(value)
    return "" if value is None else value


def decimal_text(value: Decimal) -> str:
    normalized = value.normalize()
    if normalized == 0:
        return "0"
    return format(normalized, "f")


def _lookup(raw: Mapping[str, object], path: tuple[str, ...]) -> object:
    current: object = raw
    for part in path:
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _coerce(spec: FieldSpec, value: object, schema: StageSchema) -> FieldValue:
    if value is _MISSING or value is None:
        return None
    if isinstance(value, str):
        value = unicodedata.normalize("NFC", value.strip())
        if not value:
            return None

    match spec.type:
        case FieldType.STRING:
            return str(value)
        case FieldType.NUMERIC:
            return _parse_numeric(spec, value)
        case FieldType.DATE:
            return _parse_date(spec, value, schema)


def _parse_numeric(spec: FieldSpec, value: object) -> Decimal:
    number: Decimal | None = None
    if not isinstance(value, bool):
        try:
            number = Decimal(value) if isinstance(value, (int, Decimal)) else Decimal(str(value))
        except InvalidOperation:
            number = None
    if number is None or not number.is_finite():
        message = f"Field {spec.name!r} is not numeric: {value!r}"
        raise InvalidFieldError(message, field_name=spec.name)
    return number


def _parse_date(spec: FieldSpec, value: object, schema: StageSchema) -> datetime:
    parsed: datetime | None = None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)  # noqa: DTZ001
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            parsed = datetime.fromtimestamp(value, tz=UTC)
        except (OverflowError, OSError, ValueError):
            parsed = None
    elif isinstance(value, str):
        parsed = _parse_date_text(value, schema.date_formats)

    if parsed is None:
        message = f"Field {spec.name!r} is not a date: {value!r}"
        raise InvalidFieldError(message, field_name=spec.name)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=schema.timezone)
    return parsed.astimezone(UTC)


def _parse_date_text(text: str, formats: tuple[str, ...]) -> datetime | None:
    normalized = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        return datetime.fromisoformat(normalized)
    except ValueError:
        pass
    for fmt in formats:
        try:
            return datetime.strptime(text, fmt)  # noqa: DTZ007
        except ValueError:
            continue
    return None


@dataclass(slots=True)
class SnapshotBuilder:
    """Accumulates normalized records for one stage in page order.

    Bad records are dropped and recorded as warnings; the first record seen for
    a key wins and later duplicates become ``duplicate_key`` warnings.
    """

    stage: StageId
    schema: StageSchema
    window: FetchWindow = field(default_factory=FetchWindow)
    records: dict[RecordKey, CanonicalRecord] = field(default_factory=dict)
    warnings: list[NormalizationWarning] = field(default_factory=list)
    out_of_window: int = 0

    def add_batch(self, raw_records: Iterable[Mapping[str, object]]) -> int:
        """Normalize ``raw_records`` and return how many were accepted."""

        accepted = 0
        observed_at = datetime.now(UTC)
        for raw in raw_records:
            if self._add(raw, observed_at):
                accepted += 1
        return accepted

    def _add(self, raw: Mapping[str, object], observed_at: datetime) -> bool:
        try:
            values = extract_values(raw, self.schema)
        except NormalizationError as exc:
            log.debug("Dropping record from %s: %s", self.stage, exc)
            self.warnings.append(
                NormalizationWarning(kind=exc.kind, message=str(exc), field_name=exc.field_name)
            )
            return False

        if self.schema.window_field is not None:
            moment = values[self.schema.window_field]
            if isinstance(moment, datetime) and not self.window.contains(moment):
                self.out_of_window += 1
                return False

        record = build_record(values, self.schema, stage=self.stage, observed_at=observed_at)
        if record.key in self.records:
            log.debug("Dropping duplicate key %s from %s", record.key, self.stage)
            self.warnings.append(
                NormalizationWarning(
                    kind=WarningKind.DUPLICATE_KEY,
                    message=f"Duplicate key {record.key!r}; keeping first occurrence",
                    key=record.key,
                )
            )
            return False
        self.records[record.key] = record
        return True

    def build(
        self,
        status: FetchStatus,
        *,
        pages_fetched: int = 0,
        error: str | None = None,
    ) -> StageSnapshot:
        records = {} if status is FetchStatus.FAILED else dict(self.records)
        return StageSnapshot(
            stage=self.stage,
            records=records,
            fetch_status=status,
            fetch_window=self.window,
            field_names=self.schema.value_field_names,
            warnings=tuple(self.warnings),
            pages_fetched=pages_fetched,
            error=error,
        )
