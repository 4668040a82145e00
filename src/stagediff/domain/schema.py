"""Declarative mapping from raw payload shapes to canonical fields."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, tzinfo

from stagediff.domain.types import FieldType


@dataclass(slots=True, frozen=True)
class FieldSpec:
    """One canonical field and where it lives in the raw payload.

    ``source`` is a dotted path into nested mappings (``"meter.mpan"``) and
    defaults to the canonical name.
    """

    name: str
    type: FieldType = FieldType.STRING
    source: str | None = None

    @property
    def source_path(self) -> tuple[str, ...]:
        return tuple((self.source or self.name).split("."))


@dataclass(slots=True, frozen=True)
class StageSchema:
    fields: tuple[FieldSpec, ...]
    key_fields: tuple[str, ...]
    timezone: tzinfo = UTC
    date_formats: tuple[str, ...] = field(default_factory=tuple)
    window_field: str | None = None

    def __post_init__(self) -> None:
        names = [spec.name for spec in self.fields]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate field names in schema: {', '.join(duplicates)}")
        if not self.key_fields:
            raise ValueError("Schema must declare at least one key field")
        referenced = (*self.key_fields, *((self.window_field,) if self.window_field else ()))
        unknown = [name for name in referenced if name not in names]
        if unknown:
            raise ValueError(f"Schema references undeclared fields: {', '.join(unknown)}")
        if self.window_field and self.field(self.window_field).type is not FieldType.DATE:
            raise ValueError(f"Window field {self.window_field!r} must be a date field")

    def field(self, name: str) -> FieldSpec:
        for spec in self.fields:
            if spec.name == name:
                return spec
        raise KeyError(name)

    @property
    def key_specs(self) -> tuple[FieldSpec, ...]:
        return tuple(self.field(name) for name in self.key_fields)

    @property
    def value_specs(self) -> tuple[FieldSpec, ...]:
        return tuple(spec for spec in self.fields if spec.name not in self.key_fields)

    @property
    def value_field_names(self) -> frozenset[str]:
        return frozenset(spec.name for spec in self.value_specs)
