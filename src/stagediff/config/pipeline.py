"""Pipeline definition files: stages, schemas, tolerance and thresholds."""

from __future__ import annotations

import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta, tzinfo
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, cast
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from stagediff.domain.orchestrator import DEFAULT_MAX_CONCURRENCY
from stagediff.domain.reconciliation import (
    CasePolicy,
    FieldTolerance,
    StagePair,
    ToleranceConfig,
)
from stagediff.domain.report import DEFAULT_MAX_SAMPLES, Thresholds
from stagediff.domain.retry import RetryPolicy
from stagediff.domain.schema import FieldSpec, StageSchema
from stagediff.domain.time_windows import TimeWindow
from stagediff.domain.types import FieldType

from .env import resolve_env_references
from .errors import ConfigurationError

if TYPE_CHECKING:
    from stagediff.domain.types import StageId


class PipelineDocumentModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class FieldDocument(PipelineDocumentModel):
    type: FieldType = FieldType.STRING
    source: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _expand_type_shorthand(cls, value: object) -> object:
        # ``units = "numeric"`` is shorthand for ``units = { type = "numeric" }``
        if isinstance(value, str):
            return {"type": value}
        return value


class SchemaDocument(PipelineDocumentModel):
    key: list[str] = Field(min_length=1)
    fields: dict[str, FieldDocument] = Field(min_length=1)
    timezone: str = "UTC"
    date_formats: list[str] = Field(default_factory=list)
    window_field: str | None = None


class StageDocument(PipelineDocumentModel):
    id: str = Field(min_length=1)
    kind: str
    deadline_seconds: float | None = Field(default=None, gt=0)
    options: dict[str, object] = Field(default_factory=dict)
    record_schema: SchemaDocument = Field(alias="schema")


class PairDocument(PipelineDocumentModel):
    reference: str
    target: str


class FieldToleranceDocument(PipelineDocumentModel):
    case_policy: CasePolicy | None = None
    abs_epsilon: Decimal | None = Field(default=None, ge=0)
    rel_epsilon: Decimal | None = Field(default=None, ge=0)
    date_tolerance_seconds: float | None = Field(default=None, ge=0)
    late_arrival_seconds: float | None = Field(default=None, ge=0)


class ToleranceDocument(PipelineDocumentModel):
    case_policy: CasePolicy = CasePolicy.EXACT
    abs_epsilon: Decimal = Field(default=Decimal(0), ge=0)
    rel_epsilon: Decimal = Field(default=Decimal(0), ge=0)
    date_tolerance_seconds: float = Field(default=0.0, ge=0)
    late_arrival_seconds: float = Field(default=0.0, ge=0)
    ignore_fields: list[str] = Field(default_factory=list)
    fields: dict[str, FieldToleranceDocument] = Field(default_factory=dict)


class ThresholdsDocument(PipelineDocumentModel):
    max_missing_rate: float = Field(default=0.0, ge=0, le=1)
    max_extra_rate: float = Field(default=0.0, ge=0, le=1)
    max_mismatch_rate: float = Field(default=0.0, ge=0, le=1)


class RetryDocument(PipelineDocumentModel):
    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=0.5, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay_seconds: float = Field(default=30.0, ge=0)
    jitter_seconds: float = Field(default=0.5, ge=0)
    page_timeout_seconds: float | None = Field(default=30.0, gt=0)


class RunDocument(PipelineDocumentModel):
    max_concurrency: int = Field(default=DEFAULT_MAX_CONCURRENCY, ge=1)
    run_deadline_seconds: float | None = Field(default=None, gt=0)
    max_samples: int = Field(default=DEFAULT_MAX_SAMPLES, ge=0)
    start: datetime | None = None
    end: datetime | None = None
    lookback_hours: float | None = Field(default=None, ge=0)

    @field_validator("start", "end")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class PipelineDocument(PipelineDocumentModel):
    run: RunDocument = Field(default_factory=RunDocument)
    retry: RetryDocument = Field(default_factory=RetryDocument)
    tolerance: ToleranceDocument = Field(default_factory=ToleranceDocument)
    thresholds: ThresholdsDocument = Field(default_factory=ThresholdsDocument)
    stages: list[StageDocument] = Field(min_length=1)
    pairs: list[PairDocument] = Field(default_factory=list)


@dataclass(frozen=True, slots=True)
class StageConfig:
    """One stage as declared in a pipeline file, with ``env:`` options resolved."""

    stage_id: StageId
    kind: str
    schema: StageSchema
    options: Mapping[str, object] = field(default_factory=dict[str, object])
    deadline_seconds: float | None = None


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    stages: tuple[StageConfig, ...]
    pairs: tuple[StagePair, ...] = ()
    tolerance: ToleranceConfig = field(default_factory=ToleranceConfig)
    thresholds: Thresholds = field(default_factory=Thresholds)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    window: TimeWindow = field(default_factory=TimeWindow)
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    run_deadline_seconds: float | None = None
    max_samples: int = DEFAULT_MAX_SAMPLES

    def stage(self, stage_id: StageId) -> StageConfig:
        for stage in self.stages:
            if stage.stage_id == stage_id:
                return stage
        raise KeyError(stage_id)


def load_pipeline_config(path: Path | str) -> PipelineConfig:
    """Read and validate a TOML pipeline file."""

    config_path = Path(path)
    try:
        with config_path.open("rb") as handle:
            document = tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Pipeline file not found: {config_path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid TOML in {config_path}: {exc}") from exc
    return parse_pipeline_config(document)


def parse_pipeline_config(data: Mapping[str, object]) -> PipelineConfig:
    """Validate an already parsed pipeline document."""

    try:
        document = PipelineDocument.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid pipeline configuration:\n{exc}") from exc

    try:
        stages = tuple(_stage_config(stage) for stage in document.stages)
        tolerance = _tolerance_config(document.tolerance)
        thresholds = Thresholds(**document.thresholds.model_dump())
        retry = RetryPolicy(
            max_attempts=document.retry.max_attempts,
            base_delay=document.retry.base_delay_seconds,
            multiplier=document.retry.multiplier,
            max_delay=document.retry.max_delay_seconds,
            jitter=document.retry.jitter_seconds,
            page_timeout=document.retry.page_timeout_seconds,
        )
        window = TimeWindow(
            start=document.run.start,
            end=document.run.end,
            lookback=(
                timedelta(hours=document.run.lookback_hours)
                if document.run.lookback_hours is not None
                else None
            ),
        )
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc

    stage_ids = [stage.stage_id for stage in stages]
    duplicates = sorted({stage_id for stage_id in stage_ids if stage_ids.count(stage_id) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate stage ids: {', '.join(duplicates)}")

    return PipelineConfig(
        stages=stages,
        pairs=tuple(StagePair(pair.reference, pair.target) for pair in document.pairs),
        tolerance=tolerance,
        thresholds=thresholds,
        retry=retry,
        window=window,
        max_concurrency=document.run.max_concurrency,
        run_deadline_seconds=document.run.run_deadline_seconds,
        max_samples=document.run.max_samples,
    )


def _stage_config(document: StageDocument) -> StageConfig:
    schema_document = document.record_schema
    schema = StageSchema(
        fields=tuple(
            FieldSpec(name=name, type=spec.type, source=spec.source)
            for name, spec in schema_document.fields.items()
        ),
        key_fields=tuple(schema_document.key),
        timezone=_timezone(schema_document.timezone),
        date_formats=tuple(schema_document.date_formats),
        window_field=schema_document.window_field,
    )
    return StageConfig(
        stage_id=document.id,
        kind=document.kind,
        schema=schema,
        options=resolve_env_references(document.options),
        deadline_seconds=document.deadline_seconds,
    )


def _tolerance_config(document: ToleranceDocument) -> ToleranceConfig:
    return ToleranceConfig(
        case_policy=document.case_policy,
        abs_epsilon=document.abs_epsilon,
        rel_epsilon=document.rel_epsilon,
        date_tolerance=timedelta(seconds=document.date_tolerance_seconds),
        late_arrival=timedelta(seconds=document.late_arrival_seconds),
        ignore_fields=frozenset(document.ignore_fields),
        fields={
            name: FieldTolerance(
                case_policy=override.case_policy,
                abs_epsilon=override.abs_epsilon,
                rel_epsilon=override.rel_epsilon,
                date_tolerance=_seconds(override.date_tolerance_seconds),
                late_arrival=_seconds(override.late_arrival_seconds),
            )
            for name, override in document.fields.items()
        },
    )


def _seconds(value: float | None) -> timedelta | None:
    return None if value is None else timedelta(seconds=value)


def _timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return UTC
    try:
        return cast(tzinfo, ZoneInfo(name))
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {name}") from exc
