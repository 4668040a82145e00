"""Aggregation of reconciliation outcomes into a bounded, deterministic report."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from stagediff.domain.normalization import key_component
from stagediff.domain.reconciliation import DiffResult, PairFailure
from stagediff.domain.types import FetchStatus, RunState

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from stagediff.domain.reconciliation import MismatchEntry, PairOutcome
    from stagediff.domain.types import FieldValue, StageId, StageSnapshot

DEFAULT_MAX_SAMPLES = 10


class Verdict(StrEnum):
    PASS = "pass"
    DEGRADED = "degraded"
    FAIL = "fail"


@dataclass(slots=True, frozen=True)
class Thresholds:
    """Highest acceptable discrepancy rates per stage pair, each in ``[0, 1]``."""

    max_missing_rate: float = 0.0
    max_extra_rate: float = 0.0
    max_mismatch_rate: float = 0.0

    def __post_init__(self) -> None:
        for name in ("max_missing_rate", "max_extra_rate", "max_mismatch_rate"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1, got {value}")


class ReportModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class StageSummary(ReportModel):
    stage_id: str
    fetch_status: FetchStatus
    record_count: int
    warning_count: int
    pages_fetched: int
    error: str | None = None


class FieldDiffSample(ReportModel):
    name: str
    reference_value: str | None
    target_value: str | None


class MismatchSample(ReportModel):
    key: list[str]
    fields: list[FieldDiffSample]


class StagePairSummary(ReportModel):
    reference: str
    target: str
    reference_status: FetchStatus | None = None
    target_status: FetchStatus | None = None
    missing_count: int = 0
    extra_count: int = 0
    mismatch_count: int = 0
    matched_count: int = 0
    missing_rate: float = 0.0
    extra_rate: float = 0.0
    mismatch_rate: float = 0.0
    within_thresholds: bool = False
    error: str | None = None
    missing_sample: list[list[str]] = []
    extra_sample: list[list[str]] = []
    mismatch_sample: list[MismatchSample] = []


class Report(ReportModel):
    run_id: str
    generated_at: datetime
    run_state: RunState
    stages: list[StageSummary]
    stage_pairs: list[StagePairSummary]
    verdict: Verdict

    def to_json(self, *, indent: int | None = 2) -> str:
        return self.model_dump_json(by_alias=True, indent=indent)


def build_report(
    run_id: str,
    snapshots: Mapping[StageId, StageSnapshot],
    results: Sequence[PairOutcome],
    thresholds: Thresholds,
    *,
    max_samples: int = DEFAULT_MAX_SAMPLES,
    generated_at: datetime | None = None,
    run_state: RunState = RunState.REPORTED,
) -> Report:
    """Summarise ``results`` into a report; pure given its inputs."""

    if max_samples < 0:
        raise ValueError("max_samples must be non-negative")

    stages = [_stage_summary(snapshot) for snapshot in snapshots.values()]
    pairs = [_pair_summary(result, thresholds, max_samples) for result in results]
    return Report(
        run_id=run_id,
        generated_at=generated_at or datetime.now(UTC),
        run_state=run_state,
        stages=stages,
        stage_pairs=pairs,
        verdict=compute_verdict(snapshots, results, pairs),
    )


def compute_verdict(
    snapshots: Mapping[StageId, StageSnapshot],
    results: Sequence[PairOutcome],
    pairs: Sequence[StagePairSummary],
) -> Verdict:
    if snapshots and not any(snapshot.has_usable_data for snapshot in snapshots.values()):
        return Verdict.FAIL
    if not all(pair.within_thresholds for pair in pairs):
        return Verdict.FAIL
    degraded_stages = any(snapshot.is_degraded for snapshot in snapshots.values())
    degraded_pairs = any(
        status is not FetchStatus.COMPLETE
        for result in results
        if isinstance(result, DiffResult)
        for status in (result.reference_status, result.target_status)
    )
    return Verdict.DEGRADED if degraded_stages or degraded_pairs else Verdict.PASS


def _stage_summary(snapshot: StageSnapshot) -> StageSummary:
    return StageSummary(
        stage_id=snapshot.stage,
        fetch_status=snapshot.fetch_status,
        record_count=len(snapshot.records),
        warning_count=len(snapshot.warnings),
        pages_fetched=snapshot.pages_fetched,
        error=snapshot.error,
    )


def _pair_summary(
    result: PairOutcome,
    thresholds: Thresholds,
    max_samples: int,
) -> StagePairSummary:
    if isinstance(result, PairFailure):
        return StagePairSummary(
            reference=result.reference,
            target=result.target,
            within_thresholds=False,
            error=result.reason,
        )

    missing_rate = _rate(len(result.missing), result.reference_count)
    extra_rate = _rate(len(result.extra), result.target_count)
    mismatch_rate = _rate(len(result.mismatched), result.compared)
    within = (
        missing_rate <= thresholds.max_missing_rate
        and extra_rate <= thresholds.max_extra_rate
        and mismatch_rate <= thresholds.max_mismatch_rate
    )
    return StagePairSummary(
        reference=result.reference,
        target=result.target,
        reference_status=result.reference_status,
        target_status=result.target_status,
        missing_count=len(result.missing),
        extra_count=len(result.extra),
        mismatch_count=len(result.mismatched),
        matched_count=result.matched,
        missing_rate=round(missing_rate, 6),
        extra_rate=round(extra_rate, 6),
        mismatch_rate=round(mismatch_rate, 6),
        within_thresholds=within,
        missing_sample=[list(key) for key in result.missing[:max_samples]],
        extra_sample=[list(key) for key in result.extra[:max_samples]],
        mismatch_sample=[_mismatch_sample(entry) for entry in result.mismatched[:max_samples]],
    )


def _mismatch_sample(entry: MismatchEntry) -> MismatchSample:
    return MismatchSample(
        key=list(entry.key),
        fields=[
            FieldDiffSample(
                name=diff.name,
                reference_value=_render(diff.reference_value),
                target_value=_render(diff.target_value),
            )
            for diff in entry.fields
        ],
    )


def _render(value: FieldValue) -> str | None:
    return None if value is None else key_component(value)


def _rate(count: int, total: int) -> float:
    return count / total if total else 0.0
