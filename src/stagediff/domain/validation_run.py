"""Validation run lifecycle and the ``run_validation`` trigger interface."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING
from uuid import uuid4

from stagediff.config.errors import ConfigurationError
from stagediff.domain.orchestrator import DEFAULT_MAX_CONCURRENCY, FetchOrchestrator
from stagediff.domain.reconciliation import StagePair, reconcile_pairs
from stagediff.domain.report import DEFAULT_MAX_SAMPLES, Thresholds, build_report
from stagediff.domain.retry import RetryPolicy
from stagediff.domain.time_windows import utcnow
from stagediff.domain.types import RunState

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from stagediff.domain.orchestrator import StageFetch
    from stagediff.domain.reconciliation import ToleranceConfig
    from stagediff.domain.report import Report
    from stagediff.domain.schema import StageSchema
    from stagediff.domain.time_windows import Clock
    from stagediff.domain.types import StageId

log = getLogger(__name__)

_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.PENDING: frozenset({RunState.FETCHING}),
    RunState.FETCHING: frozenset({RunState.RECONCILING, RunState.FAILED}),
    RunState.RECONCILING: frozenset({RunState.REPORTED, RunState.FAILED}),
    RunState.REPORTED: frozenset(),
    RunState.FAILED: frozenset(),
}


class InvalidRunTransitionError(RuntimeError):
    """Raised when a run is moved to a state its current state cannot reach."""


@dataclass(slots=True)
class ValidationRun:
    run_id: str = field(default_factory=lambda: uuid4().hex)
    state: RunState = RunState.PENDING
    history: list[RunState] = field(default_factory=lambda: [RunState.PENDING])

    def advance(self, state: RunState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise InvalidRunTransitionError(
                f"Run {self.run_id} cannot move from {self.state} to {state}"
            )
        log.debug("Run %s: %s -> %s", self.run_id, self.state, state)
        self.state = state
        self.history.append(state)

    @property
    def finished(self) -> bool:
        return not _TRANSITIONS[self.state]


@dataclass(slots=True, frozen=True)
class PipelinePlan:
    """Stages to fetch, the ordered pairs to compare, and fetch limits.

    Without explicit ``pairs`` each stage is compared with the next one in
    declaration order, following the direction records travel.
    """

    stages: tuple[StageFetch, ...]
    pairs: tuple[StagePair, ...] = ()
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    run_deadline_seconds: float | None = None

    def __post_init__(self) -> None:
        if len({stage.stage for stage in self.stages}) != len(self.stages):
            raise ConfigurationError("Stage identifiers must be unique")
        if self.max_concurrency < 1:
            raise ConfigurationError("max_concurrency must be at least 1")
        check_pairs({stage.stage: stage.schema for stage in self.stages}, self.resolved_pairs())

    def resolved_pairs(self) -> tuple[StagePair, ...]:
        return self.pairs or consecutive_pairs([stage.stage for stage in self.stages])


def consecutive_pairs(stage_ids: Sequence[StageId]) -> tuple[StagePair, ...]:
    """Pair each stage with the next one, in the direction records travel."""

    return tuple(
        StagePair(reference, target)
        for reference, target in zip(stage_ids, stage_ids[1:], strict=False)
    )


def check_pairs(schemas: Mapping[StageId, StageSchema], pairs: Iterable[StagePair]) -> None:
    """Reject pairs naming unknown stages or stages without a shared key definition."""

    for pair in pairs:
        unknown = [stage for stage in (pair.reference, pair.target) if stage not in schemas]
        if unknown:
            raise ConfigurationError(f"Pair {pair} names undeclared stage(s): {unknown}")
        if pair.reference == pair.target:
            raise ConfigurationError(f"Pair {pair} compares a stage with itself")
        reference_key = schemas[pair.reference].key_fields
        target_key = schemas[pair.target].key_fields
        if reference_key != target_key:
            raise ConfigurationError(
                f"Pair {pair} has no shared key: {list(reference_key)} vs {list(target_key)}"
            )


async def run_validation_async(
    plan: PipelinePlan,
    tolerance: ToleranceConfig | None = None,
    thresholds: Thresholds | None = None,
    *,
    run_id: str | None = None,
    max_samples: int = DEFAULT_MAX_SAMPLES,
    clock: Clock = utcnow,
) -> Report:
    """Fetch every stage, reconcile every pair and report.

    Per-record, per-stage and per-pair failures are folded into the report.
    The run ends ``failed`` when no stage produced usable data.
    """

    run = ValidationRun(run_id=run_id or uuid4().hex)
    orchestrator = FetchOrchestrator(
        retry=plan.retry,
        max_concurrency=plan.max_concurrency,
        run_deadline_seconds=plan.run_deadline_seconds,
    )
    log.info("Starting validation run %s over %s stage(s)", run.run_id, len(plan.stages))

    run.advance(RunState.FETCHING)
    try:
        snapshots = await orchestrator.fetch_all(plan.stages)
    except BaseException:
        run.advance(RunState.FAILED)
        raise

    run.advance(RunState.RECONCILING)
    results = reconcile_pairs(snapshots, plan.resolved_pairs(), tolerance)

    usable = any(snapshot.has_usable_data for snapshot in snapshots.values())
    final_state = RunState.REPORTED if usable else RunState.FAILED
    report = build_report(
        run.run_id,
        snapshots,
        results,
        thresholds or Thresholds(),
        max_samples=max_samples,
        generated_at=clock(),
        run_state=final_state,
    )
    run.advance(final_state)
    log.info(
        "Validation run %s finished: state=%s, verdict=%s", run.run_id, run.state, report.verdict
    )
    return report


def run_validation(
    plan: PipelinePlan,
    tolerance: ToleranceConfig | None = None,
    thresholds: Thresholds | None = None,
    *,
    run_id: str | None = None,
    max_samples: int = DEFAULT_MAX_SAMPLES,
    clock: Clock = utcnow,
) -> Report:
    return asyncio.run(
        run_validation_async(
            plan,
            tolerance,
            thresholds,
            run_id=run_id,
            max_samples=max_samples,
            clock=clock,
        )
    )
