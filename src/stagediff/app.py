"""Application orchestration entry points."""

from __future__ import annotations

from logging import getLogger
from typing import TYPE_CHECKING

from stagediff.adapters.registry import build_connector
from stagediff.config import ConfigurationError, load_pipeline_config
from stagediff.domain.orchestrator import StageFetch
from stagediff.domain.time_windows import utcnow
from stagediff.domain.validation_run import (
    PipelinePlan,
    check_pairs,
    consecutive_pairs,
    run_validation,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from stagediff.config import PipelineConfig, StageConfig
    from stagediff.domain.ports.fetching import SourceConnector
    from stagediff.domain.report import Report
    from stagediff.domain.time_windows import Clock, TimeWindow

type ConnectorFactory = Callable[[StageConfig], SourceConnector]

log = getLogger(__name__)


def build_plan(
    config: PipelineConfig,
    *,
    window: TimeWindow | None = None,
    run_deadline_seconds: float | None = None,
    connector_factory: ConnectorFactory = build_connector,
    clock: Clock = utcnow,
) -> PipelinePlan:
    """Resolve the fetch window and create one connector per stage.

    ``window`` and ``run_deadline_seconds`` override the pipeline file. Pairs
    are checked before any connector is created.
    """

    pairs = config.pairs or consecutive_pairs([stage.stage_id for stage in config.stages])
    check_pairs({stage.stage_id: stage.schema for stage in config.stages}, pairs)

    try:
        fetch_window = (window or config.window).resolve(clock=clock)
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc

    stages = tuple(
        StageFetch(
            stage=stage.stage_id,
            connector=connector_factory(stage),
            schema=stage.schema,
            window=fetch_window,
            deadline_seconds=stage.deadline_seconds,
        )
        for stage in config.stages
    )
    return PipelinePlan(
        stages=stages,
        pairs=pairs,
        retry=config.retry,
        max_concurrency=config.max_concurrency,
        run_deadline_seconds=(
            run_deadline_seconds
            if run_deadline_seconds is not None
            else config.run_deadline_seconds
        ),
    )


def validate_pipeline(
    config: PipelineConfig,
    *,
    window: TimeWindow | None = None,
    run_deadline_seconds: float | None = None,
    max_samples: int | None = None,
    run_id: str | None = None,
    connector_factory: ConnectorFactory = build_connector,
    clock: Clock = utcnow,
) -> Report:
    """Fetch every configured stage, reconcile the pairs and return the report."""

    plan = build_plan(
        config,
        window=window,
        run_deadline_seconds=run_deadline_seconds,
        connector_factory=connector_factory,
        clock=clock,
    )
    log.info(
        "Validating %s stage(s) across %s pair(s): %s",
        len(plan.stages),
        len(plan.resolved_pairs()),
        ", ".join(str(pair) for pair in plan.resolved_pairs()),
    )
    return run_validation(
        plan,
        config.tolerance,
        config.thresholds,
        run_id=run_id,
        max_samples=max_samples if max_samples is not None else config.max_samples,
        clock=clock,
    )


def validate_pipeline_file(
    path: Path | str,
    *,
    window: TimeWindow | None = None,
    run_deadline_seconds: float | None = None,
    max_samples: int | None = None,
    run_id: str | None = None,
) -> Report:
    config = load_pipeline_config(path)
    log.info("Loaded pipeline %s with %s stage(s)", path, len(config.stages))
    return validate_pipeline(
        config,
        window=window,
        run_deadline_seconds=run_deadline_seconds,
        max_samples=max_samples,
        run_id=run_id,
    )
