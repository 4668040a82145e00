"""Concurrent fetching of every configured stage into snapshots."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING

from stagediff.domain.normalization import SnapshotBuilder
from stagediff.domain.ports.fetching import ClosableConnector, FetchError
from stagediff.domain.retry import RetryPolicy, fetch_page
from stagediff.domain.types import FetchStatus, FetchWindow

if TYPE_CHECKING:
    from collections.abc import Sequence

    from stagediff.domain.ports.fetching import SourceConnector
    from stagediff.domain.schema import StageSchema
    from stagediff.domain.types import StageId, StageSnapshot

log = getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 8


@dataclass(slots=True, frozen=True)
class StageFetch:
    """Everything needed to fetch and normalize one stage."""

    stage: StageId
    connector: SourceConnector
    schema: StageSchema
    window: FetchWindow = field(default_factory=FetchWindow)
    deadline_seconds: float | None = None


@dataclass(slots=True)
class _StageProgress:
    pages: int = 0
    complete: bool = False
    error: str | None = None

    def status(self) -> FetchStatus:
        if self.complete:
            return FetchStatus.COMPLETE
        if self.pages:
            return FetchStatus.PARTIAL
        return FetchStatus.FAILED


@dataclass(slots=True)
class FetchOrchestrator:
    """Run one fetch pipeline per stage and wait for all of them.

    Each stage owns its ``SnapshotBuilder`` until the gather barrier, so no
    state is shared between concurrent fetches. Stage deadlines abandon the
    in-flight page; the run deadline is cooperative and is only checked
    between pages and between retries.
    """

    retry: RetryPolicy = field(default_factory=RetryPolicy)
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    run_deadline_seconds: float | None = None

    async def fetch_all(self, stages: Sequence[StageFetch]) -> dict[StageId, StageSnapshot]:
        if not stages:
            return {}
        stage_ids = [stage.stage for stage in stages]
        if len(set(stage_ids)) != len(stage_ids):
            raise ValueError(f"Stage identifiers must be unique: {stage_ids}")

        loop = asyncio.get_running_loop()
        run_deadline = (
            loop.time() + self.run_deadline_seconds
            if self.run_deadline_seconds is not None
            else None
        )
        semaphore = asyncio.Semaphore(max(1, min(len(stages), self.max_concurrency)))

        try:
            snapshots = await asyncio.gather(
                *(self._run_stage(stage, semaphore, run_deadline) for stage in stages)
            )
        finally:
            await _close_connectors(stages)
        return {snapshot.stage: snapshot for snapshot in snapshots}

    async def _run_stage(
        self,
        stage: StageFetch,
        semaphore: asyncio.Semaphore,
        run_deadline: float | None,
    ) -> StageSnapshot:
        builder = SnapshotBuilder(stage=stage.stage, schema=stage.schema, window=stage.window)
        progress = _StageProgress()

        async with semaphore:
            log.info("Fetching stage %s", stage.stage)
            try:
                async with asyncio.timeout(stage.deadline_seconds):
                    await self._drain(stage, builder, progress, run_deadline)
            except TimeoutError:
                progress.error = f"Stage deadline of {stage.deadline_seconds}s expired"
                log.warning("Stage %s: %s", stage.stage, progress.error)
            except Exception as exc:  # noqa: BLE001
                progress.error = f"Unexpected connector error: {exc!r}"
                log.exception("Unexpected error while fetching stage %s", stage.stage)

        snapshot = builder.build(
            progress.status(),
            pages_fetched=progress.pages,
            error=progress.error,
        )
        log.info(
            "Stage %s finished: status=%s, records=%s, pages=%s, warnings=%s, out_of_window=%s",
            stage.stage,
            snapshot.fetch_status,
            len(snapshot.records),
            progress.pages,
            len(snapshot.warnings),
            builder.out_of_window,
        )
        return snapshot

    async def _drain(
        self,
        stage: StageFetch,
        builder: SnapshotBuilder,
        progress: _StageProgress,
        run_deadline: float | None,
    ) -> None:
        loop = asyncio.get_running_loop()
        token: str | None = None
        while True:
            if run_deadline is not None and loop.time() >= run_deadline:
                progress.error = "Run deadline expired"
                log.warning(
                    "Stage %s: run deadline expired after %s page(s)", stage.stage, progress.pages
                )
                return

            try:
                page = await fetch_page(
                    stage.connector,
                    stage.window,
                    token,
                    policy=self.retry,
                    deadline=run_deadline,
                    stage=stage.stage,
                )
            except FetchError as exc:
                progress.error = str(exc)
                log.warning(
                    "Stage %s stopped after %s page(s): %s", stage.stage, progress.pages, exc
                )
                return

            builder.add_batch(page.records)
            progress.pages += 1
            if page.done:
                progress.complete = True
                return
            if page.next_token == token:
                progress.error = f"Connector repeated continuation token {token!r}"
                log.warning("Stage %s: %s", stage.stage, progress.error)
                return
            token = page.next_token


async def _close_connectors(stages: Sequence[StageFetch]) -> None:
    for stage in stages:
        connector = stage.connector
        if not isinstance(connector, ClosableConnector):
            continue
        try:
            await connector.aclose()
        except Exception:  # noqa: BLE001
            log.exception("Failed to close connector for stage %s", stage.stage)
