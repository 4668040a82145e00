from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from stagediff.config.errors import ConfigurationError
from stagediff.domain.orchestrator import StageFetch
from stagediff.domain.ports.fetching import FetchPage, TransientFetchError
from stagediff.domain.reconciliation import StagePair, ToleranceConfig
from stagediff.domain.report import Thresholds, Verdict
from stagediff.domain.retry import RetryPolicy
from stagediff.domain.schema import FieldSpec, StageSchema
from stagediff.domain.types import FetchStatus, RunState
from stagediff.domain.validation_run import (
    InvalidRunTransitionError,
    PipelinePlan,
    ValidationRun,
    run_validation,
)
from tests.helpers.connectors import InMemoryConnector, ScriptedConnector, SlowConnector
from tests.helpers.records import meter_schema, reading

NO_WAIT = RetryPolicy(base_delay=0, max_delay=0, jitter=0)
NOW = datetime(2024, 1, 2, tzinfo=UTC)


def _clock() -> datetime:
    return NOW


def _plan(*stages: StageFetch, **kwargs: object) -> PipelinePlan:
    return PipelinePlan(stages=stages, retry=NO_WAIT, **kwargs)  # type: ignore[arg-type]


def test_missing_record_is_reported() -> None:
    plan = _plan(
        StageFetch("api", InMemoryConnector([[reading(1), reading(2)]]), meter_schema()),
        StageFetch("lake", InMemoryConnector([[reading(1)]]), meter_schema()),
    )

    report = run_validation(plan, run_id="run-1", clock=_clock)

    assert report.run_id == "run-1"
    assert report.generated_at == NOW
    assert report.run_state is RunState.REPORTED
    pair = report.stage_pairs[0]
    assert (pair.reference, pair.target) == ("api", "lake")
    assert pair.missing_sample == [["2"]]
    assert pair.matched_count == 1
    assert pair.extra_sample == []
    assert report.verdict is Verdict.FAIL


def test_date_tolerance_decides_match() -> None:
    def plan() -> PipelinePlan:
        api = InMemoryConnector([[reading(1, date="2024-01-01T10:00Z")]])
        db = InMemoryConnector([[reading(1, date="2024-01-01T12:00Z")]])
        return _plan(StageFetch("api", api, meter_schema()), StageFetch("db", db, meter_schema()))

    strict = run_validation(plan(), ToleranceConfig(date_tolerance=timedelta(hours=1)))
    relaxed = run_validation(plan(), ToleranceConfig(date_tolerance=timedelta(hours=3)))

    assert strict.stage_pairs[0].mismatch_sample[0].fields[0].name == "date"
    assert strict.verdict is Verdict.FAIL
    assert relaxed.stage_pairs[0].matched_count == 1
    assert relaxed.verdict is Verdict.PASS


def test_exhausted_target_degrades_or_fails_by_threshold() -> None:
    def plan() -> PipelinePlan:
        return _plan(
            StageFetch("api", InMemoryConnector([[reading(1), reading(2)]]), meter_schema()),
            StageFetch("db", ScriptedConnector([TransientFetchError("503")]), meter_schema()),
        )

    lenient = run_validation(plan(), thresholds=Thresholds(max_missing_rate=1.0))
    strict = run_validation(plan())

    assert lenient.stages[1].fetch_status is FetchStatus.FAILED
    assert lenient.stage_pairs[0].missing_sample == [["1"], ["2"]]
    assert lenient.verdict is Verdict.DEGRADED
    assert lenient.run_state is RunState.REPORTED
    assert strict.verdict is Verdict.FAIL


def test_run_deadline_keeps_partial_stage() -> None:
    plan = _plan(
        StageFetch("api", InMemoryConnector([[reading(1)]]), meter_schema()),
        StageFetch("stream", SlowConnector([reading(1)], delay=0.05), meter_schema()),
        run_deadline_seconds=0.15,
    )

    report = run_validation(plan)

    stream = report.stages[1]
    assert stream.fetch_status is FetchStatus.PARTIAL
    assert stream.record_count == 1
    assert report.stage_pairs[0].matched_count == 1
    assert report.verdict is Verdict.DEGRADED


def test_every_stage_failing_fails_the_run_with_a_report() -> None:
    plan = _plan(
        StageFetch("api", ScriptedConnector([TransientFetchError("down")]), meter_schema()),
        StageFetch("db", ScriptedConnector([TransientFetchError("down")]), meter_schema()),
    )

    report = run_validation(plan)

    assert report.run_state is RunState.FAILED
    assert report.verdict is Verdict.FAIL
    assert [stage.fetch_status for stage in report.stages] == [FetchStatus.FAILED] * 2


def test_partial_stages_without_records_fail_the_run() -> None:
    def empty_then_down() -> ScriptedConnector:
        return ScriptedConnector(
            [FetchPage(records=(), next_token="1"), TransientFetchError("down")]
        )

    plan = _plan(
        StageFetch("api", empty_then_down(), meter_schema()),
        StageFetch("db", empty_then_down(), meter_schema()),
    )

    report = run_validation(plan)

    assert [stage.fetch_status for stage in report.stages] == [FetchStatus.PARTIAL] * 2
    assert report.run_state is RunState.FAILED
    assert report.verdict is Verdict.FAIL


def test_complete_empty_stages_still_report() -> None:
    plan = _plan(
        StageFetch("api", InMemoryConnector([]), meter_schema()),
        StageFetch("db", InMemoryConnector([]), meter_schema()),
    )

    report = run_validation(plan)

    assert report.run_state is RunState.REPORTED
    assert report.verdict is Verdict.PASS


def test_explicit_pairs_override_consecutive_default() -> None:
    stages = (
        StageFetch("api", InMemoryConnector([[reading(1)]]), meter_schema()),
        StageFetch("lake", InMemoryConnector([[reading(1)]]), meter_schema()),
        StageFetch("db", InMemoryConnector([[reading(1)]]), meter_schema()),
    )

    default = _plan(*stages)
    fanned = _plan(*stages, pairs=(StagePair("api", "lake"), StagePair("api", "db")))

    assert [str(pair) for pair in default.resolved_pairs()] == ["api->lake", "lake->db"]
    assert [str(pair) for pair in fanned.resolved_pairs()] == ["api->lake", "api->db"]


def test_pairs_without_shared_key_are_rejected() -> None:
    by_mpan = StageSchema(fields=(FieldSpec("mpan"), FieldSpec("units")), key_fields=("mpan",))

    with pytest.raises(ConfigurationError, match="no shared key"):
        _plan(
            StageFetch("api", InMemoryConnector([]), meter_schema()),
            StageFetch("db", InMemoryConnector([]), by_mpan),
        )


def test_pairs_naming_unknown_stages_are_rejected() -> None:
    with pytest.raises(ConfigurationError, match="undeclared"):
        _plan(
            StageFetch("api", InMemoryConnector([]), meter_schema()),
            pairs=(StagePair("api", "warehouse"),),
        )


def test_validation_run_follows_lifecycle() -> None:
    run = ValidationRun()

    run.advance(RunState.FETCHING)
    run.advance(RunState.RECONCILING)
    run.advance(RunState.REPORTED)

    assert run.finished
    assert run.history == [
        RunState.PENDING,
        RunState.FETCHING,
        RunState.RECONCILING,
        RunState.REPORTED,
    ]
    with pytest.raises(InvalidRunTransitionError):
        run.advance(RunState.FETCHING)


def test_validation_run_cannot_skip_fetching() -> None:
    with pytest.raises(InvalidRunTransitionError):
        ValidationRun().advance(RunState.REPORTED)


def test_fetch_page_results_flow_into_report_counts() -> None:
    connector = ScriptedConnector(
        [
            FetchPage(records=(reading(1), reading(1), reading(2, id="")), next_token="1"),
            FetchPage(records=(reading(3),)),
        ]
    )
    plan = _plan(
        StageFetch("api", connector, meter_schema()),
        StageFetch("lake", InMemoryConnector([[reading(1), reading(3)]]), meter_schema()),
    )

    report = run_validation(plan)

    api = report.stages[0]
    assert api.record_count == 2
    assert api.warning_count == 2
    assert api.pages_fetched == 2
    assert report.verdict is Verdict.PASS
