"""Keyed set difference and field comparison between stage snapshots."""

from __future__ import annotations

from logging import getLogger
from typing import TYPE_CHECKING

from .contracts import (
    DiffResult,
    FieldDiff,
    MismatchEntry,
    PairFailure,
    ReconciliationError,
)
from .tolerance import ToleranceConfig

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from stagediff.domain.types import CanonicalRecord, RecordKey, StageId, StageSnapshot

    from .contracts import PairOutcome, StagePair

log = getLogger(__name__)


def reconcile(
    reference: StageSnapshot,
    target: StageSnapshot,
    tolerance: ToleranceConfig | None = None,
) -> DiffResult:
    """Compare ``target`` against ``reference`` under ``tolerance``.

    Snapshots with ``failed`` status take part with their empty record sets.
    Raises ``ReconciliationError`` if either snapshot breaks the keyed-record
    invariants or the two use keys of different arity.
    """

    active = tolerance or ToleranceConfig()
    _check_snapshot(reference)
    _check_snapshot(target)
    _check_key_arity(reference, target)

    reference_keys = reference.records.keys()
    target_keys = target.records.keys()
    compared_fields = sorted(
        (_declared_fields(reference) & _declared_fields(target)) - active.ignore_fields
    )
    rules = {name: active.rule_for(name) for name in compared_fields}

    mismatched: list[MismatchEntry] = []
    matched = 0
    for key in sorted(reference_keys & target_keys):
        reference_record = reference.records[key]
        target_record = target.records[key]
        diffs = tuple(
            FieldDiff(
                name=name,
                reference_value=reference_record.fields.get(name),
                target_value=target_record.fields.get(name),
            )
            for name in compared_fields
            if not rules[name].equal(
                reference_record.fields.get(name),
                target_record.fields.get(name),
            )
        )
        if diffs:
            mismatched.append(MismatchEntry(key=key, fields=diffs))
        else:
            matched += 1

    return DiffResult(
        reference=reference.stage,
        target=target.stage,
        reference_status=reference.fetch_status,
        target_status=target.fetch_status,
        reference_count=len(reference.records),
        target_count=len(target.records),
        missing=tuple(sorted(reference_keys - target_keys)),
        extra=tuple(sorted(target_keys - reference_keys)),
        mismatched=tuple(mismatched),
        matched=matched,
    )


def reconcile_pairs(
    snapshots: Mapping[StageId, StageSnapshot],
    pairs: Sequence[StagePair],
    tolerance: ToleranceConfig | None = None,
) -> list[PairOutcome]:
    """Reconcile every pair in order; a failing pair never affects the others."""

    outcomes: list[PairOutcome] = []
    for pair in pairs:
        reference = snapshots.get(pair.reference)
        target = snapshots.get(pair.target)
        if reference is None or target is None:
            absent = pair.reference if reference is None else pair.target
            outcomes.append(
                PairFailure(pair.reference, pair.target, f"No snapshot for stage {absent!r}")
            )
            continue
        try:
            outcome = reconcile(reference, target, tolerance)
        except ReconciliationError as exc:
            log.warning("Reconciliation of %s failed: %s", pair, exc)
            outcomes.append(PairFailure(pair.reference, pair.target, str(exc)))
            continue
        log.info(
            "Reconciled %s: missing=%s, extra=%s, mismatched=%s, matched=%s",
            pair,
            len(outcome.missing),
            len(outcome.extra),
            len(outcome.mismatched),
            outcome.matched,
        )
        outcomes.append(outcome)
    return outcomes


def _declared_fields(snapshot: StageSnapshot) -> frozenset[str]:
    if snapshot.field_names:
        return snapshot.field_names
    return frozenset(name for record in snapshot.records.values() for name in record.fields)


def _check_snapshot(snapshot: StageSnapshot) -> None:
    for key, record in snapshot.records.items():
        _check_record(snapshot.stage, key, record)


def _check_record(stage: StageId, key: RecordKey, record: CanonicalRecord) -> None:
    if record.key != key:
        raise ReconciliationError(
            f"Stage {stage!r} stores record {record.key!r} under key {key!r}"
        )
    if record.stage != stage:
        raise ReconciliationError(
            f"Stage {stage!r} holds a record normalized for stage {record.stage!r}"
        )


def _check_key_arity(reference: StageSnapshot, target: StageSnapshot) -> None:
    arities = {len(key) for key in reference.records} | {len(key) for key in target.records}
    if len(arities) > 1:
        raise ReconciliationError(
            f"Stages {reference.stage!r} and {target.stage!r} use keys of differing length: "
            f"{sorted(arities)}"
        )
