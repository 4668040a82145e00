from __future__ import annotations

from datetime import UTC, date, datetime, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from stagediff.domain.normalization import (
    InvalidFieldError,
    MissingKeyFieldError,
    SnapshotBuilder,
    decimal_text,
    key_component,
    normalize,
)
from stagediff.domain.schema import FieldSpec, StageSchema
from stagediff.domain.types import FetchStatus, FetchWindow, FieldType, WarningKind
from tests.helpers.records import meter_schema, reading


def test_normalize_maps_fields_and_builds_key() -> None:
    observed = datetime(2024, 1, 2, tzinfo=UTC)

    record = normalize(reading(7), meter_schema(), stage="api", observed_at=observed)

    assert record.key == ("7",)
    assert record.stage == "api"
    assert record.observed_at == observed
    assert record.fields == {
        "location": "Guildhall",
        "date": datetime(2024, 1, 1, 0, 30, tzinfo=UTC),
        "units": Decimal("1.5"),
    }


def test_normalize_follows_dotted_source_paths() -> None:
    schema = StageSchema(
        fields=(FieldSpec("mpan", source="meter.mpan"), FieldSpec("postcode")),
        key_fields=("mpan",),
    )

    record = normalize({"meter": {"mpan": " 1200 "}, "postcode": "BA1 5AW"}, schema, stage="s")

    assert record.key == ("1200",)
    assert record.fields == {"postcode": "BA1 5AW"}


def test_equal_numbers_produce_identical_keys() -> None:
    schema = StageSchema(fields=(FieldSpec("id", FieldType.NUMERIC),), key_fields=("id",))

    first = normalize({"id": "1.0"}, schema, stage="a")
    second = normalize({"id": 1}, schema, stage="b")

    assert first.key == second.key == ("1",)


def test_blank_strings_become_none_and_text_is_nfc() -> None:
    record = normalize(reading(1, location="   "), meter_schema(), stage="s")
    composed = normalize(reading(2, location="Cafe\u0301"), meter_schema(), stage="s")

    assert record.fields["location"] is None
    assert composed.fields["location"] == "Caf\u00e9"


@pytest.mark.parametrize("raw_id", [None, "", "  "])
def test_missing_key_field_raises(raw_id: object) -> None:
    with pytest.raises(MissingKeyFieldError) as excinfo:
        normalize(reading(1, id=raw_id), meter_schema(), stage="s")

    assert excinfo.value.field_name == "id"
    assert excinfo.value.kind is WarningKind.MISSING_KEY_FIELD


def test_absent_key_field_raises() -> None:
    raw = reading(1)
    del raw["id"]

    with pytest.raises(MissingKeyFieldError):
        normalize(raw, meter_schema(), stage="s")


@pytest.mark.parametrize("units", ["lots", True, "NaN", "inf"])
def test_invalid_numeric_value_raises(units: object) -> None:
    with pytest.raises(InvalidFieldError) as excinfo:
        normalize(reading(1, units=units), meter_schema(), stage="s")

    assert excinfo.value.field_name == "units"


def test_invalid_date_raises() -> None:
    with pytest.raises(InvalidFieldError, match="not a date"):
        normalize(reading(1, date="yesterday-ish"), meter_schema(), stage="s")


def test_naive_dates_use_schema_timezone() -> None:
    schema = meter_schema(timezone=ZoneInfo("Europe/London"))

    summer = normalize(reading(1, date="2024-07-01T12:00:00"), schema, stage="s")
    offset = normalize(reading(2, date="2024-07-01T12:00:00+02:00"), schema, stage="s")

    assert summer.fields["date"] == datetime(2024, 7, 1, 11, tzinfo=UTC)
    assert offset.fields["date"] == datetime(2024, 7, 1, 10, tzinfo=UTC)


def test_dates_accept_custom_formats_epochs_and_date_objects() -> None:
    schema = meter_schema(date_formats=("%d/%m/%Y %H:%M",))

    custom = normalize(reading(1, date="02/01/2024 13:30"), schema, stage="s")
    epoch = normalize(reading(2, date=1_704_067_200), schema, stage="s")
    plain = normalize(reading(3, date=date(2024, 1, 1)), schema, stage="s")

    assert custom.fields["date"] == datetime(2024, 1, 2, 13, 30, tzinfo=UTC)
    assert epoch.fields["date"] == datetime(2024, 1, 1, tzinfo=UTC)
    assert plain.fields["date"] == datetime(2024, 1, 1, tzinfo=UTC)


def test_key_component_renders_canonical_text() -> None:
    moment = datetime(2024, 1, 1, 1, tzinfo=timezone(timedelta(hours=1)))

    assert key_component(Decimal("2.50")) == "2.5"
    assert key_component(Decimal("0E-7")) == "0"
    assert key_component(moment.astimezone(UTC)) == "2024-01-01T00:00:00+00:00"
    assert key_component(None) == ""
    assert decimal_text(Decimal("1E+2")) == "100"


def test_snapshot_builder_keeps_first_duplicate_and_warns() -> None:
    builder = SnapshotBuilder(stage="api", schema=meter_schema())

    accepted = builder.add_batch([reading(1, units="1"), reading(1, units="99"), reading(2)])
    snapshot = builder.build(FetchStatus.COMPLETE, pages_fetched=1)

    assert accepted == 2
    assert sorted(snapshot.records) == [("1",), ("2",)]
    assert snapshot.records[("1",)].fields["units"] == Decimal(1)
    assert [warning.kind for warning in snapshot.warnings] == [WarningKind.DUPLICATE_KEY]
    assert snapshot.warnings[0].key == ("1",)


def test_snapshot_builder_records_dropped_records_as_warnings() -> None:
    builder = SnapshotBuilder(stage="api", schema=meter_schema())

    builder.add_batch([reading(1), reading(2, id=""), reading(3, units="n/a")])
    snapshot = builder.build(FetchStatus.COMPLETE)

    assert list(snapshot.records) == [("1",)]
    assert [warning.kind for warning in snapshot.warnings] == [
        WarningKind.MISSING_KEY_FIELD,
        WarningKind.INVALID_FIELD,
    ]
    assert snapshot.warnings[1].field_name == "units"


def test_snapshot_builder_filters_on_window_field() -> None:
    window = FetchWindow(
        start=datetime(2024, 1, 1, tzinfo=UTC),
        end=datetime(2024, 1, 1, 23, 59, tzinfo=UTC),
    )
    builder = SnapshotBuilder(
        stage="api",
        schema=meter_schema(window_field="date"),
        window=window,
    )

    builder.add_batch([reading(1), reading(2, date="2024-01-03T00:00:00Z")])
    snapshot = builder.build(FetchStatus.COMPLETE)

    assert list(snapshot.records) == [("1",)]
    assert builder.out_of_window == 1
    assert snapshot.fetch_window == window


def test_failed_snapshot_discards_collected_records() -> None:
    builder = SnapshotBuilder(stage="api", schema=meter_schema())
    builder.add_batch([reading(1)])

    snapshot = builder.build(FetchStatus.FAILED, error="boom")

    assert snapshot.records == {}
    assert snapshot.error == "boom"
    assert snapshot.field_names == frozenset({"location", "date", "units"})


def test_schema_rejects_undeclared_key_and_non_date_window() -> None:
    with pytest.raises(ValueError, match="undeclared"):
        meter_schema(key_fields=("mpan",))
    with pytest.raises(ValueError, match="must be a date"):
        meter_schema(window_field="units")
    with pytest.raises(ValueError, match="at least one key"):
        meter_schema(key_fields=())
