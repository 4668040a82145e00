from __future__ import annotations

import asyncio
from datetime import UTC, datetime, tzinfo
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import Column, DateTime, Integer, MetaData, Numeric, String, Table, create_engine

from stagediff.adapters.sqlalchemy import SqlTableConnector, SqlTableSettings
from stagediff.domain.ports.fetching import FetchPage, PermanentFetchError
from stagediff.domain.types import FetchWindow

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def database_uri(tmp_path: Path) -> str:
    uri = f"sqlite+pysqlite:///{tmp_path / 'readings.db'}"
    engine = create_engine(uri)
    metadata = MetaData()
    readings = Table(
        "readings",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("location", String(64)),
        Column("date", DateTime),
        Column("units", Numeric(10, 3)),
    )
    metadata.create_all(engine)
    with engine.begin() as connection:
        connection.execute(
            readings.insert(),
            [
                {"id": 3, "location": "Abbey", "date": datetime(2024, 1, 3), "units": 3},
                {"id": 1, "location": "Guildhall", "date": datetime(2024, 1, 1), "units": 1},
                {"id": 2, "location": "Pump Room", "date": datetime(2024, 1, 2), "units": 2},
            ],
        )
    engine.dispose()
    return uri


def _drain(connector: SqlTableConnector, window: FetchWindow | None = None) -> list[FetchPage]:
    async def run() -> list[FetchPage]:
        pages: list[FetchPage] = []
        token: str | None = None
        try:
            while True:
                page = await connector.fetch(window or FetchWindow(), token)
                pages.append(page)
                if page.done:
                    return pages
                token = page.next_token
        finally:
            await connector.aclose()

    return asyncio.run(run())


def _connector(uri: str, timezone: tzinfo = UTC, **options: object) -> SqlTableConnector:
    settings = SqlTableSettings.model_validate({"uri": uri, "table": "readings", **options})
    return SqlTableConnector(settings=settings, name="db", timezone=timezone)


def test_rows_are_paged_in_primary_key_order(database_uri: str) -> None:
    pages = _drain(_connector(database_uri, page_size=2))

    assert [page.next_token for page in pages] == ["2", None]
    assert [record["id"] for page in pages for record in page.records] == [1, 2, 3]
    assert pages[0].records[0]["location"] == "Guildhall"


def test_order_by_and_time_column_window(database_uri: str) -> None:
    window = FetchWindow(
        start=datetime(2024, 1, 2, tzinfo=UTC),
        end=datetime(2024, 1, 3, tzinfo=UTC),
    )

    pages = _drain(
        _connector(database_uri, order_by=["location"], time_column="date"),
        window=window,
    )

    assert [record["location"] for page in pages for record in page.records] == [
        "Abbey",
        "Pump Room",
    ]


def test_naive_time_column_is_filtered_in_stage_timezone(tmp_path: Path) -> None:
    uri = f"sqlite+pysqlite:///{tmp_path / 'local.db'}"
    engine = create_engine(uri)
    metadata = MetaData()
    readings = Table(
        "readings",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("date", DateTime),
    )
    metadata.create_all(engine)
    with engine.begin() as connection:
        connection.execute(
            readings.insert(),
            [
                {"id": 1, "date": datetime(2024, 7, 1, 10, 30)},
                {"id": 2, "date": datetime(2024, 7, 1, 12, 30)},
                {"id": 3, "date": datetime(2024, 7, 1, 13, 30)},
            ],
        )
    engine.dispose()
    window = FetchWindow(
        start=datetime(2024, 7, 1, 10, tzinfo=UTC),
        end=datetime(2024, 7, 1, 12, tzinfo=UTC),
    )

    pages = _drain(
        _connector(uri, timezone=ZoneInfo("Europe/London"), time_column="date"),
        window=window,
    )

    assert [record["id"] for page in pages for record in page.records] == [2]


def test_missing_table_is_permanent(database_uri: str) -> None:
    with pytest.raises(PermanentFetchError, match="does not exist"):
        _drain(_connector(database_uri, table="meters"))


def test_unknown_order_column_is_permanent(database_uri: str) -> None:
    with pytest.raises(PermanentFetchError, match="no column"):
        _drain(_connector(database_uri, order_by=["mpan"]))


def test_aclose_disposes_engine(database_uri: str) -> None:
    connector = _connector(database_uri)

    _drain(connector)

    assert connector.engine is None
