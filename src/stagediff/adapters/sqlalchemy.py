"""Connector paging through one relational table with SQLAlchemy Core."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, tzinfo
from logging import getLogger
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import DateTime, MetaData, Table, create_engine, select
from sqlalchemy.exc import (
    DisconnectionError,
    NoSuchTableError,
    OperationalError,
    SQLAlchemyError,
)

from stagediff.adapters.paging import parse_offset
from stagediff.domain.ports.fetching import FetchPage, PermanentFetchError, TransientFetchError

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import datetime

    from sqlalchemy import Column, Select
    from sqlalchemy.engine import Engine

    from stagediff.domain.types import FetchWindow

log = getLogger(__name__)


class SqlTableSettings(BaseModel):
    """Options accepted by a ``sql`` stage."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    uri: str
    table: str
    db_schema: str | None = Field(default=None, alias="schema")
    order_by: list[str] = Field(default_factory=list)
    time_column: str | None = None
    page_size: int = Field(default=1000, ge=1)


@dataclass(slots=True)
class SqlTableConnector:
    """``SELECT`` pages ordered by ``order_by`` (primary key by default).

    The continuation token is the next row offset. Blocking database calls run
    in a worker thread; the engine is created on first use and disposed by
    ``aclose``. Window bounds on a column without timezone support are
    compared as naive values in ``timezone``.
    """

    settings: SqlTableSettings
    name: str = "sql"
    engine: Engine | None = None
    timezone: tzinfo = UTC
    _table: Table | None = field(default=None, init=False, repr=False)

    async def fetch(self, window: FetchWindow, continuation_token: str | None) -> FetchPage:
        offset = parse_offset(continuation_token)
        rows = await asyncio.to_thread(self._fetch_rows, window, offset)
        log.debug("%s: offset %s returned %s row(s)", self.name, offset, len(rows))
        if len(rows) < self.settings.page_size:
            return FetchPage(records=rows)
        return FetchPage(records=rows, next_token=str(offset + len(rows)))

    async def aclose(self) -> None:
        if self.engine is not None:
            await asyncio.to_thread(self.engine.dispose)
            self.engine = None
            self._table = None

    def _fetch_rows(self, window: FetchWindow, offset: int) -> list[Mapping[str, object]]:
        try:
            if self.engine is None:
                self.engine = create_engine(self.settings.uri)
            statement = self._statement(self._reflect(self.engine), window, offset)
            with self.engine.connect() as connection:
                return [dict(row) for row in connection.execute(statement).mappings()]
        except NoSuchTableError as exc:
            raise PermanentFetchError(f"{self.name}: table {exc} does not exist") from exc
        except (OperationalError, DisconnectionError) as exc:
            raise TransientFetchError(f"{self.name}: database unavailable: {exc}") from exc
        except SQLAlchemyError as exc:
            raise PermanentFetchError(f"{self.name}: query failed: {exc}") from exc

    def _reflect(self, engine: Engine) -> Table:
        if self._table is None:
            self._table = Table(
                self.settings.table,
                MetaData(),
                schema=self.settings.db_schema,
                autoload_with=engine,
            )
        return self._table

    def _statement(self, table: Table, window: FetchWindow, offset: int) -> Select[Any]:
        statement = select(table)
        time_column = self.settings.time_column
        if time_column is not None:
            column = self._column(table, time_column)
            if window.start is not None:
                statement = statement.where(column >= self._bound(column, window.start))
            if window.end is not None:
                statement = statement.where(column <= self._bound(column, window.end))

        order_columns = [self._column(table, name) for name in self.settings.order_by]
        if not order_columns:
            order_columns = list(table.primary_key.columns) or list(table.columns)
        return statement.order_by(*order_columns).limit(self.settings.page_size).offset(offset)

    def _bound(self, column: Column[Any], value: datetime) -> datetime:
        if isinstance(column.type, DateTime) and column.type.timezone:
            return value
        return value.astimezone(self.timezone).replace(tzinfo=None)

    def _column(self, table: Table, name: str) -> Column[Any]:
        if name not in table.columns:
            raise PermanentFetchError(f"{self.name}: table {table.name} has no column {name!r}")
        return table.columns[name]
