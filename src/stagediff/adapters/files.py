"""Connector reading exported CSV, JSON and JSON-lines files from a directory."""

from __future__ import annotations

import asyncio
import csv
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from logging import getLogger
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from stagediff.domain.ports.fetching import FetchPage, PermanentFetchError, TransientFetchError

if TYPE_CHECKING:
    from stagediff.domain.types import FetchWindow

log = getLogger(__name__)

type RawRecord = Mapping[str, object]


class FileFormat(StrEnum):
    CSV = "csv"
    JSON = "json"
    JSONL = "jsonl"


class FileStoreSettings(BaseModel):
    """Options accepted by a ``files`` stage."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    directory: Path
    pattern: str = "*"
    format: FileFormat = FileFormat.CSV
    page_size: int = Field(default=1000, ge=1)
    encoding: str = "utf-8"
    delimiter: str = Field(default=",", min_length=1, max_length=1)


@dataclass(slots=True)
class FileStoreConnector:
    """Pages through every matching file in name order.

    The continuation token is ``"<file index>:<row offset>"``. Files are
    parsed whole on first use and kept until the connector moves on, so each
    file is read once per fetch. The window is not applied here; snapshots
    filter on the schema's window field.
    """

    settings: FileStoreSettings
    name: str = "files"
    _files: list[Path] | None = field(default=None, init=False, repr=False)
    _loaded: tuple[int, list[RawRecord]] | None = field(default=None, init=False, repr=False)

    async def fetch(
        self,
        window: FetchWindow,  # noqa: ARG002
        continuation_token: str | None,
    ) -> FetchPage:
        file_index, offset = _parse_token(continuation_token)
        if self._files is None:
            self._files = await asyncio.to_thread(self._list_files)

        if file_index >= len(self._files):
            return FetchPage()

        rows = await self._rows(self._files, file_index)
        page = rows[offset : offset + self.settings.page_size]
        next_offset = offset + len(page)
        if next_offset < len(rows):
            return FetchPage(records=page, next_token=f"{file_index}:{next_offset}")
        if file_index + 1 < len(self._files):
            return FetchPage(records=page, next_token=f"{file_index + 1}:0")
        return FetchPage(records=page)

    def _list_files(self) -> list[Path]:
        directory = self.settings.directory.expanduser()
        if not directory.is_dir():
            raise PermanentFetchError(f"{self.name}: directory {directory} does not exist")
        try:
            matches = directory.glob(self.settings.pattern)
            files = sorted(path for path in matches if path.is_file())
        except PermissionError as exc:
            raise PermanentFetchError(f"{self.name}: cannot list {directory}: {exc}") from exc
        except OSError as exc:
            raise TransientFetchError(f"{self.name}: cannot list {directory}: {exc}") from exc
        log.debug("%s: %s file(s) match %r", self.name, len(files), self.settings.pattern)
        return files

    async def _rows(self, files: list[Path], file_index: int) -> list[RawRecord]:
        if self._loaded is None or self._loaded[0] != file_index:
            rows = await asyncio.to_thread(self._read_file, files[file_index])
            self._loaded = (file_index, rows)
        return self._loaded[1]

    def _read_file(self, path: Path) -> list[RawRecord]:
        try:
            with path.open(encoding=self.settings.encoding, newline="") as handle:
                match self.settings.format:
                    case FileFormat.CSV:
                        return list(csv.DictReader(handle, delimiter=self.settings.delimiter))
                    case FileFormat.JSON:
                        return _objects(json.load(handle), path)
                    case FileFormat.JSONL:
                        return _objects(
                            [json.loads(line) for line in handle if line.strip()],
                            path,
                        )
        except (PermissionError, FileNotFoundError) as exc:
            raise PermanentFetchError(f"{self.name}: cannot read {path}: {exc}") from exc
        except (UnicodeDecodeError, json.JSONDecodeError, csv.Error) as exc:
            raise PermanentFetchError(f"{self.name}: malformed content in {path}: {exc}") from exc
        except OSError as exc:
            raise TransientFetchError(f"{self.name}: cannot read {path}: {exc}") from exc


def _objects(payload: object, path: Path) -> list[RawRecord]:
    if not isinstance(payload, list):
        raise PermanentFetchError(f"{path} does not contain a list of records")
    records: list[RawRecord] = []
    for item in payload:
        if not isinstance(item, Mapping):
            raise PermanentFetchError(f"{path} contains a record that is not an object")
        records.append(item)
    return records


def _parse_token(token: str | None) -> tuple[int, int]:
    if token is None:
        return 0, 0
    file_part, _, offset_part = token.partition(":")
    try:
        file_index, offset = int(file_part), int(offset_part)
    except ValueError as exc:
        raise PermanentFetchError(f"Invalid continuation token: {token!r}") from exc
    if file_index < 0 or offset < 0:
        raise PermanentFetchError(f"Invalid continuation token: {token!r}")
    return file_index, offset
