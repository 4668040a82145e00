"""Ports for fetching raw records from one pipeline stage."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from stagediff.domain.types import FetchWindow


class FetchError(RuntimeError):
    """Raised when a connector cannot deliver a page."""


class TransientFetchError(FetchError):
    """Timeouts, rate limiting, server-side and connection errors; worth retrying."""


class PermanentFetchError(FetchError):
    """Authentication, configuration or not-found errors; never retried."""


class RetriesExhaustedError(FetchError):
    """Raised once a page keeps failing transiently after every allowed attempt."""

    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


@dataclass(slots=True, frozen=True)
class FetchPage:
    """One page of raw records; ``next_token`` is ``None`` on the last page."""

    records: Sequence[Mapping[str, object]] = field(default_factory=tuple)
    next_token: str | None = None

    @property
    def done(self) -> bool:
        return self.next_token is None


@runtime_checkable
class SourceConnector(Protocol):
    """Fetches raw key-value records for one stage, page by page."""

    async def fetch(self, window: FetchWindow, continuation_token: str | None) -> FetchPage: ...


@runtime_checkable
class ClosableConnector(SourceConnector, Protocol):
    async def aclose(self) -> None: ...


__all__ = [
    "ClosableConnector",
    "FetchError",
    "FetchPage",
    "PermanentFetchError",
    "RetriesExhaustedError",
    "SourceConnector",
    "TransientFetchError",
]
