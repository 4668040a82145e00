"""Connector for paginated JSON feeds such as open-data portals."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, tzinfo
from logging import getLogger
from typing import TYPE_CHECKING

import httpx
from pydantic import BaseModel, ConfigDict, Field

from stagediff.adapters.http_resilience import ResilientClient
from stagediff.adapters.paging import parse_offset
from stagediff.config.http_resilience import CacheConfig, RateLimit, ResilienceConfig
from stagediff.domain.ports.fetching import FetchPage, PermanentFetchError, TransientFetchError

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from stagediff.domain.types import FetchWindow

log = getLogger(__name__)

# Statuses worth retrying; every other 4xx means the request itself is wrong.
_TRANSIENT_STATUSES = frozenset({408, 425, 429})
_WHERE_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"

type ClientFactory = Callable[[ResilienceConfig], ResilientClient]


class HttpFeedSettings(BaseModel):
    """Options accepted by an ``http_feed`` stage."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    url: str
    page_size: int = Field(default=1000, ge=1)
    limit_param: str = "$limit"
    offset_param: str = "$offset"
    where_param: str = "$where"
    order_param: str | None = "$order"
    order_by: str | None = None
    time_field: str | None = None
    records_path: str | None = None
    params: dict[str, str] = Field(default_factory=dict)
    app_token: str | None = None
    app_token_header: str = "X-App-Token"
    timeout_seconds: float = Field(default=30.0, gt=0)
    max_calls_per_second: float | None = Field(default=None, gt=0)
    cache: bool = False
    cache_ttl_seconds: float | None = Field(default=None, gt=0)

    def resilience(self, name: str) -> ResilienceConfig:
        headers = {self.app_token_header: self.app_token} if self.app_token else None
        ratelimit = (
            RateLimit(max_calls=1, per_seconds=1.0 / self.max_calls_per_second)
            if self.max_calls_per_second
            else None
        )
        cache = (
            CacheConfig(default_ttl_seconds=self.cache_ttl_seconds)
            if self.cache
            else None
        )
        return ResilienceConfig(
            name=name,
            timeout_seconds=self.timeout_seconds,
            ratelimit=ratelimit,
            cache=cache,
            default_headers=headers,
        )


def _default_client_factory(config: ResilienceConfig) -> ResilientClient:
    return ResilientClient(config)


@dataclass(slots=True)
class HttpFeedConnector:
    """Offset-paginated GET feed; the continuation token is the next offset.

    A page shorter than ``page_size`` ends the fetch. When ``time_field`` is
    set the fetch window is pushed down as a ``$where`` range filter, written
    as naive timestamps in ``timezone``.
    """

    settings: HttpFeedSettings
    name: str = "http_feed"
    client_factory: ClientFactory = field(default=_default_client_factory)
    timezone: tzinfo = UTC
    _client: ResilientClient | None = field(default=None, init=False, repr=False)

    async def fetch(self, window: FetchWindow, continuation_token: str | None) -> FetchPage:
        offset = parse_offset(continuation_token)
        response = await self._get(self._params(window, offset))
        records = self._records(response)
        log.debug("%s: offset %s returned %s record(s)", self.name, offset, len(records))
        if len(records) < self.settings.page_size:
            return FetchPage(records=records)
        return FetchPage(records=records, next_token=str(offset + len(records)))

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _params(self, window: FetchWindow, offset: int) -> dict[str, str]:
        settings = self.settings
        params = dict(settings.params)
        params[settings.limit_param] = str(settings.page_size)
        params[settings.offset_param] = str(offset)
        order_by = settings.order_by or settings.time_field
        if settings.order_param and order_by:
            params[settings.order_param] = order_by
        where = _where_clause(settings.time_field, window, self.timezone)
        if where:
            params[settings.where_param] = where
        return params

    async def _get(self, params: Mapping[str, str]) -> httpx.Response:
        if self._client is None:
            self._client = self.client_factory(self.settings.resilience(self.name))
        try:
            response = await self._client.get(self.settings.url, params=params)
        except httpx.UnsupportedProtocol as exc:
            raise PermanentFetchError(f"{self.name}: unsupported URL: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientFetchError(f"{self.name}: request failed: {exc!r}") from exc

        status = response.status_code
        if status in _TRANSIENT_STATUSES or status >= 500:
            raise TransientFetchError(f"{self.name}: server responded {status}")
        if status >= 400:
            raise PermanentFetchError(f"{self.name}: request rejected with {status}")
        return response

    def _records(self, response: httpx.Response) -> list[Mapping[str, object]]:
        try:
            payload: object = response.json()
        except ValueError as exc:
            raise PermanentFetchError(f"{self.name}: response is not valid JSON") from exc

        if self.settings.records_path:
            for part in self.settings.records_path.split("."):
                if not isinstance(payload, Mapping) or part not in payload:
                    raise PermanentFetchError(
                        f"{self.name}: response has no {self.settings.records_path!r}"
                    )
                payload = payload[part]

        if not isinstance(payload, Sequence) or isinstance(payload, str | bytes):
            raise PermanentFetchError(f"{self.name}: expected a JSON array of records")
        records = [item for item in payload if isinstance(item, Mapping)]
        if len(records) != len(payload):
            raise PermanentFetchError(f"{self.name}: expected every record to be a JSON object")
        return records


def _where_clause(time_field: str | None, window: FetchWindow, zone: tzinfo) -> str | None:
    if time_field is None:
        return None
    conditions: list[str] = []
    if window.start is not None:
        conditions.append(f"{time_field} >= '{_format_timestamp(window.start, zone)}'")
    if window.end is not None:
        conditions.append(f"{time_field} <= '{_format_timestamp(window.end, zone)}'")
    return " AND ".join(conditions) or None


def _format_timestamp(value: datetime, zone: tzinfo) -> str:
    return value.astimezone(zone).strftime(_WHERE_TIMESTAMP_FORMAT)
