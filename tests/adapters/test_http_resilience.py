from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import httpx
from hishel import AsyncSqliteStorage

from stagediff.adapters.http_resilience import (
    ResilientClient,
    _build_cache_storage,
    build_retry,
)
from stagediff.config.http_resilience import (
    CacheConfig,
    RateLimit,
    ResilienceConfig,
    TransportRetryPolicy,
)

if TYPE_CHECKING:
    from pathlib import Path


def _get(client: ResilientClient, url: str) -> httpx.Response:
    async def run() -> httpx.Response:
        try:
            return await client.get(url)
        finally:
            await client.aclose()

    return asyncio.run(run())


def test_transport_retries_absorb_server_errors() -> None:
    statuses = iter([503, 503, 200])
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(next(statuses), json=[])

    config = ResilienceConfig(
        name="api",
        retry=TransportRetryPolicy(total=2, backoff_factor=0, backoff_jitter=0),
    )

    client = ResilientClient(config, transport=httpx.MockTransport(handler))

    response = _get(client, "https://x.test/")

    assert response.status_code == 200
    assert len(calls) == 3


def test_no_transport_retries_by_default() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503)

    client = ResilientClient(ResilienceConfig(name="api"), transport=httpx.MockTransport(handler))

    response = _get(client, "https://x.test/")

    assert response.status_code == 503
    assert len(calls) == 1


def test_default_headers_are_sent_through_the_rate_limiter() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["X-App-Token"] == "token"
        return httpx.Response(200, json=[])

    config = ResilienceConfig(
        name="api",
        default_headers={"X-App-Token": "token"},
        ratelimit=RateLimit(max_calls=10, per_seconds=1),
    )

    response = _get(
        ResilientClient(config, transport=httpx.MockTransport(handler)),
        "https://data.example.org/resource/readings.json",
    )

    assert response.status_code == 200


def test_build_retry_maps_policy() -> None:
    retry = build_retry(TransportRetryPolicy(total=4, status_forcelist=frozenset({503})))

    assert retry.total == 4
    assert retry.backoff_factor == 0.5


def test_no_cache_storage_without_cache_config() -> None:
    assert _build_cache_storage(None) is None

    client = ResilientClient(ResilienceConfig(name="api"))

    assert not client.cached
    asyncio.run(client.aclose())


def test_cache_storage_lives_in_the_data_directory(isolated_data_dir: Path) -> None:
    storage = _build_cache_storage(CacheConfig(default_ttl_seconds=60))

    assert isinstance(storage, AsyncSqliteStorage)
    assert isolated_data_dir.is_dir()


def test_cached_client_serves_responses() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=[{"id": "1"}])

    config = ResilienceConfig(name="api", cache=CacheConfig(default_ttl_seconds=60))
    client = ResilientClient(config, transport=httpx.MockTransport(handler))

    assert client.cached

    response = _get(client, "https://x.test/rows")

    assert response.json() == [{"id": "1"}]
    assert len(calls) == 1
