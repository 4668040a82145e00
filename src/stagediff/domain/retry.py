"""Page-level retries with exponential backoff for source connectors."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from logging import getLogger
from typing import TYPE_CHECKING

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_any,
    wait_exponential_jitter,
)

from stagediff.domain.ports.fetching import RetriesExhaustedError, TransientFetchError

if TYPE_CHECKING:
    from collections.abc import Callable

    from stagediff.domain.ports.fetching import FetchPage, SourceConnector
    from stagediff.domain.types import FetchWindow

log = getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Backoff for one page: ``base_delay * multiplier ** n`` plus jitter, capped."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.5
    page_timeout: float | None = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if min(self.base_delay, self.max_delay, self.jitter) < 0 or self.multiplier < 1:
            raise ValueError("Backoff delays must be non-negative and multiplier at least 1")
        if self.page_timeout is not None and self.page_timeout <= 0:
            raise ValueError("page_timeout must be positive")

    def wait(self) -> wait_exponential_jitter:
        return wait_exponential_jitter(
            initial=self.base_delay,
            max=self.max_delay,
            exp_base=self.multiplier,
            jitter=self.jitter,
        )


async def fetch_page(
    connector: SourceConnector,
    window: FetchWindow,
    token: str | None,
    *,
    policy: RetryPolicy,
    deadline: float | None = None,
    stage: str = "",
) -> FetchPage:
    """Fetch one page, retrying transient failures.

    ``deadline`` is an event-loop timestamp after which no further attempt is
    started. ``PermanentFetchError`` and anything that is not a
    ``TransientFetchError`` propagate on the first occurrence.
    """

    retrying = AsyncRetrying(
        stop=stop_any(stop_after_attempt(policy.max_attempts), _deadline_passed(deadline)),
        wait=policy.wait(),
        retry=retry_if_exception_type(TransientFetchError),
        before_sleep=_log_retry(stage),
        reraise=True,
    )
    attempts = 0
    last_error: TransientFetchError | None = None
    try:
        async for attempt in retrying:
            # the deadline may pass while tenacity sleeps between attempts
            if last_error is not None and _expired(deadline):
                log.warning("Run deadline passed before retrying %s", stage or "stage")
                raise _exhausted(stage, token, attempts, last_error) from last_error
            attempts = attempt.retry_state.attempt_number
            with attempt:
                try:
                    return await _attempt(connector, window, token, policy.page_timeout)
                except TransientFetchError as exc:
                    last_error = exc
                    raise
    except TransientFetchError as exc:
        raise _exhausted(stage, token, attempts, exc) from exc
    raise AssertionError("retry loop exited without a result")  # pragma: no cover


async def _attempt(
    connector: SourceConnector,
    window: FetchWindow,
    token: str | None,
    timeout: float | None,
) -> FetchPage:
    try:
        async with asyncio.timeout(timeout):
            return await connector.fetch(window, token)
    except TimeoutError as exc:
        raise TransientFetchError(f"Page fetch timed out after {timeout}s") from exc


def _expired(deadline: float | None) -> bool:
    return deadline is not None and asyncio.get_running_loop().time() >= deadline


def _deadline_passed(deadline: float | None) -> Callable[[RetryCallState], bool]:
    def stop(_state: RetryCallState) -> bool:
        return _expired(deadline)

    return stop


def _exhausted(
    stage: str,
    token: str | None,
    attempts: int,
    error: TransientFetchError,
) -> RetriesExhaustedError:
    page = token or "first"
    return RetriesExhaustedError(
        f"Page {page} of {stage or 'stage'} failed after {attempts} attempt(s): {error}",
        attempts=attempts,
    )


def _log_retry(stage: str) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome is not None else None
        delay = state.next_action.sleep if state.next_action is not None else 0.0
        log.warning(
            "Retrying page fetch for %s in %.2fs (attempt %s failed: %s)",
            stage or "stage",
            delay,
            state.attempt_number,
            error,
        )

    return before_sleep
