"""Continuation tokens shared by offset-paginated connectors."""

from __future__ import annotations

from stagediff.domain.ports.fetching import PermanentFetchError


def parse_offset(token: str | None) -> int:
    """Turn a continuation token back into a row offset; ``None`` is the first page."""

    if token is None:
        return 0
    try:
        offset = int(token)
    except ValueError as exc:
        raise PermanentFetchError(f"Invalid continuation token: {token!r}") from exc
    if offset < 0:
        raise PermanentFetchError(f"Invalid continuation token: {token!r}")
    return offset
