"""Ports the reconciliation core depends on."""

from __future__ import annotations

from .fetching import (
    ClosableConnector,
    FetchError,
    FetchPage,
    PermanentFetchError,
    RetriesExhaustedError,
    SourceConnector,
    TransientFetchError,
)

__all__ = [
    "ClosableConnector",
    "FetchError",
    "FetchPage",
    "PermanentFetchError",
    "RetriesExhaustedError",
    "SourceConnector",
    "TransientFetchError",
]
