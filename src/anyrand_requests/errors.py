#!/usr/bin/env python3
"""Error types raised by the request aggregation engine.

Only LedgerUnavailable ever reaches callers (as the ``error`` of a query
snapshot). DecodeError is handled inside the decoder batch loop.
"""

from typing import Any


class IndexerError(Exception):
    """Base class for all engine errors."""


class LedgerUnavailable(IndexerError):
    """An RPC call to the ledger failed or timed out.

    Attributes:
        operation: Name of the ledger call that failed
        detail: Human-readable failure description
    """

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"Ledger unavailable during {operation}: {detail}")


class DecodeError(IndexerError):
    """A raw log did not match any known event shape."""

    def __init__(self, reason: str, log: Any = None) -> None:
        self.reason = reason
        self.log = log
        super().__init__(reason)
