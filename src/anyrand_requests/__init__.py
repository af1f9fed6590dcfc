"""
Anyrand request indexer package.

Windowed, cached aggregation of randomness requests for the Anyrand
coordinator, with live updates for new requests.
"""

from .config import IndexerConfig
from .errors import DecodeError, IndexerError, LedgerUnavailable
from .models import QueryFilters, QueryParams, RequestAggregate, RequestStatus
from .orchestrator import RequestQueryOrchestrator

__all__ = [
    "IndexerConfig",
    "RequestQueryOrchestrator",
    "QueryParams",
    "QueryFilters",
    "RequestAggregate",
    "RequestStatus",
    "IndexerError",
    "LedgerUnavailable",
    "DecodeError",
]
__version__ = "0.1.0"
