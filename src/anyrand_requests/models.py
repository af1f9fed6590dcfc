#!/usr/bin/env python3
"""Data models for the randomness request aggregation engine.

This module provides immutable data classes for raw ledger logs, the three
decoded coordinator events, the merged request aggregates and the query
parameters and results exposed to callers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


def normalize_hex(value: Any) -> str:
    """Normalize bytes or a hex string to a lowercase 0x-prefixed string.

    Providers return hashes and topics either as bytes (HexBytes) or as hex
    strings, with or without the prefix.
    """
    if isinstance(value, (bytes, bytearray)):
        return '0x' + bytes(value).hex()
    if isinstance(value, str):
        hex_str = value.lower()
        return hex_str if hex_str.startswith('0x') else '0x' + hex_str
    raise TypeError(f"Unexpected hex value type: {type(value).__name__}")


def _as_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith('0x') else int(value)
    raise TypeError(f"Unexpected integer value type: {type(value).__name__}")


@dataclass(frozen=True, slots=True)
class BlockRef:
    """A block number together with its timestamp (Unix seconds)."""

    number: int
    timestamp: int


@dataclass(frozen=True, slots=True)
class RawLog:
    """A log record as returned by the ledger, before decoding.

    Attributes:
        address: Address of the emitting contract
        topics: Topics as lowercase 0x-prefixed hex strings
        data: ABI-encoded non-indexed arguments (0x-prefixed hex)
        block_number: Block number where the log was emitted
        transaction_hash: Hash of the emitting transaction
        log_index: Index of the log inside its block
    """

    address: str
    topics: tuple[str, ...]
    data: str
    block_number: int
    transaction_hash: str
    log_index: int

    @classmethod
    def from_receipt(cls, log: Any) -> "RawLog":
        """Build a RawLog from a web3 LogReceipt or a plain dict.

        Handles both dict-like receipts (HTTP polling) and attribute
        access objects, with bytes or hex encoded fields.
        """
        if hasattr(log, 'get'):
            get = log.get
        else:
            def get(name: str, default: Any = None) -> Any:
                return getattr(log, name, default)

        data = get('data', '0x')
        return cls(
            address=str(get('address', '')),
            topics=tuple(normalize_hex(topic) for topic in get('topics', []) or []),
            data=normalize_hex(data) if data else '0x',
            block_number=_as_int(get('blockNumber', 0)),
            transaction_hash=normalize_hex(get('transactionHash', b'')),
            log_index=_as_int(get('logIndex', 0)),
        )


@dataclass(frozen=True, slots=True)
class RequestedEvent:
    """A decoded RandomnessRequested event."""

    request_id: int
    requester: str
    pub_key_hash: str
    round: int
    callback_gas_limit: int
    fee_paid: int
    effective_fee_per_gas: int
    block: BlockRef
    transaction_hash: str
    log_index: int

    @property
    def dedup_key(self) -> tuple[str, int]:
        return (self.transaction_hash, self.log_index)


@dataclass(frozen=True, slots=True)
class FulfilledEvent:
    """A decoded RandomnessFulfilled event."""

    request_id: int
    randomness: int
    callback_success: bool
    actual_gas_used: int
    block: BlockRef
    transaction_hash: str
    log_index: int

    @property
    def dedup_key(self) -> tuple[str, int]:
        return (self.transaction_hash, self.log_index)


@dataclass(frozen=True, slots=True)
class FailedEvent:
    """A decoded RandomnessCallbackFailed event."""

    request_id: int
    retdata: str
    gas_limit: int
    actual_gas_used: int
    block: BlockRef
    transaction_hash: str
    log_index: int

    @property
    def dedup_key(self) -> tuple[str, int]:
        return (self.transaction_hash, self.log_index)


DomainEvent = Union[RequestedEvent, FulfilledEvent, FailedEvent]


class RequestStatus(Enum):
    """Lifecycle status of a randomness request."""
    PENDING = "pending"
    FULFILLED = "fulfilled"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class FulfillmentAggregate:
    """Fulfilment details attached to a fulfilled request."""

    request_id: int
    randomness: int
    callback_success: bool
    actual_gas_used: int
    transaction_hash: str
    block_number: int
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "randomness": self.randomness,
            "callback_success": self.callback_success,
            "actual_gas_used": self.actual_gas_used,
            "transaction_hash": self.transaction_hash,
            "block_number": self.block_number,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class CallbackFailure:
    """Details of a consumer callback that reverted or ran out of gas."""

    request_id: int
    retdata: str
    gas_limit: int
    actual_gas_used: int
    transaction_hash: str
    block_number: int
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "retdata": self.retdata,
            "gas_limit": self.gas_limit,
            "actual_gas_used": self.actual_gas_used,
            "transaction_hash": self.transaction_hash,
            "block_number": self.block_number,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class RequestAggregate:
    """The merged view of one randomness request.

    Provenance fields (transaction_hash, block_number, log_index, timestamp) always
    describe the creating RandomnessRequested event. ``deadline`` is an
    estimate: creation timestamp plus a configured offset, since the event
    does not carry the on-chain deadline.
    """

    id: int
    requester: str
    deadline: int
    callback_gas_limit: int
    fee_paid: int
    effective_fee_per_gas: int
    status: RequestStatus
    transaction_hash: str
    block_number: int
    log_index: int
    timestamp: int
    pub_key_hash: str
    round: int
    fulfillment: FulfillmentAggregate | None = None
    failure: CallbackFailure | None = None

    def __str__(self) -> str:
        return (
            f"RandomnessRequest(id={self.id}, "
            f"status={self.status.value}, "
            f"requester={self.requester[:8]}..., "
            f"block={self.block_number})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "requester": self.requester,
            "deadline": self.deadline,
            "callback_gas_limit": self.callback_gas_limit,
            "fee_paid": self.fee_paid,
            "effective_fee_per_gas": self.effective_fee_per_gas,
            "status": self.status.value,
            "transaction_hash": self.transaction_hash,
            "block_number": self.block_number,
            "log_index": self.log_index,
            "timestamp": self.timestamp,
            "pub_key_hash": self.pub_key_hash,
            "round": self.round,
            "fulfillment": self.fulfillment.to_dict() if self.fulfillment else None,
            "failure": self.failure.to_dict() if self.failure else None,
        }


@dataclass(frozen=True, slots=True)
class WindowCursor:
    """A contiguous, inclusive block range scanned for one window page."""

    from_block: int
    to_block: int
    page_index: int
    is_last_page: bool = False

    @property
    def block_range(self) -> int:
        return self.to_block - self.from_block + 1


class SortBy(Enum):
    TIMESTAMP = "timestamp"
    FEE = "fee"
    DEADLINE = "deadline"


class SortDirection(Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True, slots=True)
class QueryFilters:
    """Predicates applied to merged requests; unset fields match everything.

    Attributes:
        requester: Requester address, compared case-insensitively
        status: Accepted statuses (empty or None disables the filter)
        from_timestamp: Inclusive lower bound on creation timestamp
        to_timestamp: Inclusive upper bound on creation timestamp
        min_fee: Inclusive lower bound on fee paid
        max_fee: Inclusive upper bound on fee paid
    """

    requester: str | None = None
    status: tuple[RequestStatus, ...] | None = None
    from_timestamp: int | None = None
    to_timestamp: int | None = None
    min_fee: int | None = None
    max_fee: int | None = None

    def __post_init__(self) -> None:
        # Lists are accepted for convenience but stored as a tuple so the
        # filters stay hashable
        if self.status is not None and not isinstance(self.status, tuple):
            object.__setattr__(self, 'status', tuple(self.status))


@dataclass(frozen=True, slots=True)
class QueryParams:
    """Result-set paging, filtering and sorting parameters (page is 1-based)."""

    page: int = 1
    page_size: int = 10
    filters: QueryFilters = field(default_factory=QueryFilters)
    sort_by: SortBy = SortBy.TIMESTAMP
    sort_direction: SortDirection = SortDirection.DESC

    def __post_init__(self) -> None:
        if self.page < 1:
            raise ValueError(f"Page must be at least 1, got {self.page}")
        if self.page_size < 1:
            raise ValueError(f"Page size must be positive, got {self.page_size}")


@dataclass(frozen=True, slots=True)
class PageResult:
    """One page of filtered and sorted requests."""

    data: tuple[RequestAggregate, ...]
    total_items: int
    current_page: int
    page_size: int
    has_next_page: bool
    has_previous_page: bool


@dataclass(frozen=True, slots=True)
class BlockWindowInfo:
    """Block range information for display."""

    current_block: int
    from_block: int
    to_block: int
    block_range: int
    window_page: int
    has_more_windows: bool


@dataclass(frozen=True, slots=True)
class RequestStats:
    """Summary statistics over a set of requests."""

    total: int
    pending: int
    fulfilled: int
    failed: int
    success_rate: float
    total_fee_paid: int
    avg_callback_gas_limit: int


class QueryStatus(Enum):
    """State of a cached query key."""
    IDLE = "idle"
    FETCHING = "fetching"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class QueryKey:
    """Cache key: a block window page combined with result-set parameters."""

    window_page: int
    params: QueryParams


@dataclass(frozen=True, slots=True)
class QuerySnapshot:
    """What a caller sees for one query key at a point in time.

    ``page`` keeps the last good result when ``error`` is set
    (stale-while-error).
    """

    key: QueryKey
    status: QueryStatus
    page: PageResult | None
    error: Exception | None
    is_loading: bool
    window: BlockWindowInfo | None
