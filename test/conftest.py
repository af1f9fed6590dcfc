#!/usr/bin/env python3
"""Shared fixtures and log builders for the request indexer tests."""

import asyncio

import pytest
from web3 import Web3

from anyrand_requests.config import CacheConfig, WindowConfig
from anyrand_requests.events import EventKind
from anyrand_requests.ledger import LedgerAdapter
from anyrand_requests.models import BlockRef, FailedEvent, FulfilledEvent, RawLog, RequestedEvent
from anyrand_requests.orchestrator import RequestQueryOrchestrator

COORDINATOR = Web3.to_checksum_address('0x86d8c50e04ddd04cdaafac9672cf1d00b6057af5')
ALICE = Web3.to_checksum_address('0x1234567890abcdef1234567890abcdef12345678')
BOB = Web3.to_checksum_address('0xabcdef1234567890abcdef1234567890abcdef12')

BASE_TIMESTAMP = 1_700_000_000
BLOCK_TIME = 3


def block_timestamp(number: int) -> int:
    return BASE_TIMESTAMP + number * BLOCK_TIME


def word(value: int) -> str:
    return f"{value:064x}"


def int_topic(value: int) -> str:
    return '0x' + word(value)


def address_topic(address: str) -> str:
    return '0x' + '0' * 24 + address[2:].lower()


def tx_hash(block_number: int, log_index: int) -> str:
    return '0x' + f"{block_number:032x}{log_index:032x}"


def requested_log(
    request_id: int,
    block_number: int,
    log_index: int = 0,
    requester: str = ALICE,
    fee_paid: int = 10**15,
    callback_gas_limit: int = 100_000,
    round: int = 1,
    effective_fee_per_gas: int = 10**9,
    pub_key_hash: int = 0xabc,
    transaction_hash: str | None = None
) -> RawLog:
    return RawLog(
        address=COORDINATOR,
        topics=(
            EventKind.REQUESTED.topic,
            int_topic(request_id),
            address_topic(requester),
            int_topic(pub_key_hash),
        ),
        data='0x' + word(round) + word(callback_gas_limit) + word(fee_paid) + word(effective_fee_per_gas),
        block_number=block_number,
        transaction_hash=transaction_hash or tx_hash(block_number, log_index),
        log_index=log_index
    )


def fulfilled_log(
    request_id: int,
    block_number: int,
    log_index: int = 0,
    randomness: int = 42,
    callback_success: bool = True,
    actual_gas_used: int = 50_000
) -> RawLog:
    return RawLog(
        address=COORDINATOR,
        topics=(EventKind.FULFILLED.topic, int_topic(request_id)),
        data='0x' + word(randomness) + word(int(callback_success)) + word(actual_gas_used),
        block_number=block_number,
        transaction_hash=tx_hash(block_number, log_index),
        log_index=log_index
    )


def failed_log(
    request_id: int,
    block_number: int,
    log_index: int = 0,
    retdata: int = 0xdead,
    gas_limit: int = 100_000,
    actual_gas_used: int = 100_000
) -> RawLog:
    return RawLog(
        address=COORDINATOR,
        topics=(EventKind.CALLBACK_FAILED.topic, int_topic(request_id)),
        data='0x' + word(retdata) + word(gas_limit) + word(actual_gas_used),
        block_number=block_number,
        transaction_hash=tx_hash(block_number, log_index),
        log_index=log_index
    )


def requested_event(request_id: int, block_number: int, log_index: int = 0, fee_paid: int = 1000) -> RequestedEvent:
    return RequestedEvent(
        request_id=request_id,
        requester=ALICE,
        pub_key_hash='0x' + '00' * 32,
        round=1,
        callback_gas_limit=100_000,
        fee_paid=fee_paid,
        effective_fee_per_gas=1,
        block=BlockRef(block_number, block_timestamp(block_number)),
        transaction_hash=tx_hash(block_number, log_index),
        log_index=log_index
    )


def fulfilled_event(request_id: int, block_number: int, log_index: int = 0, randomness: int = 42) -> FulfilledEvent:
    return FulfilledEvent(
        request_id=request_id,
        randomness=randomness,
        callback_success=True,
        actual_gas_used=50_000,
        block=BlockRef(block_number, block_timestamp(block_number)),
        transaction_hash=tx_hash(block_number, log_index),
        log_index=log_index
    )


def failed_event(request_id: int, block_number: int, log_index: int = 0) -> FailedEvent:
    return FailedEvent(
        request_id=request_id,
        retdata='0x' + '00' * 32,
        gas_limit=100_000,
        actual_gas_used=100_000,
        block=BlockRef(block_number, block_timestamp(block_number)),
        transaction_hash=tx_hash(block_number, log_index),
        log_index=log_index
    )


class FakeLedgerReader:
    """In-memory LedgerReader.

    Set ``fail_with`` to make every call raise. Set ``gate`` to an
    asyncio.Event to hold get_logs calls until it is set; ``gated`` is set
    once a call is waiting.
    """

    def __init__(self, height: int = 10_000) -> None:
        self.height = height
        self.logs: list[RawLog] = []
        self.fail_with: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.gated = asyncio.Event()
        self.log_calls: list[tuple[str, int, int]] = []
        self.block_calls: list[int] = []

    async def current_block_height(self) -> int:
        if self.fail_with is not None:
            raise self.fail_with
        return self.height

    async def get_logs(self, event_signature: str, from_block: int, to_block: int) -> list[RawLog]:
        self.log_calls.append((event_signature, from_block, to_block))
        gate = self.gate
        if gate is not None:
            self.gated.set()
            await gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        topic = EventKind(event_signature).topic
        return [
            log for log in self.logs
            if log.topics[0] == topic and from_block <= log.block_number <= to_block
        ]

    async def get_block(self, number: int) -> BlockRef:
        self.block_calls.append(number)
        if self.fail_with is not None:
            raise self.fail_with
        return BlockRef(number=number, timestamp=block_timestamp(number))


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def reader():
    """Create an empty FakeLedgerReader at height 10000."""
    return FakeLedgerReader()


@pytest.fixture
def ledger(reader):
    """Create a LedgerAdapter over the fake reader."""
    return LedgerAdapter(reader, request_timeout=5)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def orchestrator(ledger, clock):
    """Create an orchestrator with 1000-block windows and a fake clock."""
    return RequestQueryOrchestrator(
        ledger,
        window_config=WindowConfig(window_size=1000, genesis_block=0, deadline_offset=7200),
        cache_config=CacheConfig(stale_time=30, gc_time=300),
        polling_interval=1,
        clock=clock
    )
