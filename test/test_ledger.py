#!/usr/bin/env python3
"""Tests for ledger access and the LedgerAdapter."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from web3 import Web3

from anyrand_requests.errors import LedgerUnavailable
from anyrand_requests.events import EventKind
from anyrand_requests.ledger import LedgerAdapter, Web3LedgerReader
from anyrand_requests.models import BlockRef, WindowCursor

from conftest import COORDINATOR, FakeLedgerReader, block_timestamp, fulfilled_log, requested_log


class HangingReader(FakeLedgerReader):
    """Reader whose height lookup never completes."""

    async def current_block_height(self) -> int:
        await asyncio.sleep(3600)
        return self.height


class TestLedgerAdapter:
    """Test suite for LedgerAdapter."""

    @pytest.mark.asyncio
    async def test_current_height(self, ledger):
        assert await ledger.current_height() == 10_000

    @pytest.mark.asyncio
    async def test_timeout_raises_ledger_unavailable(self):
        ledger = LedgerAdapter(HangingReader(), request_timeout=0.01)

        with pytest.raises(LedgerUnavailable, match="timed out") as exc_info:
            await ledger.current_height()

        assert exc_info.value.operation == "current_block_height"
        assert ledger.get_stats()['ledger_failures'] == 1

    @pytest.mark.asyncio
    async def test_reader_error_raises_ledger_unavailable(self, reader, ledger):
        reader.fail_with = ConnectionError("connection refused")

        with pytest.raises(LedgerUnavailable, match="connection refused") as exc_info:
            await ledger.fetch_logs(EventKind.REQUESTED, WindowCursor(1, 10, 0))

        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert exc_info.value.operation == "get_logs(REQUESTED)"

    @pytest.mark.asyncio
    async def test_fetch_logs_filters_by_kind_and_window(self, reader, ledger):
        reader.logs = [requested_log(1, 100), requested_log(2, 300), fulfilled_log(1, 150)]

        logs = await ledger.fetch_logs(EventKind.REQUESTED, WindowCursor(from_block=50, to_block=200, page_index=0))

        assert [log.block_number for log in logs] == [100]
        assert reader.log_calls == [(EventKind.REQUESTED.signature, 50, 200)]

    @pytest.mark.asyncio
    async def test_fetch_blocks_deduplicates_and_caches(self, reader, ledger):
        blocks = await ledger.fetch_blocks([5, 3, 5])
        again = await ledger.fetch_blocks([3])

        assert blocks == {3: BlockRef(3, block_timestamp(3)), 5: BlockRef(5, block_timestamp(5))}
        assert again == {3: BlockRef(3, block_timestamp(3))}
        assert sorted(reader.block_calls) == [3, 5]
        assert ledger.get_stats()['cached_blocks'] == 2

    @pytest.mark.asyncio
    async def test_block_cache_evicts_oldest(self, reader, ledger):
        ledger.MAX_CACHED_BLOCKS = 2

        await ledger.fetch_block(1)
        await ledger.fetch_block(2)
        await ledger.fetch_block(1)  # refresh 1, so 2 is the oldest
        await ledger.fetch_block(3)

        assert list(ledger.block_cache) == [1, 3]

    @pytest.mark.asyncio
    async def test_failed_block_not_cached(self, reader, ledger):
        reader.fail_with = RuntimeError("rpc down")

        with pytest.raises(LedgerUnavailable):
            await ledger.fetch_blocks([7])

        assert 7 not in ledger.block_cache


class TestWeb3LedgerReader:
    """Tests for the web3.py backed reader."""

    @pytest.fixture
    def web3_reader(self):
        reader = Web3LedgerReader("http://localhost:8545", COORDINATOR.lower())
        reader.w3 = MagicMock()
        return reader

    def test_address_is_checksummed(self, web3_reader):
        assert web3_reader.contract_address == COORDINATOR

    @pytest.mark.asyncio
    async def test_get_logs_builds_filter(self, web3_reader):
        raw = requested_log(1, 100, log_index=4)
        web3_reader.w3.eth.get_logs = AsyncMock(return_value=[{
            'address': raw.address,
            'topics': [bytes.fromhex(topic[2:]) for topic in raw.topics],
            'data': bytes.fromhex(raw.data[2:]),
            'blockNumber': 100,
            'transactionHash': bytes.fromhex(raw.transaction_hash[2:]),
            'logIndex': 4,
        }])

        logs = await web3_reader.get_logs(EventKind.REQUESTED.signature, 90, 110)

        assert logs == [raw]
        web3_reader.w3.eth.get_logs.assert_awaited_once_with({
            'address': COORDINATOR,
            'topics': [Web3.keccak(text=EventKind.REQUESTED.signature)],
            'fromBlock': 90,
            'toBlock': 110,
        })

    @pytest.mark.asyncio
    async def test_get_logs_skips_malformed_receipts(self, web3_reader):
        raw = requested_log(1, 100)
        receipt = {
            'address': raw.address,
            'topics': list(raw.topics),
            'data': raw.data,
            'blockNumber': 100,
            'transactionHash': raw.transaction_hash,
            'logIndex': 0,
        }
        web3_reader.w3.eth.get_logs = AsyncMock(return_value=[
            {**receipt, 'transactionHash': None},
            receipt,
        ])

        logs = await web3_reader.get_logs(EventKind.REQUESTED.signature, 90, 110)

        assert logs == [raw]
        assert web3_reader.malformed_logs == 1

    @pytest.mark.asyncio
    async def test_get_block(self, web3_reader):
        web3_reader.w3.eth.get_block = AsyncMock(return_value={'number': 100, 'timestamp': 1_700_000_300})

        block = await web3_reader.get_block(100)

        assert block == BlockRef(number=100, timestamp=1_700_000_300)
