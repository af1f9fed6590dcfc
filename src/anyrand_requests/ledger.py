"""
Read-only ledger access for the request aggregation engine.

The engine consumes any object implementing LedgerReader. Web3LedgerReader
is the web3.py implementation; LedgerAdapter wraps a reader with timeouts,
typed errors and a block timestamp cache.
"""

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Iterable
from typing import Protocol, TypeVar

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from .errors import LedgerUnavailable
from .events import EventKind
from .models import BlockRef, RawLog, WindowCursor

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LedgerReader(Protocol):
    """Read-only blockchain query capability."""

    async def current_block_height(self) -> int: ...

    async def get_logs(self, event_signature: str, from_block: int, to_block: int) -> list[RawLog]: ...

    async def get_block(self, number: int) -> BlockRef: ...


class Web3LedgerReader:
    """
    LedgerReader backed by an AsyncWeb3 HTTP connection.

    Logs are filtered by the coordinator address and topic0 of the requested
    event signature.
    """

    def __init__(self, rpc_url: str, contract_address: str, request_timeout: int = 30):
        """
        Initialize the reader.

        Args:
            rpc_url: HTTP RPC endpoint URL
            contract_address: Address of the coordinator contract
            request_timeout: HTTP request timeout in seconds
        """
        self.rpc_url = rpc_url
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.w3 = AsyncWeb3(AsyncHTTPProvider(
            rpc_url,
            request_kwargs={'timeout': request_timeout}
        ))
        self.malformed_logs = 0

    async def current_block_height(self) -> int:
        return await self.w3.eth.block_number

    async def get_logs(self, event_signature: str, from_block: int, to_block: int) -> list[RawLog]:
        topic = Web3.keccak(text=event_signature)
        logs = await self.w3.eth.get_logs({
            'address': self.contract_address,
            'topics': [topic],
            'fromBlock': from_block,
            'toBlock': to_block,
        })
        raw_logs = []
        for log in logs:
            try:
                raw_logs.append(RawLog.from_receipt(log))
            except (TypeError, ValueError) as e:
                self.malformed_logs += 1
                logger.warning(f"Skipping malformed {event_signature} log: {e}")
        return raw_logs

    async def get_block(self, number: int) -> BlockRef:
        block = await self.w3.eth.get_block(number)
        return BlockRef(number=block['number'], timestamp=block['timestamp'])


class LedgerAdapter:
    """Wraps a LedgerReader with bounded timeouts and typed failures.

    Calls are never retried here; a failure or timeout is raised as
    LedgerUnavailable and the orchestrator decides when to try again.
    """

    MAX_CACHED_BLOCKS: int = 10_000

    def __init__(self, reader: LedgerReader, request_timeout: float = 30) -> None:
        """Initialize the adapter.

        Args:
            reader: The underlying ledger reader
            request_timeout: Upper bound in seconds for each call
        """
        self.reader = reader
        self.request_timeout = request_timeout

        # Blocks are treated as final, so timestamps can be cached
        self.block_cache: OrderedDict[int, BlockRef] = OrderedDict()

        self.calls = 0
        self.failures = 0

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        self.calls += 1
        try:
            return await asyncio.wait_for(awaitable, timeout=self.request_timeout)
        except asyncio.TimeoutError:
            self.failures += 1
            logger.warning(f"Ledger call {operation} timed out after {self.request_timeout}s")
            raise LedgerUnavailable(operation, f"timed out after {self.request_timeout}s") from None
        except Exception as e:
            self.failures += 1
            logger.warning(f"Ledger call {operation} failed: {e}")
            raise LedgerUnavailable(operation, str(e)) from e

    async def current_height(self) -> int:
        return await self._call("current_block_height", self.reader.current_block_height())

    async def fetch_logs(self, kind: EventKind, window: WindowCursor) -> list[RawLog]:
        """Fetch all logs of one event kind inside a block window."""
        logs = await self._call(
            f"get_logs({kind.name})",
            self.reader.get_logs(kind.signature, window.from_block, window.to_block)
        )
        logger.debug(
            f"Fetched {len(logs)} {kind.name} logs in blocks "
            f"{window.from_block}-{window.to_block}"
        )
        return logs

    async def fetch_block(self, number: int) -> BlockRef:
        """Fetch a block reference, using the cache when possible."""
        if number in self.block_cache:
            self.block_cache.move_to_end(number)
            return self.block_cache[number]

        block = await self._call(f"get_block({number})", self.reader.get_block(number))

        if len(self.block_cache) >= self.MAX_CACHED_BLOCKS:
            self.block_cache.popitem(last=False)
        self.block_cache[number] = block
        return block

    async def fetch_blocks(self, numbers: Iterable[int]) -> dict[int, BlockRef]:
        """Fetch several block references concurrently."""
        unique = sorted(set(numbers))
        blocks = await asyncio.gather(*(self.fetch_block(number) for number in unique))
        return dict(zip(unique, blocks))

    def get_stats(self) -> dict[str, int]:
        return {
            'ledger_calls': self.calls,
            'ledger_failures': self.failures,
            'cached_blocks': len(self.block_cache),
        }
