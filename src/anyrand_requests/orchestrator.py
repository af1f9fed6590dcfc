"""
Query orchestration for randomness requests.

This module contains the orchestrator that owns the query cache, runs the
fetch → decode → merge → view pipeline for a block window, and wires live
updates and TTL expiry into cache invalidation.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Optional

from .config import CacheConfig, IndexerConfig, WindowConfig
from .errors import LedgerUnavailable
from .events import EventDecoder, EventKind
from .ledger import LedgerAdapter, LedgerReader, Web3LedgerReader
from .merger import AggregateMerger
from .models import (
    BlockWindowInfo,
    PageResult,
    QueryFilters,
    QueryKey,
    QueryParams,
    QuerySnapshot,
    QueryStatus,
    RawLog,
    RequestAggregate,
    RequestStats,
    RequestStatus,
    WindowCursor,
)
from .subscriber import LiveUpdateSubscriber, NewRequestCallback
from .view import apply_view, awaiting_deadline, fulfillable, request_stats
from .window import select_window

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """Result of one pipeline execution for a query key.

    Entries are never modified in place; the cache swaps whole entries.
    """

    status: QueryStatus
    page: PageResult | None
    aggregates: Mapping[int, RequestAggregate]
    error: Exception | None
    window: WindowCursor | None
    current_block: int | None
    generation: int
    updated_at: float
    stale: bool = False


class RequestQueryOrchestrator:
    """
    Runs and caches randomness request queries over block windows.

    Every pipeline execution is tagged with a generation number. Only the
    result of the most recent generation is stored; anything that resolves
    after a newer execution started is discarded.
    """

    def __init__(
        self,
        ledger: LedgerAdapter,
        window_config: WindowConfig | None = None,
        cache_config: CacheConfig | None = None,
        polling_interval: float = 12,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the orchestrator.

        Args:
            ledger: Ledger adapter used for every chain read
            window_config: Block window and deadline settings
            cache_config: Cache freshness and garbage collection settings
            polling_interval: Seconds between live update polls
            clock: Monotonic clock used for cache ages
        """
        self.ledger = ledger
        self.window_config = window_config or WindowConfig()
        self.cache_config = cache_config or CacheConfig()

        self.decoder = EventDecoder()
        self.merger = AggregateMerger(deadline_offset=self.window_config.deadline_offset)
        self.subscriber = LiveUpdateSubscriber(
            ledger,
            self.decoder,
            polling_interval,
            max_block_range=self.window_config.window_size
        )

        self._clock = clock
        self._cache: dict[QueryKey, CacheEntry] = {}
        self._generation = 0
        self._in_flight: dict[QueryKey, int] = {}
        self._active_key: Optional[QueryKey] = None
        self._anchor_height: Optional[int] = None

        self._refresh_task: Optional[asyncio.Task] = None
        self._refetch_tasks: set[asyncio.Task] = set()

        # Metrics tracking
        self.executions = 0
        self.failures = 0
        self.stale_generations = 0

    @classmethod
    def from_config(
        cls,
        config: IndexerConfig,
        reader: LedgerReader | None = None
    ) -> "RequestQueryOrchestrator":
        """
        Create an orchestrator from an IndexerConfig.

        Args:
            config: Indexer configuration
            reader: Ledger reader to use instead of a Web3LedgerReader

        Returns:
            Configured RequestQueryOrchestrator
        """
        if reader is None:
            reader = Web3LedgerReader(
                rpc_url=config.ledger.rpc_url,
                contract_address=config.ledger.contract_address,
                request_timeout=config.monitoring.request_timeout
            )
        ledger = LedgerAdapter(reader, request_timeout=config.monitoring.request_timeout)
        return cls(
            ledger,
            window_config=config.window,
            cache_config=config.cache,
            polling_interval=config.monitoring.polling_interval
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def query(self, params: QueryParams | None = None, window_page: int = 0) -> QuerySnapshot:
        """
        Query one result page of one block window.

        A fresh cached result is returned without touching the ledger.
        Otherwise the pipeline runs and the resulting snapshot is returned;
        on ledger failure the snapshot carries the error together with the
        last good page, if any.

        Args:
            params: Result-set paging, filter and sort parameters
            window_page: Block window, 0 being the most recent

        Returns:
            Snapshot of the query key after the call
        """
        key = QueryKey(window_page=window_page, params=params or QueryParams())
        if key != self._active_key:
            logger.debug(f"Active query changed to window page {window_page}")
        self._active_key = key
        self._collect_garbage()

        entry = self._cache.get(key)
        if entry is not None and self._is_fresh(entry):
            return self.snapshot(key)

        await self._execute(key)
        return self.snapshot(key)

    async def refetch(self) -> QuerySnapshot:
        """Re-run the pipeline for the active query, ignoring freshness."""
        if self._active_key is None:
            raise RuntimeError("No query has been run yet")
        key = self._active_key
        await self._execute(key)
        return self.snapshot(key)

    def snapshot(self, key: QueryKey | None = None) -> QuerySnapshot:
        """Current state of a query key (the active one by default)."""
        key = key or self._active_key
        if key is None:
            raise RuntimeError("No query has been run yet")

        is_loading = key in self._in_flight
        entry = self._cache.get(key)
        if entry is None:
            return QuerySnapshot(
                key=key,
                status=QueryStatus.FETCHING if is_loading else QueryStatus.IDLE,
                page=None,
                error=None,
                is_loading=is_loading,
                window=None
            )

        return QuerySnapshot(
            key=key,
            status=QueryStatus.FETCHING if is_loading else entry.status,
            page=entry.page,
            error=entry.error,
            is_loading=is_loading,
            window=self._window_info(key.window_page, entry)
        )

    @property
    def data(self) -> PageResult | None:
        return self.snapshot().page if self._active_key else None

    @property
    def error(self) -> Exception | None:
        return self.snapshot().error if self._active_key else None

    @property
    def is_loading(self) -> bool:
        return self._active_key is not None and self._active_key in self._in_flight

    def block_window_info(self) -> BlockWindowInfo | None:
        """Block range of the active query, for display."""
        if self._active_key is None:
            return None
        entry = self._cache.get(self._active_key)
        if entry is None:
            return None
        return self._window_info(self._active_key.window_page, entry)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _execute(self, key: QueryKey) -> None:
        self._generation += 1
        generation = self._generation
        self._in_flight[key] = generation
        self.executions += 1

        try:
            entry = await self._run_pipeline(key, generation)
        except LedgerUnavailable as e:
            entry = self._failed_entry(key, e, generation)
        finally:
            if self._in_flight.get(key) == generation:
                del self._in_flight[key]

        if generation != self._generation:
            self.stale_generations += 1
            logger.debug(
                f"Discarding result of generation {generation} "
                f"(current generation is {self._generation})"
            )
            return

        self._commit(key, entry)

    async def _run_pipeline(self, key: QueryKey, generation: int) -> CacheEntry:
        if key.window_page == 0 or self._anchor_height is None:
            current_block = await self.ledger.current_height()
        else:
            current_block = self._anchor_height

        window = select_window(
            current_block,
            key.window_page,
            self.window_config.window_size,
            self.window_config.genesis_block
        )

        raw_logs = await self._fetch_window_logs(window)
        blocks = await self.ledger.fetch_blocks(log.block_number for log in raw_logs)
        events = self.decoder.decode_batch(raw_logs, blocks)
        aggregates = self.merger.merge({}, events)
        page = apply_view(aggregates.values(), key.params)

        logger.info(
            f"Window page {key.window_page} (blocks {window.from_block}-{window.to_block}): "
            f"{len(raw_logs)} logs, {len(aggregates)} requests, "
            f"{page.total_items} matching"
        )

        return CacheEntry(
            status=QueryStatus.READY,
            page=page,
            aggregates=MappingProxyType(aggregates),
            error=None,
            window=window,
            current_block=current_block,
            generation=generation,
            updated_at=self._clock()
        )

    async def _fetch_window_logs(self, window: WindowCursor) -> list[RawLog]:
        """Fetch the three event kinds concurrently; all must succeed."""
        tasks = [
            asyncio.ensure_future(self.ledger.fetch_logs(kind, window))
            for kind in EventKind
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise
        return [log for logs in results for log in logs]

    def _failed_entry(self, key: QueryKey, error: LedgerUnavailable, generation: int) -> CacheEntry:
        self.failures += 1
        previous = self._cache.get(key)

        if previous is not None and previous.page is not None:
            logger.error(f"Query for window page {key.window_page} failed, keeping cached data: {error}")
        else:
            logger.error(f"Query for window page {key.window_page} failed: {error}")

        return CacheEntry(
            status=QueryStatus.FAILED,
            page=previous.page if previous else None,
            aggregates=previous.aggregates if previous else MappingProxyType({}),
            error=error,
            window=previous.window if previous else None,
            current_block=previous.current_block if previous else None,
            generation=generation,
            updated_at=self._clock()
        )

    def _commit(self, key: QueryKey, entry: CacheEntry) -> None:
        if entry.status is QueryStatus.READY and (key.window_page == 0 or self._anchor_height is None):
            if self._anchor_height is not None and entry.current_block != self._anchor_height:
                # Older windows were cut from the previous anchor
                for other_key, other_entry in list(self._cache.items()):
                    if other_key.window_page > 0:
                        self._cache[other_key] = replace(other_entry, stale=True)
            self._anchor_height = entry.current_block

        self._cache[key] = entry

    # ------------------------------------------------------------------
    # Cache policy
    # ------------------------------------------------------------------

    def _is_fresh(self, entry: CacheEntry) -> bool:
        return not entry.stale and self._clock() - entry.updated_at < self.cache_config.stale_time

    def _collect_garbage(self) -> None:
        now = self._clock()
        expired = [
            key for key, entry in self._cache.items()
            if key != self._active_key
            and key not in self._in_flight
            and now - entry.updated_at > self.cache_config.gc_time
        ]
        for key in expired:
            del self._cache[key]
        if expired:
            logger.debug(f"Evicted {len(expired)} unreferenced cache entries")

    def invalidate(self, key: QueryKey) -> None:
        """
        Mark a cache entry stale; the active key is refetched in the background.

        Must be called from within a running event loop.
        """
        entry = self._cache.get(key)
        if entry is not None:
            self._cache[key] = replace(entry, stale=True)
        if key == self._active_key:
            self._schedule_refetch(key)

    def invalidate_latest_window(self) -> None:
        """Invalidate every query over window page 0."""
        keys = {key for key in self._cache if key.window_page == 0}
        if self._active_key is not None and self._active_key.window_page == 0:
            keys.add(self._active_key)
        for key in keys:
            self.invalidate(key)

    def _schedule_refetch(self, key: QueryKey) -> None:
        task = asyncio.create_task(self._execute(key))
        self._refetch_tasks.add(task)
        task.add_done_callback(self._on_refetch_done)

    def _on_refetch_done(self, task: asyncio.Task) -> None:
        self._refetch_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background refetch failed", exc_info=task.exception())

    async def _refresh_loop(self) -> None:
        """Invalidate the active query as soon as its cached result expires."""
        stale_time = self.cache_config.stale_time
        while True:
            key = self._active_key
            entry = self._cache.get(key) if key is not None else None
            if entry is None or key in self._in_flight:
                await asyncio.sleep(stale_time / 4)
                continue

            remaining = entry.updated_at + stale_time - self._clock()
            if remaining > 0 and not entry.stale:
                await asyncio.sleep(remaining)
                continue

            logger.debug(f"Cached result for window page {key.window_page} expired, refreshing")
            self.invalidate(key)
            if self._refetch_tasks:
                # asyncio.wait leaves the refetches running if this loop is cancelled
                await asyncio.wait(set(self._refetch_tasks))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the TTL refresh task."""
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    def subscribe(self, on_new_request: NewRequestCallback | None = None) -> Callable[[], None]:
        """
        Watch for new randomness requests.

        Each notification invalidates the most recent window, then calls
        ``on_new_request`` with the new events.

        Args:
            on_new_request: Optional sync or async callback

        Returns:
            Function that unsubscribes; no callback fires after it returns
        """
        async def handle_new_requests(events) -> None:
            logger.info(f"{len(events)} new request(s) detected, refreshing latest window")
            self.invalidate_latest_window()
            if on_new_request is not None:
                result = on_new_request(events)
                if inspect.isawaitable(result):
                    await result

        subscription = self.subscriber.subscribe(handle_new_requests)
        return subscription.close

    async def close(self) -> None:
        """Stop live updates and cancel background tasks."""
        await self.subscriber.stop()

        tasks = list(self._refetch_tasks)
        if self._refresh_task is not None:
            tasks.append(self._refresh_task)
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._refresh_task = None
        self._refetch_tasks.clear()

    # ------------------------------------------------------------------
    # Helpers over the active window
    # ------------------------------------------------------------------

    def _active_aggregates(self) -> Mapping[int, RequestAggregate]:
        if self._active_key is None:
            return {}
        entry = self._cache.get(self._active_key)
        return entry.aggregates if entry else {}

    def get_request(self, request_id: int) -> RequestAggregate | None:
        """Look up a request in the active window."""
        return self._active_aggregates().get(request_id)

    def get_user_requests(self, address: str) -> PageResult:
        """Requests of one requester in the active window, with the active sort and paging."""
        params = self._active_key.params if self._active_key else QueryParams()
        params = replace(params, filters=QueryFilters(requester=address))
        return apply_view(self._active_aggregates().values(), params)

    def get_pending_requests(self) -> PageResult:
        """Pending requests in the active window, with the active sort and paging."""
        params = self._active_key.params if self._active_key else QueryParams()
        params = replace(params, filters=QueryFilters(status=(RequestStatus.PENDING,)))
        return apply_view(self._active_aggregates().values(), params)

    def get_fulfillable_requests(self, now: int | None = None) -> list[RequestAggregate]:
        """Pending requests past their deadline in the active window."""
        return fulfillable(self._active_aggregates().values(), now)

    def get_awaiting_requests(self, now: int | None = None) -> list[RequestAggregate]:
        """Pending requests in the active window whose deadline has not passed."""
        return awaiting_deadline(self._active_aggregates().values(), now)

    def get_stats(self) -> RequestStats:
        """Statistics over every request in the active window."""
        return request_stats(self._active_aggregates().values())

    def _window_info(self, window_page: int, entry: CacheEntry) -> BlockWindowInfo | None:
        if entry.window is None or entry.current_block is None:
            return None
        return BlockWindowInfo(
            current_block=entry.current_block,
            from_block=entry.window.from_block,
            to_block=entry.window.to_block,
            block_range=entry.window.block_range,
            window_page=window_page,
            has_more_windows=not entry.window.is_last_page
        )

    def get_metrics(self) -> dict[str, int]:
        """
        Get current orchestrator metrics.

        Returns:
            Dictionary combining pipeline, decoder, merger and ledger metrics
        """
        return {
            'executions': self.executions,
            'failures': self.failures,
            'stale_generations': self.stale_generations,
            'cache_size': len(self._cache),
            **self.decoder.get_metrics(),
            **self.merger.get_metrics(),
            **self.ledger.get_stats(),
        }

    def log_metrics(self) -> None:
        """Log current metrics."""
        metrics = self.get_metrics()
        logger.info(
            f"Orchestrator Metrics: "
            f"Executions={metrics['executions']}, "
            f"Failures={metrics['failures']}, "
            f"Stale={metrics['stale_generations']}, "
            f"Decoded={metrics['events_decoded']}, "
            f"Invalid={metrics['events_invalid']}, "
            f"Orphans={metrics['orphans_dropped']}, "
            f"Cache={metrics['cache_size']}"
        )
