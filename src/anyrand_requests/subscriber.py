"""
Polling-based live update subscriber for new randomness requests.

"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional

from .errors import LedgerUnavailable
from .events import EventDecoder, EventKind
from .ledger import LedgerAdapter
from .models import RequestedEvent, WindowCursor

NewRequestCallback = Callable[[list[RequestedEvent]], Optional[Awaitable[None]]]


class Subscription:
    """Handle returned by LiveUpdateSubscriber.subscribe.

    Once closed, the callback is never invoked again.
    """

    def __init__(self, subscriber: "LiveUpdateSubscriber", callback: NewRequestCallback) -> None:
        self._subscriber = subscriber
        self._callback = callback
        self.closed = False

    async def _deliver(self, events: list[RequestedEvent]) -> None:
        if self.closed:
            return
        result = self._callback(events)
        if inspect.isawaitable(result):
            await result

    def close(self) -> None:
        """Stop receiving callbacks."""
        if self.closed:
            return
        self.closed = True
        self._subscriber._remove(self)


class LiveUpdateSubscriber:
    """
    Polls the chain tip for new RandomnessRequested logs.

    The subscriber only reports new requests; it never merges them. Callers
    are expected to re-run their query pipeline on notification.
    """

    def __init__(
        self,
        ledger: LedgerAdapter,
        decoder: EventDecoder | None = None,
        polling_interval: float = 12,
        max_block_range: int = 2400
    ):
        """
        Initialize the subscriber.

        Args:
            ledger: Ledger adapter used for height, log and block lookups
            decoder: Decoder for RandomnessRequested logs
            polling_interval: Seconds between polls of the chain tip
            max_block_range: Most blocks scanned by a single poll
        """
        self.ledger = ledger
        self.decoder = decoder or EventDecoder()
        self.polling_interval = polling_interval
        self.max_block_range = max_block_range

        # State tracking
        self.last_processed_block: Optional[int] = None
        self._subscriptions: list[Subscription] = []
        self._task: Optional[asyncio.Task] = None

        # Setup logging
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, callback: NewRequestCallback) -> Subscription:
        """
        Register a callback for newly requested randomness.

        The polling task is started on the first subscription and must be
        called from within a running event loop.

        Args:
            callback: Sync or async function receiving the new events

        Returns:
            Subscription handle; close it to unsubscribe
        """
        subscription = Subscription(self, callback)
        self._subscriptions.append(subscription)
        if not self.is_running:
            self._task = asyncio.create_task(self._poll_loop())
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        if not self._subscriptions and self._task is not None:
            self.logger.info("Last subscription closed, stopping polling")
            self._task.cancel()
            self._task = None
            # Blocks mined while nobody listens are never reported
            self.last_processed_block = None

    async def start_from_tip(self) -> None:
        """Start scanning at the current chain tip."""
        current_block = await self.ledger.current_height()
        self.last_processed_block = current_block - 1
        self.logger.info(f"Watching for RandomnessRequested events from block {current_block}")

    async def poll_once(self) -> list[RequestedEvent]:
        """
        Scan blocks since the last processed block and notify subscribers.

        Returns:
            Newly requested events found in this poll
        """
        if self.last_processed_block is None:
            await self.start_from_tip()

        current_block = await self.ledger.current_height()

        # Skip if no new blocks
        if current_block <= self.last_processed_block:
            return []

        from_block = self.last_processed_block + 1
        to_block = min(current_block, from_block + self.max_block_range - 1)
        if to_block < current_block:
            self.logger.info(
                f"Catching up: scanning blocks {from_block}-{to_block} "
                f"of {current_block - self.last_processed_block} pending"
            )
        window = WindowCursor(from_block=from_block, to_block=to_block, page_index=0)

        raw_logs = await self.ledger.fetch_logs(EventKind.REQUESTED, window)
        blocks = await self.ledger.fetch_blocks(log.block_number for log in raw_logs)
        events = [
            event for event in self.decoder.decode_batch(raw_logs, blocks)
            if isinstance(event, RequestedEvent)
        ]

        # Update last processed block
        self.last_processed_block = to_block

        if events:
            self.logger.info(
                f"Found {len(events)} new RandomnessRequested events "
                f"in blocks {from_block}-{to_block}"
            )
            for subscription in list(self._subscriptions):
                try:
                    await subscription._deliver(events)
                except Exception as e:
                    self.logger.error(f"Subscriber callback failed: {e}", exc_info=True)

        return events

    async def _poll_loop(self) -> None:
        self.logger.info(f"Starting live polling every {self.polling_interval} seconds")
        try:
            if self.last_processed_block is None:
                await self.start_from_tip()
        except LedgerUnavailable as e:
            self.logger.error(f"Could not read chain tip: {e}")

        while self._subscriptions:
            try:
                await asyncio.sleep(self.polling_interval)
                await self.poll_once()
            except asyncio.CancelledError:
                self.logger.info("Polling cancelled")
                raise
            except LedgerUnavailable as e:
                # last_processed_block is left as is, the next poll rescans
                self.logger.error(f"Error polling for new requests: {e}")

    async def stop(self) -> None:
        """Close every subscription and stop the polling loop."""
        self.logger.info("Stopping live update polling")
        task = self._task
        for subscription in list(self._subscriptions):
            subscription.close()
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass  # Expected when cancelling
        self._task = None

    def get_status(self) -> dict[str, Any]:
        """
        Get current status of the subscriber.

        Returns:
            Dictionary with status information
        """
        return {
            "is_running": self.is_running,
            "last_processed_block": self.last_processed_block,
            "subscriptions": len(self._subscriptions),
            "polling_interval": self.polling_interval,
        }
