"""
Aggregate merging for randomness requests.

Folds decoded events into a map of RequestAggregate keyed by request id.
Events for each request are applied in (block_number, log_index) order, so
the result does not depend on which fetch returned first.
"""

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import replace

from .models import (
    CallbackFailure,
    DomainEvent,
    FailedEvent,
    FulfilledEvent,
    FulfillmentAggregate,
    RequestAggregate,
    RequestedEvent,
    RequestStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_DEADLINE_OFFSET = 7200  # seconds


def _event_order(event: DomainEvent) -> tuple[int, int, str]:
    return (event.block.number, event.log_index, event.transaction_hash)


class AggregateMerger:
    """Merges domain events into request aggregates.

    Status only ever moves from PENDING to FULFILLED or FAILED. Fulfilment
    and failure events without a known request are dropped as orphans.
    """

    def __init__(self, deadline_offset: int = DEFAULT_DEADLINE_OFFSET) -> None:
        """Initialize the merger.

        Args:
            deadline_offset: Seconds added to the creation timestamp to
                estimate a request's deadline
        """
        self.deadline_offset = deadline_offset

        # Metrics tracking
        self.orphans_dropped = 0
        self.duplicates_skipped = 0
        self.transitions_ignored = 0

    def merge(
        self,
        existing: Mapping[int, RequestAggregate],
        events: Iterable[DomainEvent]
    ) -> dict[int, RequestAggregate]:
        """
        Fold events into a copy of ``existing``.

        Args:
            existing: Previously merged aggregates (left untouched)
            events: Decoded events in any order

        Returns:
            New map of request id to aggregate
        """
        merged: dict[int, RequestAggregate] = dict(existing)

        # Partition by request id, skipping exact replays of the same log
        seen: set[tuple[str, int]] = set()
        partitions: dict[int, list[DomainEvent]] = defaultdict(list)
        for event in events:
            if event.dedup_key in seen:
                self.duplicates_skipped += 1
                continue
            seen.add(event.dedup_key)
            partitions[event.request_id].append(event)

        for request_id, request_events in partitions.items():
            aggregate = merged.get(request_id)
            for event in sorted(request_events, key=_event_order):
                aggregate = self._apply(aggregate, event)
            if aggregate is not None:
                merged[request_id] = aggregate

        return merged

    def _apply(
        self,
        aggregate: RequestAggregate | None,
        event: DomainEvent
    ) -> RequestAggregate | None:
        """Apply one event to the current aggregate for its request id."""
        if isinstance(event, RequestedEvent):
            if aggregate is not None:
                # Replay of the creating event
                return aggregate
            return RequestAggregate(
                id=event.request_id,
                requester=event.requester,
                deadline=event.block.timestamp + self.deadline_offset,
                callback_gas_limit=event.callback_gas_limit,
                fee_paid=event.fee_paid,
                effective_fee_per_gas=event.effective_fee_per_gas,
                status=RequestStatus.PENDING,
                transaction_hash=event.transaction_hash,
                block_number=event.block.number,
                log_index=event.log_index,
                timestamp=event.block.timestamp,
                pub_key_hash=event.pub_key_hash,
                round=event.round
            )

        # An outcome logged before the creating event cannot belong to it
        if aggregate is None or (event.block.number, event.log_index) < (aggregate.block_number, aggregate.log_index):
            self.orphans_dropped += 1
            logger.debug(
                f"Dropping orphan {type(event).__name__} for request {event.request_id} "
                f"(tx {event.transaction_hash[:10]}...)"
            )
            return aggregate

        if aggregate.status is not RequestStatus.PENDING:
            self.transitions_ignored += 1
            return aggregate

        if isinstance(event, FulfilledEvent):
            return replace(
                aggregate,
                status=RequestStatus.FULFILLED,
                fulfillment=FulfillmentAggregate(
                    request_id=event.request_id,
                    randomness=event.randomness,
                    callback_success=event.callback_success,
                    actual_gas_used=event.actual_gas_used,
                    transaction_hash=event.transaction_hash,
                    block_number=event.block.number,
                    timestamp=event.block.timestamp
                )
            )

        if isinstance(event, FailedEvent):
            return replace(
                aggregate,
                status=RequestStatus.FAILED,
                failure=CallbackFailure(
                    request_id=event.request_id,
                    retdata=event.retdata,
                    gas_limit=event.gas_limit,
                    actual_gas_used=event.actual_gas_used,
                    transaction_hash=event.transaction_hash,
                    block_number=event.block.number,
                    timestamp=event.block.timestamp
                )
            )

        raise TypeError(f"Unknown event type: {type(event).__name__}")

    def get_metrics(self) -> dict[str, int]:
        """Get current merge metrics."""
        return {
            "orphans_dropped": self.orphans_dropped,
            "duplicates_skipped": self.duplicates_skipped,
            "transitions_ignored": self.transitions_ignored,
        }


def merge(
    existing: Mapping[int, RequestAggregate],
    events: Iterable[DomainEvent],
    deadline_offset: int = DEFAULT_DEADLINE_OFFSET
) -> dict[int, RequestAggregate]:
    """Merge events into aggregates with a throwaway AggregateMerger."""
    return AggregateMerger(deadline_offset=deadline_offset).merge(existing, events)
