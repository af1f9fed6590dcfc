"""
Filtering, sorting and paging over merged requests.

Everything here is pure: no I/O and no mutation of the inputs. Result-set
pages are independent of block-window pages.
"""

import time
from collections.abc import Callable, Iterable

from .models import (
    PageResult,
    QueryFilters,
    QueryParams,
    RequestAggregate,
    RequestStats,
    RequestStatus,
    SortBy,
    SortDirection,
)

SORT_KEYS: dict[SortBy, Callable[[RequestAggregate], int]] = {
    SortBy.TIMESTAMP: lambda request: request.timestamp,
    SortBy.FEE: lambda request: request.fee_paid,
    SortBy.DEADLINE: lambda request: request.deadline,
}


def matches_filters(request: RequestAggregate, filters: QueryFilters) -> bool:
    """Check a request against every supplied predicate."""
    if filters.requester is not None and request.requester.lower() != filters.requester.lower():
        return False
    if filters.status and request.status not in filters.status:
        return False
    if filters.from_timestamp is not None and request.timestamp < filters.from_timestamp:
        return False
    if filters.to_timestamp is not None and request.timestamp > filters.to_timestamp:
        return False
    if filters.min_fee is not None and request.fee_paid < filters.min_fee:
        return False
    if filters.max_fee is not None and request.fee_paid > filters.max_fee:
        return False
    return True


def sort_requests(
    requests: Iterable[RequestAggregate],
    sort_by: SortBy,
    sort_direction: SortDirection
) -> list[RequestAggregate]:
    """Sort by the selected key; ties are always broken by ascending id."""
    # Both sorts are stable, and reverse=True keeps equal keys in id order
    by_id = sorted(requests, key=lambda request: request.id)
    return sorted(
        by_id,
        key=SORT_KEYS[sort_by],
        reverse=sort_direction is SortDirection.DESC
    )


def apply_view(requests: Iterable[RequestAggregate], params: QueryParams) -> PageResult:
    """
    Filter, sort and slice requests into one result page.

    Args:
        requests: Merged requests, in any order
        params: Paging, filter and sort parameters

    Returns:
        PageResult for ``params.page``
    """
    filtered = [request for request in requests if matches_filters(request, params.filters)]
    ordered = sort_requests(filtered, params.sort_by, params.sort_direction)

    start = (params.page - 1) * params.page_size
    end = params.page * params.page_size

    return PageResult(
        data=tuple(ordered[start:end]),
        total_items=len(filtered),
        current_page=params.page,
        page_size=params.page_size,
        has_next_page=end < len(filtered),
        has_previous_page=params.page > 1
    )


def can_fulfill(request: RequestAggregate, now: int | None = None) -> bool:
    """A request can be fulfilled once it is pending and past its deadline."""
    current = int(time.time()) if now is None else now
    return request.status is RequestStatus.PENDING and request.deadline < current


def fulfillable(requests: Iterable[RequestAggregate], now: int | None = None) -> list[RequestAggregate]:
    """Pending requests whose deadline has passed, oldest deadline first."""
    current = int(time.time()) if now is None else now
    ready = [request for request in requests if can_fulfill(request, current)]
    return sorted(ready, key=lambda request: (request.deadline, request.id))


def awaiting_deadline(requests: Iterable[RequestAggregate], now: int | None = None) -> list[RequestAggregate]:
    """Pending requests whose deadline has not passed yet, soonest first."""
    current = int(time.time()) if now is None else now
    waiting = [
        request for request in requests
        if request.status is RequestStatus.PENDING and request.deadline >= current
    ]
    return sorted(waiting, key=lambda request: (request.deadline, request.id))


def request_stats(requests: Iterable[RequestAggregate]) -> RequestStats:
    """Summarize a set of requests."""
    requests = list(requests)
    total = len(requests)
    pending = sum(1 for request in requests if request.status is RequestStatus.PENDING)
    fulfilled = sum(1 for request in requests if request.status is RequestStatus.FULFILLED)
    failed = sum(1 for request in requests if request.status is RequestStatus.FAILED)

    return RequestStats(
        total=total,
        pending=pending,
        fulfilled=fulfilled,
        failed=failed,
        success_rate=(fulfilled / total) * 100 if total else 0.0,
        total_fee_paid=sum(request.fee_paid for request in requests),
        avg_callback_gas_limit=(
            sum(request.callback_gas_limit for request in requests) // total if total else 0
        )
    )
