#!/usr/bin/env python3
"""Entry point for the Anyrand request indexer.

Runs one query over a block window and prints the resulting page. With
--watch it keeps running, re-printing the latest window whenever a new
randomness request is detected.
"""

import argparse
import asyncio
import json
import logging
import os
import sys

# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

# Get logger for this module
logger = logging.getLogger(__name__)

from anyrand_requests.config import IndexerConfig
from anyrand_requests.models import (
    QueryFilters,
    QueryParams,
    QuerySnapshot,
    RequestStatus,
    SortBy,
    SortDirection,
)
from anyrand_requests.orchestrator import RequestQueryOrchestrator


def print_snapshot(snapshot: QuerySnapshot) -> None:
    """Print a query snapshot as JSON on stdout."""
    window = snapshot.window
    output = {
        "status": snapshot.status.value,
        "error": str(snapshot.error) if snapshot.error else None,
        "window": {
            "current_block": window.current_block,
            "from_block": window.from_block,
            "to_block": window.to_block,
            "block_range": window.block_range,
            "window_page": window.window_page,
            "has_more_windows": window.has_more_windows,
        } if window else None,
        "page": {
            "current_page": snapshot.page.current_page,
            "page_size": snapshot.page.page_size,
            "total_items": snapshot.page.total_items,
            "has_next_page": snapshot.page.has_next_page,
            "has_previous_page": snapshot.page.has_previous_page,
            "data": [request.to_dict() for request in snapshot.page.data],
        } if snapshot.page else None,
    }
    print(json.dumps(output, indent=2))


async def watch(orchestrator: RequestQueryOrchestrator, params: QueryParams) -> None:
    """Keep the latest window up to date until interrupted."""
    async def on_new_request(events) -> None:
        for event in events:
            logger.info(
                f"New request {event.request_id} from {event.requester} "
                f"in block {event.block.number}"
            )
        print_snapshot(await orchestrator.query(params, window_page=0))

    orchestrator.start()
    unsubscribe = orchestrator.subscribe(on_new_request)
    try:
        while True:
            await asyncio.sleep(orchestrator.cache_config.stale_time)
            orchestrator.log_metrics()
    finally:
        unsubscribe()
        await orchestrator.close()


async def main() -> None:
    """Main entry point for the Anyrand request indexer.

    Parses arguments, loads configuration from environment and runs a
    single query, optionally followed by live watching.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Anyrand Request Indexer - Browse randomness requests by block window",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  RPC_URL            - RPC endpoint (default: https://sepolia-rpc.scroll.io)
  ANYRAND_ADDRESS    - Anyrand coordinator contract address (required)
  WINDOW_SIZE        - Blocks per window (default: 2400)
  GENESIS_BLOCK      - Earliest block to scan (default: 0)
  DEADLINE_OFFSET    - Seconds added to creation time for deadlines (default: 7200)
  CACHE_STALE_TIME   - Seconds a result stays fresh (default: 30)
  CACHE_GC_TIME      - Seconds an unused result is kept (default: 300)
  POLLING_INTERVAL   - Live update polling interval (default: 12)
  REQUEST_TIMEOUT    - RPC call timeout (default: 30)
  LOG_LEVEL          - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument("--window-page", type=int, default=0, help="Block window, 0 is the latest (default: 0)")
    parser.add_argument("--page", type=int, default=1, help="Result page within the window (default: 1)")
    parser.add_argument("--page-size", type=int, default=10, help="Results per page (default: 10)")
    parser.add_argument(
        "--sort-by",
        default=SortBy.TIMESTAMP.value,
        choices=[sort_by.value for sort_by in SortBy],
        help="Sort key (default: timestamp)"
    )
    parser.add_argument(
        "--sort-direction",
        default=SortDirection.DESC.value,
        choices=[direction.value for direction in SortDirection],
        help="Sort direction (default: desc)"
    )
    parser.add_argument(
        "--status",
        action="append",
        choices=[status.value for status in RequestStatus],
        help="Only show requests with this status (repeatable)"
    )
    parser.add_argument("--requester", help="Only show requests from this address")
    parser.add_argument(
        "--watch",
        action="store_true",
        default=False,
        help="Keep running and refresh the latest window on new requests"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)

    logger.info("=== Anyrand Request Indexer Starting ===")
    logger.info("Loading configuration from environment...")

    try:
        config: IndexerConfig = IndexerConfig.from_env()
        config.log_config()

        params = QueryParams(
            page=args.page,
            page_size=args.page_size,
            filters=QueryFilters(
                requester=args.requester,
                status=tuple(RequestStatus(status) for status in args.status) if args.status else None
            ),
            sort_by=SortBy(args.sort_by),
            sort_direction=SortDirection(args.sort_direction)
        )

        orchestrator = RequestQueryOrchestrator.from_config(config)
        snapshot = await orchestrator.query(params, window_page=args.window_page)
        print_snapshot(snapshot)

        if args.watch:
            await watch(orchestrator, params)
        elif snapshot.error is not None:
            sys.exit(1)

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables and arguments:")
        logger.error("  - RPC_URL: RPC endpoint (http or https)")
        logger.error("  - ANYRAND_ADDRESS: Anyrand coordinator contract address")
        logger.error("  - WINDOW_SIZE: Blocks per window (1-100000)")
        logger.error("  - CACHE_STALE_TIME / CACHE_GC_TIME: gc time must be >= stale time")
        logger.error("  - --page / --page-size: must be at least 1")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("\nReceived interrupt signal, shutting down gracefully...")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
