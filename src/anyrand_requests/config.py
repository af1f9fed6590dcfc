#!/usr/bin/env python3
"""Configuration management for the Anyrand request indexer.

This module provides type-safe configuration dataclasses with validation.
Configuration is loaded from environment variables with sensible defaults
where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

from web3 import Web3

# Get logger for this module
logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LedgerConfig:
    """Configuration for the chain the coordinator is deployed on.

    Attributes:
        rpc_url: HTTP(S) RPC endpoint
        contract_address: Checksummed address of the Anyrand coordinator
    """

    rpc_url: str
    contract_address: str

    def __post_init__(self) -> None:
        """Validate ledger configuration."""
        if not self.rpc_url:
            raise ValueError("RPC URL is required (RPC_URL)")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ('http', 'https'):
            raise ValueError(
                f"Invalid RPC URL scheme: {parsed.scheme}. "
                "Expected http or https"
            )

        if not self.contract_address:
            raise ValueError(
                "Coordinator contract address is required (ANYRAND_ADDRESS)"
            )

        if not Web3.is_address(self.contract_address):
            raise ValueError(
                f"Invalid coordinator contract address: {self.contract_address}"
            )

        # Convert to checksum address
        checksummed = Web3.to_checksum_address(self.contract_address)
        if checksummed != self.contract_address:
            # Use object.__setattr__ since dataclass is frozen
            object.__setattr__(self, 'contract_address', checksummed)


@dataclass(frozen=True, slots=True)
class WindowConfig:
    """Configuration for backward block-window paging."""
    window_size: int = 2400  # blocks per window (~2h at 3s blocks)
    genesis_block: int = 0  # earliest block worth scanning
    deadline_offset: int = 7200  # seconds added to creation time for the deadline estimate

    def __post_init__(self) -> None:
        """Validate window configuration."""
        if self.window_size <= 0:
            raise ValueError(f"Window size must be positive, got {self.window_size}")
        if self.window_size > 100_000:
            raise ValueError(f"Window size too large (max 100000), got {self.window_size}")
        if self.genesis_block < 0:
            raise ValueError(f"Genesis block must be non-negative, got {self.genesis_block}")
        if self.deadline_offset < 0:
            raise ValueError(f"Deadline offset must be non-negative, got {self.deadline_offset}")


@dataclass(frozen=True, slots=True)
class CacheConfig:
    """Configuration for the in-memory query cache."""
    stale_time: int = 30  # seconds a cached result counts as fresh
    gc_time: int = 300  # seconds an unreferenced entry is kept

    def __post_init__(self) -> None:
        """Validate cache configuration."""
        if self.stale_time <= 0:
            raise ValueError(f"Stale time must be positive, got {self.stale_time}")
        if self.gc_time < self.stale_time:
            raise ValueError(
                f"GC time ({self.gc_time}s) must not be shorter than "
                f"stale time ({self.stale_time}s)"
            )


@dataclass(frozen=True, slots=True)
class MonitoringConfig:
    """Configuration for live polling and RPC timeouts."""
    polling_interval: int = 12  # seconds between tip polls
    request_timeout: int = 30  # RPC call timeout in seconds

    def __post_init__(self) -> None:
        """Validate monitoring configuration."""
        if self.polling_interval <= 0:
            raise ValueError(f"Polling interval must be positive, got {self.polling_interval}")
        if self.polling_interval > 300:
            raise ValueError(f"Polling interval too long (max 300s), got {self.polling_interval}")

        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ValueError(f"Request timeout too long (max 120s), got {self.request_timeout}")


@dataclass(frozen=True, slots=True)
class IndexerConfig:
    """Main configuration for the request indexer.

    Attributes:
        ledger: Chain endpoint and coordinator address
        window: Block window paging settings
        cache: Query cache freshness settings
        monitoring: Live polling and timeout settings
    """

    ledger: LedgerConfig
    window: WindowConfig = field(default_factory=WindowConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    @classmethod
    def from_env(cls) -> "IndexerConfig":
        """Load configuration from environment variables.

        Returns:
            IndexerConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        rpc_url = os.environ.get(
            "RPC_URL",
            "https://sepolia-rpc.scroll.io"  # Scroll Sepolia public RPC
        )

        contract_address = os.environ.get("ANYRAND_ADDRESS", "")
        if not contract_address:
            raise ValueError(
                "ANYRAND_ADDRESS environment variable is required. "
                "This should be the Anyrand coordinator contract address."
            )

        ledger_config = LedgerConfig(
            rpc_url=rpc_url,
            contract_address=contract_address
        )

        window_config = WindowConfig(
            window_size=int(os.environ.get("WINDOW_SIZE", "2400")),
            genesis_block=int(os.environ.get("GENESIS_BLOCK", "0")),
            deadline_offset=int(os.environ.get("DEADLINE_OFFSET", "7200"))
        )

        cache_config = CacheConfig(
            stale_time=int(os.environ.get("CACHE_STALE_TIME", "30")),
            gc_time=int(os.environ.get("CACHE_GC_TIME", "300"))
        )

        monitoring_config = MonitoringConfig(
            polling_interval=int(os.environ.get("POLLING_INTERVAL", "12")),
            request_timeout=int(os.environ.get("REQUEST_TIMEOUT", "30"))
        )

        return cls(
            ledger=ledger_config,
            window=window_config,
            cache=cache_config,
            monitoring=monitoring_config
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Anyrand Request Indexer Configuration")
        logger.info("=" * 60)

        logger.info("Ledger:")
        logger.info(f"  RPC URL: {self.ledger.rpc_url}")
        logger.info(f"  Coordinator: {self.ledger.contract_address}")

        logger.info("Block Windows:")
        logger.info(f"  Window Size: {self.window.window_size} blocks")
        logger.info(f"  Genesis Block: {self.window.genesis_block}")
        logger.info(f"  Deadline Offset: {self.window.deadline_offset} seconds")

        logger.info("Cache:")
        logger.info(f"  Stale Time: {self.cache.stale_time} seconds")
        logger.info(f"  GC Time: {self.cache.gc_time} seconds")

        logger.info("Monitoring Settings:")
        logger.info(f"  Polling Interval: {self.monitoring.polling_interval} seconds")
        logger.info(f"  Request Timeout: {self.monitoring.request_timeout} seconds")

        logger.info("=" * 60)
