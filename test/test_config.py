#!/usr/bin/env python3
"""Tests for the configuration module."""

import logging
from unittest.mock import patch

import pytest

from anyrand_requests.config import (
    CacheConfig,
    IndexerConfig,
    LedgerConfig,
    MonitoringConfig,
    WindowConfig,
)

CHECKSUMMED = "0x85BfE05492aFC3D04Ff3B2ca6771ACF6f853d90d"


class TestLedgerConfig:
    """Tests for LedgerConfig."""

    def test_valid_ledger_config(self):
        config = LedgerConfig(rpc_url="https://sepolia-rpc.scroll.io", contract_address=CHECKSUMMED)

        assert config.rpc_url == "https://sepolia-rpc.scroll.io"
        assert config.contract_address == CHECKSUMMED

    def test_checksum_address_conversion(self):
        """Test that lowercase addresses are converted to checksum format."""
        config = LedgerConfig(rpc_url="http://localhost:8545", contract_address=CHECKSUMMED.lower())

        assert config.contract_address == CHECKSUMMED

    def test_invalid_rpc_url_scheme(self):
        with pytest.raises(ValueError, match="Invalid RPC URL scheme"):
            LedgerConfig(rpc_url="wss://sepolia-rpc.scroll.io", contract_address=CHECKSUMMED)

    def test_missing_rpc_url(self):
        with pytest.raises(ValueError, match="RPC URL is required"):
            LedgerConfig(rpc_url="", contract_address=CHECKSUMMED)

    def test_missing_contract_address(self):
        with pytest.raises(ValueError, match="ANYRAND_ADDRESS"):
            LedgerConfig(rpc_url="https://sepolia-rpc.scroll.io", contract_address="")

    def test_invalid_contract_address(self):
        with pytest.raises(ValueError, match="Invalid coordinator contract address"):
            LedgerConfig(rpc_url="https://sepolia-rpc.scroll.io", contract_address="0xnotanaddress")


class TestWindowConfig:
    """Tests for WindowConfig."""

    def test_defaults(self):
        config = WindowConfig()

        assert config.window_size == 2400
        assert config.genesis_block == 0
        assert config.deadline_offset == 7200

    @pytest.mark.parametrize("window_size", [0, -1, 100_001])
    def test_invalid_window_size(self, window_size):
        with pytest.raises(ValueError, match="Window size"):
            WindowConfig(window_size=window_size)

    def test_negative_genesis_block(self):
        with pytest.raises(ValueError, match="Genesis block must be non-negative"):
            WindowConfig(genesis_block=-1)


class TestCacheConfig:
    """Tests for CacheConfig."""

    def test_defaults(self):
        config = CacheConfig()

        assert config.stale_time == 30
        assert config.gc_time == 300

    def test_gc_time_shorter_than_stale_time(self):
        with pytest.raises(ValueError, match="must not be shorter than"):
            CacheConfig(stale_time=60, gc_time=30)

    def test_non_positive_stale_time(self):
        with pytest.raises(ValueError, match="Stale time must be positive"):
            CacheConfig(stale_time=0)


class TestMonitoringConfig:
    """Tests for MonitoringConfig."""

    def test_polling_interval_bounds(self):
        with pytest.raises(ValueError, match="Polling interval must be positive"):
            MonitoringConfig(polling_interval=0)
        with pytest.raises(ValueError, match="Polling interval too long"):
            MonitoringConfig(polling_interval=301)

    def test_request_timeout_bounds(self):
        with pytest.raises(ValueError, match="Request timeout must be positive"):
            MonitoringConfig(request_timeout=0)
        with pytest.raises(ValueError, match="Request timeout too long"):
            MonitoringConfig(request_timeout=121)


class TestIndexerConfig:
    """Tests for IndexerConfig loading."""

    def test_from_env_minimal(self):
        """Only the coordinator address is required."""
        with patch.dict('os.environ', {'ANYRAND_ADDRESS': CHECKSUMMED.lower()}, clear=True):
            config = IndexerConfig.from_env()

        assert config.ledger.rpc_url == "https://sepolia-rpc.scroll.io"
        assert config.ledger.contract_address == CHECKSUMMED
        assert config.window == WindowConfig()
        assert config.cache == CacheConfig()
        assert config.monitoring == MonitoringConfig()

    def test_from_env_full(self):
        env = {
            'RPC_URL': 'http://localhost:8545',
            'ANYRAND_ADDRESS': CHECKSUMMED,
            'WINDOW_SIZE': '500',
            'GENESIS_BLOCK': '1000',
            'DEADLINE_OFFSET': '3600',
            'CACHE_STALE_TIME': '10',
            'CACHE_GC_TIME': '60',
            'POLLING_INTERVAL': '5',
            'REQUEST_TIMEOUT': '15',
        }
        with patch.dict('os.environ', env, clear=True):
            config = IndexerConfig.from_env()

        assert config.ledger.rpc_url == 'http://localhost:8545'
        assert config.window == WindowConfig(window_size=500, genesis_block=1000, deadline_offset=3600)
        assert config.cache == CacheConfig(stale_time=10, gc_time=60)
        assert config.monitoring == MonitoringConfig(polling_interval=5, request_timeout=15)

    def test_from_env_missing_address(self):
        with patch.dict('os.environ', {}, clear=True):
            with pytest.raises(ValueError, match="ANYRAND_ADDRESS environment variable is required"):
                IndexerConfig.from_env()

    def test_from_env_invalid_number(self):
        with patch.dict('os.environ', {'ANYRAND_ADDRESS': CHECKSUMMED, 'WINDOW_SIZE': 'lots'}, clear=True):
            with pytest.raises(ValueError):
                IndexerConfig.from_env()

    def test_log_config(self, caplog):
        config = IndexerConfig(
            ledger=LedgerConfig(rpc_url="https://sepolia-rpc.scroll.io", contract_address=CHECKSUMMED)
        )

        with caplog.at_level(logging.INFO, logger="anyrand_requests.config"):
            config.log_config()

        assert CHECKSUMMED in caplog.text
        assert "Window Size: 2400 blocks" in caplog.text
        assert "Stale Time: 30 seconds" in caplog.text
