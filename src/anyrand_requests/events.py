#!/usr/bin/env python3
"""Event decoding for the Anyrand coordinator.

This module turns raw ledger logs into typed RandomnessRequested,
RandomnessFulfilled and RandomnessCallbackFailed events. Malformed logs are
logged and skipped so one bad record never aborts a batch.
"""

import logging
from collections.abc import Iterable, Mapping
from enum import Enum

from web3 import Web3

from .errors import DecodeError
from .models import (
    BlockRef,
    DomainEvent,
    FailedEvent,
    FulfilledEvent,
    RawLog,
    RequestedEvent,
)

# Get logger for this module
logger = logging.getLogger(__name__)


class EventKind(Enum):
    """The three coordinator events, valued by canonical ABI signature."""
    REQUESTED = "RandomnessRequested(uint256,address,bytes32,uint256,uint256,uint256,uint256)"
    FULFILLED = "RandomnessFulfilled(uint256,uint256,bool,uint256)"
    CALLBACK_FAILED = "RandomnessCallbackFailed(uint256,bytes32,uint256,uint256)"

    @property
    def signature(self) -> str:
        return self.value

    @property
    def topic(self) -> str:
        """keccak256 of the signature as a 0x-prefixed hex string."""
        return '0x' + Web3.keccak(text=self.value).hex().removeprefix('0x')


# Indexed arguments counted after topic0, and ABI types of the data section
EVENT_LAYOUTS: dict[EventKind, tuple[int, tuple[str, ...]]] = {
    EventKind.REQUESTED: (3, ('uint256', 'uint256', 'uint256', 'uint256')),
    EventKind.FULFILLED: (1, ('uint256', 'bool', 'uint256')),
    EventKind.CALLBACK_FAILED: (1, ('bytes32', 'uint256', 'uint256')),
}

TOPIC_TO_KIND: dict[str, EventKind] = {kind.topic: kind for kind in EventKind}


def parse_topic_as_int(topic: str) -> int:
    """Parse a 32-byte hex topic as an unsigned integer."""
    hex_str = topic[2:] if topic.startswith('0x') else topic
    if len(hex_str) != 64:
        raise ValueError(f"Topic must be 32 bytes, got {len(hex_str) // 2}")
    return int(hex_str, 16)


def parse_topic_as_address(topic: str) -> str:
    """Parse a left-padded address topic into a checksummed address."""
    value = parse_topic_as_int(topic)
    if value >> 160:
        raise ValueError(f"Topic is not a padded address: {topic}")
    return Web3.to_checksum_address('0x' + f"{value:040x}")


def decode_words(data: str, types: tuple[str, ...]) -> list[int | bool | str]:
    """Decode static ABI words from the data field of a log.

    Each parameter occupies one 32-byte word. Supported types are
    ``uint256``, ``bool`` and ``bytes32``.

    Args:
        data: Hex-encoded event data
        types: ABI type of each word, in order

    Returns:
        Decoded values (int, bool or 0x-prefixed hex string)

    Raises:
        ValueError: If the data length or a word does not match its type
    """
    hex_data = data[2:] if data.startswith('0x') else data
    if len(hex_data) != 64 * len(types):
        raise ValueError(
            f"Expected {32 * len(types)} data bytes, got {len(hex_data) // 2}"
        )

    values: list[int | bool | str] = []
    for index, abi_type in enumerate(types):
        word = hex_data[index * 64:(index + 1) * 64]
        number = int(word, 16)
        match abi_type:
            case 'uint256':
                values.append(number)
            case 'bool':
                if number not in (0, 1):
                    raise ValueError(f"Invalid bool word at position {index}")
                values.append(number == 1)
            case 'bytes32':
                values.append('0x' + word.lower())
            case _:
                raise ValueError(f"Unsupported ABI type: {abi_type}")
    return values


class EventDecoder:
    """Decodes raw coordinator logs into domain events.

    Decoding itself is pure; the decoder only keeps counters so that
    skipped logs are visible in the metrics.
    """

    def __init__(self) -> None:
        self.events_decoded = 0
        self.events_invalid = 0

    def decode(self, raw_log: RawLog, block: BlockRef) -> DomainEvent:
        """Decode a single raw log.

        Args:
            raw_log: Log record from the ledger
            block: Block the log was emitted in

        Returns:
            RequestedEvent, FulfilledEvent or FailedEvent

        Raises:
            DecodeError: If the topic is unknown or the arguments do not match
        """
        if not raw_log.topics:
            raise DecodeError("Log has no topics", raw_log)

        kind = TOPIC_TO_KIND.get(raw_log.topics[0].lower())
        if kind is None:
            raise DecodeError(f"Unknown event topic: {raw_log.topics[0]}", raw_log)

        indexed_count, data_types = EVENT_LAYOUTS[kind]
        if len(raw_log.topics) != indexed_count + 1:
            raise DecodeError(
                f"{kind.name} expects {indexed_count + 1} topics, "
                f"got {len(raw_log.topics)}",
                raw_log
            )

        if block.number != raw_log.block_number:
            raise DecodeError(
                f"Block {block.number} does not match log block {raw_log.block_number}",
                raw_log
            )

        try:
            values = decode_words(raw_log.data, data_types)
            request_id = parse_topic_as_int(raw_log.topics[1])
        except ValueError as e:
            raise DecodeError(f"Malformed {kind.name} log: {e}", raw_log) from e

        match kind:
            case EventKind.REQUESTED:
                try:
                    requester = parse_topic_as_address(raw_log.topics[2])
                    pub_key_hash = '0x' + f"{parse_topic_as_int(raw_log.topics[3]):064x}"
                except ValueError as e:
                    raise DecodeError(f"Malformed {kind.name} log: {e}", raw_log) from e
                round_, callback_gas_limit, fee_paid, effective_fee_per_gas = values
                return RequestedEvent(
                    request_id=request_id,
                    requester=requester,
                    pub_key_hash=pub_key_hash,
                    round=round_,
                    callback_gas_limit=callback_gas_limit,
                    fee_paid=fee_paid,
                    effective_fee_per_gas=effective_fee_per_gas,
                    block=block,
                    transaction_hash=raw_log.transaction_hash,
                    log_index=raw_log.log_index
                )
            case EventKind.FULFILLED:
                randomness, callback_success, actual_gas_used = values
                return FulfilledEvent(
                    request_id=request_id,
                    randomness=randomness,
                    callback_success=callback_success,
                    actual_gas_used=actual_gas_used,
                    block=block,
                    transaction_hash=raw_log.transaction_hash,
                    log_index=raw_log.log_index
                )
            case EventKind.CALLBACK_FAILED:
                retdata, gas_limit, actual_gas_used = values
                return FailedEvent(
                    request_id=request_id,
                    retdata=retdata,
                    gas_limit=gas_limit,
                    actual_gas_used=actual_gas_used,
                    block=block,
                    transaction_hash=raw_log.transaction_hash,
                    log_index=raw_log.log_index
                )

    def decode_batch(
        self,
        raw_logs: Iterable[RawLog],
        blocks: Mapping[int, BlockRef]
    ) -> list[DomainEvent]:
        """Decode a batch of logs, skipping the ones that fail to decode.

        Args:
            raw_logs: Logs from any of the three event kinds
            blocks: Block references keyed by block number

        Returns:
            Successfully decoded events, in input order
        """
        events: list[DomainEvent] = []
        for raw_log in raw_logs:
            try:
                block = blocks.get(raw_log.block_number)
                if block is None:
                    raise DecodeError(f"No block data for block {raw_log.block_number}", raw_log)
                events.append(self.decode(raw_log, block))
                self.events_decoded += 1
            except DecodeError as e:
                self.events_invalid += 1
                logger.warning(
                    f"Skipping log {raw_log.transaction_hash[:10]}...#{raw_log.log_index}: {e}"
                )
        return events

    def get_metrics(self) -> dict[str, int]:
        """Get current decoding metrics."""
        return {
            "events_decoded": self.events_decoded,
            "events_invalid": self.events_invalid,
        }
