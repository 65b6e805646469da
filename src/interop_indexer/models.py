#!/usr/bin/env python3
"""Data models for the interop indexer.

This module provides immutable data classes for raw chain data, decoded
interop events and the correlation index entries built from them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from web3 import Web3

UINT64_MAX = 2**64 - 1


class EventKind(Enum):
    """Which interop event a scanner hunts for."""
    INITIATING = "initiating"
    EXECUTING = "executing"


class CorrelationState(Enum):
    """Which sides of a cross-chain message have been observed."""
    INITIATED_ONLY = "initiated_only"
    EXECUTED_ONLY = "executed_only"
    PAIRED = "paired"


class ScannerState(Enum):
    """Per-range state of a chain scanner."""
    IDLE = "idle"
    FETCHING = "fetching"
    DECODING = "decoding"
    PUBLISHING = "publishing"
    BACKOFF = "backoff"
    FATAL = "fatal"


@dataclass(frozen=True, slots=True)
class Identifier:
    """Uniquely names a log on the source chain.

    Two identifiers are equal iff all five fields are equal, so the
    identifier itself is the correlation key.

    Attributes:
        origin: 20-byte address of the contract that emitted the log
        block_number: Source block containing the log
        log_index: Index of the log within its block
        timestamp: Source block timestamp (Unix seconds)
        chain_id: Source chain ID
    """

    origin: bytes
    block_number: int
    log_index: int
    timestamp: int
    chain_id: int

    def __post_init__(self) -> None:
        """Validate field widths."""
        if len(self.origin) != 20:
            raise ValueError(f"Origin must be 20 bytes, got {len(self.origin)}")
        for name in ("block_number", "log_index", "timestamp", "chain_id"):
            value = getattr(self, name)
            if not 0 <= value <= UINT64_MAX:
                raise ValueError(f"{name} out of uint64 range: {value}")

    @property
    def origin_address(self) -> str:
        """Checksummed origin address."""
        return Web3.to_checksum_address(self.origin)

    def __str__(self) -> str:
        """Human-readable string representation."""
        return (
            f"Identifier(chain={self.chain_id}, "
            f"block={self.block_number}, "
            f"log={self.log_index}, "
            f"origin={self.origin_address[:10]}...)"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "origin": self.origin_address,
            "block_number": self.block_number,
            "log_index": self.log_index,
            "timestamp": self.timestamp,
            "chain_id": self.chain_id,
        }


@dataclass(frozen=True, slots=True)
class BlockHeader:
    """The subset of a block header the scanner relies on."""

    number: int
    hash: bytes
    parent_hash: bytes
    timestamp: int

    def __str__(self) -> str:
        return f"BlockHeader(number={self.number}, hash=0x{self.hash.hex()[:10]}...)"


@dataclass(frozen=True, slots=True)
class Log:
    """A raw log as returned by eth_getLogs, plus its block timestamp.

    Attributes:
        address: 20-byte emitting contract address
        topics: Indexed topics, topic[0] is the event signature hash
        data: Non-indexed payload
        block_number: Block containing the log
        block_hash: Hash of that block
        log_index: Index of the log within the block
        transaction_hash: Hash of the emitting transaction
        timestamp: Block timestamp, filled in by the scanner
    """

    address: bytes
    topics: tuple[bytes, ...]
    data: bytes
    block_number: int
    block_hash: bytes
    log_index: int
    transaction_hash: bytes
    timestamp: int = 0

    @property
    def position(self) -> tuple[int, int]:
        """Ordering key within a chain."""
        return (self.block_number, self.log_index)


@dataclass(frozen=True, slots=True)
class InitiatingEvent:
    """A SentMessage log observed on the source chain."""

    identifier: Identifier
    message_payload: bytes
    source_tx_hash: bytes

    @property
    def chain_id(self) -> int:
        return self.identifier.chain_id

    @property
    def block_number(self) -> int:
        return self.identifier.block_number

    @property
    def timestamp(self) -> int:
        return self.identifier.timestamp

    def __str__(self) -> str:
        return f"InitiatingEvent({self.identifier}, tx=0x{self.source_tx_hash.hex()[:10]}...)"


@dataclass(frozen=True, slots=True)
class ExecutingEvent:
    """An ExecutingMessage log observed on the destination chain.

    The chain_id, block_number, log_index and timestamp fields locate the
    observation on the destination chain; the referenced identifier names
    the source log being executed.
    """

    referenced_identifier: Identifier
    message_hash: bytes
    dest_tx_hash: bytes
    chain_id: int = 0
    block_number: int = 0
    log_index: int = 0
    timestamp: int = 0

    def __str__(self) -> str:
        return (
            f"ExecutingEvent(chain={self.chain_id}, block={self.block_number}, "
            f"ref={self.referenced_identifier}, msg=0x{self.message_hash.hex()[:10]}...)"
        )


@dataclass(frozen=True, slots=True)
class CorrelationEntry:
    """One message in the correlation index."""

    identifier: Identifier
    initiating: InitiatingEvent | None = None
    executing: ExecutingEvent | None = None

    @property
    def state(self) -> CorrelationState:
        """Derived from which sides are populated."""
        if self.initiating is not None and self.executing is not None:
            return CorrelationState.PAIRED
        if self.initiating is not None:
            return CorrelationState.INITIATED_ONLY
        if self.executing is not None:
            return CorrelationState.EXECUTED_ONLY
        raise ValueError(f"Entry {self.identifier} has no observed side")

    @property
    def is_empty(self) -> bool:
        return self.initiating is None and self.executing is None

    @property
    def latest_timestamp(self) -> int:
        """Timestamp of the most recently produced side."""
        timestamps = []
        if self.initiating is not None:
            timestamps.append(self.initiating.timestamp)
        if self.executing is not None:
            timestamps.append(self.executing.timestamp)
        return max(timestamps, default=0)


@dataclass(frozen=True, slots=True)
class ScannerCursor:
    """Per-chain high-water mark of fully processed blocks.

    last_completed_block is -1 before anything has been scanned.
    """

    chain_id: int
    last_completed_block: int
    last_completed_at: float = 0.0

    @property
    def next_block(self) -> int:
        """First block the next range fetch starts from."""
        return self.last_completed_block + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "last_completed_block": self.last_completed_block,
            "last_completed_at": self.last_completed_at,
        }


@dataclass(frozen=True, slots=True)
class Invalidation:
    """Tells the correlator to forget observations above a rewind point."""

    chain_id: int
    above_block: int


@dataclass(frozen=True, slots=True)
class PairingNotification:
    """Emitted when an entry transitions to PAIRED."""

    identifier: Identifier
    initiating: InitiatingEvent
    executing: ExecutingEvent
    sequence: int = 0


Observation = InitiatingEvent | ExecutingEvent | Invalidation
