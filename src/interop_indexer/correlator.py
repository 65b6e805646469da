"""
Correlation index for interop messages.

The correlator owns the mapping from Identifier to CorrelationEntry. All
mutations go through it: scanners submit observations onto a queue and a
single task applies them in arrival order, so per-key observation order is
preserved and the index never needs a lock.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import replace
from types import MappingProxyType
from typing import Any

from .models import (
    CorrelationEntry,
    CorrelationState,
    ExecutingEvent,
    Identifier,
    InitiatingEvent,
    Invalidation,
    Observation,
    PairingNotification,
)

logger = logging.getLogger(__name__)

PairingListener = Callable[[PairingNotification], Awaitable[None] | None]


class Correlator:
    """Matches initiating and executing messages by identifier.

    This class is responsible for:
    - Upserting entries as either side is observed, in any order
    - Emitting exactly one pairing notification per PAIRED transition
    - Detecting conflicting re-observations of the same side
    - Invalidating observations rolled back by a reorg
    - Evicting entries past the retention window
    """

    EVICTION_INTERVAL: float = 60  # seconds between eviction sweeps in run()
    QUEUE_SIZE: int = 10_000
    POLL_TIMEOUT: float = 1.0  # seconds to wait for a message before rechecking stop

    def __init__(self, retention_window: int | None = None) -> None:
        """Initialize the correlator.

        Args:
            retention_window: Seconds an entry lives past its latest observed
                side; None disables periodic eviction
        """
        self.retention_window = retention_window
        self.index: dict[Identifier, CorrelationEntry] = {}
        self.queue: asyncio.Queue[Observation] = asyncio.Queue(maxsize=self.QUEUE_SIZE)
        self.listeners: list[PairingListener] = []
        self._listener_tasks: set[asyncio.Task] = set()

        # Highest chain timestamp seen on any side, drives retention
        self.latest_timestamp = 0

        # Metrics tracking
        self.pairings_emitted = 0
        self.conflicts = 0
        self.duplicates = 0
        self.invalidated = 0
        self.evicted = 0

    def add_listener(self, listener: PairingListener) -> None:
        """Register a callback for pairing notifications."""
        self.listeners.append(listener)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def observe_initiating(self, event: InitiatingEvent) -> PairingNotification | None:
        """
        Record an initiating message.

        Args:
            event: Decoded SentMessage event

        Returns:
            The pairing notification if this observation completed a pair
        """
        key = event.identifier
        self._track_timestamp(event.timestamp)
        entry = self.index.get(key)

        if entry is None:
            self.index[key] = CorrelationEntry(identifier=key, initiating=event)
            logger.debug(f"New entry INITIATED_ONLY: {key}")
            return None

        if entry.initiating is not None:
            self._check_duplicate("initiating", key, entry.initiating, event)
            return None

        return self._transition(entry, replace(entry, initiating=event))

    def observe_executing(self, event: ExecutingEvent) -> PairingNotification | None:
        """
        Record an executing message.

        Args:
            event: Decoded ExecutingMessage event

        Returns:
            The pairing notification if this observation completed a pair
        """
        key = event.referenced_identifier
        self._track_timestamp(event.timestamp)
        entry = self.index.get(key)

        if entry is None:
            self.index[key] = CorrelationEntry(identifier=key, executing=event)
            logger.debug(f"New entry EXECUTED_ONLY: {key}")
            return None

        if entry.executing is not None:
            self._check_duplicate("executing", key, entry.executing, event)
            return None

        return self._transition(entry, replace(entry, executing=event))

    def invalidate(self, chain_id: int, above_block: int) -> int:
        """
        Forget observations made on a chain above a rewind point.

        Initiating sides are matched on the identifier's chain and block,
        executing sides on the destination chain and block they were seen in.
        Entries left with no side are removed.

        Args:
            chain_id: Chain that reorganized
            above_block: Highest block still considered canonical

        Returns:
            Number of sides cleared
        """
        cleared = 0
        for key, entry in list(self.index.items()):
            updated = entry
            if (
                entry.initiating is not None
                and entry.initiating.chain_id == chain_id
                and entry.initiating.block_number > above_block
            ):
                updated = replace(updated, initiating=None)
                cleared += 1
            if (
                entry.executing is not None
                and entry.executing.chain_id == chain_id
                and entry.executing.block_number > above_block
            ):
                updated = replace(updated, executing=None)
                cleared += 1

            if updated is entry:
                continue
            if updated.is_empty:
                del self.index[key]
            else:
                self.index[key] = updated
            logger.debug(f"Invalidated {key}: {entry.state.name} -> "
                         f"{'REMOVED' if updated.is_empty else updated.state.name}")

        if cleared:
            self.invalidated += cleared
            logger.warning(
                f"Reorg on chain {chain_id}: cleared {cleared} observations above block {above_block}"
            )
        return cleared

    def evict_older_than(self, timestamp: int) -> int:
        """
        Drop entries whose latest observed side is older than timestamp.

        Returns:
            Number of entries evicted
        """
        expired = [key for key, entry in self.index.items() if entry.latest_timestamp < timestamp]
        for key in expired:
            del self.index[key]

        if expired:
            self.evicted += len(expired)
            logger.info(f"Evicted {len(expired)} entries older than {timestamp}")
        return len(expired)

    def evict_expired(self, retention_window: int | None = None) -> int:
        """Evict entries older than the retention window, measured in chain time."""
        window = retention_window if retention_window is not None else self.retention_window
        if window is None or self.latest_timestamp == 0:
            return 0
        return self.evict_older_than(self.latest_timestamp - window)

    def apply(self, message: Observation) -> PairingNotification | None:
        """Apply one queued message to the index."""
        match message:
            case InitiatingEvent():
                return self.observe_initiating(message)
            case ExecutingEvent():
                return self.observe_executing(message)
            case Invalidation(chain_id=chain_id, above_block=above_block):
                self.invalidate(chain_id, above_block)
                return None
            case _:
                raise TypeError(f"Unsupported observation: {type(message).__name__}")

    def _transition(self, entry: CorrelationEntry, updated: CorrelationEntry) -> PairingNotification | None:
        """Store the updated entry and notify if it just became PAIRED."""
        key = entry.identifier
        if updated.state is not CorrelationState.PAIRED:
            self.index[key] = updated
            return None

        if updated.executing.referenced_identifier != key:
            # Only reachable if an entry was keyed on something other than
            # its executing side's referenced identifier
            logger.error(f"Identifier mismatch for {key}: executing references "
                         f"{updated.executing.referenced_identifier}")
            self.conflicts += 1
            return None

        self.index[key] = updated
        self.pairings_emitted += 1
        notification = PairingNotification(
            identifier=key,
            initiating=updated.initiating,
            executing=updated.executing,
            sequence=self.pairings_emitted,
        )
        logger.info(
            f"Paired message {key} -> executed on chain {updated.executing.chain_id} "
            f"block {updated.executing.block_number}"
        )
        self._notify(notification)
        return notification

    def _check_duplicate(self, side: str, key: Identifier, existing: Any, incoming: Any) -> None:
        if existing == incoming:
            self.duplicates += 1
            logger.debug(f"Duplicate {side} observation ignored: {key}")
            return

        self.conflicts += 1
        logger.error(
            f"Correlation conflict on {side} side of {key}: "
            f"keeping {existing}, rejecting {incoming}"
        )

    def _track_timestamp(self, timestamp: int) -> None:
        if timestamp > self.latest_timestamp:
            self.latest_timestamp = timestamp

    def _notify(self, notification: PairingNotification) -> None:
        for listener in self.listeners:
            try:
                result = listener(notification)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._listener_tasks.add(task)
                    task.add_done_callback(self._listener_done)
            except Exception as e:
                logger.error(f"Pairing listener failed: {e}", exc_info=True)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Pairing listener failed: {task.exception()}")

    # ------------------------------------------------------------------
    # Single-writer task
    # ------------------------------------------------------------------

    async def submit(self, message: Observation) -> None:
        """Enqueue an observation for the writer task."""
        await self.queue.put(message)

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """
        Apply queued observations until cancelled or stop_event is set.

        Everything already queued when the stop is requested is drained
        before returning.
        """
        stop_event = stop_event or asyncio.Event()
        loop = asyncio.get_running_loop()
        next_eviction = loop.time() + self.EVICTION_INTERVAL

        logger.info("Correlator started")
        while not (stop_event.is_set() and self.queue.empty()):
            try:
                message = await asyncio.wait_for(self.queue.get(), timeout=self.POLL_TIMEOUT)
            except asyncio.TimeoutError:
                message = None

            if message is not None:
                try:
                    self.apply(message)
                except Exception as e:
                    logger.error(f"Failed to apply {message}: {e}", exc_info=True)
                finally:
                    self.queue.task_done()

            if loop.time() >= next_eviction:
                self.evict_expired()
                next_eviction = loop.time() + self.EVICTION_INTERVAL
        logger.info("Correlator stopped")

    async def drain(self) -> None:
        """Wait until every queued observation has been applied and notified."""
        await self.queue.join()
        if self._listener_tasks:
            await asyncio.gather(*self._listener_tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def snapshot(self) -> Mapping[Identifier, CorrelationEntry]:
        """Read-only copy of the current index."""
        return MappingProxyType(dict(self.index))

    def get_stats(self) -> dict[str, int]:
        """
        Get current correlator statistics.

        Returns:
            Dictionary with current state metrics
        """
        counts = {state: 0 for state in CorrelationState}
        for entry in self.index.values():
            counts[entry.state] += 1

        return {
            "entries": len(self.index),
            "initiated_only": counts[CorrelationState.INITIATED_ONLY],
            "executed_only": counts[CorrelationState.EXECUTED_ONLY],
            "paired": counts[CorrelationState.PAIRED],
            "pairings_emitted": self.pairings_emitted,
            "duplicates": self.duplicates,
            "conflicts": self.conflicts,
            "invalidated": self.invalidated,
            "evicted": self.evicted,
            "queued": self.queue.qsize(),
        }

    def log_stats(self) -> None:
        """Log current correlator statistics."""
        stats = self.get_stats()
        logger.info(
            f"Correlator: entries={stats['entries']} "
            f"(initiated={stats['initiated_only']}, executed={stats['executed_only']}, "
            f"paired={stats['paired']}), pairings={stats['pairings_emitted']}, "
            f"conflicts={stats['conflicts']}, invalidated={stats['invalidated']}, "
            f"evicted={stats['evicted']}, queued={stats['queued']}"
        )
