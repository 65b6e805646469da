"""
Block range scanner for one chain.

Walks the chain from its cursor to the confirmed head in bounded ranges,
decodes interop message logs and publishes them to the correlator. Transient
RPC failures are retried with exponential backoff without moving the cursor;
permanent failures stop the scanner and surface to the supervisor.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any

from .config import ChainConfig, ScanSettings
from .decoder import SIGNATURE_HASHES, decode_log
from .errors import ConfigError, MalformedLogError, PermanentRPCError, TransientRPCError
from .models import (
    BlockHeader,
    ExecutingEvent,
    InitiatingEvent,
    Invalidation,
    Log,
    Observation,
    ScannerCursor,
    ScannerState,
)
from .utils.chain_client import ChainClient
from .utils.cursor_store import CursorStore, MemoryCursorStore
from .utils.header_cache import HeaderCache

Publisher = Callable[[Observation], Awaitable[None]]

class ChainScanner:
    """
    Scans one chain for interop message logs.

    Each pass fetches at most block_range_size blocks ending no later than
    head - confirmation_depth. Before trusting a new head the scanner checks
    that the block at its cursor still has the hash it saw when scanning it;
    on mismatch the cursor is rewound to the latest common ancestor and the
    correlator is told to forget everything above it.
    """

    BASE_BACKOFF: float = 1.0  # seconds, doubled per consecutive transient failure

    def __init__(
        self,
        chain: ChainConfig,
        client: ChainClient,
        publish: Publisher,
        settings: ScanSettings | None = None,
        cursor_store: CursorStore | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """
        Initialize the scanner.

        Args:
            chain: Chain to scan and which event kinds to extract
            client: RPC client owned by this scanner
            publish: Coroutine receiving decoded events and invalidations
            settings: Range, depth, polling and retry settings
            cursor_store: Where checkpoints are loaded from and saved to
            stop_event: Shared cancellation signal
        """
        self.chain = chain
        self.chain_id = chain.chain_id
        self.client = client
        self.publish = publish
        self.settings = settings or ScanSettings()
        self.cursor_store = cursor_store or MemoryCursorStore()
        self.stop_event = stop_event or asyncio.Event()

        kinds = sorted(chain.event_kinds, key=lambda k: k.value)
        self.topic_filter = [[SIGNATURE_HASHES[kind] for kind in kinds]]
        self._hunted_topics = frozenset(SIGNATURE_HASHES[kind] for kind in kinds)

        checkpoint = self.cursor_store.load(self.chain_id)
        self.cursor = checkpoint or ScannerCursor(
            chain_id=self.chain_id,
            last_completed_block=chain.start_block - 1,
        )
        self.header_cache = HeaderCache(self.settings.header_cache_size)

        self.state = ScannerState.IDLE
        self.is_running = False

        # Metrics tracking
        self.ranges_scanned = 0
        self.logs_seen = 0
        self.events_published = 0
        self.malformed_logs = 0
        self.reorgs = 0
        self.retries = 0

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}.{chain.name}")
        if checkpoint:
            self.logger.info(f"Resuming {chain.name} from checkpoint at block {checkpoint.last_completed_block}")

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """
        Scan until the stop event is set.

        Raises:
            PermanentRPCError: The endpoint cannot serve this scanner
            TransientRPCError: Retries were exhausted
        """
        if self.is_running:
            self.logger.warning("Scanner already running")
            return

        self.is_running = True
        self.state = ScannerState.IDLE
        kinds = ", ".join(sorted(k.value for k in self.chain.event_kinds))
        self.logger.info(
            f"Starting scanner for {self.chain.name} ({self.chain_id}) "
            f"at block {self.cursor.next_block}, hunting: {kinds}"
        )

        try:
            while not self.stop_event.is_set():
                if not await self.scan_once():
                    await self._sleep(self.settings.polling_interval)
        except TransientRPCError:
            if not self.stop_event.is_set():
                self.state = ScannerState.FATAL
                raise
            self.logger.info("Abandoning in-flight range for shutdown")
        except PermanentRPCError as e:
            self.state = ScannerState.FATAL
            self.logger.error(f"Permanent RPC failure on {self.chain.name}: {e}")
            raise
        finally:
            self.is_running = False
            if self.state is not ScannerState.FATAL:
                self.state = ScannerState.IDLE
            self.logger.info(f"Scanner for {self.chain.name} stopped at block {self.cursor.last_completed_block}")

    async def scan_once(self) -> bool:
        """
        Process at most one block range.

        Returns:
            True if a range was processed, False if the scanner is caught up
        """
        head = await self._retry("latest_block", self.client.latest_block)
        await self._check_reorg()

        safe_head = head.number - self.settings.confirmation_depth
        last = self.cursor.last_completed_block
        if safe_head <= last:
            self.logger.debug(f"Caught up: safe head {safe_head} <= cursor {last}")
            return False

        from_block = last + 1
        to_block = min(last + self.settings.block_range_size, safe_head)

        self.state = ScannerState.FETCHING
        logs, headers = await self._retry(
            f"fetch [{from_block}, {to_block}]",
            lambda: self._fetch_range(from_block, to_block),
        )

        self.state = ScannerState.DECODING
        events = self._decode(logs)

        self.state = ScannerState.PUBLISHING
        for event in events:
            await self.publish(event)
        self.events_published += len(events)

        for height in sorted(headers):
            self.header_cache.put(height, headers[height].hash)

        await self._advance(to_block)
        self.ranges_scanned += 1
        self.logs_seen += len(logs)
        self.state = ScannerState.IDLE

        if events:
            self.logger.info(
                f"Published {len(events)} events from {len(logs)} logs "
                f"in blocks {from_block}-{to_block}"
            )
        else:
            self.logger.debug(f"No events in blocks {from_block}-{to_block}")
        return True

    async def verify_chain_id(self) -> None:
        """
        Check the endpoint serves the configured chain.

        Raises:
            ConfigError: The endpoint reports a different chain ID
        """
        reported = await self._retry("chain_id", self.client.chain_id)
        if reported != self.chain_id:
            raise ConfigError(
                f"RPC endpoint for {self.chain.name} reports chain ID {reported}, "
                f"configured {self.chain_id}"
            )
        self.logger.info(f"Connected to {self.chain.name} (chain ID {reported})")

    async def stop(self) -> None:
        """Ask the scan loop to finish its current range and exit."""
        self.logger.info(f"Stopping scanner for {self.chain.name}")
        self.stop_event.set()

    # ------------------------------------------------------------------
    # Range processing
    # ------------------------------------------------------------------

    async def _fetch_range(self, from_block: int, to_block: int) -> tuple[list[Log], dict[int, BlockHeader]]:
        """
        Fetch logs and the headers needed to stamp and verify them.

        Raises:
            TransientRPCError: A log's block hash disagrees with the header
                at its height, meaning the range is still being reorganized
            PermanentRPCError: The node returned logs outside the range
        """
        logs = await self.client.get_logs(from_block, to_block, self.topic_filter)

        headers: dict[int, BlockHeader] = {}
        for height in sorted({log.block_number for log in logs} | {to_block}):
            if not from_block <= height <= to_block:
                raise PermanentRPCError(
                    f"Node returned log at block {height} outside [{from_block}, {to_block}]",
                    "eth_getLogs",
                )
            headers[height] = await self.client.block_header(height)

        stamped = []
        for log in sorted(logs, key=lambda entry: entry.position):
            header = headers[log.block_number]
            if log.block_hash != header.hash:
                raise TransientRPCError(
                    f"Log block hash mismatch at {log.block_number}, chain is reorganizing",
                    "eth_getLogs",
                )
            if stamped and stamped[-1].position == log.position:
                continue
            stamped.append(replace(log, timestamp=log.timestamp or header.timestamp))
        return stamped, headers

    def _decode(self, logs: list[Log]) -> list[InitiatingEvent | ExecutingEvent]:
        """Decode logs, skipping malformed ones with a warning."""
        events = []
        for log in logs:
            topic0 = log.topics[0] if log.topics else b""
            try:
                if topic0 not in self._hunted_topics:
                    raise MalformedLogError(f"Unexpected topic[0] 0x{topic0.hex()}")
                events.append(decode_log(log, self.chain_id))
            except MalformedLogError as e:
                self.malformed_logs += 1
                self.logger.warning(
                    f"Skipping malformed log at block {log.block_number} index {log.log_index} "
                    f"(tx 0x{log.transaction_hash.hex()[:10]}...): {e}"
                )
        return events

    async def _advance(self, to_block: int) -> None:
        self.cursor = ScannerCursor(
            chain_id=self.chain_id,
            last_completed_block=to_block,
            last_completed_at=time.time(),
        )
        await self._checkpoint()

    async def _checkpoint(self) -> None:
        """Persist the cursor without blocking the event loop on file I/O."""
        await asyncio.to_thread(self.cursor_store.save, self.cursor)

    # ------------------------------------------------------------------
    # Reorg handling
    # ------------------------------------------------------------------

    async def _check_reorg(self) -> None:
        """Rewind if the block at the cursor is no longer canonical."""
        last = self.cursor.last_completed_block
        cached = self.header_cache.get(last)
        if cached is None:
            return

        current = await self._retry(f"block_header({last})", lambda: self.client.block_header(last))
        if current.hash == cached:
            return

        self.reorgs += 1
        ancestor = await self._find_common_ancestor(current)
        self.logger.warning(
            f"Reorg detected on {self.chain.name}: block {last} hash changed "
            f"from 0x{cached.hex()[:10]}... to 0x{current.hash.hex()[:10]}..., "
            f"rewinding cursor to {ancestor}"
        )
        await self._rewind(ancestor)

    async def _find_common_ancestor(self, current: BlockHeader) -> int:
        """
        Find the highest cached height that is still canonical.

        If the replacement block's parent is the block cached just below it,
        only the tip changed. Otherwise the cached heights are bisected: the
        top one is known to mismatch and canonical heights form a prefix of
        the cache, so a binary search finds the boundary.
        """
        parent = self.header_cache.get(current.number - 1)
        if parent is not None and parent == current.parent_hash:
            return current.number - 1

        heights = self.header_cache.heights()
        lo, hi = 0, len(heights) - 1
        best: int | None = None

        while lo < hi:
            mid = (lo + hi) // 2
            height = heights[mid]
            header = await self._retry(f"block_header({height})", lambda: self.client.block_header(height))
            if header.hash == self.header_cache.get(height):
                best = mid
                lo = mid + 1
            else:
                hi = mid

        if best is None:
            ancestor = heights[0] - 1
            self.logger.warning(
                f"Reorg on {self.chain.name} is deeper than the {len(heights)} cached headers, "
                f"rewinding to {ancestor}"
            )
            return ancestor
        return heights[best]

    async def _rewind(self, ancestor: int) -> None:
        self.header_cache.truncate_above(ancestor)
        self.cursor = ScannerCursor(
            chain_id=self.chain_id,
            last_completed_block=ancestor,
            last_completed_at=time.time(),
        )
        await self._checkpoint()
        await self.publish(Invalidation(chain_id=self.chain_id, above_block=ancestor))

    # ------------------------------------------------------------------
    # Retry and sleep helpers
    # ------------------------------------------------------------------

    async def _retry(self, description: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run an RPC operation, retrying transient failures with backoff.

        Raises:
            TransientRPCError: Retries exhausted or shutdown requested
            PermanentRPCError: Propagated immediately
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except TransientRPCError as e:
                attempt += 1
                self.retries += 1
                if attempt > self.settings.retry_count or self.stop_event.is_set():
                    raise

                delay = min(self.BASE_BACKOFF * (2 ** (attempt - 1)), self.settings.max_backoff)
                previous_state = self.state
                self.state = ScannerState.BACKOFF
                self.logger.warning(
                    f"{description} failed on {self.chain.name} "
                    f"(attempt {attempt}/{self.settings.retry_count}): {e}. Retrying in {delay}s"
                )
                await self._sleep(delay)
                if self.stop_event.is_set():
                    raise
                self.state = previous_state

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early if the stop event is set."""
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def get_status(self) -> dict[str, Any]:
        """
        Get current status of the scanner.

        Returns:
            Dictionary with status information
        """
        return {
            "chain": self.chain.name,
            "chain_id": self.chain_id,
            "state": self.state.value,
            "is_running": self.is_running,
            "last_completed_block": self.cursor.last_completed_block,
            "ranges_scanned": self.ranges_scanned,
            "logs_seen": self.logs_seen,
            "events_published": self.events_published,
            "malformed_logs": self.malformed_logs,
            "reorgs": self.reorgs,
            "retries": self.retries,
        }
