"""
Interop indexer supervisor.

This module contains the service that wires scanners to the correlator,
propagates a single shutdown signal, restarts scanners after transient
failures and tears everything down when a scanner fails permanently.
"""

import asyncio
import logging

from .config import ChainConfig, IndexerConfig
from .correlator import Correlator, PairingListener
from .errors import ConfigError, PermanentRPCError
from .scanner import ChainScanner
from .utils.chain_client import ChainClient
from .utils.cursor_store import CursorStore, JsonCursorStore, MemoryCursorStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_FATAL = 2


class Supervisor:
    """
    Runs one scanner per configured chain plus the correlator task.

    This class focuses on coordination and lifecycle management; scanning
    and correlation logic live in ChainScanner and Correlator.
    """

    HEALTH_CHECK_INTERVAL = 1.0  # seconds

    def __init__(
        self,
        config: IndexerConfig,
        correlator: Correlator | None = None,
        scanners: list[ChainScanner] | None = None,
        cursor_store: CursorStore | None = None,
    ) -> None:
        """
        Initialize the supervisor.

        Args:
            config: Indexer configuration
            correlator: Correlator to feed (one is created if omitted)
            scanners: Pre-built scanners; by default one per configured chain
            cursor_store: Checkpoint store shared by the scanners
        """
        self.config = config
        self.running = False
        self.exit_code = EXIT_OK

        # Single cancellation signal shared by every scanner
        self.shutdown_event = asyncio.Event()

        self.correlator = correlator or Correlator(retention_window=config.retention_window)

        if cursor_store is None:
            cursor_store = JsonCursorStore(config.cursor_path) if config.cursor_path else MemoryCursorStore()
        self.cursor_store = cursor_store

        if scanners is None:
            scanners = [self._build_scanner(chain) for chain in config.chains]
        self.scanners = scanners

        self.restart_counts: dict[str, int] = {s.chain.name: 0 for s in self.scanners}
        self.failures: dict[str, BaseException] = {}

    @classmethod
    def from_env(cls, cursor_path: str | None = None) -> "Supervisor":
        """
        Create a Supervisor from environment variables.

        Raises:
            ConfigError: If required environment variables are missing
        """
        config = IndexerConfig.from_env(cursor_path=cursor_path)
        config.log_config()
        return cls(config)

    def _build_scanner(self, chain: ChainConfig) -> ChainScanner:
        client = ChainClient(
            chain.dial_url(self.config.api_key),
            chain_name=chain.name,
            request_timeout=self.config.scan.request_timeout,
        )
        return ChainScanner(
            chain=chain,
            client=client,
            publish=self.correlator.submit,
            settings=self.config.scan,
            cursor_store=self.cursor_store,
            stop_event=self.shutdown_event,
        )

    def add_listener(self, listener: PairingListener) -> None:
        """Forward pairing notifications to a downstream consumer."""
        self.correlator.add_listener(listener)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _supervise(self, scanner: ChainScanner) -> None:
        """
        Run a scanner, restarting it after non-permanent failures.

        Restarts use linear backoff (restart_backoff * attempt). The restart
        count starts over once the scanner completes a range after its last
        restart, so only consecutive failures count toward max_restarts.
        Permanent RPC failures, configuration mismatches and exhausting
        max_restarts propagate to the caller.
        """
        name = scanner.chain.name
        settings = self.config.supervisor
        verified = False
        ranges_at_restart = scanner.ranges_scanned

        while not self.shutdown_event.is_set():
            try:
                if not verified:
                    await scanner.verify_chain_id()
                    verified = True
                await scanner.run()
                return
            except (PermanentRPCError, ConfigError):
                raise
            except Exception as e:
                if scanner.ranges_scanned > ranges_at_restart and self.restart_counts[name]:
                    logger.info(f"Scanner {name} recovered since its last restart, resetting restart count")
                    self.restart_counts[name] = 0
                ranges_at_restart = scanner.ranges_scanned

                attempt = self.restart_counts[name] + 1
                if attempt > settings.max_restarts:
                    logger.error(f"Scanner {name} failed {attempt} times, giving up: {e}")
                    raise
                self.restart_counts[name] = attempt

                delay = settings.restart_backoff * attempt
                logger.warning(
                    f"Scanner {name} exited with {type(e).__name__}: {e}. "
                    f"Restart {attempt}/{settings.max_restarts} in {delay}s"
                )
                await self._sleep(delay)

    async def _periodic_status_logger(self) -> None:
        """Log status periodically while running."""
        while self.running:
            await asyncio.sleep(self.config.supervisor.status_interval)
            self.correlator.log_stats()
            for scanner in self.scanners:
                status = scanner.get_status()
                logger.info(
                    f"Scanner {status['chain']}: state={status['state']} "
                    f"block={status['last_completed_block']} events={status['events_published']} "
                    f"malformed={status['malformed_logs']} reorgs={status['reorgs']}"
                )

    def _check_scanner_health(self, tasks: dict[str, asyncio.Task]) -> bool:
        """
        Record newly failed scanners.

        Returns:
            False if a failure requires the whole service to stop
        """
        healthy = True
        for name, task in tasks.items():
            if not task.done() or name in self.failures or task.cancelled():
                continue
            error = task.exception()
            if error is None:
                continue
            self.failures[name] = error
            logger.error(f"Scanner {name} failed: {type(error).__name__}: {error}")
            if self.config.supervisor.stop_on_fatal:
                healthy = False
        return healthy

    async def _cleanup_tasks(self, scanner_tasks: dict[str, asyncio.Task], service_tasks: dict[str, asyncio.Task]) -> None:
        """Stop scanners within the shutdown deadline, then drain the correlator."""
        self.shutdown_event.set()
        timeout = self.config.supervisor.shutdown_timeout

        pending = [task for task in scanner_tasks.values() if not task.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            for task in still_running:
                logger.warning(f"Scanner task {task.get_name()} missed the shutdown deadline, cancelling")
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)

        correlator_task = service_tasks.get("correlator")
        if correlator_task and not correlator_task.done():
            _, still_running = await asyncio.wait([correlator_task], timeout=timeout)
            for task in still_running:
                task.cancel()

        for name, task in service_tasks.items():
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass  # Expected when cancelling

    async def run(self) -> int:
        """
        Main event loop for the indexer.

        Returns:
            Process exit code: 0 on clean shutdown, 1 if an endpoint serves the
            wrong chain, 2 if a scanner failed fatally
        """
        self.running = True
        logger.info(f"Interop indexer starting with {len(self.scanners)} scanners...")

        scanner_tasks: dict[str, asyncio.Task] = {}
        service_tasks: dict[str, asyncio.Task] = {}
        try:
            service_tasks = {
                "correlator": asyncio.create_task(self.correlator.run(self.shutdown_event), name="correlator"),
                "status": asyncio.create_task(self._periodic_status_logger(), name="status"),
            }
            scanner_tasks = {
                scanner.chain.name: asyncio.create_task(self._supervise(scanner), name=f"scanner-{scanner.chain.name}")
                for scanner in self.scanners
            }

            logger.info("Scanners started, waiting for events...")

            # Wait until shutdown or task failure
            while self.running:
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=self.HEALTH_CHECK_INTERVAL)
                    break  # Shutdown requested
                except asyncio.TimeoutError:
                    pass  # Continue running

                if not self._check_scanner_health(scanner_tasks):
                    logger.error("Critical scanner failure, shutting down")
                    break

                if all(task.done() for task in scanner_tasks.values()):
                    logger.error("All scanners have stopped, shutting down")
                    break

        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
            raise
        finally:
            self.running = False
            await self._cleanup_tasks(scanner_tasks, service_tasks)
            self._check_scanner_health(scanner_tasks)
            self.correlator.log_stats()
            logger.info("Interop indexer stopped")

        if any(isinstance(error, ConfigError) for error in self.failures.values()):
            self.exit_code = EXIT_CONFIG_ERROR
        elif self.failures:
            self.exit_code = EXIT_FATAL
        else:
            self.exit_code = EXIT_OK
        return self.exit_code

    def stop(self) -> None:
        """Stop the indexer."""
        self.running = False
        self.shutdown_event.set()
