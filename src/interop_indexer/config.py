#!/usr/bin/env python3
"""Configuration management for the interop indexer.

This module provides type-safe configuration dataclasses with validation.
Configuration is loaded from environment variables with sensible defaults
where appropriate; the API key is the only mandatory secret.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import ClassVar
from urllib.parse import urlparse

from .errors import ConfigError
from .models import EventKind

# Get logger for this module
logger = logging.getLogger(__name__)

DEFAULT_CHAINS = "Optimism:10,Base:8453"

DEFAULT_RPC_URLS: dict[str, str] = {
    "Optimism": "https://opt-mainnet.g.alchemy.com/v2/",
    "Base": "https://base-mainnet.g.alchemy.com/v2/",
}


def _env_key(chain_name: str) -> str:
    """Turn a chain name into an environment variable suffix."""
    return "".join(c if c.isalnum() else "_" for c in chain_name).upper()


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _bool_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    match raw.strip().lower():
        case "1" | "true" | "yes" | "on":
            return True
        case "0" | "false" | "no" | "off":
            return False
        case _:
            raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def parse_event_kinds(raw: str) -> frozenset[EventKind]:
    """Parse a comma separated list such as "initiating,executing"."""
    kinds = set()
    for part in raw.split(","):
        part = part.strip().lower()
        if not part:
            continue
        try:
            kinds.add(EventKind(part))
        except ValueError:
            raise ConfigError(
                f"Unknown event kind: {part!r}. "
                f"Expected one of: {', '.join(k.value for k in EventKind)}"
            ) from None
    return frozenset(kinds)


def parse_supported_chains(raw: str) -> list[tuple[str, int]]:
    """Parse "Name:chain_id,Name:chain_id" into (name, chain_id) pairs."""
    chains = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        name, sep, chain_id = part.partition(":")
        if not sep or not name.strip():
            raise ConfigError(f"Invalid chain entry {part!r}, expected Name:chain_id")
        try:
            chains.append((name.strip(), int(chain_id)))
        except ValueError:
            raise ConfigError(f"Invalid chain id in {part!r}") from None
    return chains


@dataclass(frozen=True, slots=True)
class ChainConfig:
    """Configuration for one scanned chain.

    Attributes:
        name: Human-readable chain name (e.g. 'Optimism')
        chain_id: EVM chain ID
        rpc_url: Base JSON-RPC URL; the API key is appended at dial time
        start_block: First block to scan when no checkpoint exists
        event_kinds: Which interop events to extract on this chain
    """

    name: str
    chain_id: int
    rpc_url: str
    start_block: int = 0
    event_kinds: frozenset[EventKind] = frozenset(EventKind)

    def __post_init__(self) -> None:
        """Validate chain configuration."""
        if not self.name:
            raise ConfigError("Chain name is required")

        if self.chain_id <= 0:
            raise ConfigError(f"Chain ID must be positive for {self.name}, got {self.chain_id}")

        if not self.rpc_url:
            raise ConfigError(f"RPC URL is required for {self.name} (RPC_URL_{_env_key(self.name)})")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ('http', 'https', 'ws', 'wss'):
            raise ConfigError(
                f"Invalid RPC URL scheme for {self.name}: {parsed.scheme}. "
                "Expected http, https, ws, or wss"
            )

        if self.start_block < 0:
            raise ConfigError(f"Start block must be non-negative for {self.name}, got {self.start_block}")

        if not self.event_kinds:
            raise ConfigError(f"At least one event kind is required for {self.name}")

    def dial_url(self, api_key: str) -> str:
        """Endpoint URL with the API key appended."""
        return self.rpc_url + api_key


@dataclass(frozen=True, slots=True)
class ScanSettings:
    """Configuration for block range scanning."""
    block_range_size: int = 5  # max blocks per eth_getLogs
    confirmation_depth: int = 5  # blocks behind head treated as stable
    polling_interval: float = 4  # seconds between head polls when caught up
    request_timeout: float = 20  # per-call RPC deadline in seconds
    retry_count: int = 8  # transient retries before giving up to the supervisor
    max_backoff: float = 30  # cap on exponential backoff in seconds

    def __post_init__(self) -> None:
        """Validate scan settings."""
        if self.block_range_size <= 0:
            raise ConfigError(f"Block range size must be positive, got {self.block_range_size}")
        if self.block_range_size > 10_000:
            raise ConfigError(f"Block range size too high (max 10000), got {self.block_range_size}")

        if self.confirmation_depth < 0:
            raise ConfigError(f"Confirmation depth must be non-negative, got {self.confirmation_depth}")

        if self.polling_interval <= 0:
            raise ConfigError(f"Polling interval must be positive, got {self.polling_interval}")
        if self.polling_interval > 300:
            raise ConfigError(f"Polling interval too long (max 300s), got {self.polling_interval}")

        if self.request_timeout <= 0:
            raise ConfigError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ConfigError(f"Request timeout too long (max 120s), got {self.request_timeout}")

        if self.retry_count < 0:
            raise ConfigError(f"Retry count must be non-negative, got {self.retry_count}")

        if self.max_backoff <= 0:
            raise ConfigError(f"Max backoff must be positive, got {self.max_backoff}")

    @property
    def header_cache_size(self) -> int:
        """How many recent header hashes to keep for reorg detection."""
        return max(self.confirmation_depth * 4, 1)


@dataclass(frozen=True, slots=True)
class SupervisorSettings:
    """Configuration for scanner supervision."""
    restart_backoff: float = 5  # seconds, multiplied by the attempt number
    max_restarts: int = 5  # per scanner, before the failure is treated as fatal
    shutdown_timeout: float = 10  # seconds scanners get to finish on shutdown
    stop_on_fatal: bool = True  # tear everything down when one scanner fails
    status_interval: float = 30  # seconds between status log lines

    def __post_init__(self) -> None:
        """Validate supervisor settings."""
        if self.restart_backoff < 0:
            raise ConfigError(f"Restart backoff must be non-negative, got {self.restart_backoff}")
        if self.max_restarts < 0:
            raise ConfigError(f"Max restarts must be non-negative, got {self.max_restarts}")
        if self.shutdown_timeout <= 0:
            raise ConfigError(f"Shutdown timeout must be positive, got {self.shutdown_timeout}")
        if self.status_interval <= 0:
            raise ConfigError(f"Status interval must be positive, got {self.status_interval}")


@dataclass(frozen=True, slots=True)
class IndexerConfig:
    """Main configuration for the interop indexer.

    Attributes:
        chains: Chains to scan, one scanner each
        api_key: Secret appended to every RPC URL
        scan: Range scanning settings shared by all scanners
        supervisor: Restart and shutdown policy
        retention_window: Seconds an entry lives past its latest observed side
        cursor_path: JSON file for cursor checkpoints, None keeps them in memory
    """

    chains: tuple[ChainConfig, ...]
    api_key: str
    scan: ScanSettings = field(default_factory=ScanSettings)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    retention_window: int = 86_400
    cursor_path: str | None = None

    SECRET_MASK: ClassVar[str] = "[SET]"

    def __post_init__(self) -> None:
        """Validate indexer configuration."""
        if not self.chains:
            raise ConfigError("At least one chain must be configured (SUPPORTED_CHAINS)")

        names = [chain.name for chain in self.chains]
        if len(set(names)) != len(names):
            raise ConfigError(f"Duplicate chain names in configuration: {names}")

        chain_ids = [chain.chain_id for chain in self.chains]
        if len(set(chain_ids)) != len(chain_ids):
            raise ConfigError(f"Duplicate chain IDs in configuration: {chain_ids}")

        if not self.api_key:
            raise ConfigError(
                "API_KEY environment variable is required. "
                "It is appended to every RPC endpoint URL."
            )

        if self.retention_window <= 0:
            raise ConfigError(f"Retention window must be positive, got {self.retention_window}")

    @classmethod
    def from_env(cls, cursor_path: str | None = None) -> "IndexerConfig":
        """Load configuration from environment variables.

        Args:
            cursor_path: Overrides CURSOR_FILE when given

        Returns:
            IndexerConfig instance with loaded values

        Raises:
            ConfigError: If required environment variables are missing or invalid
        """
        api_key = os.environ.get("API_KEY") or os.environ.get("ALCHEMY_API_KEY", "")

        chains = []
        for name, chain_id in parse_supported_chains(os.environ.get("SUPPORTED_CHAINS", DEFAULT_CHAINS)):
            key = _env_key(name)
            rpc_url = os.environ.get(f"RPC_URL_{key}", DEFAULT_RPC_URLS.get(name, ""))
            event_kinds = parse_event_kinds(
                os.environ.get(f"EVENT_KINDS_{key}", ",".join(k.value for k in EventKind))
            )
            chains.append(ChainConfig(
                name=name,
                chain_id=chain_id,
                rpc_url=rpc_url,
                start_block=_int_env(f"START_BLOCK_{key}", 0),
                event_kinds=event_kinds,
            ))

        scan = ScanSettings(
            block_range_size=_int_env("BLOCK_RANGE_SIZE", 5),
            confirmation_depth=_int_env("CONFIRMATION_DEPTH", 5),
            polling_interval=_int_env("POLLING_INTERVAL", 4),
            request_timeout=_int_env("REQUEST_TIMEOUT", 20),
            retry_count=_int_env("RETRY_COUNT", 8),
            max_backoff=_int_env("MAX_BACKOFF", 30),
        )

        supervisor = SupervisorSettings(
            restart_backoff=_int_env("RESTART_BACKOFF", 5),
            max_restarts=_int_env("MAX_RESTARTS", 5),
            shutdown_timeout=_int_env("SHUTDOWN_TIMEOUT", 10),
            stop_on_fatal=_bool_env("STOP_ON_FATAL", True),
            status_interval=_int_env("STATUS_INTERVAL", 30),
        )

        return cls(
            chains=tuple(chains),
            api_key=api_key,
            scan=scan,
            supervisor=supervisor,
            retention_window=_int_env("RETENTION_WINDOW", 86_400),
            cursor_path=cursor_path or os.environ.get("CURSOR_FILE") or None,
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format (secrets masked)."""
        logger.info("=" * 60)
        logger.info("Interop Indexer Configuration")
        logger.info("=" * 60)

        logger.info("Chains:")
        for chain in self.chains:
            kinds = ", ".join(sorted(k.value for k in chain.event_kinds))
            logger.info(f"  {chain.name} ({chain.chain_id}): {chain.rpc_url}")
            logger.info(f"    Start Block: {chain.start_block}")
            logger.info(f"    Event Kinds: {kinds}")

        logger.info(f"API Key: {self.SECRET_MASK if self.api_key else '[NOT SET]'}")

        logger.info("Scan Settings:")
        logger.info(f"  Block Range Size: {self.scan.block_range_size}")
        logger.info(f"  Confirmation Depth: {self.scan.confirmation_depth}")
        logger.info(f"  Polling Interval: {self.scan.polling_interval} seconds")
        logger.info(f"  Request Timeout: {self.scan.request_timeout} seconds")
        logger.info(f"  Retry Count: {self.scan.retry_count}")

        logger.info("Supervisor Settings:")
        logger.info(f"  Restart Backoff: {self.supervisor.restart_backoff} seconds")
        logger.info(f"  Max Restarts: {self.supervisor.max_restarts}")
        logger.info(f"  Shutdown Timeout: {self.supervisor.shutdown_timeout} seconds")
        logger.info(f"  Stop On Fatal: {self.supervisor.stop_on_fatal}")

        logger.info(f"Retention Window: {self.retention_window} seconds")
        logger.info(f"Cursor File: {self.cursor_path or '[IN MEMORY]'}")
        logger.info("=" * 60)
