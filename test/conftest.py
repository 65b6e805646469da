"""Shared fixtures and a scripted in-memory chain for the test suite."""

import asyncio
from collections import defaultdict
from dataclasses import replace
from unittest.mock import patch

import pytest
from web3 import Web3

from interop_indexer.config import ChainConfig, IndexerConfig, ScanSettings, SupervisorSettings
from interop_indexer.decoder import encode_executing, encode_initiating
from interop_indexer.errors import TransientRPCError
from interop_indexer.models import (
    BlockHeader,
    ExecutingEvent,
    Identifier,
    InitiatingEvent,
    Log,
)
from interop_indexer.supervisor import Supervisor

OP_CHAIN_ID = 10
BASE_CHAIN_ID = 8453

SENDER = bytes.fromhex("4200000000000000000000000000000000000023")
INBOX = bytes.fromhex("4200000000000000000000000000000000000022")

GENESIS_TIMESTAMP = 1_700_000_000


def block_hash(chain_id: int, height: int, branch: str = "a") -> bytes:
    return bytes(Web3.keccak(text=f"{chain_id}:{branch}:{height}"))


def block_timestamp(height: int) -> int:
    return GENESIS_TIMESTAMP + height * 2


def make_identifier(
    block_number: int = 100,
    log_index: int = 0,
    chain_id: int = OP_CHAIN_ID,
    timestamp: int | None = None,
    origin: bytes = SENDER,
) -> Identifier:
    return Identifier(
        origin=origin,
        block_number=block_number,
        log_index=log_index,
        timestamp=block_timestamp(block_number) if timestamp is None else timestamp,
        chain_id=chain_id,
    )


def make_initiating(identifier: Identifier, payload: bytes = b"hello", tx: str = "init") -> InitiatingEvent:
    return InitiatingEvent(
        identifier=identifier,
        message_payload=payload,
        source_tx_hash=bytes(Web3.keccak(text=tx)),
    )


def make_executing(
    identifier: Identifier,
    block_number: int = 200,
    log_index: int = 0,
    chain_id: int = BASE_CHAIN_ID,
    tx: str = "exec",
    message_hash: bytes | None = None,
    timestamp: int | None = None,
) -> ExecutingEvent:
    return ExecutingEvent(
        referenced_identifier=identifier,
        message_hash=message_hash or bytes(Web3.keccak(text="payload")),
        dest_tx_hash=bytes(Web3.keccak(text=tx)),
        chain_id=chain_id,
        block_number=block_number,
        log_index=log_index,
        timestamp=block_timestamp(block_number) if timestamp is None else timestamp,
    )


class FakeChainClient:
    """
    Scripted stand-in for ChainClient.

    Serves a linear chain of headers up to `head`, returns stored logs that
    match the topic filter and can be told to fail or reorganize.
    """

    def __init__(self, chain_id: int, head: int, reported_chain_id: int | None = None) -> None:
        self.id = chain_id
        self.reported_chain_id = chain_id if reported_chain_id is None else reported_chain_id
        self.head = head
        self.branches: dict[int, str] = {}
        self.logs: list[Log] = []
        self.get_logs_calls: list[tuple[int, int]] = []
        self.failures: dict[str, list[Exception]] = defaultdict(list)
        self.always_fail: dict[str, Exception] = {}

    # Scripting helpers

    def header(self, height: int) -> BlockHeader:
        branch = self.branches.get(height, "a")
        return BlockHeader(
            number=height,
            hash=block_hash(self.id, height, branch),
            parent_hash=block_hash(self.id, height - 1, self.branches.get(height - 1, "a")),
            timestamp=block_timestamp(height),
        )

    def add_log(self, log: Log) -> Log:
        stored = replace(log, block_hash=self.header(log.block_number).hash, timestamp=0)
        self.logs.append(stored)
        return stored

    def add_initiating(self, event: InitiatingEvent) -> Log:
        return self.add_log(encode_initiating(event))

    def add_executing(self, event: ExecutingEvent) -> Log:
        return self.add_log(encode_executing(event, address=INBOX))

    def reorg(self, from_height: int, branch: str = "b") -> None:
        """Replace every block from from_height up with a new branch, dropping its logs."""
        for height in range(from_height, self.head + 1):
            self.branches[height] = branch
        self.logs = [log for log in self.logs if log.block_number < from_height]

    def fail(self, method: str, error: Exception | None = None, times: int = 1) -> None:
        for _ in range(times):
            self.failures[method].append(error or TransientRPCError(f"{method} unavailable", method))

    def _maybe_fail(self, method: str) -> None:
        if method in self.always_fail:
            raise self.always_fail[method]
        if self.failures[method]:
            raise self.failures[method].pop(0)

    # ChainClient interface

    async def chain_id(self) -> int:
        self._maybe_fail("chain_id")
        return self.reported_chain_id

    async def latest_block(self) -> BlockHeader:
        self._maybe_fail("latest_block")
        return self.header(self.head)

    async def block_header(self, number: int) -> BlockHeader:
        self._maybe_fail("block_header")
        return self.header(number)

    async def get_logs(self, from_block, to_block, topic_filter, address=None) -> list[Log]:
        self._maybe_fail("get_logs")
        self.get_logs_calls.append((from_block, to_block))
        wanted = set(topic_filter[0]) if topic_filter else None
        return [
            log for log in self.logs
            if from_block <= log.block_number <= to_block
            and (wanted is None or log.topics[0] in wanted)
        ]


@pytest.fixture
def identifier() -> Identifier:
    return make_identifier()


def make_indexer_config(
    confirmation_depth: int = 2,
    start_blocks: dict[str, int] | None = None,
    **supervisor_settings,
) -> IndexerConfig:
    """Two-chain configuration tuned for fast tests."""
    start_blocks = start_blocks or {}
    supervisor_defaults = dict(restart_backoff=0, max_restarts=2, shutdown_timeout=1, status_interval=0.05)
    supervisor_defaults.update(supervisor_settings)
    return IndexerConfig(
        chains=(
            ChainConfig(name="Optimism", chain_id=OP_CHAIN_ID, rpc_url="http://op.local/",
                        start_block=start_blocks.get("Optimism", 0)),
            ChainConfig(name="Base", chain_id=BASE_CHAIN_ID, rpc_url="http://base.local/",
                        start_block=start_blocks.get("Base", 0)),
        ),
        api_key="test-key",
        scan=ScanSettings(
            block_range_size=5,
            confirmation_depth=confirmation_depth,
            polling_interval=0.01,
            retry_count=1,
            max_backoff=1,
        ),
        supervisor=SupervisorSettings(**supervisor_defaults),
    )


def build_supervisor(config: IndexerConfig, clients: dict[str, FakeChainClient]) -> Supervisor:
    """Supervisor whose scanners talk to the given fake clients, keyed by chain name."""
    def client_for(url, chain_name, request_timeout):
        return clients[chain_name]

    with patch("interop_indexer.supervisor.ChainClient", side_effect=client_for):
        supervisor = Supervisor(config)

    supervisor.HEALTH_CHECK_INTERVAL = 0.01
    supervisor.correlator.POLL_TIMEOUT = 0.01
    for scanner in supervisor.scanners:
        scanner.BASE_BACKOFF = 0
    return supervisor


async def wait_until(predicate, timeout: float = 3.0) -> None:
    """Poll predicate until it holds or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)
