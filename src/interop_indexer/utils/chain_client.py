"""
JSON-RPC client for a single chain.

Wraps AsyncWeb3 with per-call deadlines and maps every failure onto
TransientRPCError or PermanentRPCError. The client never retries and never
caches; retry policy belongs to the scanner.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

import aiohttp
from hexbytes import HexBytes
from web3 import AsyncWeb3, Web3
from web3.exceptions import BlockNotFound, TimeExhausted, Web3Exception, Web3RPCError
from web3.types import BlockData, FilterParams, LogReceipt

from ..errors import PermanentRPCError, TransientRPCError
from ..models import BlockHeader, Log

T = TypeVar("T")

# JSON-RPC error codes that indicate an overloaded or lagging node
TRANSIENT_RPC_CODES: frozenset[int] = frozenset({-32000, -32005, -32603, 429})


def to_bytes_safe(value: HexBytes | bytes | str) -> bytes:
    """
    Safely convert value to bytes, handling HexBytes, bytes, and hex strings.

    Args:
        value: Value to convert (HexBytes, bytes, or hex string)

    Returns:
        Bytes representation
    """
    if isinstance(value, HexBytes):
        return bytes(value)
    elif isinstance(value, bytes):
        return value
    else:
        return Web3.to_bytes(hexstr=value)


def to_int_safe(value: int | str) -> int:
    """Convert an int or a 0x-prefixed quantity to int."""
    if isinstance(value, int):
        return value
    return int(value, 16) if value.startswith("0x") else int(value)


class ChainClient:
    """
    Async access to latest block, block headers and logs of one chain.

    One instance per scanner; instances are never shared.
    """

    def __init__(
        self,
        rpc_url: str,
        chain_name: str = "",
        request_timeout: float = 20,
        w3: AsyncWeb3 | None = None,
    ) -> None:
        """
        Initialize the chain client.

        Args:
            rpc_url: Full endpoint URL, API key included
            chain_name: Name used in log lines
            request_timeout: Per-call deadline in seconds
            w3: Pre-built AsyncWeb3 instance (tests inject a mock here)
        """
        self.chain_name = chain_name or rpc_url
        self.request_timeout = request_timeout

        if w3 is None:
            provider = AsyncWeb3.AsyncHTTPProvider(
                rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=request_timeout)},
                exception_retry_configuration=None,
            )
            w3 = AsyncWeb3(provider)
        self.w3 = w3

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}.{self.chain_name}")

    async def _call(self, method: str, request: Callable[[], Awaitable[T]]) -> T:
        """
        Run one RPC call under the per-call deadline and classify failures.

        Args:
            method: JSON-RPC method name, for error messages
            request: Zero-argument coroutine factory performing the call

        Returns:
            The call's result

        Raises:
            TransientRPCError: Timeouts, connection problems, rate limits, 5xx
            PermanentRPCError: Everything else
        """
        try:
            return await asyncio.wait_for(request(), timeout=self.request_timeout)
        except (asyncio.TimeoutError, TimeExhausted) as e:
            raise TransientRPCError(
                f"{method} timed out after {self.request_timeout}s on {self.chain_name}", method
            ) from e
        except BlockNotFound as e:
            # The node has not caught up to a height its peers already serve
            raise TransientRPCError(f"{method}: {e}", method) from e
        except Web3RPCError as e:
            code = self._rpc_error_code(e)
            if code in TRANSIENT_RPC_CODES:
                raise TransientRPCError(f"{method} failed with code {code}: {e}", method) from e
            raise PermanentRPCError(f"{method} failed with code {code}: {e}", method) from e
        except aiohttp.ClientResponseError as e:
            if e.status == 429 or e.status >= 500:
                raise TransientRPCError(f"{method} HTTP {e.status} on {self.chain_name}", method) from e
            raise PermanentRPCError(f"{method} HTTP {e.status} on {self.chain_name}", method) from e
        except (aiohttp.ClientError, ConnectionError, OSError) as e:
            raise TransientRPCError(f"{method} connection error on {self.chain_name}: {e}", method) from e
        except Web3Exception as e:
            raise PermanentRPCError(f"{method} failed on {self.chain_name}: {type(e).__name__}: {e}", method) from e
        except Exception as e:
            # Unparseable bodies (JSON decode errors, unexpected payload shapes)
            raise PermanentRPCError(
                f"{method} returned a malformed response on {self.chain_name}: {type(e).__name__}: {e}", method
            ) from e

    @staticmethod
    def _rpc_error_code(error: Web3RPCError) -> int | None:
        response = getattr(error, "rpc_response", None) or {}
        rpc_error = response.get("error") if isinstance(response, dict) else None
        if isinstance(rpc_error, dict):
            return rpc_error.get("code")
        return None

    def _parse_header(self, block: BlockData) -> BlockHeader:
        try:
            return BlockHeader(
                number=to_int_safe(block["number"]),
                hash=to_bytes_safe(block["hash"]),
                parent_hash=to_bytes_safe(block["parentHash"]),
                timestamp=to_int_safe(block["timestamp"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PermanentRPCError(f"Malformed block from {self.chain_name}: {e}", "eth_getBlockByNumber") from e

    def _parse_log(self, raw: LogReceipt) -> Log:
        try:
            timestamp = raw.get("blockTimestamp")
            return Log(
                address=to_bytes_safe(raw["address"]),
                topics=tuple(to_bytes_safe(topic) for topic in raw["topics"]),
                data=to_bytes_safe(raw["data"]),
                block_number=to_int_safe(raw["blockNumber"]),
                block_hash=to_bytes_safe(raw["blockHash"]),
                log_index=to_int_safe(raw["logIndex"]),
                transaction_hash=to_bytes_safe(raw["transactionHash"]),
                timestamp=to_int_safe(timestamp) if timestamp is not None else 0,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PermanentRPCError(f"Malformed log from {self.chain_name}: {e}", "eth_getLogs") from e

    async def chain_id(self) -> int:
        """Chain ID reported by the endpoint (eth_chainId)."""
        return await self._call("eth_chainId", lambda: self.w3.eth.chain_id)

    async def latest_block(self) -> BlockHeader:
        """Header of the current head block."""
        block = await self._call("eth_getBlockByNumber", lambda: self.w3.eth.get_block("latest"))
        return self._parse_header(block)

    async def block_header(self, number: int) -> BlockHeader:
        """Header of the block at the given height."""
        block = await self._call("eth_getBlockByNumber", lambda: self.w3.eth.get_block(number))
        return self._parse_header(block)

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        topic_filter: Sequence[Any],
        address: str | Sequence[str] | None = None,
    ) -> list[Log]:
        """
        Fetch logs in the inclusive range [from_block, to_block].

        Args:
            from_block: First block
            to_block: Last block (inclusive)
            topic_filter: eth_getLogs topics, e.g. [[hash_a, hash_b]]
            address: Optional contract address filter

        Returns:
            Parsed logs in the order the node returned them
        """
        params: FilterParams = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": [self._format_topic(t) for t in topic_filter],
        }
        if address:
            params["address"] = address

        raw_logs = await self._call("eth_getLogs", lambda: self.w3.eth.get_logs(params))
        self.logger.debug(f"eth_getLogs [{from_block}, {to_block}] returned {len(raw_logs)} logs")
        return [self._parse_log(raw) for raw in raw_logs]

    @staticmethod
    def _format_topic(topic: Any) -> Any:
        """Render topic filter entries as 0x-prefixed hex, keeping None and OR lists."""
        if topic is None:
            return None
        if isinstance(topic, (list, tuple)):
            return [ChainClient._format_topic(t) for t in topic]
        if isinstance(topic, (bytes, bytearray)):
            return Web3.to_hex(topic)
        return topic
