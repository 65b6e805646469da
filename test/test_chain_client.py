"""Unit tests for ChainClient error classification and parsing."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from hexbytes import HexBytes
from web3 import Web3
from web3.datastructures import AttributeDict
from web3.exceptions import BadResponseFormat, BlockNotFound, Web3RPCError

from interop_indexer.decoder import EXECUTING_MESSAGE_HASH, INITIATING_MESSAGE_HASH
from interop_indexer.errors import PermanentRPCError, TransientRPCError
from interop_indexer.utils.chain_client import ChainClient, to_bytes_safe, to_int_safe

from conftest import SENDER


BLOCK_HASH = HexBytes(b"\xab" * 32)


def raw_block(number: int = 100) -> AttributeDict:
    return AttributeDict({
        "number": number,
        "hash": BLOCK_HASH,
        "parentHash": HexBytes(b"\xcd" * 32),
        "timestamp": 1_700_000_200,
    })


def raw_log(block_number: int = 100, log_index: int = 3) -> AttributeDict:
    return AttributeDict({
        "address": Web3.to_checksum_address(SENDER),
        "topics": [HexBytes(INITIATING_MESSAGE_HASH)],
        "data": HexBytes(b"\x00" * 64),
        "blockNumber": block_number,
        "blockHash": BLOCK_HASH,
        "logIndex": log_index,
        "transactionHash": HexBytes(b"\x01" * 32),
    })


def rpc_error(code: int, message: str = "boom") -> Web3RPCError:
    return Web3RPCError(message, rpc_response={"jsonrpc": "2.0", "id": 1, "error": {"code": code, "message": message}})


def http_error(status: int) -> aiohttp.ClientResponseError:
    return aiohttp.ClientResponseError(request_info=MagicMock(), history=(), status=status, message="error")


@pytest.fixture
def w3():
    mock = MagicMock()
    mock.eth.get_block = AsyncMock(return_value=raw_block())
    mock.eth.get_logs = AsyncMock(return_value=[raw_log()])
    return mock


@pytest.fixture
def client(w3):
    return ChainClient("http://localhost:8545/key", chain_name="Optimism", request_timeout=1, w3=w3)


class TestConversions:
    """Helpers normalizing web3 return values."""

    def test_to_bytes_safe(self):
        assert to_bytes_safe(HexBytes("0x0102")) == b"\x01\x02"
        assert to_bytes_safe(b"\x01") == b"\x01"
        assert to_bytes_safe("0xff00") == b"\xff\x00"

    def test_to_int_safe(self):
        assert to_int_safe(5) == 5
        assert to_int_safe("0x10") == 16
        assert to_int_safe("42") == 42


class TestParsing:
    """Responses become model objects."""

    @pytest.mark.asyncio
    async def test_block_header(self, client, w3):
        header = await client.block_header(100)

        w3.eth.get_block.assert_awaited_once_with(100)
        assert header.number == 100
        assert header.hash == bytes(BLOCK_HASH)
        assert header.timestamp == 1_700_000_200

    @pytest.mark.asyncio
    async def test_latest_block(self, client, w3):
        await client.latest_block()
        w3.eth.get_block.assert_awaited_once_with("latest")

    @pytest.mark.asyncio
    async def test_chain_id(self, client, w3):
        async def chain_id():
            return 10

        w3.eth.chain_id = chain_id()
        assert await client.chain_id() == 10

    @pytest.mark.asyncio
    async def test_get_logs_formats_filter(self, client, w3):
        logs = await client.get_logs(1, 5, [[INITIATING_MESSAGE_HASH, EXECUTING_MESSAGE_HASH]])

        params = w3.eth.get_logs.await_args.args[0]
        assert params["fromBlock"] == 1
        assert params["toBlock"] == 5
        assert params["topics"] == [[Web3.to_hex(INITIATING_MESSAGE_HASH), Web3.to_hex(EXECUTING_MESSAGE_HASH)]]
        assert "address" not in params

        (log,) = logs
        assert log.address == SENDER
        assert log.topics == (INITIATING_MESSAGE_HASH,)
        assert log.position == (100, 3)
        assert log.timestamp == 0

    @pytest.mark.asyncio
    async def test_get_logs_uses_block_timestamp_when_present(self, client, w3):
        entry = dict(raw_log())
        entry["blockTimestamp"] = "0x6553f100"
        w3.eth.get_logs.return_value = [AttributeDict(entry)]

        (log,) = await client.get_logs(1, 5, [[INITIATING_MESSAGE_HASH]])

        assert log.timestamp == 0x6553F100

    @pytest.mark.asyncio
    async def test_malformed_block_is_permanent(self, client, w3):
        w3.eth.get_block.return_value = AttributeDict({"number": 1})

        with pytest.raises(PermanentRPCError, match="Malformed block"):
            await client.block_header(1)

    @pytest.mark.asyncio
    async def test_malformed_log_is_permanent(self, client, w3):
        w3.eth.get_logs.return_value = [AttributeDict({"address": "0x00"})]

        with pytest.raises(PermanentRPCError, match="Malformed log"):
            await client.get_logs(1, 5, [[INITIATING_MESSAGE_HASH]])


class TestErrorClassification:
    """Every failure maps to transient or permanent."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        asyncio.TimeoutError(),
        BlockNotFound("Block with id: '100' not found."),
        aiohttp.ClientConnectionError("reset by peer"),
        ConnectionResetError("reset"),
    ])
    async def test_transport_failures_are_transient(self, client, w3, error):
        w3.eth.get_block.side_effect = error

        with pytest.raises(TransientRPCError) as exc_info:
            await client.block_header(100)

        assert exc_info.value.method == "eth_getBlockByNumber"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, expected", [
        (429, TransientRPCError),
        (502, TransientRPCError),
        (503, TransientRPCError),
        (401, PermanentRPCError),
        (403, PermanentRPCError),
    ])
    async def test_http_status(self, client, w3, status, expected):
        w3.eth.get_logs.side_effect = http_error(status)

        with pytest.raises(expected):
            await client.get_logs(1, 5, [[INITIATING_MESSAGE_HASH]])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code, expected", [
        (-32005, TransientRPCError),
        (-32603, TransientRPCError),
        (-32000, TransientRPCError),
        (-32601, PermanentRPCError),
        (-32602, PermanentRPCError),
    ])
    async def test_json_rpc_codes(self, client, w3, code, expected):
        w3.eth.get_logs.side_effect = rpc_error(code)

        with pytest.raises(expected):
            await client.get_logs(1, 5, [[INITIATING_MESSAGE_HASH]])

    @pytest.mark.asyncio
    async def test_deadline_exceeded_is_transient(self, w3):
        async def hang(*args, **kwargs):
            await asyncio.sleep(1)

        w3.eth.get_block.side_effect = hang
        client = ChainClient("http://localhost:8545/key", chain_name="Optimism", request_timeout=0.01, w3=w3)

        with pytest.raises(TransientRPCError, match="timed out"):
            await client.latest_block()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        BadResponseFormat("The response was in an unexpected format and unable to be parsed"),
        json.JSONDecodeError("Expecting value", "<html>Bad Gateway</html>", 0),
    ])
    async def test_malformed_responses_are_permanent(self, client, w3, error):
        w3.eth.get_block.side_effect = error

        with pytest.raises(PermanentRPCError, match="eth_getBlockByNumber") as exc_info:
            await client.latest_block()

        assert exc_info.value.__cause__ is error

    @pytest.mark.asyncio
    async def test_cancellation_is_not_classified(self, client, w3):
        w3.eth.get_logs.side_effect = asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await client.get_logs(1, 5, [[INITIATING_MESSAGE_HASH]])
