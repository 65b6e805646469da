"""
Decoding of interop message logs.

Converts raw logs into InitiatingEvent / ExecutingEvent objects and back.
Everything here is pure and performs no I/O.

Wire formats:
- SentMessage(bytes): topic[0] is the signature hash, data is the ABI
  encoding of the message payload.
- ExecutingMessage(bytes32,Identifier): topic[0] is the signature hash,
  topic[1] the message hash, data the RLP encoding of the identifier
  [origin, block_number, log_index, timestamp, chain_id].
"""

import rlp
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from rlp.exceptions import RLPException
from rlp.sedes import Binary, List, big_endian_int
from web3 import Web3

from .errors import MalformedLogError
from .models import EventKind, ExecutingEvent, Identifier, InitiatingEvent, Log

INITIATING_SIGNATURE = "SentMessage(bytes)"
EXECUTING_SIGNATURE = "ExecutingMessage(bytes32,Identifier)"

INITIATING_MESSAGE_HASH: bytes = bytes(Web3.keccak(text=INITIATING_SIGNATURE))
EXECUTING_MESSAGE_HASH: bytes = bytes(Web3.keccak(text=EXECUTING_SIGNATURE))

SIGNATURE_HASHES: dict[EventKind, bytes] = {
    EventKind.INITIATING: INITIATING_MESSAGE_HASH,
    EventKind.EXECUTING: EXECUTING_MESSAGE_HASH,
}

IDENTIFIER_SEDES = List([
    Binary.fixed_length(20),  # origin
    big_endian_int,           # block_number
    big_endian_int,           # log_index
    big_endian_int,           # timestamp
    big_endian_int,           # chain_id
])

ZERO_HASH = b"\x00" * 32
ZERO_ADDRESS = b"\x00" * 20


def encode_identifier(identifier: Identifier) -> bytes:
    """RLP encode an identifier in declaration order."""
    return rlp.encode(
        [
            identifier.origin,
            identifier.block_number,
            identifier.log_index,
            identifier.timestamp,
            identifier.chain_id,
        ],
        sedes=IDENTIFIER_SEDES,
    )


def decode_identifier(data: bytes) -> Identifier:
    """
    Decode an RLP encoded identifier.

    Decoding is strict: trailing bytes, integers with leading zeros, an
    origin that is not exactly 20 bytes, or integers wider than 64 bits are
    all rejected.

    Args:
        data: RLP payload

    Returns:
        Decoded Identifier

    Raises:
        MalformedLogError: If the payload is not a valid identifier
    """
    try:
        origin, block_number, log_index, timestamp, chain_id = rlp.decode(
            bytes(data), sedes=IDENTIFIER_SEDES, strict=True
        )
        return Identifier(
            origin=bytes(origin),
            block_number=block_number,
            log_index=log_index,
            timestamp=timestamp,
            chain_id=chain_id,
        )
    except (RLPException, ValueError) as e:
        raise MalformedLogError(f"Invalid identifier payload: {e}") from e


def _check_signature(log: Log, expected: bytes, signature: str) -> None:
    if not log.topics:
        raise MalformedLogError(f"Log has no topics, expected {signature}")
    if bytes(log.topics[0]) != expected:
        raise MalformedLogError(
            f"Topic[0] 0x{bytes(log.topics[0]).hex()} does not match {signature}"
        )


def decode_initiating(log: Log, chain_id: int) -> InitiatingEvent:
    """
    Decode a SentMessage log observed on a source chain.

    The identifier is built from the log's own context: the emitting
    contract, its block number, log index and block timestamp, and the
    chain the scanner is attached to.

    Args:
        log: Raw log with its block timestamp filled in
        chain_id: Chain the log was observed on

    Returns:
        InitiatingEvent

    Raises:
        MalformedLogError: If topic[0] mismatches or the payload is not ABI bytes
    """
    _check_signature(log, INITIATING_MESSAGE_HASH, INITIATING_SIGNATURE)

    try:
        (payload,) = abi_decode(["bytes"], bytes(log.data))
    except (DecodingError, ValueError) as e:
        raise MalformedLogError(f"Invalid SentMessage payload: {e}") from e

    try:
        identifier = Identifier(
            origin=bytes(log.address),
            block_number=log.block_number,
            log_index=log.log_index,
            timestamp=log.timestamp,
            chain_id=chain_id,
        )
    except ValueError as e:
        raise MalformedLogError(f"Invalid SentMessage context: {e}") from e

    return InitiatingEvent(
        identifier=identifier,
        message_payload=bytes(payload),
        source_tx_hash=bytes(log.transaction_hash),
    )


def decode_executing(log: Log, chain_id: int) -> ExecutingEvent:
    """
    Decode an ExecutingMessage log observed on a destination chain.

    Args:
        log: Raw log with its block timestamp filled in
        chain_id: Chain the log was observed on

    Returns:
        ExecutingEvent

    Raises:
        MalformedLogError: If topic[0] mismatches, topic[1] is missing or
            the data payload is not an RLP identifier
    """
    _check_signature(log, EXECUTING_MESSAGE_HASH, EXECUTING_SIGNATURE)

    if len(log.topics) < 2:
        raise MalformedLogError(f"Insufficient topics in ExecutingMessage: {len(log.topics)}")

    message_hash = bytes(log.topics[1])
    if len(message_hash) != 32:
        raise MalformedLogError(f"Message hash must be 32 bytes, got {len(message_hash)}")

    identifier = decode_identifier(log.data)

    return ExecutingEvent(
        referenced_identifier=identifier,
        message_hash=message_hash,
        dest_tx_hash=bytes(log.transaction_hash),
        chain_id=chain_id,
        block_number=log.block_number,
        log_index=log.log_index,
        timestamp=log.timestamp,
    )


def decode_log(log: Log, chain_id: int) -> InitiatingEvent | ExecutingEvent:
    """Dispatch on topic[0] to the matching decoder."""
    topic0 = bytes(log.topics[0]) if log.topics else b""
    match topic0:
        case t if t == INITIATING_MESSAGE_HASH:
            return decode_initiating(log, chain_id)
        case t if t == EXECUTING_MESSAGE_HASH:
            return decode_executing(log, chain_id)
        case _:
            raise MalformedLogError(f"Unknown event signature 0x{topic0.hex()}")


def encode_initiating(event: InitiatingEvent, block_hash: bytes = ZERO_HASH) -> Log:
    """Build the SentMessage log that decodes to the given event."""
    identifier = event.identifier
    return Log(
        address=identifier.origin,
        topics=(INITIATING_MESSAGE_HASH,),
        data=abi_encode(["bytes"], [event.message_payload]),
        block_number=identifier.block_number,
        block_hash=block_hash,
        log_index=identifier.log_index,
        transaction_hash=event.source_tx_hash,
        timestamp=identifier.timestamp,
    )


def encode_executing(
    event: ExecutingEvent,
    address: bytes = ZERO_ADDRESS,
    block_hash: bytes = ZERO_HASH,
) -> Log:
    """Build the ExecutingMessage log that decodes to the given event.

    Args:
        event: Event to encode
        address: Emitting contract (the inbox), not part of the event
        block_hash: Hash of the destination block
    """
    return Log(
        address=address,
        topics=(EXECUTING_MESSAGE_HASH, event.message_hash),
        data=encode_identifier(event.referenced_identifier),
        block_number=event.block_number,
        block_hash=block_hash,
        log_index=event.log_index,
        transaction_hash=event.dest_tx_hash,
        timestamp=event.timestamp,
    )
