"""Exception hierarchy for the interop indexer.

Errors are split by how the caller should react: configuration problems stop
the process at startup, transient RPC failures are retried, permanent RPC
failures stop the affected scanner, and malformed logs are skipped.
"""


class IndexerError(Exception):
    """Base class for all indexer errors."""


class ConfigError(IndexerError, ValueError):
    """Invalid or missing configuration."""


class RPCError(IndexerError):
    """A JSON-RPC call failed."""

    def __init__(self, message: str, method: str = "") -> None:
        super().__init__(message)
        self.method = method


class TransientRPCError(RPCError):
    """Timeout, rate limit, connection reset or 5xx. Safe to retry."""


class PermanentRPCError(RPCError):
    """Malformed response, unknown method or auth failure. Retrying won't help."""


class MalformedLogError(IndexerError):
    """A log could not be decoded into an interop event."""

