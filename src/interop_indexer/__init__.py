"""
Interop indexer package.

Watches a set of EVM chains for cross-chain interop messages and pairs each
initiating message on its source chain with the executing message on its
destination chain.
"""

from .config import ChainConfig, IndexerConfig, ScanSettings, SupervisorSettings
from .correlator import Correlator
from .models import (
    CorrelationEntry,
    CorrelationState,
    EventKind,
    ExecutingEvent,
    Identifier,
    InitiatingEvent,
    PairingNotification,
)
from .scanner import ChainScanner
from .supervisor import Supervisor

__all__ = [
    "ChainConfig",
    "IndexerConfig",
    "ScanSettings",
    "SupervisorSettings",
    "Correlator",
    "ChainScanner",
    "Supervisor",
    "CorrelationEntry",
    "CorrelationState",
    "EventKind",
    "ExecutingEvent",
    "Identifier",
    "InitiatingEvent",
    "PairingNotification",
]
__version__ = "0.1.0"
