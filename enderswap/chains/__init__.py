"""
Ledger adapters for enderswap.

Each adapter provides a unified interface for:
- Creating, claiming and refunding locks
- Querying locks and the ledger clock
- Watching lock events and transaction confirmations
"""

from .base import (
    LedgerAdapter,
    LockReceipt,
    ConfirmationHandle,
    ConfirmationPolicy,
    ConfirmationStatus,
    Confirmation,
    EventFilter,
)
from .memory import MemoryLedgerAdapter
from .evm import EVMLedgerAdapter, EVMConfig
from .sui import SuiLedgerAdapter, SuiConfig, SuiKeypair

__all__ = [
    "LedgerAdapter",
    "LockReceipt",
    "ConfirmationHandle",
    "ConfirmationPolicy",
    "ConfirmationStatus",
    "Confirmation",
    "EventFilter",
    "MemoryLedgerAdapter",
    "EVMLedgerAdapter",
    "EVMConfig",
    "SuiLedgerAdapter",
    "SuiConfig",
    "SuiKeypair",
]
