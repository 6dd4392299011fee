"""
enderswap - Cross-Ledger Atomic Swap Library

Hash time-locked swaps between an EVM chain and Sui: one secret, two locks,
either both sides settle or both refund.

Usage:
    from enderswap import EVMLedgerAdapter, SuiLedgerAdapter, SwapOrchestrator, Participant
    from enderswap import load_config

    settings = load_config()
    evm = EVMLedgerAdapter(settings.evm)
    sui = SuiLedgerAdapter(settings.sui)

    # Same wallet on both sides: trade ETH on Base for SUI
    orchestrator = SwapOrchestrator(settings.orchestrator)
    swap = orchestrator.run_swap(
        Participant(source=evm, destination=sui),
        Participant(source=sui, destination=evm),
        amount_a=settings.evm_amount,
        amount_b=settings.sui_amount,
    )
"""

from .core import (
    Lock,
    LockStatus,
    LockEvent,
    LockEventKind,
    SwapState,
    generate_secret,
    verify_preimage,
    hash_secret,
    derive_lock_id,
    to_base_units,
    from_base_units,
    format_duration,
)
from .errors import HTLCError, ValidationError, TransportError, SwapAborted, SwapCancelled

from .htlc import LockStateMachine, ManualClock, AuthPolicy, STRICT, PERMISSIVE

from .chains import (
    LedgerAdapter,
    MemoryLedgerAdapter,
    EVMLedgerAdapter,
    EVMConfig,
    SuiLedgerAdapter,
    SuiConfig,
    ConfirmationPolicy,
)

from .swap import (
    SwapOrchestrator,
    OrchestratorConfig,
    Participant,
    Swap,
    SecretWatcher,
    SwapWatcher,
    SwapMonitor,
    WatcherConfig,
)

from .config import SwapSettings, load_config

__version__ = "0.1.0"
__all__ = [
    # Core types
    "Lock",
    "LockStatus",
    "LockEvent",
    "LockEventKind",
    "SwapState",
    # Utilities
    "generate_secret",
    "verify_preimage",
    "hash_secret",
    "derive_lock_id",
    "to_base_units",
    "from_base_units",
    "format_duration",
    # Errors
    "HTLCError",
    "ValidationError",
    "TransportError",
    "SwapAborted",
    "SwapCancelled",
    # Lock state machine
    "LockStateMachine",
    "ManualClock",
    "AuthPolicy",
    "STRICT",
    "PERMISSIVE",
    # Ledgers
    "LedgerAdapter",
    "MemoryLedgerAdapter",
    "EVMLedgerAdapter",
    "EVMConfig",
    "SuiLedgerAdapter",
    "SuiConfig",
    "ConfirmationPolicy",
    # Swap
    "SwapOrchestrator",
    "OrchestratorConfig",
    "Participant",
    "Swap",
    "SecretWatcher",
    "SwapWatcher",
    "SwapMonitor",
    "WatcherConfig",
    # Config
    "SwapSettings",
    "load_config",
]
