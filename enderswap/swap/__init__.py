"""
Swap coordination for enderswap.

Orchestrates atomic swaps across two ledgers using HTLCs.
"""

from .orchestrator import SwapOrchestrator, OrchestratorConfig, Participant, Swap
from .watcher import SecretWatcher, SwapWatcher, SwapMonitor, WatcherConfig

__all__ = [
    "SwapOrchestrator",
    "OrchestratorConfig",
    "Participant",
    "Swap",
    "SecretWatcher",
    "SwapWatcher",
    "SwapMonitor",
    "WatcherConfig",
]
