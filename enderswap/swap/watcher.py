"""
Swap Watcher for enderswap.

Monitors ledgers for:
- Claims revealing a swap secret
- Swaps stuck waiting for a deadline (refund)
- Swaps whose secret is public but whose other side is unclaimed

Runs as a background service to automate swap completion.
"""

import time
import logging
import threading
from typing import Dict, List, Callable, Optional
from dataclasses import dataclass

from ..core import LockEvent, LockEventKind, SwapState, normalize_hash, verify_preimage
from ..errors import TransportError
from ..chains.base import LedgerAdapter, EventFilter

log = logging.getLogger(__name__)


class SecretWatcher:
    """
    Extracts revealed secrets from a ledger's Claimed events.

    The secret is taken from the chain, not from whoever generated it, so
    a responder can complete its side without trusting the initiator.
    """

    def __init__(self, adapter: LedgerAdapter, poll_interval: float = 2.0):
        self.adapter = adapter
        self.poll_interval = poll_interval

        self._callbacks: Dict[str, List[Callable[[str, str], None]]] = {}
        self._mutex = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _valid(self, event: LockEvent) -> bool:
        if not event.secret:
            return False
        if not verify_preimage(event.secret, event.lock_id, self.adapter.hash_algorithm):
            log.warning(f"[{self.adapter.chain}] claimed secret does not match lock {event.lock_id[:18]}...")
            return False
        return True

    def wait_for_secret(self, lock_id: str, timeout: float = 120.0,
                        stop_event: threading.Event = None) -> Optional[str]:
        """
        Block until a Claimed event reveals the secret for lock_id.

        Returns:
            0x secret, or None on timeout / stop
        """
        lock_id = normalize_hash(lock_id)
        stop_event = stop_event or threading.Event()
        event_filter = EventFilter(lock_id=lock_id, kinds=[LockEventKind.CLAIMED])
        deadline = time.monotonic() + timeout
        cursor = None

        while True:
            try:
                events, cursor = self.adapter.poll_events(event_filter, cursor)
            except TransportError as e:
                log.warning(f"[{self.adapter.chain}] secret poll failed: {e}")
                events = []
            for event in events:
                if self._valid(event):
                    log.info(f"[{self.adapter.chain}] secret extracted for {lock_id[:18]}...: {event.secret[:18]}...")
                    return event.secret

            remaining = deadline - time.monotonic()
            if remaining <= 0 or stop_event.is_set():
                return None
            stop_event.wait(min(self.poll_interval, remaining))

    def watch(self, lock_id: str, callback: Callable[[str, str], None]):
        """Call callback(lock_id, secret) once the secret for lock_id is revealed."""
        with self._mutex:
            self._callbacks.setdefault(normalize_hash(lock_id), []).append(callback)

    def unwatch(self, lock_id: str):
        with self._mutex:
            self._callbacks.pop(normalize_hash(lock_id), None)

    def start(self):
        """Start watcher in background thread."""
        if self._thread and self._thread.is_alive():
            return

        self._stop.clear()
        self._thread = threading.Thread(target=self._watch_loop, daemon=True)
        self._thread.start()
        log.info(f"Secret watcher started on {self.adapter.chain}")

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
        log.info(f"Secret watcher stopped on {self.adapter.chain}")

    def _watch_loop(self):
        events = self.adapter.subscribe_events(
            EventFilter(kinds=[LockEventKind.CLAIMED]),
            stop_event=self._stop,
            poll_interval=self.poll_interval,
        )
        for event in events:
            with self._mutex:
                if event.lock_id not in self._callbacks:
                    continue
            # A forged claim must not consume the callbacks
            if not self._valid(event):
                continue
            with self._mutex:
                callbacks = self._callbacks.pop(event.lock_id, [])
            for callback in callbacks:
                try:
                    callback(event.lock_id, event.secret)
                except Exception as e:
                    log.error(f"Secret callback error: {e}")


@dataclass
class WatcherConfig:
    """Watcher configuration."""
    poll_interval: float = 10.0     # seconds
    auto_refund: bool = True        # Refund expired sides of stalled swaps
    auto_settle: bool = True        # Claim side A once the secret is public


class SwapWatcher:
    """
    Background service that drives stalled swaps to a terminal state.

    - REFUND_PENDING swaps are refunded side by side as their deadlines pass
    - SIDE_B_CLAIMED swaps get their side A claimed with the public secret
    """

    def __init__(self, orchestrator, config: WatcherConfig = None):
        self.orchestrator = orchestrator
        self.config = config or WatcherConfig()

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        """Start watcher in background thread."""
        if self._thread and self._thread.is_alive():
            return

        self._stop.clear()
        self._thread = threading.Thread(target=self._watch_loop, daemon=True)
        self._thread.start()
        log.info("Swap watcher started")

    def stop(self):
        """Stop watcher."""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
        log.info("Swap watcher stopped")

    def check_once(self):
        """One pass over the orchestrator's active swaps."""
        for swap in self.orchestrator.get_active_swaps():
            if self._stop.is_set():
                return
            try:
                if swap.state == SwapState.REFUND_PENDING and self.config.auto_refund:
                    self.orchestrator.refund_expired(swap)
                elif swap.state == SwapState.SIDE_B_CLAIMED and self.config.auto_settle:
                    self.orchestrator.resume(swap)
            except Exception as e:
                log.error(f"[{swap.swap_id}] watcher action failed: {e}")

    def _watch_loop(self):
        while not self._stop.is_set():
            self.check_once()
            self._stop.wait(self.config.poll_interval)


class SwapMonitor:
    """
    Records every orchestrator event per swap.

    Keeps an in-memory timeline consumers can read for progress output or
    forward to a notification layer.
    """

    EVENTS = (
        "state", "lock_created", "lock_confirmed", "secret_revealed",
        "claim_confirmed", "refund_confirmed", "abandoned",
    )

    def __init__(self, orchestrator):
        self.orchestrator = orchestrator
        self._timeline: Dict[str, List[Dict]] = {}
        self._mutex = threading.Lock()
        self._listeners = {}

        for event in self.EVENTS:
            listener = self._make_listener(event)
            self._listeners[event] = listener
            orchestrator.on(event, listener)

    def _make_listener(self, event: str) -> Callable:
        def listener(swap, *args):
            entry = {"event": event, "state": swap.state.value, "time": time.time()}
            if event == "state":
                entry["to"] = args[0].value
            elif event == "abandoned":
                entry["reason"] = args[0] if args else ""
            elif args:
                entry["side"] = args[0]
            with self._mutex:
                self._timeline.setdefault(swap.swap_id, []).append(entry)
        return listener

    def timeline(self, swap_id: str) -> List[Dict]:
        with self._mutex:
            return list(self._timeline.get(swap_id, []))

    def close(self):
        """Detach from the orchestrator."""
        for event, listener in self._listeners.items():
            self.orchestrator.off(event, listener)
        self._listeners = {}
