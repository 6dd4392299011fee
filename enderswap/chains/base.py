"""
Ledger adapter capability interface.

Each supported ledger translates the abstract lock operations (create,
claim, refund, query, events) into its own calls and normalises units,
addresses and confirmation semantics back into the core model.

Adapters own their signing keys; nothing above this layer touches them.
"""

import time
import logging
import threading
from abc import ABC, abstractmethod
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, List, Tuple, Any, Iterator, Iterable

from ..core import Lock, LockEvent, LockEventKind, normalize_hash
from ..errors import TransportError, LockNotFound
from ..htlc.machine import AuthPolicy, STRICT, check_claim, check_refund

log = logging.getLogger(__name__)


class ConfirmationStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class ConfirmationPolicy:
    """How long and how often to poll for finality."""
    timeout: float = 120.0          # seconds
    poll_interval: float = 2.0      # seconds
    confirmations: int = 1          # blocks / checkpoints


@dataclass
class ConfirmationHandle:
    """Reference to a submitted transaction."""
    chain: str
    tx_ref: str                     # Tx hash / digest
    lock_id: Optional[str] = None
    action: str = ""                # create / claim / refund
    submitted_at: float = field(default_factory=time.time)


@dataclass
class Confirmation:
    handle: ConfirmationHandle
    status: ConfirmationStatus
    error: Optional[str] = None
    timed_out: bool = False

    @property
    def confirmed(self) -> bool:
        return self.status == ConfirmationStatus.CONFIRMED


@dataclass
class LockReceipt:
    """Result of create_lock: the logical id plus what to wait on."""
    lock_id: str
    handle: Optional[ConfirmationHandle]    # None when the lock was found already on-ledger
    native_id: Optional[str] = None     # Ledger object id, when it has one


@dataclass
class EventFilter:
    lock_id: Optional[str] = None
    kinds: Optional[Iterable[LockEventKind]] = None

    def __post_init__(self):
        if self.lock_id:
            self.lock_id = normalize_hash(self.lock_id)
        if self.kinds is not None:
            self.kinds = tuple(self.kinds)

    def matches(self, event: LockEvent) -> bool:
        if self.lock_id and event.lock_id != self.lock_id:
            return False
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        return True


class LedgerAdapter(ABC):
    """
    Abstract lock operations against one ledger.

    Subclasses implement the ledger calls; the polling loops (confirmation,
    event subscription) and the client-side preflight checks live here.
    """

    chain: str = "ledger"

    def __init__(self, policy: AuthPolicy = STRICT, hash_algorithm: str = "sha256"):
        self.policy = policy
        self.hash_algorithm = hash_algorithm

    # =========================================================================
    # Identity
    # =========================================================================

    @property
    @abstractmethod
    def address(self) -> str:
        """Signer address on this ledger."""

    @abstractmethod
    def is_valid_address(self, address: str) -> bool:
        ...

    @abstractmethod
    def normalize_address(self, address: str) -> str:
        """Canonical form of an address; raises InvalidAddress."""

    # =========================================================================
    # Lock operations
    # =========================================================================

    @abstractmethod
    def create_lock(self, recipient: str, refund_party: Optional[str], amount: int,
                    secret_hash: str, secret_length: Optional[int], duration: int) -> LockReceipt:
        ...

    @abstractmethod
    def claim(self, lock_id: str, secret: str) -> ConfirmationHandle:
        ...

    @abstractmethod
    def refund(self, lock_id: str) -> ConfirmationHandle:
        ...

    @abstractmethod
    def get_lock(self, lock_id: str) -> Lock:
        """Raises LockNotFound."""

    def find_lock(self, lock_id: str) -> Optional[Lock]:
        try:
            return self.get_lock(lock_id)
        except LockNotFound:
            return None

    # =========================================================================
    # Ledger state
    # =========================================================================

    @abstractmethod
    def now(self) -> int:
        """The ledger's own clock, unix seconds."""

    @abstractmethod
    def get_balance(self) -> int:
        """Signer balance in smallest units."""

    @abstractmethod
    def verify(self) -> bool:
        """Check the deployed contract / package is reachable."""

    # =========================================================================
    # Preflight
    # =========================================================================

    def preflight_claim(self, lock_id: str, secret: bytes) -> Lock:
        """Run the claim preconditions against the current lock state."""
        lock = self.get_lock(lock_id)
        check_claim(lock, self.address, secret, self.now(), self.policy, self.hash_algorithm)
        return lock

    def preflight_refund(self, lock_id: str) -> Lock:
        lock = self.get_lock(lock_id)
        check_refund(lock, self.address, self.now(), self.policy)
        return lock

    # =========================================================================
    # Confirmations
    # =========================================================================

    @abstractmethod
    def _check_confirmation(self, handle: ConfirmationHandle,
                            policy: ConfirmationPolicy) -> Tuple[ConfirmationStatus, Optional[str]]:
        """One poll of a transaction: (status, error message)."""

    def wait_for_confirmation(self, handle: ConfirmationHandle,
                              policy: ConfirmationPolicy = None,
                              stop_event: threading.Event = None) -> Confirmation:
        """
        Poll until the transaction is confirmed or failed, or the budget runs out.

        Transport errors while polling are logged and polling continues.
        A timeout is reported as FAILED with timed_out set.
        """
        policy = policy or ConfirmationPolicy()
        stop_event = stop_event or threading.Event()
        deadline = time.monotonic() + policy.timeout

        while True:
            try:
                status, error = self._check_confirmation(handle, policy)
            except TransportError as e:
                log.warning(f"[{self.chain}] confirmation poll failed for {handle.tx_ref}: {e}")
                status, error = ConfirmationStatus.PENDING, None

            if status != ConfirmationStatus.PENDING:
                if status == ConfirmationStatus.CONFIRMED:
                    log.info(f"[{self.chain}] {handle.action} confirmed: {handle.tx_ref}")
                else:
                    log.error(f"[{self.chain}] {handle.action} failed: {handle.tx_ref} ({error})")
                return Confirmation(handle=handle, status=status, error=error)

            remaining = deadline - time.monotonic()
            if remaining <= 0 or stop_event.is_set():
                log.warning(f"[{self.chain}] {handle.action} not confirmed within {policy.timeout}s: {handle.tx_ref}")
                return Confirmation(
                    handle=handle,
                    status=ConfirmationStatus.FAILED,
                    error="confirmation timeout",
                    timed_out=True,
                )
            stop_event.wait(min(policy.poll_interval, remaining))

    # =========================================================================
    # Events
    # =========================================================================

    @abstractmethod
    def poll_events(self, event_filter: EventFilter = None,
                    cursor: Any = None) -> Tuple[List[LockEvent], Any]:
        """
        Fetch matching events after cursor.

        Returns:
            (events, next_cursor); cursor None starts at the earliest
            position the ledger exposes
        """

    def subscribe_events(self, event_filter: EventFilter = None,
                         stop_event: threading.Event = None,
                         poll_interval: float = 2.0,
                         cursor: Any = None) -> Iterator[LockEvent]:
        """
        Lazy, infinite sequence of matching events.

        Ends only when stop_event is set. Transport errors are logged and
        the same cursor is retried on the next poll.
        """
        stop_event = stop_event or threading.Event()
        event_filter = event_filter or EventFilter()

        while not stop_event.is_set():
            try:
                events, cursor = self.poll_events(event_filter, cursor)
            except TransportError as e:
                log.warning(f"[{self.chain}] event poll failed: {e}")
                events = []

            for event in events:
                yield event
                if stop_event.is_set():
                    return

            stop_event.wait(poll_interval)

    def find_claim_secret(self, lock_id: str) -> Optional[str]:
        """Secret revealed by a Claimed event for lock_id, if any."""
        events, _ = self.poll_events(EventFilter(lock_id=lock_id, kinds=[LockEventKind.CLAIMED]))
        for event in events:
            if event.secret:
                return event.secret
        return None
