"""
In-process ledger adapter.

Wraps a LockStateMachine so swaps can run end to end without a network:
each party gets its own adapter (its own signer address) over the shared
machine of that ledger. Transactions execute synchronously; confirmation
can be held back to exercise timeout paths.
"""

import logging
import threading
from typing import Optional, List, Tuple, Any, Dict

from ..core import Lock, LockEvent, require_secret
from ..errors import InvalidAddress
from ..htlc.machine import LockStateMachine
from .base import (
    LedgerAdapter, LockReceipt, ConfirmationHandle, ConfirmationPolicy,
    ConfirmationStatus, EventFilter,
)

log = logging.getLogger(__name__)


class MemoryLedgerAdapter(LedgerAdapter):
    """Adapter for one signer over an in-memory ledger."""

    def __init__(self, machine: LockStateMachine, address: str, auto_confirm: bool = True):
        super().__init__(policy=machine.policy, hash_algorithm=machine.hash_algorithm)
        if not address:
            raise InvalidAddress("Signer address required")
        self.machine = machine
        self.chain = machine.chain
        self._address = address
        self.auto_confirm = auto_confirm

        self._tx_lock = threading.Lock()
        self._tx_count = 0
        self._tx_status: Dict[str, ConfirmationStatus] = {}

    @property
    def address(self) -> str:
        return self._address

    def is_valid_address(self, address: str) -> bool:
        return isinstance(address, str) and bool(address.strip())

    def normalize_address(self, address: str) -> str:
        if not self.is_valid_address(address):
            raise InvalidAddress(f"Invalid {self.chain} address: {address!r}")
        return address.strip()

    # =========================================================================
    # Transactions
    # =========================================================================

    def _submit(self, action: str, lock_id: Optional[str]) -> ConfirmationHandle:
        with self._tx_lock:
            self._tx_count += 1
            tx_ref = f"{self.chain}-{self._address}-{self._tx_count}"
            self._tx_status[tx_ref] = (
                ConfirmationStatus.CONFIRMED if self.auto_confirm else ConfirmationStatus.PENDING
            )
        return ConfirmationHandle(chain=self.chain, tx_ref=tx_ref, lock_id=lock_id, action=action)

    def confirm(self, tx_ref: str, status: ConfirmationStatus = ConfirmationStatus.CONFIRMED):
        """Release a held-back transaction."""
        with self._tx_lock:
            self._tx_status[tx_ref] = status

    def _check_confirmation(self, handle: ConfirmationHandle,
                            policy: ConfirmationPolicy) -> Tuple[ConfirmationStatus, Optional[str]]:
        with self._tx_lock:
            status = self._tx_status.get(handle.tx_ref)
        if status is None:
            return ConfirmationStatus.FAILED, "unknown transaction"
        return status, None

    # =========================================================================
    # Lock operations
    # =========================================================================

    def create_lock(self, recipient: str, refund_party: Optional[str], amount: int,
                    secret_hash: str, secret_length: Optional[int], duration: int) -> LockReceipt:
        recipient = self.normalize_address(recipient)
        refund_party = self.normalize_address(refund_party) if refund_party else self.address
        lock_id = self.machine.create(
            depositor=self.address,
            recipient=recipient,
            refund_party=refund_party,
            amount=amount,
            secret_hash=secret_hash,
            secret_length=secret_length,
            duration=duration,
        )
        return LockReceipt(lock_id=lock_id, handle=self._submit("create", lock_id))

    def claim(self, lock_id: str, secret: str) -> ConfirmationHandle:
        lock = self.machine.claim(self.address, lock_id, require_secret(secret, lock_id))
        return self._submit("claim", lock.lock_id)

    def refund(self, lock_id: str) -> ConfirmationHandle:
        lock = self.machine.refund(self.address, lock_id)
        return self._submit("refund", lock.lock_id)

    def get_lock(self, lock_id: str) -> Lock:
        return self.machine.query(lock_id)

    # =========================================================================
    # Ledger state
    # =========================================================================

    def now(self) -> int:
        return self.machine.clock()

    def get_balance(self) -> int:
        return self.machine.balance_of(self.address)

    def verify(self) -> bool:
        return True

    # =========================================================================
    # Events
    # =========================================================================

    def poll_events(self, event_filter: EventFilter = None,
                    cursor: Any = None) -> Tuple[List[LockEvent], Any]:
        event_filter = event_filter or EventFilter()
        offset = cursor or 0
        events = self.machine.events_since(offset)
        return [e for e in events if event_filter.matches(e)], offset + len(events)
