"""
HTLC lock state machine.

One instance models the contract storage of one ledger: balances, locks in
custody, and the Locked -> Claimed / Locked -> Refunded transitions.

The precondition checks (check_claim / check_refund) are plain functions so
the remote ledger adapters can run the exact same rules as a preflight
against a queried lock before spending a transaction on it.

Authorization differs between ledgers, so it is a per-ledger AuthPolicy
rather than a fixed rule:
- STRICT: only the recipient may claim, only the depositor may refund
- PERMISSIVE: anyone knowing the secret may claim (funds still go to the
  recipient); depositor, recipient or refund party may refund
"""

import logging
import threading
import time
from enum import Enum
from dataclasses import dataclass, replace
from typing import Optional, Dict, List, Callable

from ..core import (
    Lock, LockStatus, LockEvent, LockEventKind,
    derive_lock_id, normalize_hash, secret_matches, to_hex,
)
from ..errors import (
    InvalidAmount, DuplicateLock, InsufficientFunds, LockNotFound,
    NotRecipient, NotAuthorized, TimelockExpired, TimelockNotExpired,
    InvalidSecret, AlreadyTerminal, ValidationError,
)

log = logging.getLogger(__name__)


class ClaimAuthority(Enum):
    RECIPIENT = "recipient"     # Caller must be the recipient
    ANYONE = "anyone"           # Any caller, funds go to recipient


class RefundAuthority(Enum):
    DEPOSITOR = "depositor"     # Depositor only
    ANY_PARTY = "any_party"     # Depositor, recipient or refund party


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


@dataclass(frozen=True)
class AuthPolicy:
    """Who may call claim / refund on a ledger."""
    claim: ClaimAuthority = ClaimAuthority.RECIPIENT
    refund: RefundAuthority = RefundAuthority.DEPOSITOR

    def may_claim(self, lock: Lock, caller: str) -> bool:
        if self.claim == ClaimAuthority.ANYONE:
            return True
        return _same(caller, lock.recipient)

    def may_refund(self, lock: Lock, caller: str) -> bool:
        if self.refund == RefundAuthority.ANY_PARTY:
            return any(_same(caller, p) for p in (lock.depositor, lock.recipient, lock.refund_party))
        return _same(caller, lock.depositor)


STRICT = AuthPolicy(ClaimAuthority.RECIPIENT, RefundAuthority.DEPOSITOR)
PERMISSIVE = AuthPolicy(ClaimAuthority.ANYONE, RefundAuthority.ANY_PARTY)


# =============================================================================
# Preconditions
# =============================================================================

def check_claim(lock: Lock, caller: str, secret: bytes, now: int,
                policy: AuthPolicy = STRICT, algorithm: str = "sha256") -> None:
    """
    Raise the first failed claim precondition, in order:
    terminal -> authorization -> deadline -> secret.
    """
    if lock.is_terminal:
        raise AlreadyTerminal(f"Lock already {lock.status.value}", lock_id=lock.lock_id)
    if not policy.may_claim(lock, caller):
        raise NotRecipient(f"{caller} is not the recipient", lock_id=lock.lock_id)
    if now >= lock.deadline:
        raise TimelockExpired(f"Deadline {lock.deadline} passed (now {now})", lock_id=lock.lock_id)
    if not secret_matches(secret, lock.secret_hash, algorithm, lock.secret_length):
        raise InvalidSecret("Secret does not match hashlock", lock_id=lock.lock_id)


def check_refund(lock: Lock, caller: str, now: int, policy: AuthPolicy = STRICT) -> None:
    """
    Raise the first failed refund precondition, in order:
    terminal -> authorization -> deadline.
    """
    if lock.is_terminal:
        raise AlreadyTerminal(f"Lock already {lock.status.value}", lock_id=lock.lock_id)
    if not policy.may_refund(lock, caller):
        raise NotAuthorized(f"{caller} may not refund", lock_id=lock.lock_id)
    if now < lock.deadline:
        raise TimelockNotExpired(f"Deadline {lock.deadline} not reached (now {now})", lock_id=lock.lock_id)


# =============================================================================
# Clock
# =============================================================================

class ManualClock:
    """Settable clock for simulations; each ledger gets its own."""

    def __init__(self, start: Optional[int] = None):
        self._now = int(start if start is not None else time.time())
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            return self._now

    def advance(self, seconds: int) -> int:
        with self._lock:
            self._now += int(seconds)
            return self._now

    def set(self, now: int):
        with self._lock:
            self._now = int(now)


# =============================================================================
# State machine
# =============================================================================

class LockStateMachine:
    """
    In-process HTLC ledger.

    Transitions are serialized by a single mutex, standing in for the hosting
    ledger's transaction ordering: concurrent claim/refund on the same lock
    resolve to exactly one winner, the loser sees AlreadyTerminal.
    """

    def __init__(self, chain: str = "memory", policy: AuthPolicy = STRICT,
                 hash_algorithm: str = "sha256", enforce_secret_length: bool = True,
                 clock: Callable[[], int] = None):
        self.chain = chain
        self.policy = policy
        self.hash_algorithm = hash_algorithm
        self.enforce_secret_length = enforce_secret_length
        self.clock = clock or (lambda: int(time.time()))

        self._mutex = threading.RLock()
        self._locks: Dict[str, Lock] = {}
        self._balances: Dict[str, int] = {}
        self._custody = 0
        self._events: List[LockEvent] = []
        self._listeners: List[Callable[[LockEvent], None]] = []

    # =========================================================================
    # Balances
    # =========================================================================

    def fund(self, address: str, amount: int):
        """Credit an address (faucet)."""
        if amount <= 0:
            raise InvalidAmount(f"Funding amount must be positive, got {amount}")
        with self._mutex:
            key = address.lower()
            self._balances[key] = self._balances.get(key, 0) + amount

    def balance_of(self, address: str) -> int:
        with self._mutex:
            return self._balances.get(address.lower(), 0)

    @property
    def custody(self) -> int:
        """Total amount currently held by locks."""
        with self._mutex:
            return self._custody

    def _transfer_out(self, to: str, amount: int):
        key = to.lower()
        self._custody -= amount
        self._balances[key] = self._balances.get(key, 0) + amount

    # =========================================================================
    # Lock operations
    # =========================================================================

    def create(self, depositor: str, recipient: str, refund_party: str, amount: int,
               secret_hash: str, secret_length: Optional[int], duration: int,
               lock_id: Optional[str] = None) -> str:
        """
        Move amount from depositor into a new lock.

        Returns:
            lock_id (derived from secret_hash unless supplied)
        """
        if not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount(f"Amount must be a positive integer, got {amount}")
        if duration <= 0:
            raise ValidationError(f"Duration must be positive, got {duration}")

        secret_hash = normalize_hash(secret_hash)
        lock_id = normalize_hash(lock_id) if lock_id else derive_lock_id(secret_hash)

        with self._mutex:
            if lock_id in self._locks:
                raise DuplicateLock("Lock id already exists", lock_id=lock_id)

            available = self._balances.get(depositor.lower(), 0)
            if available < amount:
                raise InsufficientFunds(f"Balance {available} < {amount}", lock_id=lock_id)

            deadline = self.clock() + int(duration)
            lock = Lock(
                lock_id=lock_id,
                depositor=depositor,
                recipient=recipient,
                refund_party=refund_party or depositor,
                amount=amount,
                secret_hash=secret_hash,
                secret_length=secret_length if self.enforce_secret_length else None,
                deadline=deadline,
                chain=self.chain,
            )
            self._balances[depositor.lower()] = available - amount
            self._custody += amount
            self._locks[lock_id] = lock

            log.info(f"[{self.chain}] lock created: {lock_id[:18]}..., amount={amount}, deadline={deadline}")
            self._record(LockEvent(
                kind=LockEventKind.CREATED,
                lock_id=lock_id,
                chain=self.chain,
                secret_hash=secret_hash,
                data={
                    "depositor": depositor,
                    "recipient": recipient,
                    "refund_party": lock.refund_party,
                    "amount": amount,
                    "deadline": deadline,
                    "secret_length": lock.secret_length,
                },
            ))
            return lock_id

    def claim(self, caller: str, lock_id: str, secret: bytes) -> Lock:
        """Claim with the preimage; funds go to the lock's recipient."""
        with self._mutex:
            lock = self._get(lock_id)
            check_claim(lock, caller, secret, self.clock(), self.policy, self.hash_algorithm)

            # Status flips before funds move
            lock.status = LockStatus.CLAIMED
            lock.secret = to_hex(secret)
            self._transfer_out(lock.recipient, lock.amount)

            log.info(f"[{self.chain}] lock claimed: {lock.lock_id[:18]}... by {caller}")
            self._record(LockEvent(
                kind=LockEventKind.CLAIMED,
                lock_id=lock.lock_id,
                chain=self.chain,
                secret_hash=lock.secret_hash,
                secret=lock.secret,
                data={"caller": caller, "recipient": lock.recipient, "amount": lock.amount},
            ))
            return replace(lock)

    def refund(self, caller: str, lock_id: str) -> Lock:
        """Refund after the deadline; funds go to the refund party."""
        with self._mutex:
            lock = self._get(lock_id)
            check_refund(lock, caller, self.clock(), self.policy)

            lock.status = LockStatus.REFUNDED
            self._transfer_out(lock.refund_party, lock.amount)

            log.info(f"[{self.chain}] lock refunded: {lock.lock_id[:18]}... by {caller}")
            self._record(LockEvent(
                kind=LockEventKind.REFUNDED,
                lock_id=lock.lock_id,
                chain=self.chain,
                secret_hash=lock.secret_hash,
                data={"caller": caller, "refund_party": lock.refund_party, "amount": lock.amount},
            ))
            return replace(lock)

    def query(self, lock_id: str) -> Lock:
        """Read-only snapshot; raises LockNotFound."""
        with self._mutex:
            return replace(self._get(lock_id))

    def get(self, lock_id: str) -> Optional[Lock]:
        try:
            return self.query(lock_id)
        except LockNotFound:
            return None

    def _get(self, lock_id: str) -> Lock:
        try:
            key = normalize_hash(lock_id)
        except ValidationError:
            raise LockNotFound("Malformed lock id", lock_id=lock_id)
        lock = self._locks.get(key)
        if lock is None:
            raise LockNotFound("No such lock", lock_id=key)
        return lock

    # =========================================================================
    # Events
    # =========================================================================

    def _record(self, event: LockEvent):
        event.timestamp = self.clock()
        self._events.append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                log.error(f"Event listener error: {e}")

    def events_since(self, offset: int = 0) -> List[LockEvent]:
        """Events from a log offset (the ledger's block-height analogue)."""
        with self._mutex:
            return list(self._events[offset:])

    @property
    def event_count(self) -> int:
        with self._mutex:
            return len(self._events)

    def add_listener(self, listener: Callable[[LockEvent], None]):
        with self._mutex:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[LockEvent], None]):
        with self._mutex:
            if listener in self._listeners:
                self._listeners.remove(listener)
