"""
Swap Orchestrator for enderswap.

Drives one atomic swap between two ledgers end to end.

Swap Flow (initiator on ledger A, responder on ledger B):
1. Initiator generates secret S, H = hash(S), lock id = 0x || H
2. Initiator locks amount_a on ledger A for the responder (long timelock)
3. Responder checks that lock, then locks amount_b on ledger B for the
   initiator with the same H (short timelock)
4. Initiator claims on ledger B, revealing S
5. Responder reads S from ledger B's Claimed event and claims on ledger A

short < long is what leaves the responder time to claim side A after S
becomes public. Any failure before the reveal steers the swap towards
refunds once the deadlines pass; nothing is ever un-claimed.
"""

import time
import uuid
import logging
import threading
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Callable, Any

from ..core import (
    SwapState, TERMINAL_SWAP_STATES, Lock, LockStatus, SECRET_LENGTH,
    DEFAULT_LONG_TIMELOCK, DEFAULT_SHORT_TIMELOCK, TIMELOCK_MIN_GAP_SECONDS,
    derive_lock_id, generate_secret, hash_secret, from_hex, to_hex, normalize_hash,
    verify_preimage, validate_timelock_order, format_duration,
)
from ..errors import (
    HTLCError, InvalidAmount, DuplicateLock, AlreadyTerminal, HashAlgorithmMismatch,
    TemporalError, TransportError, ValidationError, SwapAborted, SwapCancelled,
)
from ..htlc.machine import ClaimAuthority
from ..chains.base import LedgerAdapter, LockReceipt, ConfirmationHandle, ConfirmationPolicy
from .watcher import SecretWatcher

log = logging.getLogger(__name__)


SIDE_A = "a"
SIDE_B = "b"


@dataclass
class OrchestratorConfig:
    """Swap orchestrator configuration."""
    # Timelocks (seconds)
    long_timelock: int = DEFAULT_LONG_TIMELOCK     # Initiator side (A)
    short_timelock: int = DEFAULT_SHORT_TIMELOCK   # Responder side (B)
    min_timelock_gap: int = TIMELOCK_MIN_GAP_SECONDS

    # Side A must have at least this much time left when the secret goes public
    reveal_margin: int = 60 * 60

    secret_length: int = SECRET_LENGTH

    # Confirmation budget per transaction
    confirmation: ConfirmationPolicy = field(default_factory=ConfirmationPolicy)

    # Transport retries (exponential backoff)
    max_retries: int = 3
    retry_backoff: float = 1.0

    # Responder reads the secret from ledger B instead of trusting memory
    extract_secret_from_chain: bool = True
    secret_poll_interval: float = 2.0
    secret_wait_timeout: float = 120.0

    # Timelock expiry demonstration
    expiry_demo_duration: int = 30
    expiry_poll_interval: float = 5.0


@dataclass
class Participant:
    """One party: where it locks funds and where it receives them."""
    source: LedgerAdapter
    destination: LedgerAdapter
    destination_address: Optional[str] = None
    name: str = ""

    @property
    def receive_address(self) -> str:
        """Defaults to the signer's own address on the destination ledger."""
        return self.destination_address or self.destination.address


@dataclass
class Swap:
    """Coordination state of one swap. Funds live in the locks, not here."""
    swap_id: str
    state: SwapState
    initiator: Participant = field(repr=False)
    responder: Optional[Participant] = field(repr=False)

    amount_a: int           # Locked by the initiator on ledger A
    amount_b: int           # Locked by the responder on ledger B
    secret_hash: str
    lock_id: str
    long_timelock: int
    short_timelock: int
    recipient_a: str        # Responder's address on ledger A
    recipient_b: str        # Initiator's address on ledger B

    # Known to the initiator only until revealed
    secret: Optional[str] = field(default=None, repr=False)
    revealed_secret: Optional[str] = None

    side_a: Optional[Lock] = None
    side_b: Optional[Lock] = None
    txs: Dict[str, str] = field(default_factory=dict)

    error: Optional[str] = None
    created_at: int = 0
    completed_at: Optional[int] = None
    history: List[SwapState] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_SWAP_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "swap_id": self.swap_id,
            "state": self.state.value,
            "amount_a": self.amount_a,
            "amount_b": self.amount_b,
            "secret_hash": self.secret_hash,
            "lock_id": self.lock_id,
            "long_timelock": self.long_timelock,
            "short_timelock": self.short_timelock,
            "recipient_a": self.recipient_a,
            "recipient_b": self.recipient_b,
            "revealed_secret": self.revealed_secret,
            "side_a": self.side_a.to_dict() if self.side_a else None,
            "side_b": self.side_b.to_dict() if self.side_b else None,
            "txs": dict(self.txs),
            "error": self.error,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "history": [s.value for s in self.history],
        }


class SwapOrchestrator:
    """
    Sequences two lock lifecycles into one atomic swap.

    Single sequential flow with blocking waits at each confirmation point.
    cancel() stops it before the next step; transactions already submitted
    stay on-ledger and are recovered by refund_expired / resume.

    Events (handler(swap, *args)):
    - state: new SwapState
    - lock_created / lock_confirmed: side, tx ref / Lock
    - secret_revealed / claim_confirmed / refund_confirmed: side, tx ref
    - abandoned: reason
    """

    EVENTS = (
        "state", "lock_created", "lock_confirmed", "secret_revealed",
        "claim_confirmed", "refund_confirmed", "abandoned",
    )

    def __init__(self, config: OrchestratorConfig = None, stop_event: threading.Event = None):
        self.config = config or OrchestratorConfig()
        self._stop = stop_event or threading.Event()

        # Swaps driven by this orchestrator
        self.swaps: Dict[str, Swap] = {}

        # Event handlers
        self._handlers: Dict[str, List[Callable]] = {event: [] for event in self.EVENTS}

    # =========================================================================
    # Events
    # =========================================================================

    def on(self, event: str, handler: Callable):
        """Register event handler."""
        if event in self._handlers:
            self._handlers[event].append(handler)

    def off(self, event: str, handler: Callable):
        """Remove event handler."""
        if event in self._handlers and handler in self._handlers[event]:
            self._handlers[event].remove(handler)

    def _emit(self, event: str, *args):
        """Emit event to handlers."""
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(*args)
            except Exception as e:
                log.error(f"Handler error for {event}: {e}")

    def _set_state(self, swap: Swap, state: SwapState):
        if swap.state == state:
            return
        log.info(f"[{swap.swap_id}] {swap.state.value} -> {state.value}")
        swap.state = state
        swap.history.append(state)
        self._emit("state", swap, state)

    # =========================================================================
    # Cancellation / retries
    # =========================================================================

    def cancel(self):
        """Stop before the next step. Submitted transactions are not revoked."""
        log.warning("Orchestrator cancellation requested")
        self._stop.set()

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    def _with_retries(self, swap: Swap, what: str, fn: Callable[[int], Any]) -> Any:
        """
        Run fn(attempt), retrying TransportError with exponential backoff.

        Any other error propagates immediately.
        """
        attempt = 0
        while True:
            try:
                return fn(attempt)
            except TransportError as e:
                if attempt >= self.config.max_retries:
                    log.error(f"[{swap.swap_id}] {what} failed after {attempt + 1} attempts: {e}")
                    raise
                delay = self.config.retry_backoff * (2 ** attempt)
                log.warning(f"[{swap.swap_id}] {what}: {e}; retry {attempt + 1} in {delay:.1f}s")
                if self._stop.wait(delay):
                    raise SwapCancelled(f"Cancelled while retrying {what}", lock_id=swap.lock_id) from e
                attempt += 1

    def _confirm(self, swap: Swap, ledger: LedgerAdapter, handle: Optional[ConfirmationHandle]) -> bool:
        if handle is None:
            return True
        confirmation = ledger.wait_for_confirmation(handle, self.config.confirmation, self._stop)
        if not confirmation.confirmed:
            log.warning(f"[{swap.swap_id}] {handle.action} on {ledger.chain} not confirmed: {confirmation.error}")
        return confirmation.confirmed

    # =========================================================================
    # Setup
    # =========================================================================

    def prepare(self, initiator: Participant, responder: Participant,
                amount_a: int, amount_b: int, secret: str = None) -> Swap:
        """
        Validate the pairing and generate the secret.

        Args:
            initiator: Locks amount_a on ledger A, receives on ledger B
            responder: Locks amount_b on ledger B, receives on ledger A
            amount_a: Smallest units of ledger A
            amount_b: Smallest units of ledger B
            secret: Optional preset secret (hex); generated when omitted

        Returns:
            Swap in INIT
        """
        ledger_a, ledger_b = initiator.source, responder.source
        if initiator.destination.chain != ledger_b.chain or responder.destination.chain != ledger_a.chain:
            raise ValidationError(
                f"Participants do not trade across the same ledgers: "
                f"{ledger_a.chain}->{initiator.destination.chain}, {ledger_b.chain}->{responder.destination.chain}"
            )

        # Both ledgers must hash the secret identically
        algorithms = {ledger_a.hash_algorithm, ledger_b.hash_algorithm,
                      initiator.destination.hash_algorithm, responder.destination.hash_algorithm}
        if len(algorithms) != 1:
            raise HashAlgorithmMismatch(
                f"Ledgers hash secrets differently: {ledger_a.chain}={ledger_a.hash_algorithm}, "
                f"{ledger_b.chain}={ledger_b.hash_algorithm}"
            )
        algorithm = ledger_a.hash_algorithm

        validate_timelock_order(self.config.long_timelock, self.config.short_timelock,
                                self.config.min_timelock_gap)

        for amount in (amount_a, amount_b):
            if not isinstance(amount, int) or amount <= 0:
                raise InvalidAmount(f"Amount must be a positive integer, got {amount!r}")

        recipient_a = ledger_a.normalize_address(responder.receive_address)
        recipient_b = ledger_b.normalize_address(initiator.receive_address)

        # A recipient-only ledger lets nobody but the recipient claim, so the
        # claiming signer has to be the recipient
        for party, recipient in ((responder, recipient_a), (initiator, recipient_b)):
            destination = party.destination
            if (destination.policy.claim == ClaimAuthority.RECIPIENT
                    and recipient.lower() != destination.address.lower()):
                raise ValidationError(
                    f"{destination.chain} only lets the recipient claim: "
                    f"{party.name or 'participant'} receives at {recipient} but signs as {destination.address}"
                )

        if secret is None:
            secret, secret_hash = generate_secret(self.config.secret_length, algorithm)
        else:
            secret = normalize_hash(secret)
            secret_hash = to_hex(hash_secret(from_hex(secret), algorithm))

        swap = Swap(
            swap_id=f"swap_{uuid.uuid4().hex[:12]}",
            state=SwapState.INIT,
            initiator=initiator,
            responder=responder,
            amount_a=amount_a,
            amount_b=amount_b,
            secret_hash=secret_hash,
            lock_id=derive_lock_id(secret_hash),
            long_timelock=self.config.long_timelock,
            short_timelock=self.config.short_timelock,
            recipient_a=recipient_a,
            recipient_b=recipient_b,
            secret=secret,
            created_at=int(time.time()),
        )
        self.swaps[swap.swap_id] = swap

        log.info(f"[{swap.swap_id}] prepared: {amount_a} on {ledger_a.chain} <-> {amount_b} on {ledger_b.chain}")
        log.info(f"[{swap.swap_id}] lock id {swap.lock_id}, timelocks "
                 f"{format_duration(swap.long_timelock)} / {format_duration(swap.short_timelock)}")
        return swap

    def run_swap(self, initiator: Participant, responder: Participant,
                 amount_a: int, amount_b: int) -> Swap:
        """prepare + execute."""
        return self.execute(self.prepare(initiator, responder, amount_a, amount_b))

    def execute(self, swap: Swap) -> Swap:
        """
        Drive the swap from its current state to COMPLETED.

        Raises:
            SwapAborted: the swap stopped early; swap.state tells what is
                left to do (REFUND_PENDING, ABANDONED or SIDE_B_CLAIMED)
        """
        try:
            if swap.state == SwapState.INIT:
                self._lock_side_a(swap)
            if swap.state == SwapState.SIDE_A_LOCKED:
                self._lock_side_b(swap)
            if swap.state == SwapState.SIDE_B_LOCKED:
                self._reveal(swap)
            if swap.state == SwapState.SIDE_B_CLAIMED:
                self._claim_side_a(swap)
        except SwapAborted as e:
            swap.error = str(e)
            raise
        return swap

    # =========================================================================
    # Steps
    # =========================================================================

    def _stop_before_reveal(self, swap: Swap, reason: str, cancelled: bool = False,
                            cause: Exception = None):
        """Leave the happy path before the secret is public."""
        if self._anything_locked(swap):
            self._set_state(swap, SwapState.REFUND_PENDING)
            log.warning(f"[{swap.swap_id}] {reason}; refund after deadline")
        else:
            self._set_state(swap, SwapState.ABANDONED)
            log.warning(f"[{swap.swap_id}] abandoned: {reason}")
            self._emit("abandoned", swap, reason)
        swap.error = reason
        cls = SwapCancelled if cancelled else SwapAborted
        raise cls(reason, lock_id=swap.lock_id) from cause

    def _sides(self, swap: Swap) -> List[tuple]:
        sides = [(SIDE_A, swap.initiator.source)]
        if swap.responder is not None:
            sides.append((SIDE_B, swap.responder.source))
        return sides

    def _anything_locked(self, swap: Swap) -> bool:
        if swap.side_a or swap.side_b:
            return True
        for side, ledger in self._sides(swap):
            if f"create_{side}" not in swap.txs:
                continue
            try:
                lock = ledger.find_lock(swap.lock_id)
            except TransportError:
                # Unknown: assume the lock may exist
                return True
            if lock is not None and lock.depositor.lower() == ledger.address.lower():
                return True
        return False

    def _check_cancelled(self, swap: Swap):
        if self._stop.is_set():
            self._stop_before_reveal(swap, f"cancelled in {swap.state.value}", cancelled=True)

    def _create(self, swap: Swap, ledger: LedgerAdapter, side: str, recipient: str,
                amount: int, duration: int) -> LockReceipt:
        def submit(attempt: int) -> LockReceipt:
            try:
                return ledger.create_lock(recipient, ledger.address, amount, swap.secret_hash,
                                          self.config.secret_length, duration)
            except DuplicateLock:
                if attempt == 0:
                    raise
                # An earlier attempt landed despite the transport error
                lock = ledger.get_lock(swap.lock_id)
                if lock.depositor.lower() != ledger.address.lower():
                    raise
                return LockReceipt(lock_id=lock.lock_id, handle=None, native_id=lock.native_id)

        # Marks the side as attempted: the create may land even if every call errors
        swap.txs.setdefault(f"create_{side}", "")
        receipt = self._with_retries(swap, f"create side {side}", submit)
        swap.txs[f"create_{side}"] = receipt.handle.tx_ref if receipt.handle else ""
        log.info(f"[{swap.swap_id}] lock created on {ledger.chain} (side {side}): {receipt.lock_id}")
        self._emit("lock_created", swap, side, swap.txs[f"create_{side}"])
        return receipt

    def _claim(self, swap: Swap, ledger: LedgerAdapter, side: str, secret: str) -> Optional[ConfirmationHandle]:
        def submit(attempt: int) -> Optional[ConfirmationHandle]:
            try:
                return ledger.claim(swap.lock_id, secret)
            except AlreadyTerminal:
                if attempt == 0:
                    raise
                # An earlier attempt landed despite the transport error
                if ledger.get_lock(swap.lock_id).status != LockStatus.CLAIMED:
                    raise
                return None

        return self._with_retries(swap, f"claim side {side}", submit)

    def _get_lock(self, swap: Swap, ledger: LedgerAdapter) -> Lock:
        return self._with_retries(swap, f"query {ledger.chain}", lambda attempt: ledger.get_lock(swap.lock_id))

    def _check_counterparty_lock(self, swap: Swap, lock: Lock, recipient: str, amount: int, side: str):
        """Reject a lock that does not pay us what was agreed."""
        problems = []
        if lock.status != LockStatus.LOCKED:
            problems.append(f"status {lock.status.value}")
        if normalize_hash(lock.secret_hash) != swap.secret_hash:
            problems.append("secret hash mismatch")
        if lock.recipient.lower() != recipient.lower():
            problems.append(f"recipient {lock.recipient}")
        if lock.amount < amount:
            problems.append(f"amount {lock.amount} < {amount}")
        if problems:
            raise ValidationError(f"Side {side} lock rejected: {', '.join(problems)}", lock_id=lock.lock_id)

    def _lock_side_a(self, swap: Swap):
        """Initiator locks on ledger A with the long timelock."""
        ledger = swap.initiator.source
        self._check_cancelled(swap)
        self._set_state(swap, SwapState.SIDE_A_LOCKING)

        try:
            receipt = self._create(swap, ledger, SIDE_A, swap.recipient_a, swap.amount_a, swap.long_timelock)
        except SwapCancelled as e:
            self._stop_before_reveal(swap, e.message, cancelled=True, cause=e)
        except HTLCError as e:
            self._stop_before_reveal(swap, f"side A lock failed: {e.message}", cause=e)

        if not self._confirm(swap, ledger, receipt.handle):
            self._stop_before_reveal(swap, "side A lock not confirmed", cancelled=self.cancelled)

        try:
            swap.side_a = self._get_lock(swap, ledger)
        except HTLCError as e:
            self._stop_before_reveal(swap, f"side A lock not visible: {e.message}", cause=e)

        self._set_state(swap, SwapState.SIDE_A_LOCKED)
        self._emit("lock_confirmed", swap, SIDE_A, swap.side_a)

    def _lock_side_b(self, swap: Swap):
        """Responder checks side A, then locks on ledger B with the short timelock."""
        ledger_a = swap.responder.destination
        ledger_b = swap.responder.source
        self._check_cancelled(swap)

        try:
            lock_a = self._get_lock(swap, ledger_a)
            self._check_counterparty_lock(swap, lock_a, swap.recipient_a, swap.amount_a, SIDE_A)
            remaining = lock_a.deadline - ledger_a.now()
        except SwapCancelled as e:
            self._stop_before_reveal(swap, e.message, cancelled=True, cause=e)
        except HTLCError as e:
            self._stop_before_reveal(swap, f"side A check failed: {e.message}", cause=e)

        if remaining < swap.short_timelock + self.config.min_timelock_gap:
            self._stop_before_reveal(
                swap, f"side A expires too soon ({format_duration(max(remaining, 0))} left)"
            )

        self._set_state(swap, SwapState.SIDE_B_LOCKING)
        try:
            receipt = self._create(swap, ledger_b, SIDE_B, swap.recipient_b, swap.amount_b, swap.short_timelock)
        except SwapCancelled as e:
            self._stop_before_reveal(swap, e.message, cancelled=True, cause=e)
        except HTLCError as e:
            self._stop_before_reveal(swap, f"side B lock failed: {e.message}", cause=e)

        if not self._confirm(swap, ledger_b, receipt.handle):
            self._stop_before_reveal(swap, "side B lock not confirmed", cancelled=self.cancelled)

        try:
            swap.side_b = self._get_lock(swap, ledger_b)
        except HTLCError as e:
            self._stop_before_reveal(swap, f"side B lock not visible: {e.message}", cause=e)

        self._set_state(swap, SwapState.SIDE_B_LOCKED)
        self._emit("lock_confirmed", swap, SIDE_B, swap.side_b)

    def _reveal(self, swap: Swap):
        """Initiator claims side B, making the secret public."""
        ledger_a = swap.initiator.source
        ledger_b = swap.initiator.destination
        self._check_cancelled(swap)

        try:
            lock_b = self._get_lock(swap, ledger_b)
            self._check_counterparty_lock(swap, lock_b, swap.recipient_b, swap.amount_b, SIDE_B)
            remaining_a = swap.side_a.deadline - ledger_a.now()
            now_b = ledger_b.now()
        except SwapCancelled as e:
            self._stop_before_reveal(swap, e.message, cancelled=True, cause=e)
        except HTLCError as e:
            self._stop_before_reveal(swap, f"side B check failed: {e.message}", cause=e)

        # After the reveal the responder needs time on side A
        if remaining_a <= self.config.reveal_margin:
            self._stop_before_reveal(
                swap, f"side A window too short to reveal ({format_duration(max(remaining_a, 0))} left)"
            )
        if now_b >= lock_b.deadline:
            self._stop_before_reveal(swap, "side B already expired")

        self._set_state(swap, SwapState.SIDE_B_CLAIMING)
        try:
            handle = self._claim(swap, ledger_b, SIDE_B, swap.secret)
        except SwapCancelled as e:
            self._stop_before_reveal(swap, e.message, cancelled=True, cause=e)
        except HTLCError as e:
            self._stop_before_reveal(swap, f"side B claim failed: {e.message}", cause=e)

        swap.txs["claim_b"] = handle.tx_ref if handle else ""
        self._emit("secret_revealed", swap, SIDE_B, swap.txs["claim_b"])

        if not self._confirm(swap, ledger_b, handle):
            # The claim may still land; the ledger decides
            lock_b = ledger_b.find_lock(swap.lock_id)
            if lock_b is None or lock_b.status != LockStatus.CLAIMED:
                self._stop_before_reveal(swap, "side B claim not confirmed", cancelled=self.cancelled)

        swap.side_b = ledger_b.find_lock(swap.lock_id) or swap.side_b
        swap.revealed_secret = swap.secret
        self._set_state(swap, SwapState.SIDE_B_CLAIMED)
        log.info(f"[{swap.swap_id}] secret revealed on {ledger_b.chain}: {swap.secret[:18]}...")
        self._emit("claim_confirmed", swap, SIDE_B, swap.txs["claim_b"])

    def _claim_side_a(self, swap: Swap):
        """Responder claims side A with the secret published on ledger B."""
        ledger_a = swap.responder.destination
        ledger_b = swap.responder.source

        if self._stop.is_set():
            raise SwapCancelled("Cancelled before claiming side A", lock_id=swap.lock_id)

        if self.config.extract_secret_from_chain:
            watcher = SecretWatcher(ledger_b, self.config.secret_poll_interval)
            secret = watcher.wait_for_secret(swap.lock_id, self.config.secret_wait_timeout, self._stop)
        else:
            secret = swap.revealed_secret
        if not secret or not verify_preimage(secret, swap.secret_hash, ledger_a.hash_algorithm):
            raise SwapAborted("Secret not available from side B", lock_id=swap.lock_id)
        swap.revealed_secret = secret

        self._set_state(swap, SwapState.SIDE_A_CLAIMING)
        try:
            handle = self._claim(swap, ledger_a, SIDE_A, secret)
        except TemporalError as e:
            # Responder missed its window; side A goes back to the initiator
            self._set_state(swap, SwapState.REFUND_PENDING)
            raise SwapAborted(f"side A claim too late: {e.message}", lock_id=swap.lock_id) from e
        except SwapCancelled:
            self._set_state(swap, SwapState.SIDE_B_CLAIMED)
            raise
        except HTLCError as e:
            self._set_state(swap, SwapState.SIDE_B_CLAIMED)
            raise SwapAborted(f"side A claim failed: {e.message}", lock_id=swap.lock_id) from e

        swap.txs["claim_a"] = handle.tx_ref if handle else ""
        if not self._confirm(swap, ledger_a, handle):
            lock_a = ledger_a.find_lock(swap.lock_id)
            if lock_a is None or lock_a.status != LockStatus.CLAIMED:
                self._set_state(swap, SwapState.SIDE_B_CLAIMED)
                raise SwapAborted("side A claim not confirmed", lock_id=swap.lock_id)

        swap.side_a = ledger_a.find_lock(swap.lock_id) or swap.side_a
        swap.completed_at = int(time.time())
        self._set_state(swap, SwapState.COMPLETED)
        self._emit("claim_confirmed", swap, SIDE_A, swap.txs["claim_a"])
        log.info(f"[{swap.swap_id}] swap completed")

    # =========================================================================
    # Recovery
    # =========================================================================

    def refund_expired(self, swap: Swap) -> Swap:
        """
        Refund every still-locked side whose deadline has passed.

        Each side is refunded by its own depositor. The swap becomes REFUNDED
        once no side is left locked; if side B turns out claimed while side A
        is still claimable it goes back to SIDE_B_CLAIMED instead.
        """
        if swap.is_terminal:
            return swap

        pending = False
        a_claimable = False
        for side, ledger in self._sides(swap):
            if f"create_{side}" not in swap.txs:
                continue
            try:
                lock = ledger.find_lock(swap.lock_id)
                now = ledger.now()
            except TransportError as e:
                log.warning(f"[{swap.swap_id}] cannot read side {side}: {e}")
                pending = True
                continue
            if lock is None:
                continue
            setattr(swap, f"side_{side}", lock)
            if lock.is_terminal:
                continue

            if now < lock.deadline:
                log.info(f"[{swap.swap_id}] side {side} refundable in {format_duration(lock.deadline - now)}")
                pending = True
                a_claimable = a_claimable or side == SIDE_A
                continue

            try:
                handle = self._with_retries(swap, f"refund side {side}", lambda attempt: ledger.refund(swap.lock_id))
            except SwapCancelled:
                raise
            except AlreadyTerminal:
                # Lost the race to a claim
                setattr(swap, f"side_{side}", ledger.find_lock(swap.lock_id))
                continue
            except HTLCError as e:
                log.error(f"[{swap.swap_id}] refund side {side} failed: {e}")
                pending = True
                continue

            if not self._confirm(swap, ledger, handle):
                pending = True
                continue

            swap.txs[f"refund_{side}"] = handle.tx_ref
            setattr(swap, f"side_{side}", ledger.find_lock(swap.lock_id))
            log.info(f"[{swap.swap_id}] side {side} refunded on {ledger.chain}")
            self._emit("refund_confirmed", swap, side, handle.tx_ref)

        if (a_claimable and swap.side_b is not None and swap.side_b.status == LockStatus.CLAIMED
                and swap.responder is not None):
            # Secret is public: the responder should claim, not wait
            swap.revealed_secret = swap.side_b.secret or swap.revealed_secret
            self._set_state(swap, SwapState.SIDE_B_CLAIMED)
            return swap

        if pending:
            self._set_state(swap, SwapState.REFUND_PENDING)
            return swap

        existing = [lock for lock in (swap.side_a, swap.side_b) if lock is not None]
        if not existing:
            self._set_state(swap, SwapState.ABANDONED)
            self._emit("abandoned", swap, "nothing was locked")
        elif len(existing) == 2 and all(lock.status == LockStatus.CLAIMED for lock in existing):
            swap.completed_at = swap.completed_at or int(time.time())
            self._set_state(swap, SwapState.COMPLETED)
        else:
            swap.completed_at = swap.completed_at or int(time.time())
            self._set_state(swap, SwapState.REFUNDED)
        return swap

    def resume(self, swap: Swap) -> Swap:
        """Take the next recovery or forward step a stalled swap allows."""
        if swap.is_terminal:
            return swap
        try:
            if swap.state == SwapState.REFUND_PENDING:
                self.refund_expired(swap)
            if swap.state == SwapState.SIDE_B_CLAIMED:
                self._claim_side_a(swap)
            elif swap.state in (SwapState.INIT, SwapState.SIDE_A_LOCKED, SwapState.SIDE_B_LOCKED):
                self.execute(swap)
        except SwapAborted as e:
            swap.error = str(e)
            log.warning(f"[{swap.swap_id}] {e}")
        return swap

    def settle(self, swap: Swap, timeout: float = None) -> Swap:
        """Block until the swap is terminal, resuming it on every poll."""
        start = time.monotonic()
        while not swap.is_terminal:
            self.resume(swap)
            if swap.is_terminal:
                break
            if timeout is not None and time.monotonic() - start >= timeout:
                break
            if self._stop.wait(self.config.confirmation.poll_interval):
                break
        return swap

    # =========================================================================
    # Demonstrations
    # =========================================================================

    def demonstrate_expiry(self, adapter: LedgerAdapter, amount: int,
                           duration: int = None, recipient: str = None) -> Swap:
        """
        Lock with a short timelock, let it expire on the ledger clock, refund.

        Returns:
            One-sided Swap ending REFUNDED
        """
        duration = duration or self.config.expiry_demo_duration
        secret, secret_hash = generate_secret(self.config.secret_length, adapter.hash_algorithm)
        participant = Participant(source=adapter, destination=adapter, name="depositor")

        swap = Swap(
            swap_id=f"swap_{uuid.uuid4().hex[:12]}",
            state=SwapState.INIT,
            initiator=participant,
            responder=None,
            amount_a=amount,
            amount_b=0,
            secret_hash=secret_hash,
            lock_id=derive_lock_id(secret_hash),
            long_timelock=duration,
            short_timelock=0,
            recipient_a=adapter.normalize_address(recipient or adapter.address),
            recipient_b="",
            secret=secret,
            created_at=int(time.time()),
        )
        self.swaps[swap.swap_id] = swap
        log.info(f"[{swap.swap_id}] expiry demo on {adapter.chain}: {format_duration(duration)} timelock")

        self._lock_side_a(swap)
        self._set_state(swap, SwapState.REFUND_PENDING)

        # Wall-clock budget: the timelock plus one confirmation budget
        budget = duration + self.config.confirmation.timeout
        start = time.monotonic()
        while adapter.now() < swap.side_a.deadline:
            if time.monotonic() - start > budget:
                raise SwapAborted("Ledger clock did not reach the deadline", lock_id=swap.lock_id)
            if self._stop.wait(self.config.expiry_poll_interval):
                raise SwapCancelled("Cancelled while waiting for expiry", lock_id=swap.lock_id)

        log.info(f"[{swap.swap_id}] timelock expired, refunding")
        self.refund_expired(swap)
        return swap

    # =========================================================================
    # Queries
    # =========================================================================

    def get_swap(self, swap_id: str) -> Optional[Swap]:
        """Get swap by ID."""
        return self.swaps.get(swap_id)

    def get_active_swaps(self) -> List[Swap]:
        """Get all non-terminal swaps."""
        return [s for s in self.swaps.values() if not s.is_terminal]
