"""
Core types and helpers for enderswap.

A Lock is one ledger-local escrow; a Swap pairs two Locks on two ledgers
through one secret. Both ledgers must hash the secret with the same
algorithm, and the lock identifier is derived from the secret hash so that
both sides name the same logical swap without a side channel.
"""

import hashlib
import secrets
import time
from enum import Enum
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, Callable, Union

from Crypto.Hash import keccak

from .errors import InvalidAmount, InvalidSecret, TimelockOrderError, ValidationError


class LockStatus(Enum):
    """Lock lifecycle. Monotonic, terminal once not LOCKED."""
    LOCKED = "locked"
    CLAIMED = "claimed"
    REFUNDED = "refunded"


class LockEventKind(Enum):
    CREATED = "created"
    CLAIMED = "claimed"
    REFUNDED = "refunded"


class SwapState(Enum):
    """Swap lifecycle states (orchestrator view)."""
    INIT = "init"
    SIDE_A_LOCKING = "side_a_locking"      # Initiator lock submitted
    SIDE_A_LOCKED = "side_a_locked"        # Initiator lock confirmed
    SIDE_B_LOCKING = "side_b_locking"      # Responder lock submitted
    SIDE_B_LOCKED = "side_b_locked"        # Responder lock confirmed
    SIDE_B_CLAIMING = "side_b_claiming"    # Initiator claim submitted (reveal)
    SIDE_B_CLAIMED = "side_b_claimed"      # Secret public on ledger B
    SIDE_A_CLAIMING = "side_a_claiming"    # Responder claim submitted
    COMPLETED = "completed"                # Both locks claimed
    REFUND_PENDING = "refund_pending"      # Waiting for a deadline to refund
    REFUNDED = "refunded"                  # Every still-locked side refunded
    ABANDONED = "abandoned"                # Stopped before any funds were locked


TERMINAL_SWAP_STATES = (SwapState.COMPLETED, SwapState.REFUNDED, SwapState.ABANDONED)


@dataclass
class Lock:
    """One ledger-local escrow instance, normalised across ledgers."""
    lock_id: str            # Logical id (0x + secret hash hex)
    depositor: str          # Funded the lock
    recipient: str          # Receives funds on claim
    refund_party: str       # Receives funds on refund
    amount: int             # Smallest native unit (wei, MIST, ...)
    secret_hash: str        # 0x-prefixed hex digest
    deadline: int           # Unix seconds on the hosting ledger's clock
    status: LockStatus = LockStatus.LOCKED
    secret_length: Optional[int] = None  # None = not enforced

    # Optional metadata
    chain: str = ""
    native_id: Optional[str] = None     # Ledger-assigned identity (e.g. Sui object id)
    secret: Optional[str] = None        # Set once revealed by a claim

    @property
    def is_terminal(self) -> bool:
        return self.status != LockStatus.LOCKED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lock_id": self.lock_id,
            "depositor": self.depositor,
            "recipient": self.recipient,
            "refund_party": self.refund_party,
            "amount": self.amount,
            "secret_hash": self.secret_hash,
            "secret_length": self.secret_length,
            "deadline": self.deadline,
            "status": self.status.value,
            "chain": self.chain,
            "native_id": self.native_id,
            "secret": self.secret,
        }


@dataclass
class LockEvent:
    """A Created / Claimed / Refunded event observed on a ledger."""
    kind: LockEventKind
    lock_id: str
    chain: str = ""
    secret_hash: Optional[str] = None
    secret: Optional[str] = None        # Only on CLAIMED
    tx_ref: Optional[str] = None        # Tx hash / digest
    native_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


# =============================================================================
# Hex helpers
# =============================================================================

def to_hex(data: bytes) -> str:
    """bytes -> 0x-prefixed lowercase hex."""
    return "0x" + data.hex()


def from_hex(value: Union[str, bytes]) -> bytes:
    """Accept 0x-prefixed or bare hex (or raw bytes) and return bytes."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if value.startswith("0x") or value.startswith("0X"):
        value = value[2:]
    try:
        return bytes.fromhex(value)
    except ValueError as e:
        raise ValidationError(f"Invalid hex value: {value!r}") from e


def normalize_hash(value: Union[str, bytes]) -> str:
    return to_hex(from_hex(value))


# =============================================================================
# Secret hashing
# =============================================================================

def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def _keccak256(data: bytes) -> bytes:
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


HASH_ALGORITHMS: Dict[str, Callable[[bytes], bytes]] = {
    "sha256": _sha256,
    "keccak256": _keccak256,
}

SECRET_LENGTH = 32


def hash_secret(secret: bytes, algorithm: str = "sha256") -> bytes:
    """Digest a secret with the named algorithm."""
    try:
        fn = HASH_ALGORITHMS[algorithm]
    except KeyError:
        raise ValidationError(f"Unsupported hash algorithm: {algorithm}")
    return fn(secret)


def generate_secret(length: int = SECRET_LENGTH, algorithm: str = "sha256") -> tuple[str, str]:
    """
    Generate a random secret and its hash.

    Returns:
        (secret_hex, secret_hash_hex), both 0x-prefixed
    """
    secret = secrets.token_bytes(length)
    return to_hex(secret), to_hex(hash_secret(secret, algorithm))


def verify_preimage(preimage_hex: str, hashlock_hex: str, algorithm: str = "sha256") -> bool:
    """
    Verify that H(preimage) == hashlock.

    Args:
        preimage_hex: Preimage as hex string (0x optional)
        hashlock_hex: Expected digest as hex string (0x optional)
        algorithm: Hash algorithm name

    Returns:
        True if valid
    """
    try:
        preimage = from_hex(preimage_hex)
        expected = from_hex(hashlock_hex)
    except ValidationError:
        return False
    return hash_secret(preimage, algorithm) == expected


def secret_matches(secret: bytes, secret_hash: str, algorithm: str,
                   secret_length: Optional[int] = None) -> bool:
    """Hash binding check shared by every ledger."""
    if secret_length is not None and len(secret) != secret_length:
        return False
    return hash_secret(secret, algorithm) == from_hex(secret_hash)


def require_secret(secret: Union[str, bytes], lock_id: Optional[str] = None) -> bytes:
    """Decode a caller-supplied secret, rejecting malformed input as InvalidSecret."""
    try:
        return from_hex(secret)
    except ValidationError:
        raise InvalidSecret("Secret is not valid hex", lock_id=lock_id)


def derive_lock_id(secret_hash: Union[str, bytes]) -> str:
    """Lock id is the secret hash itself, so both ledgers agree on it."""
    return normalize_hash(secret_hash)


# =============================================================================
# Units
# =============================================================================

ETH_DECIMALS = 18
SUI_DECIMALS = 9


def to_base_units(amount: Union[str, int, Decimal], decimals: int) -> int:
    """Convert a human amount ("0.01") to the ledger's smallest unit."""
    try:
        value = Decimal(str(amount)) * (Decimal(10) ** decimals)
    except InvalidOperation:
        raise InvalidAmount(f"Not a number: {amount!r}")
    if not value.is_finite():
        raise InvalidAmount(f"Not a finite amount: {amount!r}")
    if value != value.to_integral_value():
        raise InvalidAmount(f"{amount} has more than {decimals} decimals")
    return int(value)


def from_base_units(amount: int, decimals: int) -> Decimal:
    """Convert smallest units back to a human amount."""
    return Decimal(amount) / (Decimal(10) ** decimals)


def format_duration(seconds: int) -> str:
    """Format seconds as '48h 0m 0s' / '5m 3s' / '30s'."""
    seconds = int(seconds)
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


# =============================================================================
# Asymmetric timelock policy
# =============================================================================

DEFAULT_LONG_TIMELOCK = 48 * 60 * 60    # Initiator side
DEFAULT_SHORT_TIMELOCK = 24 * 60 * 60   # Responder side

# Minimum gap between the two deadlines: the initiator's claim on side B and
# the responder's follow-up claim on side A both have to fit inside it.
TIMELOCK_MIN_GAP_SECONDS = 1800


def validate_timelock_order(long_timelock: int, short_timelock: int,
                            min_gap: int = TIMELOCK_MIN_GAP_SECONDS) -> bool:
    """
    Validate short_timelock < long_timelock with at least min_gap between them.

    Returns True if valid, raises TimelockOrderError if not.
    """
    if short_timelock <= 0 or long_timelock <= 0:
        raise TimelockOrderError(
            f"Timelocks must be positive: long={long_timelock}s, short={short_timelock}s"
        )
    if not short_timelock < long_timelock:
        raise TimelockOrderError(
            f"Timelock order violated: short={short_timelock}s, long={long_timelock}s "
            f"(must be short < long)"
        )
    if long_timelock - short_timelock < min_gap:
        raise TimelockOrderError(
            f"Insufficient gap long - short: {long_timelock - short_timelock}s "
            f"(min {min_gap}s)"
        )
    return True
