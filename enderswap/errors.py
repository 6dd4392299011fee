"""
Error taxonomy for enderswap.

Every failed lock precondition maps to its own class so that callers and
monitors can tell authorization, timing, secret and terminal-state failures
apart. Only TransportError is considered retriable.
"""

from typing import Optional


class HTLCError(Exception):
    """Base class for all lock and swap errors."""
    code = "HTLCError"

    def __init__(self, message: str = "", lock_id: Optional[str] = None):
        super().__init__(message or self.code)
        self.lock_id = lock_id

    @property
    def message(self) -> str:
        """Message without the lock suffix."""
        return self.args[0]

    def __str__(self) -> str:
        msg = super().__str__()
        if self.lock_id:
            return f"{msg} (lock {self.lock_id})"
        return msg


# =============================================================================
# Validation (caller / config mistakes, never retried)
# =============================================================================

class ValidationError(HTLCError, ValueError):
    code = "ValidationError"


class InvalidAmount(ValidationError):
    code = "InvalidAmount"


class DuplicateLock(ValidationError):
    code = "DuplicateLock"


class InvalidAddress(ValidationError):
    code = "InvalidAddress"


class InsufficientFunds(ValidationError):
    code = "InsufficientFunds"


class HashAlgorithmMismatch(ValidationError):
    code = "HashAlgorithmMismatch"


class TimelockOrderError(ValidationError):
    code = "TimelockOrderError"


class ConfigError(ValidationError):
    code = "ConfigError"


class LockNotFound(HTLCError, LookupError):
    code = "NotFound"


# =============================================================================
# Authorization
# =============================================================================

class AuthorizationError(HTLCError):
    code = "AuthorizationError"


class NotRecipient(AuthorizationError):
    code = "NotRecipient"


class NotAuthorized(AuthorizationError):
    code = "NotAuthorized"


# =============================================================================
# Temporal
# =============================================================================

class TemporalError(HTLCError):
    code = "TemporalError"


class TimelockExpired(TemporalError):
    code = "TimelockExpired"


class TimelockNotExpired(TemporalError):
    code = "TimelockNotExpired"


# =============================================================================
# Cryptographic / state
# =============================================================================

class InvalidSecret(HTLCError):
    code = "InvalidSecret"


class AlreadyTerminal(HTLCError):
    code = "AlreadyTerminal"


# =============================================================================
# Transport (recoverable)
# =============================================================================

class TransportError(HTLCError, RuntimeError):
    code = "TransportError"


class ConfirmationTimeout(TransportError):
    code = "ConfirmationTimeout"


class TransactionFailed(HTLCError, RuntimeError):
    """The ledger executed and rejected the transaction."""
    code = "TransactionFailed"


# =============================================================================
# Orchestration
# =============================================================================

class SwapAborted(HTLCError):
    """The swap stopped before completion; see the swap's state for recovery."""
    code = "SwapAborted"


class SwapCancelled(SwapAborted):
    code = "SwapCancelled"
