"""
HTLC (Hash Time-Locked Contract) lock lifecycle.

A lock releases its funds to the recipient against a secret whose hash
matches the stored hashlock before the deadline, or back to the refund
party after it. The same rules run on every ledger; only the authorization
policy varies.
"""

from .machine import (
    AuthPolicy,
    ClaimAuthority,
    RefundAuthority,
    STRICT,
    PERMISSIVE,
    LockStateMachine,
    ManualClock,
    check_claim,
    check_refund,
)

__all__ = [
    "AuthPolicy",
    "ClaimAuthority",
    "RefundAuthority",
    "STRICT",
    "PERMISSIVE",
    "LockStateMachine",
    "ManualClock",
    "check_claim",
    "check_refund",
]
