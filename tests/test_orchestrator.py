#!/usr/bin/env python3
"""
Swap orchestrator tests over two in-memory ledgers.

Ledger A is strict (EVM-like), ledger B permissive (Sui-like); each runs on
its own ManualClock so deadlines are driven explicitly.

Usage:
    python tests/test_orchestrator.py
"""

import sys
import os
import unittest
from unittest.mock import MagicMock

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from enderswap.core import LockStatus, SwapState
from enderswap.errors import (
    HashAlgorithmMismatch, TimelockOrderError, InvalidAmount, ValidationError,
    TransportError, TransactionFailed, SwapAborted, SwapCancelled,
)
from enderswap.htlc import LockStateMachine, ManualClock, STRICT, PERMISSIVE
from enderswap.chains import MemoryLedgerAdapter, ConfirmationPolicy
from enderswap.swap import SwapOrchestrator, OrchestratorConfig, Participant

START = 1_700_000_000
LONG = 48 * 3600
SHORT = 24 * 3600

HAPPY_PATH = [
    SwapState.SIDE_A_LOCKING,
    SwapState.SIDE_A_LOCKED,
    SwapState.SIDE_B_LOCKING,
    SwapState.SIDE_B_LOCKED,
    SwapState.SIDE_B_CLAIMING,
    SwapState.SIDE_B_CLAIMED,
    SwapState.SIDE_A_CLAIMING,
    SwapState.COMPLETED,
]


class SwapTestCase(unittest.TestCase):
    """Alice trades 100 on ledger A for Bob's 50 on ledger B."""

    def setUp(self):
        self.clock_a = ManualClock(START)
        self.clock_b = ManualClock(START + 7)
        self.ledger_a = LockStateMachine(chain="evm", policy=STRICT, clock=self.clock_a)
        self.ledger_b = LockStateMachine(chain="sui", policy=PERMISSIVE, clock=self.clock_b)
        self.ledger_a.fund("alice-a", 1000)
        self.ledger_b.fund("bob-b", 500)

        self.config = OrchestratorConfig(
            long_timelock=LONG,
            short_timelock=SHORT,
            confirmation=ConfirmationPolicy(timeout=0.2, poll_interval=0.01),
            retry_backoff=0.0,
            secret_poll_interval=0.01,
            secret_wait_timeout=0.2,
            expiry_poll_interval=0.0,
        )
        self.orchestrator = SwapOrchestrator(self.config)

        self.states = []
        self.orchestrator.on("state", lambda swap, state: self.states.append(state))

    def participants(self, alice_a=None, bob_b=None):
        alice_a = alice_a or MemoryLedgerAdapter(self.ledger_a, "alice-a")
        bob_b = bob_b or MemoryLedgerAdapter(self.ledger_b, "bob-b")
        self.alice_a, self.bob_b = alice_a, bob_b
        self.alice_b = MemoryLedgerAdapter(self.ledger_b, "alice-b")
        self.bob_a = MemoryLedgerAdapter(self.ledger_a, "bob-a")
        initiator = Participant(source=self.alice_a, destination=self.alice_b, name="alice")
        responder = Participant(source=self.bob_b, destination=self.bob_a, name="bob")
        return initiator, responder

    def prepare(self, **kwargs):
        initiator, responder = self.participants(**kwargs)
        return self.orchestrator.prepare(initiator, responder, 100, 50)

    def when(self, state, action):
        """Run action once the swap enters state."""
        def handler(swap, new_state):
            if new_state == state:
                action()
        self.orchestrator.on("state", handler)


class TestHappyPath(SwapTestCase):

    def test_completes_and_moves_funds(self):
        swap = self.orchestrator.execute(self.prepare())

        self.assertEqual(swap.state, SwapState.COMPLETED)
        self.assertEqual(swap.history, HAPPY_PATH)
        self.assertEqual(self.states, HAPPY_PATH)

        self.assertEqual(self.ledger_a.balance_of("bob-a"), 100)
        self.assertEqual(self.ledger_b.balance_of("alice-b"), 50)
        self.assertEqual(self.ledger_a.balance_of("alice-a"), 900)
        self.assertEqual(self.ledger_b.balance_of("bob-b"), 450)
        self.assertEqual(self.ledger_a.custody + self.ledger_b.custody, 0)
        self.assertIsNotNone(swap.completed_at)

    def test_lock_parameters(self):
        swap = self.orchestrator.execute(self.prepare())

        self.assertEqual(swap.lock_id, swap.secret_hash)
        self.assertEqual(swap.side_a.deadline, START + LONG)
        self.assertEqual(swap.side_b.deadline, START + 7 + SHORT)
        self.assertEqual(swap.side_a.recipient, "bob-a")
        self.assertEqual(swap.side_b.recipient, "alice-b")
        self.assertEqual(swap.side_a.status, LockStatus.CLAIMED)
        self.assertEqual(swap.side_b.status, LockStatus.CLAIMED)

    def test_secret_comes_from_ledger_b(self):
        """Responder's claim uses the secret published by the claim on ledger B."""
        swap = self.prepare()
        secret = swap.secret
        self.orchestrator.execute(swap)

        self.assertEqual(self.ledger_b.query(swap.lock_id).secret, secret)
        self.assertEqual(self.ledger_a.query(swap.lock_id).secret, secret)
        self.assertEqual(swap.revealed_secret, secret)
        self.assertEqual(set(swap.txs), {"create_a", "create_b", "claim_b", "claim_a"})

    def test_events(self):
        events = []
        for name in ("lock_created", "lock_confirmed", "secret_revealed", "claim_confirmed"):
            self.orchestrator.on(name, lambda swap, side, *_, name=name: events.append((name, side)))

        self.orchestrator.execute(self.prepare())

        self.assertEqual(events, [
            ("lock_created", "a"), ("lock_confirmed", "a"),
            ("lock_created", "b"), ("lock_confirmed", "b"),
            ("secret_revealed", "b"), ("claim_confirmed", "b"),
            ("claim_confirmed", "a"),
        ])

    def test_handler_errors_do_not_break_swap(self):
        self.orchestrator.on("state", MagicMock(side_effect=RuntimeError("boom")))
        swap = self.orchestrator.execute(self.prepare())
        self.assertEqual(swap.state, SwapState.COMPLETED)

    def test_reverse_direction(self):
        """Initiator on ledger B, responder on ledger A."""
        self.ledger_b.fund("alice-b", 500)
        self.ledger_a.fund("bob-a", 500)
        alice_b = MemoryLedgerAdapter(self.ledger_b, "alice-b")
        alice_a = MemoryLedgerAdapter(self.ledger_a, "alice-a")
        bob_a = MemoryLedgerAdapter(self.ledger_a, "bob-a")
        bob_b = MemoryLedgerAdapter(self.ledger_b, "bob-b")

        swap = self.orchestrator.run_swap(
            Participant(source=alice_b, destination=alice_a),
            Participant(source=bob_a, destination=bob_b),
            amount_a=30,
            amount_b=70,
        )

        self.assertEqual(swap.state, SwapState.COMPLETED)
        self.assertEqual(self.ledger_b.balance_of("bob-b"), 500 + 30)
        self.assertEqual(self.ledger_a.balance_of("alice-a"), 1000 + 70)

    def test_explicit_destination(self):
        initiator, responder = self.participants()
        initiator.destination_address = "carol-b"
        swap = self.orchestrator.run_swap(initiator, responder, 100, 50)

        self.assertEqual(swap.state, SwapState.COMPLETED)
        self.assertEqual(self.ledger_b.balance_of("carol-b"), 50)

    def test_to_dict_hides_unrevealed_secret(self):
        swap = self.prepare()
        data = swap.to_dict()
        self.assertEqual(data["state"], "init")
        self.assertIsNone(data["revealed_secret"])
        self.assertNotIn(swap.secret, str(data))

    def test_registry(self):
        swap = self.prepare()
        self.assertIs(self.orchestrator.get_swap(swap.swap_id), swap)
        self.assertEqual(self.orchestrator.get_active_swaps(), [swap])
        self.orchestrator.execute(swap)
        self.assertEqual(self.orchestrator.get_active_swaps(), [])


class TestPrepareValidation(SwapTestCase):

    def test_hash_algorithm_mismatch(self):
        self.ledger_b = LockStateMachine(chain="sui", policy=PERMISSIVE,
                                         hash_algorithm="keccak256", clock=self.clock_b)
        with self.assertRaises(HashAlgorithmMismatch):
            self.prepare()
        self.assertEqual(self.ledger_a.event_count, 0)

    def test_timelock_order(self):
        self.orchestrator.config.short_timelock = LONG
        with self.assertRaises(TimelockOrderError):
            self.prepare()

    def test_amounts(self):
        initiator, responder = self.participants()
        with self.assertRaises(InvalidAmount):
            self.orchestrator.prepare(initiator, responder, 0, 50)
        with self.assertRaises(InvalidAmount):
            self.orchestrator.prepare(initiator, responder, 100, 1.5)

    def test_ledger_pairing(self):
        initiator, responder = self.participants()
        other = LockStateMachine(chain="other", clock=self.clock_b)
        responder.source = MemoryLedgerAdapter(other, "bob-x")
        with self.assertRaises(ValidationError):
            self.orchestrator.prepare(initiator, responder, 100, 50)

    def test_destination_must_be_claimer_on_strict_ledger(self):
        """Ledger A only lets the recipient claim, so bob-a must receive there."""
        initiator, responder = self.participants()
        responder.destination_address = "carol-a"
        with self.assertRaises(ValidationError):
            self.orchestrator.prepare(initiator, responder, 100, 50)
        self.assertEqual(self.ledger_a.event_count, 0)

    def test_preset_secret(self):
        initiator, responder = self.participants()
        secret = "0x" + "42" * 32
        swap = self.orchestrator.prepare(initiator, responder, 100, 50, secret=secret)
        self.assertEqual(swap.secret, secret)
        self.orchestrator.execute(swap)
        self.assertEqual(swap.state, SwapState.COMPLETED)


class TestFailureBeforeReveal(SwapTestCase):

    def test_side_a_lock_fails_abandons(self):
        self.ledger_a = LockStateMachine(chain="evm", policy=STRICT, clock=self.clock_a)
        abandoned = []
        self.orchestrator.on("abandoned", lambda swap, reason: abandoned.append(reason))

        swap = self.prepare()
        with self.assertRaises(SwapAborted):
            self.orchestrator.execute(swap)

        self.assertEqual(swap.state, SwapState.ABANDONED)
        self.assertEqual(len(abandoned), 1)
        self.assertIn("side A", swap.error)

    def test_side_b_lock_fails_then_refund(self):
        """Responder cannot lock: side A is refunded after its deadline."""
        self.ledger_b = LockStateMachine(chain="sui", policy=PERMISSIVE, clock=self.clock_b)
        refunds = []
        self.orchestrator.on("refund_confirmed", lambda swap, side, tx: refunds.append(side))

        swap = self.prepare()
        with self.assertRaises(SwapAborted):
            self.orchestrator.execute(swap)
        self.assertEqual(swap.state, SwapState.REFUND_PENDING)
        self.assertEqual(self.ledger_a.balance_of("alice-a"), 900)

        # Not yet
        self.orchestrator.refund_expired(swap)
        self.assertEqual(swap.state, SwapState.REFUND_PENDING)

        self.clock_a.advance(LONG)
        self.orchestrator.refund_expired(swap)

        self.assertEqual(swap.state, SwapState.REFUNDED)
        self.assertEqual(self.ledger_a.balance_of("alice-a"), 1000)
        self.assertEqual(swap.side_a.status, LockStatus.REFUNDED)
        self.assertEqual(refunds, ["a"])

    def test_confirmation_timeout(self):
        """Side A never confirms: the lock may exist, so refund is pending."""
        alice_a = MemoryLedgerAdapter(self.ledger_a, "alice-a", auto_confirm=False)
        swap = self.prepare(alice_a=alice_a)

        with self.assertRaises(SwapAborted):
            self.orchestrator.execute(swap)
        self.assertEqual(swap.state, SwapState.REFUND_PENDING)
        self.assertNotIn(SwapState.SIDE_B_LOCKING, swap.history)

    def test_reveal_margin(self):
        """Side A too close to its deadline: no reveal, both sides refund."""
        swap = self.prepare()
        self.when(SwapState.SIDE_B_LOCKED, lambda: self.clock_a.advance(LONG - 1800))

        with self.assertRaises(SwapAborted):
            self.orchestrator.execute(swap)

        self.assertEqual(swap.state, SwapState.REFUND_PENDING)
        self.assertIsNone(swap.revealed_secret)
        self.assertEqual(self.ledger_b.query(swap.lock_id).status, LockStatus.LOCKED)
        self.assertEqual(self.ledger_b.event_count, 1)

        self.clock_a.advance(1800)
        self.clock_b.advance(SHORT)
        self.orchestrator.refund_expired(swap)

        self.assertEqual(swap.state, SwapState.REFUNDED)
        self.assertEqual(self.ledger_a.balance_of("alice-a"), 1000)
        self.assertEqual(self.ledger_b.balance_of("bob-b"), 500)

    def test_side_b_expired_before_reveal(self):
        swap = self.prepare()
        self.when(SwapState.SIDE_B_LOCKED, lambda: self.clock_b.advance(SHORT))

        with self.assertRaises(SwapAborted):
            self.orchestrator.execute(swap)
        self.assertEqual(swap.state, SwapState.REFUND_PENDING)
        self.assertIsNone(swap.revealed_secret)

    def test_side_a_too_short_for_responder(self):
        """Responder refuses to lock when side A would expire first."""
        swap = self.prepare()
        self.when(SwapState.SIDE_A_LOCKED, lambda: self.clock_a.advance(SHORT))

        with self.assertRaises(SwapAborted):
            self.orchestrator.execute(swap)
        self.assertEqual(swap.state, SwapState.REFUND_PENDING)
        self.assertEqual(self.ledger_b.event_count, 0)

    def test_cancel(self):
        swap = self.prepare()
        self.when(SwapState.SIDE_A_LOCKED, self.orchestrator.cancel)

        with self.assertRaises(SwapCancelled):
            self.orchestrator.execute(swap)
        self.assertEqual(swap.state, SwapState.REFUND_PENDING)
        self.assertTrue(self.orchestrator.cancelled)
        self.assertEqual(self.ledger_b.event_count, 0)


class TestRetries(SwapTestCase):

    def flaky(self, adapter, name, failures, land_first=False):
        real = getattr(adapter, name)
        calls = []

        def wrapper(*args, **kwargs):
            calls.append(args)
            if len(calls) <= failures:
                if land_first:
                    real(*args, **kwargs)
                raise TransportError("connection reset")
            return real(*args, **kwargs)

        setattr(adapter, name, wrapper)
        return calls

    def test_transport_error_retried(self):
        swap = self.prepare()
        calls = self.flaky(self.bob_b, "create_lock", 1)

        self.orchestrator.execute(swap)
        self.assertEqual(swap.state, SwapState.COMPLETED)
        self.assertEqual(len(calls), 2)

    def test_retry_after_landed_create(self):
        """First attempt landed despite the error: the existing lock is adopted."""
        swap = self.prepare()
        calls = self.flaky(self.alice_a, "create_lock", 1, land_first=True)

        self.orchestrator.execute(swap)
        self.assertEqual(swap.state, SwapState.COMPLETED)
        self.assertEqual(len(calls), 2)
        self.assertEqual(self.ledger_a.balance_of("alice-a"), 900)

    def test_retry_after_landed_claim(self):
        swap = self.prepare()
        self.flaky(self.alice_b, "claim", 1, land_first=True)

        self.orchestrator.execute(swap)
        self.assertEqual(swap.state, SwapState.COMPLETED)
        self.assertEqual(self.ledger_b.balance_of("alice-b"), 50)

    def test_retries_exhausted(self):
        self.orchestrator.config.max_retries = 2
        swap = self.prepare()
        calls = self.flaky(self.bob_b, "create_lock", 99)

        with self.assertRaises(SwapAborted):
            self.orchestrator.execute(swap)
        self.assertEqual(len(calls), 3)
        self.assertEqual(swap.state, SwapState.REFUND_PENDING)

    def test_last_attempt_landed_side_a(self):
        """Every create errors but one landed: the lock is refunded, not forgotten."""
        self.orchestrator.config.max_retries = 0
        swap = self.prepare()
        self.flaky(self.alice_a, "create_lock", 99, land_first=True)

        with self.assertRaises(SwapAborted):
            self.orchestrator.execute(swap)
        self.assertEqual(swap.state, SwapState.REFUND_PENDING)
        self.assertEqual(self.ledger_a.query(swap.lock_id).status, LockStatus.LOCKED)
        self.assertEqual(self.ledger_a.balance_of("alice-a"), 900)

        self.clock_a.advance(LONG)
        self.orchestrator.refund_expired(swap)
        self.assertEqual(swap.state, SwapState.REFUNDED)
        self.assertEqual(self.ledger_a.balance_of("alice-a"), 1000)

    def test_last_attempt_landed_side_b(self):
        self.orchestrator.config.max_retries = 0
        swap = self.prepare()
        self.flaky(self.bob_b, "create_lock", 99, land_first=True)

        with self.assertRaises(SwapAborted):
            self.orchestrator.execute(swap)
        self.assertEqual(swap.state, SwapState.REFUND_PENDING)

        self.clock_a.advance(LONG)
        self.clock_b.advance(SHORT)
        self.orchestrator.refund_expired(swap)

        self.assertEqual(swap.state, SwapState.REFUNDED)
        self.assertEqual(self.ledger_b.query(swap.lock_id).status, LockStatus.REFUNDED)
        self.assertEqual(self.ledger_a.balance_of("alice-a"), 1000)
        self.assertEqual(self.ledger_b.balance_of("bob-b"), 500)

    def test_ledger_rejection_not_retried(self):
        swap = self.prepare()
        self.bob_a.claim = MagicMock(side_effect=TransactionFailed("reverted"))

        with self.assertRaises(SwapAborted):
            self.orchestrator.execute(swap)
        self.bob_a.claim.assert_called_once()
        self.assertEqual(swap.state, SwapState.SIDE_B_CLAIMED)

    def test_abort_message_names_lock_once(self):
        swap = self.prepare()
        self.bob_a.claim = MagicMock(side_effect=TransactionFailed("reverted", lock_id=swap.lock_id))

        with self.assertRaises(SwapAborted) as ctx:
            self.orchestrator.execute(swap)
        self.assertEqual(str(ctx.exception), f"side A claim failed: reverted (lock {swap.lock_id})")
        self.assertEqual(swap.error.count("(lock"), 1)


class TestAfterReveal(SwapTestCase):

    def test_resume_claims_side_a(self):
        swap = self.prepare()
        real_claim = self.bob_a.claim
        self.bob_a.claim = MagicMock(side_effect=TransactionFailed("reverted"))

        with self.assertRaises(SwapAborted):
            self.orchestrator.execute(swap)
        self.assertEqual(swap.state, SwapState.SIDE_B_CLAIMED)

        self.bob_a.claim = real_claim
        self.orchestrator.resume(swap)
        self.assertEqual(swap.state, SwapState.COMPLETED)
        self.assertEqual(self.ledger_a.balance_of("bob-a"), 100)

    def test_responder_misses_window(self):
        """Side A expires before the responder claims: the initiator refunds it."""
        swap = self.prepare()
        self.when(SwapState.SIDE_B_CLAIMED, lambda: self.clock_a.advance(LONG))

        with self.assertRaises(SwapAborted):
            self.orchestrator.execute(swap)
        self.assertEqual(swap.state, SwapState.REFUND_PENDING)

        self.orchestrator.refund_expired(swap)
        self.assertEqual(swap.state, SwapState.REFUNDED)
        self.assertEqual(swap.side_a.status, LockStatus.REFUNDED)
        self.assertEqual(swap.side_b.status, LockStatus.CLAIMED)

    def test_unconfirmed_reveal_follows_ledger_state(self):
        """Claim on B landed but was not confirmed in time: settle forward."""
        alice_b = MemoryLedgerAdapter(self.ledger_b, "alice-b", auto_confirm=False)
        initiator, responder = self.participants()
        initiator.destination = alice_b
        swap = self.orchestrator.prepare(initiator, responder, 100, 50)

        self.orchestrator.execute(swap)
        # Ledger state shows the claim, so the swap proceeds
        self.assertEqual(swap.state, SwapState.COMPLETED)

    def test_settle(self):
        self.ledger_b = LockStateMachine(chain="sui", policy=PERMISSIVE, clock=self.clock_b)
        swap = self.prepare()
        with self.assertRaises(SwapAborted):
            self.orchestrator.execute(swap)

        self.clock_a.advance(LONG)
        self.orchestrator.settle(swap, timeout=1.0)
        self.assertEqual(swap.state, SwapState.REFUNDED)


class TestExpiryDemonstration(SwapTestCase):

    def test_lock_expires_and_refunds(self):
        alice_a = MemoryLedgerAdapter(self.ledger_a, "alice-a")
        self.when(SwapState.REFUND_PENDING, lambda: self.clock_a.advance(30))

        swap = self.orchestrator.demonstrate_expiry(alice_a, 100, duration=30)

        self.assertEqual(swap.state, SwapState.REFUNDED)
        self.assertEqual(swap.side_a.deadline, START + 30)
        self.assertEqual(swap.side_a.status, LockStatus.REFUNDED)
        self.assertEqual(self.ledger_a.balance_of("alice-a"), 1000)
        self.assertIn("refund_a", swap.txs)

    def test_clock_never_reaches_deadline(self):
        alice_a = MemoryLedgerAdapter(self.ledger_a, "alice-a")
        self.orchestrator.config.confirmation.timeout = 0.0
        self.orchestrator.config.expiry_poll_interval = 0.05

        with self.assertRaises(SwapAborted):
            self.orchestrator.demonstrate_expiry(alice_a, 100, duration=1)


if __name__ == "__main__":
    unittest.main(verbosity=2)
