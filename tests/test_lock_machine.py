#!/usr/bin/env python3
"""
Lock state machine tests.

Covers create / claim / refund transitions, precondition order, the two
authorization policies, custody accounting and the event log.

Usage:
    python tests/test_lock_machine.py
"""

import sys
import os
import threading
import unittest
from unittest.mock import MagicMock

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from enderswap.core import Lock, LockStatus, LockEventKind, generate_secret, from_hex, to_hex, hash_secret
from enderswap.errors import (
    InvalidAmount, DuplicateLock, InsufficientFunds, LockNotFound, ValidationError,
    NotRecipient, NotAuthorized, TimelockExpired, TimelockNotExpired,
    InvalidSecret, AlreadyTerminal,
)
from enderswap.htlc import LockStateMachine, ManualClock, STRICT, PERMISSIVE, check_claim

START = 1_700_000_000


class MachineTestCase(unittest.TestCase):
    policy = STRICT

    def setUp(self):
        self.clock = ManualClock(START)
        self.machine = LockStateMachine(chain="test", policy=self.policy, clock=self.clock)
        self.machine.fund("alice", 1000)
        self.secret, self.secret_hash = generate_secret()

    def create(self, amount=100, duration=3600, **kwargs):
        params = dict(
            depositor="alice", recipient="bob", refund_party="alice",
            amount=amount, secret_hash=self.secret_hash, secret_length=32, duration=duration,
        )
        params.update(kwargs)
        return self.machine.create(**params)


class TestCreate(MachineTestCase):

    def test_create_moves_funds_into_custody(self):
        lock_id = self.create()
        self.assertEqual(lock_id, self.secret_hash)

        lock = self.machine.query(lock_id)
        self.assertEqual(lock.status, LockStatus.LOCKED)
        self.assertEqual(lock.deadline, START + 3600)
        self.assertEqual(lock.amount, 100)
        self.assertEqual(self.machine.balance_of("alice"), 900)
        self.assertEqual(self.machine.custody, 100)

    def test_zero_amount(self):
        with self.assertRaises(InvalidAmount):
            self.create(amount=0)
        self.assertEqual(self.machine.balance_of("alice"), 1000)

    def test_nonpositive_duration(self):
        with self.assertRaises(ValidationError):
            self.create(duration=0)

    def test_duplicate_lock(self):
        """Same lock id is rejected, even after the first lock is terminal."""
        lock_id = self.create()
        with self.assertRaises(DuplicateLock):
            self.create()

        self.clock.advance(3600)
        self.machine.refund("alice", lock_id)
        with self.assertRaises(DuplicateLock):
            self.create()

    def test_insufficient_funds(self):
        with self.assertRaises(InsufficientFunds):
            self.create(amount=1001)
        self.assertEqual(self.machine.custody, 0)

    def test_explicit_lock_id(self):
        lock_id = self.create(lock_id="0x" + "11" * 32)
        self.assertEqual(lock_id, "0x" + "11" * 32)
        self.assertEqual(self.machine.query(lock_id).secret_hash, self.secret_hash)

    def test_secret_length_not_enforced(self):
        machine = LockStateMachine(policy=STRICT, clock=self.clock, enforce_secret_length=False)
        machine.fund("alice", 10)
        lock_id = machine.create("alice", "bob", "alice", 10, self.secret_hash, 32, 60)
        self.assertIsNone(machine.query(lock_id).secret_length)


class TestClaim(MachineTestCase):

    def test_claim_pays_recipient_and_reveals_secret(self):
        lock_id = self.create()
        lock = self.machine.claim("bob", lock_id, from_hex(self.secret))

        self.assertEqual(lock.status, LockStatus.CLAIMED)
        self.assertEqual(lock.secret, self.secret)
        self.assertEqual(self.machine.balance_of("bob"), 100)
        self.assertEqual(self.machine.custody, 0)

    def test_wrong_secret(self):
        lock_id = self.create()
        with self.assertRaises(InvalidSecret):
            self.machine.claim("bob", lock_id, bytes(32))
        self.assertEqual(self.machine.query(lock_id).status, LockStatus.LOCKED)

    def test_secret_length_enforced(self):
        """A preimage of another length never claims, even if it hashes right."""
        short = b"\x01" * 16
        lock_id = self.create(secret_hash=to_hex(hash_secret(short)), secret_length=32)
        with self.assertRaises(InvalidSecret):
            self.machine.claim("bob", lock_id, short)

    def test_not_recipient(self):
        lock_id = self.create()
        with self.assertRaises(NotRecipient):
            self.machine.claim("mallory", lock_id, from_hex(self.secret))

    def test_claim_at_deadline_fails(self):
        lock_id = self.create()
        self.clock.advance(3600)
        with self.assertRaises(TimelockExpired):
            self.machine.claim("bob", lock_id, from_hex(self.secret))

    def test_claim_just_before_deadline(self):
        lock_id = self.create()
        self.clock.advance(3599)
        self.assertEqual(self.machine.claim("bob", lock_id, from_hex(self.secret)).status, LockStatus.CLAIMED)

    def test_double_claim(self):
        lock_id = self.create()
        self.machine.claim("bob", lock_id, from_hex(self.secret))
        with self.assertRaises(AlreadyTerminal):
            self.machine.claim("bob", lock_id, from_hex(self.secret))
        self.assertEqual(self.machine.balance_of("bob"), 100)

    def test_precondition_order(self):
        """terminal -> authorization -> deadline -> secret."""
        lock_id = self.create()
        self.clock.advance(7200)
        # Wrong caller and wrong secret after the deadline: authorization wins
        with self.assertRaises(NotRecipient):
            self.machine.claim("mallory", lock_id, bytes(32))
        # Right caller, wrong secret, after deadline: deadline wins
        with self.assertRaises(TimelockExpired):
            self.machine.claim("bob", lock_id, bytes(32))

        self.machine.refund("alice", lock_id)
        # Terminal beats everything
        with self.assertRaises(AlreadyTerminal):
            self.machine.claim("mallory", lock_id, bytes(32))

    def test_unknown_lock(self):
        with self.assertRaises(LockNotFound):
            self.machine.claim("bob", "0x" + "00" * 32, bytes(32))
        with self.assertRaises(LockNotFound):
            self.machine.query("nonsense")
        self.assertIsNone(self.machine.get("0x" + "00" * 32))

    def test_caller_case_insensitive(self):
        self.machine.fund("0xAAaa", 10)
        lock_id = self.create(depositor="0xAAaa", recipient="0xBBbb", refund_party="0xAAaa", amount=10)
        self.machine.claim("0xbbBB", lock_id, from_hex(self.secret))
        self.assertEqual(self.machine.balance_of("0xbbbb"), 10)


class TestRefund(MachineTestCase):

    def test_refund_after_deadline(self):
        lock_id = self.create()
        self.clock.advance(3600)
        lock = self.machine.refund("alice", lock_id)

        self.assertEqual(lock.status, LockStatus.REFUNDED)
        self.assertEqual(self.machine.balance_of("alice"), 1000)
        self.assertEqual(self.machine.custody, 0)

    def test_refund_before_deadline(self):
        lock_id = self.create()
        self.clock.advance(3599)
        with self.assertRaises(TimelockNotExpired):
            self.machine.refund("alice", lock_id)

    def test_refund_strict_depositor_only(self):
        lock_id = self.create()
        self.clock.advance(3600)
        with self.assertRaises(NotAuthorized):
            self.machine.refund("bob", lock_id)

    def test_refund_goes_to_refund_party(self):
        lock_id = self.create(refund_party="carol")
        self.clock.advance(3600)
        self.machine.refund("alice", lock_id)
        self.assertEqual(self.machine.balance_of("carol"), 100)
        self.assertEqual(self.machine.balance_of("alice"), 900)

    def test_refund_after_claim(self):
        lock_id = self.create()
        self.machine.claim("bob", lock_id, from_hex(self.secret))
        self.clock.advance(3600)
        with self.assertRaises(AlreadyTerminal):
            self.machine.refund("alice", lock_id)


class TestPermissivePolicy(MachineTestCase):
    policy = PERMISSIVE

    def test_anyone_claims_to_recipient(self):
        lock_id = self.create()
        self.machine.claim("mallory", lock_id, from_hex(self.secret))
        self.assertEqual(self.machine.balance_of("bob"), 100)
        self.assertEqual(self.machine.balance_of("mallory"), 0)

    def test_recipient_may_refund(self):
        lock_id = self.create(refund_party="carol")
        self.clock.advance(3600)
        self.machine.refund("bob", lock_id)
        # Funds still go to the refund party
        self.assertEqual(self.machine.balance_of("carol"), 100)

    def test_stranger_may_not_refund(self):
        lock_id = self.create()
        self.clock.advance(3600)
        with self.assertRaises(NotAuthorized):
            self.machine.refund("mallory", lock_id)


class TestEvents(MachineTestCase):

    def test_event_log(self):
        lock_id = self.create()
        self.machine.claim("bob", lock_id, from_hex(self.secret))

        events = self.machine.events_since(0)
        self.assertEqual([e.kind for e in events], [LockEventKind.CREATED, LockEventKind.CLAIMED])
        self.assertEqual(events[1].secret, self.secret)
        self.assertEqual(events[0].timestamp, START)
        self.assertEqual(self.machine.events_since(1), events[1:])
        self.assertEqual(self.machine.event_count, 2)

    def test_failed_transition_records_nothing(self):
        lock_id = self.create()
        with self.assertRaises(InvalidSecret):
            self.machine.claim("bob", lock_id, bytes(32))
        self.assertEqual(self.machine.event_count, 1)

    def test_listener_errors_do_not_break_transition(self):
        listener = MagicMock(side_effect=RuntimeError("boom"))
        self.machine.add_listener(listener)
        lock_id = self.create()
        listener.assert_called_once()
        self.assertEqual(self.machine.query(lock_id).status, LockStatus.LOCKED)

        self.machine.remove_listener(listener)
        self.machine.claim("bob", lock_id, from_hex(self.secret))
        listener.assert_called_once()


class TestConcurrency(MachineTestCase):

    def test_claim_refund_race_single_winner(self):
        """Concurrent claim and refund at the deadline boundary: exactly one wins."""
        machine = LockStateMachine(policy=PERMISSIVE, clock=self.clock)
        machine.fund("alice", 100)
        lock_id = machine.create("alice", "bob", "alice", 100, self.secret_hash, 32, 10)
        self.clock.advance(9)

        results = []

        def claim():
            try:
                machine.claim("bob", lock_id, from_hex(self.secret))
                results.append("claimed")
            except (AlreadyTerminal, TimelockExpired):
                results.append("lost")

        def refund():
            self.clock.advance(1)
            try:
                machine.refund("alice", lock_id)
                results.append("refunded")
            except (AlreadyTerminal, TimelockNotExpired):
                results.append("lost")

        threads = [threading.Thread(target=claim), threading.Thread(target=refund)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(results.count("claimed") + results.count("refunded"), 1)
        self.assertEqual(machine.custody, 0)
        self.assertEqual(machine.balance_of("alice") + machine.balance_of("bob"), 100)


class TestCheckFunctions(unittest.TestCase):

    def test_check_claim_standalone(self):
        secret, secret_hash = generate_secret(algorithm="keccak256")
        lock = Lock(
            lock_id=secret_hash, depositor="a", recipient="b", refund_party="a",
            amount=1, secret_hash=secret_hash, deadline=100, secret_length=32,
        )
        check_claim(lock, "b", from_hex(secret), 99, STRICT, "keccak256")
        with self.assertRaises(InvalidSecret):
            check_claim(lock, "b", from_hex(secret), 99, STRICT, "sha256")


if __name__ == "__main__":
    unittest.main(verbosity=2)
