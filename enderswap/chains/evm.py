"""
EVM ledger adapter for enderswap.

Talks to the HTLC contract (contracts/HTLC.sol) on an Ethereum-compatible
chain through web3.py. Locks hold native ETH; the lock id is supplied by the
caller and derived from the secret hash.

Contract surface:
    createLock(bytes32 lockId, address recipient, bytes32 secretHash, uint256 durationSeconds) payable
    claim(bytes32 lockId, bytes32 secret)
    refund(bytes32 lockId)
    getLock(bytes32 lockId) -> (depositor, recipient, amount, secretHash, deadline, claimed, refunded)

The contract refunds to the depositor only and takes 32-byte secrets.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional, List, Tuple, Any

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3RPCError
from eth_account import Account

from ..core import (
    Lock, LockStatus, LockEvent, LockEventKind, SECRET_LENGTH,
    derive_lock_id, from_hex, to_hex, require_secret,
)
from ..errors import (
    HTLCError, InvalidAmount, DuplicateLock, InvalidAddress, InsufficientFunds,
    LockNotFound, NotRecipient, NotAuthorized, TimelockExpired, TimelockNotExpired,
    InvalidSecret, AlreadyTerminal, TransportError, TransactionFailed, ValidationError,
    ConfigError,
)
from ..htlc.machine import AuthPolicy, STRICT
from .base import (
    LedgerAdapter, LockReceipt, ConfirmationHandle, ConfirmationPolicy,
    ConfirmationStatus, EventFilter,
)

log = logging.getLogger(__name__)


ZERO_ADDRESS = "0x" + "0" * 40

# HTLC.sol checks sha256(secret) == secretHash
EVM_HASH_ALGORITHMS = ("sha256",)

# RPC endpoints
RPC_ENDPOINTS = {
    "base_sepolia": "https://sepolia.base.org",
    "base_mainnet": "https://mainnet.base.org",
}

HTLC_ABI = [
    {
        "name": "createLock",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "lockId", "type": "bytes32"},
            {"name": "recipient", "type": "address"},
            {"name": "secretHash", "type": "bytes32"},
            {"name": "durationSeconds", "type": "uint256"}
        ],
        "outputs": []
    },
    {
        "name": "claim",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "lockId", "type": "bytes32"},
            {"name": "secret", "type": "bytes32"}
        ],
        "outputs": []
    },
    {
        "name": "refund",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "lockId", "type": "bytes32"}],
        "outputs": []
    },
    {
        "name": "getLock",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "lockId", "type": "bytes32"}],
        "outputs": [
            {"name": "depositor", "type": "address"},
            {"name": "recipient", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "secretHash", "type": "bytes32"},
            {"name": "deadline", "type": "uint256"},
            {"name": "claimed", "type": "bool"},
            {"name": "refunded", "type": "bool"}
        ]
    },
    {
        "name": "Locked",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "lockId", "type": "bytes32", "indexed": True},
            {"name": "depositor", "type": "address", "indexed": True},
            {"name": "recipient", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "secretHash", "type": "bytes32", "indexed": False},
            {"name": "deadline", "type": "uint256", "indexed": False}
        ]
    },
    {
        "name": "Claimed",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "lockId", "type": "bytes32", "indexed": True},
            {"name": "secret", "type": "bytes32", "indexed": False}
        ]
    },
    {
        "name": "Refunded",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "lockId", "type": "bytes32", "indexed": True}
        ]
    }
]

# Revert reason -> precondition error
REVERT_ERRORS = [
    ("lock already exists", DuplicateLock),
    ("amount must be positive", InvalidAmount),
    ("lock not found", LockNotFound),
    ("already claimed", AlreadyTerminal),
    ("already refunded", AlreadyTerminal),
    ("not recipient", NotRecipient),
    ("not depositor", NotAuthorized),
    ("timelock not expired", TimelockNotExpired),
    ("timelock expired", TimelockExpired),
    ("invalid secret", InvalidSecret),
    ("insufficient funds", InsufficientFunds),
]

EVENT_KINDS = {
    "Locked": LockEventKind.CREATED,
    "Claimed": LockEventKind.CLAIMED,
    "Refunded": LockEventKind.REFUNDED,
}


@dataclass
class EVMConfig:
    """EVM chain configuration."""
    network: str = "base_sepolia"
    rpc_url: str = "https://sepolia.base.org"
    chain_id: int = 84532  # Base Sepolia
    htlc_address: str = ""
    private_key: str = ""

    # Gas limits per call
    create_gas: int = 300000
    claim_gas: int = 150000
    refund_gas: int = 100000
    gas_price_multiplier: float = 1.1  # 10% buffer

    request_timeout: int = 30
    log_lookback_blocks: int = 5000   # Event scan window when no cursor is given


def revert_error(message: str, lock_id: Optional[str] = None) -> HTLCError:
    """Map a contract revert onto the matching precondition error."""
    lowered = message.lower()
    for reason, cls in REVERT_ERRORS:
        if reason in lowered:
            return cls(message, lock_id=lock_id)
    return TransactionFailed(message, lock_id=lock_id)


class EVMLedgerAdapter(LedgerAdapter):
    """
    HTLC adapter for an EVM chain.

    Defaults to the strict authorization policy: the contract only lets the
    recipient claim and the depositor refund.
    """

    chain = "evm"

    def __init__(self, config: EVMConfig, policy: AuthPolicy = STRICT,
                 hash_algorithm: str = "sha256", web3: Web3 = None):
        if hash_algorithm not in EVM_HASH_ALGORITHMS:
            raise ConfigError(f"HTLC contract hashes with sha256, not {hash_algorithm!r}")
        super().__init__(policy=policy, hash_algorithm=hash_algorithm)
        self.config = config

        if not config.private_key:
            raise ConfigError("EVM private key required")
        key = config.private_key if config.private_key.startswith("0x") else "0x" + config.private_key
        try:
            self.account = Account.from_key(key)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"Invalid EVM private key: {e}") from e

        try:
            self.htlc_address = self.normalize_address(config.htlc_address)
        except InvalidAddress as e:
            raise ConfigError(f"Invalid HTLC_ADDRESS: {config.htlc_address!r}") from e

        self.rpc_url = config.rpc_url or RPC_ENDPOINTS.get(config.network, "")
        self._web3 = web3
        self._contract = None

        log.info(f"EVM adapter: wallet={self.address}, contract={self.htlc_address}, chain_id={config.chain_id}")

    @property
    def web3(self) -> Web3:
        if self._web3 is None:
            self._web3 = Web3(Web3.HTTPProvider(
                self.rpc_url,
                request_kwargs={"timeout": self.config.request_timeout},
            ))
        return self._web3

    @property
    def contract(self):
        if self._contract is None:
            self._contract = self.web3.eth.contract(address=self.htlc_address, abi=HTLC_ABI)
        return self._contract

    @contextmanager
    def _ledger_errors(self, action: str, lock_id: Optional[str] = None):
        """Translate web3 failures into the error taxonomy."""
        try:
            yield
        except ContractLogicError as e:
            raise revert_error(str(e), lock_id) from e
        except (OSError, TimeExhausted) as e:
            raise TransportError(f"{action}: {e}", lock_id=lock_id) from e
        except Web3RPCError as e:
            raise TransactionFailed(f"{action}: {e}", lock_id=lock_id) from e

    # =========================================================================
    # Identity
    # =========================================================================

    @property
    def address(self) -> str:
        return self.account.address

    def is_valid_address(self, address: str) -> bool:
        if not address or not isinstance(address, str):
            return False
        if not Web3.is_address(address.strip()):
            return False
        return address.strip().lower() != ZERO_ADDRESS

    def normalize_address(self, address: str) -> str:
        """Checksum an address; rejects malformed and zero addresses."""
        if not self.is_valid_address(address):
            raise InvalidAddress(f"Invalid EVM address: {address!r}")
        return Web3.to_checksum_address(address.strip())

    # =========================================================================
    # Transactions
    # =========================================================================

    def _send(self, fn, gas: int, value: int = 0, action: str = "", lock_id: str = None) -> str:
        """Sign and broadcast a contract call. Returns the 0x tx hash."""
        with self._ledger_errors(action, lock_id):
            w3 = self.web3
            nonce = w3.eth.get_transaction_count(self.address, 'pending')
            gas_price = int(w3.eth.gas_price * self.config.gas_price_multiplier)

            tx = fn.build_transaction({
                'from': self.address,
                'value': value,
                'nonce': nonce,
                'gas': gas,
                'gasPrice': gas_price,
                'chainId': self.config.chain_id
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)

        tx_ref = Web3.to_hex(tx_hash)
        log.info(f"[evm] {action} TX: {tx_ref}")
        return tx_ref

    def _check_confirmation(self, handle: ConfirmationHandle,
                            policy: ConfirmationPolicy) -> Tuple[ConfirmationStatus, Optional[str]]:
        with self._ledger_errors("receipt", handle.lock_id):
            try:
                receipt = self.web3.eth.get_transaction_receipt(handle.tx_ref)
            except TransactionNotFound:
                return ConfirmationStatus.PENDING, None
            if receipt is None:
                return ConfirmationStatus.PENDING, None

            if receipt['status'] != 1:
                return ConfirmationStatus.FAILED, "transaction reverted"

            if policy.confirmations > 1:
                depth = self.web3.eth.block_number - receipt['blockNumber'] + 1
                if depth < policy.confirmations:
                    return ConfirmationStatus.PENDING, None
        return ConfirmationStatus.CONFIRMED, None

    # =========================================================================
    # Lock operations
    # =========================================================================

    def create_lock(self, recipient: str, refund_party: Optional[str], amount: int,
                    secret_hash: str, secret_length: Optional[int], duration: int) -> LockReceipt:
        """
        Lock amount wei for recipient.

        Args:
            recipient: Address that may claim
            refund_party: Ignored beyond a warning; the contract refunds the depositor
            amount: Wei
            secret_hash: 32-byte digest (hex)
            secret_length: Must be 32 or None
            duration: Seconds until refund is allowed

        Returns:
            LockReceipt with the create tx handle
        """
        recipient = self.normalize_address(recipient)
        if not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount(f"Amount must be a positive integer, got {amount}")
        if duration <= 0:
            raise ValidationError(f"Duration must be positive, got {duration}")
        if secret_length not in (None, SECRET_LENGTH):
            raise ValidationError(f"EVM locks take {SECRET_LENGTH}-byte secrets, got {secret_length}")

        hash_bytes = from_hex(secret_hash)
        if len(hash_bytes) != 32:
            raise ValidationError("Secret hash must be 32 bytes")
        lock_id = derive_lock_id(hash_bytes)

        if refund_party and refund_party.lower() != self.address.lower():
            log.warning(f"[evm] refund party {refund_party} ignored, contract refunds the depositor")

        if self.find_lock(lock_id) is not None:
            raise DuplicateLock("Lock id already exists", lock_id=lock_id)

        fn = self.contract.functions.createLock(from_hex(lock_id), recipient, hash_bytes, int(duration))

        # Simulate first so reverts surface as precondition errors
        with self._ledger_errors("simulate createLock", lock_id):
            fn.call({'from': self.address, 'value': amount})

        log.info(f"[evm] creating lock {lock_id[:18]}...: {amount} wei -> {recipient}")
        tx_ref = self._send(fn, self.config.create_gas, value=amount, action="create", lock_id=lock_id)
        return LockReceipt(
            lock_id=lock_id,
            handle=ConfirmationHandle(chain=self.chain, tx_ref=tx_ref, lock_id=lock_id, action="create"),
        )

    def claim(self, lock_id: str, secret: str) -> ConfirmationHandle:
        """Claim with the 32-byte secret; funds go to the lock's recipient."""
        secret_bytes = require_secret(secret, lock_id)
        lock = self.preflight_claim(lock_id, secret_bytes)

        fn = self.contract.functions.claim(from_hex(lock.lock_id), secret_bytes)
        tx_ref = self._send(fn, self.config.claim_gas, action="claim", lock_id=lock.lock_id)
        return ConfirmationHandle(chain=self.chain, tx_ref=tx_ref, lock_id=lock.lock_id, action="claim")

    def refund(self, lock_id: str) -> ConfirmationHandle:
        """Refund an expired lock to the depositor."""
        lock = self.preflight_refund(lock_id)

        fn = self.contract.functions.refund(from_hex(lock.lock_id))
        tx_ref = self._send(fn, self.config.refund_gas, action="refund", lock_id=lock.lock_id)
        return ConfirmationHandle(chain=self.chain, tx_ref=tx_ref, lock_id=lock.lock_id, action="refund")

    def get_lock(self, lock_id: str) -> Lock:
        try:
            lock_bytes = from_hex(lock_id)
        except ValidationError:
            raise LockNotFound("Malformed lock id", lock_id=lock_id)
        if len(lock_bytes) != 32:
            raise LockNotFound("Lock id must be 32 bytes", lock_id=lock_id)
        lock_id = to_hex(lock_bytes)

        with self._ledger_errors("getLock", lock_id):
            result = self.contract.functions.getLock(lock_bytes).call()

        depositor, recipient, amount, secret_hash, deadline, claimed, refunded = result
        if depositor.lower() == ZERO_ADDRESS:
            raise LockNotFound("No such lock", lock_id=lock_id)

        if claimed:
            status = LockStatus.CLAIMED
        elif refunded:
            status = LockStatus.REFUNDED
        else:
            status = LockStatus.LOCKED

        return Lock(
            lock_id=lock_id,
            depositor=depositor,
            recipient=recipient,
            refund_party=depositor,
            amount=int(amount),
            secret_hash=to_hex(bytes(secret_hash)),
            deadline=int(deadline),
            status=status,
            secret_length=SECRET_LENGTH,
            chain=self.chain,
        )

    # =========================================================================
    # Ledger state
    # =========================================================================

    def now(self) -> int:
        """Timestamp of the latest block."""
        with self._ledger_errors("get_block"):
            return int(self.web3.eth.get_block('latest')['timestamp'])

    def get_balance(self) -> int:
        with self._ledger_errors("get_balance"):
            return int(self.web3.eth.get_balance(self.address))

    def verify(self) -> bool:
        """Check there is code at the HTLC address and it answers getLock."""
        try:
            with self._ledger_errors("verify"):
                code = self.web3.eth.get_code(self.htlc_address)
                if not code:
                    log.error(f"No contract code at {self.htlc_address}")
                    return False
                self.contract.functions.getLock(b"\x00" * 32).call()
        except HTLCError as e:
            log.error(f"HTLC contract verification failed: {e}")
            return False
        log.info("HTLC contract verified and accessible")
        return True

    # =========================================================================
    # Events
    # =========================================================================

    def _to_event(self, name: str, entry) -> LockEvent:
        args = entry['args']
        lock_id = to_hex(bytes(args['lockId']))
        event = LockEvent(
            kind=EVENT_KINDS[name],
            lock_id=lock_id,
            chain=self.chain,
            tx_ref=Web3.to_hex(entry['transactionHash']),
            data={"block": entry['blockNumber'], "log_index": entry['logIndex']},
        )
        if name == "Locked":
            event.secret_hash = to_hex(bytes(args['secretHash']))
            event.data.update({
                "depositor": args['depositor'],
                "recipient": args['recipient'],
                "amount": int(args['amount']),
                "deadline": int(args['deadline']),
            })
        elif name == "Claimed":
            event.secret = to_hex(bytes(args['secret']))
        return event

    def poll_events(self, event_filter: EventFilter = None,
                    cursor: Any = None) -> Tuple[List[LockEvent], Any]:
        """
        Scan contract logs from block `cursor` to the chain head.

        Returns:
            (events ordered by block/log index, next block to scan)
        """
        event_filter = event_filter or EventFilter()

        with self._ledger_errors("get_logs", event_filter.lock_id):
            head = self.web3.eth.block_number
            start = cursor if cursor is not None else max(0, head - self.config.log_lookback_blocks)
            if start > head:
                return [], start

            argument_filters = {}
            if event_filter.lock_id:
                argument_filters["lockId"] = from_hex(event_filter.lock_id)

            events = []
            for name, kind in EVENT_KINDS.items():
                if event_filter.kinds is not None and kind not in event_filter.kinds:
                    continue
                entries = getattr(self.contract.events, name).get_logs(
                    from_block=start,
                    to_block=head,
                    argument_filters=argument_filters or None,
                )
                events.extend(self._to_event(name, entry) for entry in entries)

        events.sort(key=lambda e: (e.data["block"], e.data["log_index"]))
        return [e for e in events if event_filter.matches(e)], head + 1
