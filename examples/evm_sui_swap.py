#!/usr/bin/env python3
"""
Example: ETH (Base Sepolia) <-> SUI atomic swaps

Runs the demonstration flows against the deployed contracts:

    evm-to-sui   initiator locks ETH, responder locks SUI
    sui-to-evm   initiator locks SUI, responder locks ETH
    expiry       short timelock on one ledger, wait, refund
    all          the three above in sequence

The same wallet plays both roles unless the *_SUI_DESTINATION variables point
the proceeds elsewhere. The HTLC contract only lets the recipient claim, so
an *_ETH_DESTINATION must be the EVM signer itself.
With --simulate every ledger runs in-process.

Usage:
    python examples/evm_sui_swap.py evm-to-sui
    python examples/evm_sui_swap.py all --simulate
"""

import sys
import time
import argparse
import logging
from pathlib import Path

# Add package to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from enderswap.core import SwapState, ETH_DECIMALS, SUI_DECIMALS, from_base_units, format_duration, to_base_units
from enderswap.errors import HTLCError, SwapAborted
from enderswap.htlc import LockStateMachine, STRICT, PERMISSIVE
from enderswap.chains import MemoryLedgerAdapter, EVMLedgerAdapter, SuiLedgerAdapter
from enderswap.swap import SwapOrchestrator, OrchestratorConfig, Participant, SwapMonitor
from enderswap.config import load_config

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)

# Simulated wallet
SIM_EVM_ADDRESS = "0x" + "ab" * 20
SIM_SUI_ADDRESS = "0x" + "cd" * 32


def build_live():
    settings = load_config()
    evm = EVMLedgerAdapter(settings.evm, hash_algorithm=settings.evm_hash_algorithm)
    sui = SuiLedgerAdapter(settings.sui, hash_algorithm=settings.sui_hash_algorithm)
    return settings, evm, sui


def build_simulated():
    evm_machine = LockStateMachine(chain="evm", policy=STRICT)
    sui_machine = LockStateMachine(chain="sui", policy=PERMISSIVE)
    evm_machine.fund(SIM_EVM_ADDRESS, to_base_units("1", ETH_DECIMALS))
    sui_machine.fund(SIM_SUI_ADDRESS, to_base_units("10", SUI_DECIMALS))

    orchestrator = OrchestratorConfig(expiry_demo_duration=3, expiry_poll_interval=1.0)
    orchestrator.confirmation.poll_interval = 0.2
    orchestrator.secret_poll_interval = 0.2

    settings = argparse.Namespace(
        orchestrator=orchestrator,
        evm_amount=to_base_units("0.01", ETH_DECIMALS),
        sui_amount=100_000_000,
        maker_sui_destination=None,
        maker_eth_destination=None,
        taker_sui_destination=None,
        taker_eth_destination=None,
        demo_pause=0,
    )
    return settings, MemoryLedgerAdapter(evm_machine, SIM_EVM_ADDRESS), MemoryLedgerAdapter(sui_machine, SIM_SUI_ADDRESS)


def show_balances(evm, sui, label):
    log.info(f"Balances {label}:")
    log.info(f"  {evm.chain}: {from_base_units(evm.get_balance(), ETH_DECIMALS)} ETH ({evm.address})")
    log.info(f"  {sui.chain}: {from_base_units(sui.get_balance(), SUI_DECIMALS)} SUI ({sui.address})")


def setup_and_verify(evm, sui) -> bool:
    """Check both deployments are reachable before moving funds."""
    log.info("Verifying deployments...")
    ok = True
    for adapter in (evm, sui):
        if adapter.verify():
            log.info(f"  ✓ {adapter.chain} HTLC reachable")
        else:
            log.error(f"  ✗ {adapter.chain} HTLC not reachable")
            ok = False
    return ok


def run_swap(orchestrator, initiator, responder, amount_a, amount_b, title):
    log.info("")
    log.info("=" * 60)
    log.info(title)
    log.info("=" * 60)

    monitor = SwapMonitor(orchestrator)
    swap = orchestrator.prepare(initiator, responder, amount_a, amount_b)
    try:
        orchestrator.execute(swap)
    except SwapAborted as e:
        log.error(f"Swap stopped in {swap.state.value}: {e}")
    finally:
        for entry in monitor.timeline(swap.swap_id):
            detail = entry.get("to") or entry.get("side") or entry.get("reason") or ""
            log.info(f"  {entry['event']:<18} {detail}")
        monitor.close()

    log.info(f"Result: {swap.state.value}")
    for name, tx in swap.txs.items():
        log.info(f"  {name}: {tx}")
    return swap


def run_evm_to_sui(orchestrator, settings, evm, sui):
    initiator = Participant(source=evm, destination=sui,
                            destination_address=settings.maker_sui_destination, name="maker")
    responder = Participant(source=sui, destination=evm,
                            destination_address=settings.taker_eth_destination, name="taker")
    return run_swap(orchestrator, initiator, responder, settings.evm_amount, settings.sui_amount,
                    "ETH -> SUI")


def run_sui_to_evm(orchestrator, settings, evm, sui):
    initiator = Participant(source=sui, destination=evm,
                            destination_address=settings.maker_eth_destination, name="maker")
    responder = Participant(source=evm, destination=sui,
                            destination_address=settings.taker_sui_destination, name="taker")
    return run_swap(orchestrator, initiator, responder, settings.sui_amount, settings.evm_amount,
                    "SUI -> ETH")


def run_expiry(orchestrator, settings, evm, sui):
    log.info("")
    log.info("=" * 60)
    log.info(f"Timelock expiry ({format_duration(orchestrator.config.expiry_demo_duration)})")
    log.info("=" * 60)

    try:
        swap = orchestrator.demonstrate_expiry(evm, settings.evm_amount)
    except SwapAborted as e:
        log.error(f"Expiry demo stopped: {e}")
        return None
    log.info(f"Result: {swap.state.value}")
    return swap


DEMOS = {
    "evm-to-sui": [run_evm_to_sui],
    "sui-to-evm": [run_sui_to_evm],
    "expiry": [run_expiry],
    "all": [run_evm_to_sui, run_sui_to_evm, run_expiry],
}


def main():
    parser = argparse.ArgumentParser(description="ETH <-> SUI atomic swap demonstrations")
    parser.add_argument("demo", choices=sorted(DEMOS), help="Which demonstration to run")
    parser.add_argument("--simulate", action="store_true", help="Use in-process ledgers")
    args = parser.parse_args()

    try:
        settings, evm, sui = build_simulated() if args.simulate else build_live()
    except HTLCError as e:
        log.error(f"Configuration error: {e}")
        sys.exit(1)

    if not setup_and_verify(evm, sui):
        sys.exit(1)
    show_balances(evm, sui, "before")

    orchestrator = SwapOrchestrator(settings.orchestrator)
    failed = False
    try:
        for i, demo in enumerate(DEMOS[args.demo]):
            if i and settings.demo_pause:
                log.info(f"Pausing {settings.demo_pause}s between demonstrations...")
                time.sleep(settings.demo_pause)
            swap = demo(orchestrator, settings, evm, sui)
            if swap is None or swap.state not in (SwapState.COMPLETED, SwapState.REFUNDED):
                failed = True
    except KeyboardInterrupt:
        orchestrator.cancel()
        log.warning("Interrupted; pending locks refund after their deadlines")
        failed = True

    show_balances(evm, sui, "after")
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
