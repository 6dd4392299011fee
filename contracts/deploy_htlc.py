#!/usr/bin/env python3
"""
Deploy the native-ETH HTLC contract to Base Sepolia.

Usage:
    python contracts/deploy_htlc.py --private-key <KEY> [--rpc-url <URL>]

Or set environment variables:
    EVM_PRIVATE_KEY=0x...
    EVM_RPC_URL=https://sepolia.base.org

Prints the address to export as HTLC_ADDRESS.
"""

import argparse
import json
import os
import sys

from web3 import Web3
from solcx import compile_standard, install_solc, get_installed_solc_versions

from enderswap.chains.evm import RPC_ENDPOINTS

SOLC_VERSION = "0.8.19"
BASE_SEPOLIA_CHAIN_ID = 84532

# Contract source
CONTRACT_NAME = "HTLC"
CONTRACT_FILE = os.path.join(os.path.dirname(__file__), "HTLC.sol")


def compile_contract():
    """Compile the Solidity contract."""
    print("[1/4] Compiling contract...")

    if SOLC_VERSION not in {str(v) for v in get_installed_solc_versions()}:
        install_solc(SOLC_VERSION)

    with open(CONTRACT_FILE, "r") as f:
        source = f.read()

    compiled = compile_standard({
        "language": "Solidity",
        "sources": {
            "HTLC.sol": {"content": source}
        },
        "settings": {
            "outputSelection": {
                "*": {
                    "*": ["abi", "evm.bytecode"]
                }
            },
            "optimizer": {
                "enabled": True,
                "runs": 200
            }
        }
    }, solc_version=SOLC_VERSION)

    contract_data = compiled["contracts"]["HTLC.sol"][CONTRACT_NAME]
    return contract_data["abi"], contract_data["evm"]["bytecode"]["object"]


def deploy_contract(private_key: str, rpc_url: str, chain_id: int) -> str:
    """Deploy the contract and return its address."""
    abi, bytecode = compile_contract()

    print(f"[2/4] Connecting to {rpc_url}...")
    w3 = Web3(Web3.HTTPProvider(rpc_url))

    if not w3.is_connected():
        print("ERROR: Could not connect to RPC")
        sys.exit(1)

    account = w3.eth.account.from_key(private_key)
    print(f"[3/4] Deploying from: {account.address}")

    balance = w3.eth.get_balance(account.address)
    print(f"       Balance: {w3.from_wei(balance, 'ether')} ETH")

    if balance == 0:
        print("ERROR: No ETH for gas. Get some from a Base Sepolia faucet")
        sys.exit(1)

    Contract = w3.eth.contract(abi=abi, bytecode=bytecode)
    tx = Contract.constructor().build_transaction({
        'from': account.address,
        'nonce': w3.eth.get_transaction_count(account.address),
        'gas': 1500000,
        'gasPrice': w3.eth.gas_price,
        'chainId': chain_id,
    })

    print("[4/4] Deploying contract...")
    signed_tx = w3.eth.account.sign_transaction(tx, private_key)
    tx_hash = w3.eth.send_raw_transaction(signed_tx.raw_transaction)

    print(f"       TX Hash: {Web3.to_hex(tx_hash)}")
    print("       Waiting for confirmation...")

    receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=120)
    if receipt.status != 1:
        print("ERROR: Deployment failed!")
        sys.exit(1)

    contract_address = receipt.contractAddress
    print("")
    print("=" * 60)
    print("Contract deployed")
    print("=" * 60)
    print(f"  Address:  {contract_address}")
    print(f"  Block:    {receipt.blockNumber}")
    print(f"  Gas Used: {receipt.gasUsed}")
    print("")
    print(f"  export HTLC_ADDRESS={contract_address}")
    print("")

    deployment_info = {
        "network": "base-sepolia" if chain_id == BASE_SEPOLIA_CHAIN_ID else str(chain_id),
        "chainId": chain_id,
        "address": contract_address,
        "txHash": Web3.to_hex(tx_hash),
        "blockNumber": receipt.blockNumber,
        "deployer": account.address,
        "abi": abi,
    }

    output_file = os.path.join(os.path.dirname(__file__), "deployment.json")
    with open(output_file, "w") as f:
        json.dump(deployment_info, f, indent=2)
    print(f"Deployment info saved to: {output_file}")

    return contract_address


def main():
    parser = argparse.ArgumentParser(description="Deploy HTLC contract")
    parser.add_argument("--private-key", "-k", help="Deployer private key (or set EVM_PRIVATE_KEY)")
    parser.add_argument("--rpc-url", "-r",
                        default=os.environ.get("EVM_RPC_URL", RPC_ENDPOINTS["base_sepolia"]),
                        help="RPC URL")
    parser.add_argument("--chain-id", type=int,
                        default=int(os.environ.get("EVM_CHAIN_ID", BASE_SEPOLIA_CHAIN_ID)))
    args = parser.parse_args()

    private_key = args.private_key or os.environ.get("EVM_PRIVATE_KEY")
    if not private_key:
        print("ERROR: Private key required")
        print("  Use --private-key <KEY> or set EVM_PRIVATE_KEY environment variable")
        sys.exit(1)

    # Ensure 0x prefix
    if not private_key.startswith("0x"):
        private_key = "0x" + private_key

    deploy_contract(private_key, args.rpc_url, args.chain_id)


if __name__ == "__main__":
    main()
