"""
Environment configuration for enderswap.

Builds the per-component config dataclasses from environment variables.

Required:
    EVM_PRIVATE_KEY, SUI_PRIVATE_KEY, HTLC_ADDRESS, SUI_HTLC_PACKAGE_ID

Optional:
    EVM_RPC_URL, EVM_CHAIN_ID, SUI_RPC_URL
    MAKER_AMOUNT (ETH), TAKER_AMOUNT (MIST)
    MAKER_SUI_DESTINATION, MAKER_ETH_DESTINATION,
    TAKER_SUI_DESTINATION, TAKER_ETH_DESTINATION
    LONG_TIMELOCK_SECONDS, SHORT_TIMELOCK_SECONDS
    EVM_HASH_ALGORITHM, SUI_HASH_ALGORITHM
    CONFIRMATION_TIMEOUT, POLL_INTERVAL, MAX_RETRIES
    EXPIRY_DEMO_SECONDS, DEMO_PAUSE_SECONDS
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional, Mapping, Callable, Any

from web3 import Web3

from .core import (
    HASH_ALGORITHMS, ETH_DECIMALS, DEFAULT_LONG_TIMELOCK, DEFAULT_SHORT_TIMELOCK,
    to_base_units, validate_timelock_order,
)
from .errors import ConfigError, InvalidAmount, TimelockOrderError
from .chains.base import ConfirmationPolicy
from .chains.evm import EVMConfig, RPC_ENDPOINTS, EVM_HASH_ALGORITHMS
from .chains.sui import SuiConfig, SUI_TESTNET_RPC, is_sui_address
from .swap.orchestrator import OrchestratorConfig

log = logging.getLogger(__name__)


REQUIRED_VARS = ("EVM_PRIVATE_KEY", "SUI_PRIVATE_KEY", "HTLC_ADDRESS", "SUI_HTLC_PACKAGE_ID")

DEFAULT_MAKER_AMOUNT = "0.01"           # ETH
DEFAULT_TAKER_AMOUNT = "100000000"      # MIST (0.1 SUI)


@dataclass
class SwapSettings:
    """Everything a swap run needs, resolved from the environment."""
    evm: EVMConfig
    sui: SuiConfig
    orchestrator: OrchestratorConfig

    evm_amount: int                     # wei
    sui_amount: int                     # MIST

    # Receiving addresses; None means the signer's own address
    maker_sui_destination: Optional[str] = None
    maker_eth_destination: Optional[str] = None
    taker_sui_destination: Optional[str] = None
    taker_eth_destination: Optional[str] = None

    evm_hash_algorithm: str = "sha256"
    sui_hash_algorithm: str = "sha256"

    demo_pause: float = 10.0


def _number(env: Mapping[str, str], name: str, default: Any, cast: Callable) -> Any:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} is not a valid {cast.__name__}: {raw!r}")


def _optional(env: Mapping[str, str], name: str) -> Optional[str]:
    value = env.get(name, "").strip()
    return value or None


def _evm_address(env: Mapping[str, str], name: str) -> Optional[str]:
    value = _optional(env, name)
    if value is not None and not Web3.is_address(value):
        raise ConfigError(f"{name} is not an EVM address: {value!r}")
    return value


def _sui_address(env: Mapping[str, str], name: str) -> Optional[str]:
    value = _optional(env, name)
    if value is not None and not is_sui_address(value):
        raise ConfigError(f"{name} is not a Sui address: {value!r}")
    return value


def _algorithm(env: Mapping[str, str], name: str, allowed=HASH_ALGORITHMS) -> str:
    value = env.get(name, "sha256").strip().lower() or "sha256"
    if value not in allowed:
        raise ConfigError(f"{name} must be one of {sorted(allowed)}, got {value!r}")
    return value


def load_config(env: Mapping[str, str] = None) -> SwapSettings:
    """
    Build SwapSettings from environment variables.

    Raises:
        ConfigError: lists every missing required variable at once, or
            names the first malformed value
    """
    env = os.environ if env is None else env

    missing = [name for name in REQUIRED_VARS if not env.get(name, "").strip()]
    if missing:
        raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

    evm = EVMConfig(
        rpc_url=env.get("EVM_RPC_URL", "").strip() or RPC_ENDPOINTS["base_sepolia"],
        chain_id=_number(env, "EVM_CHAIN_ID", 84532, int),
        htlc_address=env["HTLC_ADDRESS"].strip(),
        private_key=env["EVM_PRIVATE_KEY"].strip(),
    )
    sui = SuiConfig(
        rpc_url=env.get("SUI_RPC_URL", "").strip() or SUI_TESTNET_RPC,
        private_key=env["SUI_PRIVATE_KEY"].strip(),
        package_id=env["SUI_HTLC_PACKAGE_ID"].strip(),
    )

    confirmation = ConfirmationPolicy(
        timeout=_number(env, "CONFIRMATION_TIMEOUT", 120.0, float),
        poll_interval=_number(env, "POLL_INTERVAL", 2.0, float),
    )
    orchestrator = OrchestratorConfig(
        long_timelock=_number(env, "LONG_TIMELOCK_SECONDS", DEFAULT_LONG_TIMELOCK, int),
        short_timelock=_number(env, "SHORT_TIMELOCK_SECONDS", DEFAULT_SHORT_TIMELOCK, int),
        confirmation=confirmation,
        max_retries=_number(env, "MAX_RETRIES", 3, int),
        secret_poll_interval=confirmation.poll_interval,
        secret_wait_timeout=confirmation.timeout,
        expiry_demo_duration=_number(env, "EXPIRY_DEMO_SECONDS", 30, int),
    )
    if orchestrator.max_retries < 0:
        raise ConfigError(f"MAX_RETRIES must not be negative, got {orchestrator.max_retries}")
    try:
        validate_timelock_order(orchestrator.long_timelock, orchestrator.short_timelock,
                                orchestrator.min_timelock_gap)
    except TimelockOrderError as e:
        raise ConfigError(str(e))

    if not Web3.is_address(evm.htlc_address):
        raise ConfigError(f"HTLC_ADDRESS is not an EVM address: {evm.htlc_address!r}")
    if not is_sui_address(sui.package_id):
        raise ConfigError(f"SUI_HTLC_PACKAGE_ID is not a Sui object id: {sui.package_id!r}")

    try:
        evm_amount = to_base_units(env.get("MAKER_AMOUNT", "").strip() or DEFAULT_MAKER_AMOUNT, ETH_DECIMALS)
        # Already in MIST: fractions are rejected
        sui_amount = to_base_units(env.get("TAKER_AMOUNT", "").strip() or DEFAULT_TAKER_AMOUNT, 0)
    except InvalidAmount as e:
        raise ConfigError(f"Invalid swap amount: {e}")
    if evm_amount <= 0 or sui_amount <= 0:
        raise ConfigError("Swap amounts must be positive")

    settings = SwapSettings(
        evm=evm,
        sui=sui,
        orchestrator=orchestrator,
        evm_amount=evm_amount,
        sui_amount=sui_amount,
        maker_sui_destination=_sui_address(env, "MAKER_SUI_DESTINATION"),
        maker_eth_destination=_evm_address(env, "MAKER_ETH_DESTINATION"),
        taker_sui_destination=_sui_address(env, "TAKER_SUI_DESTINATION"),
        taker_eth_destination=_evm_address(env, "TAKER_ETH_DESTINATION"),
        evm_hash_algorithm=_algorithm(env, "EVM_HASH_ALGORITHM", EVM_HASH_ALGORITHMS),
        sui_hash_algorithm=_algorithm(env, "SUI_HASH_ALGORITHM"),
        demo_pause=_number(env, "DEMO_PAUSE_SECONDS", 10.0, float),
    )
    log.debug(f"Config loaded: evm={evm.rpc_url} (chain {evm.chain_id}), sui={sui.rpc_url}")
    return settings
