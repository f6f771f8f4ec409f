"""
Configuration Management for the Edition Bonding Curve Server

This module handles all configuration loading, validation, and management for the bonding
curve engine and its MCP server. It loads settings from environment variables with sensible
defaults and provides validation to ensure the server is configured correctly.

Configuration Sources (in order of precedence):
1. Environment variables (optionally from a .env file)
2. Default values defined in this module
3. Configuration validation and type conversion

Security Considerations:
- ENGINE_SEED derives every series signing credential; losing it loses mint authority
- OPERATIONS_WALLET_SEED funds transaction fees and payment refunds
- RPC endpoints should be trusted and monitored
- CORS origins should be restricted in production

Environment Variables:
    RPC_ENDPOINT: Solana RPC endpoint URL
    PROGRAM_ID: Program id used to derive curve and lookup table addresses
    ENGINE_SEED: Comma-separated seed bytes for series credential derivation
    OPERATIONS_WALLET_SEED: Comma-separated seed bytes for the fee/refund wallet
    MAX_LOOKUP_ENTRIES: Maximum number of prices in a lookup table
    CURVE_STATE_DIR: Directory (relative to this package) holding curve records
    SETTLEMENT_BACKEND: "rpc" for Solana settlement, "memory" for an in-process ledger
    RATE_LIMIT_PER_MINUTE: Mint requests allowed per client per minute
    CONFIRMATION_TIMEOUT: Seconds to wait for confirmation before checking blockhash expiry
    CONFIRMATION_MAX_WAIT: Seconds after which an unexpired, unconfirmed transaction is reported as unconfirmed
    CONSUMED_SIGNATURES_FILE: File (relative to this package) recording redeemed payment signatures
    MEMORY_LEDGER_BALANCES: Opening balances of the in-memory ledger, as account:lamports pairs
    CORS_ALLOWED_ORIGINS: Comma-separated allowed CORS origins
    ACTIONS_PORT: Port for Action API server
"""
import os
import logging
from typing import Dict, Optional
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from dotenv import load_dotenv

from mcp_bonding_curve.errors import ConfigurationError

# Set up logger
logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()

SETTLEMENT_BACKENDS = ("rpc", "memory")


def _get_env_str(key: str, default: str, required: bool = False) -> str:
    """Get environment variable as string with validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ConfigurationError(f"Required environment variable {key} is not set")
    return value


def _get_env_int(key: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    """Get environment variable as integer with validation."""
    try:
        value = int(os.getenv(key, str(default)))
    except ValueError:
        raise ConfigurationError(f"Environment variable {key} must be a valid integer")
    if min_val is not None and value < min_val:
        raise ConfigurationError(f"Environment variable {key} must be >= {min_val}")
    if max_val is not None and value > max_val:
        raise ConfigurationError(f"Environment variable {key} must be <= {max_val}")
    return value


def _get_env_float(key: str, default: float, min_val: Optional[float] = None, max_val: Optional[float] = None) -> float:
    """Get environment variable as float with validation."""
    try:
        value = float(os.getenv(key, str(default)))
    except ValueError:
        raise ConfigurationError(f"Environment variable {key} must be a valid float")
    if min_val is not None and value < min_val:
        raise ConfigurationError(f"Environment variable {key} must be >= {min_val}")
    if max_val is not None and value > max_val:
        raise ConfigurationError(f"Environment variable {key} must be <= {max_val}")
    return value


def _get_env_pubkey(key: str, default: str) -> Pubkey:
    """Get environment variable as Pubkey with validation."""
    try:
        value = os.getenv(key, default)
        return Pubkey.from_string(value)
    except Exception as e:
        raise ConfigurationError(f"Environment variable {key} must be a valid public key: {e}")


def _get_env_choice(key: str, default: str, choices: tuple) -> str:
    """Get environment variable restricted to a fixed set of values."""
    value = os.getenv(key, default).strip().lower()
    if value not in choices:
        raise ConfigurationError(f"Environment variable {key} must be one of {', '.join(choices)}")
    return value


def _get_env_balances(key: str) -> Dict[str, int]:
    """Get environment variable as comma-separated account:lamports pairs."""
    balances: Dict[str, int] = {}
    for pair in os.getenv(key, "").split(","):
        if not pair.strip():
            continue
        account, sep, amount = pair.strip().rpartition(":")
        try:
            if not sep or not account:
                raise ValueError(pair)
            lamports = int(amount)
        except ValueError:
            raise ConfigurationError(f"Environment variable {key} must contain account:lamports pairs, got '{pair.strip()}'")
        if lamports < 0:
            raise ConfigurationError(f"Environment variable {key} has a negative balance for {account}")
        balances[account] = balances.get(account, 0) + lamports
    return balances


def _load_seed(key: str, default_byte: int) -> bytes:
    """Load a 32-byte seed from a comma-separated environment variable."""
    seed_str = os.getenv(key, ",".join([str(default_byte)] * 32))

    try:
        seed_parts = [x.strip() for x in seed_str.split(",")]
        if len(seed_parts) != 32:
            raise ValueError(f"{key} must contain exactly 32 comma-separated integers, got {len(seed_parts)}")
        return bytes([int(x) for x in seed_parts])

    except (ValueError, TypeError) as e:
        logger.warning(f"Error loading {key}: {e}. Using a default insecure seed for development.")
        return bytes([default_byte] * 32)


# --- Solana Configuration ---
try:
    RPC_ENDPOINT = _get_env_str("RPC_ENDPOINT", "http://localhost:8899", required=True)
    LAMPORTS_PER_SOL = 10**9
    PROGRAM_ID = _get_env_pubkey("PROGRAM_ID", "6FJfw1jiB8enNmeRt5V2uFfTc6XS1gR8TpqXQ5rDJnCF")

    # --- Credentials ---
    ENGINE_SEED = _load_seed("ENGINE_SEED", 7)
    OPERATIONS_WALLET = Keypair.from_seed(_load_seed("OPERATIONS_WALLET_SEED", 1))
    logger.info(f"Operations wallet: {OPERATIONS_WALLET.pubkey()}")

    # --- Curve Limits ---
    MAX_LOOKUP_ENTRIES = _get_env_int("MAX_LOOKUP_ENTRIES", 1000, min_val=1, max_val=100_000)

    # --- Settlement ---
    SETTLEMENT_BACKEND = _get_env_choice("SETTLEMENT_BACKEND", "rpc", SETTLEMENT_BACKENDS)
    CONFIRMATION_TIMEOUT = _get_env_float("CONFIRMATION_TIMEOUT", 60.0, min_val=1.0, max_val=600.0)
    CONFIRMATION_INTERVAL = _get_env_float("CONFIRMATION_INTERVAL", 2.0, min_val=0.1, max_val=60.0)
    CONFIRMATION_MAX_WAIT = _get_env_float("CONFIRMATION_MAX_WAIT", 180.0, min_val=1.0, max_val=3600.0)
    CONSUMED_SIGNATURES_FILE = _get_env_str("CONSUMED_SIGNATURES_FILE", "consumed_signatures.json")
    MEMORY_LEDGER_BALANCES = _get_env_balances("MEMORY_LEDGER_BALANCES")

    # --- Rate Limiting ---
    RATE_LIMIT_PER_MINUTE = _get_env_int("RATE_LIMIT_PER_MINUTE", 10, min_val=1, max_val=1000)

    # --- Directories ---
    CURVE_STATE_DIR = _get_env_str("CURVE_STATE_DIR", "curve_states")

    # --- Action API Configuration ---
    ACTIONS_PORT = _get_env_int("ACTIONS_PORT", 5000, min_val=1024, max_val=65535)
    ACTION_ICON_URL = _get_env_str("ACTION_ICON_URL", "https://via.placeholder.com/150/0000FF/FFFFFF?text=EDITION")
    CORS_ALLOWED_ORIGINS = [o.strip() for o in _get_env_str("CORS_ALLOWED_ORIGINS", "*").split(",") if o.strip()]

    logger.info("Configuration loaded successfully")

except ConfigurationError as e:
    logger.error(f"Configuration error: {e}")
    raise
except Exception as e:
    logger.error(f"Unexpected error loading configuration: {e}")
    raise ConfigurationError(f"Failed to load configuration: {e}")
