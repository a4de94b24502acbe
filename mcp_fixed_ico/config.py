"""
Configuration Management for the Fixed-Price ICO Server

This module handles configuration loading and validation for the sale server.
It loads settings from environment variables with sensible defaults and
validates them so the server refuses to start with a broken configuration.

Configuration Sources (in order of precedence):
1. Environment variables (a local .env file is loaded first)
2. Default values defined in this module

Security Considerations:
- The sale wallet seed should be securely managed in production
- SALE_OWNER should be set explicitly; it defaults to the sale wallet itself
- RPC endpoints should be trusted and monitored
- CORS origins should be restricted in production

Environment Variables:
    RPC_ENDPOINT: Solana RPC endpoint URL
    SALE_WALLET_SEED: Comma-separated seed bytes for the sale wallet
    SALE_OWNER: Public key of the owner allowed to configure and withdraw
    SALE_TOKEN_DECIMALS: Decimals of the sale token mint (0-18)
    SALE_STATE_FILE: JSON file the sale configuration is persisted to
    REPLAY_STATE_FILE: JSON file of used admin nonces and redeemed payments
    LOCK_ON_ACTIVATION: Reject configuration changes once the sale started
    REFUND_REMAINDER: Refund the part of a payment below one unit price
    WITHDRAW_EXACT_AMOUNT: Withdraw only the requested inventory amount
    SALE_MESSAGE_PREFIX: Prefix of the messages owners sign for admin tools
    CONFIRMATION_TIMEOUT: Seconds to wait for a transfer to confirm
    RATE_LIMIT_PER_MINUTE: Purchase rate limit per IP address
    CORS_ALLOWED_ORIGINS: Comma-separated allowed CORS origins
    ACTIONS_PORT: Port for the Action API server
"""
import logging
import os
from typing import Optional

from dotenv import load_dotenv
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from mcp_fixed_ico.errors import ConfigurationError

logger = logging.getLogger(__name__)

load_dotenv()

# Native currency identity and its smallest-unit scale
BASE_CURRENCY_ID = "SOL"
LAMPORTS_PER_SOL = 10**9


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


def _get_env_bool(key: str, default: bool) -> bool:
    """Get environment variable as boolean (1/0, true/false, yes/no)."""
    value = os.getenv(key)
    if value is None or value == "":
        return default
    normalized = value.strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"Environment variable {key} must be a boolean")


def _get_env_pubkey(key: str, default: Optional[Pubkey]) -> Optional[Pubkey]:
    """Get environment variable as Pubkey with validation."""
    value = os.getenv(key)
    if not value:
        return default
    try:
        return Pubkey.from_string(value.strip())
    except Exception as e:
        raise ConfigurationError(f"Environment variable {key} must be a valid public key: {e}")


def _load_sale_wallet() -> Keypair:
    """Load the sale wallet from environment with validation."""
    seed_str = os.getenv("SALE_WALLET_SEED", ",".join(["1"] * 32))

    try:
        seed_parts = [x.strip() for x in seed_str.split(",")]
        if len(seed_parts) != 32:
            raise ValueError(f"SALE_WALLET_SEED must contain exactly 32 comma-separated integers, got {len(seed_parts)}")

        wallet = Keypair.from_seed(bytes([int(x) for x in seed_parts]))
        logger.info(f"Successfully loaded sale wallet: {wallet.pubkey()}")
        return wallet

    except (ValueError, TypeError) as e:
        logger.warning(f"Error loading SALE_WALLET_SEED: {e}. Using a default insecure seed for development.")
        return Keypair.from_seed(bytes([1] * 32))


try:
    # --- Solana Configuration ---
    RPC_ENDPOINT = _get_env_str("RPC_ENDPOINT", "http://localhost:8899", required=True)
    CONFIRMATION_TIMEOUT = _get_env_int("CONFIRMATION_TIMEOUT", 60, min_val=1, max_val=600)

    # --- Sale Wallet and Owner ---
    SALE_WALLET = _load_sale_wallet()
    SALE_OWNER = _get_env_pubkey("SALE_OWNER", SALE_WALLET.pubkey())
    SALE_TOKEN_DECIMALS = _get_env_int("SALE_TOKEN_DECIMALS", 9, min_val=0, max_val=18)

    # --- Sale Behavior ---
    LOCK_ON_ACTIVATION = _get_env_bool("LOCK_ON_ACTIVATION", False)
    REFUND_REMAINDER = _get_env_bool("REFUND_REMAINDER", False)
    WITHDRAW_EXACT_AMOUNT = _get_env_bool("WITHDRAW_EXACT_AMOUNT", False)
    SALE_STATE_FILE = _get_env_str("SALE_STATE_FILE", "sale_state.json")
    REPLAY_STATE_FILE = _get_env_str("REPLAY_STATE_FILE", "sale_replay.json")
    SALE_MESSAGE_PREFIX = _get_env_str("SALE_MESSAGE_PREFIX", "mcp-fixed-ico", required=True)

    # --- Rate Limiting ---
    RATE_LIMIT_PER_MINUTE = _get_env_int("RATE_LIMIT_PER_MINUTE", 10, min_val=1, max_val=1000)

    # --- Action API Configuration ---
    ACTIONS_PORT = _get_env_int("ACTIONS_PORT", 5000, min_val=1024, max_val=65535)
    ACTION_ICON_URL = _get_env_str("ACTION_ICON_URL", "https://via.placeholder.com/150/0000FF/FFFFFF?text=ICO")
    CORS_ALLOWED_ORIGINS = _get_env_str("CORS_ALLOWED_ORIGINS", "*").split(",")

    logger.info("Configuration loaded successfully")

except ConfigurationError as e:
    logger.error(f"Configuration error: {e}")
    raise
except Exception as e:
    logger.error(f"Unexpected error loading configuration: {e}")
    raise ConfigurationError(f"Failed to load configuration: {e}")
