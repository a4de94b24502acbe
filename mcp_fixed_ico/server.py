"""
Fixed-Price ICO Server - MCP Server Implementation

This module exposes a fixed-price token sale as MCP tools. Buyers pay SOL to
the sale wallet and redeem the payment for sale tokens; the owner configures
the sale and withdraws proceeds and unsold inventory.

Tools:
- Owner tools (signed): set_sale_token, set_times, set_unit_price,
  set_buy_limit, withdraw_proceeds, withdraw_inventory
- Purchase tool: buy_tokens
- Read-only tools: get_status, get_token_available, get_token_id,
  get_token_price, get_buy_limit, get_activation_timestamp,
  get_duration_timestamp, get_sale_info

Security Features:
- Owner tools require an ed25519 signature by the caller over the message
  ``"{SALE_MESSAGE_PREFIX}:{operation}:{canonical JSON arguments}"``; the
  arguments include a nonce above the last one accepted
- Payment signatures are accepted once, across restarts, and only for
  payments made after the current activation time
- Rate limiting of purchases by IP address
- Error messages expose the rejection kind, never internal details

License: MIT-0
"""

import asyncio
import json
import time
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import BaseModel, Field
from solders.pubkey import Pubkey
from solders.signature import Signature

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_fixed_ico import config
from mcp_fixed_ico import solana_utils
from mcp_fixed_ico.ico_manager import SaleInstance
from mcp_fixed_ico.rate_limiter import RateLimiter
from mcp_fixed_ico.replay_guard import ReplayGuard
from mcp_fixed_ico.schemas import SaleOptions
from mcp_fixed_ico.errors import (
    InsufficientFundsError,
    InvalidTransactionError,
    RateLimitExceededError,
    SaleError,
    TokenBalanceError,
    TransactionFailedError,
    UnauthorizedError,
)

logger = get_logger(__name__)

# Constants
MAX_TRANSACTION_SIG_LENGTH = 200
MAX_IDENTITY_LENGTH = 64
MAX_AMOUNT = 2**64 - 1

# --- Server Setup ---
mcp = FastMCP(name="Fixed-Price ICO Server")

http_client = httpx.Client(
    timeout=httpx.Timeout(10.0, connect=5.0),
    limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
)
ledger = solana_utils.SolanaRpcLedger(http_client)
sale = SaleInstance(
    ledger,
    owner=str(config.SALE_OWNER),
    address=str(config.SALE_WALLET.pubkey()),
    options=SaleOptions(
        lock_on_activation=config.LOCK_ON_ACTIVATION,
        refund_remainder=config.REFUND_REMAINDER,
        withdraw_exact_amount=config.WITHDRAW_EXACT_AMOUNT,
    ),
    state_path=config.SALE_STATE_FILE,
)
limiter = RateLimiter()
replay_guard = ReplayGuard(config.REPLAY_STATE_FILE)


# --- Helper Functions ---

def lamports_to_sol(lamports: int) -> float:
    """Convert lamports to SOL."""
    return lamports / config.LAMPORTS_PER_SOL


def format_token_amount(amount: int, decimals: int = config.SALE_TOKEN_DECIMALS) -> str:
    """Format a base-unit token amount with proper decimal places."""
    return f"{amount / (10 ** decimals):.{decimals}f}"


def validate_amount(name: str, amount: Any) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
        raise ValueError(f"{name} must be a non-negative integer")
    if amount > MAX_AMOUNT:
        raise ValueError(f"{name} is too large")


def admin_message(operation: str, args: Dict[str, Any]) -> bytes:
    """Canonical message an owner signs to authorize ``operation``."""
    payload = json.dumps(args, sort_keys=True, separators=(",", ":"))
    return f"{config.SALE_MESSAGE_PREFIX}:{operation}:{payload}".encode("utf-8")


def verify_caller_signature(caller: str, signature: str, operation: str, args: Dict[str, Any]) -> str:
    """
    Checks that ``signature`` was produced by ``caller`` for this operation.

    Returns:
        The caller's canonical base58 identity.

    Raises:
        UnauthorizedError: If the caller or signature is malformed or does not match.
    """
    if not caller or len(caller) > MAX_IDENTITY_LENGTH:
        raise UnauthorizedError("Caller must be a valid public key")
    if not signature or len(signature) > MAX_TRANSACTION_SIG_LENGTH:
        raise UnauthorizedError("Signature must be a valid signature")
    try:
        pubkey = Pubkey.from_string(caller)
        sig = Signature.from_string(signature)
    except ValueError:
        raise UnauthorizedError("Malformed caller or signature")
    if not sig.verify(pubkey, admin_message(operation, args)):
        raise UnauthorizedError(f"Signature does not authorize {operation} for {caller}")
    return str(pubkey)


def invoke(caller: str, action: Callable[[], Any], payment: int = 0) -> Any:
    """Runs ``action`` as one all-or-nothing sale invocation."""
    with sale.invocation(caller, payment=payment):
        return action()


def render_result(result: Any) -> str:
    if isinstance(result, BaseModel):
        return result.model_dump_json(indent=2)
    return json.dumps(result)


def log_operation_error(operation: str, error: Exception, caller: str, duration: float) -> None:
    """Log operation error with structured information."""
    logger.error(f"{operation} failed: {error}, caller: {caller}, duration: {duration:.3f}s")


async def run_owner_operation(
    operation: str,
    caller: str,
    signature: str,
    nonce: int,
    args: Dict[str, Any],
    action: Callable[[], Any],
) -> str:
    """
    Verifies the owner's signature, runs ``action`` and renders the outcome.

    The signed arguments are ``args`` plus ``nonce``. The nonce is consumed
    once the signature checks out, even if ``action`` is then rejected.
    """
    start_time = time.time()
    try:
        validate_amount("Nonce", nonce)
        identity = verify_caller_signature(caller, signature, operation, {**args, "nonce": nonce})
        replay_guard.use_admin_nonce(nonce)
        result = await asyncio.to_thread(invoke, identity, action)
        logger.info(f"{operation} completed by {identity} in {time.time() - start_time:.3f}s")
        if result is None:
            return f"{operation} succeeded."
        return render_result(result)
    except SaleError as e:
        log_operation_error(operation, e, caller, time.time() - start_time)
        return f"{e.code}: {e}"
    except (TransactionFailedError, TokenBalanceError) as e:
        log_operation_error(operation, e, caller, time.time() - start_time)
        return str(e)
    except ValueError as e:
        log_operation_error(operation, e, caller, time.time() - start_time)
        return f"Error: {e}"
    except Exception as e:
        logger.exception(f"Unexpected error during {operation}: {e}")
        return "An unexpected server error occurred"


async def run_view(name: str, view: Callable[[], Any]) -> str:
    try:
        return render_result(await asyncio.to_thread(view))
    except (TransactionFailedError, TokenBalanceError) as e:
        logger.error(f"{name} failed: {e}")
        return str(e)
    except Exception as e:
        logger.exception(f"Unexpected error in {name}: {e}")
        return "An unexpected server error occurred"


# --- Owner Tools ---

@mcp.tool()
async def set_sale_token(
    context: Context,
    token_id: str = Field(..., description="SPL mint address of the sale token, or SOL."),
    caller: str = Field(..., description="The owner's public key."),
    signature: str = Field(..., description="Owner signature over the admin message."),
    nonce: int = Field(..., description="Increasing request number included in the signed message."),
) -> str:
    """Sets the token being sold."""
    return await run_owner_operation(
        "set_sale_token", caller, signature, nonce, {"token_id": token_id},
        lambda: sale.set_sale_token(token_id),
    )


@mcp.tool()
async def set_times(
    context: Context,
    activation_time: int = Field(..., description="Unix timestamp the sale opens at (must be in the future)."),
    duration: int = Field(..., description="Sale duration in seconds."),
    caller: str = Field(..., description="The owner's public key."),
    signature: str = Field(..., description="Owner signature over the admin message."),
    nonce: int = Field(..., description="Increasing request number included in the signed message."),
) -> str:
    """Sets the sale window."""
    try:
        validate_amount("Activation time", activation_time)
        validate_amount("Duration", duration)
    except ValueError as e:
        return f"Error: {e}"
    return await run_owner_operation(
        "set_times", caller, signature, nonce, {"activation_time": activation_time, "duration": duration},
        lambda: sale.set_times(activation_time, duration),
    )


@mcp.tool()
async def set_unit_price(
    context: Context,
    price: int = Field(..., description="Lamports per whole sale token."),
    caller: str = Field(..., description="The owner's public key."),
    signature: str = Field(..., description="Owner signature over the admin message."),
    nonce: int = Field(..., description="Increasing request number included in the signed message."),
) -> str:
    """Sets the fixed token price."""
    try:
        validate_amount("Price", price)
    except ValueError as e:
        return f"Error: {e}"
    return await run_owner_operation(
        "set_unit_price", caller, signature, nonce, {"price": price},
        lambda: sale.set_unit_price(price),
    )


@mcp.tool()
async def set_buy_limit(
    context: Context,
    limit: Optional[int] = Field(None, description="Max lamports accepted per purchase; omit to remove the limit."),
    caller: str = Field(..., description="The owner's public key."),
    signature: str = Field(..., description="Owner signature over the admin message."),
    nonce: int = Field(..., description="Increasing request number included in the signed message."),
) -> str:
    """Sets or clears the per-purchase buy limit."""
    if limit is not None:
        try:
            validate_amount("Limit", limit)
        except ValueError as e:
            return f"Error: {e}"
    return await run_owner_operation(
        "set_buy_limit", caller, signature, nonce, {"limit": limit},
        lambda: sale.set_buy_limit(limit),
    )


@mcp.tool()
async def withdraw_proceeds(
    context: Context,
    caller: str = Field(..., description="The owner's public key."),
    signature: str = Field(..., description="Owner signature over the admin message."),
    nonce: int = Field(..., description="Increasing request number included in the signed message."),
) -> str:
    """Sends all collected SOL to the owner."""
    return await run_owner_operation(
        "withdraw_proceeds", caller, signature, nonce, {},
        lambda: sale.withdraw_proceeds(),
    )


@mcp.tool()
async def withdraw_inventory(
    context: Context,
    amount: int = Field(..., description="Sale-token amount (base units) to withdraw."),
    caller: str = Field(..., description="The owner's public key."),
    signature: str = Field(..., description="Owner signature over the admin message."),
    nonce: int = Field(..., description="Increasing request number included in the signed message."),
) -> str:
    """Sends unsold sale tokens to the owner."""
    try:
        validate_amount("Amount", amount)
    except ValueError as e:
        return f"Error: {e}"
    return await run_owner_operation(
        "withdraw_inventory", caller, signature, nonce, {"amount": amount},
        lambda: sale.withdraw_inventory(amount),
    )


# --- Purchase Tool ---

@mcp.tool()
async def buy_tokens(
    context: Context,
    payment_transaction: str = Field(
        ...,
        description="The signature of a confirmed SOL transfer to the sale wallet.",
    ),
    client_ip: str = Field(..., description="The client's IP address."),
) -> str:
    """
    Redeems a SOL payment for sale tokens.

    The workflow is:
    - Input validation and rate limiting
    - Payment transaction validation (a system transfer to the sale wallet)
    - Purchase at the fixed price inside one sale invocation; if the purchase
      is rejected, the payment is refunded to the payer

    A payment is recorded as redeemed before the purchase runs, and payments
    made before the current activation time are not accepted.

    Returns:
        str: Success message with transaction details, or error message
    """
    start_time = time.time()
    payer = "unknown"
    try:
        if not payment_transaction or not isinstance(payment_transaction, str):
            raise ValueError("Payment transaction must be a non-empty string")
        if len(payment_transaction) > MAX_TRANSACTION_SIG_LENGTH:
            raise ValueError("Payment transaction signature is too long")
        if not client_ip or not isinstance(client_ip, str):
            raise ValueError("Client IP must be a non-empty string")

        if not limiter.check(client_ip):
            raise RateLimitExceededError(f"Rate limit exceeded for IP: {client_ip}")

        try:
            tx_signature = Signature.from_string(payment_transaction)
        except ValueError as e:
            raise InvalidTransactionError(f"Invalid transaction signature format: {e}")

        payment_key = str(tx_signature)
        if replay_guard.is_redeemed(payment_key):
            raise InvalidTransactionError(f"Payment {payment_transaction} has already been redeemed")

        payer_pubkey, paid_amount = await asyncio.to_thread(
            solana_utils.validate_payment_transaction,
            http_client,
            tx_signature,
            Pubkey.from_string(sale.address),
            not_before=sale.get_activation_timestamp(),
        )
        payer = str(payer_pubkey)
        replay_guard.redeem_payment(payment_key)

        receipt = await asyncio.to_thread(invoke, payer, lambda: sale.buy(paid_amount), paid_amount)

        duration = time.time() - start_time
        spent = receipt.paid_amount - receipt.refunded_amount
        logger.info(f"Token purchase completed: amount={format_token_amount(receipt.token_amount)}, "
                    f"cost={lamports_to_sol(spent):.9f} SOL, "
                    f"payment_tx={payment_transaction[:8]}..., "
                    f"transfer_tx={receipt.transfer_tx[:8]}..., "
                    f"duration={duration:.3f}s, client_ip={client_ip}")

        message = (f"Successfully purchased {format_token_amount(receipt.token_amount)} tokens "
                   f"for {lamports_to_sol(spent):.9f} SOL. "
                   f"Payment received (txid: {payment_transaction}). "
                   f"Token transfer txid: {receipt.transfer_tx}")
        if receipt.refunded_amount:
            message += f" Refunded {lamports_to_sol(receipt.refunded_amount):.9f} SOL."
        return message

    except RateLimitExceededError as e:
        return str(e)
    except SaleError as e:
        log_operation_error("Token purchase", e, payer, time.time() - start_time)
        return f"{e.code}: {e}"
    except (InvalidTransactionError, InsufficientFundsError, TransactionFailedError, TokenBalanceError) as e:
        log_operation_error("Token purchase", e, payer, time.time() - start_time)
        return str(e)
    except ValueError as e:
        log_operation_error("Token purchase", e, payer, time.time() - start_time)
        return "Error processing request: Invalid input parameters"
    except Exception as e:
        logger.exception(f"Unexpected error during token purchase: {e}")
        return "An unexpected server error occurred"


# --- Read-only Tools ---

@mcp.tool()
async def get_status(context: Context) -> str:
    """Returns the sale phase: not_started, active or ended."""
    return await run_view("get_status", lambda: sale.status().value)


@mcp.tool()
async def get_token_available(context: Context) -> str:
    """Returns the sale-token inventory held by the sale wallet."""
    return await run_view("get_token_available", lambda: sale.get_token_available())


@mcp.tool()
async def get_token_id(context: Context) -> str:
    """Returns the sale token identity."""
    return await run_view("get_token_id", lambda: sale.get_token_id())


@mcp.tool()
async def get_token_price(context: Context) -> str:
    """Returns the price in lamports per whole sale token."""
    return await run_view("get_token_price", lambda: sale.get_token_price())


@mcp.tool()
async def get_buy_limit(context: Context) -> str:
    """Returns the per-purchase buy limit in lamports (null when unlimited)."""
    return await run_view("get_buy_limit", lambda: sale.get_buy_limit())


@mcp.tool()
async def get_activation_timestamp(context: Context) -> str:
    """Returns the sale activation timestamp."""
    return await run_view("get_activation_timestamp", lambda: sale.get_activation_timestamp())


@mcp.tool()
async def get_duration_timestamp(context: Context) -> str:
    """Returns the sale duration in seconds."""
    return await run_view("get_duration_timestamp", lambda: sale.get_duration_timestamp())


@mcp.tool()
async def get_sale_info(context: Context) -> str:
    """Returns every public view of the sale as one JSON document."""
    return await run_view("get_sale_info", lambda: sale.info())


# --- Main Execution ---
if __name__ == "__main__":
    logger.info(f"Starting Fixed-Price ICO MCP Server for sale wallet {sale.address}...")
    try:
        mcp.run(transport="stdio")
    except KeyboardInterrupt:
        logger.info("Server shutdown requested by user")
    finally:
        http_client.close()
        logger.info("Server stopped")
