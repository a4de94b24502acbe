"""
Solana Actions API for the sale.

``GET /buy_tokens_action`` describes the purchase action (with the current
phase and price) and ``POST /buy_tokens_action`` returns an unsigned SOL
transfer from the buyer to the sale wallet. Once the buyer signs and sends it,
the transaction signature is redeemed through the ``buy_tokens`` MCP tool.
"""
import base64
from typing import Any, Dict, Tuple

import httpx
from flask import Flask, jsonify, request
from solders.hash import Hash as Blockhash
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from mcp_fixed_ico import config
from mcp_fixed_ico import pricing
from mcp_fixed_ico import server
from mcp_fixed_ico import solana_utils
from mcp_fixed_ico.errors import SaleNotConfiguredError, TokenBalanceError, TransactionFailedError
from mcp_fixed_ico.schemas import Phase
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

app = Flask(__name__)

ACTION_TITLE = "Token Sale"
ACTION_DESCRIPTION = "Buy tokens at a fixed price using this Blink."
ACTION_LABEL = "Buy Tokens"


def get_cors_headers(origin: str) -> Dict[str, str]:
    """Get CORS headers with origin validation."""
    allowed_origins = config.CORS_ALLOWED_ORIGINS
    allowed_origin = "*"
    if "*" not in allowed_origins:
        if origin in allowed_origins:
            allowed_origin = origin
        else:
            allowed_origin = allowed_origins[0] if allowed_origins else "null"

    return {
        'Access-Control-Allow-Origin': allowed_origin,
        'Access-Control-Allow-Methods': 'GET, POST, OPTIONS',
        'Access-Control-Allow-Headers': 'Content-Type, Authorization',
        'Access-Control-Max-Age': '3600',
        'Access-Control-Allow-Credentials': 'false'
    }


@app.route('/buy_tokens_action', methods=['OPTIONS'])
def handle_options_buy_tokens() -> Tuple[str, int, Dict[str, str]]:
    """Handles CORS preflight requests."""
    return '', 204, get_cors_headers(request.headers.get('Origin', '*'))


@app.route('/buy_tokens_action', methods=['GET'])
def get_buy_tokens_action_metadata() -> Tuple[Any, int, Dict[str, str]]:
    """Provides metadata for the Solana Action."""
    cors_headers = get_cors_headers(request.headers.get('Origin', '*'))
    sale = server.sale

    try:
        phase = sale.status()
    except (TransactionFailedError, TokenBalanceError) as e:
        logger.error(f"Error reading sale status for action metadata: {e}")
        return jsonify({"message": "Service temporarily unavailable"}), 503, cors_headers

    metadata = {
        "icon": config.ACTION_ICON_URL,
        "title": ACTION_TITLE,
        "description": ACTION_DESCRIPTION,
        "label": ACTION_LABEL,
        "disabled": phase != Phase.active,
        "status": phase.value,
        "price": sale.get_token_price(),
        "buy_limit": sale.get_buy_limit(),
        "parameters": [
            {"name": "amount", "label": "SOL to pay (in lamports)", "required": True}
        ],
    }
    return jsonify(metadata), 200, cors_headers


@app.route('/buy_tokens_action', methods=['POST'])
def post_buy_tokens_action() -> Tuple[Any, int, Dict[str, str]]:
    """Builds the payment transaction for the buyer to sign."""
    cors_headers = get_cors_headers(request.headers.get('Origin', '*'))
    sale = server.sale

    if not request.is_json:
        return jsonify({"message": "Content-Type must be application/json"}), 415, cors_headers

    payload = request.get_json(silent=True)
    if not payload:
        return jsonify({"message": "Empty or invalid JSON payload"}), 400, cors_headers

    user_account_str = payload.get("account")
    if not isinstance(user_account_str, str) or not user_account_str.strip():
        return jsonify({"message": "Account not provided in request"}), 400, cors_headers
    try:
        user_account = Pubkey.from_string(user_account_str.strip())
    except ValueError:
        logger.warning(f"Invalid user account address: {user_account_str}")
        return jsonify({"message": f"Invalid user account address: {user_account_str}"}), 400, cors_headers

    try:
        amount = int(payload.get("amount"))
    except (ValueError, TypeError, OverflowError):
        return jsonify({"message": "Amount must be a valid integer"}), 400, cors_headers
    if amount <= 0:
        return jsonify({"message": "Amount must be positive"}), 400, cors_headers
    if amount > server.MAX_AMOUNT:
        return jsonify({"message": "Amount is too large"}), 400, cors_headers

    try:
        phase = sale.status()
        if phase != Phase.active:
            return jsonify({"message": f"Sale is not active (status: {phase.value})"}), 409, cors_headers
        buy_limit = sale.get_buy_limit()
        if buy_limit is not None and amount > buy_limit:
            return jsonify({"message": f"Amount exceeds the buy limit of {buy_limit} lamports"}), 400, cors_headers
        token_amount = pricing.calculate_token_amount(amount, sale.get_token_price(), sale.base_unit_scale)
        if token_amount > sale.get_token_available():
            return jsonify({"message": "Not enough tokens available"}), 409, cors_headers
    except SaleNotConfiguredError as e:
        return jsonify({"message": str(e)}), 409, cors_headers
    except (TransactionFailedError, TokenBalanceError) as e:
        logger.error(f"Error reading sale state: {e}")
        return jsonify({"message": "Service temporarily unavailable"}), 503, cors_headers

    try:
        blockhash_data = solana_utils.rpc_request(
            server.http_client, "getLatestBlockhash", [{"commitment": "finalized"}]
        )["result"]["value"]
        blockhash = Blockhash.from_string(blockhash_data["blockhash"])
    except httpx.TimeoutException:
        logger.error("Timeout fetching blockhash")
        return jsonify({"message": "Service temporarily unavailable"}), 503, cors_headers
    except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
        logger.error(f"Error fetching blockhash: {e}")
        return jsonify({"message": "Error fetching latest blockhash"}), 500, cors_headers

    transfer_ix = transfer(
        TransferParams(from_pubkey=user_account, to_pubkey=Pubkey.from_string(sale.address), lamports=amount)
    )
    message = Message.new_with_blockhash([transfer_ix], user_account, blockhash)
    txn = Transaction.new_unsigned(message)

    response_body = {
        "transaction": base64.b64encode(bytes(txn)).decode("ascii"),
        "message": f"Pay {amount / config.LAMPORTS_PER_SOL:.9f} SOL for {token_amount} token base units",
    }
    logger.info(f"Generated payment transaction for {user_account}, amount: {amount}")
    return jsonify(response_body), 200, cors_headers


if __name__ == '__main__':
    logger.info(f"Starting Flask Action API server on port {config.ACTIONS_PORT}...")
    app.run(port=config.ACTIONS_PORT)
