"""
Solana Ledger Integration

This module backs the sale's ``Ledger`` interface with a Solana JSON-RPC
endpoint and validates the SOL payments buyers send to the sale wallet.

Key Components:
- SolanaRpcLedger: ledger time from the latest confirmed block, SOL and SPL
  balances, transfers signed by the sale wallet and confirmed on-chain.
- validate_payment_transaction: checks a confirmed system transfer to the
  sale wallet and returns the payer and the amount paid.

Payments are already on-chain when a purchase runs, so a failed invocation
cannot be rolled back by the chain; instead the ledger refunds the escrowed
payment from the sale wallet to the buyer. If a transfer was already sent in
the failed invocation and did not fail on-chain, no refund is made and the
case is logged for manual review.
"""
import base64
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx
from solders.hash import Hash as Blockhash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address, transfer_checked
from spl.token.models import TransferCheckedParams

from mcp_fixed_ico.config import (
    BASE_CURRENCY_ID,
    CONFIRMATION_TIMEOUT,
    LAMPORTS_PER_SOL,
    RPC_ENDPOINT,
    SALE_TOKEN_DECIMALS,
    SALE_WALLET,
)
from mcp_fixed_ico.errors import (
    InvalidTransactionError,
    TokenBalanceError,
    TransactionFailedError,
)
from mcp_fixed_ico.ledger import Ledger
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
# JSON-RPC "invalid params", returned for token accounts that do not exist
ACCOUNT_NOT_FOUND_CODE = -32602


def rpc_request(client: httpx.Client, method: str, params: List[Any], rpc_endpoint: str = RPC_ENDPOINT) -> Dict[str, Any]:
    """Sends one JSON-RPC request and returns the decoded response body."""
    resp = client.post(
        rpc_endpoint,
        json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params},
    )
    resp.raise_for_status()
    return resp.json()


def get_token_account(owner: Pubkey, token_mint_address: Pubkey) -> Pubkey:
    """Gets the associated token account of ``owner`` for a token mint."""
    return get_associated_token_address(owner, token_mint_address)


# --- Payment Validation ---

def validate_payment_transaction(
    client: httpx.Client,
    tx_signature: Signature,
    sale_wallet: Pubkey,
    rpc_endpoint: str = RPC_ENDPOINT,
    not_before: Optional[int] = None,
) -> Tuple[Pubkey, int]:
    """
    Validates a SOL payment to the sale wallet.

    With ``not_before``, the payment must also be in a block timestamped at or
    after that time.

    Returns:
        ``(payer, lamports)`` of the confirmed system transfer.

    Raises:
        InvalidTransactionError: If the transaction is missing, failed, or is
            not a system transfer to the sale wallet, or predates ``not_before``.
    """
    try:
        transaction_data = rpc_request(
            client,
            "getTransaction",
            [
                str(tx_signature),
                {
                    "encoding": "jsonParsed",
                    "commitment": "confirmed",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
            rpc_endpoint,
        )
    except httpx.HTTPStatusError as e:
        logger.error(f"HTTP error validating transaction {tx_signature}: {e.response.status_code} - {e.response.text}")
        raise InvalidTransactionError(f"HTTP error validating transaction: {e.response.status_code}")
    except httpx.HTTPError as e:
        logger.error(f"Network error validating transaction {tx_signature}: {e}")
        raise InvalidTransactionError(f"Network error validating transaction: {e}")

    if transaction_data.get("error"):
        raise InvalidTransactionError(f"Error fetching transaction: {transaction_data['error']}")
    if not transaction_data.get("result"):
        raise InvalidTransactionError(f"Transaction not found or failed: {tx_signature}")

    try:
        tx = transaction_data["result"]["transaction"]
        meta = transaction_data["result"]["meta"]

        if meta and meta.get("err"):
            raise InvalidTransactionError(f"Transaction {tx_signature} failed on-chain: {meta['err']}")

        instructions = tx["message"]["instructions"]
        if not instructions or instructions[0].get("programId") != SYSTEM_PROGRAM_ID:
            raise InvalidTransactionError("Invalid transaction. Not a system program transfer.")
        if instructions[0].get("parsed", {}).get("type") != "transfer":
            raise InvalidTransactionError("Invalid transaction. Instruction is not a transfer.")

        transfer_info = instructions[0]["parsed"]["info"]
        lamports = int(transfer_info["lamports"])
        destination = Pubkey.from_string(transfer_info["destination"])
        payer = Pubkey.from_string(transfer_info["source"])
        block_time = transaction_data["result"].get("blockTime")
    except KeyError as e:
        logger.error(f"Missing expected key in transaction data for {tx_signature}: {e}")
        raise InvalidTransactionError(f"Malformed transaction data received: Missing key {e}")

    if destination != sale_wallet:
        raise InvalidTransactionError(f"Invalid transaction destination. Expected {sale_wallet}, got {destination}")
    if not_before is not None:
        if block_time is None:
            raise InvalidTransactionError(f"Block time of payment {tx_signature} is unavailable")
        if block_time < not_before:
            raise InvalidTransactionError(f"Payment {tx_signature} was made before the current sale opened at {not_before}")

    logger.info(f"Validated payment transaction {tx_signature} from {payer} for {lamports / LAMPORTS_PER_SOL:.9f} SOL.")
    return payer, lamports


# --- Ledger ---

class SolanaRpcLedger(Ledger):
    """
    Ledger backed by a Solana RPC node.

    Only the sale wallet can send funds, since it is the only key this ledger
    holds. Accounts and token identities are base58 strings; the base currency
    is native SOL and any other token id is an SPL mint held in associated
    token accounts.
    """

    def __init__(
        self,
        client: httpx.Client,
        wallet: Keypair = SALE_WALLET,
        rpc_endpoint: str = RPC_ENDPOINT,
        token_decimals: int = SALE_TOKEN_DECIMALS,
        confirmation_timeout: float = CONFIRMATION_TIMEOUT,
        check_interval: float = 2.0,
    ):
        super().__init__(BASE_CURRENCY_ID)
        self.client = client
        self.wallet = wallet
        self.rpc_endpoint = rpc_endpoint
        self.token_decimals = token_decimals
        self.confirmation_timeout = confirmation_timeout
        self.check_interval = check_interval
        # Transfers sent during the current invocation whose outcome is not a
        # confirmed on-chain failure
        self._sent_transfers: List[str] = []

    def _rpc(self, method: str, params: List[Any]) -> Any:
        try:
            data = rpc_request(self.client, method, params, self.rpc_endpoint)
        except httpx.HTTPError as e:
            logger.error(f"RPC {method} failed: {e}")
            raise TransactionFailedError(f"RPC {method} failed: {e}")
        if data.get("error"):
            raise TransactionFailedError(f"RPC {method} returned an error: {data['error']}")
        return data["result"]

    def get_current_time(self) -> int:
        slot = self._rpc("getSlot", [{"commitment": "confirmed"}])
        return int(self._rpc("getBlockTime", [slot]))

    def get_balance(self, account: str, token_id: str) -> int:
        if token_id == self.base_currency_id:
            return int(self._rpc("getBalance", [account, {"commitment": "confirmed"}])["value"])

        token_account = get_token_account(Pubkey.from_string(account), Pubkey.from_string(token_id))
        try:
            result = rpc_request(
                self.client,
                "getTokenAccountBalance",
                [str(token_account), {"commitment": "confirmed"}],
                self.rpc_endpoint,
            )
        except httpx.HTTPError as e:
            logger.error(f"HTTP error fetching token balance for {token_account}: {e}")
            raise TokenBalanceError(f"HTTP error fetching token balance: {e}")

        error = result.get("error")
        if error:
            if error.get("code") == ACCOUNT_NOT_FOUND_CODE:
                return 0
            raise TokenBalanceError(f"Error fetching token balance for {token_account}: {error}")
        try:
            return int(result["result"]["value"]["amount"])
        except (KeyError, TypeError):
            raise TokenBalanceError(f"Unexpected response format for token balance of {token_account}")

    def is_valid_token_identity(self, token_id: str) -> bool:
        try:
            Pubkey.from_string(token_id)
        except ValueError:
            return False
        account = self._rpc("getAccountInfo", [token_id, {"encoding": "jsonParsed"}])["value"]
        if account is None or account.get("owner") != str(TOKEN_PROGRAM_ID):
            return False
        data = account.get("data")
        return isinstance(data, dict) and data.get("parsed", {}).get("type") == "mint"

    def transfer(self, sender: str, recipient: str, token_id: str, amount: int) -> str:
        wallet_pubkey = self.wallet.pubkey()
        if sender != str(wallet_pubkey):
            raise TransactionFailedError(f"Cannot sign transfers from {sender}")
        held = self.get_balance(sender, token_id)
        if amount > held:
            raise TransactionFailedError(f"Transfer of {amount} {token_id} exceeds balance {held} of {sender}")

        instruction = self._transfer_instruction(Pubkey.from_string(recipient), token_id, amount)
        blockhash_data = self._rpc("getLatestBlockhash", [{"commitment": "finalized"}])["value"]
        blockhash = Blockhash.from_string(blockhash_data["blockhash"])

        message = Message.new_with_blockhash([instruction], wallet_pubkey, blockhash)
        txn = Transaction([self.wallet], message, blockhash)
        tx_hash_str = self._rpc(
            "sendTransaction",
            [
                base64.b64encode(bytes(txn)).decode("ascii"),
                {"encoding": "base64", "skipPreflight": False, "preflightCommitment": "confirmed"},
            ],
        )
        tx_signature = Signature.from_string(tx_hash_str)
        logger.info(f"Sent transfer {tx_signature} of {amount} {token_id} to {recipient}.")
        self._sent_transfers.append(str(tx_signature))

        self._wait_for_confirmation(tx_signature)
        return str(tx_signature)

    def _transfer_instruction(self, recipient: Pubkey, token_id: str, amount: int) -> Instruction:
        wallet_pubkey = self.wallet.pubkey()
        if token_id == self.base_currency_id:
            return transfer(TransferParams(from_pubkey=wallet_pubkey, to_pubkey=recipient, lamports=amount))

        mint = Pubkey.from_string(token_id)
        return transfer_checked(
            TransferCheckedParams(
                program_id=TOKEN_PROGRAM_ID,
                source=get_token_account(wallet_pubkey, mint),
                mint=mint,
                dest=get_token_account(recipient, mint),
                owner=wallet_pubkey,
                amount=amount,
                decimals=self.token_decimals,
                signers=[],
            )
        )

    def _wait_for_confirmation(self, tx_signature: Signature) -> None:
        deadline = time.monotonic() + self.confirmation_timeout
        while True:
            statuses = self._rpc(
                "getSignatureStatuses",
                [[str(tx_signature)], {"searchTransactionHistory": True}],
            )
            status_data: Optional[Dict[str, Any]] = statuses["value"][0]
            if status_data and status_data.get("confirmationStatus") in ("confirmed", "finalized"):
                if status_data.get("err") is not None:
                    logger.error(f"Transfer {tx_signature} failed on-chain: {status_data['err']}")
                    self._sent_transfers.remove(str(tx_signature))
                    raise TransactionFailedError(f"Transfer failed: {status_data['err']}")
                logger.info(f"Transfer {tx_signature} confirmed.")
                return
            if time.monotonic() >= deadline:
                logger.warning(f"Transfer {tx_signature} confirmation timed out.")
                raise TransactionFailedError("Transfer confirmation timed out.")
            time.sleep(self.check_interval)

    def _checkpoint(self) -> Any:
        self._sent_transfers = []
        return None

    def _rollback(self, checkpoint: Any, caller: str, payee: Optional[str], payment: int) -> None:
        if not payment:
            return
        if self._sent_transfers:
            # Funds may already have left the sale wallet in this invocation
            logger.error(f"Not refunding {payment} lamports to {caller}: transfers {self._sent_transfers} "
                         f"were sent before the invocation failed. Manual review required.")
            return
        try:
            refund_tx = self.transfer(payee, caller, self.base_currency_id, payment)
            logger.info(f"Refunded payment of {payment} lamports to {caller}, tx={refund_tx}")
        except TransactionFailedError as e:
            # The original failure still propagates; the refund needs manual follow-up
            logger.exception(f"Refund of {payment} lamports to {caller} failed: {e}")
