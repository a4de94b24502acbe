"""
Replay protection for the MCP surface.

Two kinds of one-shot credentials reach the server: owner-signed admin
messages and buyer payment signatures. ``ReplayGuard`` remembers both and can
persist them to a JSON file, so neither can be reused after a restart.

- Admin nonces: every signed owner request carries a nonce that must be
  strictly greater than the last one accepted.
- Payments: each payment signature is redeemed at most once. A payment is
  recorded before the purchase runs.
"""
import json
import threading
from pathlib import Path
from typing import Optional, Set, Union

from mcp_fixed_ico.errors import InvalidTransactionError, UnauthorizedError
from mcp_fixed_ico.ico_manager import write_json_atomic
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


class ReplayGuard:
    """Used admin nonces and redeemed payments, optionally backed by a file."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else None
        self.admin_nonce = 0
        self.redeemed_payments: Set[str] = set()
        self._lock = threading.Lock()
        if self.path is not None:
            self._load()

    def is_redeemed(self, payment_signature: str) -> bool:
        return payment_signature in self.redeemed_payments

    def use_admin_nonce(self, nonce: int) -> None:
        """
        Accepts ``nonce`` for one owner request.

        Raises:
            UnauthorizedError: If the nonce is not above the last accepted one.
        """
        with self._lock:
            if nonce <= self.admin_nonce:
                logger.warning(f"Rejected reused admin nonce {nonce} (last {self.admin_nonce})")
                raise UnauthorizedError(f"Nonce {nonce} has already been used")
            previous = self.admin_nonce
            self.admin_nonce = nonce
            try:
                self._save()
            except OSError:
                self.admin_nonce = previous
                raise

    def redeem_payment(self, payment_signature: str) -> None:
        """
        Marks a payment as redeemed.

        Raises:
            InvalidTransactionError: If the payment was redeemed before.
        """
        with self._lock:
            if payment_signature in self.redeemed_payments:
                raise InvalidTransactionError(f"Payment {payment_signature} has already been redeemed")
            self.redeemed_payments.add(payment_signature)
            try:
                self._save()
            except OSError:
                self.redeemed_payments.discard(payment_signature)
                raise

    def _load(self) -> None:
        if not self.path.is_file():
            logger.info(f"No replay state found at {self.path}")
            return
        with open(self.path, "r") as f:
            data = json.load(f)
        self.admin_nonce = int(data.get("admin_nonce", 0))
        self.redeemed_payments = set(data.get("redeemed_payments", []))
        logger.info(f"Loaded replay state from {self.path}: {len(self.redeemed_payments)} redeemed payments")

    def _save(self) -> None:
        if self.path is None:
            return
        write_json_atomic(
            {"admin_nonce": self.admin_nonce, "redeemed_payments": sorted(self.redeemed_payments)},
            self.path,
        )
