"""
Ledger Collaborator Interface

The sale engine never holds funds or reads the clock itself. Every balance
read, transfer, time lookup and caller lookup goes through a ``Ledger``.

Invocations:
    Each operation on a sale runs inside ``ledger.invocation(caller, payment)``.
    The invocation fixes the caller, escrows the attached base-currency payment
    to the payee and, if anything inside raises, reverts every tentative change
    (including returning the escrowed payment) before re-raising. Invocations
    on one ledger are serialized.

Implementations:
- ``InMemoryLedger``: dictionary balances with a settable clock, used for
  tests, simulations and local development.
- ``SolanaRpcLedger`` (in ``solana_utils``): balances, time and transfers
  backed by a Solana JSON-RPC endpoint.
"""
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from solders.pubkey import Pubkey

from mcp_fixed_ico.config import BASE_CURRENCY_ID
from mcp_fixed_ico.errors import InsufficientFundsError, TransactionFailedError
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


class Ledger(ABC):
    """Narrow view of the runtime that holds balances and moves funds."""

    def __init__(self, base_currency_id: str = BASE_CURRENCY_ID):
        self.base_currency_id = base_currency_id
        self._caller: Optional[str] = None
        self._lock = threading.RLock()

    @abstractmethod
    def get_current_time(self) -> int:
        """Current ledger time as a Unix timestamp."""

    @abstractmethod
    def get_balance(self, account: str, token_id: str) -> int:
        """Balance of ``token_id`` held by ``account``, in base units."""

    @abstractmethod
    def transfer(self, sender: str, recipient: str, token_id: str, amount: int) -> str:
        """
        Moves ``amount`` of ``token_id`` and returns a transaction id.

        Raises:
            TransactionFailedError: If ``sender`` does not hold ``amount``.
        """

    @abstractmethod
    def is_valid_token_identity(self, token_id: str) -> bool:
        """Whether ``token_id`` names a token this ledger can hold."""

    def get_caller(self) -> str:
        """Identity invoking the current operation."""
        if self._caller is None:
            raise RuntimeError("No ledger invocation in progress")
        return self._caller

    @contextmanager
    def invocation(self, caller: str, payment: int = 0, payee: Optional[str] = None) -> Iterator["Ledger"]:
        """
        Runs one all-or-nothing operation on behalf of ``caller``.

        Args:
            caller: Identity of the invoker.
            payment: Base-currency amount attached to the call.
            payee: Account the payment is escrowed to (required with a payment).
        """
        if payment < 0:
            raise ValueError("Payment must be a non-negative integer")
        if payment and payee is None:
            raise ValueError("A payee is required when a payment is attached")

        with self._lock:
            if self._caller is not None:
                raise RuntimeError("Nested ledger invocations are not supported")
            checkpoint = self._checkpoint()
            self._caller = caller
            try:
                if payment:
                    self._escrow(caller, payee, payment)
                yield self
            except Exception:
                logger.debug(f"Reverting invocation by {caller}")
                self._rollback(checkpoint, caller, payee, payment)
                raise
            finally:
                self._caller = None

    def _checkpoint(self) -> Any:
        return None

    def _escrow(self, caller: str, payee: str, payment: int) -> None:
        pass

    def _rollback(self, checkpoint: Any, caller: str, payee: Optional[str], payment: int) -> None:
        pass


class InMemoryLedger(Ledger):
    """
    Ledger kept entirely in process memory.

    Balances are keyed by ``(account, token_id)``. The clock follows wall time
    unless pinned with ``set_time``. A failed invocation restores the balances
    and transfer log to their state at the start of the invocation.
    """

    def __init__(self, now: Optional[int] = None, base_currency_id: str = BASE_CURRENCY_ID):
        super().__init__(base_currency_id)
        self.balances: Dict[Tuple[str, str], int] = {}
        self.transfers: List[Tuple[str, str, str, str, int]] = []
        self._now = now

    def get_current_time(self) -> int:
        if self._now is not None:
            return self._now
        return int(time.time())

    def set_time(self, now: int) -> None:
        self._now = now

    def advance(self, seconds: int) -> None:
        self._now = self.get_current_time() + seconds

    def credit(self, account: str, token_id: str, amount: int) -> None:
        """Mints ``amount`` into ``account``. For seeding balances."""
        if amount < 0:
            raise ValueError("Amount must be a non-negative integer")
        key = (account, token_id)
        self.balances[key] = self.balances.get(key, 0) + amount

    def get_balance(self, account: str, token_id: str) -> int:
        return self.balances.get((account, token_id), 0)

    def transfer(self, sender: str, recipient: str, token_id: str, amount: int) -> str:
        if amount < 0:
            raise ValueError("Amount must be a non-negative integer")
        held = self.get_balance(sender, token_id)
        if amount > held:
            raise TransactionFailedError(f"Transfer of {amount} {token_id} exceeds balance {held} of {sender}")

        self.balances[(sender, token_id)] = held - amount
        self.credit(recipient, token_id, amount)
        tx_id = uuid.uuid4().hex
        self.transfers.append((tx_id, sender, recipient, token_id, amount))
        logger.debug(f"Transferred {amount} {token_id} from {sender} to {recipient} (tx {tx_id})")
        return tx_id

    def is_valid_token_identity(self, token_id: str) -> bool:
        try:
            Pubkey.from_string(token_id)
        except ValueError:
            return False
        return True

    def _checkpoint(self) -> Any:
        return dict(self.balances), len(self.transfers)

    def _escrow(self, caller: str, payee: str, payment: int) -> None:
        if self.get_balance(caller, self.base_currency_id) < payment:
            raise InsufficientFundsError(f"{caller} cannot cover a payment of {payment} {self.base_currency_id}")
        self.transfer(caller, payee, self.base_currency_id, payment)

    def _rollback(self, checkpoint: Any, caller: str, payee: Optional[str], payment: int) -> None:
        balances, transfer_count = checkpoint
        self.balances = balances
        del self.transfers[transfer_count:]
