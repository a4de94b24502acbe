"""
Fixed-Price Sale Instance

A ``SaleInstance`` owns one sale's configuration and runs every operation of
the sale against a ``Ledger``:

- Configuration store: owner-only setters for the sale token, window, unit
  price and buy limit. The configuration can optionally be persisted to a JSON
  state file.
- Purchase engine: ``buy`` validates the window, payment and buy limit,
  converts the payment at the fixed price and transfers the allocation.
- Treasury: owner-only withdrawal of proceeds and unsold inventory.
- Views: status and configuration getters available to anyone.

Operations must run inside ``sale.invocation(caller, payment)`` so the caller
is known and any failure reverts the ledger. Configuration changes are applied
only after every check has passed.
"""
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import ValidationError

from mcp_fixed_ico import pricing
from mcp_fixed_ico.config import LAMPORTS_PER_SOL
from mcp_fixed_ico.errors import (
    BuyLimitExceededError,
    ConfigurationLockedError,
    InsufficientInventoryError,
    InvalidScheduleError,
    InvalidTokenError,
    NothingToWithdrawError,
    SaleNotConfiguredError,
    UnauthorizedError,
    ZeroPaymentError,
)
from mcp_fixed_ico.ledger import Ledger
from mcp_fixed_ico.schedule import evaluate_phase, require_active
from mcp_fixed_ico.schemas import (
    Phase,
    PurchaseReceipt,
    SaleConfig,
    SaleInfo,
    SaleOptions,
    WithdrawalReceipt,
)
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


def load_sale_config(path: Path) -> Optional[SaleConfig]:
    """Loads a persisted sale configuration, or None if the file does not exist."""
    if not path.is_file():
        logger.info(f"No sale state found at {path}, starting with an empty configuration")
        return None
    with open(path, "r") as f:
        sale_config = SaleConfig.model_validate(json.load(f))
    logger.info(f"Loaded sale configuration from {path}")
    return sale_config


def write_json_atomic(data: Any, path: Path) -> None:
    """Writes ``data`` as indented JSON, replacing ``path`` in one step."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=4)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        os.unlink(tmp_name)
        raise


def save_sale_config(sale_config: SaleConfig, path: Path) -> None:
    """Writes the sale configuration as indented JSON."""
    write_json_atomic(sale_config.model_dump(mode="json"), path)
    logger.debug(f"Saved sale configuration to {path}")


class SaleInstance:
    """One fixed-price sale, its owner and its ledger account."""

    def __init__(
        self,
        ledger: Ledger,
        owner: str,
        address: str,
        options: Optional[SaleOptions] = None,
        base_unit_scale: int = LAMPORTS_PER_SOL,
        sale_config: Optional[SaleConfig] = None,
        state_path: Optional[Union[str, Path]] = None,
    ):
        self.ledger = ledger
        self.owner = owner
        self.address = address
        self.options = options or SaleOptions()
        self.base_unit_scale = base_unit_scale
        self.state_path = Path(state_path) if state_path is not None else None

        if sale_config is None and self.state_path is not None:
            sale_config = load_sale_config(self.state_path)
        self.config = sale_config or SaleConfig()

    def invocation(self, caller: str, payment: int = 0):
        """Opens a ledger invocation with any payment escrowed to this sale."""
        return self.ledger.invocation(caller, payment=payment, payee=self.address)

    # --- Configuration (owner only) ---

    def set_sale_token(self, token_id: str) -> None:
        self._require_owner("set_sale_token")
        self._require_unlocked()
        if token_id != self.ledger.base_currency_id and not self.ledger.is_valid_token_identity(token_id):
            raise InvalidTokenError(f"Invalid token identifier provided: {token_id}")
        self._update(sale_token_id=token_id)

    def set_times(self, activation_time: int, duration: int) -> None:
        self._require_owner("set_times")
        self._require_unlocked()
        now = self.ledger.get_current_time()
        if activation_time <= now:
            raise InvalidScheduleError(f"Activation time {activation_time} can't be in the past (now {now})")
        self._update(activation_time=activation_time, duration=duration)

    def set_unit_price(self, price: int) -> None:
        self._require_owner("set_unit_price")
        self._require_unlocked()
        self._update(unit_price=price)

    def set_buy_limit(self, limit: Optional[int]) -> None:
        self._require_owner("set_buy_limit")
        self._require_unlocked()
        self._update(buy_limit=limit)

    # --- Purchase ---

    def buy(self, paid_amount: int) -> PurchaseReceipt:
        """
        Buys sale tokens with a payment already escrowed to this sale.

        Args:
            paid_amount: Base-currency payment in smallest units.

        Returns:
            PurchaseReceipt describing the allocation and its transfer.

        Raises:
            NotYetStartedError / SaleFinishedError: Outside the sale window.
            ZeroPaymentError: No payment attached.
            BuyLimitExceededError: Payment above the per-call buy limit.
            SaleNotConfiguredError: No sale token or unit price configured.
            InsufficientInventoryError: Allocation above the sale's balance.
        """
        cfg = self.config
        if paid_amount == 0:
            raise ZeroPaymentError("You sent 0 SOL")
        require_active(self.ledger.get_current_time(), cfg.activation_time, cfg.duration)
        if cfg.buy_limit is not None and paid_amount > cfg.buy_limit:
            raise BuyLimitExceededError(f"Buy limit exceeded: paid {paid_amount}, limit {cfg.buy_limit}")
        if cfg.sale_token_id is None:
            raise SaleNotConfiguredError("Sale token is not set")

        caller = self.ledger.get_caller()
        available = self.ledger.get_balance(self.address, cfg.sale_token_id)
        token_amount, remainder = pricing.split_payment(paid_amount, cfg.unit_price, self.base_unit_scale)
        if token_amount > available:
            raise InsufficientInventoryError(f"Not enough tokens available: requested {token_amount}, available {available}")

        transfer_tx = self.ledger.transfer(self.address, caller, cfg.sale_token_id, token_amount)

        refunded = 0
        if self.options.refund_remainder and remainder:
            self.ledger.transfer(self.address, caller, self.ledger.base_currency_id, remainder)
            refunded = remainder

        logger.info(f"Sold {token_amount} {cfg.sale_token_id} to {caller} for {paid_amount - refunded} "
                    f"(refunded {refunded}), tx={transfer_tx}")
        return PurchaseReceipt(
            buyer=caller,
            paid_amount=paid_amount,
            token_amount=token_amount,
            refunded_amount=refunded,
            transfer_tx=transfer_tx,
        )

    # --- Treasury (owner only) ---

    def withdraw_proceeds(self) -> WithdrawalReceipt:
        self._require_owner("withdraw_proceeds")
        token_id = self.ledger.base_currency_id
        balance = self.ledger.get_balance(self.address, token_id)
        if balance == 0:
            raise NothingToWithdrawError(f"Not enough {token_id} to withdraw")
        return self._send_to_caller(token_id, balance)

    def withdraw_inventory(self, amount: int) -> WithdrawalReceipt:
        """
        Withdraws unsold inventory to the owner.

        Unless ``withdraw_exact_amount`` is enabled, the whole sale-token
        balance is swept once ``amount`` passes the balance check.
        """
        self._require_owner("withdraw_inventory")
        token_id = self.config.sale_token_id
        if token_id is None:
            raise SaleNotConfiguredError("Sale token is not set")
        available = self.ledger.get_balance(self.address, token_id)
        if amount > available:
            raise InsufficientInventoryError(f"Not enough tokens to withdraw: requested {amount}, available {available}")
        return self._send_to_caller(token_id, amount if self.options.withdraw_exact_amount else available)

    # --- Views ---

    def status(self) -> Phase:
        cfg = self.config
        return evaluate_phase(self.ledger.get_current_time(), cfg.activation_time, cfg.duration)

    def get_token_available(self) -> int:
        if self.config.sale_token_id is None:
            return 0
        return self.ledger.get_balance(self.address, self.config.sale_token_id)

    def get_token_id(self) -> Optional[str]:
        return self.config.sale_token_id

    def get_token_price(self) -> int:
        return self.config.unit_price

    def get_buy_limit(self) -> Optional[int]:
        return self.config.buy_limit

    def get_activation_timestamp(self) -> int:
        return self.config.activation_time

    def get_duration_timestamp(self) -> int:
        return self.config.duration

    def info(self) -> SaleInfo:
        cfg = self.config
        return SaleInfo(
            sale_address=self.address,
            owner=self.owner,
            status=self.status(),
            sale_token_id=cfg.sale_token_id,
            unit_price=cfg.unit_price,
            buy_limit=cfg.buy_limit,
            activation_time=cfg.activation_time,
            duration=cfg.duration,
            token_available=self.get_token_available(),
        )

    # --- Internals ---

    def _require_owner(self, operation: str) -> None:
        caller = self.ledger.get_caller()
        if caller != self.owner:
            logger.warning(f"Rejected {operation} from non-owner {caller}")
            raise UnauthorizedError(f"Endpoint {operation} can only be called by the owner")

    def _require_unlocked(self) -> None:
        if self.options.lock_on_activation and self.status() != Phase.not_started:
            raise ConfigurationLockedError("Sale configuration is locked once the sale has started")

    def _update(self, **changes) -> None:
        # Validate every field on a copy so a rejected value changes nothing
        updated = self.config.model_copy()
        try:
            for field, value in changes.items():
                setattr(updated, field, value)
        except ValidationError as e:
            raise ValueError(f"Invalid sale configuration: {e}")

        if self.state_path is not None:
            save_sale_config(updated, self.state_path)
        self.config = updated
        logger.info(f"Sale configuration updated: {changes}")

    def _send_to_caller(self, token_id: str, amount: int) -> WithdrawalReceipt:
        recipient = self.ledger.get_caller()
        transfer_tx = self.ledger.transfer(self.address, recipient, token_id, amount)
        logger.info(f"Withdrew {amount} {token_id} to {recipient}, tx={transfer_tx}")
        return WithdrawalReceipt(recipient=recipient, token_id=token_id, amount=amount, transfer_tx=transfer_tx)
