from unittest.mock import patch

import pytest

from mcp_fixed_ico.config import BASE_CURRENCY_ID, LAMPORTS_PER_SOL
from mcp_fixed_ico.errors import (
    BuyLimitExceededError,
    ConfigurationLockedError,
    InsufficientFundsError,
    InsufficientInventoryError,
    InvalidScheduleError,
    InvalidTokenError,
    NotYetStartedError,
    NothingToWithdrawError,
    SaleFinishedError,
    SaleNotConfiguredError,
    UnauthorizedError,
    ZeroPaymentError,
)
from mcp_fixed_ico.ico_manager import SaleInstance
from mcp_fixed_ico.schemas import Phase, SaleOptions

from tests.conftest import DURATION, INVENTORY, NOW, PRICE, START, buy


# --- Phase ---

def test_fresh_sale_reports_ended(sale):
    # Unset window is activation 0 with duration 0
    assert sale.status() == Phase.ended


def test_status_follows_the_window(active_sale, ledger):
    ledger.set_time(START - 1)
    assert active_sale.status() == Phase.not_started
    ledger.set_time(START)
    assert active_sale.status() == Phase.active
    ledger.set_time(START + DURATION - 1)
    assert active_sale.status() == Phase.active
    ledger.set_time(START + DURATION)
    assert active_sale.status() == Phase.ended


def test_zero_duration_sale_ends_immediately(sale, ledger, owner):
    with sale.invocation(owner):
        sale.set_times(START, 0)
    ledger.set_time(START)
    assert sale.status() == Phase.ended


# --- Purchase ---

def test_buy_allocates_at_fixed_price(active_sale, ledger, buyer, token_id):
    receipt = buy(active_sale, ledger, buyer, 10)

    assert receipt.token_amount == 5 * LAMPORTS_PER_SOL
    assert receipt.buyer == buyer
    assert receipt.refunded_amount == 0
    assert ledger.get_balance(buyer, token_id) == 5 * LAMPORTS_PER_SOL
    assert active_sale.get_token_available() == INVENTORY - 5 * LAMPORTS_PER_SOL
    assert ledger.get_balance(active_sale.address, BASE_CURRENCY_ID) == 10


def test_buy_with_unit_scale_one(ledger, owner, sale_address, buyer, token_id):
    sale = SaleInstance(ledger, owner=owner, address=sale_address, base_unit_scale=1)
    with sale.invocation(owner):
        sale.set_sale_token(token_id)
        sale.set_unit_price(2)
        sale.set_times(START, DURATION)
    ledger.credit(sale_address, token_id, 1000)
    ledger.set_time(START)

    receipt = buy(sale, ledger, buyer, 10)

    assert receipt.token_amount == 5
    assert sale.get_token_available() == 995


def test_buy_keeps_truncated_remainder(active_sale, ledger, buyer):
    receipt = buy(active_sale, ledger, buyer, 11)

    assert receipt.token_amount == 5 * LAMPORTS_PER_SOL
    assert ledger.get_balance(buyer, BASE_CURRENCY_ID) == 0
    assert ledger.get_balance(active_sale.address, BASE_CURRENCY_ID) == 11


def test_buy_refunds_remainder_when_enabled(ledger, owner, sale_address, buyer, token_id):
    sale = SaleInstance(ledger, owner=owner, address=sale_address, options=SaleOptions(refund_remainder=True))
    with sale.invocation(owner):
        sale.set_sale_token(token_id)
        sale.set_unit_price(PRICE)
        sale.set_times(START, DURATION)
    ledger.credit(sale_address, token_id, INVENTORY)
    ledger.set_time(START)

    receipt = buy(sale, ledger, buyer, 11)

    assert receipt.refunded_amount == 1
    assert ledger.get_balance(buyer, BASE_CURRENCY_ID) == 1
    assert ledger.get_balance(sale_address, BASE_CURRENCY_ID) == 10


def test_buy_before_start_fails_and_returns_payment(active_sale, ledger, buyer):
    ledger.set_time(START - 1)
    with pytest.raises(NotYetStartedError):
        buy(active_sale, ledger, buyer, 10)
    assert ledger.get_balance(buyer, BASE_CURRENCY_ID) == 10
    assert ledger.get_balance(active_sale.address, BASE_CURRENCY_ID) == 0


def test_buy_after_end_fails(active_sale, ledger, buyer):
    ledger.set_time(START + DURATION)
    with pytest.raises(SaleFinishedError):
        buy(active_sale, ledger, buyer, 10)


@pytest.mark.parametrize("now", [START - 1, START, START + DURATION])
def test_zero_payment_rejected_in_every_phase(active_sale, ledger, buyer, now):
    ledger.set_time(now)
    with pytest.raises(ZeroPaymentError):
        with active_sale.invocation(buyer):
            active_sale.buy(0)


def test_buy_exactly_available_inventory(ledger, owner, sale_address, buyer, token_id):
    sale = SaleInstance(ledger, owner=owner, address=sale_address)
    with sale.invocation(owner):
        sale.set_sale_token(token_id)
        sale.set_unit_price(PRICE)
        sale.set_times(START, DURATION)
    ledger.credit(sale_address, token_id, 5 * LAMPORTS_PER_SOL)
    ledger.set_time(START)

    buy(sale, ledger, buyer, 10)
    assert sale.get_token_available() == 0


def test_buy_more_than_inventory_reverts(active_sale, ledger, buyer, token_id):
    paid = (INVENTORY // LAMPORTS_PER_SOL + 1) * PRICE
    with pytest.raises(InsufficientInventoryError):
        buy(active_sale, ledger, buyer, paid)
    assert active_sale.get_token_available() == INVENTORY
    assert ledger.get_balance(buyer, BASE_CURRENCY_ID) == paid
    assert ledger.get_balance(buyer, token_id) == 0


def test_buy_limit_is_inclusive(active_sale, ledger, owner, buyer):
    with active_sale.invocation(owner):
        active_sale.set_buy_limit(10)

    buy(active_sale, ledger, buyer, 10)
    with pytest.raises(BuyLimitExceededError):
        buy(active_sale, ledger, buyer, 11)


def test_buy_limit_applies_per_call(active_sale, ledger, owner, buyer, token_id):
    with active_sale.invocation(owner):
        active_sale.set_buy_limit(10)

    buy(active_sale, ledger, buyer, 10)
    buy(active_sale, ledger, buyer, 10)
    assert ledger.get_balance(buyer, token_id) == 10 * LAMPORTS_PER_SOL


def test_cleared_buy_limit_is_unlimited(active_sale, ledger, owner, buyer):
    with active_sale.invocation(owner):
        active_sale.set_buy_limit(10)
        active_sale.set_buy_limit(None)

    buy(active_sale, ledger, buyer, 100)
    assert active_sale.get_buy_limit() is None


def test_buy_without_price_fails(sale, ledger, owner, buyer, token_id):
    with sale.invocation(owner):
        sale.set_sale_token(token_id)
        sale.set_times(START, DURATION)
    ledger.credit(sale.address, token_id, INVENTORY)
    ledger.set_time(START)

    with pytest.raises(SaleNotConfiguredError):
        buy(sale, ledger, buyer, 10)


def test_buy_without_token_fails(sale, ledger, owner, buyer):
    with sale.invocation(owner):
        sale.set_unit_price(PRICE)
        sale.set_times(START, DURATION)
    ledger.set_time(START)

    with pytest.raises(SaleNotConfiguredError):
        buy(sale, ledger, buyer, 10)


def test_unfunded_payment_is_rejected(active_sale, ledger, buyer):
    with pytest.raises(InsufficientFundsError):
        with active_sale.invocation(buyer, payment=10):
            active_sale.buy(10)


def test_buy_outside_invocation_fails(active_sale):
    with pytest.raises(RuntimeError):
        active_sale.buy(10)


# --- Configuration ---

@pytest.mark.parametrize(
    "operation",
    [
        lambda sale, token_id: sale.set_sale_token(token_id),
        lambda sale, token_id: sale.set_times(START + 10, 60),
        lambda sale, token_id: sale.set_unit_price(7),
        lambda sale, token_id: sale.set_buy_limit(5),
        lambda sale, token_id: sale.withdraw_proceeds(),
        lambda sale, token_id: sale.withdraw_inventory(1),
    ],
)
def test_owner_operations_reject_other_callers(active_sale, ledger, buyer, token_id, operation):
    ledger.set_time(NOW)
    before = active_sale.config.model_dump()
    balances = dict(ledger.balances)

    with pytest.raises(UnauthorizedError):
        with active_sale.invocation(buyer):
            operation(active_sale, token_id)

    assert active_sale.config.model_dump() == before
    assert ledger.balances == balances


def test_set_sale_token_accepts_base_currency(sale, owner):
    with sale.invocation(owner):
        sale.set_sale_token(BASE_CURRENCY_ID)
    assert sale.get_token_id() == BASE_CURRENCY_ID


def test_set_sale_token_rejects_invalid_identity(sale, owner):
    with pytest.raises(InvalidTokenError):
        with sale.invocation(owner):
            sale.set_sale_token("not-a-token")
    assert sale.get_token_id() is None


def test_set_times_in_past_is_rejected(sale, ledger, owner):
    with pytest.raises(InvalidScheduleError):
        with sale.invocation(owner):
            sale.set_times(NOW - 1, 100)
    assert sale.get_activation_timestamp() == 0


def test_set_times_requires_strictly_future(sale, owner):
    with pytest.raises(InvalidScheduleError):
        with sale.invocation(owner):
            sale.set_times(NOW, 100)


def test_set_times_updates_window(sale, owner):
    with sale.invocation(owner):
        sale.set_times(START, DURATION)
    assert sale.get_activation_timestamp() == START
    assert sale.get_duration_timestamp() == DURATION


def test_zero_price_is_accepted(sale, owner):
    with sale.invocation(owner):
        sale.set_unit_price(5)
        sale.set_unit_price(0)
    assert sale.get_token_price() == 0


def test_negative_price_is_rejected_without_change(sale, owner):
    with sale.invocation(owner):
        sale.set_unit_price(5)
    with pytest.raises(ValueError):
        with sale.invocation(owner):
            sale.set_unit_price(-1)
    assert sale.get_token_price() == 5


def test_reconfiguration_allowed_during_active_sale(active_sale, owner):
    with active_sale.invocation(owner):
        active_sale.set_unit_price(4)
    assert active_sale.get_token_price() == 4


def test_lock_on_activation(ledger, owner, sale_address):
    sale = SaleInstance(ledger, owner=owner, address=sale_address, options=SaleOptions(lock_on_activation=True))
    with sale.invocation(owner):
        sale.set_times(START, DURATION)
        sale.set_unit_price(3)

    ledger.set_time(START)
    with pytest.raises(ConfigurationLockedError):
        with sale.invocation(owner):
            sale.set_unit_price(4)
    assert sale.get_token_price() == 3


def test_config_persists_to_state_file(tmp_path, ledger, owner, sale_address, token_id):
    state_path = tmp_path / "state" / "sale.json"
    sale = SaleInstance(ledger, owner=owner, address=sale_address, state_path=state_path)
    with sale.invocation(owner):
        sale.set_sale_token(token_id)
        sale.set_unit_price(9)
        sale.set_buy_limit(100)

    assert state_path.exists()
    reloaded = SaleInstance(ledger, owner=owner, address=sale_address, state_path=state_path)
    assert reloaded.get_token_id() == token_id
    assert reloaded.get_token_price() == 9
    assert reloaded.get_buy_limit() == 100


def test_failed_state_write_keeps_previous_file(tmp_path, ledger, owner, sale_address):
    state_path = tmp_path / "sale.json"
    sale = SaleInstance(ledger, owner=owner, address=sale_address, state_path=state_path)
    with sale.invocation(owner):
        sale.set_unit_price(9)
    saved = state_path.read_text()

    with patch("mcp_fixed_ico.ico_manager.json.dump", side_effect=OSError("disk full")):
        with pytest.raises(OSError):
            with sale.invocation(owner):
                sale.set_unit_price(12)

    assert state_path.read_text() == saved
    assert sale.get_token_price() == 9
    assert [p.name for p in tmp_path.iterdir()] == ["sale.json"]


# --- Treasury ---

def test_withdraw_proceeds_sweeps_balance(active_sale, ledger, owner, buyer):
    buy(active_sale, ledger, buyer, 10)
    buy(active_sale, ledger, buyer, 4)

    with active_sale.invocation(owner):
        receipt = active_sale.withdraw_proceeds()

    assert receipt.amount == 14
    assert receipt.token_id == BASE_CURRENCY_ID
    assert ledger.get_balance(owner, BASE_CURRENCY_ID) == 14
    assert ledger.get_balance(active_sale.address, BASE_CURRENCY_ID) == 0


def test_withdraw_proceeds_with_empty_balance(active_sale, owner):
    with pytest.raises(NothingToWithdrawError):
        with active_sale.invocation(owner):
            active_sale.withdraw_proceeds()


def test_withdraw_inventory_sweeps_full_balance(sale, ledger, owner, token_id):
    with sale.invocation(owner):
        sale.set_sale_token(token_id)
    ledger.credit(sale.address, token_id, 50)

    with sale.invocation(owner):
        receipt = sale.withdraw_inventory(5)

    assert receipt.amount == 50
    assert ledger.get_balance(owner, token_id) == 50
    assert sale.get_token_available() == 0


def test_withdraw_inventory_exact_amount_option(ledger, owner, sale_address, token_id):
    sale = SaleInstance(ledger, owner=owner, address=sale_address, options=SaleOptions(withdraw_exact_amount=True))
    with sale.invocation(owner):
        sale.set_sale_token(token_id)
    ledger.credit(sale_address, token_id, 50)

    with sale.invocation(owner):
        sale.withdraw_inventory(5)

    assert ledger.get_balance(owner, token_id) == 5
    assert sale.get_token_available() == 45


def test_withdraw_inventory_above_balance(sale, ledger, owner, token_id):
    with sale.invocation(owner):
        sale.set_sale_token(token_id)
    ledger.credit(sale.address, token_id, 50)

    with pytest.raises(InsufficientInventoryError):
        with sale.invocation(owner):
            sale.withdraw_inventory(51)
    assert sale.get_token_available() == 50


# --- Views ---

def test_info_snapshot(active_sale, owner, token_id):
    info = active_sale.info()
    assert info.owner == owner
    assert info.status == Phase.active
    assert info.sale_token_id == token_id
    assert info.unit_price == PRICE
    assert info.buy_limit is None
    assert info.activation_time == START
    assert info.duration == DURATION
    assert info.token_available == INVENTORY


def test_token_available_without_token(sale):
    assert sale.get_token_available() == 0
