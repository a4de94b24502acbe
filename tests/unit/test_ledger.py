import pytest
from solders.pubkey import Pubkey

from mcp_fixed_ico.config import BASE_CURRENCY_ID
from mcp_fixed_ico.errors import InsufficientFundsError, TransactionFailedError
from mcp_fixed_ico.ledger import InMemoryLedger


@pytest.fixture
def mem_ledger():
    ledger = InMemoryLedger(now=100)
    ledger.credit("alice", BASE_CURRENCY_ID, 50)
    return ledger


def test_transfer_moves_balance(mem_ledger):
    tx_id = mem_ledger.transfer("alice", "bob", BASE_CURRENCY_ID, 20)
    assert mem_ledger.get_balance("alice", BASE_CURRENCY_ID) == 30
    assert mem_ledger.get_balance("bob", BASE_CURRENCY_ID) == 20
    assert mem_ledger.transfers[-1] == (tx_id, "alice", "bob", BASE_CURRENCY_ID, 20)


def test_transfer_above_balance_fails(mem_ledger):
    with pytest.raises(TransactionFailedError):
        mem_ledger.transfer("alice", "bob", BASE_CURRENCY_ID, 51)
    assert mem_ledger.get_balance("alice", BASE_CURRENCY_ID) == 50


def test_clock_can_be_pinned_and_advanced(mem_ledger):
    assert mem_ledger.get_current_time() == 100
    mem_ledger.advance(5)
    assert mem_ledger.get_current_time() == 105
    mem_ledger.set_time(7)
    assert mem_ledger.get_current_time() == 7


def test_invocation_escrows_payment(mem_ledger):
    with mem_ledger.invocation("alice", payment=10, payee="sale") as ledger:
        assert ledger.get_caller() == "alice"
        assert ledger.get_balance("sale", BASE_CURRENCY_ID) == 10
    assert mem_ledger.get_balance("alice", BASE_CURRENCY_ID) == 40


def test_failed_invocation_reverts_everything(mem_ledger):
    with pytest.raises(KeyError):
        with mem_ledger.invocation("alice", payment=10, payee="sale"):
            mem_ledger.transfer("sale", "carol", BASE_CURRENCY_ID, 10)
            raise KeyError("boom")

    assert mem_ledger.get_balance("alice", BASE_CURRENCY_ID) == 50
    assert mem_ledger.get_balance("sale", BASE_CURRENCY_ID) == 0
    assert mem_ledger.get_balance("carol", BASE_CURRENCY_ID) == 0
    assert mem_ledger.transfers == []


def test_payment_without_funds(mem_ledger):
    with pytest.raises(InsufficientFundsError):
        with mem_ledger.invocation("bob", payment=1, payee="sale"):
            pass


def test_payment_requires_payee(mem_ledger):
    with pytest.raises(ValueError):
        with mem_ledger.invocation("alice", payment=1):
            pass


def test_caller_only_known_inside_invocation(mem_ledger):
    with pytest.raises(RuntimeError):
        mem_ledger.get_caller()
    with mem_ledger.invocation("alice"):
        pass
    with pytest.raises(RuntimeError):
        mem_ledger.get_caller()


def test_nested_invocations_are_rejected(mem_ledger):
    with mem_ledger.invocation("alice"):
        with pytest.raises(RuntimeError):
            with mem_ledger.invocation("bob"):
                pass
        assert mem_ledger.get_caller() == "alice"


def test_token_identity_validity(mem_ledger):
    assert mem_ledger.is_valid_token_identity(str(Pubkey.new_unique()))
    assert not mem_ledger.is_valid_token_identity("not-a-token")
