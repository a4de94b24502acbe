import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from mcp_fixed_ico.config import BASE_CURRENCY_ID, LAMPORTS_PER_SOL
from mcp_fixed_ico.ico_manager import SaleInstance
from mcp_fixed_ico.ledger import InMemoryLedger

NOW = 1_700_000_000
START = NOW + 100
DURATION = 3600
PRICE = 2
INVENTORY = 1000 * LAMPORTS_PER_SOL


def buy(sale, ledger, buyer, paid_amount):
    """Funds ``buyer`` and runs one purchase with the payment attached."""
    ledger.credit(buyer, BASE_CURRENCY_ID, paid_amount)
    with sale.invocation(buyer, payment=paid_amount):
        return sale.buy(paid_amount)


@pytest.fixture
def owner_keypair():
    return Keypair()


@pytest.fixture
def owner(owner_keypair):
    return str(owner_keypair.pubkey())


@pytest.fixture
def buyer():
    return str(Keypair().pubkey())


@pytest.fixture
def sale_address():
    return str(Keypair().pubkey())


@pytest.fixture
def token_id():
    return str(Pubkey.new_unique())


@pytest.fixture
def ledger():
    return InMemoryLedger(now=NOW)


@pytest.fixture
def sale(ledger, owner, sale_address):
    return SaleInstance(ledger, owner=owner, address=sale_address)


@pytest.fixture
def active_sale(sale, ledger, owner, token_id):
    """A configured sale at its activation time with 1000 whole tokens in stock."""
    with sale.invocation(owner):
        sale.set_sale_token(token_id)
        sale.set_unit_price(PRICE)
        sale.set_times(START, DURATION)
    ledger.credit(sale.address, token_id, INVENTORY)
    ledger.set_time(START)
    return sale
