"""
Fixed-Price Allocation Engine

This module converts a base-currency payment into a sale-token allocation at a
single fixed price.

Price Semantics:
- ``unit_price`` is expressed in the base currency's smallest unit (lamports)
  per whole sale token.
- The allocation is ``floor(paid_amount / unit_price) * base_unit_scale``.
  The integer division happens before rescaling, so any part of the payment
  worth less than one unit price is truncated.
- The truncated part is reported by ``calculate_remainder``; the purchase
  engine keeps it as proceeds unless remainder refunds are enabled.
"""
from typing import Tuple

from mcp_fixed_ico.config import LAMPORTS_PER_SOL
from mcp_fixed_ico.errors import SaleNotConfiguredError
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)


def calculate_token_amount(paid_amount: int, unit_price: int, base_unit_scale: int = LAMPORTS_PER_SOL) -> int:
    """
    Calculates the sale-token allocation bought by ``paid_amount``.

    Args:
        paid_amount: The payment in base-currency smallest units.
        unit_price: Base-currency smallest units per whole sale token.
        base_unit_scale: Smallest base-currency units per whole base-currency unit.

    Returns:
        The allocation in sale-token base units.

    Raises:
        SaleNotConfiguredError: If no price has been set.
    """
    if unit_price <= 0:
        raise SaleNotConfiguredError("Token price is not set")

    token_amount = paid_amount // unit_price * base_unit_scale
    logger.debug(f"Allocation for payment {paid_amount} at price {unit_price}: {token_amount}")
    return token_amount


def calculate_remainder(paid_amount: int, unit_price: int) -> int:
    """Returns the part of ``paid_amount`` that buys nothing at ``unit_price``."""
    if unit_price <= 0:
        raise SaleNotConfiguredError("Token price is not set")
    return paid_amount % unit_price


def split_payment(paid_amount: int, unit_price: int, base_unit_scale: int = LAMPORTS_PER_SOL) -> Tuple[int, int]:
    """Returns ``(token_amount, remainder)`` for a payment."""
    return (
        calculate_token_amount(paid_amount, unit_price, base_unit_scale),
        calculate_remainder(paid_amount, unit_price),
    )
