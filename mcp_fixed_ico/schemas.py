"""
Pydantic Data Models and Validation Schemas

This module defines the data models for the fixed-price sale using Pydantic.

Key Components:
- Phase Enum: the sale's temporal status, derived from time and configuration
- SaleConfig: the owner-managed sale parameters (the configuration store)
- SaleOptions: opt-in stricter behaviors for a sale instance
- PurchaseReceipt / WithdrawalReceipt: results of fund-moving operations
- SaleInfo: read-only snapshot of every public view

SaleConfig validates on assignment, so a rejected value (for example a negative
price) leaves the stored configuration untouched.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Phase(str, Enum):
    not_started = "not_started"
    active = "active"
    ended = "ended"


class SaleConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    sale_token_id: Optional[str] = None
    # Base-currency smallest units per whole sale token
    unit_price: int = Field(0, ge=0)
    # Max payment accepted per purchase call, None means unlimited
    buy_limit: Optional[int] = Field(None, ge=0)
    activation_time: int = Field(0, ge=0)
    duration: int = Field(0, ge=0)


class SaleOptions(BaseModel):
    lock_on_activation: bool = False
    refund_remainder: bool = False
    withdraw_exact_amount: bool = False


class PurchaseReceipt(BaseModel):
    buyer: str
    paid_amount: int
    token_amount: int
    refunded_amount: int = 0
    transfer_tx: str


class WithdrawalReceipt(BaseModel):
    recipient: str
    token_id: str
    amount: int
    transfer_tx: str


class SaleInfo(BaseModel):
    sale_address: str
    owner: str
    status: Phase
    sale_token_id: Optional[str] = None
    unit_price: int
    buy_limit: Optional[int] = None
    activation_time: int
    duration: int
    token_available: int
