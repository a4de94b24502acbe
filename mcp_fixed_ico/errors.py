"""
Custom Exception Classes for the Fixed-Price ICO System

This module defines the exception classes raised by the sale engine and by the
ledger adapters it talks to. Every sale rejection aborts the whole invocation,
so no partial state is ever committed when one of these is raised.

Exception Categories:
- Authorization Errors: owner-only operation invoked by someone else
- Configuration Errors: invalid sale token, schedule or locked configuration
- Sale State Errors: purchase attempted outside the active window
- Purchase Errors: zero payment, buy limit, inventory
- Treasury Errors: nothing left to withdraw
- Ledger Errors: transaction validation, transfer and balance failures
- Rate Limiting Errors: related to API usage limits

Each sale error carries a stable ``code`` so callers can branch on the kind of
failure without parsing messages.
"""


class SaleError(Exception):
    """Base class for every rejection raised by the sale engine."""

    code = "SaleError"


class UnauthorizedError(SaleError):
    """Raised when a non-owner calls an owner-only operation."""

    code = "Unauthorized"


class InvalidTokenError(SaleError):
    """Raised when a sale token identity fails the ledger validity check."""

    code = "InvalidToken"


class InvalidScheduleError(SaleError):
    """Raised when the activation time is not strictly in the future."""

    code = "InvalidSchedule"


class ConfigurationLockedError(SaleError):
    """Raised when configuration changes are locked because the sale has started."""

    code = "ConfigurationLocked"


class SaleNotConfiguredError(SaleError):
    """Raised when a purchase is attempted before a token and price are set."""

    code = "SaleNotConfigured"


class NotYetStartedError(SaleError):
    """Raised when a purchase is attempted before the activation time."""

    code = "NotYetStarted"


class SaleFinishedError(SaleError):
    """Raised when a purchase is attempted after the sale window closed."""

    code = "SaleFinished"


class ZeroPaymentError(SaleError):
    """Raised when a purchase carries no payment."""

    code = "ZeroPayment"


class BuyLimitExceededError(SaleError):
    """Raised when a single payment exceeds the configured buy limit."""

    code = "BuyLimitExceeded"


class InsufficientInventoryError(SaleError):
    """Raised when the requested or derived token amount exceeds the sale balance."""

    code = "InsufficientInventory"


class NothingToWithdrawError(SaleError):
    """Raised when the owner withdraws proceeds from an empty balance."""

    code = "NothingToWithdraw"


class InsufficientFundsError(Exception):
    """Raised when an account cannot cover the payment it attaches to a call."""


class InvalidTransactionError(Exception):
    """Raised for invalid transaction signatures or structures."""


class TransactionFailedError(Exception):
    """Raised if a transfer fails on the ledger."""


class TokenBalanceError(Exception):
    """Raised when there are issues fetching token balance from the blockchain."""


class RateLimitExceededError(Exception):
    """Raised when the rate limit is exceeded for API requests."""


class ConfigurationError(Exception):
    """Raised when there are configuration-related errors."""
