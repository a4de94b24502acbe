"""
Sale window evaluation.

The phase is never stored: it is derived from the current ledger time and the
configured activation time and duration. The window is half-open, so a sale
with a zero duration ends at the very moment it activates.
"""
from mcp_fixed_ico.errors import NotYetStartedError, SaleFinishedError
from mcp_fixed_ico.schemas import Phase


def evaluate_phase(now: int, activation_time: int, duration: int) -> Phase:
    """Returns the sale phase at ``now``."""
    if now < activation_time:
        return Phase.not_started
    if now < activation_time + duration:
        return Phase.active
    return Phase.ended


def require_active(now: int, activation_time: int, duration: int) -> None:
    """
    Rejects the call unless the sale is accepting purchases at ``now``.

    Raises:
        NotYetStartedError: ``now`` is before the activation time.
        SaleFinishedError: ``now`` is at or past the end of the window.
    """
    if now < activation_time:
        raise NotYetStartedError(f"ICO is not started. Current time: {now}, activation: {activation_time}")
    if now >= activation_time + duration:
        raise SaleFinishedError(f"ICO is finished. Current time: {now}, ended: {activation_time + duration}")
