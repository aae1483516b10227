"""Structured error codes for conversation turns.

Every user-facing failure is delivered as an ordinary assistant message; the
codes below let callers, logs and tests tell them apart. INVARIANT_VIOLATION is
the only internal code: it signals a broken programming contract and is never
shown to the user verbatim.
"""
from enum import Enum
from typing import Optional


class TurnErrorCode(str, Enum):
    """Error codes for turn processing."""

    # Market resolution (clarifications, not failures)
    UNRESOLVED_MARKET = "UNRESOLVED_MARKET"
    AMBIGUOUS_MARKET = "AMBIGUOUS_MARKET"

    # Routing
    NO_UPDATE_TARGET = "NO_UPDATE_TARGET"
    DRAFT_NOT_EDITABLE = "DRAFT_NOT_EDITABLE"
    NO_PENDING_CONFIRMATION = "NO_PENDING_CONFIRMATION"

    # Draft lifecycle
    CONCURRENT_DRAFT_CONFLICT = "CONCURRENT_DRAFT_CONFLICT"
    SIZING_UNDERFLOW = "SIZING_UNDERFLOW"
    INSUFFICIENT_FUNDING = "INSUFFICIENT_FUNDING"

    # Programming contract
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"


class TurnError(Exception):
    """User-facing turn failure with structured error code."""

    def __init__(
        self,
        error_code: TurnErrorCode,
        message: Optional[str] = None,
        details: Optional[dict] = None
    ):
        """Initialize turn error.

        Args:
            error_code: Structured error code
            message: Human-readable message (defaults to the code's template)
            details: Optional additional error details
        """
        self.error_code = error_code
        self.message = message or get_error_message(error_code)
        self.details = details or {}
        super().__init__(self.message)


class InvariantViolation(Exception):
    """Raised (in strict mode) when an internal state contract is broken."""

    def __init__(self, invariant: str, message: str, details: Optional[dict] = None):
        self.invariant = invariant
        self.details = details or {}
        super().__init__(f"[{invariant}] {message}")


ERROR_CODE_MESSAGES = {
    TurnErrorCode.UNRESOLVED_MARKET: "Which market do you want to trade?",
    TurnErrorCode.AMBIGUOUS_MARKET: "That mentions more than one market. Which one do you want?",
    TurnErrorCode.NO_UPDATE_TARGET: "Select a position to update first, or mention its market (e.g. \"change BTC leverage to 5x\").",
    TurnErrorCode.DRAFT_NOT_EDITABLE: "That position can't be edited in its current state.",
    TurnErrorCode.NO_PENDING_CONFIRMATION: "There's nothing waiting for confirmation.",
    TurnErrorCode.CONCURRENT_DRAFT_CONFLICT: "You already have a pending draft. Confirm or discard it before starting another.",
    TurnErrorCode.SIZING_UNDERFLOW: "That sizing works out to zero margin. Increase the risk or size and try again.",
    TurnErrorCode.INSUFFICIENT_FUNDING: "Not enough collateral to execute this position. It is blocked until the account is funded.",
    TurnErrorCode.INVARIANT_VIOLATION: "Something went wrong processing that request. Nothing was changed.",
}


def get_error_message(error_code: TurnErrorCode) -> str:
    """Get the user-facing message for an error code."""
    return ERROR_CODE_MESSAGES.get(error_code, "An error occurred.")
