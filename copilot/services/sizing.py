"""Position sizing.

Exactly one of risk percent / margin is authoritative:
- risk basis:   margin = account_value * risk_percent / 100
- margin basis: risk_percent = margin / account_value * 100, rounded to 0.1
In both cases notional = margin * leverage. Money is rounded to the cent with
Decimal arithmetic so 2% of 9800 at 10x is exactly 196.00 / 1960.00.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal, Optional

from pydantic import BaseModel

from copilot.core.error_codes import TurnError, TurnErrorCode

CENT = Decimal("0.01")
TENTH = Decimal("0.1")


class SizingResult(BaseModel):
    risk_percent: float
    margin_usd: float
    notional_usd: float
    leverage: float
    sizing_basis: Literal["risk", "margin"]


def _d(value: float) -> Decimal:
    return Decimal(str(value))


def notional_for(margin_usd: float, leverage: float) -> float:
    """Notional for a fixed margin, to the cent."""
    return float((_d(margin_usd) * _d(leverage)).quantize(CENT, rounding=ROUND_HALF_UP))


def compute_sizing(
    account_value: float,
    risk_percent: Optional[float] = None,
    margin_usd: Optional[float] = None,
    leverage: Optional[float] = None,
    default_risk_percent: float = 3.0,
    default_leverage: float = 1.0,
) -> SizingResult:
    """
    Derive margin, notional and risk percent.

    Margin wins when both are supplied.

    Raises:
        TurnError(SIZING_UNDERFLOW): derived margin is zero or negative
    """
    lev = _d(leverage if leverage is not None else default_leverage)
    account = _d(account_value)

    if margin_usd is not None:
        margin = _d(margin_usd).quantize(CENT, rounding=ROUND_HALF_UP)
        if margin <= 0 or account <= 0:
            raise TurnError(TurnErrorCode.SIZING_UNDERFLOW, details={"margin_usd": margin_usd})
        risk = (margin / account * 100).quantize(TENTH, rounding=ROUND_HALF_UP)
        # keep risk inside (0, 100] even for tiny or oversized margins
        risk = min(max(risk, TENTH), Decimal(100))
        basis = "margin"
    else:
        risk = _d(risk_percent if risk_percent is not None else default_risk_percent)
        margin = (account * risk / 100).quantize(CENT, rounding=ROUND_HALF_UP)
        if margin <= 0:
            raise TurnError(
                TurnErrorCode.SIZING_UNDERFLOW,
                details={"risk_percent": float(risk), "account_value": account_value},
            )
        basis = "risk"

    notional = (margin * lev).quantize(CENT, rounding=ROUND_HALF_UP)
    return SizingResult(
        risk_percent=float(risk),
        margin_usd=float(margin),
        notional_usd=float(notional),
        leverage=float(lev),
        sizing_basis=basis,
    )
