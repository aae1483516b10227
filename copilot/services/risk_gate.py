"""High-risk gate.

Runs once, right after a draft is created (never after an update), and decides
whether the draft must wait for explicit confirmation. Signals:

- leverage above the threshold (raw requested value, before clamping)
- full or rest-of-portfolio allocation
- explicit "no stop loss"
- risk percent above the per-trade ceiling

At most three reasons are reported.
"""
import re
from typing import List, Optional

from copilot.agents.modification_extractor import extract_leverage
from copilot.agents.schemas import PositionDraft
from copilot.agents.trade_parser import extract_bare_leverage, wants_no_stop_loss
from copilot.core.markets import DEFI_VAULTS, EVENT_MARKETS, InstrumentClass, to_base

MAX_REASONS = 3

_FUNDS = r"(?:portfolio|balance|account|capital|funds|money|collateral)"

REST_OF_PORTFOLIO_PATTERNS = [
    re.compile(rf"\b(?:rest|remaining|leftover|whatever is left|what's left)\s+(?:of\s+)?(?:my\s+)?{_FUNDS}\b", re.IGNORECASE),
    re.compile(rf"\b{_FUNDS}\s+(?:rest|remaining|leftover|left)\b", re.IGNORECASE),
]

FULL_PORTFOLIO_PATTERNS = [
    re.compile(rf"\b(?:entire|full|all|all in)\s+(?:of\s+)?(?:my\s+)?{_FUNDS}\b", re.IGNORECASE),
    re.compile(rf"(?:\b|^)100%\s+(?:of\s+)?(?:my\s+)?{_FUNDS}\b", re.IGNORECASE),
    re.compile(r"\b(?:use|risk|put|deploy)\s+(?:my\s+)?(?:entire|full|all|everything)\b", re.IGNORECASE),
    re.compile(r"\ball[\s-]in\b", re.IGNORECASE),
]


def requested_leverage(text: str) -> Optional[float]:
    """Raw leverage the user asked for, before any clamping."""
    _, raw = extract_leverage(text, max_leverage=float("inf"))
    if raw is not None:
        return raw
    return extract_bare_leverage(text)


def wants_rest_of_portfolio(text: str) -> bool:
    return any(p.search(text) for p in REST_OF_PORTFOLIO_PATTERNS)


def wants_full_portfolio(text: str) -> bool:
    return any(p.search(text) for p in FULL_PORTFOLIO_PATTERNS)


class HighRiskGate:
    """Risk-escalation detector and safer-rewrite helper."""

    def __init__(self, leverage_threshold: float = 10.0, max_risk_per_trade_pct: float = 5.0):
        self.leverage_threshold = leverage_threshold
        self.max_risk_per_trade_pct = max_risk_per_trade_pct

    @classmethod
    def from_settings(cls, settings) -> "HighRiskGate":
        return cls(
            leverage_threshold=settings.high_risk_leverage_threshold,
            max_risk_per_trade_pct=settings.max_risk_per_trade_pct,
        )

    @property
    def safe_leverage(self) -> float:
        return max(1.0, self.leverage_threshold / 2)

    def assess(self, text: str, draft: PositionDraft) -> List[str]:
        """
        Reasons this draft needs confirmation; empty when it may execute directly.

        Args:
            text: The raw message the draft was created from
            draft: The freshly created draft
        """
        reasons: List[str] = []

        if draft.instrument == InstrumentClass.PERP:
            raw = requested_leverage(text)
            leverage = max(raw or 0.0, draft.leverage)
            if leverage > self.leverage_threshold:
                reasons.append(f"Requested high leverage ({leverage:g}x)")

        # "rest of" wins over "entire" when both match
        if wants_rest_of_portfolio(text):
            reasons.append("Requested remaining portfolio allocation")
        elif wants_full_portfolio(text):
            reasons.append("Requested full-portfolio allocation")

        if draft.instrument == InstrumentClass.PERP and wants_no_stop_loss(text):
            reasons.append("Requested no stop-loss")

        if draft.risk_percent > self.max_risk_per_trade_pct:
            reasons.append(
                f"Risk {draft.risk_percent:g}% exceeds the {self.max_risk_per_trade_pct:g}% per-trade limit"
            )

        return reasons[:MAX_REASONS]

    def suggest_rewrite(self, draft: PositionDraft) -> str:
        """Safer phrasing of a draft's request.

        Leverage and risk are capped, the stop loss is restored and any
        full-portfolio language is dropped. The result parses back to the same
        market and side.
        """
        risk = min(draft.risk_percent, self.max_risk_per_trade_pct)
        if draft.instrument == InstrumentClass.PERP:
            leverage = min(draft.leverage, self.safe_leverage)
            return f"{draft.side} {to_base(draft.market)} {risk:g}% risk {leverage:g}x leverage with a stop loss"
        if draft.instrument == InstrumentClass.EVENT:
            alias = EVENT_MARKETS[draft.market]["aliases"][0]
            return f"bet {draft.side} on {alias} {risk:g}% risk"
        alias = DEFI_VAULTS[draft.market]["aliases"][0]
        return f"deposit {risk:g}% of my account into {alias}"
