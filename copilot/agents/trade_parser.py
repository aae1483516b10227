"""Trade command parser.

Turns free text into an instrument-class-specific DraftSpec:
- PERP: long/short perpetuals, leverage, stop loss / take profit
- EVENT: yes/no stakes on binary event markets
- DEFI: deposits into yield vaults

The market itself is resolved separately by the market extractor and attached
when the draft is created.
"""
import re
from typing import Optional

from copilot.agents.modification_extractor import (
    DEFAULT_MAX_LEVERAGE,
    DEFAULT_MIN_SIZE_USD,
    SIDE_FLIP_PATTERNS,
    extract_modifications,
)
from copilot.agents.schemas import DefiDraftSpec, EventDraftSpec, Modifications, PerpDraftSpec
from copilot.core.markets import DEFI_VAULTS, EVENT_MARKETS, InstrumentClass

NEW_TRADE_VERB_PATTERN = re.compile(r"\b(open|enter|start|long|short|buy|sell)\b", re.IGNORECASE)

# Side tokens that count as new-trade language per instrument class
EVENT_SIDE_PATTERN = re.compile(r"\b(?:bet|wager)\b|\b(?:yes|no)\s+(?:on|for)\b|\b(?:buy|take)\s+(?:yes|no)\b", re.IGNORECASE)
DEFI_SIDE_PATTERN = re.compile(r"\b(?:deposit|supply|lend)\b", re.IGNORECASE)

EVENT_KEYWORDS = re.compile(r"\b(?:bet|wager|prediction|odds|event\s+market)\b", re.IGNORECASE)
DEFI_KEYWORDS = re.compile(r"\b(?:deposit|supply|lend|yield|vault|apy|farm)\b", re.IGNORECASE)

# Bare "10x" on a trade request; explicit "leverage" vocabulary is handled by
# the modification extractor
BARE_LEVERAGE_PATTERN = re.compile(r"(?<![\w.])(\d+(?:\.\d+)?)\s*x\b", re.IGNORECASE)

SHORT_SIDE_PATTERN = re.compile(r"\b(?:short|sell)\b", re.IGNORECASE)
EVENT_NO_PATTERN = re.compile(r"\b(?:bet|wager|buy|take)\s+no\b|\bno\s+(?:on|for)\b|\bon\s+no\b", re.IGNORECASE)

NO_STOP_LOSS_PATTERNS = [
    re.compile(r"\b(?:no|without|omit|skip)\s+(?:a\s+)?(?:stop[\s-]?loss|sl)\b", re.IGNORECASE),
    re.compile(r"\b(?:stop[\s-]?loss|sl)\s+(?:none|off|disabled)\b", re.IGNORECASE),
    re.compile(r"\b(?:don'?t|do\s+not)\s+(?:set|add|include|use)\s+(?:a\s+)?(?:stop[\s-]?loss|sl)\b", re.IGNORECASE),
]


def _alias_hit(text_lower: str, catalog: dict) -> bool:
    for entry in catalog.values():
        for alias in entry["aliases"]:
            if re.search(rf"\b{re.escape(alias)}\b", text_lower):
                return True
    return False


def detect_instrument(text: str) -> InstrumentClass:
    """
    Detect the instrument class a message is about.

    DeFi vocabulary wins over event vocabulary, which wins over the perp
    default. An explicit "long/short" keeps perps even when an event alias
    appears ("long BTC before the ETF news").
    """
    text_lower = text.lower()
    if DEFI_KEYWORDS.search(text) or _alias_hit(text_lower, DEFI_VAULTS):
        return InstrumentClass.DEFI
    if EVENT_KEYWORDS.search(text):
        return InstrumentClass.EVENT
    if _alias_hit(text_lower, EVENT_MARKETS) and not re.search(r"\b(?:long|short)\b", text_lower):
        return InstrumentClass.EVENT
    return InstrumentClass.PERP


def _strip_side_flips(text: str) -> str:
    for pattern in SIDE_FLIP_PATTERNS:
        text = pattern.sub(" ", text)
    return text


def has_new_trade_language(text: str, instrument: Optional[InstrumentClass] = None) -> bool:
    """True for open/enter/start/long/short/buy/sell or a side token of the instrument class.

    Side words consumed by a side-flip phrase ("make it short") do not count.
    """
    if not text:
        return False
    stripped = _strip_side_flips(text)
    if NEW_TRADE_VERB_PATTERN.search(stripped):
        return True
    instrument = instrument or detect_instrument(text)
    if instrument == InstrumentClass.EVENT:
        return bool(EVENT_SIDE_PATTERN.search(stripped))
    if instrument == InstrumentClass.DEFI:
        return bool(DEFI_SIDE_PATTERN.search(stripped))
    return False


def wants_no_stop_loss(text: str) -> bool:
    return any(p.search(text) for p in NO_STOP_LOSS_PATTERNS)


def extract_bare_leverage(text: str) -> Optional[float]:
    match = BARE_LEVERAGE_PATTERN.search(text)
    if not match:
        return None
    return float(match.group(1))


def parse_perp_side(text: str) -> str:
    return "short" if SHORT_SIDE_PATTERN.search(_strip_side_flips(text)) else "long"


def parse_event_side(text: str) -> str:
    return "no" if EVENT_NO_PATTERN.search(text) else "yes"


def parse_draft_spec(
    text: str,
    instrument: Optional[InstrumentClass] = None,
    modifications: Optional[Modifications] = None,
    min_size_usd: float = DEFAULT_MIN_SIZE_USD,
    max_leverage: float = DEFAULT_MAX_LEVERAGE,
):
    """
    Parse a trade request into a DraftSpec for its instrument class.

    Args:
        text: Raw user text
        instrument: Instrument class (detected from text when omitted)
        modifications: Pre-extracted modifications (extracted when omitted)

    Returns:
        PerpDraftSpec, EventDraftSpec or DefiDraftSpec
    """
    instrument = instrument or detect_instrument(text)
    mods = modifications or extract_modifications(text, min_size_usd=min_size_usd, max_leverage=max_leverage)

    if instrument == InstrumentClass.EVENT:
        return EventDraftSpec(
            side=parse_event_side(text),
            risk_percent=mods.risk_percent,
            margin_usd=mods.size_usd,
            source_text=text,
        )

    if instrument == InstrumentClass.DEFI:
        return DefiDraftSpec(
            risk_percent=mods.risk_percent,
            margin_usd=mods.size_usd,
            source_text=text,
        )

    leverage = mods.leverage
    if leverage is None:
        bare = extract_bare_leverage(text)
        if bare is not None and bare >= 1:
            leverage = min(bare, max_leverage)

    omit_stop_loss = wants_no_stop_loss(text)
    return PerpDraftSpec(
        side=parse_perp_side(text),
        leverage=leverage,
        risk_percent=mods.risk_percent,
        margin_usd=mods.size_usd,
        stop_loss=None if omit_stop_loss else mods.stop_loss,
        take_profit=mods.take_profit,
        omit_stop_loss=omit_stop_loss,
        source_text=text,
    )


def apply_modifications(spec, mods: Modifications):
    """Overlay explicit modifications onto a parked spec (clarification resume)."""
    data = spec.model_dump()
    if mods.size_usd is not None:
        data["margin_usd"] = mods.size_usd
        data["risk_percent"] = None
    elif mods.risk_percent is not None:
        data["risk_percent"] = mods.risk_percent
        data["margin_usd"] = None
    if spec.instrument == "perp":
        if mods.leverage is not None:
            data["leverage"] = mods.leverage
        if mods.stop_loss is not None:
            data["stop_loss"] = mods.stop_loss
            data["omit_stop_loss"] = False
        if mods.take_profit is not None:
            data["take_profit"] = mods.take_profit
        if mods.side_flip in ("long", "short"):
            data["side"] = mods.side_flip
        elif mods.side_flip == "hedge":
            data["side"] = "short" if spec.side == "long" else "long"
    return type(spec)(**data)
