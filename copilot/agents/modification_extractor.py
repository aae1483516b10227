"""Modification extractor - explicit size/risk/leverage/side-change tokens.

Independent of market extraction. Every field requires explicit vocabulary so
that descriptive text ("I'm short on time", "BTC is up 5%") is never read as a
command.

Examples:
    "change leverage to 5x"           -> leverage=5
    "risk 2% per trade"               -> risk_percent=2
    "use $1,500"                      -> size_usd=1500
    "make it short"                   -> side_flip="short"
    "tighten stop to 42k"             -> stop_loss=42000
"""
import re
from typing import List, Optional, Tuple

from copilot.agents.schemas import Modifications

DEFAULT_MIN_SIZE_USD = 100.0
DEFAULT_MAX_LEVERAGE = 20.0

_NUM = r"(\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?)"

LEVERAGE_PATTERNS = [
    re.compile(rf"{_NUM}\s*x\s*(?:leverage|lev)\b", re.IGNORECASE),             # "10x leverage", "5x lev"
    re.compile(rf"\b(?:leverage|lev)\s*(?:to|of|at|=|:)?\s*{_NUM}\s*x?(?![\d.])", re.IGNORECASE),  # "leverage to 5x"
]

RISK_PATTERNS = [
    # "2% risk", "2% account risk", "1.5% per trade", "2% of account risk"
    re.compile(
        rf"{_NUM}\s*%\s*(?:of\s+(?:my\s+)?(?:account|portfolio|equity)\s+)?(?:account\s+)?(?:risk|per[\s-]?trade)\b",
        re.IGNORECASE,
    ),
    # "risk 2%", "risking 1%", "risk of 2%", "risk to 3%"
    re.compile(rf"\brisk(?:ing)?\s*(?:of|at|to|=|:)?\s*{_NUM}\s*%", re.IGNORECASE),
    # "2% of my account", "5% of portfolio"
    re.compile(rf"{_NUM}\s*%\s*of\s+(?:my\s+)?(?:account|portfolio|equity|balance)\b", re.IGNORECASE),
]

STOP_LOSS_PATTERN = re.compile(
    rf"\b(?:stop[\s-]?loss|stop|sl)\s*(?:at|@|to|of|=|:)?\s*\$?{_NUM}\s*(k)?\b", re.IGNORECASE
)
TAKE_PROFIT_PATTERN = re.compile(
    rf"\b(?:take[\s-]?profit|tp|target)\s*(?:at|@|to|of|=|:)?\s*\$?{_NUM}\s*(k)?\b", re.IGNORECASE
)

PERCENT_NUMBER_PATTERN = re.compile(rf"{_NUM}\s*%")
DOLLAR_SIZE_PATTERN = re.compile(rf"\$\s*{_NUM}\s*(k)?\b", re.IGNORECASE)
BARE_SIZE_PATTERN = re.compile(rf"(?<![\w.$]){_NUM}\s*(k)?(?![\w%.])(?!\s*x\b)(?!\s*%)", re.IGNORECASE)
# Quoted prices ("at 45000", "@ $3k", "entry 2,400") are never sizes
PRICE_PATTERN = re.compile(
    rf"(?:\b(?:at|price|entry|limit)|@)\s*(?:price\s*)?(?:of|=|:)?\s*\$?\s*{_NUM}\s*(k)?\b", re.IGNORECASE
)

# Numbers following these words are dates, not sizes ("by March 2025")
_DATE_CONTEXT = re.compile(
    r"(?:\b(?:jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*|\bby|\bin|\bsince|\buntil|\bq[1-4])\s*$",
    re.IGNORECASE,
)

SIDE_FLIP_PATTERNS = [
    re.compile(r"\b(?:flip|switch|reverse)\b(?:\s+(?:it|this|that|the\s+position|my\s+\w+))?(?:\s+(?:to|into))?\s+(?:a\s+)?(long|short|hedge)\b", re.IGNORECASE),
    re.compile(r"\bmake\s+(?:it|this|that)\s+(?:a\s+)?(long|short|hedge)\b", re.IGNORECASE),
    re.compile(r"\b(long|short|hedge)\s+instead\b", re.IGNORECASE),
    re.compile(r"\binstead\b.{0,20}?\b(long|short|hedge)\b", re.IGNORECASE),
]


def _to_float(raw: str, thousands: Optional[str] = None) -> float:
    value = float(raw.replace(",", ""))
    if thousands:
        value *= 1000
    return value


def _first_match(patterns: List[re.Pattern], text: str) -> Optional[re.Match]:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match
    return None


def _blank_spans(text: str, spans: List[Tuple[int, int]]) -> str:
    """Replace spans with spaces so later scans skip them but offsets survive."""
    chars = list(text)
    for start, end in spans:
        for i in range(start, end):
            chars[i] = " "
    return "".join(chars)


def extract_leverage(text: str, max_leverage: float = DEFAULT_MAX_LEVERAGE) -> Tuple[Optional[float], Optional[float]]:
    """Extract (clamped leverage, requested leverage) from an explicit leverage phrase."""
    match = _first_match(LEVERAGE_PATTERNS, text)
    if not match:
        return None, None
    requested = _to_float(match.group(1))
    if requested < 1:
        return None, requested
    return min(requested, max_leverage), requested


def extract_risk_percent(text: str) -> Optional[float]:
    """Extract risk percent; requires risk/per-trade/account vocabulary and a % token."""
    match = _first_match(RISK_PATTERNS, text)
    if not match:
        return None
    value = _to_float(match.group(1))
    if value <= 0 or value > 100:
        return None
    return value


def extract_stop_loss(text: str) -> Optional[float]:
    match = STOP_LOSS_PATTERN.search(text)
    if not match:
        return None
    value = _to_float(match.group(1), match.group(2))
    return value if value > 0 else None


def extract_take_profit(text: str) -> Optional[float]:
    match = TAKE_PROFIT_PATTERN.search(text)
    if not match:
        return None
    value = _to_float(match.group(1), match.group(2))
    return value if value > 0 else None


def extract_size_usd(text: str, min_size_usd: float = DEFAULT_MIN_SIZE_USD) -> Optional[float]:
    """Extract a USD size ("$1,500", "2000", "2k").

    Numbers belonging to leverage, percentages, stops, targets and quoted
    prices are ignored, as are values under min_size_usd.
    """
    spans: List[Tuple[int, int]] = []
    for pattern in LEVERAGE_PATTERNS + [STOP_LOSS_PATTERN, TAKE_PROFIT_PATTERN, PRICE_PATTERN, PERCENT_NUMBER_PATTERN]:
        spans.extend(m.span() for m in pattern.finditer(text))
    spans.extend(m.span() for m in re.finditer(rf"{_NUM}\s*x\b", text, re.IGNORECASE))
    scrubbed = _blank_spans(text, spans)

    match = DOLLAR_SIZE_PATTERN.search(scrubbed)
    if match:
        value = _to_float(match.group(1), match.group(2))
        return value if value >= min_size_usd else None

    for match in BARE_SIZE_PATTERN.finditer(scrubbed):
        if _DATE_CONTEXT.search(scrubbed[:match.start()]):
            continue
        value = _to_float(match.group(1), match.group(2))
        if value >= min_size_usd:
            return value
    return None


def extract_side_flip(text: str) -> Optional[str]:
    """Side change requires a reassignment verb next to long/short/hedge."""
    match = _first_match(SIDE_FLIP_PATTERNS, text)
    if not match:
        return None
    return match.group(1).lower()


def extract_modifications(
    text: str,
    min_size_usd: float = DEFAULT_MIN_SIZE_USD,
    max_leverage: float = DEFAULT_MAX_LEVERAGE,
) -> Modifications:
    """
    Pull explicit modification tokens out of free text.

    Size and risk percent are mutually exclusive per message: when a risk
    percentage is present no size is reported.
    """
    if not text or not text.strip():
        return Modifications()

    leverage, requested_leverage = extract_leverage(text, max_leverage=max_leverage)
    risk_percent = extract_risk_percent(text)
    size_usd = None if risk_percent is not None else extract_size_usd(text, min_size_usd=min_size_usd)

    return Modifications(
        size_usd=size_usd,
        risk_percent=risk_percent,
        leverage=leverage,
        requested_leverage=requested_leverage,
        side_flip=extract_side_flip(text),
        stop_loss=extract_stop_loss(text),
        take_profit=extract_take_profit(text),
    )
