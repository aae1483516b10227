"""Strict market extraction.

Maps free text to zero, one or several canonical market symbols. There is no
fallback market: callers must treat MarketNone / MarketAmbiguous as a hard stop
and ask the user.

Examples:
    "open long on eth"      -> MarketSingle("ETH-PERP")
    "short btc perp"        -> MarketSingle("BTC-PERP")
    "long btc and eth"      -> MarketAmbiguous(["BTC-PERP", "ETH-PERP"])
    "what do you think?"    -> MarketNone()
"""
import re
from typing import List, Optional, Set

from copilot.agents.schemas import MarketAmbiguous, MarketNone, MarketSingle
from copilot.core.markets import (
    DEFI_VAULTS,
    EVENT_MARKETS,
    PERP_ALIASES,
    SUPPORTED_PERP_BASES,
    InstrumentClass,
    market_label,
    normalize_perp_alias,
    supported_markets,
    to_perp_symbol,
)

TRADE_VERBS = ("open", "long", "short", "buy", "sell", "enter", "start", "new")
TRADE_VERB_WINDOW_TOKENS = 6

# Longest aliases first so "ETHEREUM" wins over "ETH" in alternations
_ALIAS_ALT = "|".join(sorted((re.escape(a) for a in PERP_ALIASES), key=len, reverse=True))
_PERP_QUALIFIER = r"(?:\s+perp|\s+perpetual|\s+perps|[-_]perp)"

SIDE_ADJACENT_PATTERN = re.compile(
    rf"\b(?:long|short)\s+({_ALIAS_ALT})(?:\s+perps?|\s+perpetual)?\b", re.IGNORECASE
)
PREPOSITION_PATTERN = re.compile(rf"\b(?:for|on|in)\s+({_ALIAS_ALT})\b", re.IGNORECASE)
PERP_SUFFIX_PATTERN = re.compile(rf"\b({_ALIAS_ALT}){_PERP_QUALIFIER}\b", re.IGNORECASE)
ANY_ALIAS_PATTERN = re.compile(rf"\b({_ALIAS_ALT})\b", re.IGNORECASE)
TRADE_VERB_PATTERN = re.compile(rf"\b({'|'.join(TRADE_VERBS)})\b", re.IGNORECASE)
_TOKEN_PATTERN = re.compile(r"[A-Za-z0-9$%.,_-]+")


def has_trade_verb(text: str) -> bool:
    """Check if text contains any trade verb."""
    return bool(TRADE_VERB_PATTERN.search(text))


def _collect(pattern: re.Pattern, text: str, found: Set[str]) -> None:
    for match in pattern.finditer(text):
        symbol = normalize_perp_alias(match.group(1))
        if symbol:
            found.add(symbol)


def _tickers_near_trade_verbs(text: str) -> Set[str]:
    """Bare tickers within a few tokens of a trade verb."""
    tokens = [t.strip(".,").lower() for t in _TOKEN_PATTERN.findall(text)]
    verb_positions = [i for i, tok in enumerate(tokens) if tok in TRADE_VERBS]
    found: Set[str] = set()
    if not verb_positions:
        return found
    for i, tok in enumerate(tokens):
        ticker = tok.upper()
        if ticker not in SUPPORTED_PERP_BASES:
            continue
        if any(abs(i - v) <= TRADE_VERB_WINDOW_TOKENS for v in verb_positions):
            found.add(to_perp_symbol(ticker))
    return found


def _ordered(found: Set[str], instrument: InstrumentClass) -> List[str]:
    order = supported_markets(instrument)
    return sorted(found, key=lambda s: order.index(s) if s in order else len(order))


def _arbitrate(found: Set[str], instrument: InstrumentClass):
    candidates = _ordered(found, instrument)
    if not candidates:
        return MarketNone()
    if len(candidates) == 1:
        return MarketSingle(symbol=candidates[0])
    return MarketAmbiguous(candidates=candidates)


def extract_perp_market(text: str):
    """Extract a perp market using the prioritized pattern rules."""
    found: Set[str] = set()

    # 1. "<side> <SYMBOL>" adjacency, optional perp qualifier
    _collect(SIDE_ADJACENT_PATTERN, text, found)
    # 2. "for/on/in <SYMBOL>"
    _collect(PREPOSITION_PATTERN, text, found)
    # 3. "<SYMBOL> perp" suffix
    _collect(PERP_SUFFIX_PATTERN, text, found)
    # 4. bare ticker near a trade verb (only when a trade verb exists at all)
    if has_trade_verb(text):
        found |= _tickers_near_trade_verbs(text)
    # 5. any alias anywhere, only if nothing above matched
    if not found:
        _collect(ANY_ALIAS_PATTERN, text, found)

    return _arbitrate(found, InstrumentClass.PERP)


def _extract_from_catalog(text: str, catalog: dict, instrument: InstrumentClass):
    text_lower = text.lower()
    found: Set[str] = set()
    for key, entry in catalog.items():
        for alias in entry["aliases"]:
            if re.search(rf"\b{re.escape(alias)}\b", text_lower):
                found.add(key)
                break
    return _arbitrate(found, instrument)


def extract_market_strict(text: str, instrument: InstrumentClass = InstrumentClass.PERP):
    """
    Extract the market a message refers to.

    Returns:
        MarketNone, MarketSingle or MarketAmbiguous. Never a default market.
    """
    if not text or not text.strip():
        return MarketNone()
    if instrument == InstrumentClass.PERP:
        return extract_perp_market(text)
    if instrument == InstrumentClass.EVENT:
        return _extract_from_catalog(text, EVENT_MARKETS, instrument)
    if instrument == InstrumentClass.DEFI:
        return _extract_from_catalog(text, DEFI_VAULTS, instrument)
    raise ValueError(f"Unknown instrument class: {instrument}")


def _join_choices(choices: List[str]) -> str:
    if len(choices) <= 1:
        return "".join(choices)
    if len(choices) == 2:
        return f"{choices[0]} or {choices[1]}"
    return ", ".join(choices[:-1]) + f", or {choices[-1]}"


def market_clarification_prompt(result, instrument: InstrumentClass = InstrumentClass.PERP) -> Optional[str]:
    """Deterministic clarification prompt for a missing or ambiguous market.

    Returns None for a resolved (single) market.
    """
    if isinstance(result, MarketSingle):
        return None
    if isinstance(result, MarketAmbiguous):
        choices = [_choice_label(s, instrument) for s in result.candidates]
    else:
        choices = [_choice_label(s, instrument) for s in supported_markets(instrument)]

    noun = {
        InstrumentClass.PERP: "market",
        InstrumentClass.EVENT: "event market",
        InstrumentClass.DEFI: "vault",
    }[instrument]
    return f"Which {noun} do you want: {_join_choices(choices)}?"


def _choice_label(symbol: str, instrument: InstrumentClass) -> str:
    if instrument == InstrumentClass.PERP:
        return symbol
    return f"{market_label(symbol, instrument)} ({symbol})"
