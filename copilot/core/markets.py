"""Supported market catalog and symbol normalization.

Three instrument classes share the strict "supported set" contract:
- perp: perpetual futures, canonical symbol "<BASE>-PERP"
- event: binary event markets, canonical symbol is the event key
- defi: yield vaults, canonical symbol "<PROTOCOL>-<ASSET>"

Anything outside these tables is not a market.
"""
from enum import Enum
from typing import Dict, List, Optional


class InstrumentClass(str, Enum):
    PERP = "perp"
    EVENT = "event"
    DEFI = "defi"


# ---- Perps ----

SUPPORTED_PERP_BASES = ["BTC", "ETH", "SOL", "BNB", "AVAX"]

# alias (upper case) -> base
PERP_ALIASES: Dict[str, str] = {
    "BTC": "BTC", "BITCOIN": "BTC",
    "ETH": "ETH", "ETHEREUM": "ETH", "ETHER": "ETH",
    "SOL": "SOL", "SOLANA": "SOL",
    "BNB": "BNB", "BINANCE": "BNB",
    "AVAX": "AVAX", "AVALANCHE": "AVAX",
}

# Reference marks used for entry / TP / SL defaults
DEFAULT_PRICES: Dict[str, float] = {
    "BTC": 45000.0,
    "ETH": 3500.0,
    "SOL": 100.0,
    "BNB": 300.0,
    "AVAX": 40.0,
}


# ---- Event markets ----

EVENT_MARKETS: Dict[str, Dict] = {
    "FED_CUTS_MAR_2025": {
        "label": "Fed cuts in March 2025",
        "aliases": ["fed", "rate cut", "rate cuts", "fomc"],
    },
    "BTC_ETF_APPROVAL_2025": {
        "label": "BTC ETF Approval 2025",
        "aliases": ["etf"],
    },
    "US_ELECTION_2024": {
        "label": "US Election 2024",
        "aliases": ["election"],
    },
}

EVENT_PAYOUT_MULTIPLE = 1.7


# ---- DeFi vaults ----

DEFI_VAULTS: Dict[str, Dict] = {
    "KAMINO-USDC": {"protocol": "Kamino", "asset": "USDC", "apy_pct": 8.5, "aliases": ["kamino"]},
    "JET-USDC": {"protocol": "Jet", "asset": "USDC", "apy_pct": 6.2, "aliases": ["jet"]},
    "ROOTSFI-USDC": {"protocol": "RootsFi", "asset": "USDC", "apy_pct": 7.1, "aliases": ["rootsfi", "roots"]},
    "AAVE-USDC": {"protocol": "Aave", "asset": "USDC", "apy_pct": 4.8, "aliases": ["aave"]},
}

COLLATERAL_SYMBOL = "USDC"


def to_perp_symbol(base: str) -> str:
    """
    Convert base asset to canonical perp symbol.

    Examples:
        "btc" -> "BTC-PERP"
        "ETH-PERP" -> "ETH-PERP"
    """
    base = base.upper().strip()
    if base.endswith("-PERP"):
        return base
    return f"{base}-PERP"


def to_base(symbol: str) -> str:
    """
    Convert a canonical symbol to its base asset.

    Examples:
        "SOL-PERP" -> "SOL"
        "sol" -> "SOL"
    """
    symbol = symbol.upper().strip()
    if "-" in symbol:
        return symbol.split("-")[0]
    return symbol


def normalize_perp_alias(token: str) -> Optional[str]:
    """Map a free-text token to a supported perp symbol, or None."""
    base = PERP_ALIASES.get(token.upper().strip())
    if base and base in SUPPORTED_PERP_BASES:
        return to_perp_symbol(base)
    return None


def supported_markets(instrument: InstrumentClass) -> List[str]:
    """Canonical symbols supported for an instrument class, in prompt order."""
    if instrument == InstrumentClass.PERP:
        return [to_perp_symbol(b) for b in SUPPORTED_PERP_BASES]
    if instrument == InstrumentClass.EVENT:
        return list(EVENT_MARKETS.keys())
    if instrument == InstrumentClass.DEFI:
        return list(DEFI_VAULTS.keys())
    raise ValueError(f"Unknown instrument class: {instrument}")


def is_supported(symbol: str, instrument: InstrumentClass) -> bool:
    return symbol in supported_markets(instrument)


def market_label(symbol: str, instrument: InstrumentClass) -> str:
    """Human label for prompts and cards."""
    if instrument == InstrumentClass.EVENT and symbol in EVENT_MARKETS:
        return EVENT_MARKETS[symbol]["label"]
    if instrument == InstrumentClass.DEFI and symbol in DEFI_VAULTS:
        vault = DEFI_VAULTS[symbol]
        return f"{vault['protocol']} {vault['asset']} vault"
    return symbol


def reference_price(symbol: str) -> Optional[float]:
    return DEFAULT_PRICES.get(to_base(symbol))
