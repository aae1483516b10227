"""Intent classification with deterministic, ordered rules.

First match wins:
1. new-trade language + single market           -> CREATE
2. new-trade language + no/ambiguous market     -> CLARIFY
3. edit verb + field token, or explicit side flip
   - market mentioned that matches a position    -> UPDATE (that position)
   - market mentioned, no matching position      -> CREATE
   - no market, a position is selected           -> UPDATE (selection)
   - nothing to target                           -> REJECT
4. edit verb, no selection, no resolvable target -> REJECT
5. default                                       -> CREATE
"""
import re
from enum import Enum
from typing import List, Optional, Sequence

from pydantic import BaseModel

from copilot.agents.schemas import MarketAmbiguous, MarketSingle, Modifications, PositionDraft
from copilot.agents.trade_parser import has_new_trade_language
from copilot.core.markets import InstrumentClass
from copilot.orchestrator.state_machine import OPEN_DRAFT_STATUSES


class IntentType(str, Enum):
    """Turn intent taxonomy - single source of truth."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    CLARIFY = "CLARIFY"
    REJECT = "REJECT"


EDIT_VERB_PATTERN = re.compile(
    r"\b(update|change|adjust|set|raise|lower|tighten|widen|increase|decrease|reduce|bump|move)\b",
    re.IGNORECASE,
)
FIELD_TOKEN_PATTERN = re.compile(
    r"\b(leverage|lev|size|risk|stop|stop[\s-]?loss|sl|tp|take[\s-]?profit|target|margin|notional|stake|amount)\b",
    re.IGNORECASE,
)


class Classification(BaseModel):
    """Classifier output."""
    intent: IntentType
    target_draft_id: Optional[str] = None
    reason: str = ""


def has_edit_verb(text: str) -> bool:
    return bool(EDIT_VERB_PATTERN.search(text))


def has_field_token(text: str) -> bool:
    return bool(FIELD_TOKEN_PATTERN.search(text))


def _positions_for_markets(markets: Sequence[str], positions: Sequence[PositionDraft]) -> List[PositionDraft]:
    """Open positions whose market is one of `markets`, most recent first."""
    matches = [
        p for p in positions
        if p.market in markets and p.status in OPEN_DRAFT_STATUSES
    ]
    return sorted(matches, key=lambda p: p.created_at or "", reverse=True)


def classify_intent(
    text: str,
    market_result,
    modifications: Modifications,
    selected_draft_id: Optional[str] = None,
    open_positions: Sequence[PositionDraft] = (),
    instrument: Optional[InstrumentClass] = None,
) -> Classification:
    """
    Classify a turn.

    Args:
        text: Raw user text
        market_result: MarketNone / MarketSingle / MarketAmbiguous
        modifications: Output of the modification extractor
        selected_draft_id: Draft the user has selected in the UI, if any
        open_positions: The session's non-terminal drafts and positions
        instrument: Detected instrument class

    Returns:
        Classification with intent and, for UPDATE, the target draft id
    """
    new_trade = has_new_trade_language(text, instrument)

    # Rule 1 / 2: new-trade language always creates, never mutates a selection
    if new_trade:
        if isinstance(market_result, MarketSingle):
            return Classification(intent=IntentType.CREATE, reason="new_trade_single_market")
        return Classification(intent=IntentType.CLARIFY, reason="new_trade_unresolved_market")

    edit_verb = has_edit_verb(text)
    update_trigger = (edit_verb and has_field_token(text)) or modifications.side_flip is not None

    # Rule 3
    if update_trigger:
        mentioned = market_result.symbols
        if mentioned:
            matches = _positions_for_markets(mentioned, open_positions)
            if not matches:
                return Classification(intent=IntentType.CREATE, reason="update_market_has_no_position")
            matched_markets = {p.market for p in matches}
            if len(matched_markets) > 1:
                return Classification(intent=IntentType.REJECT, reason="update_target_ambiguous")
            return Classification(
                intent=IntentType.UPDATE,
                target_draft_id=matches[0].draft_id,
                reason="update_market_match",
            )
        if selected_draft_id:
            return Classification(
                intent=IntentType.UPDATE,
                target_draft_id=selected_draft_id,
                reason="update_selected",
            )
        return Classification(intent=IntentType.REJECT, reason="update_no_target")

    # Rule 4
    if edit_verb and not selected_draft_id and not isinstance(market_result, (MarketSingle, MarketAmbiguous)):
        return Classification(intent=IntentType.REJECT, reason="edit_no_target")

    # Rule 5
    return Classification(intent=IntentType.CREATE, reason="default")
