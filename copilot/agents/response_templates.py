"""Assistant message templates.

Every helper returns a dict with "content" and "render_hints" so the turn
handler can append it to the ledger unchanged.
"""
from typing import Dict, List, Optional

from copilot.agents.schemas import PositionDraft
from copilot.core.error_codes import TurnErrorCode, get_error_message
from copilot.core.markets import InstrumentClass, market_label


def _money(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return f"${value:,.2f}"


def _lev(value: float) -> str:
    return f"{value:g}x"


def draft_card(draft: PositionDraft) -> Dict:
    """Preview card for a freshly created draft."""
    instrument = draft.instrument
    label = market_label(draft.market, instrument)

    if instrument == InstrumentClass.PERP:
        lines = [
            f"Draft: {draft.side.upper()} {label} at {_lev(draft.leverage)}",
            f"Risk {draft.risk_percent:g}% · Margin {_money(draft.margin_usd)} · Notional {_money(draft.notional_usd)}",
            f"Entry {_money(draft.details.entry_price)} · TP {_money(draft.take_profit)} · SL {_money(draft.stop_loss) if draft.stop_loss else 'none'}",
        ]
    elif instrument == InstrumentClass.EVENT:
        lines = [
            f"Draft: {draft.side.upper()} on {label}",
            f"Stake {_money(draft.margin_usd)} ({draft.risk_percent:g}% of account) · Max payout {_money(draft.details.max_payout_usd)}",
        ]
    else:
        lines = [
            f"Draft: deposit {_money(draft.margin_usd)} into {label}",
            f"{draft.details.apy_pct:g}% APY · {draft.risk_percent:g}% of account",
        ]

    hints = {"card": "draft", "instrument": instrument.value}
    if draft.high_risk_reasons:
        lines.append("High risk: " + "; ".join(draft.high_risk_reasons) + ". Proceed, edit, or rewrite?")
        hints["risk_warning"] = True
        hints["reasons"] = list(draft.high_risk_reasons)
    return {"content": "\n".join(lines), "render_hints": hints}


def held_draft_note(draft: PositionDraft) -> Dict:
    """Note appended when a new draft is created while another awaits confirmation."""
    return {
        "content": (
            f"Saved {market_label(draft.market, draft.instrument)} as a separate draft. "
            "It won't execute until you run it; the high-risk draft above still needs your decision."
        ),
        "render_hints": {"held": True},
    }


def executed_card(draft: PositionDraft) -> Dict:
    """Replaces the draft preview once the draft has executed."""
    label = market_label(draft.market, draft.instrument)
    if draft.instrument == InstrumentClass.PERP:
        content = f"Executed: {draft.side.upper()} {label} · Margin {_money(draft.margin_usd)} · Notional {_money(draft.notional_usd)} at {_lev(draft.leverage)}"
    elif draft.instrument == InstrumentClass.EVENT:
        content = f"Executed: {draft.side.upper()} on {label} · Stake {_money(draft.margin_usd)}"
    else:
        content = f"Executed: deposited {_money(draft.margin_usd)} into {label}"
    return {"content": content, "render_hints": {"card": "executed", "instrument": draft.instrument.value}}


def executing_note(draft: PositionDraft) -> Dict:
    return {
        "content": f"Executing {market_label(draft.market, draft.instrument)}...",
        "render_hints": {"executing": True},
    }


def blocked_card(draft: PositionDraft, available: float) -> Dict:
    return {
        "content": (
            f"Blocked: {market_label(draft.market, draft.instrument)} needs {_money(draft.margin_usd)} "
            f"collateral but only {_money(available)} is available. Fund the account to continue."
        ),
        "render_hints": {"card": "blocked", "error_code": TurnErrorCode.INSUFFICIENT_FUNDING.value},
    }


def updated_card(draft: PositionDraft, changed: List[str]) -> Dict:
    label = market_label(draft.market, draft.instrument)
    fields = ", ".join(changed) if changed else "nothing"
    content = (
        f"Updated {label} ({fields}): {draft.side.upper()} at {_lev(draft.leverage)} · "
        f"Risk {draft.risk_percent:g}% · Margin {_money(draft.margin_usd)} · Notional {_money(draft.notional_usd)}"
    )
    return {"content": content, "render_hints": {"card": "updated", "changed": changed}}


def closed_card(draft: PositionDraft) -> Dict:
    label = market_label(draft.market, draft.instrument)
    if draft.instrument == InstrumentClass.EVENT:
        outcome = draft.details.outcome or "lost"
        content = f"Closed {label}: {outcome.upper()} · PnL {_money(draft.realized_pnl_usd)}"
    elif draft.instrument == InstrumentClass.DEFI:
        content = f"Withdrew from {label}: yield {_money(draft.realized_pnl_usd)}"
    else:
        content = f"Closed {draft.side.upper()} {label}: PnL {_money(draft.realized_pnl_usd)} ({draft.realized_pnl_pct:+.2f}%)"
    return {"content": content, "render_hints": {"card": "closed"}}


def clarification(prompt: str, code: TurnErrorCode) -> Dict:
    return {"content": prompt, "render_hints": {"clarification": True, "error_code": code.value}}


def clarification_abandoned() -> Dict:
    return {
        "content": "I still couldn't tell which market you meant, so I dropped that request. Start again with the market name.",
        "render_hints": {"clarification": False},
    }


def error_message(code: TurnErrorCode, message: Optional[str] = None) -> Dict:
    return {"content": message or get_error_message(code), "render_hints": {"error_code": code.value}}


def discarded_note(draft: PositionDraft) -> Dict:
    return {
        "content": f"Discarded the {market_label(draft.market, draft.instrument)} draft.",
        "render_hints": {"discarded": True},
    }


def rewrite_suggestion(suggested_text: str) -> Dict:
    return {
        "content": f"Discarded the high-risk draft. Safer version: \"{suggested_text}\"",
        "render_hints": {"suggested_text": suggested_text},
    }


def reset_note() -> Dict:
    return {"content": "Reset. Nothing pending.", "render_hints": {"reset": True}}


def funded_note(amount: float, balance: float, requeued: int) -> Dict:
    content = f"Added {_money(amount)} USDC. Balance: {_money(balance)}."
    if requeued:
        content += f" Re-queued {requeued} blocked position(s)."
    return {"content": content, "render_hints": {"funded": True}}


def missing_update_value() -> Dict:
    return {
        "content": "What should it change to? For example \"change leverage to 5x\" or \"set risk to 2%\".",
        "render_hints": {"clarification": True},
    }
