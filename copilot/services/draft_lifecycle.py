"""Draft lifecycle manager.

Owns creation, the single authorized update path and every status
transition of a position draft:

    draft -> queued -> executing -> executed -> closed
    queued/executing -> blocked (insufficient collateral)
    blocked -> queued (after funding)
    draft/queued/executing/blocked -> discarded

Each transition recomputes account exposure.
"""
import random
from typing import Callable, List, Optional, Tuple

from copilot.agents.intent_classifier import IntentType
from copilot.agents.schemas import (
    DefiDetails,
    DraftUpdates,
    EventDetails,
    PerpDetails,
    PositionDraft,
)
from copilot.core.diagnostics import Diagnostics
from copilot.core.error_codes import TurnError, TurnErrorCode
from copilot.core.ids import new_id
from copilot.core.logging import get_logger
from copilot.core.markets import (
    DEFI_VAULTS,
    EVENT_MARKETS,
    EVENT_PAYOUT_MULTIPLE,
    InstrumentClass,
    is_supported,
    reference_price,
)
from copilot.db.repo.drafts_repo import DraftsRepo
from copilot.orchestrator.context import TurnContext
from copilot.orchestrator.state_machine import DraftStatus, can_transition_draft
from copilot.services.account import SimulatedAccount
from copilot.services.sizing import compute_sizing, notional_for

logger = get_logger(__name__)

# Default bracket around the reference price
TAKE_PROFIT_PCT = 4.0
STOP_LOSS_PCT = 3.0

# Simulated close outcomes
PERP_CLOSE_PNL_PCT = {"long": 0.8, "short": 0.6}
EVENT_WIN_PROBABILITY = 0.55

EDITABLE_DRAFT_STATUSES = frozenset({DraftStatus.DRAFT, DraftStatus.QUEUED, DraftStatus.BLOCKED})
COMMITTED_STATUSES = (DraftStatus.EXECUTING, DraftStatus.EXECUTED)


def default_brackets(entry_price: Optional[float], side: str) -> Tuple[Optional[float], Optional[float]]:
    """(take_profit, stop_loss) defaults for a perp entry."""
    if not entry_price:
        return None, None
    if side == "short":
        return round(entry_price * (1 - TAKE_PROFIT_PCT / 100), 2), round(entry_price * (1 + STOP_LOSS_PCT / 100), 2)
    return round(entry_price * (1 + TAKE_PROFIT_PCT / 100), 2), round(entry_price * (1 - STOP_LOSS_PCT / 100), 2)


def _default_event_resolver(draft: PositionDraft) -> bool:
    return random.random() < EVENT_WIN_PROBABILITY


class DraftLifecycleManager:
    """Single owner of draft state."""

    def __init__(
        self,
        drafts_repo: DraftsRepo,
        account: SimulatedAccount,
        diagnostics: Diagnostics,
        settings,
        event_resolver: Optional[Callable[[PositionDraft], bool]] = None,
    ):
        self.drafts = drafts_repo
        self.account = account
        self.diagnostics = diagnostics
        self.settings = settings
        self.event_resolver = event_resolver or _default_event_resolver

    # ---- Creation ----

    def create_draft(self, ctx: TurnContext, spec, market: str) -> PositionDraft:
        """
        Create a draft in `draft` status.

        Raises:
            TurnError(UNRESOLVED_MARKET): no market or unsupported market
            TurnError(CONCURRENT_DRAFT_CONFLICT): a same-class draft is already pending
            TurnError(SIZING_UNDERFLOW): derived margin <= 0
        """
        instrument = InstrumentClass(spec.instrument)
        if not market or not is_supported(market, instrument):
            raise TurnError(TurnErrorCode.UNRESOLVED_MARKET, details={"market": market})

        pending = self.drafts.find_in_status(ctx.session_id, instrument.value, DraftStatus.DRAFT)
        if pending:
            raise TurnError(
                TurnErrorCode.CONCURRENT_DRAFT_CONFLICT,
                details={"draft_id": pending[0].draft_id, "market": pending[0].market},
            )

        leverage = spec.leverage if instrument == InstrumentClass.PERP else 1.0
        if leverage is None:
            leverage = self.settings.default_leverage
        if spec.margin_usd is not None:
            sizing = compute_sizing(self.account.get_account_value(), margin_usd=spec.margin_usd, leverage=leverage)
        else:
            risk_percent = spec.risk_percent if spec.risk_percent is not None else self.settings.default_risk_percent
            sizing = self.account.compute_sizing_from_risk(None, risk_percent=risk_percent, leverage=leverage)

        stop_loss = take_profit = None
        if instrument == InstrumentClass.PERP:
            entry = reference_price(market)
            default_tp, default_sl = default_brackets(entry, spec.side)
            take_profit = spec.take_profit or default_tp
            stop_loss = None if spec.omit_stop_loss else (spec.stop_loss or default_sl)
            details = PerpDetails(entry_price=entry, liq_buffer_pct=round(100.0 / sizing.leverage, 2))
        elif instrument == InstrumentClass.EVENT:
            details = EventDetails(
                event_label=EVENT_MARKETS[market]["label"],
                max_payout_usd=round(sizing.margin_usd * EVENT_PAYOUT_MULTIPLE, 2),
            )
        else:
            vault = DEFI_VAULTS[market]
            details = DefiDetails(protocol=vault["protocol"], asset=vault["asset"], apy_pct=vault["apy_pct"])

        draft = PositionDraft(
            draft_id=new_id("draft_"),
            session_id=ctx.session_id,
            instrument=instrument,
            side=spec.side,
            market=market,
            risk_percent=sizing.risk_percent,
            leverage=sizing.leverage,
            margin_usd=sizing.margin_usd,
            notional_usd=sizing.notional_usd,
            stop_loss=stop_loss,
            take_profit=take_profit,
            sizing_basis=sizing.sizing_basis,
            status=DraftStatus.DRAFT,
            origin_key=ctx.turn_key,
            source_text=spec.source_text,
            details=details,
        )
        draft = self.drafts.insert(draft)
        logger.info(
            "Created %s draft %s on %s", instrument.value, draft.draft_id, market,
            extra={**ctx.log_extra(), "draft_id": draft.draft_id, "event": "draft_created"},
        )
        return draft

    def attach_risk_reasons(self, draft: PositionDraft, reasons: List[str]) -> PositionDraft:
        """Record the high-risk gate's verdict on a fresh draft."""
        if not reasons:
            return draft
        return self.drafts.save(draft.model_copy(update={"high_risk_reasons": list(reasons)}))

    # ---- The update path ----

    def _guard_not_creating(self, ctx: TurnContext, draft_id: str) -> bool:
        return self.diagnostics.check(
            ctx.intent != IntentType.CREATE,
            "update_during_create",
            "draft update attempted inside a CREATE turn",
            session_id=ctx.session_id,
            draft_id=draft_id,
            turn_key=ctx.turn_key,
        )

    def _load(self, draft_id: str) -> PositionDraft:
        draft = self.drafts.get(draft_id)
        if draft is None:
            raise TurnError(TurnErrorCode.NO_UPDATE_TARGET, details={"draft_id": draft_id})
        return draft

    def update_draft(
        self, ctx: TurnContext, draft_id: str, updates: DraftUpdates
    ) -> Optional[Tuple[PositionDraft, List[str]]]:
        """Mutate a not-yet-executed draft.

        Returns (draft, changed_fields), or None when the call was refused by a
        non-strict invariant check.

        Raises:
            TurnError(DRAFT_NOT_EDITABLE): draft is executing, executed or terminal
        """
        if not self._guard_not_creating(ctx, draft_id):
            return None
        draft = self._load(draft_id)
        if draft.status not in EDITABLE_DRAFT_STATUSES:
            raise TurnError(TurnErrorCode.DRAFT_NOT_EDITABLE, details={"draft_id": draft_id, "status": draft.status.value})

        updated, changed = self._apply_updates(draft, updates)
        saved = self.drafts.save(updated)
        logger.info(
            "Updated draft %s: %s", draft_id, changed,
            extra={**ctx.log_extra(), "draft_id": draft_id, "event": "draft_updated"},
        )
        return saved, changed

    def update_executed(
        self, ctx: TurnContext, draft_id: str, updates: DraftUpdates
    ) -> Optional[Tuple[PositionDraft, List[str]]]:
        """Mutate a live (executed) position. Margin changes move collateral.

        Raises:
            TurnError(DRAFT_NOT_EDITABLE): position is not executed
            TurnError(INSUFFICIENT_FUNDING): margin increase exceeds collateral
        """
        if not self._guard_not_creating(ctx, draft_id):
            return None
        draft = self._load(draft_id)
        if draft.status != DraftStatus.EXECUTED:
            raise TurnError(TurnErrorCode.DRAFT_NOT_EDITABLE, details={"draft_id": draft_id, "status": draft.status.value})

        updated, changed = self._apply_updates(draft, updates)
        delta = round(updated.margin_usd - draft.margin_usd, 2)
        if delta > 0 and not self.account.has_collateral_for(delta):
            raise TurnError(
                TurnErrorCode.INSUFFICIENT_FUNDING,
                details={"required": delta, "available": self.account.available_collateral()},
            )
        saved = self.drafts.save(updated)
        if delta:
            self.account.adjust_margin(saved, delta)
        self._recompute_exposure()
        logger.info(
            "Updated executed position %s: %s", draft_id, changed,
            extra={**ctx.log_extra(), "draft_id": draft_id, "event": "position_updated"},
        )
        return saved, changed

    def _apply_updates(self, draft: PositionDraft, updates: DraftUpdates) -> Tuple[PositionDraft, List[str]]:
        """Apply updates and re-derive sizing, preserving the sizing basis."""
        changes = {}
        changed: List[str] = []
        is_perp = draft.instrument == InstrumentClass.PERP

        leverage = draft.leverage
        if is_perp and updates.leverage is not None and updates.leverage != draft.leverage:
            leverage = min(updates.leverage, self.settings.max_leverage)
            changed.append("leverage")

        if updates.margin_usd is not None:
            sizing = compute_sizing(self.account.get_account_value(), margin_usd=updates.margin_usd, leverage=leverage)
            changes.update(sizing.model_dump())
            changed.append("size")
        elif updates.risk_percent is not None:
            sizing = self.account.compute_sizing_from_risk(None, risk_percent=updates.risk_percent, leverage=leverage)
            changes.update(sizing.model_dump())
            changed.append("risk")
        elif leverage != draft.leverage:
            # margin and risk stay put, only notional follows the new leverage
            changes["leverage"] = leverage
            changes["notional_usd"] = notional_for(draft.margin_usd, leverage)

        if is_perp:
            side = draft.side
            if updates.side in ("long", "short") and updates.side != draft.side:
                side = updates.side
            elif updates.side == "hedge":
                side = "short" if draft.side == "long" else "long"
            if side != draft.side:
                changes["side"] = side
                changed.append("side")
                default_tp, default_sl = default_brackets(draft.details.entry_price, side)
                changes["take_profit"] = default_tp
                if draft.stop_loss is not None:
                    changes["stop_loss"] = default_sl
            if updates.stop_loss is not None:
                changes["stop_loss"] = updates.stop_loss
                changed.append("stop_loss")
            if updates.take_profit is not None:
                changes["take_profit"] = updates.take_profit
                changed.append("take_profit")
            if "leverage" in changes:
                details = draft.details.model_copy(update={"liq_buffer_pct": round(100.0 / changes["leverage"], 2)})
                changes["details"] = details
        elif draft.instrument == InstrumentClass.EVENT and "margin_usd" in changes:
            changes["details"] = draft.details.model_copy(
                update={"max_payout_usd": round(changes["margin_usd"] * EVENT_PAYOUT_MULTIPLE, 2)}
            )

        if draft.instrument != InstrumentClass.PERP:
            changes["leverage"] = 1.0
            changes["notional_usd"] = changes.get("margin_usd", draft.margin_usd)

        return draft.model_copy(update=changes), changed

    # ---- Status transitions ----

    def _recompute_exposure(self) -> None:
        self.account.recompute_exposure(self.drafts.list_by_status(COMMITTED_STATUSES))

    def transition_status(self, draft_id: str, new_status: DraftStatus) -> Optional[PositionDraft]:
        """Move a draft to new_status if the transition table allows it.

        Returns the updated draft, or None when the transition was refused.
        """
        draft = self.drafts.get(draft_id)
        if draft is None:
            self.diagnostics.fail("unknown_draft", "status transition for unknown draft", draft_id=draft_id)
            return None
        if not self.diagnostics.check(
            can_transition_draft(draft.status, new_status),
            "invalid_status_transition",
            f"{draft.status.value} -> {DraftStatus(new_status).value} is not allowed",
            draft_id=draft_id,
        ):
            return None
        if not self.drafts.compare_and_set_status(draft_id, draft.status, new_status):
            logger.warning(
                "Draft %s moved before %s could apply", draft_id, DraftStatus(new_status).value,
                extra={"draft_id": draft_id, "event": "draft_transition_lost"},
            )
            return None

        self._recompute_exposure()
        logger.info(
            "Draft %s: %s -> %s", draft_id, draft.status.value, DraftStatus(new_status).value,
            extra={
                "session_id": draft.session_id,
                "draft_id": draft_id,
                "event": "draft_transition",
                "from_status": draft.status.value,
                "to_status": DraftStatus(new_status).value,
            },
        )
        return self.drafts.get(draft_id)

    def discard(self, draft_id: str) -> Optional[PositionDraft]:
        return self.transition_status(draft_id, DraftStatus.DISCARDED)

    def close_position(self, ctx: TurnContext, draft_id: str) -> PositionDraft:
        """Close an executed position with a simulated realized outcome.

        Raises:
            TurnError(DRAFT_NOT_EDITABLE): not an executed position
        """
        draft = self._load(draft_id)
        if draft.status != DraftStatus.EXECUTED:
            raise TurnError(TurnErrorCode.DRAFT_NOT_EDITABLE, details={"draft_id": draft_id, "status": draft.status.value})

        changes = {}
        if draft.instrument == InstrumentClass.PERP:
            pnl = round(draft.notional_usd * PERP_CLOSE_PNL_PCT[draft.side] / 100, 2)
        elif draft.instrument == InstrumentClass.EVENT:
            won = bool(self.event_resolver(draft))
            pnl = round(draft.margin_usd * (EVENT_PAYOUT_MULTIPLE - 1), 2) if won else -draft.margin_usd
            changes["details"] = draft.details.model_copy(update={"outcome": "won" if won else "lost"})
        else:
            # one month of accrued yield
            pnl = round(draft.margin_usd * draft.details.apy_pct / 100 / 12, 2)
        changes["realized_pnl_usd"] = pnl
        changes["realized_pnl_pct"] = round(pnl / draft.margin_usd * 100, 2)

        self.drafts.save(draft.model_copy(update=changes))
        closed = self.transition_status(draft_id, DraftStatus.CLOSED)
        if closed is None:
            raise TurnError(TurnErrorCode.DRAFT_NOT_EDITABLE, details={"draft_id": draft_id})
        self.account.apply_close(closed)
        logger.info(
            "Closed %s with pnl %.2f", draft_id, pnl,
            extra={**ctx.log_extra(), "draft_id": draft_id, "event": "position_closed"},
        )
        return closed
