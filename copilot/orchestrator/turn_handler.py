"""Turn handler - the single entry point for user input and explicit actions.

Per inbound message:
1. Compute session id, idempotency key and selected draft id synchronously.
2. Drop exact repeats inside the idempotency window.
3. Append the user message (creating the session in the same transaction).
4. Extract market + modifications, classify, and route to
   clarification / rejection / create / update.
5. Return a TurnResult with everything appended during the turn.

User-facing failures become assistant messages; this module never raises
TurnError to its caller.
"""
from typing import Any, Callable, Dict, List, Optional

from copilot.agents import response_templates as templates
from copilot.agents.intent_classifier import IntentType, classify_intent, has_edit_verb, has_field_token
from copilot.agents.market_extractor import extract_market_strict, market_clarification_prompt
from copilot.agents.modification_extractor import extract_modifications
from copilot.agents.schemas import (
    AwaitingConfirmationState,
    AwaitingMarketClarificationState,
    DraftUpdates,
    ExecutingState,
    IdleState,
    MarketAmbiguous,
    MarketSingle,
    Message,
    Modifications,
    PendingIntent,
    PositionDraft,
    TurnResult,
)
from copilot.agents.trade_parser import (
    apply_modifications,
    detect_instrument,
    has_new_trade_language,
    parse_draft_spec,
)
from copilot.core.config import get_settings
from copilot.core.diagnostics import Diagnostics
from copilot.core.error_codes import TurnError, TurnErrorCode
from copilot.core.ids import derive_turn_key, new_id
from copilot.core.logging import get_logger
from copilot.core.time import seconds_ago_iso
from copilot.db.repo.drafts_repo import DraftsRepo
from copilot.db.repo.messages_repo import MessagesRepo, build_message
from copilot.db.repo.sessions_repo import SessionsRepo
from copilot.orchestrator.context import TurnContext
from copilot.orchestrator.state_machine import OPEN_DRAFT_STATUSES, DraftStatus
from copilot.services.account import SimulatedAccount
from copilot.services.conversation_state import ConversationStateStore
from copilot.services.draft_lifecycle import DraftLifecycleManager
from copilot.services.execution import ExecutionScheduler
from copilot.services.risk_gate import HighRiskGate

logger = get_logger(__name__)


class SessionNotFound(LookupError):
    """Action addressed to a session that does not exist."""


class _Reply:
    """Collects what a single turn or action appended."""

    def __init__(self, ctx: TurnContext):
        self.ctx = ctx
        self.messages: List[Message] = []
        self.intent: Optional[str] = None
        self.draft_id: Optional[str] = None
        self.error_code: Optional[str] = None
        self.input_text: Optional[str] = None
        self.suggested_text: Optional[str] = None


class TurnHandler:
    """Orchestrates extraction, classification, drafts, risk gate and state."""

    def __init__(
        self,
        sessions: SessionsRepo,
        messages: MessagesRepo,
        drafts: DraftsRepo,
        state: ConversationStateStore,
        lifecycle: DraftLifecycleManager,
        gate: HighRiskGate,
        scheduler: ExecutionScheduler,
        account: SimulatedAccount,
        diagnostics: Diagnostics,
        settings,
    ):
        self.sessions = sessions
        self.messages = messages
        self.drafts = drafts
        self.state = state
        self.lifecycle = lifecycle
        self.gate = gate
        self.scheduler = scheduler
        self.account = account
        self.diagnostics = diagnostics
        self.settings = settings

    # ---- Helpers ----

    def _say(self, reply: _Reply, payload: Dict[str, Any], draft_id: Optional[str] = None) -> Message:
        message = build_message(
            reply.ctx.session_id,
            "assistant",
            payload["content"],
            draft_id=draft_id,
            render_hints=payload.get("render_hints"),
        )
        self.messages.append(message)
        reply.messages.append(message)
        return message

    def _fail(self, reply: _Reply, error: TurnError) -> None:
        logger.info(
            "Turn ended with %s", error.error_code.value,
            extra={**reply.ctx.log_extra(), "error_code": error.error_code.value, "event": "turn_error"},
        )
        reply.error_code = error.error_code.value
        self._say(reply, templates.error_message(error.error_code, error.message))

    def _result(self, reply: _Reply, duplicate: bool = False) -> TurnResult:
        return TurnResult(
            session_id=reply.ctx.session_id,
            intent=reply.intent,
            messages=reply.messages,
            state=self.state.get(reply.ctx.session_id),
            draft_id=reply.draft_id,
            duplicate=duplicate,
            error_code=reply.error_code,
            input_text=reply.input_text,
            suggested_text=reply.suggested_text,
        )

    def _owned_draft(self, session_id: str, draft_id: Optional[str]) -> Optional[PositionDraft]:
        if not draft_id:
            return None
        draft = self.drafts.get(draft_id)
        if draft is None or draft.session_id != session_id:
            return None
        return draft

    def _require_session(self, session_id: str) -> None:
        if not self.sessions.exists(session_id):
            raise SessionNotFound(session_id)

    # ---- Inbound messages ----

    async def process_turn(
        self,
        text: str,
        session_id: Optional[str] = None,
        selected_draft_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> TurnResult:
        """Process one user message to completion."""
        if not text or not text.strip():
            raise ValueError("Message text must not be empty")
        text = text.strip()

        # Turn-scoped identifiers, fixed before anything asynchronous happens
        existing_session = bool(session_id) and self.sessions.exists(session_id)
        resolved_session_id = session_id or new_id("sess_")
        turn_key = idempotency_key or derive_turn_key(text, scope=session_id or "")

        seen = self.messages.find_recent_by_idempotency_key(
            turn_key,
            since=seconds_ago_iso(self.settings.idempotency_window_seconds),
            session_id=session_id,
        )
        if seen is not None:
            logger.info(
                "Duplicate submission ignored", extra={"session_id": seen.session_id, "turn_key": turn_key, "event": "turn_duplicate"},
            )
            reply = _Reply(TurnContext(session_id=seen.session_id, turn_key=turn_key, request_id=request_id))
            replies = []
            for message in self.messages.list_after(seen.session_id, seen.message_id):
                if message.role == "user":
                    break
                replies.append(message)
            reply.messages = [seen] + replies
            return self._result(reply, duplicate=True)

        user_message = build_message(resolved_session_id, "user", text, idempotency_key=turn_key)
        if existing_session:
            self.messages.append(user_message)
            self.sessions.rename_if_untitled(resolved_session_id, text)
        else:
            self.sessions.create_with_first_message(resolved_session_id, user_message)

        selected = self._owned_draft(resolved_session_id, selected_draft_id)
        ctx = TurnContext(
            session_id=resolved_session_id,
            turn_key=turn_key,
            selected_draft_id=selected.draft_id if selected else None,
            request_id=request_id,
        )
        reply = _Reply(ctx)
        reply.messages.append(user_message)

        try:
            await self._route(reply, text)
        except TurnError as e:
            self._fail(reply, e)

        logger.info(
            "Turn processed", extra={**reply.ctx.log_extra(), "intent": reply.intent, "event": "turn_processed"},
        )
        return self._result(reply)

    async def _route(self, reply: _Reply, text: str) -> None:
        ctx = reply.ctx
        current = self.state.get(ctx.session_id)

        if isinstance(current, AwaitingMarketClarificationState):
            if await self._resume_clarification(reply, text, current):
                return

        instrument = detect_instrument(text)
        mods = extract_modifications(
            text,
            min_size_usd=self.settings.min_size_usd,
            max_leverage=self.settings.max_leverage,
        )
        market = extract_market_strict(text, instrument)
        open_positions = self.drafts.list_for_session(ctx.session_id, OPEN_DRAFT_STATUSES)

        classification = classify_intent(
            text,
            market,
            mods,
            selected_draft_id=ctx.selected_draft_id,
            open_positions=open_positions,
            instrument=instrument,
        )
        reply.intent = classification.intent.value
        reply.ctx = ctx.with_intent(classification.intent, classification.target_draft_id)
        logger.info(
            "Classified turn as %s (%s)", classification.intent.value, classification.reason,
            extra={**reply.ctx.log_extra(), "event": "turn_classified"},
        )

        if classification.intent == IntentType.REJECT:
            raise TurnError(TurnErrorCode.NO_UPDATE_TARGET)

        if classification.intent == IntentType.UPDATE:
            await self._update(reply, classification.target_draft_id, mods)
            return

        if classification.intent == IntentType.CREATE and isinstance(market, MarketSingle):
            spec = parse_draft_spec(
                text, instrument, mods,
                min_size_usd=self.settings.min_size_usd,
                max_leverage=self.settings.max_leverage,
            )
            await self._create(reply, spec, market.symbol, text)
            return

        # CLARIFY, or a CREATE without a usable market
        reply.intent = IntentType.CLARIFY.value
        reply.ctx = reply.ctx.with_intent(IntentType.CLARIFY)
        self._clarify(reply, text, instrument, market, mods)

    def _clarify(self, reply: _Reply, text: str, instrument, market, mods: Modifications) -> None:
        code = TurnErrorCode.AMBIGUOUS_MARKET if isinstance(market, MarketAmbiguous) else TurnErrorCode.UNRESOLVED_MARKET
        reply.error_code = code.value
        prompt = market_clarification_prompt(market, instrument)

        # A pending confirmation is never displaced by a clarification
        if not isinstance(self.state.get(reply.ctx.session_id), AwaitingConfirmationState):
            spec = parse_draft_spec(
                text, instrument, mods,
                min_size_usd=self.settings.min_size_usd,
                max_leverage=self.settings.max_leverage,
            )
            self.state.await_clarification(
                reply.ctx.session_id,
                PendingIntent(instrument=instrument, spec=spec, raw_text=text),
                mods,
                candidates=market.symbols,
            )
        self._say(reply, templates.clarification(prompt, code))

    async def _resume_clarification(self, reply: _Reply, text: str, pending: AwaitingMarketClarificationState) -> bool:
        """Handle a reply while a market clarification is outstanding.

        Returns False when the reply abandons the clarification and should be
        routed as a fresh message.
        """
        ctx = reply.ctx
        intent = pending.pending_intent
        instrument = intent.instrument

        if has_new_trade_language(text, detect_instrument(text)) or (has_edit_verb(text) and has_field_token(text)):
            logger.info("New request abandons clarification", extra={**ctx.log_extra(), "event": "clarification_abandoned"})
            self.state.to_idle(ctx.session_id)
            return False

        market = extract_market_strict(text, instrument)
        if isinstance(market, MarketSingle):
            mods = extract_modifications(
                text,
                min_size_usd=self.settings.min_size_usd,
                max_leverage=self.settings.max_leverage,
            )
            spec = apply_modifications(intent.spec, mods)
            reply.intent = IntentType.CREATE.value
            reply.ctx = ctx.with_intent(IntentType.CREATE)
            await self._create(reply, spec, market.symbol, f"{intent.raw_text} {text}")
            return True

        retries = pending.retries + 1
        reply.intent = IntentType.CLARIFY.value
        reply.ctx = ctx.with_intent(IntentType.CLARIFY)
        if retries >= self.settings.clarification_retry_cap:
            self.state.to_idle(ctx.session_id)
            self._say(reply, templates.clarification_abandoned())
            return True

        code = TurnErrorCode.AMBIGUOUS_MARKET if isinstance(market, MarketAmbiguous) else TurnErrorCode.UNRESOLVED_MARKET
        reply.error_code = code.value
        self.state.await_clarification(
            ctx.session_id,
            intent,
            pending.extracted_modifiers,
            candidates=market.symbols,
            retries=retries,
        )
        self._say(reply, templates.clarification(market_clarification_prompt(market, instrument), code))
        return True

    async def _create(self, reply: _Reply, spec, market: str, risk_text: str) -> None:
        ctx = reply.ctx
        try:
            draft = self.lifecycle.create_draft(ctx, spec, market)
        except TurnError:
            if isinstance(self.state.get(ctx.session_id), AwaitingMarketClarificationState):
                self.state.to_idle(ctx.session_id)
            raise

        reasons = self.gate.assess(risk_text, draft)
        draft = self.lifecycle.attach_risk_reasons(draft, reasons)
        reply.draft_id = draft.draft_id
        self._say(reply, templates.draft_card(draft), draft_id=draft.draft_id)

        current = self.state.get(ctx.session_id)
        if isinstance(current, AwaitingConfirmationState):
            # Independent draft; the pending confirmation keeps its draft id
            self._say(reply, templates.held_draft_note(draft))
            return
        if reasons:
            self.state.await_confirmation(ctx.session_id, draft.draft_id)
            return
        self._start_execution(reply, draft)

    def _start_execution(self, reply: _Reply, draft: PositionDraft) -> None:
        if not self.state.begin_executing(reply.ctx.session_id, draft.draft_id):
            return
        if self.scheduler.submit(reply.ctx.session_id, draft.draft_id) is None:
            self.state.settle(reply.ctx.session_id, draft.draft_id)

    async def _update(self, reply: _Reply, target_draft_id: Optional[str], mods: Modifications) -> None:
        ctx = reply.ctx
        draft = self._owned_draft(ctx.session_id, target_draft_id)
        if draft is None:
            raise TurnError(TurnErrorCode.NO_UPDATE_TARGET)
        reply.draft_id = draft.draft_id

        updates = DraftUpdates(
            risk_percent=mods.risk_percent,
            margin_usd=mods.size_usd,
            leverage=mods.leverage,
            stop_loss=mods.stop_loss,
            take_profit=mods.take_profit,
            side=mods.side_flip,
        )
        if updates.is_empty():
            self._say(reply, templates.missing_update_value())
            return

        if draft.status == DraftStatus.EXECUTED:
            result = self.lifecycle.update_executed(ctx, draft.draft_id, updates)
        else:
            result = self.lifecycle.update_draft(ctx, draft.draft_id, updates)
        if result is None:
            raise TurnError(TurnErrorCode.INVARIANT_VIOLATION)

        updated, changed = result
        self._say(reply, templates.updated_card(updated, changed), draft_id=updated.draft_id)

    # ---- Explicit actions ----

    async def _action(self, session_id: str, intent: str, body: Callable, request_id: Optional[str] = None) -> TurnResult:
        self._require_session(session_id)
        reply = _Reply(TurnContext(session_id=session_id, intent=intent, request_id=request_id))
        reply.intent = intent
        try:
            await body(reply)
        except TurnError as e:
            self._fail(reply, e)
        return self._result(reply)

    def _pending_confirmation(self, session_id: str) -> AwaitingConfirmationState:
        current = self.state.get(session_id)
        if not isinstance(current, AwaitingConfirmationState):
            raise TurnError(TurnErrorCode.NO_PENDING_CONFIRMATION)
        return current

    async def confirm(self, session_id: str, request_id: Optional[str] = None) -> TurnResult:
        """Proceed with the draft parked in AwaitingConfirmation."""
        async def body(reply: _Reply):
            pending = self._pending_confirmation(session_id)
            draft = self._owned_draft(session_id, pending.draft_id)
            if draft is None:
                self.state.to_idle(session_id)
                raise TurnError(TurnErrorCode.NO_PENDING_CONFIRMATION)
            reply.draft_id = draft.draft_id
            self._start_execution(reply, draft)
            self._say(reply, templates.executing_note(draft))
        return await self._action(session_id, "PROCEED", body, request_id)

    async def edit(self, session_id: str, request_id: Optional[str] = None) -> TurnResult:
        """Discard the pending high-risk draft and hand its text back for editing."""
        async def body(reply: _Reply):
            pending = self._pending_confirmation(session_id)
            draft = self._owned_draft(session_id, pending.draft_id)
            if draft is not None:
                self.lifecycle.discard(draft.draft_id)
                reply.draft_id = draft.draft_id
                reply.input_text = draft.source_text
                self._say(reply, templates.discarded_note(draft))
            self.state.to_idle(session_id)
        return await self._action(session_id, "EDIT", body, request_id)

    async def rewrite(self, session_id: str, request_id: Optional[str] = None) -> TurnResult:
        """Discard the pending high-risk draft and suggest a safer phrasing."""
        async def body(reply: _Reply):
            pending = self._pending_confirmation(session_id)
            draft = self._owned_draft(session_id, pending.draft_id)
            self.state.to_idle(session_id)
            if draft is None:
                return
            self.lifecycle.discard(draft.draft_id)
            reply.draft_id = draft.draft_id
            reply.suggested_text = self.gate.suggest_rewrite(draft)
            self._say(reply, templates.rewrite_suggestion(reply.suggested_text))
        return await self._action(session_id, "REWRITE", body, request_id)

    async def reset(self, session_id: str, request_id: Optional[str] = None) -> TurnResult:
        """Back to Idle: clear clarification/confirmation, cancel in-flight executions."""
        async def body(reply: _Reply):
            current = self.state.get(session_id)
            cancelled = self.scheduler.cancel_session(session_id)
            if isinstance(current, AwaitingConfirmationState):
                draft = self._owned_draft(session_id, current.draft_id)
                if draft is not None and draft.status == DraftStatus.DRAFT:
                    self.lifecycle.discard(draft.draft_id)
            self.state.to_idle(session_id)
            logger.info(
                "Session reset", extra={"session_id": session_id, "event": "session_reset", "mode": current.mode},
            )
            if cancelled:
                reply.draft_id = cancelled[0]
            self._say(reply, templates.reset_note())
        return await self._action(session_id, "RESET", body, request_id)

    async def execute_draft(self, session_id: str, draft_id: str, request_id: Optional[str] = None) -> TurnResult:
        """Run a draft that was left in `draft` status."""
        async def body(reply: _Reply):
            draft = self._owned_draft(session_id, draft_id)
            if draft is None:
                raise TurnError(TurnErrorCode.NO_UPDATE_TARGET)
            reply.draft_id = draft.draft_id
            if draft.status != DraftStatus.DRAFT:
                raise TurnError(TurnErrorCode.DRAFT_NOT_EDITABLE)
            self._start_or_park(reply, draft)
        return await self._action(session_id, "EXECUTE", body, request_id)

    async def retry_blocked(self, session_id: str, draft_id: str, request_id: Optional[str] = None) -> TurnResult:
        """Resubmit a blocked draft after the account has been funded."""
        async def body(reply: _Reply):
            draft = self._owned_draft(session_id, draft_id)
            if draft is None:
                raise TurnError(TurnErrorCode.NO_UPDATE_TARGET)
            reply.draft_id = draft.draft_id
            if draft.status != DraftStatus.BLOCKED:
                raise TurnError(TurnErrorCode.DRAFT_NOT_EDITABLE)
            if not self.account.has_collateral_for(draft.margin_usd):
                raise TurnError(TurnErrorCode.INSUFFICIENT_FUNDING)
            self._start_or_park(reply, draft, confirm_high_risk=False)
        return await self._action(session_id, "RETRY", body, request_id)

    def _start_or_park(self, reply: _Reply, draft: PositionDraft, confirm_high_risk: bool = True) -> None:
        current = self.state.get(reply.ctx.session_id)
        if isinstance(current, AwaitingConfirmationState):
            raise TurnError(
                TurnErrorCode.CONCURRENT_DRAFT_CONFLICT,
                "Decide on the high-risk draft waiting for confirmation first.",
            )
        if confirm_high_risk and draft.high_risk_reasons:
            self.state.await_confirmation(reply.ctx.session_id, draft.draft_id)
            self._say(reply, templates.draft_card(draft))
            return
        self._start_execution(reply, draft)
        self._say(reply, templates.executing_note(draft))

    async def discard_draft(self, session_id: str, draft_id: str, request_id: Optional[str] = None) -> TurnResult:
        """Drop a draft that has not executed."""
        async def body(reply: _Reply):
            draft = self._owned_draft(session_id, draft_id)
            if draft is None:
                raise TurnError(TurnErrorCode.NO_UPDATE_TARGET)
            reply.draft_id = draft.draft_id
            if draft.status not in (DraftStatus.DRAFT, DraftStatus.BLOCKED):
                raise TurnError(TurnErrorCode.DRAFT_NOT_EDITABLE)
            current = self.state.get(session_id)
            self.lifecycle.discard(draft.draft_id)
            if isinstance(current, AwaitingConfirmationState) and current.draft_id == draft.draft_id:
                self.state.to_idle(session_id)
            self._say(reply, templates.discarded_note(draft))
        return await self._action(session_id, "DISCARD", body, request_id)

    async def close_position(self, session_id: str, draft_id: str, request_id: Optional[str] = None) -> TurnResult:
        """Close an executed position and realize its simulated outcome."""
        async def body(reply: _Reply):
            draft = self._owned_draft(session_id, draft_id)
            if draft is None:
                raise TurnError(TurnErrorCode.NO_UPDATE_TARGET)
            reply.draft_id = draft.draft_id
            closed = self.lifecycle.close_position(reply.ctx, draft.draft_id)
            self._say(reply, templates.closed_card(closed), draft_id=closed.draft_id)
        return await self._action(session_id, "CLOSE", body, request_id)

    async def fund(self, amount_usd: float, session_id: Optional[str] = None) -> Dict[str, Any]:
        """Deposit collateral; with AUTO_RETRY_BLOCKED on, blocked drafts re-queue."""
        balance = self.account.fund(amount_usd)
        requeued: List[str] = []
        if self.settings.auto_retry_blocked:
            for draft in self.drafts.list_by_status([DraftStatus.BLOCKED]):
                if not self.account.has_collateral_for(draft.margin_usd):
                    continue
                current = self.state.get(draft.session_id)
                # sessions waiting on the user keep their blocked drafts for an explicit retry
                if not isinstance(current, (IdleState, ExecutingState)):
                    continue
                reply = _Reply(TurnContext(session_id=draft.session_id, intent="RETRY"))
                self._start_execution(reply, draft)
                requeued.append(draft.draft_id)
        if session_id and self.sessions.exists(session_id):
            payload = templates.funded_note(amount_usd, balance, len(requeued))
            self.messages.append(build_message(session_id, "assistant", payload["content"], render_hints=payload["render_hints"]))
        return {"balance_usd": balance, "requeued": requeued, "account": self.account.snapshot()}

    def delete_session(self, session_id: str) -> None:
        """Cancel a session's executions and drop its ledger."""
        self._require_session(session_id)
        self.scheduler.cancel_session(session_id)
        self.sessions.delete(session_id)


def build_turn_handler(
    settings=None,
    diagnostics: Optional[Diagnostics] = None,
    account: Optional[SimulatedAccount] = None,
    event_resolver=None,
) -> TurnHandler:
    """Wire a TurnHandler with its repositories and services."""
    settings = settings or get_settings()
    diagnostics = diagnostics or Diagnostics.from_settings(settings)
    account = account or SimulatedAccount.from_settings(settings)

    sessions = SessionsRepo()
    messages = MessagesRepo()
    drafts = DraftsRepo()
    state = ConversationStateStore(sessions, diagnostics)
    lifecycle = DraftLifecycleManager(drafts, account, diagnostics, settings, event_resolver=event_resolver)
    scheduler = ExecutionScheduler(
        lifecycle, drafts, messages, state, account, diagnostics,
        delay_seconds=settings.execution_delay_seconds,
    )
    return TurnHandler(
        sessions=sessions,
        messages=messages,
        drafts=drafts,
        state=state,
        lifecycle=lifecycle,
        gate=HighRiskGate.from_settings(settings),
        scheduler=scheduler,
        account=account,
        diagnostics=diagnostics,
        settings=settings,
    )
