"""Simulated execution, funding and position close tests."""
import asyncio

import pytest

from copilot.agents.schemas import AwaitingConfirmationState, IdleState
from copilot.core.config import Settings
from copilot.orchestrator.state_machine import DraftStatus
from copilot.orchestrator.turn_handler import build_turn_handler
from copilot.services.account import SimulatedAccount


def _low_collateral_handler(**settings_overrides):
    settings = Settings(**settings_overrides) if settings_overrides else None
    return build_turn_handler(
        settings=settings,
        account=SimulatedAccount(account_value_usd=100000, usdc_balance=1000),
    )


class TestExecute:
    @pytest.mark.asyncio
    async def test_executed_card_replaces_the_preview(self, handler):
        result = await handler.process_turn("long BTC 2% risk 5x")
        await handler.scheduler.drain()

        assistant = [m for m in handler.messages.list_for_session(result.session_id) if m.role == "assistant"]
        assert len(assistant) == 1
        assert assistant[0].draft_id == result.draft_id
        assert assistant[0].content.startswith("Executed: LONG BTC-PERP")
        assert assistant[0].render_hints["card"] == "executed"

    @pytest.mark.asyncio
    async def test_execution_debits_collateral_and_tracks_exposure(self, handler):
        await handler.process_turn("long BTC 2% risk 5x")
        await handler.scheduler.drain()
        assert handler.account.available_collateral() == 3800.0
        assert handler.account.exposure.perp_notional_usd == 1000.0

    @pytest.mark.asyncio
    async def test_reset_cancels_in_flight_execution(self, test_db):
        handler = build_turn_handler(settings=Settings(execution_delay_seconds=30))
        result = await handler.process_turn("long BTC 2% risk")
        sid = result.session_id
        # let the task take the lock and start its simulated delay
        await asyncio.sleep(0)
        assert handler.scheduler.in_flight(sid) == [result.draft_id]

        reset = await handler.reset(sid)
        assert reset.draft_id == result.draft_id
        await handler.scheduler.drain()

        assert handler.drafts.get(result.draft_id).status == DraftStatus.DISCARDED
        assert handler.account.available_collateral() == 4000.0
        assert isinstance(handler.state.get(sid), IdleState)
        assert handler.scheduler.in_flight() == []


class TestBlocked:
    @pytest.mark.asyncio
    async def test_insufficient_collateral_blocks(self, test_db):
        handler = _low_collateral_handler()
        result = await handler.process_turn("long BTC 3% risk")
        await handler.scheduler.drain()

        draft = handler.drafts.get(result.draft_id)
        assert draft.margin_usd == 3000.0
        assert draft.status == DraftStatus.BLOCKED
        assert isinstance(handler.state.get(result.session_id), IdleState)

        last = handler.messages.list_for_session(result.session_id)[-1]
        assert last.render_hints["card"] == "blocked"
        assert last.render_hints["error_code"] == "INSUFFICIENT_FUNDING"

    @pytest.mark.asyncio
    async def test_funding_without_auto_retry_needs_explicit_retry(self, test_db):
        handler = _low_collateral_handler()
        result = await handler.process_turn("long BTC 3% risk")
        sid = result.session_id
        await handler.scheduler.drain()

        funded = await handler.fund(5000, session_id=sid)
        assert funded["balance_usd"] == 6000.0
        assert funded["requeued"] == []
        assert handler.drafts.get(result.draft_id).status == DraftStatus.BLOCKED

        retry = await handler.retry_blocked(sid, result.draft_id)
        assert retry.error_code is None
        await handler.scheduler.drain()
        assert handler.drafts.get(result.draft_id).status == DraftStatus.EXECUTED
        assert handler.account.available_collateral() == 3000.0

    @pytest.mark.asyncio
    async def test_retry_without_funds_is_refused(self, test_db):
        handler = _low_collateral_handler()
        result = await handler.process_turn("long BTC 3% risk")
        await handler.scheduler.drain()

        retry = await handler.retry_blocked(result.session_id, result.draft_id)
        assert retry.error_code == "INSUFFICIENT_FUNDING"
        assert handler.drafts.get(result.draft_id).status == DraftStatus.BLOCKED

    @pytest.mark.asyncio
    async def test_auto_retry_requeues_on_funding(self, test_db):
        handler = _low_collateral_handler(auto_retry_blocked=True)
        result = await handler.process_turn("long BTC 3% risk")
        sid = result.session_id
        await handler.scheduler.drain()

        funded = await handler.fund(5000, session_id=sid)
        assert funded["requeued"] == [result.draft_id]
        await handler.scheduler.drain()

        assert handler.drafts.get(result.draft_id).status == DraftStatus.EXECUTED
        note = [m for m in handler.messages.list_for_session(sid) if m.render_hints.get("funded")]
        assert note[0].content.endswith("Re-queued 1 blocked position(s).")

    @pytest.mark.asyncio
    async def test_auto_retry_leaves_sessions_awaiting_confirmation(self, test_db):
        handler = _low_collateral_handler(auto_retry_blocked=True)
        blocked = await handler.process_turn("long BTC 3% risk")
        sid = blocked.session_id
        await handler.scheduler.drain()

        parked = await handler.process_turn("long ETH 20x leverage", session_id=sid)
        assert isinstance(parked.state, AwaitingConfirmationState)

        funded = await handler.fund(5000)
        assert funded["requeued"] == []
        assert handler.drafts.get(blocked.draft_id).status == DraftStatus.BLOCKED

    @pytest.mark.asyncio
    async def test_blocked_draft_can_be_discarded(self, test_db):
        handler = _low_collateral_handler()
        result = await handler.process_turn("long BTC 3% risk")
        await handler.scheduler.drain()
        await handler.discard_draft(result.session_id, result.draft_id)
        assert handler.drafts.get(result.draft_id).status == DraftStatus.DISCARDED


class TestClose:
    async def _executed(self, handler, text):
        result = await handler.process_turn(text)
        await handler.scheduler.drain()
        return result.session_id, result.draft_id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text,pnl", [("long BTC 2% risk 5x", 8.0), ("short ETH 2% risk 5x", 6.0)])
    async def test_perp_close(self, handler, text, pnl):
        sid, draft_id = await self._executed(handler, text)
        result = await handler.close_position(sid, draft_id)

        closed = handler.drafts.get(draft_id)
        assert closed.status == DraftStatus.CLOSED
        assert closed.realized_pnl_usd == pnl
        assert handler.account.available_collateral() == 4000.0 + pnl
        assert handler.account.get_account_value() == 10000.0 + pnl
        assert "PnL" in result.messages[-1].content

    @pytest.mark.asyncio
    async def test_event_win(self, handler):
        sid, draft_id = await self._executed(handler, "bet yes on fed $300")
        await handler.close_position(sid, draft_id)
        closed = handler.drafts.get(draft_id)
        assert closed.realized_pnl_usd == 210.0
        assert closed.details.outcome == "won"

    @pytest.mark.asyncio
    async def test_event_loss(self, test_db):
        handler = build_turn_handler(event_resolver=lambda draft: False)
        sid, draft_id = await self._executed(handler, "bet yes on fed $300")
        await handler.close_position(sid, draft_id)
        closed = handler.drafts.get(draft_id)
        assert closed.realized_pnl_usd == -300.0
        assert closed.details.outcome == "lost"
        # the stake is gone, nothing is credited back
        assert handler.account.available_collateral() == 3700.0
        assert handler.account.get_account_value() == 9700.0

    @pytest.mark.asyncio
    async def test_defi_withdraw_accrues_a_month_of_yield(self, handler):
        sid, draft_id = await self._executed(handler, "deposit $400 into kamino")
        result = await handler.close_position(sid, draft_id)
        assert handler.drafts.get(draft_id).realized_pnl_usd == 2.83
        assert result.messages[-1].content.startswith("Withdrew from")

    @pytest.mark.asyncio
    async def test_close_requires_an_executed_position(self, handler):
        result = await handler.process_turn("long BTC 20x leverage")
        closed = await handler.close_position(result.session_id, result.draft_id)
        assert closed.error_code == "DRAFT_NOT_EDITABLE"
        assert handler.drafts.get(result.draft_id).status == DraftStatus.DRAFT
