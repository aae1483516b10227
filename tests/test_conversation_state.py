"""Conversation state store tests."""
import pytest

from copilot.agents.schemas import (
    AwaitingConfirmationState,
    AwaitingMarketClarificationState,
    ExecutingState,
    IdleState,
    Modifications,
    PendingIntent,
    PerpDraftSpec,
)
from copilot.core.diagnostics import Diagnostics
from copilot.core.error_codes import InvariantViolation
from copilot.db.repo.sessions_repo import SessionsRepo
from copilot.orchestrator.state_machine import (
    ConversationMode,
    DraftStatus,
    can_transition_draft,
    can_transition_mode,
)
from copilot.services.conversation_state import ConversationStateStore


@pytest.fixture
def store(session_id):
    return ConversationStateStore(SessionsRepo(), Diagnostics(strict=True))


def _pending():
    return PendingIntent(instrument="perp", spec=PerpDraftSpec(risk_percent=2, leverage=5), raw_text="open a long 2% risk")


class TestStore:
    def test_new_session_is_idle(self, store, session_id):
        assert isinstance(store.get(session_id), IdleState)

    def test_unknown_session_reads_idle(self, store):
        assert isinstance(store.get("sess_missing"), IdleState)

    def test_clarification_keeps_parsed_intent(self, store, session_id):
        mods = Modifications(risk_percent=2, leverage=5)
        assert store.await_clarification(session_id, _pending(), mods, candidates=["BTC-PERP", "ETH-PERP"])
        state = store.get(session_id)
        assert isinstance(state, AwaitingMarketClarificationState)
        assert state.pending_intent.spec.leverage == 5.0
        assert state.extracted_modifiers.risk_percent == 2.0
        assert state.candidates == ["BTC-PERP", "ETH-PERP"]
        assert state.retries == 0

    def test_confirmation_then_execute_then_settle(self, store, session_id):
        assert store.await_confirmation(session_id, "draft_1")
        state = store.get(session_id)
        assert isinstance(state, AwaitingConfirmationState)
        assert state.high_risk

        assert store.begin_executing(session_id, "draft_1")
        assert isinstance(store.get(session_id), ExecutingState)
        assert store.settle(session_id, "draft_1")
        assert isinstance(store.get(session_id), IdleState)

    def test_settle_ignores_other_draft(self, store, session_id):
        store.begin_executing(session_id, "draft_2")
        assert not store.settle(session_id, "draft_1")
        assert store.get(session_id).draft_id == "draft_2"

    def test_settle_does_not_clobber_newer_state(self, store, session_id):
        store.begin_executing(session_id, "draft_1")
        store.await_confirmation(session_id, "draft_2")
        assert not store.settle(session_id, "draft_1")
        assert isinstance(store.get(session_id), AwaitingConfirmationState)

    def test_invalid_transition_raises_when_strict(self, store, session_id):
        store.await_confirmation(session_id, "draft_1")
        with pytest.raises(InvariantViolation):
            store.await_clarification(session_id, _pending(), Modifications())

    def test_invalid_transition_is_noop_in_production(self, session_id):
        store = ConversationStateStore(SessionsRepo(), Diagnostics(strict=False))
        store.await_confirmation(session_id, "draft_1")
        assert not store.await_clarification(session_id, _pending(), Modifications())
        assert store.get(session_id).draft_id == "draft_1"

    def test_reset_always_reaches_idle(self, store, session_id):
        store.await_confirmation(session_id, "draft_1")
        assert store.to_idle(session_id)
        assert isinstance(store.get(session_id), IdleState)
        assert store.to_idle(session_id)


class TestTransitionTables:
    def test_draft_lifecycle_is_one_directional(self):
        assert can_transition_draft(DraftStatus.DRAFT, DraftStatus.QUEUED)
        assert can_transition_draft(DraftStatus.EXECUTED, DraftStatus.CLOSED)
        assert not can_transition_draft(DraftStatus.EXECUTED, DraftStatus.DRAFT)
        assert not can_transition_draft(DraftStatus.DRAFT, DraftStatus.EXECUTING)
        assert not can_transition_draft(DraftStatus.CLOSED, DraftStatus.QUEUED)

    def test_blocked_only_reenters_via_queue(self):
        assert can_transition_draft(DraftStatus.BLOCKED, DraftStatus.QUEUED)
        assert not can_transition_draft(DraftStatus.BLOCKED, DraftStatus.EXECUTING)

    def test_any_mode_can_return_to_idle(self):
        for mode in ConversationMode:
            assert can_transition_mode(mode, ConversationMode.IDLE)

    def test_confirmation_only_leads_to_execution(self):
        assert can_transition_mode(ConversationMode.AWAITING_CONFIRMATION, ConversationMode.EXECUTING)
        assert not can_transition_mode(
            ConversationMode.AWAITING_CONFIRMATION, ConversationMode.AWAITING_MARKET_CLARIFICATION
        )
