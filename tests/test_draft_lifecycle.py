"""Draft lifecycle tests: creation, the update path and status transitions."""
import pytest

from copilot.agents.intent_classifier import IntentType
from copilot.agents.schemas import DefiDraftSpec, DraftUpdates, EventDraftSpec, PerpDraftSpec
from copilot.core.diagnostics import Diagnostics
from copilot.core.error_codes import InvariantViolation, TurnError, TurnErrorCode
from copilot.db.repo.drafts_repo import DraftsRepo
from copilot.orchestrator.context import TurnContext
from copilot.orchestrator.state_machine import DraftStatus
from copilot.services.account import SimulatedAccount
from copilot.services.draft_lifecycle import DraftLifecycleManager, default_brackets

CREATE_CTX = TurnContext(session_id="sess_test", turn_key="turn_1", intent=IntentType.CREATE)
UPDATE_CTX = TurnContext(session_id="sess_test", turn_key="turn_2", intent=IntentType.UPDATE)


@pytest.fixture
def account():
    return SimulatedAccount(account_value_usd=10000, usdc_balance=4000)


def _manager(settings, account, strict=True):
    return DraftLifecycleManager(
        DraftsRepo(), account, Diagnostics(strict=strict), settings, event_resolver=lambda d: False,
    )


@pytest.fixture
def lifecycle(session_id, settings, account):
    return _manager(settings, account)


def _execute(lifecycle, account, draft_id):
    for status in (DraftStatus.QUEUED, DraftStatus.EXECUTING, DraftStatus.EXECUTED):
        draft = lifecycle.transition_status(draft_id, status)
    account.apply_execution(draft)
    return draft


class TestCreate:
    def test_perp_draft(self, lifecycle):
        draft = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(side="long", risk_percent=2, leverage=10), "BTC-PERP")
        assert draft.status == DraftStatus.DRAFT
        assert draft.margin_usd == 200.0
        assert draft.notional_usd == 2000.0
        assert draft.take_profit == 46800.0
        assert draft.stop_loss == 43650.0
        assert draft.details.entry_price == 45000.0
        assert draft.details.liq_buffer_pct == 10.0
        assert draft.origin_key == "turn_1"

    def test_risk_sizing_goes_through_the_account(self, session_id, settings):
        class RecordingAccount(SimulatedAccount):
            calls = []

            def compute_sizing_from_risk(self, account_value, risk_percent, leverage):
                self.calls.append((account_value, risk_percent, leverage))
                return super().compute_sizing_from_risk(account_value, risk_percent, leverage)

        account = RecordingAccount(account_value_usd=10000, usdc_balance=4000)
        lifecycle = _manager(settings, account)
        draft = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(side="long", risk_percent=2, leverage=10), "BTC-PERP")
        lifecycle.update_draft(UPDATE_CTX, draft.draft_id, DraftUpdates(risk_percent=1))

        assert account.calls == [(None, 2, 10), (None, 1, 10)]
        assert lifecycle.drafts.get(draft.draft_id).margin_usd == 100.0

    def test_short_brackets_are_mirrored(self):
        assert default_brackets(45000.0, "short") == (43200.0, 46350.0)

    def test_omitted_stop_loss(self, lifecycle):
        spec = PerpDraftSpec(side="long", omit_stop_loss=True)
        assert lifecycle.create_draft(CREATE_CTX, spec, "ETH-PERP").stop_loss is None

    @pytest.mark.parametrize("market", ["", "DOGE-PERP", "KAMINO-USDC"])
    def test_unsupported_market(self, lifecycle, market):
        with pytest.raises(TurnError) as exc_info:
            lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(), market)
        assert exc_info.value.error_code == TurnErrorCode.UNRESOLVED_MARKET

    def test_single_flight_per_instrument_class(self, lifecycle):
        first = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(), "BTC-PERP")
        with pytest.raises(TurnError) as exc_info:
            lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(), "ETH-PERP")
        assert exc_info.value.error_code == TurnErrorCode.CONCURRENT_DRAFT_CONFLICT
        assert exc_info.value.details["draft_id"] == first.draft_id

        # another instrument class is independent
        event = lifecycle.create_draft(CREATE_CTX, EventDraftSpec(side="yes"), "FED_CUTS_MAR_2025")
        assert event.details.max_payout_usd == 510.0

    def test_queued_draft_does_not_block_new_draft(self, lifecycle):
        first = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(), "BTC-PERP")
        lifecycle.transition_status(first.draft_id, DraftStatus.QUEUED)
        second = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(), "ETH-PERP")
        assert second.draft_id != first.draft_id

    def test_defi_draft(self, lifecycle):
        draft = lifecycle.create_draft(CREATE_CTX, DefiDraftSpec(margin_usd=400), "KAMINO-USDC")
        assert draft.risk_percent == 4.0
        assert draft.sizing_basis == "margin"
        assert draft.leverage == 1.0
        assert draft.notional_usd == 400.0
        assert draft.details.apy_pct == 8.5

    def test_risk_reasons_are_persisted(self, lifecycle):
        draft = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(), "BTC-PERP")
        lifecycle.attach_risk_reasons(draft, ["Requested no stop-loss"])
        assert DraftsRepo().get(draft.draft_id).high_risk_reasons == ["Requested no stop-loss"]


class TestUpdate:
    def test_update_during_create_raises_when_strict(self, lifecycle):
        draft = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(), "BTC-PERP")
        with pytest.raises(InvariantViolation):
            lifecycle.update_draft(CREATE_CTX, draft.draft_id, DraftUpdates(leverage=5))

    def test_update_during_create_is_noop_in_production(self, session_id, settings, account):
        lifecycle = _manager(settings, account, strict=False)
        draft = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(), "BTC-PERP")
        assert lifecycle.update_draft(CREATE_CTX, draft.draft_id, DraftUpdates(leverage=5)) is None
        assert lifecycle.diagnostics.last_violation["invariant"] == "update_during_create"
        assert DraftsRepo().get(draft.draft_id).leverage == 1.0

    def test_leverage_only_keeps_margin(self, lifecycle):
        draft = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(risk_percent=2, leverage=10), "BTC-PERP")
        updated, changed = lifecycle.update_draft(UPDATE_CTX, draft.draft_id, DraftUpdates(leverage=5))
        assert changed == ["leverage"]
        assert updated.margin_usd == 200.0
        assert updated.risk_percent == 2.0
        assert updated.notional_usd == 1000.0
        assert updated.details.liq_buffer_pct == 20.0

    def test_risk_update_rederives_notional(self, lifecycle):
        draft = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(risk_percent=2, leverage=10), "BTC-PERP")
        updated, changed = lifecycle.update_draft(UPDATE_CTX, draft.draft_id, DraftUpdates(risk_percent=1))
        assert changed == ["risk"]
        assert updated.margin_usd == 100.0
        assert updated.notional_usd == 1000.0
        assert updated.sizing_basis == "risk"

    def test_margin_update_switches_basis(self, lifecycle):
        draft = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(risk_percent=2, leverage=3), "BTC-PERP")
        updated, _ = lifecycle.update_draft(UPDATE_CTX, draft.draft_id, DraftUpdates(margin_usd=500))
        assert updated.sizing_basis == "margin"
        assert updated.risk_percent == 5.0
        assert updated.notional_usd == 1500.0

    def test_side_flip_resets_brackets(self, lifecycle):
        draft = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(side="long"), "BTC-PERP")
        updated, changed = lifecycle.update_draft(UPDATE_CTX, draft.draft_id, DraftUpdates(side="short"))
        assert changed == ["side"]
        assert updated.side == "short"
        assert updated.take_profit == 43200.0
        assert updated.stop_loss == 46350.0

    def test_executed_draft_needs_update_executed(self, lifecycle, account):
        draft = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(), "BTC-PERP")
        _execute(lifecycle, account, draft.draft_id)
        with pytest.raises(TurnError) as exc_info:
            lifecycle.update_draft(UPDATE_CTX, draft.draft_id, DraftUpdates(leverage=5))
        assert exc_info.value.error_code == TurnErrorCode.DRAFT_NOT_EDITABLE

    def test_update_executed_moves_collateral(self, lifecycle, account):
        draft = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(risk_percent=2), "BTC-PERP")
        _execute(lifecycle, account, draft.draft_id)
        assert account.available_collateral() == 3800.0

        updated, _ = lifecycle.update_executed(UPDATE_CTX, draft.draft_id, DraftUpdates(risk_percent=3))
        assert updated.margin_usd == 300.0
        assert account.available_collateral() == 3700.0
        assert account.exposure.perp_notional_usd == 300.0

    def test_update_executed_insufficient_funding(self, lifecycle, account):
        draft = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(risk_percent=2), "BTC-PERP")
        _execute(lifecycle, account, draft.draft_id)
        with pytest.raises(TurnError) as exc_info:
            lifecycle.update_executed(UPDATE_CTX, draft.draft_id, DraftUpdates(margin_usd=5000))
        assert exc_info.value.error_code == TurnErrorCode.INSUFFICIENT_FUNDING
        assert DraftsRepo().get(draft.draft_id).margin_usd == 200.0


class TestTransitions:
    def test_skipping_states_is_refused(self, lifecycle):
        draft = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(), "BTC-PERP")
        with pytest.raises(InvariantViolation):
            lifecycle.transition_status(draft.draft_id, DraftStatus.EXECUTED)

    def test_refused_transition_is_noop_in_production(self, session_id, settings, account):
        lifecycle = _manager(settings, account, strict=False)
        draft = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(), "BTC-PERP")
        assert lifecycle.transition_status(draft.draft_id, DraftStatus.EXECUTED) is None
        assert DraftsRepo().get(draft.draft_id).status == DraftStatus.DRAFT

    def test_exposure_follows_committed_drafts(self, lifecycle, account):
        draft = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(risk_percent=2, leverage=10), "BTC-PERP")
        lifecycle.transition_status(draft.draft_id, DraftStatus.QUEUED)
        assert account.exposure.perp_notional_usd == 0.0
        lifecycle.transition_status(draft.draft_id, DraftStatus.EXECUTING)
        assert account.exposure.perp_notional_usd == 2000.0
        lifecycle.transition_status(draft.draft_id, DraftStatus.DISCARDED)
        assert account.exposure.perp_notional_usd == 0.0

    def test_blocked_reenters_queue(self, lifecycle):
        draft = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(), "BTC-PERP")
        lifecycle.transition_status(draft.draft_id, DraftStatus.QUEUED)
        lifecycle.transition_status(draft.draft_id, DraftStatus.BLOCKED)
        assert lifecycle.transition_status(draft.draft_id, DraftStatus.QUEUED).status == DraftStatus.QUEUED


class TestClose:
    def test_perp_close(self, lifecycle, account):
        draft = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(risk_percent=2, leverage=5), "BTC-PERP")
        _execute(lifecycle, account, draft.draft_id)
        closed = lifecycle.close_position(UPDATE_CTX, draft.draft_id)
        assert closed.status == DraftStatus.CLOSED
        assert closed.realized_pnl_usd == 8.0
        assert closed.realized_pnl_pct == 4.0
        assert account.available_collateral() == 4008.0
        assert account.get_account_value() == 10008.0

    def test_lost_event_bet(self, lifecycle, account):
        draft = lifecycle.create_draft(CREATE_CTX, EventDraftSpec(side="yes"), "US_ELECTION_2024")
        _execute(lifecycle, account, draft.draft_id)
        closed = lifecycle.close_position(UPDATE_CTX, draft.draft_id)
        assert closed.details.outcome == "lost"
        assert closed.realized_pnl_usd == -300.0
        assert closed.realized_pnl_pct == -100.0

    def test_close_requires_executed(self, lifecycle):
        draft = lifecycle.create_draft(CREATE_CTX, PerpDraftSpec(), "BTC-PERP")
        with pytest.raises(TurnError) as exc_info:
            lifecycle.close_position(UPDATE_CTX, draft.draft_id)
        assert exc_info.value.error_code == TurnErrorCode.DRAFT_NOT_EDITABLE
