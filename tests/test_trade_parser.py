"""Trade command parser tests."""
import pytest

from copilot.agents.modification_extractor import extract_modifications
from copilot.agents.schemas import DefiDraftSpec, EventDraftSpec, Modifications, PerpDraftSpec
from copilot.agents.trade_parser import (
    apply_modifications,
    detect_instrument,
    has_new_trade_language,
    parse_draft_spec,
    wants_no_stop_loss,
)
from copilot.core.markets import InstrumentClass


class TestDetectInstrument:
    @pytest.mark.parametrize("text,expected", [
        ("long btc", InstrumentClass.PERP),
        ("bet yes on fed", InstrumentClass.EVENT),
        ("what are the odds on the election", InstrumentClass.EVENT),
        ("what about the election", InstrumentClass.EVENT),
        ("deposit 500 into kamino", InstrumentClass.DEFI),
        ("best yield on aave?", InstrumentClass.DEFI),
        ("long BTC before the ETF news", InstrumentClass.PERP),
    ])
    def test_detection(self, text, expected):
        assert detect_instrument(text) == expected


class TestNewTradeLanguage:
    @pytest.mark.parametrize("text", ["short btc", "open a position", "buy eth", "Enter SOL"])
    def test_perp_verbs(self, text):
        assert has_new_trade_language(text)

    def test_side_flip_is_not_new_trade(self):
        assert not has_new_trade_language("make it short")
        assert not has_new_trade_language("flip to long")

    def test_edit_is_not_new_trade(self):
        assert not has_new_trade_language("change leverage to 5x")

    def test_event_and_defi_side_tokens(self):
        assert has_new_trade_language("bet no on the election", InstrumentClass.EVENT)
        assert has_new_trade_language("deposit into jet", InstrumentClass.DEFI)
        assert not has_new_trade_language("what is the fed doing", InstrumentClass.EVENT)


class TestNoStopLoss:
    @pytest.mark.parametrize("text", ["long btc no stop loss", "without a stop-loss", "don't set a stop loss", "sl off"])
    def test_detected(self, text):
        assert wants_no_stop_loss(text)

    def test_with_stop_loss(self):
        assert not wants_no_stop_loss("long btc with a stop loss")


class TestParseDraftSpec:
    def test_perp_with_bare_leverage(self):
        spec = parse_draft_spec("long BTC 2% risk 10x")
        assert isinstance(spec, PerpDraftSpec)
        assert spec.side == "long"
        assert spec.leverage == 10.0
        assert spec.risk_percent == 2.0
        assert spec.margin_usd is None

    def test_bare_leverage_is_clamped(self):
        spec = parse_draft_spec("short eth 30x")
        assert spec.side == "short"
        assert spec.leverage == 20.0

    def test_no_stop_loss_and_size(self):
        spec = parse_draft_spec("short eth $500 no stop loss")
        assert spec.omit_stop_loss
        assert spec.stop_loss is None
        assert spec.margin_usd == 500.0

    def test_event_side(self):
        spec = parse_draft_spec("bet no on the election $200")
        assert isinstance(spec, EventDraftSpec)
        assert spec.side == "no"
        assert spec.margin_usd == 200.0

    def test_event_defaults_to_yes(self):
        assert parse_draft_spec("bet on the fed").side == "yes"

    def test_defi_risk_percent(self):
        spec = parse_draft_spec("deposit 5% of my account into kamino")
        assert isinstance(spec, DefiDraftSpec)
        assert spec.side == "deposit"
        assert spec.risk_percent == 5.0

    def test_source_text_is_kept(self):
        assert parse_draft_spec("long sol").source_text == "long sol"


class TestApplyModifications:
    def test_size_replaces_risk(self):
        spec = parse_draft_spec("open a long 2% risk 5x leverage")
        resumed = apply_modifications(spec, Modifications(size_usd=1000))
        assert resumed.margin_usd == 1000.0
        assert resumed.risk_percent is None
        assert resumed.leverage == 5.0

    def test_empty_modifications_keep_everything(self):
        spec = parse_draft_spec("open a long 2% risk 5x leverage")
        resumed = apply_modifications(spec, extract_modifications("ETH"))
        assert resumed == spec

    def test_hedge_flips_side(self):
        spec = parse_draft_spec("open a long")
        assert apply_modifications(spec, Modifications(side_flip="hedge")).side == "short"

    def test_stop_loss_clears_omission(self):
        spec = parse_draft_spec("open a long no stop loss")
        resumed = apply_modifications(spec, Modifications(stop_loss=40000))
        assert resumed.stop_loss == 40000.0
        assert not resumed.omit_stop_loss
