"""Modification extraction tests: explicit vocabulary only."""
import pytest

from copilot.agents.modification_extractor import (
    extract_leverage,
    extract_modifications,
    extract_risk_percent,
    extract_side_flip,
    extract_size_usd,
    extract_stop_loss,
    extract_take_profit,
)


class TestLeverage:
    @pytest.mark.parametrize("text,expected", [
        ("change leverage to 5x", 5.0),
        ("10x leverage", 10.0),
        ("use 3x lev", 3.0),
        ("leverage: 7", 7.0),
    ])
    def test_explicit_leverage(self, text, expected):
        clamped, requested = extract_leverage(text)
        assert clamped == expected
        assert requested == expected

    def test_clamped_to_max_but_raw_kept(self):
        assert extract_leverage("50x leverage") == (20.0, 50.0)

    def test_below_one_is_rejected(self):
        assert extract_leverage("0.5x leverage") == (None, 0.5)

    def test_bare_multiplier_is_not_leverage(self):
        assert extract_leverage("long btc 5x") == (None, None)


class TestRiskAndSize:
    @pytest.mark.parametrize("text,expected", [
        ("risk 2% per trade", 2.0),
        ("2% risk", 2.0),
        ("risking 1.5%", 1.5),
        ("set risk to 3%", 3.0),
        ("5% of my account", 5.0),
    ])
    def test_risk_percent(self, text, expected):
        assert extract_risk_percent(text) == expected

    def test_percent_without_risk_vocabulary_is_ignored(self):
        assert extract_risk_percent("BTC is up 5%") is None

    def test_risk_out_of_bounds(self):
        assert extract_risk_percent("risk 150%") is None

    @pytest.mark.parametrize("text,expected", [
        ("use $1,500", 1500.0),
        ("put 2000 on it", 2000.0),
        ("put 2k on it", 2000.0),
        ("size $2.5k", 2500.0),
    ])
    def test_size_forms(self, text, expected):
        assert extract_size_usd(text) == expected

    def test_small_numbers_are_not_sizes(self):
        assert extract_size_usd("use 50") is None

    def test_leverage_and_percent_numbers_are_not_sizes(self):
        assert extract_size_usd("long btc 200x leverage") is None
        assert extract_size_usd("btc up 300%") is None

    def test_date_numbers_are_not_sizes(self):
        assert extract_size_usd("bet by March 2025 with 2000") == 2000.0
        assert extract_size_usd("since 2021") is None

    @pytest.mark.parametrize("text", [
        "long BTC at 45000",
        "long BTC @ 45000",
        "long BTC at $45,000",
        "short ETH entry 2400",
        "limit price 3k on sol",
    ])
    def test_quoted_prices_are_not_sizes(self, text):
        assert extract_size_usd(text) is None
        assert extract_modifications(text).size_usd is None

    def test_size_next_to_a_quoted_price(self):
        assert extract_size_usd("long BTC $2000 at 45000") == 2000.0
        assert extract_size_usd("long BTC at 45000 with 1500") == 1500.0

    def test_risk_and_size_are_mutually_exclusive(self):
        mods = extract_modifications("2% risk with $500")
        assert mods.risk_percent == 2.0
        assert mods.size_usd is None


class TestSideFlip:
    @pytest.mark.parametrize("text,expected", [
        ("make it short", "short"),
        ("flip to long", "long"),
        ("switch the position to short", "short"),
        ("hedge instead", "hedge"),
    ])
    def test_explicit_reassignment(self, text, expected):
        assert extract_side_flip(text) == expected

    @pytest.mark.parametrize("text", [
        "I'm short on time",
        "short btc",
        "long story",
    ])
    def test_bare_side_word_is_not_a_flip(self, text):
        assert extract_side_flip(text) is None


class TestBrackets:
    def test_stop_loss_with_thousands_suffix(self):
        assert extract_stop_loss("tighten stop to 42k") == 42000.0

    def test_take_profit(self):
        assert extract_take_profit("tp at 50000") == 50000.0
        assert extract_take_profit("take profit $3,900") == 3900.0


def test_descriptive_text_has_no_modifications():
    mods = extract_modifications("BTC is up 5% and I'm short on time")
    assert mods.is_empty()


def test_empty_text():
    assert extract_modifications("").is_empty()
