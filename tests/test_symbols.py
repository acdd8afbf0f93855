"""Tests for Trading212 ticker normalization."""

import pytest

from folio_enrich.exceptions import UnsupportedSymbolError
from folio_enrich.symbols import UNSUPPORTED_SYMBOLS, SymbolNormalizer


class TestNormalize:
    @pytest.mark.parametrize(
        "ticker,expected",
        [
            ("AAPL_US_EQ", "AAPL"),
            ("TSLA_US_EQ", "TSLA"),
            ("MSFT", "MSFT"),
            ("  NVDA_US_EQ ", "NVDA"),
        ],
    )
    def test_strips_broker_suffixes(self, ticker, expected):
        assert SymbolNormalizer().normalize(ticker) == expected

    def test_deny_listed_symbol_raises_with_symbol(self):
        with pytest.raises(UnsupportedSymbolError) as exc_info:
            SymbolNormalizer().normalize("FEVRl")

        assert exc_info.value.symbol == "FEVRl"

    def test_deny_list_applies_after_suffix_strip(self):
        with pytest.raises(UnsupportedSymbolError):
            SymbolNormalizer().normalize("BAl_EQ")

    def test_venue_marker_is_case_sensitive(self):
        """BA (Boeing) is fine; BAl (BAE Systems, London) is not."""
        assert SymbolNormalizer().normalize("BA_US_EQ") == "BA"

    @pytest.mark.parametrize("ticker", ["", "   ", "_US_EQ"])
    def test_blank_ticker_is_unsupported(self, ticker):
        with pytest.raises(UnsupportedSymbolError):
            SymbolNormalizer().normalize(ticker)

    def test_extra_unsupported_from_configuration(self):
        normalizer = SymbolNormalizer(extra_unsupported=["GME"])

        assert normalizer.is_supported("GME_US_EQ") is False
        assert normalizer.is_supported("AAPL_US_EQ") is True

    def test_default_deny_list_contents(self):
        assert len(UNSUPPORTED_SYMBOLS) == 20
        assert {"FEVRl", "ASMLa", "XIACY", "VDPGl"} <= UNSUPPORTED_SYMBOLS


class TestDisplaySymbol:
    def test_ignores_deny_list(self):
        assert SymbolNormalizer.display_symbol("FEVRl_EQ") == "FEVRl"

    def test_none_is_empty(self):
        assert SymbolNormalizer.display_symbol(None) == ""
