"""
Ticker mapping between Trading212 instrument tickers and the bare symbols
understood by the fundamentals providers.

Trading212 tickers carry market and security-type suffixes joined with
underscores (e.g. "AAPL_US_EQ"). London and other European listings use a
lowercase venue marker on the symbol itself ("FEVRl", "ASMLa"); neither
Alpha Vantage nor Tiingo resolve those, so they are deny-listed.
"""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from folio_enrich.exceptions import UnsupportedSymbolError

logger = structlog.get_logger(__name__)

TICKER_DELIMITER = "_"

UNSUPPORTED_SYMBOLS = frozenset(
    {
        "FEVRl",
        "AAFl",
        "JUPl",
        "IWGl",
        "AIRp",
        "BRBYl",
        "MONYl",
        "ASMLa",
        "TSCOl",
        "RELl",
        "SNl",
        "ADMl",
        "IHPl",
        "SLPLl",
        "BAl",
        "XIACY",
        "DPLMl",
        "CKNl",
        "HLNl",
        "VDPGl",
    }
)


class SymbolNormalizer:
    """Strip broker suffixes and reject symbols no provider supports."""

    def __init__(self, extra_unsupported: Iterable[str] = ()):
        self.unsupported = UNSUPPORTED_SYMBOLS | frozenset(extra_unsupported)

    @staticmethod
    def display_symbol(broker_ticker: str) -> str:
        """Bare symbol without deny-list checks, e.g. for baseline company names."""
        return (broker_ticker or "").strip().split(TICKER_DELIMITER)[0]

    def normalize(self, broker_ticker: str) -> str:
        """
        Convert a Trading212 ticker to a provider symbol.

        Args:
            broker_ticker: e.g. "AAPL_US_EQ", "TSLA_US_EQ", "FEVRl_EQ"

        Returns:
            Bare symbol, e.g. "AAPL"

        Raises:
            UnsupportedSymbolError: blank ticker or deny-listed symbol.
                Callers skip enrichment; this is never retried.
        """
        symbol = self.display_symbol(broker_ticker)
        if not symbol:
            raise UnsupportedSymbolError(broker_ticker or "", "Empty ticker")

        # Venue markers are case-significant ("BAl" vs "BA"), so compare as-is
        if symbol in self.unsupported:
            logger.debug("symbol_unsupported", ticker=broker_ticker, symbol=symbol)
            raise UnsupportedSymbolError(symbol)

        return symbol

    def is_supported(self, broker_ticker: str) -> bool:
        try:
            self.normalize(broker_ticker)
        except UnsupportedSymbolError:
            return False
        return True
