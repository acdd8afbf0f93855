"""
Alpha Vantage fundamentals fetcher (primary provider).

Uses the OVERVIEW function, one request per symbol. The free tier allows
5 requests/minute and 25/day, and signals throttling in-band: an HTTP 200
whose body carries a "Note" (or "Information") about call frequency.

Error Handling:
    - Throttling note / HTTP 429: ProviderRejectedError
    - 5xx, network errors, timeouts: TransientProviderError
    - "Error Message", "Invalid API call", empty body: None (no data)
    - Refused key on first request: ConfigurationError
"""

from __future__ import annotations

from typing import Any

import structlog

from folio_enrich.data.interfaces import JsonApiFetcher, to_number, to_text
from folio_enrich.exceptions import ProviderRejectedError

logger = structlog.get_logger(__name__)

MIN_OVERVIEW_FIELDS = 5

THROTTLE_MARKERS = ("api call frequency", "rate limit", "requests per day")


class AlphaVantageFetcher(JsonApiFetcher):
    key = "alphavantage"
    name = "Alpha Vantage"
    base_url = "https://www.alphavantage.co"

    def _auth_params(self) -> dict[str, str]:
        return {"apikey": self.api_key}

    async def get_overview(self, symbol: str) -> dict[str, Any] | None:
        """Raw OVERVIEW payload, or None if Alpha Vantage has nothing for symbol."""
        data = await self._get("/query", {"function": "OVERVIEW", "symbol": symbol})
        if not isinstance(data, dict):
            return None

        note = data.get("Note") or data.get("Information")
        if note:
            lowered = str(note).lower()
            if any(marker in lowered for marker in THROTTLE_MARKERS):
                logger.warning("alpha_vantage_throttled", symbol=symbol)
                raise ProviderRejectedError(self.key, f"Alpha Vantage API Note: {note}")
            if "invalid api call" in lowered:
                logger.warning("alpha_vantage_invalid_symbol", symbol=symbol)
                return None

        if data.get("Error Message"):
            logger.debug("alpha_vantage_error_message", symbol=symbol, message=data["Error Message"])
            return None

        if not data.get("Symbol") or len(data) < MIN_OVERVIEW_FIELDS:
            logger.warning("alpha_vantage_no_valid_data", symbol=symbol)
            return None

        return data

    async def get_fundamentals(self, symbol: str) -> dict[str, Any] | None:
        overview = await self.get_overview(symbol)
        if overview is None:
            return None
        return parse_overview(overview)


def parse_overview(overview: dict[str, Any]) -> dict[str, Any]:
    """Map OVERVIEW keys to the CompanyFundamentals shape."""
    return {
        "symbol": overview.get("Symbol"),
        "name": to_text(overview.get("Name")),
        "description": to_text(overview.get("Description")),
        "sector": to_text(overview.get("Sector")),
        "industry": to_text(overview.get("Industry")),
        "country": to_text(overview.get("Country")),
        "exchange": to_text(overview.get("Exchange")),
        "currency": to_text(overview.get("Currency")),
        "marketCap": to_number(overview.get("MarketCapitalization")),
        "peRatio": to_number(overview.get("PERatio")),
        "pegRatio": to_number(overview.get("PEGRatio")),
        "eps": to_number(overview.get("EPS")),
        "bookValue": to_number(overview.get("BookValue")),
        "priceToBook": to_number(overview.get("PriceToBookRatio")),
        "dividendYield": to_number(overview.get("DividendYield")),
        "beta": to_number(overview.get("Beta")),
        "source": "alphavantage",
    }
