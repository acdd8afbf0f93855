"""
Tiingo fundamentals fetcher (secondary provider).

Combines three endpoints into one record: fundamentals meta (name, location),
daily ticker meta (exchange, description) and the latest daily fundamentals
row (market cap, P/E, ...). Tiingo does not classify companies by sector, so
sector/industry come from a static map of common holdings and fall back to
unknown.
"""

from __future__ import annotations

from typing import Any

import structlog

from folio_enrich.data.interfaces import JsonApiFetcher, to_number, to_text

logger = structlog.get_logger(__name__)

SECTOR_MAP: dict[str, tuple[str, str]] = {
    "AAPL": ("Technology", "Consumer Electronics"),
    "MSFT": ("Technology", "Software"),
    "GOOGL": ("Technology", "Internet Services"),
    "GOOG": ("Technology", "Internet Services"),
    "AMZN": ("Consumer Discretionary", "E-commerce"),
    "TSLA": ("Consumer Discretionary", "Electric Vehicles"),
    "META": ("Technology", "Social Media"),
    "NVDA": ("Technology", "Semiconductors"),
    "AMD": ("Technology", "Semiconductors"),
    "NFLX": ("Communication Services", "Streaming Media"),
    "COIN": ("Financial Services", "Cryptocurrency"),
    "PLTR": ("Technology", "Data Analytics"),
    "V": ("Financial Services", "Payment Processing"),
    "PYPL": ("Financial Services", "Payment Processing"),
    "IBM": ("Technology", "Enterprise Software"),
    "TSM": ("Technology", "Semiconductors"),
    "NVO": ("Healthcare", "Pharmaceuticals"),
    "IDXX": ("Healthcare", "Veterinary Diagnostics"),
    "LRCX": ("Technology", "Semiconductor Equipment"),
    "ABNB": ("Consumer Discretionary", "Travel & Hospitality"),
    "DOCU": ("Technology", "Cloud Software"),
    "WIX": ("Technology", "Website Development"),
    "PAYC": ("Technology", "Payroll Software"),
    "TCEHY": ("Technology", "Internet Services"),
    "BYDDY": ("Consumer Discretionary", "Electric Vehicles"),
}


class TiingoFetcher(JsonApiFetcher):
    key = "tiingo"
    name = "Tiingo"
    base_url = "https://api.tiingo.com/tiingo"

    def _auth_params(self) -> dict[str, str]:
        return {"token": self.api_key}

    async def get_fundamentals_meta(self, symbol: str) -> dict[str, Any] | None:
        data = await self._get("/fundamentals/meta", {"tickers": symbol.lower()})
        if isinstance(data, list):
            data = data[0] if data else None
        return data if isinstance(data, dict) else None

    async def get_ticker_meta(self, symbol: str) -> dict[str, Any] | None:
        data = await self._get(f"/daily/{symbol.lower()}")
        return data if isinstance(data, dict) else None

    async def get_daily_fundamentals(self, symbol: str) -> dict[str, Any] | None:
        """Most recent daily metrics row."""
        data = await self._get(f"/fundamentals/{symbol.lower()}/daily")
        if isinstance(data, list):
            # Rows are chronological; the last one is the latest
            data = data[-1] if data else None
        return data if isinstance(data, dict) else None

    async def get_fundamentals(self, symbol: str) -> dict[str, Any] | None:
        meta = await self.get_fundamentals_meta(symbol)
        ticker_meta = await self.get_ticker_meta(symbol)
        daily = await self.get_daily_fundamentals(symbol)

        if not meta and not ticker_meta and not daily:
            logger.warning("tiingo_no_valid_data", symbol=symbol)
            return None

        return build_fundamentals(symbol, meta or {}, ticker_meta or {}, daily or {})


def build_fundamentals(
    symbol: str,
    meta: dict[str, Any],
    ticker_meta: dict[str, Any],
    daily: dict[str, Any],
) -> dict[str, Any]:
    sector, industry = SECTOR_MAP.get(symbol.upper(), (None, None))
    # Newer meta responses carry sicSector / sicIndustry
    sector = to_text(meta.get("sector")) or to_text(meta.get("sicSector")) or sector
    industry = to_text(meta.get("industry")) or to_text(meta.get("sicIndustry")) or industry

    return {
        "symbol": symbol.upper(),
        "name": to_text(meta.get("name")) or to_text(ticker_meta.get("name")),
        "description": to_text(meta.get("description"))
        or to_text(ticker_meta.get("description")),
        "sector": sector,
        "industry": industry,
        "country": to_text(meta.get("country")) or to_text(meta.get("location")),
        "exchange": to_text(meta.get("exchange")) or to_text(ticker_meta.get("exchangeCode")),
        "currency": to_text(meta.get("currency")),
        "marketCap": to_number(daily.get("marketCap")),
        "peRatio": to_number(daily.get("peRatio")),
        "pegRatio": to_number(daily.get("trailingPEG1Y")),
        "eps": to_number(daily.get("eps")),
        "bookValue": to_number(daily.get("bookValue")),
        "priceToBook": to_number(daily.get("pbRatio")),
        "dividendYield": to_number(daily.get("dividendYield")),
        "beta": to_number(daily.get("beta")),
        "source": "tiingo",
    }
