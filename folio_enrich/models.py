"""
Pydantic models for positions and fundamentals, plus the fallback result type.

Field aliases follow the camelCase keys used by the Trading212 API and by the
HTTP responses; Python code uses the snake_case attribute names.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field

UNKNOWN = "Unknown"

FallbackPath = Literal["primary", "secondary", "cache", "degraded-empty"]
FallbackReason = Literal[
    "quota_exceeded", "rate_limited", "api_error", "network_error", "unsupported"
]

# Fields populated from a fundamentals provider
ENRICHMENT_FIELDS = (
    "company_name",
    "sector",
    "industry",
    "country",
    "exchange",
    "market_cap",
    "pe_ratio",
    "eps",
    "dividend_yield",
    "beta",
    "description",
)

# Market-driven values that drift quickly once cached data ages
VOLATILE_FIELDS = ("market_cap", "pe_ratio", "eps", "dividend_yield", "beta")


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Position(_CamelModel):
    """An open Trading212 position."""

    ticker: str = Field(min_length=1)
    quantity: float
    average_price: float = Field(alias="averagePrice")
    current_price: float = Field(alias="currentPrice")
    ppl: float = 0.0  # profit/loss in account currency
    fx_ppl: float | None = Field(default=None, alias="fxPpl")
    initial_fill_date: str | None = Field(default=None, alias="initialFillDate")
    frontend: str | None = None
    max_buy: float | None = Field(default=None, alias="maxBuy")
    max_sell: float | None = Field(default=None, alias="maxSell")
    pie_quantity: float | None = Field(default=None, alias="pieQuantity")

    @property
    def value(self) -> float:
        return self.quantity * self.current_price


class CompanyFundamentals(_CamelModel):
    """Provider-neutral fundamentals record. Numeric None means unknown."""

    symbol: str
    name: str | None = None
    description: str | None = None
    sector: str | None = None
    industry: str | None = None
    country: str | None = None
    exchange: str | None = None
    currency: str | None = None
    market_cap: float | None = Field(default=None, alias="marketCap")
    pe_ratio: float | None = Field(default=None, alias="peRatio")
    peg_ratio: float | None = Field(default=None, alias="pegRatio")
    eps: float | None = None
    book_value: float | None = Field(default=None, alias="bookValue")
    price_to_book: float | None = Field(default=None, alias="priceToBook")
    dividend_yield: float | None = Field(default=None, alias="dividendYield")
    beta: float | None = None
    source: str | None = None


class EnrichedPosition(Position):
    """Position merged with fundamentals and cache metadata."""

    company_name: str = Field(default=UNKNOWN, alias="companyName")
    sector: str = UNKNOWN
    industry: str = UNKNOWN
    country: str = UNKNOWN
    exchange: str = UNKNOWN
    market_cap: float | None = Field(default=None, alias="marketCap")
    pe_ratio: float | None = Field(default=None, alias="peRatio")
    eps: float | None = None
    dividend_yield: float | None = Field(default=None, alias="dividendYield")
    beta: float | None = None
    description: str | None = None
    is_cached: bool = Field(default=False, alias="isCached")
    cache_age: float = Field(default=0.0, alias="cacheAge")  # hours
    is_stale: bool = Field(default=False, alias="isStale")
    data_source: str | None = Field(default=None, alias="dataSource")
    degraded_features: list[str] = Field(default_factory=list, alias="degradedFeatures")


T = TypeVar("T")


@dataclass(frozen=True)
class FallbackResult(Generic[T]):
    """Outcome of one orchestrated request, tagged with the path that served it."""

    data: T | None
    provider: FallbackPath
    fallback_applied: bool = False
    is_stale: bool = False
    degraded_features: tuple[str, ...] = ()
    user_message: str | None = None
    provider_name: str | None = None  # concrete provider key or cache namespace
    reason: FallbackReason | None = None
    stale_age: float | None = None  # seconds
    attempts: int = 0

    @property
    def is_degraded(self) -> bool:
        return self.provider == "degraded-empty"

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": self.data,
            "provider": self.provider,
            "providerName": self.provider_name,
            "fallbackApplied": self.fallback_applied,
            "isStale": self.is_stale,
            "staleAge": self.stale_age,
            "reason": self.reason,
            "degradedFeatures": list(self.degraded_features),
            "userMessage": self.user_message,
        }
