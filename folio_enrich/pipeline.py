"""
Batch enrichment of broker positions with company fundamentals.

Each position goes through SymbolNormalizer and then the FallbackOrchestrator.
Symbols are processed concurrently (bounded by a semaphore) but every live
call still funnels through the per-provider schedulers. Output order and
length always match the input: a position that cannot be enriched comes
back with baseline broker data and "Unknown" descriptors.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import ValidationError

from folio_enrich.exceptions import InvalidBatchError, UnsupportedSymbolError
from folio_enrich.fallback import FallbackOptions, FallbackOrchestrator
from folio_enrich.ledger import UsageLedger
from folio_enrich.models import (
    ENRICHMENT_FIELDS,
    UNKNOWN,
    CompanyFundamentals,
    EnrichedPosition,
    FallbackResult,
    Position,
)
from folio_enrich.symbols import SymbolNormalizer

logger = structlog.get_logger(__name__)

HOUR_SECONDS = 3600.0


def _broker_fields(position: Position) -> dict[str, Any]:
    return position.model_dump(include=set(Position.model_fields))


def baseline_position(position: Position, degraded: Iterable[str] = ENRICHMENT_FIELDS) -> EnrichedPosition:
    """Broker data only; the company name falls back to the bare ticker."""
    return EnrichedPosition(
        **_broker_fields(position),
        company_name=SymbolNormalizer.display_symbol(position.ticker) or UNKNOWN,
        degraded_features=list(degraded),
    )


def merge_fundamentals(position: Position, result: FallbackResult) -> EnrichedPosition:
    """Overlay a fallback result on the broker record."""
    if result.data is None:
        enriched = baseline_position(position, result.degraded_features or ENRICHMENT_FIELDS)
        enriched.data_source = result.provider
        return enriched

    try:
        fundamentals = CompanyFundamentals.model_validate(result.data)
    except ValidationError as e:
        logger.warning(
            "fundamentals_payload_invalid",
            ticker=position.ticker,
            provider=result.provider_name,
            error=str(e),
        )
        enriched = baseline_position(position)
        enriched.data_source = "degraded-empty"
        return enriched

    is_cached = result.provider == "cache"

    return EnrichedPosition(
        **_broker_fields(position),
        company_name=fundamentals.name
        or SymbolNormalizer.display_symbol(position.ticker)
        or UNKNOWN,
        sector=fundamentals.sector or UNKNOWN,
        industry=fundamentals.industry or UNKNOWN,
        country=fundamentals.country or UNKNOWN,
        exchange=fundamentals.exchange or UNKNOWN,
        market_cap=fundamentals.market_cap,
        pe_ratio=fundamentals.pe_ratio,
        eps=fundamentals.eps,
        dividend_yield=fundamentals.dividend_yield,
        beta=fundamentals.beta,
        description=fundamentals.description,
        is_cached=is_cached,
        cache_age=(result.stale_age or 0.0) / HOUR_SECONDS if is_cached else 0.0,
        is_stale=result.is_stale,
        data_source=result.provider_name or fundamentals.source,
        degraded_features=list(result.degraded_features),
    )


@dataclass
class EnrichmentSummary:
    total_processed: int = 0
    from_cache: int = 0
    freshly_fetched: int = 0
    skipped_or_failed: int = 0
    daily_api_usage: str = "0/0"
    cache_hit_rate: float = 0.0  # percent
    cache_stats: dict[str, Any] = field(default_factory=dict)
    provider_usage: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalProcessed": self.total_processed,
            "fromCache": self.from_cache,
            "freshlyFetched": self.freshly_fetched,
            "skippedOrFailed": self.skipped_or_failed,
            "dailyApiUsage": self.daily_api_usage,
            "cacheHitRate": f"{self.cache_hit_rate:.1f}%",
            "cacheStats": self.cache_stats,
            "providerUsage": self.provider_usage,
        }


@dataclass
class EnrichmentResult:
    enriched_positions: list[EnrichedPosition]
    summary: EnrichmentSummary

    def to_dict(self) -> dict[str, Any]:
        return {
            "enrichedPositions": [
                p.model_dump(by_alias=True) for p in self.enriched_positions
            ],
            "summary": self.summary.to_dict(),
        }


class EnrichmentPipeline:
    """Normalize, fetch and merge fundamentals for a batch of positions."""

    def __init__(
        self,
        orchestrator: FallbackOrchestrator,
        ledger: UsageLedger,
        normalizer: SymbolNormalizer | None = None,
        concurrency: int = 4,
        options: FallbackOptions | None = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.normalizer = normalizer or SymbolNormalizer()
        self.concurrency = concurrency
        self.options = options

    @staticmethod
    def _validate_batch(positions: Any) -> list[Position]:
        if not isinstance(positions, (list, tuple)) or not positions:
            raise InvalidBatchError("No positions provided")

        validated = []
        for index, item in enumerate(positions):
            if isinstance(item, Position):
                validated.append(item)
                continue
            try:
                validated.append(Position.model_validate(item))
            except ValidationError as e:
                raise InvalidBatchError(f"Invalid position at index {index}: {e}") from e
        return validated

    async def _enrich_one(
        self,
        index: int,
        total: int,
        position: Position,
        per_symbol_cost: int,
        semaphore: asyncio.Semaphore,
    ) -> tuple[EnrichedPosition, str]:
        try:
            symbol = self.normalizer.normalize(position.ticker)
        except UnsupportedSymbolError as e:
            logger.info(
                "position_skipped",
                index=index + 1,
                total=total,
                ticker=position.ticker,
                reason=str(e),
            )
            enriched = baseline_position(position)
            enriched.data_source = "unsupported"
            return enriched, "skipped"

        async with semaphore:
            result = await self.orchestrator.fetch_fundamentals(
                symbol, per_symbol_cost, self.options
            )

        logger.debug(
            "position_enriched",
            index=index + 1,
            total=total,
            symbol=symbol,
            provider=result.provider,
            stale=result.is_stale,
        )

        enriched = merge_fundamentals(position, result)
        if enriched.data_source == "degraded-empty":
            outcome = "skipped"
        elif result.provider == "cache":
            outcome = "cache"
        elif result.data is not None:
            outcome = "fresh"
        else:
            outcome = "skipped"
        return enriched, outcome

    async def enrich(self, positions: Any, per_symbol_cost: int = 1) -> EnrichmentResult:
        """
        Enrich a batch of positions.

        Raises:
            InvalidBatchError: empty batch or a record that is not a position.
                Provider failures never raise; they show up in the summary.
        """
        batch = self._validate_batch(positions)
        logger.info("enrichment_started", positions=len(batch))

        for route in self.orchestrator.routes:
            route.cache.cleanup()

        semaphore = asyncio.Semaphore(self.concurrency)
        outcomes = await asyncio.gather(
            *(
                self._enrich_one(i, len(batch), p, per_symbol_cost, semaphore)
                for i, p in enumerate(batch)
            )
        )

        enriched = [position for position, _ in outcomes]
        counts = {"cache": 0, "fresh": 0, "skipped": 0}
        for _, outcome in outcomes:
            counts[outcome] += 1

        primary = self.orchestrator.primary
        summary = EnrichmentSummary(
            total_processed=len(batch),
            from_cache=counts["cache"],
            freshly_fetched=counts["fresh"],
            skipped_or_failed=counts["skipped"],
            daily_api_usage=self.ledger.daily_usage_string(primary.key),
            cache_hit_rate=counts["cache"] / len(batch) * 100,
            cache_stats=primary.cache.stats().to_dict(),
            provider_usage=[s.to_dict() for s in self.ledger.summary().providers],
        )

        logger.info(
            "enrichment_complete",
            total=summary.total_processed,
            from_cache=summary.from_cache,
            fresh=summary.freshly_fetched,
            skipped=summary.skipped_or_failed,
            daily_api_usage=summary.daily_api_usage,
        )
        return EnrichmentResult(enriched_positions=enriched, summary=summary)
