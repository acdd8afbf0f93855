"""
Service wiring.

build_services() constructs the ledger, caches, fetchers, schedulers,
orchestrator and pipeline exactly once from Settings. The HTTP app and the
CLI both hold the resulting Services object for the life of the process and
call aclose() on shutdown.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from folio_enrich.broker.trading212 import PROVIDER_KEY as TRADING212_KEY
from folio_enrich.broker.trading212 import Trading212Client
from folio_enrich.config import Settings
from folio_enrich.data.alpha_vantage import AlphaVantageFetcher
from folio_enrich.data.cache import HOUR_SECONDS, FundamentalsCache
from folio_enrich.data.tiingo import TiingoFetcher
from folio_enrich.fallback import FallbackOptions, FallbackOrchestrator, ProviderRoute
from folio_enrich.ledger import Provider, ProviderQuota, UsageLedger
from folio_enrich.pipeline import EnrichmentPipeline
from folio_enrich.scheduler import RequestScheduler
from folio_enrich.symbols import SymbolNormalizer

logger = structlog.get_logger(__name__)

ALPHA_VANTAGE_CACHE_FILE = "alphavantage_fundamentals.json"
TIINGO_CACHE_FILE = "tiingo_fundamentals.json"


@dataclass
class Services:
    settings: Settings
    ledger: UsageLedger
    primary: ProviderRoute
    secondary: ProviderRoute
    orchestrator: FallbackOrchestrator
    pipeline: EnrichmentPipeline
    broker: Trading212Client
    options: FallbackOptions

    @property
    def caches(self) -> list[FundamentalsCache]:
        return [self.primary.cache, self.secondary.cache]

    def scheduler_for(self, provider: str) -> RequestScheduler | None:
        for route in (self.primary, self.secondary):
            if route.key == provider:
                return route.scheduler
        return None

    async def aclose(self) -> None:
        for route in (self.primary, self.secondary):
            route.scheduler.clear(reason="shutting down")
            await route.fetcher.close()
        await self.broker.close()
        logger.info("services_closed")


def build_ledger(settings: Settings) -> UsageLedger:
    return UsageLedger(
        [
            Provider(
                AlphaVantageFetcher.key,
                AlphaVantageFetcher.name,
                ProviderQuota(
                    per_minute=settings.alphavantage_per_minute,
                    per_hour=settings.alphavantage_per_hour,
                    per_day=settings.alphavantage_per_day,
                ),
            ),
            Provider(
                TiingoFetcher.key,
                TiingoFetcher.name,
                ProviderQuota(
                    per_minute=settings.tiingo_per_minute,
                    per_hour=settings.tiingo_per_hour,
                    per_day=settings.tiingo_per_day,
                ),
            ),
            # No published limits; tracked for visibility only
            Provider(TRADING212_KEY, "Trading212"),
        ],
        primary=AlphaVantageFetcher.key,
        secondary=TiingoFetcher.key,
    )


def build_services(settings: Settings) -> Services:
    """Wire every service object from settings. No network calls are made here."""
    ledger = build_ledger(settings)
    cache_dir = settings.data_cache_dir

    primary = ProviderRoute(
        fetcher=AlphaVantageFetcher(
            settings.get_alpha_vantage_api_key(), timeout=settings.request_timeout
        ),
        scheduler=RequestScheduler(
            AlphaVantageFetcher.key,
            ledger,
            spacing=settings.alphavantage_spacing_seconds,
            call_timeout=settings.request_timeout,
        ),
        cache=FundamentalsCache(
            AlphaVantageFetcher.key,
            cache_dir / ALPHA_VANTAGE_CACHE_FILE,
            ttl_seconds=settings.alphavantage_cache_ttl_hours * HOUR_SECONDS,
        ),
    )
    secondary = ProviderRoute(
        fetcher=TiingoFetcher(settings.get_tiingo_api_key(), timeout=settings.request_timeout),
        scheduler=RequestScheduler(
            TiingoFetcher.key,
            ledger,
            spacing=settings.tiingo_spacing_seconds,
            # three HTTP calls per job
            call_timeout=settings.request_timeout * 3,
        ),
        cache=FundamentalsCache(
            TiingoFetcher.key,
            cache_dir / TIINGO_CACHE_FILE,
            ttl_seconds=settings.tiingo_cache_ttl_hours * HOUR_SECONDS,
        ),
    )

    def queue_size(provider: str) -> int:
        for route in (primary, secondary):
            if route.key == provider:
                return route.scheduler.pending
        return 0

    ledger.attach_queue_sizes(queue_size)

    options = FallbackOptions.from_settings(settings)
    orchestrator = FallbackOrchestrator(ledger, primary, secondary, default_options=options)
    pipeline = EnrichmentPipeline(
        orchestrator,
        ledger,
        normalizer=SymbolNormalizer(settings.extra_unsupported_symbols),
        concurrency=settings.enrich_concurrency,
        options=options,
    )
    broker = Trading212Client(
        settings.get_trading212_api_key(),
        base_url=settings.trading212_base_url,
        ledger=ledger,
        cache_seconds=settings.positions_cache_seconds,
        timeout=settings.request_timeout,
    )

    logger.info(
        "services_built",
        cache_dir=str(cache_dir),
        primary=primary.key,
        secondary=secondary.key,
        concurrency=settings.enrich_concurrency,
    )
    return Services(
        settings=settings,
        ledger=ledger,
        primary=primary,
        secondary=secondary,
        orchestrator=orchestrator,
        pipeline=pipeline,
        broker=broker,
        options=options,
    )
