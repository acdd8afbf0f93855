"""
Fallback orchestration for fundamentals requests.

One governing order: live primary, live secondary, cached data, degraded
empty. Every result says which of those paths served it, so callers can
show how far they should trust the numbers.

Live calls go through the provider's RequestScheduler and are retried with
tenacity on TransientProviderError only. Quota exhaustion, provider
throttling and configuration failures move straight on to the next path.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from folio_enrich.data.cache import CacheEntry, CacheState, FundamentalsCache
from folio_enrich.data.interfaces import FundamentalsProvider
from folio_enrich.exceptions import (
    ConfigurationError,
    ProviderRejectedError,
    QuotaExhaustedError,
    TransientProviderError,
)
from folio_enrich.ledger import UsageLedger
from folio_enrich.models import (
    ENRICHMENT_FIELDS,
    VOLATILE_FIELDS,
    FallbackPath,
    FallbackReason,
    FallbackResult,
)
from folio_enrich.scheduler import RequestScheduler

logger = structlog.get_logger(__name__)

REAL_TIME_FEATURE = "real_time_data"

LiveCall = Callable[[], Awaitable[Any]]
CacheCall = Callable[[], CacheEntry | None]


@dataclass(frozen=True)
class FallbackOptions:
    enable_cache_fallback: bool = True
    max_retries: int = 2  # retries after the first attempt
    retry_delay: float = 1.0  # seconds
    prefer_cache: bool = True
    stale_after: float = 3600.0  # seconds
    queue_timeout: float | None = 120.0  # max wait for a queued live call

    @classmethod
    def from_settings(cls, settings) -> FallbackOptions:
        return cls(
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay,
            stale_after=settings.stale_after_hours * 3600.0,
            queue_timeout=settings.queue_timeout,
        )


@dataclass
class ProviderRoute:
    """Everything needed to reach one fundamentals provider."""

    fetcher: FundamentalsProvider
    scheduler: RequestScheduler
    cache: FundamentalsCache

    @property
    def key(self) -> str:
        return self.fetcher.key


def _reason_for(error: BaseException) -> FallbackReason:
    if isinstance(error, QuotaExhaustedError):
        return "quota_exceeded"
    if isinstance(error, ProviderRejectedError):
        return "rate_limited"
    if isinstance(error, TransientProviderError) and error.status_code is None:
        return "network_error"
    return "api_error"


class FallbackOrchestrator:
    """Runs the primary -> secondary -> cache -> degraded-empty chain."""

    def __init__(
        self,
        ledger: UsageLedger,
        primary: ProviderRoute,
        secondary: ProviderRoute | None = None,
        default_options: FallbackOptions | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.ledger = ledger
        self.primary = primary
        self.secondary = secondary
        self.default_options = default_options or FallbackOptions()
        self._sleep = sleep or asyncio.sleep

    @property
    def routes(self) -> list[ProviderRoute]:
        return [r for r in (self.primary, self.secondary) if r is not None]

    # --- capacity ---

    def _has_capacity(self, route: ProviderRoute, estimated_cost: int) -> bool:
        # Jobs already queued will consume quota before ours runs
        if not self.ledger.can_handle(route.key, estimated_cost + route.scheduler.pending):
            if not self.ledger.can_make_request(route.key) and route.scheduler.pending:
                route.scheduler.clear(reason=f"{route.key} quota exhausted")
            return False
        return True

    async def _submit(
        self, route: ProviderRoute, fn: LiveCall, options: FallbackOptions, label: str
    ) -> Any:
        if options.queue_timeout is None:
            return await route.scheduler.submit(fn, label=label)
        try:
            return await asyncio.wait_for(
                route.scheduler.submit(fn, label=label), timeout=options.queue_timeout
            )
        except asyncio.TimeoutError as e:
            raise QuotaExhaustedError(
                route.key, f"{route.key} did not run {label} within {options.queue_timeout}s"
            ) from e

    def _retrying(self, options: FallbackOptions) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(options.max_retries + 1),
            wait=wait_fixed(options.retry_delay),
            retry=retry_if_exception_type(TransientProviderError),
            sleep=self._sleep,
            reraise=True,
        )

    # --- result builders ---

    def _cache_result(
        self, entry: CacheEntry, options: FallbackOptions, fallback: bool, reason=None, attempts=0
    ) -> FallbackResult:
        now = self.ledger.now()
        age = entry.age(now)
        is_stale = entry.is_stale(now, options.stale_after)

        degraded: tuple[str, ...] = ()
        if fallback:
            degraded = (REAL_TIME_FEATURE,)
        if is_stale:
            degraded += VOLATILE_FIELDS

        source = (entry.data or {}).get("source")
        message = None
        if fallback:
            message = "Using cached data - live providers are limited or unavailable"
        elif is_stale:
            message = f"Cached data is {age / 3600:.1f} hours old"

        return FallbackResult(
            data=entry.data,
            provider="cache",
            fallback_applied=fallback,
            is_stale=is_stale,
            degraded_features=degraded,
            user_message=message,
            provider_name=f"{source}-cache" if source else "cache",
            reason=reason,
            stale_age=age,
            attempts=attempts,
        )

    # --- public API ---

    async def execute_with_fallback(
        self,
        operation_name: str,
        estimated_cost: int,
        primary_fn: LiveCall,
        cache_fn: CacheCall | None,
        options: FallbackOptions | None = None,
        secondary_fn: LiveCall | None = None,
        cache_key: str | None = None,
    ) -> FallbackResult:
        """
        Resolve one logical request through the fallback chain.

        Args:
            operation_name: label used in logs and user messages
            estimated_cost: provider calls the operation will consume
            primary_fn / secondary_fn: zero-arg coroutine functions; a None
                return means the provider confirmed it has no data
            cache_fn: returns the best unexpired cache entry or None
            cache_key: when set, live results (tombstones included) are
                written through to the provider's cache under this key and
                providers holding a tombstone for it are not called again

        Never raises for provider failures; the returned FallbackResult
        records the path taken.
        """
        options = options or self.default_options
        attempts = 0
        reason: FallbackReason | None = None
        confirmed_empty = False

        legs: list[tuple[FallbackPath, ProviderRoute, LiveCall]] = [
            ("primary", self.primary, primary_fn)
        ]
        if self.secondary is not None and secondary_fn is not None:
            legs.append(("secondary", self.secondary, secondary_fn))

        for path, route, fn in legs:
            if cache_key is not None:
                if route.cache.lookup(cache_key).state is CacheState.TOMBSTONE:
                    logger.debug(
                        "provider_skipped_tombstone", provider=route.key, key=cache_key
                    )
                    confirmed_empty = True
                    continue

            if not self._has_capacity(route, estimated_cost):
                logger.info(
                    "provider_skipped_quota",
                    provider=route.key,
                    operation=operation_name,
                    usage=self.ledger.format_usage(route.key),
                )
                reason = reason or "quota_exceeded"
                continue

            try:
                async for attempt in self._retrying(options):
                    with attempt:
                        attempts += 1
                        data = await self._submit(route, fn, options, operation_name)
            except (QuotaExhaustedError, ProviderRejectedError, TransientProviderError) as e:
                logger.warning(
                    "provider_call_failed",
                    provider=route.key,
                    operation=operation_name,
                    error=str(e),
                )
                reason = reason or _reason_for(e)
                continue
            except ConfigurationError as e:
                logger.error(
                    "provider_misconfigured",
                    provider=route.key,
                    operation=operation_name,
                    error=str(e),
                )
                reason = reason or "api_error"
                continue
            except Exception as e:
                logger.error(
                    "provider_call_error",
                    provider=route.key,
                    operation=operation_name,
                    error=str(e),
                    exc_info=True,
                )
                reason = reason or "api_error"
                continue

            if cache_key is not None:
                route.cache.set(cache_key, data)

            if data is None:
                logger.info("provider_no_data", provider=route.key, operation=operation_name)
                confirmed_empty = True
                continue

            fallback_applied = path == "secondary"
            logger.info(
                "fallback_resolved",
                operation=operation_name,
                provider=path,
                provider_name=route.key,
                attempts=attempts,
            )
            return FallbackResult(
                data=data,
                provider=path,
                fallback_applied=fallback_applied,
                user_message=(
                    f"Completed {operation_name} using {route.fetcher.name} (fallback applied)"
                    if fallback_applied
                    else None
                ),
                provider_name=route.key,
                reason=reason if fallback_applied else None,
                attempts=attempts,
            )

        if options.enable_cache_fallback and cache_fn is not None:
            entry = cache_fn()
            if entry is not None and not entry.is_tombstone:
                logger.info(
                    "fallback_resolved",
                    operation=operation_name,
                    provider="cache",
                    reason=reason,
                )
                return self._cache_result(
                    entry, options, fallback=True, reason=reason, attempts=attempts
                )

        if reason is None and confirmed_empty:
            reason = "unsupported"
            message = f"No fundamentals available for {operation_name} - showing broker data only"
        else:
            message = (
                f"Live data for {operation_name} is unavailable and nothing is cached - "
                "showing baseline broker data only"
            )

        logger.warning(
            "fallback_degraded_empty", operation=operation_name, reason=reason, attempts=attempts
        )
        return FallbackResult(
            data=None,
            provider="degraded-empty",
            fallback_applied=True,
            degraded_features=ENRICHMENT_FIELDS,
            user_message=message,
            reason=reason,
            attempts=attempts,
        )

    def cached_entry(self, symbol: str) -> CacheEntry | None:
        """First unexpired, non-tombstone entry across provider caches."""
        for route in self.routes:
            lookup = route.cache.lookup(symbol)
            if lookup.state is CacheState.FRESH:
                return lookup.entry
        return None

    async def fetch_fundamentals(
        self,
        symbol: str,
        estimated_cost: int = 1,
        options: FallbackOptions | None = None,
    ) -> FallbackResult:
        """Fundamentals for one bare symbol, cache-first when options allow."""
        options = options or self.default_options
        symbol = symbol.strip().upper()

        if options.prefer_cache:
            entry = self.cached_entry(symbol)
            if entry is not None:
                logger.debug("cache_hit", symbol=symbol)
                return self._cache_result(entry, options, fallback=False)

        secondary_fn = None
        if self.secondary is not None:
            secondary = self.secondary

            async def secondary_fn():
                return await secondary.fetcher.get_fundamentals(symbol)

        async def primary_fn():
            return await self.primary.fetcher.get_fundamentals(symbol)

        return await self.execute_with_fallback(
            symbol,
            estimated_cost,
            primary_fn,
            lambda: self.cached_entry(symbol),
            options=options,
            secondary_fn=secondary_fn,
            cache_key=symbol,
        )

    def fallback_status(self) -> dict[str, Any]:
        """Whether any provider is currently limited, and why."""
        reasons = []
        for route in self.routes:
            status = self.ledger.status(route.key)
            if not status.can_make_request:
                reasons.append(f"{status.name} is rate limited")
        return {"active": bool(reasons), "reasons": reasons}

    def retry_estimate(self, provider: str) -> float | None:
        """Seconds until the provider can make a request again; None if it can now."""
        status = self.ledger.status(provider)
        if status.can_make_request or self.ledger.get_provider(provider) is None:
            return None

        now = self.ledger.now()
        blocked = [
            reset
            for remaining, reset in (
                (status.remaining_minute, status.next_reset.minute),
                (status.remaining_hour, status.next_reset.hour),
                (status.remaining_day, status.next_reset.day),
            )
            if remaining <= 0 and reset is not None
        ]
        if not blocked:
            return None
        return max(0.0, max(blocked) - now)
