"""
Usage ledger: per-provider rolling-window call accounting.

Each provider keeps an append-only list of call timestamps. Counts for the
last minute / hour / day are derived by filtering on age, so "daily" means
a rolling 24h window rather than a calendar day.

Usage:
    ledger = UsageLedger([
        Provider("alphavantage", "Alpha Vantage", ProviderQuota(per_minute=5, per_day=25)),
    ])
    if ledger.status("alphavantage").can_make_request:
        ...
        ledger.record_call("alphavantage", success=True)
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)

MINUTE = 60.0
HOUR = 60.0 * MINUTE
DAY = 24.0 * HOUR

UNBOUNDED = math.inf

# Score weights: daily capacity matters least, minute capacity most
DAY_WEIGHT = 1
HOUR_WEIGHT = 24
MINUTE_WEIGHT = 1440
# Stand-in for infinite remaining capacity when scoring
_SCORE_CAP = 1_000_000

DAY_WARNING_THRESHOLD = 5
HOUR_WARNING_THRESHOLD = 5
MINUTE_WARNING_THRESHOLD = 1
LOW_PRIMARY_DAILY_THRESHOLD = 10


@dataclass(frozen=True)
class ProviderQuota:
    """Optional ceilings; None means the window is not limited."""

    per_minute: int | None = None
    per_hour: int | None = None
    per_day: int | None = None


@dataclass
class Provider:
    """A quota-tracked API provider. Mutated only by UsageLedger."""

    key: str
    name: str
    quota: ProviderQuota = field(default_factory=ProviderQuota)
    enabled: bool = True
    last_error: str | None = None
    last_error_at: float | None = None
    last_request_at: float | None = None
    total_requests: int = 0


@dataclass(frozen=True)
class NextReset:
    """Epoch seconds at which one more call frees up in each window."""

    minute: float | None = None
    hour: float | None = None
    day: float | None = None


@dataclass(frozen=True)
class ProviderStatus:
    provider: str
    name: str
    can_make_request: bool
    remaining_minute: float
    remaining_hour: float
    remaining_day: float
    next_reset: NextReset = field(default_factory=NextReset)
    warning: str | None = None
    last_error: str | None = None
    queue_size: int = 0

    @property
    def tightest_remaining(self) -> float:
        return min(self.remaining_minute, self.remaining_hour, self.remaining_day)

    def to_dict(self) -> dict:
        """JSON-friendly form; unbounded windows are reported as None."""
        return {
            "provider": self.provider,
            "name": self.name,
            "canMakeRequest": self.can_make_request,
            "remainingMinute": _finite_or_none(self.remaining_minute),
            "remainingHour": _finite_or_none(self.remaining_hour),
            "remainingDay": _finite_or_none(self.remaining_day),
            "nextResetTime": {
                "minute": self.next_reset.minute,
                "hour": self.next_reset.hour,
                "day": self.next_reset.day,
            },
            "warning": self.warning,
            "lastError": self.last_error,
            "queueSize": self.queue_size,
        }


@dataclass(frozen=True)
class LimitsSummary:
    providers: list[ProviderStatus]
    critical_limits: list[str]
    recommendations: list[str]

    def to_dict(self) -> dict:
        return {
            "providers": [p.to_dict() for p in self.providers],
            "criticalLimits": list(self.critical_limits),
            "recommendations": list(self.recommendations),
        }


def _finite_or_none(value: float) -> int | None:
    return None if math.isinf(value) else int(value)


def _absent_status(provider: str) -> ProviderStatus:
    return ProviderStatus(
        provider=provider,
        name=provider,
        can_make_request=False,
        remaining_minute=0,
        remaining_hour=0,
        remaining_day=0,
        warning=f"Unknown API provider: {provider}",
    )


class UsageLedger:
    """Rolling-window usage accounting for a fixed set of providers."""

    def __init__(
        self,
        providers: Iterable[Provider],
        clock: Callable[[], float] = time.time,
        primary: str | None = None,
        secondary: str | None = None,
    ):
        self._clock = clock
        self._providers: dict[str, Provider] = {p.key: p for p in providers}
        self._history: dict[str, list[float]] = {key: [] for key in self._providers}
        # Optional hook so status() can report scheduler queue depth
        self._queue_size_fn: Callable[[str], int] | None = None
        self.primary = primary
        self.secondary = secondary

    @property
    def provider_keys(self) -> list[str]:
        return list(self._providers)

    def get_provider(self, key: str) -> Provider | None:
        return self._providers.get(key)

    def attach_queue_sizes(self, fn: Callable[[str], int]) -> None:
        self._queue_size_fn = fn

    def now(self) -> float:
        return self._clock()

    def record_call(
        self, provider: str, success: bool = True, error: str | None = None
    ) -> None:
        """Append a call timestamp, prune >24h entries and update error state."""
        entry = self._providers.get(provider)
        if entry is None:
            logger.warning("unknown_api_provider", provider=provider)
            return

        now = self._clock()
        history = self._history[provider]
        history.append(now)
        cutoff = now - DAY
        self._history[provider] = [t for t in history if t > cutoff]

        entry.last_request_at = now
        entry.total_requests += 1

        if not success and error:
            entry.last_error = error
            entry.last_error_at = now
        elif success:
            entry.last_error = None
            entry.last_error_at = None

        logger.info(
            "api_call_recorded",
            provider=provider,
            success=success,
            usage=self.format_usage(provider),
        )

    def _counts(self, provider: str, now: float) -> tuple[int, int, int]:
        history = self._history.get(provider, [])
        minute = sum(1 for t in history if t > now - MINUTE)
        hour = sum(1 for t in history if t > now - HOUR)
        day = sum(1 for t in history if t > now - DAY)
        return minute, hour, day

    def _next_reset(self, provider: str, now: float) -> NextReset:
        """The oldest call still inside each window determines when it frees up."""
        history = self._history.get(provider, [])
        resets = {}
        for label, span in (("minute", MINUTE), ("hour", HOUR), ("day", DAY)):
            in_window = [t for t in history if t > now - span]
            resets[label] = in_window[0] + span if in_window else None
        return NextReset(**resets)

    def status(self, provider: str) -> ProviderStatus:
        entry = self._providers.get(provider)
        if entry is None:
            return _absent_status(provider)

        now = self._clock()
        minute, hour, day = self._counts(provider, now)
        quota = entry.quota

        remaining_minute = (
            quota.per_minute - minute if quota.per_minute is not None else UNBOUNDED
        )
        remaining_hour = quota.per_hour - hour if quota.per_hour is not None else UNBOUNDED
        remaining_day = quota.per_day - day if quota.per_day is not None else UNBOUNDED

        can_make_request = (
            entry.enabled
            and remaining_minute > 0
            and remaining_hour > 0
            and remaining_day > 0
        )

        warning = None
        if quota.per_day is not None and remaining_day <= DAY_WARNING_THRESHOLD:
            warning = f"Only {max(0, remaining_day)} requests remaining today"
        elif quota.per_hour is not None and remaining_hour <= HOUR_WARNING_THRESHOLD:
            warning = f"Only {max(0, remaining_hour)} requests remaining this hour"
        elif (
            quota.per_minute is not None
            and remaining_minute <= MINUTE_WARNING_THRESHOLD
        ):
            warning = f"Only {max(0, remaining_minute)} requests remaining this minute"

        return ProviderStatus(
            provider=provider,
            name=entry.name,
            can_make_request=can_make_request,
            remaining_minute=max(0, remaining_minute),
            remaining_hour=max(0, remaining_hour),
            remaining_day=max(0, remaining_day),
            next_reset=self._next_reset(provider, now),
            warning=warning,
            last_error=entry.last_error,
            queue_size=self._queue_size_fn(provider) if self._queue_size_fn else 0,
        )

    def can_make_request(self, provider: str) -> bool:
        return self.status(provider).can_make_request

    def can_handle(self, provider: str, estimated_calls: int = 1) -> bool:
        """True if the tightest window still has room for estimated_calls."""
        status = self.status(provider)
        if not status.can_make_request:
            return False
        return status.tightest_remaining >= estimated_calls

    def best_provider(self, candidates: Iterable[str] | None = None) -> str | None:
        """Highest weighted remaining capacity; first candidate wins ties."""
        names = list(candidates) if candidates is not None else self.provider_keys
        best: str | None = None
        best_score = -1.0

        for name in names:
            status = self.status(name)
            if not status.can_make_request:
                continue
            score = (
                min(status.remaining_day, _SCORE_CAP) * DAY_WEIGHT
                + min(status.remaining_hour, _SCORE_CAP) * HOUR_WEIGHT
                + min(status.remaining_minute, _SCORE_CAP) * MINUTE_WEIGHT
            )
            if score > best_score:
                best_score = score
                best = name

        return best

    def used_today(self, provider: str) -> int:
        return self._counts(provider, self._clock())[2]

    def format_usage(self, provider: str) -> str:
        """e.g. "3/5/min, 12/25/day" for logging."""
        entry = self._providers.get(provider)
        if entry is None:
            return "Unknown"

        minute, hour, day = self._counts(provider, self._clock())
        parts = []
        if entry.quota.per_minute is not None:
            parts.append(f"{minute}/{entry.quota.per_minute}/min")
        if entry.quota.per_hour is not None:
            parts.append(f"{hour}/{entry.quota.per_hour}/hour")
        if entry.quota.per_day is not None:
            parts.append(f"{day}/{entry.quota.per_day}/day")
        return ", ".join(parts) or f"{day} calls/day (unlimited)"

    def daily_usage_string(self, provider: str) -> str:
        """Rolling-day usage as "used/limit"."""
        entry = self._providers.get(provider)
        if entry is None:
            return "0/0"
        limit = entry.quota.per_day
        return f"{self.used_today(provider)}/{limit if limit is not None else 'unlimited'}"

    def summary(self) -> LimitsSummary:
        statuses = [self.status(key) for key in self._providers]
        critical = []
        for status in statuses:
            if not status.can_make_request:
                critical.append(f"{status.name} has reached its limits")
            elif status.warning:
                critical.append(f"{status.name}: {status.warning}")

        recommendations = []
        if critical:
            recommendations.append("Consider using cached data or reducing API calls")

        if self.primary and self.primary in self._providers:
            primary_status = self.status(self.primary)
            if primary_status.remaining_day <= LOW_PRIMARY_DAILY_THRESHOLD:
                secondary_name = (
                    self._providers[self.secondary].name
                    if self.secondary in self._providers
                    else "the secondary provider"
                )
                recommendations.append(
                    f"{primary_status.name} limit is low - rely more on {secondary_name}"
                )

        return LimitsSummary(
            providers=statuses,
            critical_limits=critical,
            recommendations=recommendations,
        )

    def reset(self, provider: str | None = None) -> None:
        """Clear usage history (administration and tests only)."""
        if provider is None:
            for key in self._providers:
                self.reset(key)
            return

        entry = self._providers.get(provider)
        if entry is None:
            return
        self._history[provider] = []
        entry.total_requests = 0
        entry.last_request_at = None
        logger.info("api_usage_reset", provider=provider)
