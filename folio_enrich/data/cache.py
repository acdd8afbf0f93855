"""
Persistent TTL cache for provider fundamentals.

One JSON file per provider namespace, laid out as
    {"AAPL": {"data": {...} | null, "cachedAt": 1700000000.0, "expiresAt": ...}}
Timestamps are epoch seconds. A null payload is a tombstone: the provider
was asked and confirmed it has no data for the symbol, which stops us
spending quota on it again until the entry expires.

The file is loaded lazily on first use and rewritten after every mutation,
so short-lived processes share what earlier runs already paid for.
"""

from __future__ import annotations

import json
import os
import tempfile
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from folio_enrich.models import CompanyFundamentals

logger = structlog.get_logger(__name__)

HOUR_SECONDS = 3600.0


def _valid_payload(data: Any) -> bool:
    """Tombstone or a dict that parses as CompanyFundamentals."""
    if data is None:
        return True
    if not isinstance(data, dict):
        return False
    try:
        CompanyFundamentals.model_validate(data)
    except ValidationError:
        return False
    return True


@dataclass(frozen=True)
class CacheEntry:
    symbol: str
    data: dict[str, Any] | None
    cached_at: float
    expires_at: float

    @property
    def is_tombstone(self) -> bool:
        return self.data is None

    def age(self, now: float) -> float:
        """Seconds since the entry was written."""
        return max(0.0, now - self.cached_at)

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def is_stale(self, now: float, stale_after: float) -> bool:
        return self.age(now) > stale_after

    def to_json(self) -> dict[str, Any]:
        return {"data": self.data, "cachedAt": self.cached_at, "expiresAt": self.expires_at}


class CacheState(Enum):
    FRESH = "fresh"
    TOMBSTONE = "tombstone"
    ABSENT = "absent"


@dataclass(frozen=True)
class CacheLookup:
    """Tagged result of a cache read; entry is None only when ABSENT."""

    state: CacheState
    entry: CacheEntry | None = None

    @property
    def hit(self) -> bool:
        return self.state is not CacheState.ABSENT


ABSENT = CacheLookup(CacheState.ABSENT)


@dataclass(frozen=True)
class CacheStats:
    total_cached: int
    expired: int
    fresh: int
    cache_hit_rate: float
    average_age_hours: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalCached": self.total_cached,
            "expired": self.expired,
            "fresh": self.fresh,
            "cacheHitRate": round(self.cache_hit_rate, 1),
            "averageAge": round(self.average_age_hours, 2),
        }


class FundamentalsCache:
    """Symbol-keyed TTL store backed by a JSON file."""

    def __init__(
        self,
        namespace: str,
        path: Path,
        ttl_seconds: float,
        clock: Callable[[], float] = time.time,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.namespace = namespace
        self.path = Path(path)
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] | None = None

    @staticmethod
    def _key(symbol: str) -> str:
        return symbol.strip().upper()

    # --- persistence ---

    def _load(self) -> dict[str, CacheEntry]:
        if self._entries is not None:
            return self._entries

        entries: dict[str, CacheEntry] = {}
        if self.path.exists():
            try:
                with open(self.path, encoding="utf-8") as f:
                    raw = json.load(f)
                for symbol, value in raw.items():
                    data = value.get("data")
                    if not _valid_payload(data):
                        logger.warning(
                            "fundamentals_cache_entry_dropped",
                            namespace=self.namespace,
                            symbol=symbol,
                        )
                        continue
                    entries[symbol] = CacheEntry(
                        symbol=symbol,
                        data=data,
                        cached_at=float(value["cachedAt"]),
                        expires_at=float(value["expiresAt"]),
                    )
                logger.info(
                    "fundamentals_cache_loaded",
                    namespace=self.namespace,
                    entries=len(entries),
                )
            except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning(
                    "fundamentals_cache_load_failed",
                    namespace=self.namespace,
                    path=str(self.path),
                    error=str(e),
                )
                entries = {}

        self._entries = entries
        return entries

    def _save(self) -> None:
        entries = self._load()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {symbol: entry.to_json() for symbol, entry in entries.items()}
        try:
            # Write to a sibling temp file, then swap, so readers never see half a file
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_name, self.path)
        except OSError as e:
            logger.warning(
                "fundamentals_cache_save_failed", namespace=self.namespace, error=str(e)
            )

    # --- reads ---

    def get(self, symbol: str) -> CacheEntry | None:
        """Unexpired entry (tombstones included) or None. Expired entries are evicted."""
        entries = self._load()
        key = self._key(symbol)
        entry = entries.get(key)
        if entry is None:
            return None

        if entry.is_expired(self._clock()):
            del entries[key]
            self._save()
            logger.debug("cache_entry_expired", namespace=self.namespace, symbol=key)
            return None

        return entry

    def lookup(self, symbol: str) -> CacheLookup:
        entry = self.get(symbol)
        if entry is None:
            return ABSENT
        if entry.is_tombstone:
            return CacheLookup(CacheState.TOMBSTONE, entry)
        return CacheLookup(CacheState.FRESH, entry)

    def has(self, symbol: str) -> bool:
        return self.get(symbol) is not None

    def symbols_to_refresh(self, symbols: Iterable[str]) -> list[str]:
        """Symbols with no usable entry, in input order."""
        return [s for s in symbols if not self.has(s)]

    # --- writes ---

    def set(self, symbol: str, data: dict[str, Any] | None) -> CacheEntry:
        """Replace the entry for symbol. data=None stores a tombstone."""
        entries = self._load()
        now = self._clock()
        key = self._key(symbol)
        entry = CacheEntry(
            symbol=key,
            data=data,
            cached_at=now,
            expires_at=now + self.ttl_seconds,
        )
        entries[key] = entry
        self._save()
        logger.debug(
            "cache_entry_written",
            namespace=self.namespace,
            symbol=key,
            tombstone=data is None,
        )
        return entry

    def cleanup(self) -> int:
        """Evict every expired entry. Returns the number removed."""
        entries = self._load()
        now = self._clock()
        expired = [key for key, entry in entries.items() if entry.is_expired(now)]
        for key in expired:
            del entries[key]

        if expired:
            self._save()
            logger.info(
                "cache_cleanup", namespace=self.namespace, removed=len(expired)
            )
        return len(expired)

    def clear(self) -> None:
        self._entries = {}
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("cache_clear_failed", namespace=self.namespace, error=str(e))
        logger.info("cache_cleared", namespace=self.namespace)

    # --- reporting ---

    def stats(self) -> CacheStats:
        entries = list(self._load().values())
        now = self._clock()

        total = len(entries)
        expired = sum(1 for e in entries if e.is_expired(now))
        fresh = total - expired
        hit_rate = (fresh / total) * 100 if total else 0.0
        average_age = (
            sum(e.age(now) for e in entries) / total / HOUR_SECONDS if total else 0.0
        )

        return CacheStats(
            total_cached=total,
            expired=expired,
            fresh=fresh,
            cache_hit_rate=hit_rate,
            average_age_hours=average_age,
        )

    def info(self) -> dict[str, Any]:
        entries = self._load()
        return {
            "size": len(entries),
            "symbols": sorted(entries),
            "oldestCache": min((e.cached_at for e in entries.values()), default=None),
        }

    def __len__(self) -> int:
        return len(self._load())
