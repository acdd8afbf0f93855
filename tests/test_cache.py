"""
Tests for the persistent fundamentals cache.

Covers write/read, tombstones, expiry and eviction, cleanup idempotence,
persistence across instances and corrupt-file recovery.
"""

import json

import pytest

from folio_enrich.data.cache import CacheState, FundamentalsCache

TTL = 24 * 3600.0
AAPL = {"symbol": "AAPL", "name": "Apple Inc", "sector": "Technology"}


@pytest.fixture
def cache(tmp_path, clock):
    return FundamentalsCache("alphavantage", tmp_path / "av.json", TTL, clock=clock)


class TestReadWrite:
    def test_set_then_get_returns_payload_not_stale(self, cache, clock):
        cache.set("AAPL", AAPL)

        entry = cache.get("AAPL")
        assert entry.data == AAPL
        assert entry.is_stale(clock(), stale_after=3600) is False
        assert entry.expires_at > entry.cached_at

    def test_keys_are_case_insensitive(self, cache):
        cache.set("aapl", AAPL)

        assert cache.has("AAPL")
        assert cache.get("AAPL").symbol == "AAPL"

    def test_lookup_variants(self, cache):
        cache.set("AAPL", AAPL)
        cache.set("ZZZZ", None)

        assert cache.lookup("AAPL").state is CacheState.FRESH
        tombstone = cache.lookup("ZZZZ")
        assert tombstone.state is CacheState.TOMBSTONE
        assert tombstone.hit is True
        assert tombstone.entry.is_tombstone
        absent = cache.lookup("MSFT")
        assert absent.state is CacheState.ABSENT
        assert absent.hit is False
        assert absent.entry is None

    def test_replacement_overwrites_whole_entry(self, cache, clock):
        cache.set("AAPL", AAPL)
        clock.advance(100)
        cache.set("AAPL", {"symbol": "AAPL"})

        entry = cache.get("AAPL")
        assert entry.data == {"symbol": "AAPL"}
        assert entry.cached_at == clock()

    def test_staleness_grows_with_age(self, cache, clock):
        cache.set("AAPL", AAPL)
        clock.advance(2 * 3600)

        entry = cache.get("AAPL")
        assert entry.age(clock()) == 2 * 3600
        assert entry.is_stale(clock(), stale_after=3600) is True

    def test_symbols_to_refresh_preserves_order(self, cache):
        cache.set("AAPL", AAPL)

        assert cache.symbols_to_refresh(["TSLA", "AAPL", "MSFT"]) == ["TSLA", "MSFT"]

    def test_non_positive_ttl_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            FundamentalsCache("x", tmp_path / "x.json", 0)


class TestExpiry:
    def test_expired_entry_is_absent_and_evicted(self, cache, clock):
        cache.set("AAPL", AAPL)
        clock.advance(TTL + 1)

        assert cache.get("AAPL") is None
        assert len(cache) == 0

    def test_cleanup_is_idempotent(self, cache, clock):
        cache.set("AAPL", AAPL)
        clock.advance(TTL / 2)
        cache.set("TSLA", {"symbol": "TSLA"})
        clock.advance(TTL / 2 + 1)

        assert cache.cleanup() == 1
        assert len(cache) == 1
        assert cache.cleanup() == 0
        assert len(cache) == 1


class TestPersistence:
    def test_entries_survive_a_new_instance(self, cache, tmp_path, clock):
        cache.set("AAPL", AAPL)
        cache.set("ZZZZ", None)

        reopened = FundamentalsCache("alphavantage", tmp_path / "av.json", TTL, clock=clock)
        assert reopened.get("AAPL").data == AAPL
        assert reopened.lookup("ZZZZ").state is CacheState.TOMBSTONE

    def test_file_layout(self, cache, tmp_path, clock):
        cache.set("AAPL", AAPL)

        raw = json.loads((tmp_path / "av.json").read_text())
        assert raw == {
            "AAPL": {"data": AAPL, "cachedAt": clock(), "expiresAt": clock() + TTL}
        }

    def test_corrupt_file_is_treated_as_empty(self, tmp_path, clock):
        path = tmp_path / "av.json"
        path.write_text("{not json")

        cache = FundamentalsCache("alphavantage", path, TTL, clock=clock)
        assert len(cache) == 0
        cache.set("AAPL", AAPL)
        assert json.loads(path.read_text())["AAPL"]["data"] == AAPL

    @pytest.mark.parametrize("bad_data", [["x"], "junk", 42, {"name": "Apple"}])
    def test_malformed_payload_entries_are_dropped(self, tmp_path, clock, bad_data):
        path = tmp_path / "av.json"
        now = clock()
        path.write_text(
            json.dumps(
                {
                    "AAPL": {"data": bad_data, "cachedAt": now, "expiresAt": now + 100},
                    "MSFT": {"data": {"symbol": "MSFT"}, "cachedAt": now, "expiresAt": now + 100},
                    "ZZZZ": {"data": None, "cachedAt": now, "expiresAt": now + 100},
                }
            )
        )

        cache = FundamentalsCache("alphavantage", path, TTL, clock=clock)

        assert cache.lookup("AAPL").state is CacheState.ABSENT
        assert cache.lookup("MSFT").state is CacheState.FRESH
        assert cache.lookup("ZZZZ").state is CacheState.TOMBSTONE

    def test_clear_removes_file(self, cache, tmp_path):
        cache.set("AAPL", AAPL)

        cache.clear()

        assert len(cache) == 0
        assert not (tmp_path / "av.json").exists()


class TestStats:
    def test_empty_cache(self, cache):
        stats = cache.stats()

        assert stats.total_cached == 0
        assert stats.cache_hit_rate == 0.0
        assert stats.average_age_hours == 0.0

    def test_counts_expired_without_evicting(self, cache, clock):
        cache.set("AAPL", AAPL)
        clock.advance(TTL / 2)
        cache.set("TSLA", {"symbol": "TSLA"})
        clock.advance(TTL / 2 + 1)

        stats = cache.stats()
        assert stats.total_cached == 2
        assert stats.expired == 1
        assert stats.fresh == 1
        assert stats.cache_hit_rate == 50.0

        data = stats.to_dict()
        assert data["totalCached"] == 2
        assert data["cacheHitRate"] == 50.0
        assert "averageAge" in data

    def test_info(self, cache, clock):
        start = clock()
        cache.set("TSLA", {"symbol": "TSLA"})
        clock.advance(10)
        cache.set("AAPL", AAPL)

        info = cache.info()
        assert info["size"] == 2
        assert info["symbols"] == ["AAPL", "TSLA"]
        assert info["oldestCache"] == start
