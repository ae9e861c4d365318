"""
Tests for the freshness-tiered cache and its persistence behavior.
"""
import json
import threading
import time

import pytest

from breakmybubble.cache import (
    CACHE_STORAGE_KEY,
    FreshnessPolicy,
    FreshnessTier,
    MemoryStore,
    TieredCache,
    format_cache_age,
)
from breakmybubble.cache.compression import decompress_text
from breakmybubble.errors import PersistenceError

HOUR = 60 * 60

ARTICLES = [
    {"title": "Budget vote delayed", "url": "https://example.com/a"},
    {"title": "Storm season outlook", "url": "https://example.com/b"},
]


class SlowStore(MemoryStore):
    """Store whose first write stalls, holding an old snapshot in flight."""

    def __init__(self, delay):
        super().__init__()
        self.delay = delay
        self.writing = threading.Event()
        self._stalled = False

    def set(self, key, value):
        if not self._stalled:
            self._stalled = True
            self.writing.set()
            time.sleep(self.delay)
        super().set(key, value)


class BrokenStore:
    """Store whose every operation fails."""

    def get(self, key):
        raise PersistenceError("disk unavailable")

    def set(self, key, value):
        raise PersistenceError("disk unavailable")

    def remove(self, key):
        raise PersistenceError("disk unavailable")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache(store, clock):
    return TieredCache(store=store, clock=clock)


class TestFreshnessPolicy:

    def test_tier_boundaries(self):
        policy = FreshnessPolicy()
        assert policy.classify(0) == FreshnessTier.FRESH
        assert policy.classify(2 * HOUR) == FreshnessTier.FRESH
        assert policy.classify(2 * HOUR + 1) == FreshnessTier.STALE
        assert policy.classify(12 * HOUR) == FreshnessTier.STALE
        assert policy.classify(12 * HOUR + 1) == FreshnessTier.EXPIRED
        assert policy.classify(24 * HOUR) == FreshnessTier.EXPIRED
        assert policy.classify(24 * HOUR + 1) == FreshnessTier.MISSING


class TestTieredCache:

    def test_fresh_entry_is_served(self, cache):
        cache.put("bbc-news", ARTICLES)
        assert cache.get("bbc-news") == ARTICLES
        assert cache.get_with_status("bbc-news").tier == FreshnessTier.FRESH

    def test_stale_entry_is_served(self, cache, clock):
        cache.put("bbc-news", ARTICLES)
        clock.advance(3 * HOUR)

        status = cache.get_with_status("bbc-news")
        assert status.tier == FreshnessTier.STALE
        assert status.payload == ARTICLES
        assert cache.get("bbc-news") == ARTICLES

    def test_expired_entry_only_visible_with_status(self, cache, clock):
        cache.put("bbc-news", ARTICLES)
        clock.advance(13 * HOUR)

        assert cache.get("bbc-news") is None
        status = cache.get_with_status("bbc-news")
        assert status.tier == FreshnessTier.EXPIRED
        assert status.payload == ARTICLES
        assert not status.is_usable

    def test_entry_past_retention_is_purged(self, cache, clock, store):
        cache.put("bbc-news", ARTICLES)
        clock.advance(25 * HOUR)

        assert cache.get("bbc-news") is None
        assert cache.stats().entry_count == 0
        assert json.loads(decompress_text(store.get(CACHE_STORAGE_KEY))) == {}

    def test_get_with_status_does_not_purge(self, cache, clock):
        cache.put("bbc-news", ARTICLES)
        clock.advance(25 * HOUR)

        assert cache.get_with_status("bbc-news").tier == FreshnessTier.MISSING
        assert cache.stats().entry_count == 1

    def test_missing_key(self, cache):
        assert cache.get("unknown") is None
        assert cache.get_with_status("unknown").tier == FreshnessTier.MISSING
        assert cache.cache_age("unknown") is None

    def test_put_overwrites_and_resets_age(self, cache, clock):
        cache.put("bbc-news", ARTICLES)
        clock.advance(5 * HOUR)
        cache.put("bbc-news", ARTICLES[:1])

        assert cache.cache_age("bbc-news") == 0
        assert cache.get("bbc-news") == ARTICLES[:1]

    def test_access_count_tracks_successful_reads(self, cache, clock):
        cache.put("bbc-news", ARTICLES)
        cache.get("bbc-news")
        cache.get("bbc-news")
        clock.advance(13 * HOUR)
        cache.get("bbc-news")

        assert cache.access_count("bbc-news") == 2

    def test_overwrite_keeps_access_count(self, cache):
        cache.put("bbc-news", ARTICLES)
        for _ in range(6):
            cache.get("bbc-news")

        cache.put("bbc-news", ARTICLES[:1])

        assert cache.access_count("bbc-news") == 6

    def test_stats(self, cache, clock):
        cache.put("bbc-news", ARTICLES)
        clock.advance(HOUR)
        cache.put("reuters", ARTICLES[:1])

        stats = cache.stats()
        assert stats.entry_count == 2
        assert stats.total_items == 3
        assert stats.oldest_entry_age == HOUR
        assert stats.newest_entry_age == 0
        assert stats.to_dict()["entryCount"] == 2

    def test_empty_stats(self, cache):
        stats = cache.stats()
        assert stats.entry_count == 0
        assert stats.oldest_entry_age is None

    def test_clear_removes_everything(self, cache, store):
        cache.put("bbc-news", ARTICLES)
        cache.put("reuters", ARTICLES)

        assert cache.clear() == 2
        assert cache.keys() == []
        assert store.get(CACHE_STORAGE_KEY) is None

    def test_analytics_counts_hits_and_misses(self, cache):
        cache.put("bbc-news", ARTICLES)
        cache.get("bbc-news")
        cache.get("unknown")

        analytics = cache.analytics()
        assert analytics["hits"] == 1
        assert analytics["misses"] == 1
        assert analytics["hit_rate_percent"] == 50.0


class TestPersistence:

    def test_entries_survive_reload(self, store, clock):
        TieredCache(store=store, clock=clock).put("bbc-news", ARTICLES)

        reloaded = TieredCache(store=store, clock=clock)
        assert reloaded.get("bbc-news") == ARTICLES

    def test_persisted_record_format(self, cache, store, clock):
        cache.put("bbc-news", ARTICLES)

        records = json.loads(decompress_text(store.get(CACHE_STORAGE_KEY)))
        assert records["bbc-news"]["payload"] == ARTICLES
        assert records["bbc-news"]["writtenAt"] == int(clock.now * 1000)

    def test_load_sweeps_entries_past_retention(self, store, clock):
        cache = TieredCache(store=store, clock=clock)
        cache.put("old", ARTICLES)
        clock.advance(20 * HOUR)
        cache.put("recent", ARTICLES)
        clock.advance(5 * HOUR)

        reloaded = TieredCache(store=store, clock=clock)
        assert reloaded.keys() == ["recent"]
        assert set(json.loads(decompress_text(store.get(CACHE_STORAGE_KEY)))) == {"recent"}

    def test_unreadable_data_starts_empty(self, store, clock):
        store.set(CACHE_STORAGE_KEY, "not json")
        cache = TieredCache(store=store, clock=clock)
        assert cache.keys() == []

    def test_broken_store_degrades_to_memory(self, clock):
        cache = TieredCache(store=BrokenStore(), clock=clock)
        cache.put("bbc-news", ARTICLES)

        assert cache.get("bbc-news") == ARTICLES
        assert cache.clear() == 1


    def test_concurrent_puts_persist_newest_map(self, clock):
        store = SlowStore(delay=0.3)
        cache = TieredCache(store=store, clock=clock)

        writer = threading.Thread(target=cache.put, args=("a", ARTICLES))
        writer.start()
        assert store.writing.wait(timeout=5)
        cache.put("b", ARTICLES)
        writer.join(timeout=5)

        persisted = json.loads(decompress_text(store.get(CACHE_STORAGE_KEY)))
        assert sorted(persisted) == ["a", "b"]
        assert sorted(TieredCache(store=store, clock=clock).keys()) == ["a", "b"]


class TestCompression:

    def test_large_map_is_stored_compressed(self, cache, store, clock):
        cache.put("bbc-news", ARTICLES * 50)

        raw = store.get(CACHE_STORAGE_KEY)
        assert raw.startswith("z:")
        assert TieredCache(store=store, clock=clock).get("bbc-news") == ARTICLES * 50

        compression = cache.analytics()["compression"]
        assert compression["totalCompressions"] == 1
        assert compression["compressionSuccessRate"] == 1
        assert compression["averageCompressionRatio"] < 0.9

    def test_small_map_stays_raw_json(self, cache, store):
        cache.put("bbc-news", ARTICLES[:1])
        cache.remove("bbc-news")

        assert store.get(CACHE_STORAGE_KEY) == "{}"
        assert cache.analytics()["compression"]["compressionSuccessRate"] == 0

    def test_compression_can_be_disabled(self, store, clock):
        cache = TieredCache(store=store, clock=clock, compress=False)
        cache.put("bbc-news", ARTICLES * 50)

        records = json.loads(store.get(CACHE_STORAGE_KEY))
        assert records["bbc-news"]["payload"] == ARTICLES * 50
        assert cache.analytics()["compression"]["totalCompressions"] == 0

    def test_raw_map_loads_into_compressing_cache(self, store, clock):
        TieredCache(store=store, clock=clock, compress=False).put("bbc-news", ARTICLES)

        reloaded = TieredCache(store=store, clock=clock)
        assert reloaded.get("bbc-news") == ARTICLES
        assert reloaded.analytics()["compression"]["totalDecompressions"] == 0

    def test_compressed_map_load_is_counted(self, store, clock):
        TieredCache(store=store, clock=clock).put("bbc-news", ARTICLES * 50)

        reloaded = TieredCache(store=store, clock=clock)
        compression = reloaded.analytics()["compression"]
        assert compression["totalDecompressions"] == 1
        assert compression["decompressionSuccessRate"] == 1

    def test_corrupt_compressed_map_starts_empty(self, store, clock):
        store.set(CACHE_STORAGE_KEY, "z:not-base64!")

        cache = TieredCache(store=store, clock=clock)
        assert cache.keys() == []
        assert cache.analytics()["compression"]["decompressionSuccessRate"] == 0


def test_format_cache_age():
    assert format_cache_age(30) == "Less than 1 minute ago"
    assert format_cache_age(60) == "1 minute ago"
    assert format_cache_age(45 * 60) == "45 minutes ago"
