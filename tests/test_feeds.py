"""
Tests for the cache-first feed read path.
"""
import pytest

from breakmybubble.cache import TieredCache
from breakmybubble.errors import TransientAPIError
from breakmybubble.feeds import FeedService

HOUR = 60 * 60

FRESH_BATCH = [{"title": "Fresh headline"}]
OLD_BATCH = [{"title": "Old headline"}]


class StubFetcher:

    def __init__(self, articles=None, error=None):
        self.articles = articles if articles is not None else FRESH_BATCH
        self.error = error
        self.calls = []

    def __call__(self, source_key):
        self.calls.append(source_key)
        if self.error is not None:
            raise self.error
        return self.articles


class StubScheduler:

    def __init__(self):
        self.queued = []

    def queue_refresh(self, source_key, priority="medium"):
        self.queued.append((source_key, priority))
        return True


@pytest.fixture
def cache(clock):
    return TieredCache(clock=clock)


@pytest.fixture
def scheduler():
    return StubScheduler()


def test_missing_source_is_fetched_and_cached(cache, clock, scheduler):
    fetcher = StubFetcher()
    feeds = FeedService(cache, fetcher, scheduler=scheduler, clock=clock)

    articles, meta = feeds.get_articles("bbc-news")

    assert articles == FRESH_BATCH
    assert meta.cache_source == "upstream"
    assert fetcher.calls == ["bbc-news"]
    assert cache.get("bbc-news") == FRESH_BATCH


def test_fresh_source_is_served_from_cache(cache, clock, scheduler):
    cache.put("bbc-news", OLD_BATCH)
    clock.advance(HOUR)
    fetcher = StubFetcher()
    feeds = FeedService(cache, fetcher, scheduler=scheduler, clock=clock)

    articles, meta = feeds.get_articles("bbc-news")

    assert articles == OLD_BATCH
    assert meta.cache_source == "fresh"
    assert meta.age_seconds == HOUR
    assert fetcher.calls == []
    assert scheduler.queued == []


def test_stale_source_is_served_and_revalidated(cache, clock, scheduler):
    cache.put("bbc-news", OLD_BATCH)
    clock.advance(3 * HOUR)
    fetcher = StubFetcher()
    feeds = FeedService(cache, fetcher, scheduler=scheduler, clock=clock)

    articles, meta = feeds.get_articles("bbc-news")

    assert articles == OLD_BATCH
    assert meta.cache_source == "stale"
    assert meta.revalidating is True
    assert [key for key, _ in scheduler.queued] == ["bbc-news"]
    assert fetcher.calls == []


def test_expired_source_is_refetched(cache, clock, scheduler):
    cache.put("bbc-news", OLD_BATCH)
    clock.advance(13 * HOUR)
    fetcher = StubFetcher()
    feeds = FeedService(cache, fetcher, scheduler=scheduler, clock=clock)

    articles, meta = feeds.get_articles("bbc-news")

    assert articles == FRESH_BATCH
    assert meta.cache_source == "upstream"
    assert cache.cache_age("bbc-news") == 0


def test_expired_batch_is_last_resort(cache, clock, scheduler):
    cache.put("bbc-news", OLD_BATCH)
    clock.advance(13 * HOUR)
    fetcher = StubFetcher(error=TransientAPIError("NewsAPI server error", kind="server_error"))
    feeds = FeedService(cache, fetcher, scheduler=scheduler, clock=clock)

    articles, meta = feeds.get_articles("bbc-news")

    assert articles == OLD_BATCH
    assert meta.cache_source == "expired"


def test_fetch_error_propagates_without_fallback(cache, clock):
    fetcher = StubFetcher(error=TransientAPIError("NewsAPI server error", kind="server_error"))
    feeds = FeedService(cache, fetcher, clock=clock)

    with pytest.raises(TransientAPIError):
        feeds.get_articles("bbc-news")


def test_force_refresh_bypasses_cache(cache, clock):
    cache.put("bbc-news", OLD_BATCH)
    fetcher = StubFetcher()
    feeds = FeedService(cache, fetcher, clock=clock)

    articles, meta = feeds.get_articles("bbc-news", force_refresh=True)

    assert articles == FRESH_BATCH
    assert meta.cache_source == "upstream"


def test_meta_serialization(cache, clock):
    cache.put("bbc-news", OLD_BATCH)
    feeds = FeedService(cache, StubFetcher(), clock=clock)

    _, meta = feeds.get_articles("bbc-news")
    data = meta.to_dict()

    assert data["cacheSource"] == "fresh"
    assert data["lastUpdated"].endswith("Z")
    assert data["_debug"]["source"] == "bbc-news"
