"""
Cache-first feed reads.

fresh   -> serve from cache
stale   -> serve from cache and queue a background refresh
expired -> fetch upstream; fall back to the expired batch if that fails
missing -> fetch upstream
"""
import logging
import time
from typing import Callable, List, Optional, Tuple

from .cache import Article, CacheMeta, FreshnessTier, TieredCache
from .cache.core import iso_timestamp
from .governor import Priority
from .refresh import BackgroundRefreshScheduler

logger = logging.getLogger("feeds")

ArticleFetcher = Callable[[str], List[Article]]


class FeedService:
    """Articles per source, served through the tiered cache."""

    def __init__(
        self,
        cache: TieredCache,
        fetcher: ArticleFetcher,
        scheduler: Optional[BackgroundRefreshScheduler] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._cache = cache
        self._fetcher = fetcher
        self._scheduler = scheduler
        self._clock = clock

    def get_articles(self, source_key: str, force_refresh: bool = False) -> Tuple[List[Article], CacheMeta]:
        """
        Articles for source_key plus where they came from.

        Raises whatever the fetcher raises when there is no expired batch to
        fall back on.
        """
        status = self._cache.get_with_status(source_key)

        if not force_refresh and status.is_usable:
            # Counts the hit and access for the refresh heuristic
            articles = self._cache.get(source_key)
            if articles is not None:
                revalidating = False
                if status.tier == FreshnessTier.STALE and self._scheduler is not None:
                    revalidating = self._scheduler.queue_refresh(source_key, Priority.HIGH)
                return articles, self._meta(source_key, status.tier.value, status.age_seconds, revalidating)

        logger.info(f"CACHE MISS: {source_key} [{status.tier.value}], fetching upstream")
        try:
            articles = self.refresh(source_key)
        except Exception as e:
            if status.tier == FreshnessTier.EXPIRED and status.payload is not None:
                logger.warning(f"Fetch failed for {source_key}, serving expired cache: {e}")
                return status.payload, self._meta(source_key, "expired", status.age_seconds)
            raise

        return articles, self._meta(source_key, "upstream", 0.0)

    def refresh(self, source_key: str) -> List[Article]:
        """Fetch source_key upstream and write it back to the cache."""
        articles = self._fetcher(source_key)
        self._cache.put(source_key, articles)
        logger.debug(f"Refreshed {source_key} [{len(articles)} articles]")
        return articles

    def _meta(
        self,
        source_key: str,
        cache_source: str,
        age: Optional[float],
        revalidating: bool = False,
    ) -> CacheMeta:
        age = age or 0.0
        return CacheMeta(
            last_updated=iso_timestamp(self._clock() - age),
            cache_source=cache_source,
            source_key=source_key,
            age_seconds=age,
            revalidating=revalidating,
        )
