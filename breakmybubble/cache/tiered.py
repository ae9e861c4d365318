"""
Freshness-tiered article cache with lazy eviction and pluggable persistence.
"""
import json
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Any

from ..errors import PersistenceError
from .core import (
    Article,
    CacheEntry,
    CacheStats,
    CacheStatus,
    FreshnessPolicy,
    FreshnessTier,
)
from .compression import CompressionMetrics, compress_text, decompress_text, is_compressed
from .storage import KeyValueStore, MemoryStore

logger = logging.getLogger("cache.tiered")

CACHE_STORAGE_KEY = "breakMyBubble_feedCache"


class TieredCache:
    """
    Per-source article batches classified by age:
    - fresh (<= 2h) and stale (<= 12h) are served by get()
    - expired (<= 24h) is only visible through get_with_status()
    - anything older is purged lazily by get() or the load-time sweep

    The whole cache is persisted as one JSON map under a fixed storage key,
    zlib-compressed when that saves at least 10%.
    Persistence failures are logged and swallowed; the in-memory map keeps
    working and a failed load starts empty.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        policy: Optional[FreshnessPolicy] = None,
        clock: Callable[[], float] = time.time,
        storage_key: str = CACHE_STORAGE_KEY,
        compress: bool = True,
    ):
        self._store = store if store is not None else MemoryStore()
        self._policy = policy or FreshnessPolicy()
        self._clock = clock
        self._storage_key = storage_key
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._save_lock = threading.Lock()
        self._compress = compress
        self._compression = CompressionMetrics()

        self._stats = {
            "hits": 0,
            "misses": 0,
            "purged": 0,
        }

        self._load()

    @property
    def policy(self) -> FreshnessPolicy:
        return self._policy

    # ----------------------------------------------------------------
    # Persistence
    # ----------------------------------------------------------------

    def _load(self) -> None:
        """Load persisted entries and sweep anything past retention."""
        try:
            raw = self._store.get(self._storage_key)
        except PersistenceError as e:
            logger.warning(f"Failed to load cache from storage: {e}")
            return

        if not raw:
            return

        try:
            records = json.loads(decompress_text(raw))
            entries = {
                key: CacheEntry.from_record(record)
                for key, record in records.items()
            }
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            if is_compressed(raw):
                self._compression.record_decompression(False)
            logger.warning(f"Discarding unreadable cache data: {e}")
            return
        if is_compressed(raw):
            self._compression.record_decompression(True)

        now = self._clock()
        expired = [
            key for key, entry in entries.items()
            if entry.age_seconds(now) > self._policy.max_age_seconds
        ]
        for key in expired:
            del entries[key]

        with self._lock:
            self._entries = entries
            self._stats["purged"] += len(expired)

        logger.info(f"Loaded {len(entries)} cached feeds ({len(expired)} expired)")
        if expired:
            self._save()

    def _save(self) -> None:
        # Snapshot and write under one lock: the store always ends with the newest map
        with self._save_lock:
            with self._lock:
                records = {key: entry.to_record() for key, entry in self._entries.items()}
            text = json.dumps(records, ensure_ascii=False)
            if self._compress:
                result = compress_text(text)
                self._compression.record_compression(result)
                text = result.data
            try:
                self._store.set(self._storage_key, text)
            except PersistenceError as e:
                logger.warning(f"Failed to save cache to storage: {e}")

    # ----------------------------------------------------------------
    # Reads and writes
    # ----------------------------------------------------------------

    def put(self, key: str, payload: List[Article]) -> None:
        """Overwrite the entry for key with a fresh timestamp."""
        entry = CacheEntry(payload=list(payload), written_at=self._clock())
        with self._lock:
            previous = self._entries.get(key)
            if previous is not None:
                entry.access_count = previous.access_count
            self._entries[key] = entry
        logger.debug(f"CACHE PUT: {key} [{len(entry.payload)} articles]")
        self._save()

    def get(self, key: str) -> Optional[List[Article]]:
        """
        Return the payload if it is fresh or stale.

        Purges (and persists the removal of) an entry past maximum retention.
        """
        purged = False
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None

            age = entry.age_seconds(self._clock())
            tier = self._policy.classify(age)

            if tier == FreshnessTier.MISSING:
                del self._entries[key]
                self._stats["purged"] += 1
                self._stats["misses"] += 1
                purged = True
            elif tier == FreshnessTier.EXPIRED:
                self._stats["misses"] += 1
                logger.debug(f"CACHE EXPIRED: {key} [age={age:.1f}s]")
                return None
            else:
                entry.access_count += 1
                self._stats["hits"] += 1
                logger.debug(f"CACHE HIT ({tier.value}): {key} [age={age:.1f}s]")
                return entry.payload

        if purged:
            logger.info(f"CACHE PURGED: {key} [age={age:.1f}s]")
            self._save()
        return None

    def get_with_status(self, key: str) -> CacheStatus:
        """Classify an entry without purging it."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return CacheStatus(payload=None, tier=FreshnessTier.MISSING)

            age = entry.age_seconds(self._clock())
            tier = self._policy.classify(age)
            if tier == FreshnessTier.MISSING:
                return CacheStatus(payload=None, tier=tier)
            return CacheStatus(payload=entry.payload, tier=tier, age_seconds=age)

    def remove(self, key: str) -> bool:
        with self._lock:
            if key not in self._entries:
                return False
            del self._entries[key]
        self._save()
        return True

    def clear(self) -> int:
        """
        Clear all entries and the backing store.

        Returns:
            Number of entries cleared
        """
        with self._save_lock:
            with self._lock:
                count = len(self._entries)
                self._entries.clear()
            try:
                self._store.remove(self._storage_key)
            except PersistenceError as e:
                logger.warning(f"Failed to clear cache from storage: {e}")
        logger.info(f"Cleared {count} cache entries")
        return count

    # ----------------------------------------------------------------
    # Introspection
    # ----------------------------------------------------------------

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def cache_age(self, key: str) -> Optional[float]:
        """Seconds since key was written, or None if absent."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            return entry.age_seconds(self._clock())

    def access_count(self, key: str) -> int:
        with self._lock:
            entry = self._entries.get(key)
            return entry.access_count if entry else 0

    def stats(self) -> CacheStats:
        """Aggregate view of what is currently held; read-only."""
        now = self._clock()
        with self._lock:
            entries = list(self._entries.values())

        ages = [entry.age_seconds(now) for entry in entries]
        return CacheStats(
            entry_count=len(entries),
            total_items=sum(len(entry.payload) for entry in entries),
            oldest_entry_age=max(ages) if ages else None,
            newest_entry_age=min(ages) if ages else None,
        )

    def analytics(self) -> Dict[str, Any]:
        """Hit/miss counters since construction."""
        with self._lock:
            hits = self._stats["hits"]
            misses = self._stats["misses"]
            total = hits + misses
            return {
                "hits": hits,
                "misses": misses,
                "purged": self._stats["purged"],
                "total_requests": total,
                "hit_rate_percent": round(hits / total * 100, 1) if total > 0 else 0,
                "compression": self._compression.to_dict(),
            }
