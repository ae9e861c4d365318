"""
Core cache data structures.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from enum import Enum


Article = Dict[str, Any]


class FreshnessTier(Enum):
    """Usability of a cached article batch, by age."""
    FRESH = "fresh"        # <= 2 hours
    STALE = "stale"        # <= 12 hours, served while revalidating
    EXPIRED = "expired"    # <= 24 hours, last-resort fallback only
    MISSING = "missing"    # absent or past maximum retention


@dataclass(frozen=True)
class FreshnessPolicy:
    """Age bounds (seconds) separating the freshness tiers."""
    fresh_seconds: float = 2 * 60 * 60
    stale_seconds: float = 12 * 60 * 60
    max_age_seconds: float = 24 * 60 * 60

    def classify(self, age_seconds: float) -> FreshnessTier:
        if age_seconds <= self.fresh_seconds:
            return FreshnessTier.FRESH
        if age_seconds <= self.stale_seconds:
            return FreshnessTier.STALE
        if age_seconds <= self.max_age_seconds:
            return FreshnessTier.EXPIRED
        return FreshnessTier.MISSING


@dataclass
class CacheEntry:
    """
    A cached article batch for one source.

    ``access_count`` lives in memory only; the persisted record is just
    ``{"payload": [...], "writtenAt": epoch_millis}``.
    """
    payload: List[Article]
    written_at: float
    access_count: int = 0

    def age_seconds(self, now: float) -> float:
        """Seconds since the batch was written."""
        return max(0.0, now - self.written_at)

    def to_record(self) -> Dict[str, Any]:
        return {
            "payload": self.payload,
            "writtenAt": int(round(self.written_at * 1000)),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "CacheEntry":
        return cls(
            payload=list(record.get("payload") or []),
            written_at=float(record["writtenAt"]) / 1000.0,
        )


@dataclass(frozen=True)
class CacheStatus:
    """Result of a classifying read; never purges."""
    payload: Optional[List[Article]]
    tier: FreshnessTier
    age_seconds: Optional[float] = None

    @property
    def is_usable(self) -> bool:
        return self.tier in (FreshnessTier.FRESH, FreshnessTier.STALE)


@dataclass(frozen=True)
class CacheStats:
    entry_count: int
    total_items: int
    oldest_entry_age: Optional[float]
    newest_entry_age: Optional[float]

    def to_dict(self) -> dict:
        return {
            "entryCount": self.entry_count,
            "totalItems": self.total_items,
            "oldestEntryAge": self.oldest_entry_age,
            "newestEntryAge": self.newest_entry_age,
        }


@dataclass
class CacheMeta:
    """
    Metadata about a feed read, included in API responses.
    """
    last_updated: str  # ISO timestamp of when the batch was written
    cache_source: str  # "fresh", "stale", "expired" or "upstream"
    source_key: Optional[str] = None
    age_seconds: Optional[float] = None
    revalidating: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        result = {
            "lastUpdated": self.last_updated,
            "cacheSource": self.cache_source,
        }
        if self.source_key:
            result["_debug"] = {
                "source": self.source_key,
                "age": round(self.age_seconds, 1) if self.age_seconds else None,
                "revalidating": self.revalidating,
            }
        return result


def iso_timestamp(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def format_cache_age(age_seconds: float) -> str:
    """Human-readable cache age, minute resolution."""
    minutes = int(age_seconds // 60)
    if minutes < 1:
        return "Less than 1 minute ago"
    elif minutes == 1:
        return "1 minute ago"
    return f"{minutes} minutes ago"
