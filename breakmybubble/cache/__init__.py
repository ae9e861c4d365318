"""
Freshness-tiered article cache with pluggable persistence.
"""
from .core import (
    Article,
    CacheEntry,
    CacheMeta,
    CacheStats,
    CacheStatus,
    FreshnessPolicy,
    FreshnessTier,
    format_cache_age,
)
from .compression import CompressionMetrics, compress_text, decompress_text
from .storage import (
    JsonFileStore,
    KeyValueStore,
    MemoryStore,
    SqlAlchemyStore,
    create_store,
)
from .tiered import CACHE_STORAGE_KEY, TieredCache

__all__ = [
    # Core types
    "Article",
    "CacheEntry",
    "CacheMeta",
    "CacheStats",
    "CacheStatus",
    "FreshnessPolicy",
    "FreshnessTier",
    "format_cache_age",
    # Compression
    "CompressionMetrics",
    "compress_text",
    "decompress_text",
    # Storage
    "KeyValueStore",
    "MemoryStore",
    "JsonFileStore",
    "SqlAlchemyStore",
    "create_store",
    # Cache
    "CACHE_STORAGE_KEY",
    "TieredCache",
]
