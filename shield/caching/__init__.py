"""
Caching Module
==============
Tiered caching with automatic failover.

Components:
- TieredCache: Primary store with in-process fallback
- PrimaryStore: Redis and in-memory durable tiers
- CachedResolver: Cache-aside wrapper around an upstream service
"""

from .tiered_cache import (
    CacheEntry,
    CacheStatus,
    PrimaryStore,
    InMemoryPrimaryStore,
    RedisPrimaryStore,
    FallbackCache,
    TieredCache,
    Resolution,
    ResolutionService,
    CachedResolver,
    create_tiered_cache,
)


__all__ = [
    'CacheEntry',
    'CacheStatus',
    'PrimaryStore',
    'InMemoryPrimaryStore',
    'RedisPrimaryStore',
    'FallbackCache',
    'TieredCache',
    'Resolution',
    'ResolutionService',
    'CachedResolver',
    'create_tiered_cache',
]
