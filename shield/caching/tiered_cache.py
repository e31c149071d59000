"""
Tiered Cache
============
Durable primary cache with an in-process fallback tier.

Features:
- Redis and in-memory primary stores
- Conditional primary writes (only if absent or expired)
- Every write mirrored into the fallback tier
- Automatic failover to the fallback on primary error or timeout
- Health probing and status reporting
- Cached resolution around an upstream service
"""

import json
import time
import asyncio
import logging
import threading
from typing import Optional, Dict, Any, TypeVar, Generic, Callable
from dataclasses import dataclass, asdict
from abc import ABC, abstractmethod

from ..clock import Clock, SystemClock
from ..errors import TransientDependencyError

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class CacheEntry(Generic[T]):
    """Cache entry with metadata."""
    value: T
    created_at: float
    expires_at: float
    source: str = "cache"

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class CacheStatus:
    """Tiered cache status."""
    primary_healthy: bool
    fallback_size: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# Primary stores
# =============================================================================

class PrimaryStore(ABC):
    """Abstract durable store behind the tiered cache."""

    @abstractmethod
    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Return the stored entry, expired or not. Raise on failure."""
        pass

    @abstractmethod
    async def put_if_absent_or_expired(self, key: str, entry: CacheEntry, now: float) -> bool:
        """
        Store entry unless a fresh entry already exists.

        Returns:
            True if written, False if a fresh entry was kept
        """
        pass


class InMemoryPrimaryStore(PrimaryStore):
    """
    Process-local primary store.

    Suitable for development and single-instance deployments.
    """

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    async def put_if_absent_or_expired(self, key: str, entry: CacheEntry, now: float) -> bool:
        with self._lock:
            current = self._entries.get(key)
            if current is not None and not current.is_expired(now):
                return False
            self._entries[key] = entry
            return True

    def clear(self):
        with self._lock:
            self._entries.clear()


class RedisPrimaryStore(PrimaryStore):
    """
    Redis primary store for distributed deployments.

    Entries are stored as JSON. The conditional write runs as a Lua script
    so the freshness check and the write are atomic on the server.
    """

    # Write only if the key is missing or its stored expires_at has passed
    CONDITIONAL_PUT_SCRIPT = """
    local current = redis.call('GET', KEYS[1])
    if current then
        local ok, decoded = pcall(cjson.decode, current)
        if ok and type(decoded) == 'table' and decoded['expires_at'] then
            if tonumber(decoded['expires_at']) > tonumber(ARGV[2]) then
                return 0
            end
        end
    end
    redis.call('SET', KEYS[1], ARGV[1], 'PX', ARGV[3])
    return 1
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        prefix: str = "shield:cache",
        serializer: Optional[Callable[[Any], str]] = None,
        deserializer: Optional[Callable[[str], Any]] = None,
        client: Any = None,
    ):
        """
        Initialize Redis store.

        Args:
            redis_url: Redis connection URL
            prefix: Key prefix
            serializer: Custom serialization function
            deserializer: Custom deserialization function
            client: Pre-built redis.asyncio client
        """
        self.redis_url = redis_url
        self.prefix = prefix
        self._serializer = serializer or json.dumps
        self._deserializer = deserializer or json.loads
        self._client = client
        self._put_script = None

    async def _get_client(self):
        """Lazy initialize Redis client."""
        if self._client is None:
            try:
                import redis.asyncio as redis
            except ImportError:
                raise RuntimeError("redis package required: pip install redis")
            self._client = redis.from_url(self.redis_url)
        if self._put_script is None:
            self._put_script = self._client.register_script(self.CONDITIONAL_PUT_SCRIPT)
        return self._client

    def _make_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        client = await self._get_client()
        try:
            raw = await client.get(self._make_key(key))
        except Exception as e:
            raise TransientDependencyError("redis", f"get failed: {e}", e) from e

        if raw is None:
            return None

        if isinstance(raw, bytes):
            raw = raw.decode('utf-8')
        data = json.loads(raw)
        return CacheEntry(
            value=self._deserializer(data["value"]),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            source=data.get("source", "cache"),
        )

    async def put_if_absent_or_expired(self, key: str, entry: CacheEntry, now: float) -> bool:
        await self._get_client()
        payload = json.dumps({
            "value": self._serializer(entry.value),
            "created_at": entry.created_at,
            "expires_at": entry.expires_at,
            "source": entry.source,
        })
        ttl_ms = max(1, int((entry.expires_at - now) * 1000))

        try:
            result = await self._put_script(
                keys=[self._make_key(key)],
                args=[payload, now, ttl_ms],
            )
        except Exception as e:
            raise TransientDependencyError("redis", f"put failed: {e}", e) from e
        return bool(int(result))

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._put_script = None


# =============================================================================
# Fallback tier
# =============================================================================

class FallbackCache:
    """In-process fallback tier with lazy and swept expiry."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock.now()):
                del self._entries[key]
                return None
            return entry

    def set_entry(self, key: str, entry: CacheEntry):
        with self._lock:
            self._entries[key] = entry

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def cleanup_expired(self) -> int:
        """Remove expired entries."""
        with self._lock:
            now = self._clock.now()
            expired = [k for k, v in self._entries.items() if v.is_expired(now)]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self):
        with self._lock:
            self._entries.clear()


# =============================================================================
# Tiered cache
# =============================================================================

class TieredCache(Generic[T]):
    """
    Primary store with automatic failover to an in-process fallback.

    Example:
        cache = TieredCache(RedisPrimaryStore("redis://localhost:6379"))

        await cache.set("error_404", explanation, ttl_seconds=3600)
        value = await cache.get("error_404")

        status = cache.get_status()
    """

    HEALTH_PROBE_PREFIX = "health_check_"

    def __init__(
        self,
        primary: Optional[PrimaryStore] = None,
        fallback: Optional[FallbackCache] = None,
        default_ttl_seconds: float = 3600,
        timeout_seconds: float = 2.0,
        health_recheck_seconds: float = 30.0,
        cleanup_interval_seconds: float = 300,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize tiered cache.

        Args:
            primary: Durable store (in-memory by default)
            fallback: In-process fallback tier
            default_ttl_seconds: TTL when set() is called without one
            timeout_seconds: Bound on every primary store call
            health_recheck_seconds: How long a failed primary is bypassed
                before it is probed again
            cleanup_interval_seconds: Period of the fallback sweep
            clock: Time source
        """
        self._clock = clock or SystemClock()
        self.primary = primary or InMemoryPrimaryStore()
        self.fallback = fallback or FallbackCache(clock=self._clock)
        self.default_ttl_seconds = default_ttl_seconds
        self.timeout_seconds = timeout_seconds
        self.health_recheck_seconds = health_recheck_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds

        self._primary_healthy = True
        self._next_health_check = 0.0
        self._cleanup_task: Optional[asyncio.Task] = None

    async def get(self, key: str) -> Optional[T]:
        """Get a fresh value, or None."""
        entry = await self.get_entry(key)
        return entry.value if entry is not None else None

    async def get_entry(self, key: str) -> Optional[CacheEntry[T]]:
        """Get a fresh entry from the primary, falling back on failure."""
        if await self._primary_available():
            try:
                entry = await asyncio.wait_for(self.primary.get_entry(key), timeout=self.timeout_seconds)
            except Exception as e:
                self._mark_unhealthy("get", key, e)
            else:
                if entry is None or entry.is_expired(self._clock.now()):
                    return None
                self.fallback.set_entry(key, entry)
                return entry

        return self.fallback.get_entry(key)

    async def set(
        self,
        key: str,
        value: T,
        ttl_seconds: Optional[float] = None,
        source: str = "upstream",
    ) -> bool:
        """
        Write value to both tiers.

        Returns:
            True if the primary accepted the write
        """
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        now = self._clock.now()
        entry = CacheEntry(value=value, created_at=now, expires_at=now + ttl, source=source)

        written = False
        if await self._primary_available():
            try:
                written = await asyncio.wait_for(
                    self.primary.put_if_absent_or_expired(key, entry, now),
                    timeout=self.timeout_seconds,
                )
                if not written:
                    logger.debug(f"Primary kept fresher entry for {key}")
            except Exception as e:
                self._mark_unhealthy("set", key, e)

        self.fallback.set_entry(key, entry)
        return written

    async def health_check(self) -> bool:
        """Probe the primary store with a read of a key that never exists."""
        probe_key = f"{self.HEALTH_PROBE_PREFIX}{int(self._clock.now() * 1000)}"
        try:
            await asyncio.wait_for(self.primary.get_entry(probe_key), timeout=self.timeout_seconds)
        except Exception as e:
            logger.warning(f"Primary cache health check failed: {e}")
            self._primary_healthy = False
            self._next_health_check = self._clock.now() + self.health_recheck_seconds
            return False

        if not self._primary_healthy:
            logger.info("Primary cache is healthy again")
        self._primary_healthy = True
        return True

    def get_status(self) -> CacheStatus:
        return CacheStatus(
            primary_healthy=self._primary_healthy,
            fallback_size=self.fallback.size(),
        )

    def start(self):
        """Start the periodic fallback sweep. Requires a running event loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def close(self):
        """Stop the sweep and clear the fallback tier."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        self.fallback.clear()

    async def _primary_available(self) -> bool:
        if self._primary_healthy:
            return True
        if self._clock.now() < self._next_health_check:
            return False
        return await self.health_check()

    def _mark_unhealthy(self, operation: str, key: str, error: Exception):
        reason = "timed out" if isinstance(error, asyncio.TimeoutError) else str(error)
        logger.warning(f"Primary cache {operation} failed for {key}, using fallback: {reason}")
        self._primary_healthy = False
        self._next_health_check = self._clock.now() + self.health_recheck_seconds

    async def _cleanup_loop(self):
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            removed = self.fallback.cleanup_expired()
            if removed:
                logger.debug(f"Removed {removed} expired fallback entries")


# =============================================================================
# Cached resolution
# =============================================================================

@dataclass
class Resolution(Generic[T]):
    """Result of resolving a request."""
    value: T
    source: str
    latency_ms: float = 0.0


class ResolutionService(ABC, Generic[T]):
    """Upstream service turning a validated request into a result."""

    @abstractmethod
    async def resolve(self, request: Any) -> Resolution[T]:
        pass


class CachedResolver(Generic[T]):
    """
    Consults the tiered cache before and after calling the upstream.

    Example:
        resolver = CachedResolver(
            cache,
            service,
            key_func=lambda code: f"error_{code}",
        )
        result = await resolver.resolve(404)
    """

    def __init__(
        self,
        cache: TieredCache[T],
        service: ResolutionService[T],
        key_func: Callable[[Any], str] = str,
        ttl_seconds: Optional[float] = None,
    ):
        self.cache = cache
        self.service = service
        self.key_func = key_func
        self.ttl_seconds = ttl_seconds

    async def resolve(self, request: Any) -> Resolution[T]:
        start = time.time()
        key = self.key_func(request)

        cached = await self.cache.get_entry(key)
        if cached is not None:
            return Resolution(
                value=cached.value,
                source="cache",
                latency_ms=(time.time() - start) * 1000,
            )

        fresh = await self.service.resolve(request)
        await self.cache.set(key, fresh.value, self.ttl_seconds, source=fresh.source)
        fresh.latency_ms = (time.time() - start) * 1000
        return fresh


def create_tiered_cache(
    backend: str = "memory",
    redis_url: str = "redis://localhost:6379",
    ttl_seconds: float = 3600,
    timeout_seconds: float = 2.0,
) -> TieredCache:
    """
    Create a tiered cache for the configured backend.

    Convenience function for quick setup.
    """
    if backend == "redis":
        primary: PrimaryStore = RedisPrimaryStore(redis_url=redis_url)
    else:
        primary = InMemoryPrimaryStore()
    return TieredCache(
        primary=primary,
        default_ttl_seconds=ttl_seconds,
        timeout_seconds=timeout_seconds,
    )


# Export public API
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
