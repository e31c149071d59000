"""
Pytest configuration and fixtures
==================================
"""

import os
import pytest

# Set test environment variables before main is imported
os.environ["ENFORCE_HTTPS"] = "false"
os.environ["CACHE_BACKEND"] = "memory"
os.environ["REDIS_URL"] = "redis://localhost:6379"
os.environ["THREAT_FEED_URL"] = ""
os.environ["RATE_LIMIT_PER_MINUTE"] = "1000"
os.environ["LOG_LEVEL"] = "WARNING"

from shield.clock import ManualClock
from shield.security import GatewayRequest, StaticThreatFeed, FeedIndicator


@pytest.fixture
async def redis_client():
    """Redis client fixture for integration tests."""
    try:
        import redis.asyncio as redis
        client = redis.from_url(os.getenv("REDIS_URL", "redis://localhost:6379"))
        await client.ping()
    except Exception:
        pytest.skip("Redis not available")
    yield client
    await client.flushdb()
    await client.aclose()


@pytest.fixture
def clock():
    """Manually advanced clock."""
    return ManualClock()


@pytest.fixture
def make_request():
    """Factory for gateway requests with sensible defaults."""
    def _make(
        method: str = "POST",
        body=None,
        headers=None,
        path: str = "/api/explain",
        scheme: str = "https",
        source_ip: str = "10.0.0.1",
    ) -> GatewayRequest:
        merged = {"Content-Type": "application/json"}
        merged.update(headers or {})
        return GatewayRequest(
            method=method,
            path=path,
            headers=merged,
            body=body,
            scheme=scheme,
            source_ip=source_ip,
        )
    return _make


@pytest.fixture
def sample_indicators():
    """Threat feed indicators, one of them with a broken pattern."""
    return [
        FeedIndicator(indicator=r"evil\.example\.com", type="malware", description="Malware host"),
        FeedIndicator(indicator=r"free-prize-[0-9]+", type="phishing", description="Prize lure"),
        FeedIndicator(indicator=r"(unclosed", type="xss", description="Broken pattern"),
    ]


@pytest.fixture
def static_feed(sample_indicators):
    return StaticThreatFeed(sample_indicators, name="test-feed")
