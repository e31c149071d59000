"""
Quick Start Example
===================
Minimal example of using Request Shield components directly.
"""

import asyncio
from shield.clock import ManualClock
from shield.security import (
    SignatureProvider,
    StaticThreatFeed,
    FeedIndicator,
    ThreatDetector,
    SecurityGate,
    SecurityConfig,
    GatewayRequest,
    RateLimiter,
    ThreatCategory,
)
from shield.caching import TieredCache, CachedResolver, Resolution, ResolutionService
from shield.reliability import HealthChecker, TieredCacheHealthCheck, SignatureFeedHealthCheck


class GreetingService(ResolutionService):
    """Toy upstream."""

    async def resolve(self, request):
        await asyncio.sleep(0.05)
        return Resolution(value=f"Hello, {request}!", source="greeter")


async def main():
    """Quick start demo."""
    print("=" * 60)
    print("Request Shield - Quick Start")
    print("=" * 60)

    # 1. Threat signatures
    print("\n1. Threat Signatures")
    print("-" * 40)

    feed = StaticThreatFeed([
        FeedIndicator(indicator=r"evil\.example\.com", type="malware", description="Malware host"),
        FeedIndicator(indicator=r"(broken", type="xss", description="Malformed pattern"),
    ], name="demo-feed")
    provider = SignatureProvider(
        feed=feed,
        on_signatures_loaded=lambda fetched, valid: print(f"   - Loaded: {valid}/{fetched} valid"),
    )
    patterns = await provider.get_signatures()
    print(f"   - Counts: {patterns.counts()}")
    print(f"   - Malware signatures: {len(patterns.patterns(ThreatCategory.MALWARE))}")

    # 2. Security gate
    print("\n2. Security Gate")
    print("-" * 40)

    gate = SecurityGate(SecurityConfig(allowed_origins=["example.com"]), ThreatDetector(provider))
    for body in ['{"name": "Alice"}', '{"c": "<script>alert(1)</script>"}', '{"q": "1; DROP TABLE users"}']:
        request = GatewayRequest(
            method="POST",
            headers={"Content-Type": "application/json"},
            body=body,
            source_ip="203.0.113.10",
        )
        blocked = await gate.validate(request)
        print(f"   - {body[:32]:<34} -> {blocked.status_code if blocked else 'allowed'}")
    print(f"   - Violation stats: {gate.get_violation_stats()}")

    # 3. Rate limiting
    print("\n3. Rate Limiting")
    print("-" * 40)

    clock = ManualClock()
    limiter = RateLimiter(
        requests_per_window=3,
        window_seconds=60,
        on_limit_reached=lambda key, count, window: print(f"   - Limit reached for {key}"),
        clock=clock,
    )
    for i in range(4):
        result = await limiter.check_limit("ip:203.0.113.10")
        print(f"   - Request {i + 1}: allowed={result.allowed} remaining={result.remaining} "
              f"retry_after={result.retry_after_seconds}")
    clock.advance(60)
    print(f"   - After window: allowed={(await limiter.check_limit('ip:203.0.113.10')).allowed}")

    # 4. Tiered cache
    print("\n4. Tiered Cache")
    print("-" * 40)

    cache = TieredCache(default_ttl_seconds=300)
    resolver = CachedResolver(cache, GreetingService(), key_func=lambda name: f"greeting_{name}")
    for _ in range(2):
        resolution = await resolver.resolve("world")
        print(f"   - {resolution.value} (source={resolution.source}, {resolution.latency_ms:.1f}ms)")
    print(f"   - Status: {cache.get_status().to_dict()}")

    # 5. Health
    print("\n5. Health Checks")
    print("-" * 40)

    checker = HealthChecker(version="1.0.0")
    checker.add_component(TieredCacheHealthCheck(cache))
    checker.add_component(SignatureFeedHealthCheck(provider))
    health = await checker.check_health()
    print(f"   - Overall: {health.status.value}")
    for name, component in health.components.items():
        print(f"   - {name}: {component.status.value} ({component.message})")

    print("\n" + "=" * 60)
    print("Quick start complete!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
