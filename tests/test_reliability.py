"""
Tests for reliability module
=============================
"""

import asyncio
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from shield.errors import TransientDependencyError
from shield.caching import TieredCache, InMemoryPrimaryStore
from shield.security import SignatureProvider, ThreatFeed
from shield.reliability import (
    HealthChecker,
    HealthStatus,
    CustomHealthCheck,
    TieredCacheHealthCheck,
    SignatureFeedHealthCheck,
    aggregate_status,
)


class DownStore(InMemoryPrimaryStore):
    async def get_entry(self, key):
        raise TransientDependencyError("primary", "connection refused")


class DownFeed(ThreatFeed):
    @property
    def name(self) -> str:
        return "down"

    async def fetch(self):
        raise TransientDependencyError("down", "unreachable")


@pytest.mark.asyncio
class TestHealthChecker:
    """Tests for HealthChecker."""

    async def test_health_check_healthy(self):
        checker = HealthChecker(version="1.0.0")
        checker.add_component(CustomHealthCheck(
            name="test",
            check_func=lambda: True,
        ))

        result = await checker.check_health()
        assert result.status == HealthStatus.HEALTHY
        assert result.to_dict()["version"] == "1.0.0"

    async def test_health_check_unhealthy(self):
        checker = HealthChecker()
        checker.add_component(CustomHealthCheck(
            name="test",
            check_func=lambda: False,
        ))

        result = await checker.check_health()
        assert result.status == HealthStatus.UNHEALTHY

    async def test_custom_check_dict_result(self):
        check = CustomHealthCheck(
            name="upstream",
            check_func=lambda: {"status": "degraded", "message": "slow", "p99_ms": 900},
        )

        component = await check.check()

        assert component.status == HealthStatus.DEGRADED
        assert component.message == "slow"
        assert component.metadata == {"p99_ms": 900}

    async def test_custom_check_exception(self):
        def broken():
            raise RuntimeError("no route to host")

        component = await CustomHealthCheck("broken", check_func=broken).check()

        assert component.status == HealthStatus.UNHEALTHY
        assert "no route to host" in component.message

    async def test_cache_check_healthy(self, clock):
        check = TieredCacheHealthCheck(TieredCache(clock=clock))

        component = await check.check()

        assert component.status == HealthStatus.HEALTHY
        assert component.metadata["primary_healthy"] is True

    async def test_cache_check_degraded_on_primary_failure(self, clock):
        checker = HealthChecker()
        checker.add_component(TieredCacheHealthCheck(TieredCache(primary=DownStore(), clock=clock)))

        result = await checker.check_health()

        assert result.status == HealthStatus.DEGRADED
        assert result.components["cache"].metadata["primary_healthy"] is False

    async def test_fail_on_degraded(self, clock):
        checker = HealthChecker(fail_on_degraded=True)
        checker.add_component(TieredCacheHealthCheck(TieredCache(primary=DownStore(), clock=clock)))

        result = await checker.check_health()

        assert result.status == HealthStatus.UNHEALTHY

    async def test_signature_check(self, static_feed, clock):
        provider = SignatureProvider(feed=static_feed, clock=clock)
        await provider.get_signatures()

        component = await SignatureFeedHealthCheck(provider).check()

        assert component.status == HealthStatus.HEALTHY
        assert component.metadata["cache_hit"] is True

    async def test_signature_check_degraded_on_fallback(self, clock):
        provider = SignatureProvider(feed=DownFeed(), clock=clock)
        await provider.get_signatures()

        component = await SignatureFeedHealthCheck(provider).check()

        assert component.status == HealthStatus.DEGRADED

    async def test_slow_component_times_out(self):
        async def slow():
            await asyncio.sleep(1.0)
            return True

        checker = HealthChecker(check_timeout_seconds=0.05)
        checker.add_component(CustomHealthCheck("slow", check_func=slow))
        checker.add_component(CustomHealthCheck("fast", check_func=lambda: True))

        result = await checker.check_health()

        assert result.status == HealthStatus.UNHEALTHY
        assert "timed out" in result.components["slow"].message
        assert result.components["fast"].status == HealthStatus.HEALTHY

    async def test_no_components_is_healthy(self):
        result = await HealthChecker().check_health()
        assert result.status == HealthStatus.HEALTHY
        assert result.components == {}

    async def test_startup(self):
        checker = HealthChecker()
        assert not await checker.check_startup()
        checker.mark_startup_complete()
        assert await checker.check_startup()


def test_aggregate_status():
    assert aggregate_status([]) == HealthStatus.HEALTHY
    assert aggregate_status([HealthStatus.HEALTHY, HealthStatus.DEGRADED]) == HealthStatus.DEGRADED
    assert aggregate_status([HealthStatus.DEGRADED, HealthStatus.UNHEALTHY]) == HealthStatus.UNHEALTHY
    assert aggregate_status([HealthStatus.DEGRADED], fail_on_degraded=True) == HealthStatus.UNHEALTHY


class TestHealthRoutes:
    """Tests for the FastAPI probe routes."""

    def _client(self, checker: HealthChecker) -> TestClient:
        app = FastAPI()
        app.include_router(checker.create_fastapi_routes())
        return TestClient(app)

    def test_health_json(self):
        checker = HealthChecker(version="2.0.0")
        checker.add_component(CustomHealthCheck("ok", check_func=lambda: True))

        response = self._client(checker).get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["components"]["ok"]["status"] == "healthy"

    def test_degraded_is_ready_but_not_healthy(self, clock):
        checker = HealthChecker()
        checker.add_component(TieredCacheHealthCheck(TieredCache(primary=DownStore(), clock=clock)))
        client = self._client(checker)

        assert client.get("/health").status_code == 503
        assert client.get("/ready").status_code == 200

    def test_liveness(self):
        response = self._client(HealthChecker()).get("/livez")
        assert response.status_code == 200
        assert response.json() == {"status": "alive"}

    def test_startup_probe(self):
        checker = HealthChecker()
        client = self._client(checker)

        assert client.get("/startup").status_code == 503
        checker.mark_startup_complete()
        assert client.get("/startupz").json() == {"status": "ready"}
