"""
Tests for rate limiter
=======================
"""

import asyncio
import pytest

from shield.security import (
    RateLimiter,
    GatewayRequest,
    GatewayResponse,
    json_response,
)


@pytest.mark.asyncio
class TestRateLimiter:
    """Tests for RateLimiter."""

    async def test_allows_up_to_limit(self, clock):
        limiter = RateLimiter(requests_per_window=3, window_seconds=60, clock=clock)

        results = [await limiter.check_limit("ip:1.2.3.4") for _ in range(3)]

        assert all(r.allowed for r in results)
        assert [r.remaining for r in results] == [2, 1, 0]
        assert all(r.retry_after_seconds is None for r in results)

    async def test_blocks_over_limit_and_resets(self, clock):
        limiter = RateLimiter(requests_per_window=3, window_seconds=60, clock=clock)
        for _ in range(3):
            await limiter.check_limit("k")

        blocked = await limiter.check_limit("k")
        assert not blocked.allowed
        assert blocked.remaining == 0
        assert blocked.retry_after_seconds == 60

        clock.advance(60)
        fresh = await limiter.check_limit("k")
        assert fresh.allowed
        assert fresh.remaining == 2

    async def test_retry_after_rounds_up(self, clock):
        limiter = RateLimiter(requests_per_window=1, window_seconds=60, clock=clock)
        await limiter.check_limit("k")

        clock.advance(30.5)
        blocked = await limiter.check_limit("k")

        assert blocked.retry_after_seconds == 30

    async def test_retry_after_minimum_one(self, clock):
        limiter = RateLimiter(requests_per_window=1, window_seconds=60, clock=clock)
        await limiter.check_limit("k")

        clock.advance(59.99)
        blocked = await limiter.check_limit("k")

        assert blocked.retry_after_seconds == 1

    async def test_keys_are_independent(self, clock):
        limiter = RateLimiter(requests_per_window=1, clock=clock)
        assert (await limiter.check_limit("a")).allowed
        assert (await limiter.check_limit("b")).allowed
        assert not (await limiter.check_limit("a")).allowed

    async def test_get_status_does_not_count(self, clock):
        limiter = RateLimiter(requests_per_window=2, clock=clock)
        await limiter.check_limit("k")

        for _ in range(5):
            status = limiter.get_status("k")

        assert status.allowed
        assert status.remaining == 1
        assert (await limiter.check_limit("k")).allowed

    async def test_get_status_unknown_key(self, clock):
        limiter = RateLimiter(requests_per_window=5, window_seconds=60, clock=clock)
        status = limiter.get_status("nobody")
        assert status.allowed
        assert status.remaining == 5
        assert status.reset_at == clock.now() + 60

    async def test_concurrent_checks_never_overshoot(self, clock):
        limiter = RateLimiter(requests_per_window=10, clock=clock)

        results = await asyncio.gather(*[limiter.check_limit("k") for _ in range(25)])

        assert sum(1 for r in results if r.allowed) == 10

    async def test_limit_callback_fires_once_per_window(self, clock, mocker):
        callback = mocker.Mock()
        limiter = RateLimiter(requests_per_window=2, window_seconds=60,
                              on_limit_reached=callback, clock=clock)

        for _ in range(5):
            await limiter.check_limit("k")
        callback.assert_called_once_with("k", 3, 60)

        clock.advance(60)
        for _ in range(3):
            await limiter.check_limit("k")
        assert callback.call_count == 2

    async def test_limit_callback_errors_are_contained(self, clock):
        def broken(key, count, window):
            raise RuntimeError("alerting down")

        limiter = RateLimiter(requests_per_window=1, on_limit_reached=broken, clock=clock)
        await limiter.check_limit("k")

        result = await limiter.check_limit("k")

        assert not result.allowed

    async def test_skip_successful_requests(self, clock):
        limiter = RateLimiter(requests_per_window=2, skip_successful_requests=True, clock=clock)

        for _ in range(5):
            assert (await limiter.check_limit("k")).allowed
            await limiter.update_after_request("k", 200)

        await limiter.update_after_request("k", 500)
        assert limiter.get_status("k").remaining == 2

    async def test_skip_failed_requests(self, clock):
        limiter = RateLimiter(requests_per_window=2, skip_failed_requests=True, clock=clock)
        await limiter.check_limit("k")
        await limiter.check_limit("k")

        await limiter.update_after_request("k", 404)
        assert limiter.get_status("k").remaining == 1

        await limiter.update_after_request("k", 201)
        assert limiter.get_status("k").remaining == 1

    async def test_update_floors_at_zero(self, clock):
        limiter = RateLimiter(requests_per_window=2, skip_failed_requests=True, clock=clock)
        await limiter.check_limit("k")
        for _ in range(3):
            await limiter.update_after_request("k", 500)

        assert limiter.get_stats()["total_requests"] == 0

    async def test_update_without_flags_is_noop(self, clock):
        limiter = RateLimiter(requests_per_window=2, clock=clock)
        await limiter.check_limit("k")
        await limiter.update_after_request("k", 200)
        await limiter.update_after_request("k", 500)
        assert limiter.get_status("k").remaining == 1

    async def test_check_rate_limit_response(self, clock):
        limiter = RateLimiter(requests_per_window=1, window_seconds=60, clock=clock)
        request = GatewayRequest(source_ip="198.51.100.7")

        assert await limiter.check_rate_limit(request) is None
        response = await limiter.check_rate_limit(request)

        assert response.status_code == 429
        body = response.json()
        assert body["error"] == "Too Many Requests"
        assert body["message"] == "Rate limit exceeded. Maximum 1 requests per minute allowed."
        assert body["retryAfter"] == 60
        assert "timestamp" in body
        assert response.headers["X-RateLimit-Limit"] == "1"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-RateLimit-Reset"] == str(int(clock.now() + 60))
        assert response.headers["Retry-After"] == "60"

    async def test_default_key_uses_client_ip(self, clock):
        limiter = RateLimiter(requests_per_window=1, clock=clock)
        request = GatewayRequest(headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})

        await limiter.check_rate_limit(request)

        assert limiter.get_status("ip:203.0.113.9").remaining == 0

    async def test_custom_key_func(self, clock):
        limiter = RateLimiter(
            requests_per_window=1,
            key_func=lambda request: request.header("X-API-Key", "anonymous"),
            clock=clock,
        )
        first = GatewayRequest(headers={"X-API-Key": "team-a"}, source_ip="10.0.0.1")
        second = GatewayRequest(headers={"X-API-Key": "team-b"}, source_ip="10.0.0.1")

        assert await limiter.check_rate_limit(first) is None
        assert await limiter.check_rate_limit(second) is None
        assert await limiter.check_rate_limit(first) is not None

    async def test_add_rate_limit_headers(self, clock):
        limiter = RateLimiter(requests_per_window=5, clock=clock)
        request = GatewayRequest(source_ip="10.0.0.1")
        await limiter.check_rate_limit(request)

        response = await limiter.add_rate_limit_headers(
            json_response(200, {"ok": True}), request,
        )

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"
        assert "X-RateLimit-Reset" in response.headers

    async def test_add_rate_limit_headers_applies_accounting(self, clock):
        limiter = RateLimiter(requests_per_window=5, skip_failed_requests=True, clock=clock)
        request = GatewayRequest(source_ip="10.0.0.1")
        await limiter.check_rate_limit(request)

        response = await limiter.add_rate_limit_headers(GatewayResponse(404), request)

        # Headers reflect the peek taken before the decrement
        assert response.headers["X-RateLimit-Remaining"] == "4"
        assert limiter.get_status("ip:10.0.0.1").remaining == 5

    async def test_cleanup_respects_grace_period(self, clock):
        limiter = RateLimiter(window_seconds=60, cleanup_grace_seconds=60, clock=clock)
        await limiter.check_limit("old")

        clock.advance(90)
        assert limiter.cleanup() == 0

        clock.advance(30)
        await limiter.check_limit("new")
        assert limiter.cleanup() == 1
        assert limiter.get_stats()["total_keys"] == 1

    async def test_reset_and_clear(self, clock):
        limiter = RateLimiter(requests_per_window=1, clock=clock)
        await limiter.check_limit("a")
        await limiter.check_limit("b")

        limiter.reset("a")
        assert (await limiter.check_limit("a")).allowed

        limiter.clear()
        assert limiter.get_stats()["total_keys"] == 0

    async def test_stats(self, clock):
        limiter = RateLimiter(requests_per_window=10, clock=clock)
        await limiter.check_limit("a")
        clock.advance(5)
        await limiter.check_limit("b")
        await limiter.check_limit("b")

        stats = limiter.get_stats()
        assert stats["total_keys"] == 2
        assert stats["total_requests"] == 3
        assert stats["newest_window"] - stats["oldest_window"] == 5

    async def test_start_and_close(self, clock):
        limiter = RateLimiter(cleanup_interval_seconds=0.01, clock=clock)
        await limiter.check_limit("k")

        limiter.start()
        await asyncio.sleep(0.03)
        await limiter.close()

        assert limiter._cleanup_task is None
        assert limiter.get_stats()["total_keys"] == 0


def test_invalid_configuration():
    with pytest.raises(ValueError):
        RateLimiter(requests_per_window=0)
    with pytest.raises(ValueError):
        RateLimiter(window_seconds=0)
