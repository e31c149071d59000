"""
Rate Limiter
============
Per-key fixed-window rate limiting for inbound requests.

Features:
- Atomic check-and-increment per key
- Conditional accounting (skip successful or failed requests)
- One-shot callback when a key first crosses its limit in a window
- Periodic sweep of elapsed windows
- 429 responses and X-RateLimit-* headers
"""

import math
import asyncio
import logging
import threading
from typing import Optional, Dict, Any, Callable
from dataclasses import dataclass

from ..clock import Clock, SystemClock
from .http import GatewayRequest, GatewayResponse, json_response, get_client_ip, utc_timestamp

logger = logging.getLogger(__name__)


@dataclass
class RateWindowState:
    """Request count for one key in the current window."""
    key: str
    count: int
    window_start: float
    window_seconds: float
    limit_notified: bool = False

    @property
    def reset_at(self) -> float:
        return self.window_start + self.window_seconds

    def is_elapsed(self, now: float) -> bool:
        return now >= self.reset_at


@dataclass
class RateLimitResponse:
    """Response from rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # Unix timestamp
    retry_after_seconds: Optional[int] = None


def default_key_func(request: GatewayRequest) -> str:
    """Rate limit by client IP."""
    return f"ip:{get_client_ip(request)}"


class RateLimiter:
    """
    Fixed-window rate limiter with owned, per-instance state.

    Example:
        limiter = RateLimiter(requests_per_window=100, window_seconds=60)

        blocked = await limiter.check_rate_limit(request)
        if blocked:
            return blocked

        response = await limiter.add_rate_limit_headers(response, request)
    """

    def __init__(
        self,
        requests_per_window: int = 100,
        window_seconds: float = 60,
        key_func: Optional[Callable[[GatewayRequest], str]] = None,
        skip_successful_requests: bool = False,
        skip_failed_requests: bool = False,
        on_limit_reached: Optional[Callable[[str, int, float], None]] = None,
        cleanup_interval_seconds: float = 300,
        cleanup_grace_seconds: float = 60,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize rate limiter.

        Args:
            requests_per_window: Requests admitted per key per window
            window_seconds: Window length
            key_func: Derives the limit key from a request (client IP by default)
            skip_successful_requests: Do not count 2xx responses
            skip_failed_requests: Do not count responses >= 400
            on_limit_reached: Called with (key, count, window_seconds) when a
                key is first blocked in a window
            cleanup_interval_seconds: Period of the background sweep
            cleanup_grace_seconds: How long an elapsed window is kept
            clock: Time source
        """
        if requests_per_window < 1:
            raise ValueError("requests_per_window must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds
        self.key_func = key_func or default_key_func
        self.skip_successful_requests = skip_successful_requests
        self.skip_failed_requests = skip_failed_requests
        self.on_limit_reached = on_limit_reached
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.cleanup_grace_seconds = cleanup_grace_seconds
        self._clock = clock or SystemClock()

        self._windows: Dict[str, RateWindowState] = {}
        self._lock = threading.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None

    async def check_limit(self, key: str) -> RateLimitResponse:
        """
        Count a request against key and decide whether it is admitted.

        The window lookup, reset and increment happen in one critical
        section, so concurrent calls for the same key never share a count.
        """
        notify = False
        with self._lock:
            now = self._clock.now()
            state = self._windows.get(key)
            if state is None or state.is_elapsed(now):
                state = RateWindowState(
                    key=key,
                    count=0,
                    window_start=now,
                    window_seconds=self.window_seconds,
                )
                self._windows[key] = state

            state.count += 1
            count = state.count
            allowed = count <= self.requests_per_window
            if not allowed and not state.limit_notified:
                state.limit_notified = True
                notify = True

            response = self._build_response(allowed, count, state.reset_at, now)

        if notify:
            self._notify_limit_reached(key, count)

        return response

    def get_status(self, key: str) -> RateLimitResponse:
        """Current status for key without counting a request."""
        with self._lock:
            now = self._clock.now()
            state = self._windows.get(key)
            if state is None or state.is_elapsed(now):
                return RateLimitResponse(
                    allowed=True,
                    limit=self.requests_per_window,
                    remaining=self.requests_per_window,
                    reset_at=now + self.window_seconds,
                )
            allowed = state.count < self.requests_per_window
            return self._build_response(allowed, state.count, state.reset_at, now)

    async def update_after_request(self, key: str, status_code: int):
        """Un-count a finished request if its outcome is excluded."""
        is_success = 200 <= status_code < 300
        is_failure = status_code >= 400

        if not ((is_success and self.skip_successful_requests)
                or (is_failure and self.skip_failed_requests)):
            return

        with self._lock:
            state = self._windows.get(key)
            if state is not None:
                state.count = max(0, state.count - 1)

    async def check_rate_limit(self, request: GatewayRequest) -> Optional[GatewayResponse]:
        """Return a 429 response if request is over the limit, else None."""
        result = await self.check_limit(self.key_func(request))
        if result.allowed:
            return None

        return json_response(
            429,
            {
                "error": "Too Many Requests",
                "message": (
                    f"Rate limit exceeded. Maximum {result.limit} requests "
                    f"per {self._window_label()} allowed."
                ),
                "retryAfter": result.retry_after_seconds,
                "timestamp": utc_timestamp(),
            },
            headers={
                **self.get_headers(result),
                'Retry-After': str(result.retry_after_seconds or int(self.window_seconds)),
            },
        )

    async def add_rate_limit_headers(
        self,
        response: GatewayResponse,
        request: GatewayRequest,
    ) -> GatewayResponse:
        """Apply conditional accounting and merge X-RateLimit-* headers."""
        headers = await self.finalize(self.key_func(request), response.status_code)
        return response.with_headers(headers)

    async def finalize(self, key: str, status_code: int) -> Dict[str, str]:
        """Peek the status for key, then apply conditional accounting."""
        status = self.get_status(key)
        await self.update_after_request(key, status_code)
        return self.get_headers(status)

    def get_headers(self, response: RateLimitResponse) -> Dict[str, str]:
        """Get rate limit headers for HTTP response."""
        return {
            'X-RateLimit-Limit': str(response.limit),
            'X-RateLimit-Remaining': str(response.remaining),
            'X-RateLimit-Reset': str(int(response.reset_at)),
        }

    def cleanup(self) -> int:
        """Drop windows that elapsed more than the grace period ago."""
        with self._lock:
            cutoff = self._clock.now() - self.cleanup_grace_seconds
            expired = [k for k, s in self._windows.items() if s.reset_at <= cutoff]
            for key in expired:
                del self._windows[key]

        if expired:
            logger.debug(f"Removed {len(expired)} expired rate limit windows")
        return len(expired)

    def start(self):
        """Start the periodic sweep. Requires a running event loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def close(self):
        """Stop the sweep and drop all state."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        self.clear()

    def reset(self, key: str):
        """Reset rate limit for key."""
        with self._lock:
            self._windows.pop(key, None)

    def clear(self):
        with self._lock:
            self._windows.clear()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            states = list(self._windows.values())

        return {
            "total_keys": len(states),
            "total_requests": sum(s.count for s in states),
            "oldest_window": min((s.window_start for s in states), default=None),
            "newest_window": max((s.window_start for s in states), default=None),
            "requests_per_window": self.requests_per_window,
            "window_seconds": self.window_seconds,
        }

    async def _cleanup_loop(self):
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            try:
                self.cleanup()
            except Exception as e:
                logger.error(f"Rate limit cleanup failed: {e}")

    def _build_response(self, allowed: bool, count: int, reset_at: float, now: float) -> RateLimitResponse:
        retry_after = None
        if not allowed:
            retry_after = max(1, math.ceil(reset_at - now))
        return RateLimitResponse(
            allowed=allowed,
            limit=self.requests_per_window,
            remaining=max(0, self.requests_per_window - count),
            reset_at=reset_at,
            retry_after_seconds=retry_after,
        )

    def _notify_limit_reached(self, key: str, count: int):
        logger.warning(f"Rate limit exceeded for {key}: {self.requests_per_window} requests per {self._window_label()}")
        if self.on_limit_reached is None:
            return
        try:
            self.on_limit_reached(key, count, self.window_seconds)
        except Exception as e:
            logger.error(f"on_limit_reached callback failed for {key}: {e}")

    def _window_label(self) -> str:
        if self.window_seconds == 60:
            return "minute"
        return f"{self.window_seconds:g} seconds"


__all__ = [
    'RateLimiter',
    'RateLimitResponse',
    'RateWindowState',
    'default_key_func',
]
