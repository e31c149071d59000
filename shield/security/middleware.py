"""
Request Defense Middleware
==========================
FastAPI/Starlette middleware running the full request pipeline:
security gate, rate limiter, handler, then response headers.
"""

import logging
from typing import Optional, Iterable

from .http import GatewayRequest
from .security_gate import SecurityGate
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class RequestDefenseMiddleware:
    """
    Combined security gate and rate limiting middleware.

    Example:
        defense = RequestDefenseMiddleware(
            gate=SecurityGate(),
            rate_limiter=RateLimiter(requests_per_window=100),
            excluded_paths=["/health"],
        )

        @app.middleware("http")
        async def request_defense(request: Request, call_next):
            return await defense.process(request, call_next)
    """

    def __init__(
        self,
        gate: Optional[SecurityGate] = None,
        rate_limiter: Optional[RateLimiter] = None,
        excluded_paths: Optional[Iterable[str]] = None,
    ):
        """Initialize with the pipeline stages to run."""
        self.gate = gate
        self.rate_limiter = rate_limiter
        self.excluded_paths = set(excluded_paths or ())

    async def process(self, request, call_next):
        """Process request through all defense layers."""
        if request.url.path in self.excluded_paths:
            return await call_next(request)

        gateway_request = await GatewayRequest.from_starlette(request)

        if self.gate:
            blocked = await self.gate.validate(gateway_request)
            if blocked is not None:
                logger.debug(f"Blocked {gateway_request.method} {gateway_request.path} with {blocked.status_code}")
                return blocked.to_starlette()

        rate_key = None
        if self.rate_limiter:
            limited = await self.rate_limiter.check_rate_limit(gateway_request)
            if limited is not None:
                logger.debug(f"Rate limited {gateway_request.method} {gateway_request.path}")
                if self.gate:
                    limited = self.gate.add_security_headers(limited)
                return limited.to_starlette()
            rate_key = self.rate_limiter.key_func(gateway_request)

        response = await call_next(request)

        if self.rate_limiter and rate_key is not None:
            headers = await self.rate_limiter.finalize(rate_key, response.status_code)
            for k, v in headers.items():
                response.headers[k] = v

        if self.gate:
            for k, v in self.gate.security_headers.items():
                response.headers[k] = v

        return response


__all__ = [
    'RequestDefenseMiddleware',
]
