"""
Request Shield - Main Entry Point
=================================
FastAPI service running every request through the defense pipeline:
security gate, rate limiter, then a cached upstream resolution.
"""

import logging
import os
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Optional

from fastapi import FastAPI, HTTPException
import uvicorn

from shield import __version__
from shield.security import (
    SecurityConfig,
    SecurityGate,
    ThreatDetector,
    SignatureProvider,
    HttpThreatFeed,
    RateLimiter,
    RequestDefenseMiddleware,
)
from shield.caching import (
    CachedResolver,
    Resolution,
    ResolutionService,
    create_tiered_cache,
)
from shield.reliability import (
    HealthChecker,
    TieredCacheHealthCheck,
    SignatureFeedHealthCheck,
)


# =============================================================================
# Configuration
# =============================================================================

def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration."""

    # Server
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8080"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Security gate
    ENFORCE_HTTPS: bool = _env_bool("ENFORCE_HTTPS", "true")
    MAX_REQUEST_SIZE: int = int(os.getenv("MAX_REQUEST_SIZE", str(1024 * 1024)))
    ALLOWED_ORIGINS: list = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()]

    # Rate limiting
    RATE_LIMIT_PER_MINUTE: int = int(os.getenv("RATE_LIMIT_PER_MINUTE", "100"))
    RATE_LIMIT_WINDOW: int = int(os.getenv("RATE_LIMIT_WINDOW", "60"))

    # Caching
    CACHE_BACKEND: str = os.getenv("CACHE_BACKEND", "memory")
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379")
    CACHE_TTL_SECONDS: int = int(os.getenv("CACHE_TTL_SECONDS", "3600"))

    # Threat intelligence
    THREAT_FEED_URL: Optional[str] = os.getenv("THREAT_FEED_URL") or None
    THREAT_FEED_API_KEY: Optional[str] = os.getenv("THREAT_FEED_API_KEY") or None
    SIGNATURE_TTL_SECONDS: int = int(os.getenv("SIGNATURE_TTL_SECONDS", "86400"))

    # Bound on every dependency call
    DEPENDENCY_TIMEOUT: float = float(os.getenv("DEPENDENCY_TIMEOUT", "5.0"))


config = Config()

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)


# =============================================================================
# Upstream
# =============================================================================

class StatusCodeExplainer(ResolutionService[dict]):
    """Explains HTTP status codes using the standard registry."""

    async def resolve(self, request: int) -> Resolution[dict]:
        status = HTTPStatus(request)
        return Resolution(
            value={
                "code": status.value,
                "phrase": status.phrase,
                "description": status.description,
            },
            source="http-registry",
        )


# =============================================================================
# Initialize Components
# =============================================================================

feed = None
if config.THREAT_FEED_URL:
    feed = HttpThreatFeed(
        config.THREAT_FEED_URL,
        api_key=config.THREAT_FEED_API_KEY,
        timeout_seconds=config.DEPENDENCY_TIMEOUT,
    )

signature_provider = SignatureProvider(
    feed=feed,
    ttl_seconds=config.SIGNATURE_TTL_SECONDS,
    timeout_seconds=config.DEPENDENCY_TIMEOUT,
)
threat_detector = ThreatDetector(signature_provider, timeout_seconds=config.DEPENDENCY_TIMEOUT)

security_gate = SecurityGate(
    SecurityConfig(
        enforce_https=config.ENFORCE_HTTPS,
        max_request_size=config.MAX_REQUEST_SIZE,
        allowed_origins=config.ALLOWED_ORIGINS,
    ),
    detector=threat_detector,
)

rate_limiter = RateLimiter(
    requests_per_window=config.RATE_LIMIT_PER_MINUTE,
    window_seconds=config.RATE_LIMIT_WINDOW,
)

cache = create_tiered_cache(
    backend=config.CACHE_BACKEND,
    redis_url=config.REDIS_URL,
    ttl_seconds=config.CACHE_TTL_SECONDS,
    timeout_seconds=config.DEPENDENCY_TIMEOUT,
)
explainer = CachedResolver(cache, StatusCodeExplainer(), key_func=lambda code: f"status_{code}")

health_checker = HealthChecker(version=__version__)
health_checker.add_component(TieredCacheHealthCheck(cache))
health_checker.add_component(SignatureFeedHealthCheck(signature_provider))

defense = RequestDefenseMiddleware(
    gate=security_gate,
    rate_limiter=rate_limiter,
    excluded_paths=HealthChecker.PROBE_PATHS,
)


# =============================================================================
# FastAPI Application
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    rate_limiter.start()
    cache.start()
    health_checker.mark_startup_complete()
    logger.info(f"Request Shield {__version__} started (cache backend: {config.CACHE_BACKEND})")
    yield
    await rate_limiter.close()
    await cache.close()
    if hasattr(cache.primary, "close"):
        await cache.primary.close()
    logger.info("Request Shield stopped")


app = FastAPI(
    title="Request Shield",
    description="Request defense pipeline with threat detection, rate limiting and tiered caching",
    version=__version__,
    lifespan=lifespan,
)

# Include health check routes
app.include_router(health_checker.create_fastapi_routes())


@app.middleware("http")
async def request_defense(request, call_next):
    """Security gate and rate limiting for every non-probe request."""
    return await defense.process(request, call_next)


@app.get("/api/explain/{code}")
async def explain(code: int):
    """Explain an HTTP status code."""
    try:
        HTTPStatus(code)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown status code {code}")

    result = await explainer.resolve(code)
    return {
        **result.value,
        "source": result.source,
        "latency_ms": round(result.latency_ms, 3),
    }


@app.get("/status")
async def status():
    """Pipeline status."""
    return {
        "cache": cache.get_status().to_dict(),
        "violations": security_gate.get_violation_stats(),
        "rate_limiter": rate_limiter.get_stats(),
        "signatures": await signature_provider.get_stats(),
    }


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Request Shield",
        "version": __version__,
        "status": "running",
        "endpoints": {
            "explain": "/api/explain/{code}",
            "status": "/status",
            "health": "/health",
            "ready": "/ready",
        },
    }


# =============================================================================
# Run
# =============================================================================

def main():
    """Run the application."""
    uvicorn.run(
        app,
        host=config.HOST,
        port=config.PORT,
        log_level=config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
