"""
Health Checks
=============
Probe endpoints reporting whether the pipeline's dependencies are usable.

Probes:
- Liveness: The process is up
- Readiness: Requests can be served, possibly from fallbacks
- Startup: Background sweeps are running

Features:
- Components checked concurrently, each under its own timeout
- Degraded (serving from a fallback) kept distinct from unhealthy
- FastAPI probe routes with JSON bodies
"""

import time
import asyncio
import logging
from typing import Optional, Dict, Any, Callable, Union, Iterable, Awaitable
from dataclasses import dataclass, field
from enum import Enum
from abc import ABC, abstractmethod

from ..caching.tiered_cache import TieredCache
from ..security.signatures import SignatureProvider

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    """Health check status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    """Outcome of probing one dependency."""
    name: str
    status: HealthStatus
    message: Optional[str] = None
    latency_ms: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "latency_ms": self.latency_ms,
            "metadata": self.metadata,
        }


@dataclass
class HealthCheckResult:
    """Aggregated probe outcome."""
    status: HealthStatus
    components: Dict[str, ComponentHealth]
    timestamp: float = field(default_factory=time.time)
    version: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp,
            "version": self.version,
            "components": {name: comp.to_dict() for name, comp in self.components.items()},
        }


def aggregate_status(statuses: Iterable[HealthStatus], fail_on_degraded: bool = False) -> HealthStatus:
    """Worst status wins; no components counts as healthy."""
    statuses = set(statuses)
    if HealthStatus.UNHEALTHY in statuses:
        return HealthStatus.UNHEALTHY
    if HealthStatus.DEGRADED in statuses:
        return HealthStatus.UNHEALTHY if fail_on_degraded else HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


class HealthCheckComponent(ABC):
    """A dependency that can be probed."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    async def check(self) -> ComponentHealth:
        pass


class TieredCacheHealthCheck(HealthCheckComponent):
    """
    Probes the primary store behind a TieredCache.

    A failing primary is reported as degraded, not unhealthy: reads and
    writes keep working through the fallback tier.
    """

    def __init__(self, cache: TieredCache, name: str = "cache"):
        self._cache = cache
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    async def check(self) -> ComponentHealth:
        start = time.time()
        healthy = await self._cache.health_check()
        latency = (time.time() - start) * 1000

        return ComponentHealth(
            name=self._name,
            status=HealthStatus.HEALTHY if healthy else HealthStatus.DEGRADED,
            message="Primary store responding" if healthy else "Serving from fallback tier",
            latency_ms=latency,
            metadata=self._cache.get_status().to_dict(),
        )


class SignatureFeedHealthCheck(HealthCheckComponent):
    """Reports degraded while only the fallback signature set is in use."""

    def __init__(self, provider: SignatureProvider, name: str = "threat_signatures"):
        self._provider = provider
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    async def check(self) -> ComponentHealth:
        stats = await self._provider.get_stats()
        if stats["serving_fallback"]:
            return ComponentHealth(
                name=self._name,
                status=HealthStatus.DEGRADED,
                message="Threat feed unavailable, using fallback patterns",
                metadata=stats,
            )
        return ComponentHealth(
            name=self._name,
            status=HealthStatus.HEALTHY,
            message=f"{stats['total_signatures']} signatures cached",
            metadata=stats,
        )


class CustomHealthCheck(HealthCheckComponent):
    """
    Health check wrapping a plain function or coroutine function.

    The function returns a bool, or a dict with an optional "status"
    ("healthy", "degraded" or "unhealthy") and "message"; other keys become
    metadata. Raising marks the component unhealthy.

    Example:
        CustomHealthCheck("upstream", lambda: {"status": "healthy", "region": "eu"})
    """

    def __init__(
        self,
        name: str,
        check_func: Callable[[], Union[bool, Dict[str, Any], Awaitable[Any]]],
    ):
        self._name = name
        self._check_func = check_func

    @property
    def name(self) -> str:
        return self._name

    async def check(self) -> ComponentHealth:
        start = time.time()
        try:
            if asyncio.iscoroutinefunction(self._check_func):
                outcome = await self._check_func()
            else:
                outcome = await asyncio.get_running_loop().run_in_executor(None, self._check_func)
        except Exception as e:
            return ComponentHealth(self._name, HealthStatus.UNHEALTHY, message=str(e))

        latency = (time.time() - start) * 1000
        if isinstance(outcome, dict):
            raw = outcome.get("status", HealthStatus.HEALTHY.value)
            try:
                status = raw if isinstance(raw, HealthStatus) else HealthStatus(raw)
            except ValueError:
                status = HealthStatus.HEALTHY
            return ComponentHealth(
                name=self._name,
                status=status,
                message=outcome.get("message"),
                latency_ms=latency,
                metadata={k: v for k, v in outcome.items() if k not in ("status", "message")},
            )

        healthy = True if outcome is None else bool(outcome)
        return ComponentHealth(
            name=self._name,
            status=HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY,
            latency_ms=latency,
        )


class HealthChecker:
    """
    Runs every registered component and serves the probe routes.

    Example:
        checker = HealthChecker(version="1.0.0")
        checker.add_component(TieredCacheHealthCheck(cache))
        checker.add_component(SignatureFeedHealthCheck(provider))

        app.include_router(checker.create_fastapi_routes())
    """

    PROBE_PATHS = ("/health", "/live", "/livez", "/ready", "/readyz", "/startup", "/startupz")

    def __init__(
        self,
        version: Optional[str] = None,
        fail_on_degraded: bool = False,
        check_timeout_seconds: float = 5.0,
    ):
        """
        Initialize health checker.

        Args:
            version: Reported in every health body
            fail_on_degraded: Treat degraded components as unhealthy
            check_timeout_seconds: Bound on each component check
        """
        self.version = version
        self.fail_on_degraded = fail_on_degraded
        self.check_timeout_seconds = check_timeout_seconds
        self._components: Dict[str, HealthCheckComponent] = {}
        self._started_at: Optional[float] = None

    def add_component(self, component: HealthCheckComponent):
        self._components[component.name] = component

    def mark_startup_complete(self):
        self._started_at = time.time()

    async def check_health(self) -> HealthCheckResult:
        """Check all components concurrently."""
        names = list(self._components)
        outcomes = await asyncio.gather(
            *[self._run(self._components[name]) for name in names]
        )
        components = dict(zip(names, outcomes))

        return HealthCheckResult(
            status=aggregate_status((c.status for c in components.values()), self.fail_on_degraded),
            components=components,
            version=self.version,
        )

    async def check_startup(self) -> bool:
        return self._started_at is not None

    async def _run(self, component: HealthCheckComponent) -> ComponentHealth:
        try:
            return await asyncio.wait_for(component.check(), timeout=self.check_timeout_seconds)
        except asyncio.TimeoutError:
            message = f"timed out after {self.check_timeout_seconds}s"
        except Exception as e:
            message = str(e)
        logger.warning(f"Health check {component.name} failed: {message}")
        return ComponentHealth(component.name, HealthStatus.UNHEALTHY, message=message)

    def create_fastapi_routes(self, prefix: str = ""):
        """Build an APIRouter serving the probe paths."""
        from fastapi import APIRouter
        from fastapi.responses import JSONResponse

        router = APIRouter(prefix=prefix)

        def respond(result: HealthCheckResult, *passing: HealthStatus) -> JSONResponse:
            return JSONResponse(
                content=result.to_dict(),
                status_code=200 if result.status in passing else 503,
            )

        @router.get("/health")
        async def health():
            return respond(await self.check_health(), HealthStatus.HEALTHY)

        @router.get("/ready")
        @router.get("/readyz")
        async def readiness():
            return respond(await self.check_health(), HealthStatus.HEALTHY, HealthStatus.DEGRADED)

        @router.get("/live")
        @router.get("/livez")
        async def liveness():
            return JSONResponse(content={"status": "alive"})

        @router.get("/startup")
        @router.get("/startupz")
        async def startup():
            started = await self.check_startup()
            return JSONResponse(
                content={"status": "ready" if started else "starting"},
                status_code=200 if started else 503,
            )

        return router


__all__ = [
    'HealthChecker',
    'HealthCheckResult',
    'HealthStatus',
    'ComponentHealth',
    'HealthCheckComponent',
    'TieredCacheHealthCheck',
    'SignatureFeedHealthCheck',
    'CustomHealthCheck',
    'aggregate_status',
]
