"""
Reliability Module
==================
Health reporting for the request pipeline.

Components:
- HealthChecker: Kubernetes-ready health probes
- TieredCacheHealthCheck: Primary store probe
- SignatureFeedHealthCheck: Threat feed availability
"""

from .health_checks import (
    HealthChecker,
    HealthCheckResult,
    HealthStatus,
    ComponentHealth,
    HealthCheckComponent,
    TieredCacheHealthCheck,
    SignatureFeedHealthCheck,
    CustomHealthCheck,
    aggregate_status,
)


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
