"""
Request Shield - Core Package
=============================
Request defense and resilience pipeline for HTTP services.

Modules:
- security: Threat signatures, threat detection, security gate, rate limiting
- caching: Tiered (primary + in-process fallback) cache with failover
- reliability: Health checks and probe routes
"""

from . import security
from . import caching
from . import reliability

__version__ = "1.0.0"

__all__ = [
    'security',
    'caching',
    'reliability',
]
