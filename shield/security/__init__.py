"""
Security Module
===============
Request defense components for HTTP endpoints.

Components:
- SignatureProvider: Threat signatures from curated rules and a threat feed
- ThreatDetector: Static and threat-intelligence pattern matching
- SecurityGate: Transport, size, origin, content-type and body checks
- RateLimiter: Per-key fixed-window rate limiting
- RequestDefenseMiddleware: FastAPI pipeline wiring
"""

from .signatures import (
    ThreatCategory,
    CORE_CATEGORIES,
    Severity,
    ThreatSignature,
    CompiledSignature,
    CompiledPatternSet,
    compile_signatures,
    fallback_pattern_set,
    FeedIndicator,
    ThreatFeed,
    StaticThreatFeed,
    HttpThreatFeed,
    SignatureCache,
    InMemorySignatureCache,
    SignatureProvider,
)

from .threat_detector import (
    ViolationType,
    SecurityViolation,
    ThreatDetector,
    InputSanitizer,
)

from .http import (
    GatewayRequest,
    GatewayResponse,
    json_response,
    get_client_ip,
)

from .security_gate import (
    SECURITY_HEADERS,
    SecurityConfig,
    SecurityGate,
)

from .rate_limiter import (
    RateLimiter,
    RateLimitResponse,
    RateWindowState,
    default_key_func,
)

from .middleware import (
    RequestDefenseMiddleware,
)


__all__ = [
    # Signatures
    'ThreatCategory',
    'CORE_CATEGORIES',
    'Severity',
    'ThreatSignature',
    'CompiledSignature',
    'CompiledPatternSet',
    'compile_signatures',
    'fallback_pattern_set',
    'FeedIndicator',
    'ThreatFeed',
    'StaticThreatFeed',
    'HttpThreatFeed',
    'SignatureCache',
    'InMemorySignatureCache',
    'SignatureProvider',

    # Threat Detector
    'ViolationType',
    'SecurityViolation',
    'ThreatDetector',
    'InputSanitizer',

    # HTTP
    'GatewayRequest',
    'GatewayResponse',
    'json_response',
    'get_client_ip',

    # Security Gate
    'SECURITY_HEADERS',
    'SecurityConfig',
    'SecurityGate',

    # Rate Limiter
    'RateLimiter',
    'RateLimitResponse',
    'RateWindowState',
    'default_key_func',

    # Middleware
    'RequestDefenseMiddleware',
]
