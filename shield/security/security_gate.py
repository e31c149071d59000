"""
Security Gate
=============
Admission checks for inbound requests.

Checks (in order):
- Transport scheme (HTTPS enforcement)
- Payload size
- Origin allow-list
- Content type for mutating methods
- Body threat scan via ThreatDetector

High and critical violations block the request (400 / 403). Lower
severities are recorded against the client IP only.
"""

import logging
import threading
from typing import Optional, List, Dict, Any
from dataclasses import dataclass, field

from .http import GatewayRequest, GatewayResponse, json_response, get_client_ip, utc_timestamp
from .signatures import Severity
from .threat_detector import ThreatDetector, SecurityViolation, ViolationType

logger = logging.getLogger(__name__)


SECURITY_HEADERS: Dict[str, str] = {
    'X-Frame-Options': 'DENY',
    'X-Content-Type-Options': 'nosniff',
    'X-XSS-Protection': '1; mode=block',
    'Referrer-Policy': 'strict-origin-when-cross-origin',
    'Content-Security-Policy': "default-src 'none'; script-src 'none'; object-src 'none'; base-uri 'none';",
    'Strict-Transport-Security': 'max-age=31536000; includeSubDomains; preload',
    'Permissions-Policy': 'geolocation=(), microphone=(), camera=(), payment=(), usb=(), magnetometer=(), gyroscope=()',
}

BLOCK_STATUS: Dict[Severity, int] = {
    Severity.CRITICAL: 403,
    Severity.HIGH: 400,
}


@dataclass
class SecurityConfig:
    """Configuration for the security gate."""
    enforce_https: bool = True
    max_request_size: int = 1024 * 1024  # bytes
    allowed_origins: List[str] = field(default_factory=lambda: ['*'])
    enable_security_headers: bool = True
    sanitize_input: bool = True
    block_suspicious_patterns: bool = True
    mutating_methods: List[str] = field(default_factory=lambda: ['POST', 'PUT', 'PATCH'])
    required_content_type: str = 'application/json'


class SecurityGate:
    """
    Validates requests and decorates responses with security headers.

    Example:
        gate = SecurityGate(SecurityConfig(allowed_origins=["example.com"]))

        blocked = await gate.validate(request)
        if blocked:
            return blocked

        response = gate.add_security_headers(response)
    """

    def __init__(
        self,
        config: Optional[SecurityConfig] = None,
        detector: Optional[ThreatDetector] = None,
    ):
        """Initialize gate with configuration and threat detector."""
        self.config = config or SecurityConfig()
        self.detector = detector or ThreatDetector()
        self._violation_counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    async def validate(self, request: GatewayRequest) -> Optional[GatewayResponse]:
        """
        Validate a request.

        Returns:
            A block response, or None if the request may proceed
        """
        client_ip = get_client_ip(request)

        try:
            violations = await self._collect_violations(request)
            if not violations:
                return None

            self._log_violations(violations, client_ip, request)
            self._record_violations(client_ip, len(violations))

            for violation in violations:
                if violation.severity.is_blocking:
                    return self._create_block_response(violation)

            return None

        except Exception as e:
            logger.error(f"Security validation error for {client_ip}: {e}", exc_info=True)
            return self._create_block_response(SecurityViolation(
                type=ViolationType.SUSPICIOUS_PATTERN,
                message="Request validation failed",
                severity=Severity.HIGH,
            ))

    def add_security_headers(self, response: GatewayResponse) -> GatewayResponse:
        """Merge the fixed security header set into a response."""
        if not self.config.enable_security_headers:
            return response
        return response.with_headers(SECURITY_HEADERS)

    @property
    def security_headers(self) -> Dict[str, str]:
        """Headers to apply to outgoing responses, empty when disabled."""
        return dict(SECURITY_HEADERS) if self.config.enable_security_headers else {}

    def get_violation_stats(self) -> Dict[str, Any]:
        """Per-IP violation counters, with the top 10 offenders."""
        with self._lock:
            counts = dict(self._violation_counts)

        top = sorted(counts.items(), key=lambda item: item[1], reverse=True)[:10]
        return {
            "total_ips": len(counts),
            "total_violations": sum(counts.values()),
            "top_violators": [{"ip": ip, "count": count} for ip, count in top],
        }

    def reset_violation_stats(self):
        with self._lock:
            self._violation_counts.clear()

    async def _collect_violations(self, request: GatewayRequest) -> List[SecurityViolation]:
        violations: List[SecurityViolation] = []

        if self.config.enforce_https:
            self._append(violations, self._check_https(request))
        self._append(violations, self._check_size(request))
        self._append(violations, self._check_origin(request))
        self._append(violations, self._check_content_type(request))

        if self.config.sanitize_input and request.body:
            violations.extend(await self._check_body(request.body))

        return violations

    @staticmethod
    def _append(violations: List[SecurityViolation], violation: Optional[SecurityViolation]):
        if violation is not None:
            violations.append(violation)

    def _check_https(self, request: GatewayRequest) -> Optional[SecurityViolation]:
        protocol = request.header('X-Forwarded-Proto') or request.scheme or 'https'
        if protocol.split(',')[0].strip().lower() != 'https':
            return SecurityViolation(
                type=ViolationType.HTTPS_REQUIRED,
                message="HTTPS is required for all requests",
                severity=Severity.HIGH,
            )
        return None

    def _check_size(self, request: GatewayRequest) -> Optional[SecurityViolation]:
        size = request.body_size
        if size > self.config.max_request_size:
            return SecurityViolation(
                type=ViolationType.REQUEST_TOO_LARGE,
                message=f"Request size {size} exceeds maximum allowed {self.config.max_request_size}",
                severity=Severity.HIGH,
                details={"size": size, "max_size": self.config.max_request_size},
            )
        return None

    def _check_origin(self, request: GatewayRequest) -> Optional[SecurityViolation]:
        origin = request.header('Origin')
        allowed = self.config.allowed_origins
        if not origin or not allowed:
            return None

        if any(entry == '*' or origin == entry or origin.endswith(entry) for entry in allowed):
            return None

        return SecurityViolation(
            type=ViolationType.INVALID_ORIGIN,
            message=f"Origin {origin} is not allowed",
            severity=Severity.HIGH,
            details={"origin": origin},
        )

    def _check_content_type(self, request: GatewayRequest) -> Optional[SecurityViolation]:
        if request.method not in self.config.mutating_methods or not request.body:
            return None

        content_type = request.header('Content-Type')
        if content_type and self.config.required_content_type in content_type.lower():
            return None

        return SecurityViolation(
            type=ViolationType.INVALID_CONTENT_TYPE,
            message=f"Content-Type must be {self.config.required_content_type} for {request.method} requests",
            severity=Severity.HIGH,
            details={"content_type": content_type},
        )

    async def _check_body(self, body: str) -> List[SecurityViolation]:
        if not self.config.block_suspicious_patterns:
            return []
        return await self.detector.detect(body)

    def _record_violations(self, client_ip: str, count: int):
        with self._lock:
            self._violation_counts[client_ip] = self._violation_counts.get(client_ip, 0) + count

    def _log_violations(
        self,
        violations: List[SecurityViolation],
        client_ip: str,
        request: GatewayRequest,
    ):
        critical = sum(1 for v in violations if v.severity == Severity.CRITICAL)
        high = sum(1 for v in violations if v.severity == Severity.HIGH)
        level = logging.ERROR if critical else logging.WARNING if high else logging.INFO

        summary = ", ".join(f"{v.type.value}({v.severity.value})" for v in violations)
        logger.log(
            level,
            f"Security violations detected: ip={client_ip} method={request.method} "
            f"path={request.path} count={len(violations)} critical={critical} high={high} "
            f"user_agent={request.header('User-Agent', 'unknown')} violations=[{summary}]",
        )

    def _create_block_response(self, violation: SecurityViolation) -> GatewayResponse:
        status_code = BLOCK_STATUS.get(violation.severity, 400)
        response = json_response(status_code, {
            "error": "Request blocked due to security policy violation",
            "code": status_code,
            "timestamp": utc_timestamp(),
        })
        return self.add_security_headers(response)


__all__ = [
    'SECURITY_HEADERS',
    'SecurityConfig',
    'SecurityGate',
]
