"""
Threat Detector
===============
Two-pass threat detection for request bodies.

Passes:
1. Static - Fixed built-in patterns (XSS, SQL injection, command injection,
   path traversal). Always runs.
2. Dynamic - Signatures from the SignatureProvider, matched in a worker
   thread under the detector's time budget. Skipped on any failure.

Also provides InputSanitizer for escaping and parsing untrusted JSON.
"""

import re
import html
import json
import time
import asyncio
import logging
from typing import Optional, List, Dict, Any, Pattern, Tuple
from dataclasses import dataclass
from enum import Enum

from .signatures import ThreatCategory, Severity, SignatureProvider, CompiledPatternSet
from ..errors import PolicyViolationError, MalformedInputError

logger = logging.getLogger(__name__)


class ViolationType(Enum):
    """Types of security violations."""
    HTTPS_REQUIRED = "HTTPS_REQUIRED"
    REQUEST_TOO_LARGE = "REQUEST_TOO_LARGE"
    INVALID_ORIGIN = "INVALID_ORIGIN"
    INVALID_CONTENT_TYPE = "INVALID_CONTENT_TYPE"
    MALFORMED_JSON = "MALFORMED_JSON"
    SUSPICIOUS_PATTERN = "SUSPICIOUS_PATTERN"
    XSS_ATTEMPT = "XSS_ATTEMPT"
    SQL_INJECTION_ATTEMPT = "SQL_INJECTION_ATTEMPT"
    COMMAND_INJECTION_ATTEMPT = "COMMAND_INJECTION_ATTEMPT"
    PATH_TRAVERSAL_ATTEMPT = "PATH_TRAVERSAL_ATTEMPT"
    THREAT_INTELLIGENCE_MATCH = "THREAT_INTELLIGENCE_MATCH"


@dataclass
class SecurityViolation:
    """A single detected policy breach."""
    type: ViolationType
    message: str
    severity: Severity
    category: Optional[ThreatCategory] = None
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value if self.category else None,
        }


@dataclass(frozen=True)
class StaticRule:
    """How a static category match is reported."""
    violation_type: ViolationType
    severity: Severity
    message: str


# Every core category must have a rule here
STATIC_RULES: Dict[ThreatCategory, StaticRule] = {
    ThreatCategory.XSS: StaticRule(
        ViolationType.XSS_ATTEMPT, Severity.HIGH, "Potential XSS attack detected"),
    ThreatCategory.SQL_INJECTION: StaticRule(
        ViolationType.SQL_INJECTION_ATTEMPT, Severity.CRITICAL, "Potential SQL injection detected"),
    ThreatCategory.COMMAND_INJECTION: StaticRule(
        ViolationType.COMMAND_INJECTION_ATTEMPT, Severity.CRITICAL, "Potential command injection detected"),
    ThreatCategory.PATH_TRAVERSAL: StaticRule(
        ViolationType.PATH_TRAVERSAL_ATTEMPT, Severity.HIGH, "Potential path traversal detected"),
}

STATIC_PATTERNS: Dict[ThreatCategory, List[Pattern]] = {
    ThreatCategory.XSS: [
        re.compile(r'<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>', re.IGNORECASE),
        re.compile(r'javascript:\s*[^;]', re.IGNORECASE),
        re.compile(r'on\w+\s*=\s*[\'"]', re.IGNORECASE),
        re.compile(r'<iframe\b[^>]*src\s*=\s*[\'"]', re.IGNORECASE),
        re.compile(r'<object\b[^>]*data\s*=\s*[\'"]', re.IGNORECASE),
        re.compile(r'<embed\b[^>]*src\s*=\s*[\'"]', re.IGNORECASE),
        re.compile(r'<svg\b[^>]*onload\s*=', re.IGNORECASE),
        re.compile(r'<body\b[^>]*onload\s*=', re.IGNORECASE),
    ],
    ThreatCategory.SQL_INJECTION: [
        re.compile(r'(\b(SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|EXEC|UNION)\s+)', re.IGNORECASE),
        re.compile(r'(\b(OR|AND)\s+[\'"]?\d+[\'"]?\s*=\s*[\'"]?\d+[\'"]?)', re.IGNORECASE),
        re.compile(r'(;\s*(DROP|DELETE|INSERT|UPDATE)\s+)', re.IGNORECASE),
        re.compile(r'(\b(WAITFOR|DELAY)\s+)', re.IGNORECASE),
        re.compile(r'(EXEC\s+xp_cmdshell)', re.IGNORECASE),
        re.compile(r'(\'\s+(OR|AND)\s+\')', re.IGNORECASE),
    ],
    ThreatCategory.COMMAND_INJECTION: [
        re.compile(r'(;\s*(rm|cat|ls|ps|kill|chmod|chown|sudo|su)\s+)', re.IGNORECASE),
        re.compile(r'(\|\s*(rm|cat|ls|ps|kill|chmod|chown|sudo|su)\s+)', re.IGNORECASE),
        re.compile(r'(&&\s*(rm|cat|ls|ps|kill|chmod|chown|sudo|su)\s+)', re.IGNORECASE),
        re.compile(r'(`[^`]*rm\s+)', re.IGNORECASE),
        re.compile(r'(\$\([^)]*rm\s+)', re.IGNORECASE),
    ],
    ThreatCategory.PATH_TRAVERSAL: [
        re.compile(r'(\.\.[/\\]){2,}'),
        re.compile(r'[/\\]etc[/\\]passwd', re.IGNORECASE),
        re.compile(r'[/\\]windows[/\\]system32', re.IGNORECASE),
    ],
}


class ThreatDetector:
    """
    Scans text for threats using static patterns and threat intelligence.

    Example:
        detector = ThreatDetector(SignatureProvider(feed=feed))
        violations = await detector.detect('{"q": "1; DROP TABLE users"}')
        if any(v.severity.is_blocking for v in violations):
            ...
    """

    def __init__(
        self,
        signature_provider: Optional[SignatureProvider] = None,
        timeout_seconds: float = 5.0,
    ):
        """
        Initialize threat detector.

        Args:
            signature_provider: Source of dynamic signatures; None disables
                the dynamic pass
            timeout_seconds: Bound on the dynamic pass
        """
        self.signature_provider = signature_provider
        self.timeout_seconds = timeout_seconds

    async def detect(self, text: str) -> List[SecurityViolation]:
        """Run the static pass, then the dynamic pass if available."""
        violations = self.detect_static(text)

        if self.signature_provider is None:
            return violations

        try:
            violations.extend(
                await asyncio.wait_for(self._detect_dynamic(text), timeout=self.timeout_seconds)
            )
        except Exception as e:
            # Static results are still returned
            reason = "timed out" if isinstance(e, (asyncio.TimeoutError, TimeoutError)) else str(e)
            logger.warning(f"Threat intelligence check failed, using static patterns only: {reason}")

        return violations

    def detect_static(self, text: str) -> List[SecurityViolation]:
        """Match text against the built-in patterns."""
        violations: List[SecurityViolation] = []
        for category, rule in STATIC_RULES.items():
            for pattern in STATIC_PATTERNS[category]:
                if pattern.search(text):
                    violations.append(SecurityViolation(
                        type=rule.violation_type,
                        message=rule.message,
                        severity=rule.severity,
                        category=category,
                        details={"pattern": pattern.pattern, "source": "static"},
                    ))
        return violations

    async def _detect_dynamic(self, text: str) -> List[SecurityViolation]:
        deadline = time.monotonic() + self.timeout_seconds
        patterns = await self.signature_provider.get_signatures()

        # Feed patterns are untrusted; match off the event loop under the same deadline
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._match_signatures, patterns, text, deadline)

    @staticmethod
    def _match_signatures(
        patterns: CompiledPatternSet,
        text: str,
        deadline: float,
    ) -> List[SecurityViolation]:
        violations: List[SecurityViolation] = []

        for category, compiled_list in patterns.items():
            for compiled in compiled_list:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError("signature matching exceeded its time budget")
                if not compiled.matches(text, timeout=remaining):
                    continue
                signature = compiled.signature
                violations.append(SecurityViolation(
                    type=ViolationType.THREAT_INTELLIGENCE_MATCH,
                    message=f"Threat intelligence match: {signature.description}",
                    severity=signature.severity,
                    category=category,
                    details={
                        "signature_id": signature.id,
                        "pattern": signature.pattern,
                        "source": signature.source,
                    },
                ))

        return violations


class InputSanitizer:
    """
    Escapes untrusted strings and parses untrusted JSON.

    Example:
        sanitizer = InputSanitizer(detector)
        payload = await sanitizer.sanitize_json(body)
    """

    MAX_STRING_LENGTH = 10000

    CONTROL_CHAR_PATTERN = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')

    def __init__(self, detector: Optional[ThreatDetector] = None):
        self.detector = detector or ThreatDetector()

    @classmethod
    def sanitize_string(cls, value: Any) -> str:
        """Strip control characters, escape HTML and cap the length."""
        if not isinstance(value, str):
            return str(value)

        value = value.replace('\0', '')
        value = html.escape(value, quote=True).replace('/', '&#x2F;')
        value = cls.CONTROL_CHAR_PATTERN.sub('', value)
        return value[:cls.MAX_STRING_LENGTH]

    @classmethod
    def sanitize_object(cls, obj: Any) -> Any:
        """Recursively sanitize keys and string values."""
        if obj is None or isinstance(obj, (bool, int, float)):
            return obj
        if isinstance(obj, str):
            return cls.sanitize_string(obj)
        if isinstance(obj, list):
            return [cls.sanitize_object(item) for item in obj]
        if isinstance(obj, dict):
            return {cls.sanitize_string(k): cls.sanitize_object(v) for k, v in obj.items()}
        return obj

    async def sanitize_json(self, text: str) -> Any:
        """
        Scan, parse and sanitize a JSON document.

        Raises:
            PolicyViolationError: A high or critical threat was found
            MalformedInputError: The text is empty or not valid JSON
        """
        if not text or not isinstance(text, str):
            raise MalformedInputError("Invalid JSON input")

        violations = await self.detector.detect(text)
        blocking = [v for v in violations if v.severity.is_blocking]
        if blocking:
            raise PolicyViolationError(blocking[0])

        try:
            parsed = json.loads(text)
        except ValueError as e:
            raise MalformedInputError("Malformed JSON input") from e

        return self.sanitize_object(parsed)


def blocking_violations(violations: List[SecurityViolation]) -> Tuple[SecurityViolation, ...]:
    """Violations severe enough to block, in detection order."""
    return tuple(v for v in violations if v.severity.is_blocking)


__all__ = [
    'ViolationType',
    'SecurityViolation',
    'StaticRule',
    'STATIC_RULES',
    'STATIC_PATTERNS',
    'ThreatDetector',
    'InputSanitizer',
    'blocking_violations',
]
