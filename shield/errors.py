"""
Errors
======
Exception taxonomy shared by the pipeline components.

Only PolicyViolationError and MalformedInputError ever reach callers, and
only from the explicit sanitizer API. Dependency and configuration errors
are raised internally and recovered by the component that owns the
dependency.
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .security.threat_detector import SecurityViolation


class ShieldError(Exception):
    """Base class for all pipeline errors."""
    pass


class PolicyViolationError(ShieldError):
    """Raised when input breaches a blocking security policy."""

    def __init__(self, violation: 'SecurityViolation'):
        super().__init__(f"Security violation detected: {violation.message}")
        self.violation = violation


class MalformedInputError(ShieldError):
    """Raised when a request body cannot be parsed."""
    pass


class TransientDependencyError(ShieldError):
    """A dependency (threat feed, primary store) is unreachable or failed."""

    def __init__(self, dependency: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"{dependency}: {message}")
        self.dependency = dependency
        self.cause = cause


class SignatureConfigurationError(ShieldError):
    """A threat signature cannot be compiled or has an unknown category."""

    def __init__(self, signature_id: str, message: str):
        super().__init__(f"Invalid signature {signature_id}: {message}")
        self.signature_id = signature_id


__all__ = [
    'ShieldError',
    'PolicyViolationError',
    'MalformedInputError',
    'TransientDependencyError',
    'SignatureConfigurationError',
]
