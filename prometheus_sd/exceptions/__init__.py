"""
Exception hierarchy for prometheus-sd

Every error raised by the registry, the store client or the discovery loop
derives from PrometheusSDError so the CLI can report it uniformly.

Usage:
    from prometheus_sd.exceptions import (
        PrometheusSDError,
        ValidationError,
        StoreError,
        ConnectionTimeoutError,
    )

Output file write failures are not wrapped: they surface as the built-in
OSError raised by the file system calls.
"""
from typing import Optional, Dict, Any


class PrometheusSDError(Exception):
    """Base exception for all prometheus-sd errors"""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code or "INTERNAL_ERROR"
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


# ============================================================================
# Input Exceptions
# ============================================================================

class ValidationError(PrometheusSDError):
    """Service entry failed validation. Never retried."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, "VALIDATION_ERROR", {"field": field})
        self.field = field


class ConfigurationError(PrometheusSDError):
    """Malformed settings, e.g. an unparseable Redis URL"""

    def __init__(self, message: str, config_key: Optional[str] = None):
        super().__init__(message, "CONFIG_ERROR", {"key": config_key})


# ============================================================================
# Store Exceptions
# ============================================================================

class StoreError(PrometheusSDError):
    """Connection or protocol failure against the shared store"""

    def __init__(self, message: str = "Store operation failed", operation: Optional[str] = None):
        super().__init__(message, "STORE_ERROR", {"operation": operation})
        self.operation = operation


class ConnectionTimeoutError(PrometheusSDError):
    """The store stayed unreachable for longer than the retry ceiling"""

    def __init__(self, message: str, elapsed: Optional[float] = None, attempts: Optional[int] = None):
        super().__init__(
            message,
            "CONNECTION_TIMEOUT",
            {"elapsed": elapsed, "attempts": attempts}
        )
        self.elapsed = elapsed
        self.attempts = attempts


# ============================================================================
# Registry Lookup Exceptions
# ============================================================================

class NoSuchServiceError(PrometheusSDError):
    """No entry is registered under the given key"""

    def __init__(self, service: str):
        super().__init__(
            f"No such service registered: '{service}'",
            "NOT_FOUND",
            {"service": service}
        )
        self.service = service


class NoSuchHostError(PrometheusSDError):
    """The registered entry's host does not match the requested prefix"""

    def __init__(self, service: str, host: str):
        super().__init__(
            f"No host starting with '{host}' registered for {service}",
            "NOT_FOUND",
            {"service": service, "host": host}
        )
        self.service = service
        self.host = host


__all__ = [
    "PrometheusSDError",
    "ValidationError",
    "ConfigurationError",
    "StoreError",
    "ConnectionTimeoutError",
    "NoSuchServiceError",
    "NoSuchHostError",
]
