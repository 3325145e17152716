"""
Core types used across modules.

Base enums shared by the error hierarchy, the resilience primitives and
the log archiver itself.
"""

from enum import Enum


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Categories:
        TRANSIENT: Temporary failures that should retry with backoff
                   (e.g., network timeouts, probe connection drops, 5xx from S3)
        AUTH: Authentication failures (e.g., expired credentials)
        PERMANENT: Non-retriable failures that won't succeed on retry
                   (e.g., 404, rejected SSH key, invalid configuration)
        CIRCUIT_OPEN: Circuit breaker is open, rejecting without attempting
        UNKNOWN: Unclassified errors, may retry conservatively
    """

    TRANSIENT = "transient"
    AUTH = "auth"
    PERMANENT = "permanent"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN = "unknown"


__all__ = [
    "ErrorCategory",
]
