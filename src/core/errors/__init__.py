"""
Error classification and exception hierarchy.

Provides:
- ErrorCategory enum for classifying errors
- PipelineError hierarchy for typed exceptions
- Domain errors scoped to run, group, partition, batch or line
- Classification utilities for error handling
"""

from core.errors.exceptions import (
    ArchiveUploadError,
    ArchiveVerificationError,
    AuthError,
    CatalogError,
    CircuitOpenError,
    ConfigurationError,
    # Enums
    ErrorCategory,
    FetchError,
    MergeError,
    ParseError,
    PermanentError,
    # Base classes
    PipelineError,
    ProbeAuthError,
    ProbeError,
    ProbeTimeoutError,
    StateStoreError,
    ThrottlingError,
    TransientError,
    classify_exception,
    classify_http_status,
    wrap_exception,
)

__all__ = [
    # Enums
    "ErrorCategory",
    # Base classes
    "PipelineError",
    "AuthError",
    "TransientError",
    "ThrottlingError",
    "PermanentError",
    "CircuitOpenError",
    # Domain errors
    "ConfigurationError",
    "CatalogError",
    "FetchError",
    "ParseError",
    "StateStoreError",
    "ProbeError",
    "ProbeTimeoutError",
    "ProbeAuthError",
    "MergeError",
    "ArchiveUploadError",
    "ArchiveVerificationError",
    # Classification utilities
    "classify_http_status",
    "classify_exception",
    "wrap_exception",
]
