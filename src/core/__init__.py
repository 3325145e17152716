"""
Core library: Reusable, infrastructure-agnostic components.

Shared by the log archiver but free of any knowledge about log partitions,
resolvers or archive buckets.

Modules:
    errors      - Error classification and exception hierarchy
    resilience  - Latching circuit breaker, retry with backoff, deadline waits
    logging     - Structured JSON logging with run/stage/partition context
    utils       - JSON serialisation helpers

Design Principles:
    - No dependencies on a specific storage backend or database
    - All modules are independently testable
    - Async-first where applicable
"""

from .types import ErrorCategory

__version__ = "0.1.0"

__all__ = [
    "ErrorCategory",
]
