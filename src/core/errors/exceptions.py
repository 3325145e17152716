"""
Unified exception hierarchy for the log archiver.

Provides typed exceptions with retry classification so that every layer can
decide whether to retry, skip, fail the partition or halt the run.
"""


# Import ErrorCategory from canonical source to avoid duplicate enum issues
# (comparing enums from different classes always returns False)
from core.types import ErrorCategory


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error description
        category: Error classification for retry decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return self.category in (
            ErrorCategory.TRANSIENT,
            ErrorCategory.AUTH,
            ErrorCategory.UNKNOWN,
        )

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


# =============================================================================
# Base categories
# =============================================================================


class AuthError(PipelineError):
    """Base class for authentication errors."""

    category = ErrorCategory.AUTH


class TransientError(PipelineError):
    """Base class for transient/retriable errors."""

    category = ErrorCategory.TRANSIENT


class ThrottlingError(TransientError):
    """Rate limited (429 / SlowDown) - should back off."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message, cause, context)
        self.retry_after = retry_after  # Seconds to wait if provided


class PermanentError(PipelineError):
    """Base class for permanent/non-retriable errors."""

    category = ErrorCategory.PERMANENT


class CircuitOpenError(PipelineError):
    """Circuit breaker is open, rejecting requests."""

    category = ErrorCategory.CIRCUIT_OPEN

    def __init__(
        self,
        circuit_name: str,
        retry_after: float | None = None,
        cause: Exception | None = None,
    ):
        message = f"Circuit '{circuit_name}' is open"
        super().__init__(message, cause, {"circuit_name": circuit_name})
        self.circuit_name = circuit_name
        # None for latching breakers that stay open for the rest of the run
        self.retry_after = retry_after


# =============================================================================
# Domain-Specific Errors
# =============================================================================


class ConfigurationError(PermanentError):
    """Invalid or incomplete configuration detected at start-up."""

    pass


class CatalogError(PipelineError):
    """Partition listing or processed-state query could not complete."""

    pass


class FetchError(PipelineError):
    """Downloading a partition's objects failed; the partition is aborted."""

    pass


class ParseError(PermanentError):
    """A single log line could not be parsed."""

    pass


class StateStoreError(TransientError):
    """Error from relational state store operations."""

    pass


class ProbeError(TransientError):
    """Remote existence probe failed (connection drop, non-zero exit)."""

    pass


class ProbeTimeoutError(ProbeError):
    """Remote existence probe did not finish within its timeout."""

    pass


class ProbeAuthError(PermanentError):
    """Remote existence probe was rejected by authentication."""

    pass


class MergeError(PipelineError):
    """Partition merge/sort/dedupe could not produce an artifact."""

    pass


class ArchiveUploadError(PipelineError):
    """Upload of the partition artifact to the archive store failed."""

    pass


class ArchiveVerificationError(PermanentError):
    """
    Uploaded artifact could not be confirmed through the independent reader.

    Signals a systemic misconfiguration (writer and reader pointed at different
    accounts, wrong credentials), so the whole run halts.
    """

    halts_run = True


# =============================================================================
# Error Classification Utilities
# =============================================================================

# Markers for string-based detection (fallback for non-PipelineError exceptions)
AUTH_ERROR_MARKERS = frozenset(
    {
        "401",
        "unauthorized",
        "authentication",
        "token expired",
        "invalid token",
        "expiredtoken",
        "invalidaccesskeyid",
        "signaturedoesnotmatch",
    }
)


def classify_http_status(status_code: int) -> ErrorCategory:
    """Classify HTTP status code (as reported by S3-compatible stores)."""
    if 200 <= status_code < 300:
        return ErrorCategory.UNKNOWN  # Not an error

    if status_code == 401:
        return ErrorCategory.AUTH

    if status_code == 429:
        return ErrorCategory.TRANSIENT  # Rate limited

    if 400 <= status_code < 500:
        return ErrorCategory.PERMANENT

    if status_code >= 500:
        return ErrorCategory.TRANSIENT

    return ErrorCategory.UNKNOWN


def classify_os_error(error: OSError) -> ErrorCategory:
    """
    Classify OSError by errno into error category.

    Conservative classification: only mark as PERMANENT if certain.
    Disk full (ENOSPC), read-only filesystem (EROFS), permission denied (EACCES/EPERM).
    """
    import errno

    permanent_errnos = (errno.ENOSPC, errno.EROFS, errno.EACCES, errno.EPERM, errno.ENOENT)
    return ErrorCategory.PERMANENT if error.errno in permanent_errnos else ErrorCategory.TRANSIENT


def _client_error_status(exc: Exception) -> int | None:
    """Extract the HTTP status from a botocore ClientError-shaped exception."""
    response = getattr(exc, "response", None)
    if not isinstance(response, dict):
        return None
    status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    if status is None:
        code = response.get("Error", {}).get("Code", "")
        if str(code).isdigit():
            status = int(code)
    return int(status) if status is not None else None


def classify_exception(exc: Exception) -> ErrorCategory:
    """Classify an exception into error category."""
    # Already classified
    if isinstance(exc, PipelineError):
        return exc.category

    status = _client_error_status(exc)
    if status is not None:
        return classify_http_status(status)

    if isinstance(exc, OSError) and exc.errno is not None:
        return classify_os_error(exc)

    exc_type = type(exc).__name__.lower()
    exc_str = str(exc).lower()

    # Connection errors (botocore EndpointConnectionError, SQLAlchemy OperationalError, ...)
    connection_markers = (
        "connectionerror",
        "connection refused",
        "connection reset",
        "connection aborted",
        "could not connect",
        "lost connection",
        "server has gone away",
        "no route to host",
        "network unreachable",
        "name resolution",
        "broken pipe",
    )
    if any(m in exc_type or m in exc_str for m in connection_markers):
        return ErrorCategory.TRANSIENT

    if "timeout" in exc_type or "timeout" in exc_str or "timed out" in exc_str:
        return ErrorCategory.TRANSIENT

    if any(m in exc_str for m in AUTH_ERROR_MARKERS):
        return ErrorCategory.AUTH

    if "429" in exc_str or "throttl" in exc_str or "slowdown" in exc_str:
        return ErrorCategory.TRANSIENT

    if "503" in exc_str or "502" in exc_str or "504" in exc_str or "deadlock" in exc_str:
        return ErrorCategory.TRANSIENT

    if "403" in exc_str or "forbidden" in exc_str or "access denied" in exc_str:
        return ErrorCategory.PERMANENT

    if "404" in exc_str or "not found" in exc_str or "nosuchkey" in exc_str:
        return ErrorCategory.PERMANENT

    return ErrorCategory.UNKNOWN


def wrap_exception(
    exc: Exception,
    default_class: type = PipelineError,
    context: dict | None = None,
) -> PipelineError:
    """Wrap a generic exception in appropriate PipelineError subclass."""
    if isinstance(exc, PipelineError):
        if context:
            exc.context.update(context)
        return exc

    category = classify_exception(exc)
    exc_str = str(exc).lower()
    context = context or {}

    if "timeout" in exc_str or "timed out" in exc_str:
        context["error_type"] = "timeout"
    elif "429" in exc_str or "throttl" in exc_str or "slowdown" in exc_str:
        context["error_type"] = "throttling"
    elif "404" in exc_str or "not found" in exc_str:
        context["error_type"] = "not_found"
    elif "403" in exc_str or "forbidden" in exc_str:
        context["error_type"] = "forbidden"

    if category == ErrorCategory.AUTH:
        return AuthError(str(exc), cause=exc, context=context)

    if category == ErrorCategory.TRANSIENT:
        if context.get("error_type") == "throttling":
            return ThrottlingError(str(exc), cause=exc, context=context)
        if issubclass(default_class, TransientError):
            return default_class(str(exc), cause=exc, context=context)
        return TransientError(str(exc), cause=exc, context=context)

    if category == ErrorCategory.PERMANENT:
        if issubclass(default_class, PermanentError):
            return default_class(str(exc), cause=exc, context=context)
        return PermanentError(str(exc), cause=exc, context=context)

    return default_class(str(exc), cause=exc, context=context)
