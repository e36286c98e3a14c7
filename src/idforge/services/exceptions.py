"""Service error hierarchy for generation, intake and storage operations.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Errors that may succeed later (network, rate limits, timeouts)
- PermanentError: Errors that will not (authentication, validation)

The backoff executor retries both alike. The split is reported as the
``transient`` field of retry and record-failure log events, and callers may
catch TransientError to decide whether a failed batch is worth resubmitting.

Request-level errors carry the HTTP status the API layer answers with:
- ValidationError: missing or malformed input (400)
- NotFoundError: no source images / unknown record (404)
- ConflictError: duplicate in-flight batch (409)
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    status_code = 500
    error_code = "Internal server error"

    def __init__(self, message: str = "", **details):
        super().__init__(message)
        self.message = message
        self.details = details


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (503)
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    - Configuration errors
    """

    pass


# Request-level errors
class ValidationError(PermanentError):
    """Missing or malformed request input."""

    status_code = 400
    error_code = "Validation error"


class NotFoundError(PermanentError):
    """Requested resource or required source images not found."""

    status_code = 404
    error_code = "Not found"


class ConflictError(PermanentError):
    """A batch for the same username and stage is already in flight."""

    status_code = 409
    error_code = "Generation already in progress"


# Upstream errors (broker, model, enhancement API, object storage)
class UpstreamError(ServiceError):
    """Base exception for third-party call failures."""

    status_code = 502
    error_code = "Upstream service error"


class UpstreamRateLimitError(UpstreamError, TransientError):
    """Rate limit exceeded (429)."""

    pass


class UpstreamNetworkError(UpstreamError, TransientError):
    """Network timeout or service unavailable."""

    pass


class UpstreamAuthError(UpstreamError, PermanentError):
    """Authentication failure (401, 403)."""

    pass


class UpstreamRequestError(UpstreamError, PermanentError):
    """Upstream rejected the request (4xx other than auth/rate limit)."""

    pass


class NoImageReturned(UpstreamError):
    """Model response contained no inline image part."""

    pass


class ContentBlocked(UpstreamError):
    """Model refused the request on safety grounds."""

    pass


class EnhancementFailed(UpstreamError):
    """Enhancement job finished with status failed/error or never finished."""

    pass


class StorageError(UpstreamError):
    """Object storage upload, read or delete failed."""

    pass


# Record store errors
class PersistenceError(ServiceError):
    """Record store write failed after retries were exhausted."""

    pass
