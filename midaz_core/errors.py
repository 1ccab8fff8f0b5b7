"""
Pipeline Errors
===============
Typed error hierarchy surfaced by the request pipeline.

Callers match on the class (or on ``kind``) instead of probing fields.
"""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Optional

import httpx


class ErrorCategory(str, Enum):
    """High-level classification of a failure."""
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    LIMIT_EXCEEDED = "limit_exceeded"
    TIMEOUT = "timeout"
    CANCELLATION = "cancellation"
    NETWORK = "network"
    INTERNAL = "internal"
    UNPROCESSABLE = "unprocessable"


class ErrorCode(str, Enum):
    """Specific error codes within a category."""
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    AUTHENTICATION_ERROR = "authentication_error"
    PERMISSION_ERROR = "permission_error"
    IDEMPOTENCY_ERROR = "idempotency_error"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    CIRCUIT_OPEN = "circuit_open"
    QUEUE_FULL = "queue_full"
    POOL_RESET = "pool_reset"
    NETWORK_ERROR = "network_error"
    DECODE_ERROR = "decode_error"
    INTERNAL_ERROR = "internal_error"


class ErrorKind(str, Enum):
    """Discriminator for the pipeline error taxonomy."""
    NETWORK = "network"
    TIMEOUT = "timeout"
    HTTP_CLIENT = "http_client"
    HTTP_SERVER = "http_server"
    RATE_LIMIT = "rate_limit"
    CIRCUIT_OPEN = "circuit_open"
    QUEUE_FULL = "queue_full"
    POOL_RESET = "pool_reset"
    CANCELLED = "cancelled"
    DECODE = "decode"


class MidazError(Exception):
    """Base exception for every failure raised by the pipeline."""

    kind: ErrorKind = ErrorKind.NETWORK
    retryable: bool = False
    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        *,
        category: Optional[ErrorCategory] = None,
        code: Optional[ErrorCode] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        retry_after: Optional[float] = None,
        details: Any = None,
        cause: Optional[BaseException] = None,
    ):
        self.message = message
        self.category = category or self.default_category
        self.code = code or self.default_code
        self.status_code = status_code
        self.request_id = request_id
        self.retry_after = retry_after
        self.details = details
        self.cause = cause
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "category": self.category.value,
            "code": self.code.value,
            "message": self.message,
            "status_code": self.status_code,
            "request_id": self.request_id,
            "retry_after": self.retry_after,
        }

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.message!r}, "
            f"status_code={self.status_code}, code={self.code.value})"
        )


class NetworkError(MidazError):
    """Connection-level failure (refused, reset, DNS, protocol)."""
    kind = ErrorKind.NETWORK
    retryable = True
    default_category = ErrorCategory.NETWORK
    default_code = ErrorCode.NETWORK_ERROR


class RequestTimeoutError(MidazError):
    """An attempt exceeded its allotted time (or the server answered 408)."""
    kind = ErrorKind.TIMEOUT
    retryable = True
    default_category = ErrorCategory.TIMEOUT
    default_code = ErrorCode.TIMEOUT


class TimeoutBudgetExhaustedError(RequestTimeoutError):
    """The logical call has no time budget left for another attempt."""
    retryable = False


class HttpClientError(MidazError):
    """4xx response. The request itself is invalid and is never retried."""
    kind = ErrorKind.HTTP_CLIENT
    retryable = False


class HttpServerError(MidazError):
    """5xx response."""
    kind = ErrorKind.HTTP_SERVER
    retryable = True
    default_category = ErrorCategory.INTERNAL
    default_code = ErrorCode.INTERNAL_ERROR


class ResponseDecodeError(MidazError):
    """A 2xx response whose body could not be decoded."""
    kind = ErrorKind.DECODE
    retryable = False
    default_category = ErrorCategory.INTERNAL
    default_code = ErrorCode.DECODE_ERROR


class RateLimitError(MidazError):
    """429 response, optionally carrying a ``retry_after`` hint in seconds."""
    kind = ErrorKind.RATE_LIMIT
    retryable = True
    default_category = ErrorCategory.LIMIT_EXCEEDED
    default_code = ErrorCode.RATE_LIMIT_EXCEEDED


class CircuitOpenError(MidazError):
    """Raised without touching the network when an endpoint's circuit is open."""
    kind = ErrorKind.CIRCUIT_OPEN
    retryable = False
    default_category = ErrorCategory.INTERNAL
    default_code = ErrorCode.CIRCUIT_OPEN

    def __init__(self, endpoint_key: str, state: str, retry_after: float):
        self.endpoint_key = endpoint_key
        self.state = state
        super().__init__(
            f"Circuit breaker for '{endpoint_key}' is {state}. "
            f"Retry after {retry_after:.1f}s",
            retry_after=retry_after,
        )


class QueueFullError(MidazError):
    """The host's pending-request queue is at capacity."""
    kind = ErrorKind.QUEUE_FULL
    retryable = False
    default_category = ErrorCategory.LIMIT_EXCEEDED
    default_code = ErrorCode.QUEUE_FULL

    def __init__(self, host: str):
        self.host = host
        super().__init__(f"Request queue full for host: {host}")


class PoolResetError(MidazError):
    """A queued request was rejected because the pool was reset."""
    kind = ErrorKind.POOL_RESET
    retryable = False
    default_category = ErrorCategory.CANCELLATION
    default_code = ErrorCode.POOL_RESET

    def __init__(self, message: str = "Connection pool reset"):
        super().__init__(message)


class RequestCancelledError(MidazError):
    """The caller's cancellation token fired."""
    kind = ErrorKind.CANCELLED
    retryable = False
    default_category = ErrorCategory.CANCELLATION
    default_code = ErrorCode.CANCELLED


def is_endpoint_failure(exc: BaseException) -> bool:
    """
    Circuit breaker predicate for HTTP endpoints.

    Rejected requests (4xx other than 408/429), undecodable 2xx bodies, caller
    cancellation and local pool pressure do not count against the endpoint.
    """
    if not isinstance(exc, Exception):
        return False
    return not isinstance(
        exc,
        (
            HttpClientError,
            ResponseDecodeError,
            RequestCancelledError,
            QueueFullError,
            PoolResetError,
        ),
    )


_CLIENT_STATUS_MAP = {
    400: (ErrorCategory.VALIDATION, ErrorCode.VALIDATION_ERROR),
    401: (ErrorCategory.AUTHENTICATION, ErrorCode.AUTHENTICATION_ERROR),
    403: (ErrorCategory.AUTHORIZATION, ErrorCode.PERMISSION_ERROR),
    404: (ErrorCategory.NOT_FOUND, ErrorCode.NOT_FOUND),
    409: (ErrorCategory.CONFLICT, ErrorCode.ALREADY_EXISTS),
    422: (ErrorCategory.UNPROCESSABLE, ErrorCode.VALIDATION_ERROR),
}

REQUEST_ID_HEADERS = ("x-request-id", "x-correlation-id")


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Parse a ``Retry-After`` header into seconds.

    Accepts delta-seconds or an HTTP-date. Dates in the past give 0.
    """
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (retry_at - now).total_seconds())


def _error_body(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text or None


def error_from_response(response: httpx.Response) -> MidazError:
    """Map a non-2xx response onto the error taxonomy."""
    status = response.status_code
    body = _error_body(response)
    request_id = next(
        (response.headers[h] for h in REQUEST_ID_HEADERS if h in response.headers),
        None,
    )

    message = f"HTTP {status}: {response.reason_phrase}"
    if isinstance(body, dict) and body.get("message"):
        message = str(body["message"])

    common = dict(status_code=status, request_id=request_id, details=body)

    if status == 429:
        return RateLimitError(
            message,
            retry_after=parse_retry_after(response.headers.get("retry-after")),
            **common,
        )
    if status == 408:
        return RequestTimeoutError(message, **common)
    if 400 <= status < 500:
        category, code = _CLIENT_STATUS_MAP.get(
            status, (ErrorCategory.VALIDATION, ErrorCode.VALIDATION_ERROR)
        )
        return HttpClientError(message, category=category, code=code, **common)
    if status >= 500:
        return HttpServerError(message, **common)
    return MidazError(message, **common)


def map_transport_error(exc: httpx.HTTPError) -> MidazError:
    """Map httpx transport exceptions to pipeline errors."""
    if isinstance(exc, httpx.TimeoutException):
        return RequestTimeoutError(f"Request timed out: {exc}", cause=exc)
    if isinstance(exc, httpx.TransportError):
        return NetworkError(f"Network error: {exc}", cause=exc)
    return MidazError(f"Unexpected HTTP error: {exc}", cause=exc)
