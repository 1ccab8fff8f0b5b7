from .models import HttpMethod, RequestDescriptor
from .pool import ConnectionPool, ConnectionPoolConfig, HostConnectionState, PoolStats
from .client import (
    HttpClient,
    HttpClientConfig,
    generate_idempotency_key,
    parse_response_body,
)
from .redact import redact_headers, redact_url_credentials

__all__ = [
    "HttpMethod",
    "RequestDescriptor",
    "ConnectionPool",
    "ConnectionPoolConfig",
    "HostConnectionState",
    "PoolStats",
    "HttpClient",
    "HttpClientConfig",
    "generate_idempotency_key",
    "parse_response_body",
    "redact_headers",
    "redact_url_credentials",
]
