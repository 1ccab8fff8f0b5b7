"""
Request Models
==============
Immutable description of one logical HTTP call handed to the pipeline.
"""

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Union
from urllib.parse import urlsplit

from midaz_core.cancellation import CancellationToken


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"


# Methods that receive an Idempotency-Key header
IDEMPOTENT_KEY_METHODS = frozenset({HttpMethod.POST, HttpMethod.PUT, HttpMethod.PATCH})


@dataclass(frozen=True, eq=False)
class RequestDescriptor:
    """
    One logical request: target, payload and per-call pipeline options.

    Descriptors are immutable; use :meth:`with_headers` or
    ``dataclasses.replace`` to derive a modified copy.
    """
    method: Union[HttpMethod, str]
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None
    params: Optional[Mapping[str, Any]] = None
    timeout: Optional[float] = None
    idempotency_key: Optional[str] = None
    signal: Optional[CancellationToken] = None

    # Pipeline options
    bypass_cache: bool = False
    cache_key: Optional[str] = None
    cache_ttl: Optional[float] = None
    disable_idempotency_key: bool = False
    max_retries: Optional[int] = None
    endpoint_key: Optional[str] = None
    service: Optional[str] = None
    correlation_id: Optional[str] = None

    def __post_init__(self):
        method = self.method
        if not isinstance(method, HttpMethod):
            method = HttpMethod(str(method).upper())
        object.__setattr__(self, "method", method)
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))
        if self.params is not None:
            object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    @property
    def host(self) -> str:
        return urlsplit(self.url).netloc

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"

    def get_endpoint_key(self) -> str:
        """Circuit breaker key: explicit ``endpoint_key`` or ``METHOD:url-without-query``."""
        if self.endpoint_key:
            return self.endpoint_key
        return f"{self.method.value}:{self.url.split('?', 1)[0]}"

    def with_headers(self, headers: Mapping[str, str]) -> "RequestDescriptor":
        return dataclasses.replace(self, headers={**self.headers, **headers})

    def __repr__(self) -> str:
        return f"RequestDescriptor({self.method.value} {self.url})"
