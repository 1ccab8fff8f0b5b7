"""
Observability Hooks
===================
Span contract emitted around every HTTP attempt.

The pipeline only calls the methods below; exporting traces is up to the
tracer implementation handed to the client. ``LoggingTracer`` turns spans
into structlog events, ``NoopTracer`` discards them.
"""

import time
from typing import Any, Dict, Optional, Protocol

import structlog

logger = structlog.get_logger(__name__)


class Span(Protocol):
    def set_attribute(self, key: str, value: Any) -> None: ...

    def record_exception(self, exc: BaseException) -> None: ...

    def set_status(self, status: str, description: Optional[str] = None) -> None: ...

    def end(self) -> None: ...


class Tracer(Protocol):
    def start_span(self, name: str, attributes: Optional[Dict[str, Any]] = None) -> Span: ...


class _NoopSpan:
    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def record_exception(self, exc: BaseException) -> None:
        pass

    def set_status(self, status: str, description: Optional[str] = None) -> None:
        pass

    def end(self) -> None:
        pass


class NoopTracer:
    def start_span(self, name: str, attributes: Optional[Dict[str, Any]] = None) -> Span:
        return _NoopSpan()


class LoggingSpan:
    """Span that logs its attributes, status and duration when it ends."""

    def __init__(self, name: str, attributes: Optional[Dict[str, Any]] = None):
        self.name = name
        self.attributes: Dict[str, Any] = dict(attributes or {})
        self.status = "unset"
        self.status_description: Optional[str] = None
        self.exception: Optional[BaseException] = None
        self.ended = False
        self._started = time.perf_counter()

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    def record_exception(self, exc: BaseException) -> None:
        self.exception = exc

    def set_status(self, status: str, description: Optional[str] = None) -> None:
        self.status = status
        self.status_description = description

    def end(self) -> None:
        if self.ended:
            return
        self.ended = True
        duration_ms = round((time.perf_counter() - self._started) * 1000, 2)
        log = logger.warning if self.status == "error" else logger.debug
        log(
            "span_ended",
            span=self.name,
            status=self.status,
            duration_ms=duration_ms,
            error=str(self.exception) if self.exception else None,
            **self.attributes,
        )


class LoggingTracer:
    def start_span(self, name: str, attributes: Optional[Dict[str, Any]] = None) -> Span:
        return LoggingSpan(name, attributes)
