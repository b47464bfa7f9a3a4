"""Tracing hook for the conversation core.

The core only needs start_span() and a span handle with attribute,
exception and status setters plus end(). NoopTracer is the default;
LoggingTracer writes span timings to the debug log. Any OpenTelemetry
tracer can be adapted to the same two protocols by the host.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Protocol

logger = logging.getLogger(__name__)

# Span kinds, recorded as the "span.kind" attribute
KIND_AGENT = "agent"
KIND_LLM = "llm"
KIND_TOOL = "tool"


class Span(Protocol):
    def set_attribute(self, key: str, value: Any) -> None: ...

    def record_exception(self, error: BaseException) -> None: ...

    def set_status(self, ok: bool, description: str | None = None) -> None: ...

    def end(self) -> None: ...


class Tracer(Protocol):
    def start_span(self, name: str, attributes: dict[str, Any] | None = None) -> Span: ...


class _NoopSpan:
    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def record_exception(self, error: BaseException) -> None:
        pass

    def set_status(self, ok: bool, description: str | None = None) -> None:
        pass

    def end(self) -> None:
        pass


class NoopTracer:
    """Tracer that records nothing."""

    def start_span(self, name: str, attributes: dict[str, Any] | None = None) -> Span:
        return _NoopSpan()


class _LoggingSpan:
    def __init__(self, name: str, attributes: dict[str, Any]) -> None:
        self.name = name
        self.attributes = dict(attributes)
        self.ok: bool | None = None
        self.error: BaseException | None = None
        self._start = time.monotonic()
        self._ended = False

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    def record_exception(self, error: BaseException) -> None:
        self.error = error

    def set_status(self, ok: bool, description: str | None = None) -> None:
        self.ok = ok
        if description:
            self.attributes["status.description"] = description

    def end(self) -> None:
        if self._ended:
            return
        self._ended = True
        duration_ms = int((time.monotonic() - self._start) * 1000)
        logger.debug(
            "span %s ended in %d ms (ok=%s, error=%s, kind=%s)",
            self.name, duration_ms, self.ok, self.error, self.attributes.get("span.kind"),
        )


class LoggingTracer:
    """Tracer that logs span durations at debug level."""

    def start_span(self, name: str, attributes: dict[str, Any] | None = None) -> Span:
        return _LoggingSpan(name, attributes or {})
