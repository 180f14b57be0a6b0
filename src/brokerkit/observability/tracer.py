"""
Tracer protocol and implementations for composition-based tracing.

The broker client components receive a tracer as a dependency instead of
talking to OpenTelemetry directly, which keeps them easy to test:

- NullTracer: no-op, used when tracing is disabled
- OpenTelemetryTracer: thin wrapper around the OpenTelemetry API
- MockTracer: records span names/attributes for assertions in tests

Example:
    >>> from brokerkit.observability import create_tracer
    >>>
    >>> tracer = create_tracer(__name__, enable_tracing=True)
    >>> span = tracer.start_span("brokerkit.publish", kind=SpanKindEnum.PRODUCER)
    >>> try:
    ...     await do_publish()
    ... finally:
    ...     if span:
    ...         span.end()
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from contextlib import AbstractContextManager
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from opentelemetry import trace
from opentelemetry.trace import SpanKind

if TYPE_CHECKING:
    from opentelemetry.trace import Span


class SpanKindEnum(Enum):
    """
    Span kinds for distributed tracing.

    Values:
        INTERNAL: Default span kind for internal operations
        PRODUCER: Publishing to an exchange or queue
        CONSUMER: Handling a delivered message
    """

    INTERNAL = "internal"
    PRODUCER = "producer"
    CONSUMER = "consumer"


_KIND_MAPPING = {
    SpanKindEnum.INTERNAL: SpanKind.INTERNAL,
    SpanKindEnum.PRODUCER: SpanKind.PRODUCER,
    SpanKindEnum.CONSUMER: SpanKind.CONSUMER,
}


@runtime_checkable
class Tracer(Protocol):
    """
    Protocol for tracers that can create tracing spans.

    Implementations:
    - NullTracer: No-op tracer for when tracing is disabled
    - OpenTelemetryTracer: Wrapper around OpenTelemetry tracer
    - MockTracer: Recording tracer for tests
    """

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        """
        Create a tracing span context manager.

        Args:
            name: Span name (e.g., "brokerkit.topology.assert_queue")
            attributes: Span attributes (optional)

        Returns:
            Context manager that yields Span or None
        """
        ...

    @property
    def enabled(self) -> bool:
        """True if tracing is active and will create real spans."""
        ...

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> Span | None:
        """
        Start a span that the caller must end explicitly.

        Messaging spans outlive a single ``with`` block (the publish span
        stays open while the message waits for a drain signal), so they are
        started and ended manually.

        Args:
            name: Span name
            kind: The span kind (PRODUCER, CONSUMER, ...)
            attributes: Span attributes (optional)
            context: Optional parent context extracted from message headers

        Returns:
            The Span if tracing is enabled, None otherwise.
        """
        ...


class NullTracer:
    """No-op tracer implementation for when tracing is disabled."""

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> None:
        return None


class OpenTelemetryTracer:
    """
    OpenTelemetry tracer implementation.

    Wraps the OpenTelemetry tracer API to conform to our Tracer protocol.
    Spans are only exported when the application configured an SDK
    TracerProvider; otherwise the API hands out non-recording spans.

    Args:
        tracer_name: Name for the tracer (typically __name__)
    """

    def __init__(self, tracer_name: str) -> None:
        self._tracer = trace.get_tracer(tracer_name)

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self._tracer.start_as_current_span(
            name,
            attributes=attributes or {},
        )

    @property
    def enabled(self) -> bool:
        return True

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> Span:
        return self._tracer.start_span(
            name,
            kind=_KIND_MAPPING.get(kind, SpanKind.INTERNAL),
            attributes=attributes or {},
            context=context,
        )


class MockTracer:
    """
    Mock tracer for testing that records span information.

    Example:
        >>> tracer = MockTracer()
        >>> with tracer.span("operation", {"key": "value"}):
        ...     pass
        >>> assert tracer.span_names == ["operation"]
    """

    def __init__(self) -> None:
        self.spans: list[tuple[str, dict[str, Any] | None]] = []
        self.kinds: dict[str, SpanKindEnum] = {}

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        self.spans.append((name, attributes))
        yield None

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        """Get just the span names for easy assertions."""
        return [name for name, _ in self.spans]

    def clear(self) -> None:
        self.spans.clear()
        self.kinds.clear()

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> None:
        self.spans.append((name, attributes))
        self.kinds[name] = kind
        return None


def create_tracer(
    name: str,
    enable_tracing: bool = True,
) -> Tracer:
    """
    Factory function to create the appropriate tracer.

    Args:
        name: Tracer name (typically __name__)
        enable_tracing: Whether tracing should be enabled (default True)

    Returns:
        OpenTelemetryTracer if enabled, NullTracer otherwise
    """
    if enable_tracing:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "SpanKindEnum",
    "Tracer",
    "create_tracer",
]
